"""Test suite for the claims pipeline."""
