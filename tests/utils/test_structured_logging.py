import json
import logging

import structlog

from Claims_Pipeline.config.settings import LoggingSettings
from Claims_Pipeline.utils.logging import (
    JsonFormatter,
    bind_correlation_id,
    configure_logging,
    correlation_scope,
    get_correlation_id,
    reset_correlation_id,
)


def test_correlation_id_binding_is_scoped():
    token = bind_correlation_id("TCK-1")
    assert get_correlation_id() == "TCK-1"
    reset_correlation_id(token)
    assert get_correlation_id() is None


def test_json_formatter_scrubs_and_adds_correlation_id():
    formatter = JsonFormatter(scrub_fields=["password"])
    record = logging.LogRecord("claims", logging.INFO, __file__, 1, "called", None, None)
    record.password = "secret"
    record.detail = {"password": "x", "ok": 1}
    token = bind_correlation_id("TCK-7")
    try:
        payload = json.loads(formatter.format(record))
    finally:
        reset_correlation_id(token)
    assert payload["password"] == "***"
    assert payload["detail"] == {"password": "***", "ok": 1}
    assert payload["correlation_id"] == "TCK-7"


def test_configure_logging_installs_structlog_processors(capsys):
    configure_logging(settings=LoggingSettings(level="INFO", scrub_fields=["api_key"]))
    token = bind_correlation_id("TCK-9")
    try:
        structlog.get_logger("claims").info("agent.invoke.started", api_key="k", agent_id="A")
    finally:
        reset_correlation_id(token)
    line = capsys.readouterr().out.strip().splitlines()[-1]
    event = json.loads(line)
    assert event["event"] == "agent.invoke.started"
    assert event["api_key"] == "***"
    assert event["correlation_id"] == "TCK-9"
    structlog.reset_defaults()
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_claims_pipeline_handler", False):
            root.removeHandler(handler)


def test_json_formatter_clips_long_values():
    formatter = JsonFormatter(max_value_length=16)
    record = logging.LogRecord("claims", logging.INFO, __file__, 1, "upload", None, None)
    record.content = "A" * 40
    payload = json.loads(formatter.format(record))
    assert payload["content"] == "A" * 16 + "...<40 chars>"


def test_correlation_scope_restores_previous_value():
    with correlation_scope("TCK-1"):
        with correlation_scope("TCK-2"):
            assert get_correlation_id() == "TCK-2"
        assert get_correlation_id() == "TCK-1"
    assert get_correlation_id() is None
