"""Consolidation of per-document extraction results."""

from __future__ import annotations

import json

import pytest

from Claims_Pipeline.orchestration.consolidation import (
    ConsolidationMerger,
    DocumentStateStore,
    build_consolidated_request,
    extract_answer,
    extract_documents,
    merge_fields,
    stage_entry,
    value_text,
)
from Claims_Pipeline.utils.errors import ConsolidationFailed, MergeSkipped


def test_longer_value_wins_and_ties_keep_first():
    result = ConsolidationMerger().merge(
        [
            ("a.pdf", {"patient": {"name": "Rob", "dob": None, "id": "12"}}),
            ("b.pdf", {"patient": {"name": "Robert Smith", "dob": "1980-01-01", "id": "34"}}),
        ]
    )
    assert result.structure == {"patient": {"name": "Robert Smith", "dob": "1980-01-01", "id": "12"}}
    assert (result.merged, result.skipped) == (2, 0)


def test_nested_maps_merge_recursively_and_null_never_wins():
    existing = {"address": {"city": "Paris", "zip": None}, "note": "x"}
    merge_fields(existing, {"address": {"city": None, "zip": "75001"}, "note": "null", "extra": [1]})
    assert existing == {"address": {"city": "Paris", "zip": "75001"}, "note": "x", "extra": [1]}


def test_merge_is_idempotent():
    document = {"invoice": {"total": "120.00", "lines": [{"code": "A"}]}}
    once = ConsolidationMerger().merge([("a", document)]).structure
    twice = ConsolidationMerger().merge([("a", document), ("a-again", document)]).structure
    assert once == twice == document


def test_merge_copies_inputs():
    document = {"invoice": {"lines": [1]}}
    structure = ConsolidationMerger().merge([("a", document)]).structure
    structure["invoice"]["lines"].append(2)
    assert document == {"invoice": {"lines": [1]}}


def test_failing_document_is_skipped_and_counted():
    def broken():
        raise ValueError("unreadable")

    result = ConsolidationMerger().merge(
        [
            ("good.pdf", {"patient": {"name": "Ann"}}),
            ("bad.pdf", broken),
            ("empty.pdf", {"summary": "text only"}),
        ]
    )
    assert result.merged == 1
    assert result.skipped == 2
    assert result.skipped_files == ["bad.pdf", "empty.pdf"]


def test_no_contribution_raises():
    with pytest.raises(ConsolidationFailed):
        ConsolidationMerger().merge([("bad.pdf", "not a map")])
    with pytest.raises(ConsolidationFailed):
        ConsolidationMerger().merge([])


@pytest.mark.anyio("asyncio")
async def test_merge_async_uses_loader_in_order():
    documents = {"1.pdf": {"t": {"v": "aa"}}, "2.pdf": {"t": {"v": "bb"}}}

    async def loader(filename: str):
        if filename == "3.pdf":
            raise MergeSkipped("missing", filename=filename)
        return documents[filename]

    result = await ConsolidationMerger().merge_async(["1.pdf", "2.pdf", "3.pdf"], loader)
    assert result.structure == {"t": {"v": "aa"}}
    assert result.skipped_files == ["3.pdf"]


def test_value_text_is_order_independent_for_maps():
    assert value_text({"b": 1, "a": 2}) == value_text({"a": 2, "b": 1})
    assert value_text("abc") == "abc"


def test_extract_answer_accepts_string_and_object_answers():
    envelope = {"apiResponse": json.dumps({"answer": json.dumps({"patient": {"name": "A"}})})}
    assert extract_answer(envelope) == {"patient": {"name": "A"}}
    assert extract_answer({"rawResponse": {"answer": {"x": {}}}}) == {"x": {}}
    with pytest.raises(MergeSkipped):
        extract_answer({"apiResponse": '{"noanswer": 1}'}, filename="a.pdf")
    with pytest.raises(MergeSkipped):
        extract_answer({"apiResponse": '{"answer": [1]}'})


def test_extract_documents_and_consolidated_request():
    single = {"apiResponse": '{"answer": {"invoice": {"n": 1}}}'}
    several = {"apiResponse": '{"answer": {"response": [{"a": {}}, "skip", {"b": {}}]}}'}
    documents = extract_documents(single) + extract_documents(several)
    assert documents == [{"invoice": {"n": 1}}, {"a": {}}, {"b": {}}]
    request = build_consolidated_request("FHIR_Consolidator", documents)
    assert request["agentid"] == "FHIR_Consolidator"
    assert request["data"]["totalDocuments"] == 3
    assert request["data"]["doc_fhir"][0] == {"invoice": {"n": 1}}


@pytest.mark.anyio("asyncio")
async def test_document_state_store_records_and_filters():
    store = DocumentStateStore()
    await store.initialize("T1", ["a.pdf", "b.pdf"])
    snapshot = await store.record(
        "T1", "a.pdf", "OCR", stage_entry(success=True, minio_path="k/a", agent_id="OCR", status_code=200)
    )
    await store.record(
        "T1", "b.pdf", "OCR", stage_entry(success=False, minio_path="k/b", agent_id="OCR", status_code=500)
    )
    assert snapshot == {
        "a.pdf": {"OCR": {"apiCall": "success", "minioPath": "k/a", "agentId": "OCR", "statusCode": 200}},
        "b.pdf": {},
    }
    assert [name for name, _ in store.successful("T1", "OCR")] == ["a.pdf"]

    snapshot["a.pdf"]["OCR"]["apiCall"] = "changed"
    assert store.snapshot("T1")["a.pdf"]["OCR"]["apiCall"] == "success"

    await store.load("T2", {"x.pdf": {"OCR": {"apiCall": "SUCCESS", "minioPath": "k/x"}}})
    assert store.successful("T2", "OCR")[0][0] == "x.pdf"
    store.clear("T1")
    assert store.snapshot("T1") == {}
