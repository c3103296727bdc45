"""Response projection into variables and artifacts."""

from __future__ import annotations

import json

import pytest

from Claims_Pipeline.orchestration.models import OutputDescriptor, ResultEnvelope
from Claims_Pipeline.orchestration.projector import ResponseProjector
from Claims_Pipeline.utils.errors import OutputMappingError


def test_project_slash_path_into_long_variable(results):
    variables: dict = {}
    report = ResponseProjector(results).project(
        '{"score":{"score":"41.6"}}', {"score": {"path": "/score/score", "dataType": "long"}}, variables
    )
    assert variables == {"score": 42}
    assert report.variables == {"score": 42}


def test_project_bare_path_keeps_value_type(results):
    variables: dict = {}
    ResponseProjector(results).project({"score": {"score": 42}}, {"score": "/score/score"}, variables)
    assert variables == {"score": 42}


def test_project_string_entry_and_skip(results):
    variables: dict = {}
    report = ResponseProjector(results).project({"score": {}}, {"score": "/score/score"}, variables)
    assert "score" not in variables
    assert report.skipped == ["score"]


def test_project_default_value_and_variable_reference(results):
    variables = {"fallbackAmount": 10}
    report = ResponseProjector(results).project(
        {"a": None},
        {
            "amount": {"jsonPath": "$.a", "dataType": "double", "defaultValue": "{{fallbackAmount}}"},
            "status": {"path": "$.missing", "defaultValue": "PENDING"},
            "bad": {"path": "$.a", "dataType": "long"},
        },
        variables,
    )
    assert variables["amount"] == 10.0
    assert variables["status"] == "PENDING"
    assert report.skipped == ["bad"]


def test_numeric_projection_falls_back_to_zero(results):
    variables: dict = {}
    ResponseProjector(results).project({"v": "n/a"}, {"v": {"path": "$.v", "dataType": "double"}}, variables)
    assert variables == {"v": 0}


def test_oversized_value_is_extracted_but_not_set(results):
    variables: dict = {}
    projector = ResponseProjector(results, max_variable_size=10)
    report = projector.project({"text": "x" * 50}, {"text": "$.text"}, variables)
    assert variables == {}
    assert report.oversized == ["text"]
    assert report.extracted["text"] == "x" * 50


def test_project_envelope_addresses_raw_response(results):
    envelope = ResultEnvelope.build("A", 200, '{"answer":{"total":"7"}}')
    variables: dict = {}
    ResponseProjector(results).project(envelope, {"total": {"path": "$.answer.total", "dataType": "integer"}}, variables)
    assert variables == {"total": 7}


@pytest.mark.anyio("asyncio")
async def test_project_to_store_writes_artifact(context, results):
    key = await ResponseProjector(results).project_to_store(
        {"answer": {"fields": [1]}}, "$.answer", context, "OcrToStatic", "fields"
    )
    assert key == results.key_for(context, "OcrToStatic", "fields")
    assert await results.load_json(key) == {"fields": [1]}
    assert (
        await ResponseProjector(results).project_to_store({}, "$.x", context, "OcrToStatic", "none")
        is None
    )


@pytest.mark.anyio("asyncio")
async def test_output_mapping_patterns(context, results):
    context.set_variable("TicketID", "TCK-1001")
    context.set_variable("policy", '{"number": "P-1"}')
    envelope = ResultEnvelope.build(
        "Analyser", 200, '{"answer":{"summary":"ok","fields":{"a":1},"codes":["x"]}}'
    )
    descriptors = {
        "summary": OutputDescriptor.model_validate(
            {"storeIn": "processVariable", "dataType": "string", "path": "$.rawResponse.answer.summary"}
        ),
        "fields": OutputDescriptor.model_validate(
            {
                "storeIn": "objectStorage",
                "path": "$.rawResponse.answer.fields",
                "targetPath": "out/${TicketID}/fields.json",
            }
        ),
        "combined": OutputDescriptor.model_validate(
            {
                "mergeVariables": True,
                "mergePaths": [
                    {"keyName": "codes", "path": "$.rawResponse.answer.codes"},
                    {"keyName": "policy", "sourceType": "processVariable", "variableName": "policy"},
                    {"keyName": "codes", "path": "$.agentId", "dataType": "string"},
                    {"keyName": "gone", "path": "$.rawResponse.nothing"},
                ],
            }
        ),
        "bundle": OutputDescriptor.model_validate(
            {
                "mergeVariables": True,
                "storeIn": "objectStorage",
                "targetPath": "out/${TicketID}/bundle.json",
                "targetVarName": "bundlePath",
                "mergePaths": [
                    {"keyName": "fields", "sourceType": "minioFile", "variableName": "fields_minioPath"},
                    {"path": "$.statusCode"},
                ],
            }
        ),
        "missing": OutputDescriptor.model_validate({"path": "$.rawResponse.nowhere"}),
    }
    report = await ResponseProjector(results).apply_output_mapping(envelope, descriptors, context)

    assert context.get_variable("summary") == "ok"
    assert context.get_variable("fields_minioPath") == "out/TCK-1001/fields.json"
    assert await results.load_json("out/TCK-1001/fields.json") == {"a": 1}
    assert json.loads(context.get_variable("combined")) == {
        "codes": [["x"], "Analyser"],
        "policy": {"number": "P-1"},
    }
    assert context.get_variable("bundlePath") == "out/TCK-1001/bundle.json"
    assert await results.load_json("out/TCK-1001/bundle.json") == {"fields": {"a": 1}, "key1": 200}
    assert report.skipped == ["missing"]


@pytest.mark.anyio("asyncio")
async def test_output_mapping_storage_failure_raises(context, results, monkeypatch):
    from Claims_Pipeline.storage.base import StorageError

    async def failing(*args, **kwargs):
        raise StorageError("down")

    monkeypatch.setattr(results, "store_json", failing)
    envelope = ResultEnvelope.build("A", 200, '{"answer":1}')
    descriptor = OutputDescriptor.model_validate(
        {"storeIn": "objectStorage", "path": "$.rawResponse.answer", "targetPath": "x.json"}
    )
    with pytest.raises(OutputMappingError):
        await ResponseProjector(results).apply_output_mapping(envelope, {"answer": descriptor}, context)
