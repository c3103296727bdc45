from __future__ import annotations

import pytest

from Claims_Pipeline.orchestration.models import (
    AgentConfig,
    AuthMethod,
    InputType,
    PipelineContext,
    ResultEnvelope,
    StoreIn,
)


def test_bind_ticket_sets_variable_and_refuses_rebinding():
    context = PipelineContext(tenant_id="t", workflow_key="HealthClaim")
    context.bind_ticket("TCK-7")
    context.bind_ticket("TCK-7")

    assert context.ticket_id == "TCK-7"
    assert context.get_variable("TicketID") == "TCK-7"
    with pytest.raises(ValueError):
        context.bind_ticket("TCK-8")


def test_envelope_document_carries_both_response_keys():
    envelope = ResultEnvelope.build("ocr", 200, {"answer": "ok"})

    document = envelope.to_document()
    assert envelope.success is True
    assert document["rawResponse"] == document["apiResponse"] == '{"answer": "ok"}'
    assert ResultEnvelope.build("ocr", 502, "bad gateway").success is False


def test_projection_source_parses_json_text():
    envelope = ResultEnvelope.build("ocr", 200, '{"answer": {"name": "Robert"}}')

    source = envelope.to_projection_source()
    assert source["rawResponse"] == {"answer": {"name": "Robert"}}
    assert "apiResponse" not in source


def test_with_extracted_merges_into_a_copy():
    envelope = ResultEnvelope.build("ocr", 200, "text", {"a": 1})

    updated = envelope.with_extracted({"b": 2})
    assert updated.extracted_data == {"a": 1, "b": 2}
    assert envelope.extracted_data == {"a": 1}


def test_agent_config_from_blob_flattens_nested_config():
    agent = AgentConfig.from_blob(
        {
            "agentId": "Analyser",
            "order": 1,
            "config": {
                "route": "/analyse",
                "authType": "BASICAUTH",
                "inputMapping": [{"key": "doc", "type": "minioFile", "value": "${TicketID}"}],
                "outputMapping": {
                    "variablesToSet": {"riskLevel": {"jsonPath": "$.answer.risk"}},
                    "risk": {"storeIn": "objectStorage", "targetPath": "${TicketID}/risk.json"},
                },
                "errorHandling": {"continueOnError": True},
            },
        }
    )

    assert agent.endpoint.route == "/analyse"
    assert agent.endpoint.auth_type is AuthMethod.BASIC
    assert agent.inputs[0].type is InputType.MINIO_FILE
    assert agent.variables_to_set["riskLevel"].path == "$.answer.risk"
    assert agent.output_mapping["risk"].store_in is StoreIn.OBJECT_STORAGE
    assert agent.error_handling.continue_on_error is True
    assert agent.label == "Analyser"


def test_agent_config_accepts_legacy_input_mapping():
    agent = AgentConfig.from_blob(
        {
            "agentId": "OCR",
            "config": {"inputMapping": {"source": "documentVariable", "transformation": "toBase64"}},
        }
    )

    assert agent.inputs == []
    assert agent.legacy_input is not None
    assert agent.legacy_input.transformation == "toBase64"
