"""Ticket creation steps."""

from __future__ import annotations

import base64

import pytest

from Claims_Pipeline.orchestration.config_store import ConfigurationCache, InMemoryConfigurationStore
from Claims_Pipeline.orchestration.consolidation import DocumentStateStore
from Claims_Pipeline.orchestration.id_generator import (
    SqliteRelationalStore,
    StepType,
    TicketGeneratorConfig,
    TicketIdGenerator,
)
from Claims_Pipeline.orchestration.models import PipelineContext
from Claims_Pipeline.utils.errors import ConfigurationMissing

SCHEMA = """
CREATE TABLE tickets (id INTEGER PRIMARY KEY AUTOINCREMENT, tenant TEXT, workflow TEXT);
"""

TICKET_SECTION = {
    "initialVariablesRootObj": [
        {"key": "tenantId", "executionMethod": True},
        {"key": "workflowKey", "executionMethod": True},
        {"key": "docsObj", "processVariable": True, "source": "documents"},
        {"key": "channel", "staticValue": 7},
    ],
    "steps": [
        {
            "type": "SqlQueryExecution",
            "config": {
                "query": "INSERT INTO tickets (tenant, workflow) VALUES (?, ?)",
                "parameters": [{"key": "tenantId"}, {"key": "workflowKey"}],
                "queryType": "update",
            },
        },
        {
            "type": "sqlqueryexecution",
            "config": {
                "query": "SELECT 'CLM-' || MAX(id) AS ticket FROM tickets WHERE tenant = ?",
                "parameters": [{"key": "tenantId"}],
                "queryType": "select",
            },
            "returnValueKey": "ticket",
            "returnValueObjKey": "ticketId",
            "processVariablesToSetAfterExecution": [{"key": "TicketID"}],
        },
        {
            "type": "UploadToS3",
            "storageType": "minio",
            "pathPattern": "{tenantId}/{workflowKey}/{ticketId}/{unknown}/",
        },
        {
            "type": "SetProcessVariables",
            "variables": [
                {"key": "channelName", "staticValue": "portal"},
                {"key": "channelCode", "sourcePath": "$.channel"},
                {"key": "ignored"},
            ],
        },
    ],
}


def _configurations() -> ConfigurationCache:
    store = InMemoryConfigurationStore()
    store.put(
        "HealthClaim",
        "tenant-a",
        {
            "agents": [{"agentId": "Forgery_Detector"}],
            "genericWorkflowDelegateConfigurations": {"ticketCreation": TICKET_SECTION},
        },
    )
    return ConfigurationCache(store)


@pytest.mark.anyio("asyncio")
async def test_generator_runs_all_steps(object_store):
    relational = SqliteRelationalStore()
    await relational.executescript(SCHEMA)
    documents = DocumentStateStore()
    context = PipelineContext(tenant_id="tenant-a", workflow_key="HealthClaim")
    context.set_variable(
        "documents",
        [
            {"filename": "claim.pdf", "content": base64.b64encode(b"%PDF-claim").decode()},
            {"filename": "broken.pdf", "content": "@@not-base64@@"},
            {"filename": None, "content": "AAAA"},
        ],
    )
    generator = TicketIdGenerator(_configurations(), object_store, relational, documents=documents)

    root = await generator.run(context, "ticketCreation")

    assert context.ticket_id == "CLM-1"
    assert context.get_variable("TicketID") == "CLM-1"
    assert root["ticketId"] == "CLM-1"
    assert context.get_variable("agentList") == [{"agentId": "Forgery_Detector"}]
    key = "tenant-a/HealthClaim/CLM-1/{unknown}/claim.pdf"
    assert context.get_variable("documentPaths")["claim.pdf"] == key
    assert await object_store.get(key) == b"%PDF-claim"
    assert context.get_variable("fileProcessMap")["claim.pdf"] == {}
    assert context.get_variable("channelName") == "portal"
    assert context.get_variable("channelCode") == "7"
    assert not context.has_variable("ignored")
    assert "claim.pdf" in documents.snapshot("CLM-1")
    relational.close()


@pytest.mark.anyio("asyncio")
async def test_missing_config_key_is_rejected(object_store):
    generator = TicketIdGenerator(_configurations(), object_store, SqliteRelationalStore())
    context = PipelineContext(tenant_id="tenant-a", workflow_key="HealthClaim")
    with pytest.raises(ConfigurationMissing):
        await generator.run(context, " ")
    with pytest.raises(ConfigurationMissing):
        await generator.run(context, "unknownKey")


def test_unknown_or_invalid_steps_fail_at_load():
    with pytest.raises(ConfigurationMissing):
        TicketGeneratorConfig.load({"steps": [{"type": "SendEmail"}]}, config_key="k")
    with pytest.raises(ConfigurationMissing):
        TicketGeneratorConfig.load(
            {"steps": [{"type": "UploadToS3", "storageType": "azure", "pathPattern": "x/"}]},
            config_key="k",
        )
    config = TicketGeneratorConfig.load({"steps": [{"type": "uploadtos3", "storageType": "MinIO", "pathPattern": "x/", "fileObj": ""}]}, config_key="k")
    assert StepType(config.steps[0].type) is StepType.UPLOAD_TO_S3
    assert config.steps[0].file_obj == "docsObj"
