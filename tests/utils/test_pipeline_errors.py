from Claims_Pipeline.utils.errors import (
    AgentCallFailed,
    ConfigurationMissing,
    MergeSkipped,
    ProblemDetail,
    WorkflowError,
    stage_error_code,
)


def test_problem_detail_drops_empty_fields():
    problem = ProblemDetail(title="Error", status=400)
    payload = problem.model_dump()
    assert payload == {"title": "Error", "status": 400, "type": "about:blank"}


def test_pipeline_error_carries_code_and_problem():
    error = ConfigurationMissing("Section 'agents' missing")
    assert error.code == "CONFIG_ERROR"
    assert error.problem.status == 500
    assert error.problem.type == "urn:claims-pipeline:CONFIG_ERROR"
    assert error.message == "Section 'agents' missing"


def test_agent_call_failed_keeps_body_and_status():
    error = AgentCallFailed("boom", agent_id="Forgery_Detector", status_code=500, body='{"error":"x"}')
    assert error.status_code == 500
    assert error.body == '{"error":"x"}'
    assert error.problem.detail == '{"error":"x"}'
    assert error.problem.extra["agent_id"] == "Forgery_Detector"


def test_merge_skipped_records_filename():
    error = MergeSkipped("bad answer", filename="doc1.pdf")
    assert error.filename == "doc1.pdf"
    assert error.code == "MERGE_SKIPPED"


def test_stage_error_code_known_and_derived_names():
    assert stage_error_code("FHIR Consolidator") == "fhirConsolidatorFailed"
    assert stage_error_code("UIDisplayer") == "uiDisplayerFailed"
    assert stage_error_code("Verify Master Data") == "verifyMasterDataFailed"
    assert stage_error_code("") == "stageFailed"


def test_workflow_error_from_stage_chains_cause():
    cause = ValueError("inner")
    error = WorkflowError.from_stage("PolicyCoherence", "failed", cause=cause)
    assert error.code == "policyCoherenceFailed"
    assert error.__cause__ is cause
