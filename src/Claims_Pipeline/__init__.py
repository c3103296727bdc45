"""Claims pipeline - stage orchestration for insurance claim workflows.

Key Responsibilities:
    - Drive configuration-defined agent stages for one claim ticket
    - Persist agent results under deterministic storage keys
    - Consolidate per-document extraction results into one claim structure

Collaborators:
    - Upstream: The workflow engine calls :class:`PipelineOrchestrator` once
      per stage or per document
    - Downstream: Agent HTTP APIs, S3/MinIO object storage, a relational
      store for ticket ids

Example:
    >>> from Claims_Pipeline.config.settings import get_settings
    >>> from Claims_Pipeline.orchestration import PipelineContext, PipelineOrchestrator
    >>> orchestrator = PipelineOrchestrator.from_settings(get_settings())
    >>> context = PipelineContext(tenant_id="acme", workflow_key="HealthClaim", ticket_id="TCK-1")
    >>> envelope = await orchestrator.run_agent(context, "OCR", filename="claim.pdf")
"""
