# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Workflow registration and execution endpoints.

Execution requests carry runtime inputs and secret references; the
references are decrypted through the app's secret store before the run
starts. Every finished run is persisted through the execution log store.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ...runtime.errors import MissingSecretError, ValidationError
from ...runtime.graph import WorkflowGraph
from ...runtime.secrets import resolve_secrets
from ...runtime.types import run_id as new_run_id
from ..dependencies import get_log_store, get_scheduler, get_secret_store, get_workflows

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workflows")

# Workflow id recorded for runs of unregistered documents
ADHOC_WORKFLOW_ID = "adhoc"


async def _read_body(request: Request) -> dict[str, Any]:
    """Parse a JSON object body; an empty body is an empty object."""
    raw = await request.body()
    if not raw.strip():
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("request body must be a JSON object")
    return data


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _run(
    request: Request,
    workflow_id: str,
    document: Mapping[str, Any],
    inputs: Any,
    secret_refs: Any,
    trigger: str,
) -> JSONResponse:
    """Execute a workflow document and persist the outcome."""
    scheduler = get_scheduler(request)
    store = get_log_store(request)

    if not isinstance(inputs, Mapping):
        return _error("'inputs' must be an object", 400)
    if not isinstance(secret_refs, Mapping):
        return _error("'secrets' must be an object", 400)
    try:
        secrets = resolve_secrets(get_secret_store(request), secret_refs)
    except MissingSecretError as e:
        return _error(str(e), 400)

    rid = new_run_id()
    try:
        result = await scheduler.execute_async(document, inputs, secrets, run_id=rid)
    except Exception as e:
        logger.exception("Execution failed: workflow_id=%s run_id=%s", workflow_id, rid)
        await run_in_threadpool(store.save_error, workflow_id, rid, e, trigger)
        return _error(f"Execution failed: {e}", 500)

    await run_in_threadpool(store.save_result, workflow_id, result, trigger)
    body = json.loads(json.dumps(result.to_dict(), default=str))
    if not result.success:
        logger.warning(
            "Execution failed: workflow_id=%s run_id=%s error=%s",
            workflow_id,
            result.run_id,
            result.error,
        )
        return JSONResponse(body, status_code=500)
    return JSONResponse(body)


@router.get("")
def api_workflows(workflows=Depends(get_workflows)):
    """Return the ids of registered workflows."""
    return JSONResponse(sorted(workflows))


@router.post("/execute")
async def api_execute_document(request: Request):
    """Execute a workflow document supplied in the request body.

    Body: ``{"workflow": {...}, "inputs": {...}, "secrets": {NAME: ref}}``
    with an optional ``workflowId`` recorded in the execution log.
    """
    try:
        body = await _read_body(request)
    except ValueError as e:
        return _error(f"Invalid request body: {e}", 400)

    document = body.get("workflow")
    if not isinstance(document, Mapping):
        return _error("'workflow' must be an object", 400)
    workflow_id = str(body.get("workflowId") or ADHOC_WORKFLOW_ID)
    return await _run(
        request,
        workflow_id,
        document,
        body.get("inputs") or {},
        body.get("secrets") or {},
        trigger="api",
    )


@router.put("/{workflow_id}")
async def api_register_workflow(workflow_id: str, request: Request):
    """Register (or replace) a workflow document under an id.

    The document is validated before it is stored.
    """
    try:
        document = await _read_body(request)
    except ValueError as e:
        return _error(f"Invalid request body: {e}", 400)

    scheduler = get_scheduler(request)
    try:
        graph = WorkflowGraph.from_dict(document)
        scheduler.validator.validate(graph)
    except ValidationError as e:
        return _error(str(e), 400)

    workflows = get_workflows(request)
    created = workflow_id not in workflows
    workflows[workflow_id] = document
    logger.info("Workflow registered: workflow_id=%s blocks=%d", workflow_id, len(graph.blocks))
    return JSONResponse(
        {"workflowId": workflow_id, "blocks": len(graph.blocks)},
        status_code=201 if created else 200,
    )


@router.get("/{workflow_id}/execute")
async def api_execute_get(workflow_id: str, request: Request):
    """Execute a registered workflow; query parameters become runtime inputs."""
    document = get_workflows(request).get(workflow_id)
    if document is None:
        return _error(f"Workflow not found: {workflow_id}", 404)
    inputs = dict(request.query_params)
    return await _run(request, workflow_id, document, inputs, {}, trigger="api")


@router.post("/{workflow_id}/execute")
async def api_execute_post(workflow_id: str, request: Request):
    """Execute a registered workflow.

    Body: ``{"inputs": {...}, "secrets": {NAME: ref}}``, both optional.
    """
    document = get_workflows(request).get(workflow_id)
    if document is None:
        return _error(f"Workflow not found: {workflow_id}", 404)
    try:
        body = await _read_body(request)
    except ValueError as e:
        return _error(f"Invalid request body: {e}", 400)
    return await _run(
        request,
        workflow_id,
        document,
        body.get("inputs") or {},
        body.get("secrets") or {},
        trigger="api",
    )
