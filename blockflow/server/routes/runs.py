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

"""Execution log endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..dependencies import get_log_store

router = APIRouter(prefix="/api")


@router.get("/runs/{run_id}")
def api_run_detail(run_id: str, store=Depends(get_log_store)):
    """Return one persisted run as JSON."""
    record = store.get_run(run_id)
    if not record:
        return JSONResponse({"error": "not found"}, status_code=404)
    return JSONResponse(record.to_dict())


@router.get("/workflows/{workflow_id}/runs")
def api_workflow_runs(workflow_id: str, limit: int = 50, store=Depends(get_log_store)):
    """Return the most recent runs of a workflow, newest first."""
    records = store.get_runs_by_workflow(workflow_id, limit=limit)
    return JSONResponse([record.to_dict() for record in records])
