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

"""Execution log persistence.

The engine itself never persists anything; callers hand finished
ExecutionResults (or errors raised before a result existed) to an
ExecutionLogStore. Two implementations are provided: an in-memory store
for tests and embedding, and a MongoDB store.
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pymongo import DESCENDING, MongoClient

from .scheduler import ExecutionResult
from .states import RunState

if TYPE_CHECKING:
    from ..config import MongoDBConfig


def _current_time_ms() -> int:
    """Get current time in milliseconds."""
    return int(time.time() * 1000)


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


@dataclass
class ExecutionLogRecord:
    """Persisted record of one run."""

    run_id: str
    workflow_id: str
    success: bool
    status: str
    trigger: str = "api"
    error: str | None = None
    output: Any = None
    logs: list[dict] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    trace: dict = field(default_factory=dict)
    created: int = 0

    @classmethod
    def from_result(
        cls, workflow_id: str, result: ExecutionResult, trigger: str = "api"
    ) -> "ExecutionLogRecord":
        data = _json_safe(result.to_dict())
        return cls(
            run_id=result.run_id,
            workflow_id=workflow_id,
            success=result.success,
            status=result.status,
            trigger=trigger,
            error=result.error,
            output=data["output"],
            logs=data["logs"],
            metadata=data["metadata"],
            trace=data["trace"],
            created=_current_time_ms(),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "success": self.success,
            "status": self.status,
            "trigger": self.trigger,
            "error": self.error,
            "output": self.output,
            "logs": self.logs,
            "metadata": self.metadata,
            "trace": self.trace,
            "created": self.created,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionLogRecord":
        """Create from dictionary."""
        return cls(
            run_id=data["run_id"],
            workflow_id=data["workflow_id"],
            success=data.get("success", False),
            status=data.get("status", ""),
            trigger=data.get("trigger", "api"),
            error=data.get("error"),
            output=data.get("output"),
            logs=data.get("logs", []),
            metadata=data.get("metadata", {}),
            trace=data.get("trace", {}),
            created=data.get("created", 0),
        )


class ExecutionLogStore(ABC):
    """Abstract interface for execution log persistence."""

    def save_result(
        self, workflow_id: str, result: ExecutionResult, trigger: str = "api"
    ) -> ExecutionLogRecord:
        """Persist a finished run, successful or not."""
        record = ExecutionLogRecord.from_result(workflow_id, result, trigger)
        self._save(record)
        return record

    def save_error(
        self,
        workflow_id: str,
        run_id: str,
        error: str | Exception,
        trigger: str = "api",
    ) -> ExecutionLogRecord:
        """Persist a run that failed before producing an ExecutionResult."""
        record = ExecutionLogRecord(
            run_id=run_id,
            workflow_id=workflow_id,
            success=False,
            status=RunState.FAILED,
            trigger=trigger,
            error=str(error),
            created=_current_time_ms(),
        )
        self._save(record)
        return record

    @abstractmethod
    def _save(self, record: ExecutionLogRecord) -> None:
        """Insert or replace a record by run id."""
        pass

    @abstractmethod
    def get_run(self, run_id: str) -> ExecutionLogRecord | None:
        """Fetch a run record by ID."""
        pass

    @abstractmethod
    def get_runs_by_workflow(
        self, workflow_id: str, limit: int = 50
    ) -> Sequence[ExecutionLogRecord]:
        """Most recent run records of a workflow, newest first."""
        pass


class MemoryLogStore(ExecutionLogStore):
    """In-memory execution log store, cleared on restart."""

    def __init__(self) -> None:
        self._records: dict[str, ExecutionLogRecord] = {}
        self._lock = threading.Lock()

    def _save(self, record: ExecutionLogRecord) -> None:
        with self._lock:
            self._records[record.run_id] = record

    def get_run(self, run_id: str) -> ExecutionLogRecord | None:
        return self._records.get(run_id)

    def get_runs_by_workflow(
        self, workflow_id: str, limit: int = 50
    ) -> Sequence[ExecutionLogRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.workflow_id == workflow_id]
        records.sort(key=lambda r: r.created, reverse=True)
        return records[:limit]

    def clear(self) -> None:
        """Clear all records (for testing)."""
        with self._lock:
            self._records.clear()


class MongoLogStore(ExecutionLogStore):
    """MongoDB-backed execution log store.

    Usage:
        store = MongoLogStore("mongodb://localhost:27017", "blockflow")

        # Or create from a BlockflowConfig / MongoDBConfig:
        from blockflow.config import load_config
        store = MongoLogStore.from_config(load_config().mongodb)
    """

    COLLECTION = "execution_logs"

    def __init__(
        self,
        connection_string: str = "",
        database_name: str = "blockflow",
        create_indexes: bool = True,
        client: Any = None,
    ):
        """Initialize the MongoDB log store.

        Args:
            connection_string: MongoDB connection string
            database_name: Database name (default: "blockflow")
            create_indexes: Whether to create indexes on initialization
            client: Optional pre-built MongoClient (e.g. mongomock.MongoClient for testing)
        """
        self._client = client if client is not None else MongoClient(connection_string)
        self._db = self._client[database_name]
        self._collection = self._db[self.COLLECTION]

        if create_indexes:
            self._ensure_indexes()

    @classmethod
    def from_config(
        cls,
        config: "MongoDBConfig",
        create_indexes: bool = True,
    ) -> "MongoLogStore":
        """Create a MongoLogStore from a MongoDBConfig instance."""
        return cls(
            connection_string=config.connection_string(),
            database_name=config.database,
            create_indexes=create_indexes,
        )

    def _ensure_indexes(self) -> None:
        """Create indexes on the execution log collection."""
        self._collection.create_index("run_id", unique=True, name="execution_run_id_index")
        self._collection.create_index("workflow_id", name="execution_workflow_id_index")
        self._collection.create_index(
            [("workflow_id", 1), ("created", DESCENDING)],
            name="execution_workflow_created_index",
        )

    def _save(self, record: ExecutionLogRecord) -> None:
        self._collection.replace_one({"run_id": record.run_id}, record.to_dict(), upsert=True)

    def get_run(self, run_id: str) -> ExecutionLogRecord | None:
        doc = self._collection.find_one({"run_id": run_id}, {"_id": 0})
        return ExecutionLogRecord.from_dict(doc) if doc else None

    def get_runs_by_workflow(
        self, workflow_id: str, limit: int = 50
    ) -> Sequence[ExecutionLogRecord]:
        cursor = (
            self._collection.find({"workflow_id": workflow_id}, {"_id": 0})
            .sort("created", DESCENDING)
            .limit(limit)
        )
        return [ExecutionLogRecord.from_dict(doc) for doc in cursor]

    def drop_database(self) -> None:
        """Drop the entire database (for testing)."""
        self._client.drop_database(self._db.name)

    def close(self) -> None:
        """Close the MongoDB connection."""
        self._client.close()
