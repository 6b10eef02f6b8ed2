"""Run records and the process-local run store."""
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class RunStatus(str, Enum):
    created = "created"
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    blocked = "blocked"
    stale = "stale"


FINISHED_STATUSES = {RunStatus.succeeded, RunStatus.failed, RunStatus.blocked}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Run:
    """One submission to ComfyUI, from creation to a terminal status."""
    id: str
    status: RunStatus
    request_json: dict[str, Any]
    workflow_json: dict[str, Any]
    prompt_id: Optional[str] = None
    history_json: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    recipe_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "prompt_id": self.prompt_id,
            "request_json": self.request_json,
            "workflow_json": self.workflow_json,
            "history_json": self.history_json,
            "error_message": self.error_message,
            "recipe_id": self.recipe_id,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
        }


class RunStore:
    """In-memory run table.

    Every write replaces the stored Run with a new instance. There is no
    per-run lock: two concurrent refreshes of the same run race on the last
    write, so callers poll one run from one place.
    """

    def __init__(self):
        self._runs: dict[str, Run] = {}

    def insert(self, run: Run) -> Run:
        self._runs[run.id] = run
        return run

    def get(self, run_id: str) -> Optional[Run]:
        return self._runs.get(run_id)

    def list(self, recipe_id: Optional[str] = None) -> list[Run]:
        runs = [
            run for run in self._runs.values()
            if recipe_id is None or run.recipe_id == recipe_id
        ]
        return sorted(runs, key=lambda run: run.updated_at, reverse=True)

    def update(
        self,
        run_id: str,
        *,
        set_started_if_null: bool = False,
        now: Optional[datetime] = None,
        **changes: Any,
    ) -> Run:
        """Apply ``changes`` to a run and return the new record.

        ``set_started_if_null`` stamps ``started_at`` only when it is unset.
        """
        run = self._runs.get(run_id)
        if run is None:
            raise KeyError(run_id)
        now = now or utcnow()
        if set_started_if_null and run.started_at is None:
            changes.setdefault("started_at", now)
        changes["updated_at"] = now
        updated = dataclasses.replace(run, **changes)
        self._runs[run_id] = updated
        return updated

    def delete(self, run_id: str) -> bool:
        return self._runs.pop(run_id, None) is not None

    def clear(self) -> None:
        self._runs = {}


_store: Optional[RunStore] = None


def get_store() -> RunStore:
    """Get the singleton RunStore instance."""
    global _store
    if _store is None:
        _store = RunStore()
    return _store


def set_store(store: Optional[RunStore]) -> None:
    global _store
    _store = store
