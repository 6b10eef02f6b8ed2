"""Poll ComfyUI queue + history and recompute a run's status."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from .comfy_client import ComfyClient, get_client
from .errors import ComfyRequestError, PromptIdRequired, RunNotFound
from .gallery_sync import GallerySink, get_gallery_sink, sync_run_outputs
from .outputs import (
    OutputImage,
    classify_output_nodes,
    extract_history_outputs,
    history_error_message,
    output_selection,
    resolve_history_entry,
    resolve_history_status,
    resolve_queue_status,
)
from .runs import FINISHED_STATUSES, Run, RunStatus, RunStore, get_store, utcnow
from .settings import get_settings

logger = logging.getLogger(__name__)

HISTORY_EMPTY = "history_empty"
HISTORY_MISSING = "history_missing"
COMFY_FAILED = "comfy_failed"

_UNCHANGED = object()


@dataclass
class Decision:
    status: RunStatus
    error_message: Any = _UNCHANGED


def decide_status(
    prior_status: Optional[RunStatus],
    prior_error: Optional[str],
    history_status: Optional[str],
    history_error: Optional[str],
    queue_status: Optional[str],
    elapsed: Optional[float],
    grace: float,
) -> Decision:
    """Apply the reconciliation decision table.

    ``elapsed`` is seconds since the run started; None counts as inside the
    grace window.
    """
    if history_status == "failed":
        return Decision(RunStatus.failed, history_error or COMFY_FAILED)
    if history_status == "succeeded":
        return Decision(RunStatus.succeeded, None)
    if queue_status == "running":
        return Decision(RunStatus.running, None)
    if queue_status == "queued":
        return Decision(RunStatus.queued, None)

    if elapsed is None or elapsed <= grace:
        if prior_status == RunStatus.failed and prior_error == HISTORY_EMPTY:
            return Decision(RunStatus.queued, None)
        return Decision(prior_status or RunStatus.queued)
    return Decision(RunStatus.stale, HISTORY_MISSING)


def _elapsed_seconds(run: Run, now: datetime) -> Optional[float]:
    since = run.started_at or run.created_at
    if since is None:
        return None
    return (now - since).total_seconds()


def _controlnet_enabled(request_json: Any) -> bool:
    return isinstance(request_json, dict) and bool(request_json.get("controlnet_enabled"))


async def _fetch_state(client: ComfyClient, prompt_id: str) -> tuple[Any, Any]:
    queue_data = await client.get_queue()
    history_data = await client.get_history(prompt_id)
    return queue_data, history_data


async def refresh_run(
    run_id: str,
    *,
    client: Optional[ComfyClient] = None,
    store: Optional[RunStore] = None,
    sink: Optional[GallerySink] = None,
    grace: Optional[float] = None,
    now: Optional[datetime] = None,
) -> tuple[Run, list[OutputImage]]:
    """One reconciliation pass for ``run_id``.

    Returns the updated run and the outputs extracted from history.

    Raises:
        RunNotFound: no such run.
        PromptIdRequired: the run was never accepted by ComfyUI.
        ComfyRequestError: queue or history could not be read; the run has
            been written as failed.
    """
    client = client or get_client()
    store = store or get_store()
    sink = sink or get_gallery_sink()
    if grace is None:
        grace = get_settings().history_grace

    run = store.get(run_id)
    if run is None:
        raise RunNotFound(run_id)
    if not run.prompt_id:
        raise PromptIdRequired(run_id)

    try:
        queue_data, history_data = await _fetch_state(client, run.prompt_id)
    except ComfyRequestError as e:
        failed_at = utcnow()
        store.update(
            run_id,
            status=RunStatus.failed,
            error_message=e.kind,
            finished_at=failed_at,
            now=failed_at,
        )
        logger.warning("Refresh of run %s failed: %s", run_id, e.kind)
        raise

    now = now or utcnow()
    queue_status = resolve_queue_status(queue_data, run.prompt_id)
    entry = resolve_history_entry(history_data, run.prompt_id)
    selection = output_selection(
        classify_output_nodes(run.workflow_json),
        _controlnet_enabled(run.request_json),
    )
    outputs = extract_history_outputs(entry, selection)
    history_status = resolve_history_status(entry, outputs)

    decision = decide_status(
        prior_status=run.status,
        prior_error=run.error_message,
        history_status=history_status,
        history_error=history_error_message(entry) if entry else None,
        queue_status=queue_status,
        elapsed=_elapsed_seconds(run, now),
        grace=grace,
    )

    changes: dict[str, Any] = {"status": decision.status}
    if decision.error_message is not _UNCHANGED:
        changes["error_message"] = decision.error_message
    if entry is not None:
        changes["history_json"] = {"outputs": [output.to_dict() for output in outputs]}
    if decision.status in FINISHED_STATUSES:
        changes["finished_at"] = now

    previous = run.status
    run = store.update(
        run_id,
        set_started_if_null=decision.status == RunStatus.running,
        now=now,
        **changes,
    )
    if previous != run.status:
        logger.info("Run %s: %s -> %s", run_id, previous.value, run.status.value)

    if run.status == RunStatus.succeeded and outputs:
        await sync_run_outputs(sink, run, outputs)

    return run, outputs
