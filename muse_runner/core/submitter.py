"""Create a run: patch the template, persist the row, submit to ComfyUI."""
import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .comfy_client import ComfyClient, get_client
from .errors import (
    ComfyRequestError,
    InitImageRequired,
    RunRequestInvalid,
    RunSubmissionFailed,
    TemplateError,
    WorkflowPrepareFailed,
)
from .inputs import (
    CONTROL_IMAGES_DIR,
    INIT_IMAGES_DIR,
    InputImage,
    input_file_name,
    write_input_file,
)
from .patcher import LoraEntry, PatchParams, RunMode, SamplerOverrides, patch_workflow
from .runs import Run, RunStatus, RunStore, get_store, utcnow
from .settings import Settings, get_settings
from .templates import NodeRoles, read_workflow_template

logger = logging.getLogger(__name__)

RANDOM_SEED = -1
SEED_UPPER_BOUND = 2**31


@dataclass
class RunRequest:
    """Run parameters as supplied by the caller."""
    positive: str
    negative: str
    ckpt_name: str
    width: int = 0
    height: int = 0
    mode: RunMode = RunMode.primary
    loras: list[LoraEntry] = field(default_factory=list)
    controlnet_enabled: bool = False
    controlnet_model: Optional[str] = None
    preprocessor_enabled: bool = False
    preprocessor: Optional[str] = None
    controlnet_strength: Optional[float] = None
    ksampler: Optional[SamplerOverrides] = None

    def validate(self) -> None:
        issues = []
        if not self.ckpt_name.strip():
            issues.append("ckptName is required")
        if self.controlnet_enabled and not self.controlnet_model:
            issues.append("controlnetModel is required")
        if self.preprocessor_enabled and not self.preprocessor:
            issues.append("preprocessor is required")
        if issues:
            raise RunRequestInvalid(issues)

    def snapshot(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "positive": self.positive,
            "negative": self.negative,
            "ckpt_name": self.ckpt_name,
            "width": self.width,
            "height": self.height,
            "loras": [entry.to_dict() for entry in self.loras],
            "controlnet_enabled": self.controlnet_enabled,
            "controlnet_model": self.controlnet_model,
            "preprocessor_enabled": self.preprocessor_enabled,
            "preprocessor": self.preprocessor,
            "controlnet_strength": self.controlnet_strength,
            "ksampler": self.ksampler.to_dict() if self.ksampler else None,
        }


def resolve_seed(ksampler: Optional[SamplerOverrides]) -> tuple[Optional[SamplerOverrides], Optional[int]]:
    """Swap a -1 seed for a random one. Returns (overrides, resolved_seed)."""
    if ksampler is None or ksampler.seed != RANDOM_SEED:
        return ksampler, None
    seed = random.randint(0, SEED_UPPER_BOUND - 1)
    return replace(ksampler, seed=seed), seed


def prepare_workflow(
    request: RunRequest,
    settings: Settings,
    ksampler: Optional[SamplerOverrides],
    init_image_name: Optional[str],
    controlnet_image_name: Optional[str],
) -> dict[str, Any]:
    """Load the mode's template and patch it. Raises WorkflowPrepareFailed."""
    template_path = (
        settings.image2i_template_path
        if request.mode == RunMode.refine
        else settings.text2i_template_path
    )
    params = PatchParams(
        mode=request.mode,
        positive=request.positive,
        negative=request.negative,
        ckpt_name=request.ckpt_name,
        width=request.width,
        height=request.height,
        loras=request.loras,
        controlnet_enabled=request.controlnet_enabled,
        controlnet_model=request.controlnet_model,
        preprocessor_enabled=request.preprocessor_enabled,
        preprocessor=request.preprocessor,
        controlnet_strength=request.controlnet_strength,
        ksampler=ksampler,
        controlnet_image_name=controlnet_image_name,
        init_image_name=init_image_name,
    )
    try:
        template = read_workflow_template(template_path)
        return patch_workflow(template, params, NodeRoles.for_template(template_path))
    except TemplateError as e:
        raise WorkflowPrepareFailed(e) from e


def _prompt_error_message(error: Any) -> str:
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str):
        return error
    return "prompt_error"


def _mark_failed(store: RunStore, run_id: str, message: str) -> Run:
    now = utcnow()
    run = store.update(
        run_id,
        status=RunStatus.failed,
        error_message=message,
        finished_at=now,
        now=now,
    )
    logger.warning("Run %s failed at submission: %s", run_id, message)
    return run


async def create_run(
    request: RunRequest,
    *,
    init_image: Optional[InputImage] = None,
    controlnet_image: Optional[InputImage] = None,
    init_image_name: Optional[str] = None,
    controlnet_image_name: Optional[str] = None,
    recipe_id: Optional[str] = None,
    recipe_snapshot: Optional[dict] = None,
    client: Optional[ComfyClient] = None,
    store: Optional[RunStore] = None,
    settings: Optional[Settings] = None,
) -> Run:
    """Create, persist and submit a run.

    Raises:
        RunRequestInvalid / InitImageRequired: nothing was persisted.
        WorkflowPrepareFailed: the template could not be patched; nothing was
            persisted.
        RunSubmissionFailed: the run row exists and is ``failed``.
    """
    client = client or get_client()
    store = store or get_store()
    settings = settings or get_settings()

    request.validate()
    if request.mode == RunMode.refine and init_image is None and not init_image_name:
        raise InitImageRequired()

    run_id = str(uuid.uuid4())
    if init_image is not None and request.mode == RunMode.refine:
        init_image_name = write_input_file(
            settings.input_dir,
            INIT_IMAGES_DIR,
            input_file_name("init", run_id, init_image),
            init_image.data,
        )
    if controlnet_image is not None and request.controlnet_enabled:
        controlnet_image_name = write_input_file(
            settings.input_dir,
            CONTROL_IMAGES_DIR,
            input_file_name("controlnet", run_id, controlnet_image),
            controlnet_image.data,
        )

    ksampler, resolved_seed = resolve_seed(request.ksampler)
    workflow = prepare_workflow(request, settings, ksampler, init_image_name, controlnet_image_name)

    request_json = request.snapshot()
    if resolved_seed is not None:
        request_json["ksampler_resolved"] = {"seed": resolved_seed}
    request_json["controlnet_image"] = controlnet_image_name
    if init_image_name:
        request_json["init_image"] = init_image_name
    if recipe_id:
        request_json["recipe_id"] = recipe_id
    if recipe_snapshot:
        request_json["recipe_snapshot"] = recipe_snapshot

    store.insert(Run(
        id=run_id,
        status=RunStatus.created,
        request_json=request_json,
        workflow_json=workflow,
        recipe_id=recipe_id,
    ))
    logger.info("Run %s created (%s)", run_id, request.mode.value)

    try:
        data = await client.submit_prompt(workflow)
    except ComfyRequestError as e:
        run = _mark_failed(store, run_id, e.kind)
        raise RunSubmissionFailed(run, e.kind, e.details) from e
    except asyncio.CancelledError:
        _mark_failed(store, run_id, "cancelled")
        raise
    except Exception as e:
        logger.exception("Submitting run %s failed", run_id)
        run = _mark_failed(store, run_id, "unreachable")
        raise RunSubmissionFailed(run, "unreachable", {"error": str(e)}) from e

    if isinstance(data, dict) and data.get("error"):
        message = _prompt_error_message(data["error"])
        run = _mark_failed(store, run_id, message)
        raise RunSubmissionFailed(run, message, {"node_errors": data.get("node_errors")})

    prompt_id = str(data["prompt_id"]) if isinstance(data, dict) and data.get("prompt_id") else ""
    if not prompt_id:
        run = _mark_failed(store, run_id, "prompt_id_missing")
        raise RunSubmissionFailed(run, "prompt_id_missing")

    now = utcnow()
    run = store.update(
        run_id,
        status=RunStatus.queued,
        prompt_id=prompt_id,
        started_at=now,
        now=now,
    )
    logger.info("Run %s queued as prompt %s", run_id, prompt_id)
    return run
