"""Framework-agnostic request handlers for the runner API.

These handlers hold the request-level logic (decoding, error mapping) and
return an ``ApiResponse``; the FastAPI app only adapts them to HTTP.
"""
import binascii
import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Union

from .comfy_client import get_client
from .errors import (
    ComfyRequestError,
    InitImageRequired,
    PromptIdRequired,
    RunNotFound,
    RunRequestInvalid,
    RunSubmissionFailed,
    TemplateError,
    WorkflowPrepareFailed,
)
from .inputs import InputImage
from .options import get_runner_options
from .patcher import LoraEntry, RunMode, SamplerOverrides
from .reconciler import refresh_run
from .recipes import build_recipe_run
from .runs import get_store
from .submitter import RunRequest, create_run
from .templates import get_template_defaults

logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    """Standard API response wrapper."""
    data: dict
    status: int = 200


@dataclass
class CreateRunParams:
    """Parameters for a direct run."""
    positive: str
    negative: str = ""
    ckpt_name: str = ""
    width: int = 0
    height: int = 0
    mode: Optional[str] = None
    loras: list[dict] = field(default_factory=list)
    controlnet_enabled: bool = False
    controlnet_model: Optional[str] = None
    preprocessor_enabled: bool = False
    preprocessor: Optional[str] = None
    controlnet_strength: Optional[float] = None
    ksampler: Optional[dict] = None
    init_image: Optional[str] = None  # base64 or data URL
    controlnet_image: Optional[str] = None  # base64 or data URL


@dataclass
class RecipeRunParams:
    """A recipe document plus its LoRA links."""
    recipe: dict
    loras: list[dict] = field(default_factory=list)


def _error(message: str, status: int, **extra) -> ApiResponse:
    data = {"error": message}
    data.update({key: value for key, value in extra.items() if value})
    return ApiResponse(data=data, status=status)


def _submission_error(e: RunSubmissionFailed) -> ApiResponse:
    cause = e.__cause__
    status = cause.http_status if isinstance(cause, ComfyRequestError) else 502
    return _error(e.message, status, run=e.run.to_dict(), details=e.details)


def _decode_image(value: Optional[str], name: str) -> Optional[InputImage]:
    if not value:
        return None
    try:
        return InputImage.from_base64(value)
    except (binascii.Error, ValueError) as e:
        raise RunRequestInvalid([f"{name} is not valid base64"]) from e


def build_run_request(params: CreateRunParams) -> RunRequest:
    """Map API parameters onto a RunRequest.

    Mode defaults to refine when an init image is attached.
    """
    if params.mode:
        try:
            mode = RunMode(params.mode)
        except ValueError as e:
            raise RunRequestInvalid([f"unknown mode {params.mode!r}"]) from e
    else:
        mode = RunMode.refine if params.init_image else RunMode.primary

    ksampler = None
    if params.ksampler:
        known = SamplerOverrides.__dataclass_fields__
        ksampler = SamplerOverrides(**{k: v for k, v in params.ksampler.items() if k in known})

    return RunRequest(
        positive=params.positive,
        negative=params.negative,
        ckpt_name=params.ckpt_name,
        width=params.width,
        height=params.height,
        mode=mode,
        loras=[
            LoraEntry(
                name=str(entry.get("name", "")),
                weight=float(entry.get("weight", 1.0)),
                enabled=bool(entry.get("enabled", True)),
            )
            for entry in params.loras
        ],
        controlnet_enabled=params.controlnet_enabled,
        controlnet_model=params.controlnet_model,
        preprocessor_enabled=params.preprocessor_enabled,
        preprocessor=params.preprocessor,
        controlnet_strength=params.controlnet_strength,
        ksampler=ksampler,
    )


async def handle_health() -> ApiResponse:
    """Handle health check request."""
    return ApiResponse(data={"status": "ok"})


async def handle_create_run(params: CreateRunParams) -> ApiResponse:
    """Create and submit a run.

    Returns:
        ApiResponse with the run (201), or an error: 400 for invalid input,
        500 when the template cannot be prepared, 502/504 when ComfyUI
        rejects or cannot be reached (the failed run is included).
    """
    try:
        request = build_run_request(params)
        run = await create_run(
            request,
            init_image=_decode_image(params.init_image, "initImage"),
            controlnet_image=_decode_image(params.controlnet_image, "controlnetImage"),
        )
    except (RunRequestInvalid, InitImageRequired) as e:
        return _error(str(e), 400)
    except WorkflowPrepareFailed as e:
        logger.error("Workflow prepare failed: %s", e)
        return _error("Failed to prepare workflow", 500, details={"error": str(e.cause)})
    except RunSubmissionFailed as e:
        return _submission_error(e)
    return ApiResponse(data={"run": run.to_dict()}, status=201)


async def handle_create_recipe_run(params: RecipeRunParams) -> ApiResponse:
    """Create a run from a recipe, falling back to template defaults."""
    try:
        defaults = get_template_defaults()
    except TemplateError as e:
        logger.error("Failed to build recipe run: %s", e)
        return _error("Failed to build recipe run", 500, details={"error": str(e)})

    recipe_run = build_recipe_run(params.recipe, params.loras, defaults)
    recipe_id = params.recipe.get("id")
    try:
        run = await create_run(
            recipe_run.request,
            init_image_name=recipe_run.init_image_name,
            controlnet_image_name=recipe_run.controlnet_image_name,
            recipe_id=str(recipe_id) if recipe_id else None,
            recipe_snapshot=recipe_run.recipe_snapshot,
        )
    except (RunRequestInvalid, InitImageRequired) as e:
        return _error(str(e), 400)
    except WorkflowPrepareFailed as e:
        return _error("Failed to prepare workflow", 500, details={"error": str(e.cause)})
    except RunSubmissionFailed as e:
        return _submission_error(e)
    return ApiResponse(data={"run": run.to_dict()}, status=201)


async def handle_list_runs(recipe_id: Optional[str] = None) -> ApiResponse:
    runs = get_store().list(recipe_id)
    return ApiResponse(data={"runs": [run.to_dict() for run in runs]})


async def handle_get_run(run_id: str) -> ApiResponse:
    run = get_store().get(run_id)
    if not run:
        return _error("Run not found", 404)
    return ApiResponse(data={"run": run.to_dict()})


async def handle_delete_run(run_id: str) -> ApiResponse:
    if not get_store().delete(run_id):
        return _error("Run not found", 404)
    return ApiResponse(data={"deleted": True})


async def handle_refresh_run(run_id: str) -> ApiResponse:
    """Run one reconciliation pass.

    Returns:
        ApiResponse with the run and its outputs, or 404/400/502/504.
    """
    try:
        run, outputs = await refresh_run(run_id)
    except RunNotFound:
        return _error("Run not found", 404)
    except PromptIdRequired as e:
        return _error(str(e), 400)
    except ComfyRequestError as e:
        return _error(e.kind, e.http_status, details=e.details)
    return ApiResponse(data={
        "run": run.to_dict(),
        "outputs": [output.to_dict() for output in outputs],
    })


async def handle_get_queue() -> ApiResponse:
    try:
        data = await get_client().get_queue()
    except ComfyRequestError as e:
        return _error(e.kind, e.http_status, details=e.details)
    return ApiResponse(data={"queue": data})


def _invalid_filename(filename: str) -> bool:
    return (
        ".." in filename
        or "/" in filename
        or "\\" in filename
        or filename != os.path.basename(filename)
    )


async def handle_view(
    filename: Optional[str],
    subfolder: Optional[str] = None,
    image_type: Optional[str] = None,
) -> Union[tuple[bytes, str], ApiResponse]:
    """Proxy an artifact from ComfyUI.

    Returns:
        tuple of (body, media_type) on success, or ApiResponse with error.
    """
    filename = (filename or "").strip()
    if not filename:
        return _error("filename is required", 400)
    if _invalid_filename(filename):
        return _error("Invalid filename", 400)

    try:
        body, content_type = await get_client().view(
            filename,
            subfolder=(subfolder or "").strip() or None,
            image_type=(image_type or "").strip() or None,
        )
    except ComfyRequestError as e:
        return _error(e.kind, e.http_status, details=e.details)
    return body, content_type or "application/octet-stream"


async def handle_get_options() -> ApiResponse:
    """Choice lists for the runner form. 502 when no lookup succeeded."""
    options = await get_runner_options()
    if not options.available:
        return _error("options_unavailable", 502, partialErrors=options.partial_errors)
    return ApiResponse(data=options.to_dict())
