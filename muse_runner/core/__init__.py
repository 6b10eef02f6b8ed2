"""Core module containing framework-agnostic business logic."""
from .errors import (
    RunnerError,
    TemplateError,
    TemplateInvalid,
    TemplateNodeMissing,
    InitImageRequired,
    RunRequestInvalid,
    WorkflowPrepareFailed,
    RunNotFound,
    PromptIdRequired,
    RunSubmissionFailed,
    ComfyRequestError,
)
from .settings import Settings, get_settings, reset_settings
from .comfy_client import ComfyClient, get_client, set_client
from .templates import (
    NodeRoles,
    TemplateDefaults,
    read_workflow_template,
    extract_template_defaults,
    get_template_defaults,
    get_refine_defaults,
)
from .patcher import RunMode, LoraEntry, SamplerOverrides, PatchParams, patch_workflow
from .outputs import OutputImage, classify_output_nodes, extract_history_outputs
from .runs import Run, RunStatus, RunStore, get_store, set_store
from .submitter import RunRequest, create_run
from .reconciler import refresh_run, decide_status
from .gallery_sync import GalleryItem, InMemoryGallerySink, get_gallery_sink, set_gallery_sink
from .handlers import (
    ApiResponse,
    CreateRunParams,
    RecipeRunParams,
    handle_health,
    handle_create_run,
    handle_create_recipe_run,
    handle_list_runs,
    handle_get_run,
    handle_delete_run,
    handle_refresh_run,
    handle_get_queue,
    handle_view,
    handle_get_options,
)

__all__ = [
    # Errors
    "RunnerError",
    "TemplateError",
    "TemplateInvalid",
    "TemplateNodeMissing",
    "InitImageRequired",
    "RunRequestInvalid",
    "WorkflowPrepareFailed",
    "RunNotFound",
    "PromptIdRequired",
    "RunSubmissionFailed",
    "ComfyRequestError",
    # Settings & client
    "Settings",
    "get_settings",
    "reset_settings",
    "ComfyClient",
    "get_client",
    "set_client",
    # Templates & patching
    "NodeRoles",
    "TemplateDefaults",
    "read_workflow_template",
    "extract_template_defaults",
    "get_template_defaults",
    "get_refine_defaults",
    "RunMode",
    "LoraEntry",
    "SamplerOverrides",
    "PatchParams",
    "patch_workflow",
    # Outputs
    "OutputImage",
    "classify_output_nodes",
    "extract_history_outputs",
    # Runs
    "Run",
    "RunStatus",
    "RunStore",
    "get_store",
    "set_store",
    "RunRequest",
    "create_run",
    "refresh_run",
    "decide_status",
    # Gallery
    "GalleryItem",
    "InMemoryGallerySink",
    "get_gallery_sink",
    "set_gallery_sink",
    # Handlers
    "ApiResponse",
    "CreateRunParams",
    "RecipeRunParams",
    "handle_health",
    "handle_create_run",
    "handle_create_recipe_run",
    "handle_list_runs",
    "handle_get_run",
    "handle_delete_run",
    "handle_refresh_run",
    "handle_get_queue",
    "handle_view",
    "handle_get_options",
]
