"""FastAPI application for the Muse ComfyUI runner.

REST endpoints over the framework-agnostic handlers in ``muse_runner.core``.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from muse_runner.core.comfy_client import get_client
from muse_runner.core.handlers import (
    ApiResponse,
    CreateRunParams,
    RecipeRunParams,
    handle_create_recipe_run,
    handle_create_run,
    handle_delete_run,
    handle_get_options,
    handle_get_queue,
    handle_get_run,
    handle_health,
    handle_list_runs,
    handle_refresh_run,
    handle_view,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    yield
    await get_client().close()


app = FastAPI(title="Muse Comfy Runner", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request Models (Pydantic for FastAPI validation)

class LoraRequest(BaseModel):
    name: str
    weight: float = 1.0
    enabled: bool = True


class KSamplerRequest(BaseModel):
    steps: Optional[int] = Field(default=None, ge=1, le=200)
    cfg: Optional[float] = Field(default=None, ge=0, le=100)
    sampler: Optional[str] = None
    sampler_name: Optional[str] = None
    scheduler: Optional[str] = None
    seed: Optional[int] = Field(default=None, ge=-1)
    denoise: Optional[float] = Field(default=None, ge=0, le=1)


class RunCreateRequest(BaseModel):
    positive: str
    negative: str = ""
    ckpt_name: str = Field(min_length=1)
    width: int = Field(ge=64, le=8192)
    height: int = Field(ge=64, le=8192)
    mode: Optional[str] = None  # "primary" | "refine"
    loras: list[LoraRequest] = []
    controlnet_enabled: bool = False
    controlnet_model: Optional[str] = None
    preprocessor_enabled: bool = False
    preprocessor: Optional[str] = None
    controlnet_strength: Optional[float] = Field(default=None, ge=0, le=2)
    ksampler: Optional[KSamplerRequest] = None
    init_image: Optional[str] = None  # Base64 or data URL
    controlnet_image: Optional[str] = None  # Base64 or data URL


class RecipeRunRequest(BaseModel):
    recipe: dict
    loras: list[dict] = []


def _raise_for_status(resp: ApiResponse) -> dict:
    if resp.status >= 400:
        raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
    return resp.data


@app.get("/api/health")
async def health():
    resp = await handle_health()
    return resp.data


# ComfyUI passthrough

@app.get("/api/comfy/options")
async def get_options():
    """Checkpoint, LoRA, control model and preprocessor choices plus template defaults."""
    return _raise_for_status(await handle_get_options())


@app.get("/api/comfy/queue")
async def get_queue():
    return _raise_for_status(await handle_get_queue())


@app.get("/api/comfy/view")
async def view(filename: Optional[str] = None, subfolder: Optional[str] = None, type: Optional[str] = None):
    """Proxy an output image from ComfyUI."""
    result = await handle_view(filename, subfolder, type)
    if isinstance(result, ApiResponse):
        raise HTTPException(status_code=result.status, detail=result.data.get("error"))
    body, media_type = result
    return Response(content=body, media_type=media_type, headers={"Cache-Control": "no-store"})


# Run Endpoints

@app.post("/api/comfy/runs", status_code=201)
async def create_run(request: RunCreateRequest):
    """Create a run and submit it to ComfyUI."""
    params = CreateRunParams(
        positive=request.positive,
        negative=request.negative,
        ckpt_name=request.ckpt_name,
        width=request.width,
        height=request.height,
        mode=request.mode,
        loras=[l.model_dump() for l in request.loras] if request.loras else [],
        controlnet_enabled=request.controlnet_enabled,
        controlnet_model=request.controlnet_model,
        preprocessor_enabled=request.preprocessor_enabled,
        preprocessor=request.preprocessor,
        controlnet_strength=request.controlnet_strength,
        ksampler=request.ksampler.model_dump(exclude_none=True) if request.ksampler else None,
        init_image=request.init_image,
        controlnet_image=request.controlnet_image,
    )
    return _raise_for_status(await handle_create_run(params))


@app.post("/api/comfy/recipe-runs", status_code=201)
async def create_recipe_run(request: RecipeRunRequest):
    """Create a run from a recipe document."""
    params = RecipeRunParams(recipe=request.recipe, loras=request.loras)
    return _raise_for_status(await handle_create_recipe_run(params))


@app.get("/api/comfy/runs")
async def list_runs(recipe_id: Optional[str] = None):
    return _raise_for_status(await handle_list_runs(recipe_id))


@app.get("/api/comfy/runs/{run_id}")
async def get_run(run_id: str):
    return _raise_for_status(await handle_get_run(run_id))


@app.delete("/api/comfy/runs/{run_id}")
async def delete_run(run_id: str):
    return _raise_for_status(await handle_delete_run(run_id))


@app.post("/api/comfy/runs/{run_id}/refresh")
async def refresh_run(run_id: str):
    """Poll ComfyUI once and update the run's status."""
    return _raise_for_status(await handle_refresh_run(run_id))
