"""Hand resolved run outputs to the gallery indexer."""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from .outputs import OutputImage
from .runs import Run

logger = logging.getLogger(__name__)


@dataclass
class GalleryItem:
    comfy_run_id: str
    prompt_id: Optional[str]
    filename: str
    subfolder: Optional[str]
    file_type: Optional[str]
    width: Optional[float]
    height: Optional[float]
    ckpt_name: Optional[str]
    lora_names: Optional[list[str]]
    positive: Optional[str]
    negative: Optional[str]
    recipe_id: Optional[str]
    created_at: Optional[datetime]
    meta: dict[str, Any] = field(default_factory=dict)
    source_type: str = "comfy_run"
    needs_review: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data


class GallerySink(Protocol):
    async def upsert(self, items: list[GalleryItem]) -> None: ...


class InMemoryGallerySink:
    """Keeps gallery items keyed by (run id, filename)."""

    def __init__(self):
        self.items: dict[tuple[str, str], GalleryItem] = {}

    async def upsert(self, items: list[GalleryItem]) -> None:
        for item in items:
            self.items[(item.comfy_run_id, item.filename)] = item


def _string_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _number_or_none(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _lora_names(value: Any) -> Optional[list[str]]:
    if not isinstance(value, list):
        return None
    names: list[str] = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        if not entry.get("enabled", True):
            continue
        name = _string_or_none(entry.get("name") or entry.get("lora_name"))
        if name and name not in names:
            names.append(name)
    return names or None


def _request_summary(request: dict) -> dict:
    controlnet = {
        "enabled": request.get("controlnet_enabled"),
        "model": _string_or_none(request.get("controlnet_model")),
        "preprocessor_enabled": request.get("preprocessor_enabled"),
        "preprocessor": _string_or_none(request.get("preprocessor")),
        "strength": _number_or_none(request.get("controlnet_strength")),
    }
    summary = {
        "mode": _string_or_none(request.get("mode")),
        "controlnet": {k: v for k, v in controlnet.items() if v is not None},
        "ksampler": request.get("ksampler"),
        "init_image": _string_or_none(request.get("init_image")),
        "controlnet_image": _string_or_none(request.get("controlnet_image")),
    }
    return {k: v for k, v in summary.items() if v is not None}


def build_gallery_items(run: Run, outputs: list[OutputImage]) -> list[GalleryItem]:
    """One gallery item per output, carrying the run's request metadata."""
    if not outputs:
        return []
    request = run.request_json if isinstance(run.request_json, dict) else {}
    meta = {
        "request": _request_summary(request),
        "history": {"outputs_count": len(outputs)},
    }
    created_at = run.finished_at or run.updated_at or run.created_at
    return [
        GalleryItem(
            comfy_run_id=run.id,
            prompt_id=run.prompt_id,
            filename=output.filename,
            subfolder=output.subfolder,
            file_type=output.type,
            width=_number_or_none(request.get("width")),
            height=_number_or_none(request.get("height")),
            ckpt_name=_string_or_none(request.get("ckpt_name")),
            lora_names=_lora_names(request.get("loras")),
            positive=_string_or_none(request.get("positive")),
            negative=_string_or_none(request.get("negative")),
            recipe_id=run.recipe_id,
            created_at=created_at,
            meta=meta,
        )
        for output in outputs
    ]


async def sync_run_outputs(sink: GallerySink, run: Run, outputs: list[OutputImage]) -> bool:
    """Push outputs to the sink. Failures are logged, never raised."""
    try:
        await sink.upsert(build_gallery_items(run, outputs))
        return True
    except Exception:
        logger.exception("Gallery sync failed for run %s", run.id)
        return False


_sink: Optional[GallerySink] = None


def get_gallery_sink() -> GallerySink:
    global _sink
    if _sink is None:
        _sink = InMemoryGallerySink()
    return _sink


def set_gallery_sink(sink: Optional[GallerySink]) -> None:
    global _sink
    _sink = sink
