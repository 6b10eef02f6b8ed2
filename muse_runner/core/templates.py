"""Workflow template store.

Loads prompt-graph templates from disk, resolves which node id plays which
role, and extracts the default parameter values the runner UI starts from.

Defaults are cached for the life of the process (see ``ProcessCache``);
editing a template on disk requires a restart to be reflected.
"""
import json
import logging
import math
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from .caches import ProcessCache
from .errors import TemplateInvalid, TemplateNodeMissing
from .settings import get_settings

logger = logging.getLogger(__name__)

ROLES_SUFFIX = ".roles.json"


@dataclass(frozen=True)
class NodeRoles:
    """Role -> node id mapping for a template pair."""
    primary_loader: str = "91"
    refine_loader: str = "122"
    lora_stack: str = "92"
    control_loader: str = "83"
    preprocessor_selector: str = "112"
    control_stacker: str = "104"
    sampler: str = "3"
    control_image: str = "114"
    init_image: str = "117"

    @classmethod
    def from_mapping(cls, mapping: dict) -> "NodeRoles":
        known = {f.name for f in fields(cls)}
        overrides = {
            key: str(value)
            for key, value in mapping.items()
            if key in known and value is not None and str(value).strip()
        }
        return cls(**overrides)

    @classmethod
    def for_template(cls, template_path: Path) -> "NodeRoles":
        """Read ``<template>.roles.json`` next to the template, if any."""
        sidecar = Path(template_path).with_suffix(ROLES_SUFFIX)
        if not sidecar.exists():
            return cls()
        with open(sidecar, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise TemplateInvalid(str(sidecar), "roles file is not an object")
        return cls.from_mapping(data)


def read_workflow_template(path: Path) -> dict[str, Any]:
    """Read and parse a template graph. Raises TemplateInvalid."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise TemplateInvalid(str(path), f"read failed: {e}")
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        raise TemplateInvalid(str(path), f"invalid json: {e}")
    if not isinstance(parsed, dict):
        raise TemplateInvalid(str(path))
    return parsed


def get_node_inputs(workflow: dict, node_id: str, label: str) -> dict[str, Any]:
    """Return the inputs mapping of ``node_id`` or raise TemplateNodeMissing."""
    node = workflow.get(node_id)
    if not isinstance(node, dict) or not isinstance(node.get("inputs"), dict):
        raise TemplateNodeMissing(node_id, label)
    return node["inputs"]


def to_number(value: Any, fallback: float = 0) -> float:
    """Coerce to a finite number, else ``fallback``."""
    if isinstance(value, bool):
        return float(value)
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if math.isfinite(parsed) else fallback


def to_string(value: Any) -> str:
    return value if isinstance(value, str) else ""


@dataclass
class LoaderDefaults:
    ckpt_name: str
    positive: str
    negative: str
    width: int
    height: int


@dataclass
class LoraDefault:
    name: str
    weight: float


@dataclass
class ControlnetDefaults:
    model_name: str
    preprocessor: str
    strength: float
    enabled: bool
    image_name: Optional[str]


@dataclass
class SamplerDefaults:
    steps: int
    cfg: float
    sampler_name: str
    scheduler: str
    denoise: float
    seed: int = -1


@dataclass
class TemplateDefaults:
    loader: LoaderDefaults
    loras: list[LoraDefault] = field(default_factory=list)
    controlnet: Optional[ControlnetDefaults] = None
    sampler: Optional[SamplerDefaults] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RefineDefaults:
    denoise: float

    def to_dict(self) -> dict:
        return asdict(self)


def extract_template_defaults(workflow: dict, roles: NodeRoles = NodeRoles()) -> TemplateDefaults:
    loader = get_node_inputs(workflow, roles.primary_loader, "Efficient Loader")
    lora_stack = get_node_inputs(workflow, roles.lora_stack, "LoRA Stacker")
    control_loader = get_node_inputs(workflow, roles.control_loader, "ControlNetLoader")
    selector = get_node_inputs(workflow, roles.preprocessor_selector, "ControlNetPreprocessorSelector")
    stacker = get_node_inputs(workflow, roles.control_stacker, "Control Net Stacker")
    sampler = get_node_inputs(workflow, roles.sampler, "KSampler (Efficient)")
    control_image = get_node_inputs(workflow, roles.control_image, "LoadImage")

    lora_count = max(0, int(to_number(lora_stack.get("lora_count"), 0)))
    loras = [
        LoraDefault(
            name=to_string(lora_stack.get(f"lora_name_{i}")),
            weight=to_number(lora_stack.get(f"lora_wt_{i}"), 1),
        )
        for i in range(1, lora_count + 1)
    ]

    strength = to_number(stacker.get("strength"), 0)

    return TemplateDefaults(
        loader=LoaderDefaults(
            ckpt_name=to_string(loader.get("ckpt_name")),
            positive=to_string(loader.get("positive")),
            negative=to_string(loader.get("negative")),
            width=int(to_number(loader.get("empty_latent_width"), 0)),
            height=int(to_number(loader.get("empty_latent_height"), 0)),
        ),
        loras=loras,
        controlnet=ControlnetDefaults(
            model_name=to_string(control_loader.get("control_net_name")),
            preprocessor=to_string(selector.get("preprocessor")),
            strength=strength,
            enabled=strength > 0,
            image_name=to_string(control_image.get("image")) or None,
        ),
        sampler=SamplerDefaults(
            steps=int(to_number(sampler.get("steps"), 0)),
            cfg=to_number(sampler.get("cfg"), 0),
            sampler_name=to_string(sampler.get("sampler_name") or sampler.get("sampler")),
            scheduler=to_string(sampler.get("scheduler")),
            denoise=to_number(sampler.get("denoise"), 0),
        ),
    )


def extract_refine_defaults(workflow: dict, roles: NodeRoles = NodeRoles()) -> RefineDefaults:
    sampler = get_node_inputs(workflow, roles.sampler, "KSampler (Efficient)")
    return RefineDefaults(denoise=to_number(sampler.get("denoise"), 0))


def _load_template_defaults() -> TemplateDefaults:
    path = get_settings().text2i_template_path
    defaults = extract_template_defaults(read_workflow_template(path), NodeRoles.for_template(path))
    logger.info("Loaded template defaults from %s", path)
    return defaults


def _load_refine_defaults() -> RefineDefaults:
    path = get_settings().image2i_template_path
    return extract_refine_defaults(read_workflow_template(path), NodeRoles.for_template(path))


template_defaults_cache: ProcessCache[TemplateDefaults] = ProcessCache(_load_template_defaults)
refine_defaults_cache: ProcessCache[RefineDefaults] = ProcessCache(_load_refine_defaults)


def get_template_defaults() -> TemplateDefaults:
    return template_defaults_cache.get()


def get_refine_defaults() -> RefineDefaults:
    return refine_defaults_cache.get()
