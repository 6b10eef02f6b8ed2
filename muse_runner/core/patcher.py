"""Apply run parameters to a workflow template.

``patch_workflow`` never touches the template it is given: it copies it and
returns the patched graph, so one parsed template can back any number of
runs.
"""
import copy
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .templates import NodeRoles, get_node_inputs

MAX_LORA_SLOTS = 50
EMPTY_LORA_NAME = "None"


class RunMode(str, Enum):
    primary = "primary"
    refine = "refine"


@dataclass
class LoraEntry:
    name: str
    weight: float = 1.0
    enabled: bool = True

    def to_dict(self) -> dict:
        return {"name": self.name, "weight": self.weight, "enabled": self.enabled}


@dataclass
class SamplerOverrides:
    steps: Optional[int] = None
    cfg: Optional[float] = None
    sampler: Optional[str] = None
    sampler_name: Optional[str] = None
    scheduler: Optional[str] = None
    seed: Optional[int] = None
    denoise: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            key: value
            for key, value in {
                "steps": self.steps,
                "cfg": self.cfg,
                "sampler": self.sampler,
                "sampler_name": self.sampler_name,
                "scheduler": self.scheduler,
                "seed": self.seed,
                "denoise": self.denoise,
            }.items()
            if value is not None
        }


@dataclass
class PatchParams:
    """Everything the patcher writes into a template."""
    mode: RunMode
    positive: str
    negative: str
    ckpt_name: str
    width: int = 0
    height: int = 0
    loras: list[LoraEntry] = field(default_factory=list)
    controlnet_enabled: bool = False
    controlnet_model: Optional[str] = None
    preprocessor_enabled: bool = False
    preprocessor: Optional[str] = None
    controlnet_strength: Optional[float] = None
    ksampler: Optional[SamplerOverrides] = None
    controlnet_image_name: Optional[str] = None
    init_image_name: Optional[str] = None


def _finite_or(value: Any, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def update_lora_stack(inputs: dict[str, Any], loras: list[LoraEntry]) -> None:
    """Rewrite every LoRA slot of a stacker node.

    Enabled entries fill the low slots; all remaining slots up to
    MAX_LORA_SLOTS are reset to ("None", 1) so nothing from the template or
    a previous run survives.
    """
    enabled = [entry for entry in loras if entry.enabled and entry.name.strip()]
    existing_count = max(0, int(_finite_or(inputs.get("lora_count"), 0)))
    lora_count = min(max(existing_count, len(enabled)), MAX_LORA_SLOTS)
    if lora_count > 0:
        inputs["lora_count"] = lora_count

    for i in range(1, MAX_LORA_SLOTS + 1):
        entry = enabled[i - 1] if i <= len(enabled) else None
        if entry is not None:
            inputs[f"lora_name_{i}"] = entry.name
            inputs[f"lora_wt_{i}"] = _finite_or(entry.weight, 1)
        else:
            inputs[f"lora_name_{i}"] = EMPTY_LORA_NAME
            inputs[f"lora_wt_{i}"] = 1


def _apply_sampler(inputs: dict[str, Any], overrides: SamplerOverrides, mode: RunMode) -> None:
    if overrides.steps is not None:
        inputs["steps"] = overrides.steps
    if overrides.cfg is not None:
        inputs["cfg"] = overrides.cfg
    if overrides.scheduler is not None:
        inputs["scheduler"] = overrides.scheduler
    if overrides.seed is not None:
        inputs["seed"] = overrides.seed
    if overrides.denoise is not None and mode == RunMode.refine:
        inputs["denoise"] = overrides.denoise
    if overrides.sampler_name:
        inputs["sampler_name"] = overrides.sampler_name
    elif overrides.sampler:
        inputs["sampler_name"] = overrides.sampler


def patch_workflow(
    template: dict[str, Any],
    params: PatchParams,
    roles: NodeRoles = NodeRoles(),
) -> dict[str, Any]:
    """Return a copy of ``template`` with ``params`` applied.

    Raises TemplateNodeMissing if any node the parameters need is absent;
    no partial result is returned in that case.
    """
    workflow = copy.deepcopy(template)

    loader_id = roles.refine_loader if params.mode == RunMode.refine else roles.primary_loader
    loader = get_node_inputs(workflow, loader_id, "Efficient Loader")
    loader["ckpt_name"] = params.ckpt_name
    loader["positive"] = params.positive
    loader["negative"] = params.negative
    if params.mode == RunMode.primary:
        loader["empty_latent_width"] = params.width
        loader["empty_latent_height"] = params.height

    update_lora_stack(get_node_inputs(workflow, roles.lora_stack, "LoRA Stacker"), params.loras)

    if params.ksampler is not None:
        sampler = get_node_inputs(workflow, roles.sampler, "KSampler (Efficient)")
        _apply_sampler(sampler, params.ksampler, params.mode)

    if params.mode == RunMode.refine and params.init_image_name:
        init_image = get_node_inputs(workflow, roles.init_image, "LoadImage (init)")
        init_image["image"] = params.init_image_name

    stacker = get_node_inputs(workflow, roles.control_stacker, "Control Net Stacker")
    if not params.controlnet_enabled:
        # strength 0 is how a disabled control branch is encoded
        stacker["strength"] = 0
        return workflow

    control_loader = get_node_inputs(workflow, roles.control_loader, "ControlNetLoader")
    if params.controlnet_model:
        control_loader["control_net_name"] = params.controlnet_model

    if params.preprocessor_enabled and params.preprocessor:
        selector = get_node_inputs(
            workflow, roles.preprocessor_selector, "ControlNetPreprocessorSelector"
        )
        selector["preprocessor"] = params.preprocessor

    if params.controlnet_strength is not None:
        stacker["strength"] = params.controlnet_strength

    if params.controlnet_image_name:
        control_image = get_node_inputs(workflow, roles.control_image, "LoadImage")
        control_image["image"] = params.controlnet_image_name

    return workflow
