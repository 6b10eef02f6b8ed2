"""Turn a saved recipe into run parameters."""
import math
from dataclasses import dataclass
from typing import Any, Optional

from .patcher import LoraEntry, RunMode, SamplerOverrides
from .submitter import RunRequest
from .templates import TemplateDefaults

COMFY_CONFIG_KEYS = ("comfy", "comfyRun", "comfy_run", "comfyParams", "comfy_params")
TRUE_STRINGS = {"true", "1", "yes", "on"}
FALSE_STRINGS = {"false", "0", "no", "off"}


@dataclass
class RecipeRun:
    request: RunRequest
    init_image_name: Optional[str]
    controlnet_image_name: Optional[str]
    recipe_snapshot: dict


def as_record(value: Any) -> Optional[dict]:
    return value if isinstance(value, dict) else None


def read_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def read_number(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def read_bool(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in TRUE_STRINGS:
            return True
        if normalized in FALSE_STRINGS:
            return False
    return None


def first_present(record: dict, *keys: str) -> Any:
    """Value of the first key that is present and not None."""
    for key in keys:
        if record.get(key) is not None:
            return record[key]
    return None


def recipe_comfy_config(variables: Any) -> dict:
    record = as_record(variables)
    if record is None:
        return {}
    for key in COMFY_CONFIG_KEYS:
        nested = as_record(record.get(key))
        if nested is not None:
            return nested
    return record


def _sampler_overrides(config: dict) -> Optional[SamplerOverrides]:
    steps = read_number(config.get("steps"))
    seed = read_number(config.get("seed"))
    overrides = SamplerOverrides(
        steps=int(steps) if steps is not None else None,
        cfg=read_number(config.get("cfg")),
        sampler_name=read_string(first_present(config, "sampler_name", "sampler")),
        scheduler=read_string(config.get("scheduler")),
        seed=int(seed) if seed is not None else None,
        denoise=read_number(config.get("denoise")),
    )
    return overrides if overrides.to_dict() else None


def _recipe_loras(links: list[dict]) -> list[LoraEntry]:
    loras = []
    for link in links:
        name = read_string(first_present(link, "lora_name", "name"))
        if not name:
            continue
        # An explicit null weight disables the LoRA; a missing one means full weight.
        if "weight" in link and link["weight"] is None:
            weight = 0.0
        else:
            weight = read_number(link.get("weight"))
        loras.append(LoraEntry(name=name, weight=1.0 if weight is None else weight))
    return loras


def build_recipe_run(recipe: dict, recipe_loras: list[dict], defaults: TemplateDefaults) -> RecipeRun:
    """Build run parameters, filling every gap from the template defaults.

    Refine mode is chosen when the recipe names the image2i workflow or mode,
    turns i2i on, or carries an init image.
    """
    prompt_blocks = as_record(recipe.get("prompt_blocks")) or {}
    variables = recipe_comfy_config(recipe.get("variables"))
    controlnet = as_record(variables.get("controlnet")) or {}
    i2i = as_record(variables.get("i2i")) or as_record(variables.get("image2i")) or {}
    advanced = as_record(variables.get("advanced")) or {}
    ksampler = as_record(variables.get("ksampler")) or as_record(advanced.get("ksampler")) or advanced

    loader = defaults.loader
    control_defaults = defaults.controlnet

    init_image_name = read_string(
        first_present(i2i, "initImage", "image") or first_present(variables, "initImage", "init_image")
    )
    mode_hint = read_string(variables.get("mode"))
    workflow_hint = read_string(first_present(variables, "workflowId", "workflow_id", "workflow"))
    i2i_enabled = i2i.get("enabled")
    if i2i_enabled is None:
        i2i_enabled = first_present(variables, "i2iEnabled", "image2iEnabled", "useImage2i")
    use_refine = (
        workflow_hint == "base_image2i"
        or mode_hint in ("image2i", "i2i", RunMode.refine.value)
        or bool(read_bool(i2i_enabled))
        or bool(init_image_name)
    )

    def control_value(*keys: str, variable_keys: tuple = ()) -> Any:
        value = first_present(controlnet, *keys)
        return value if value is not None else first_present(variables, *variable_keys)

    controlnet_enabled = read_bool(control_value("enabled", variable_keys=("controlnetEnabled", "controlnet_enabled")))
    if controlnet_enabled is None:
        controlnet_enabled = control_defaults.enabled if control_defaults else False
    controlnet_model = read_string(
        control_value("model", "modelName", variable_keys=("controlnetModel", "controlnet_model"))
    ) or (control_defaults.model_name if control_defaults else None)
    preprocessor_enabled = read_bool(
        control_value("preprocessorEnabled", variable_keys=("preprocessorEnabled", "preprocessor_enabled"))
    ) or False
    preprocessor = read_string(control_value("preprocessor", variable_keys=("preprocessor",))) or (
        control_defaults.preprocessor if control_defaults else None
    )
    controlnet_strength = read_number(
        control_value("strength", variable_keys=("controlnetStrength", "controlnet_strength"))
    )
    if controlnet_strength is None and control_defaults:
        controlnet_strength = control_defaults.strength
    controlnet_image_name = read_string(
        control_value("image", "imageName", variable_keys=("controlnetImage", "controlnet_image"))
    ) or (control_defaults.image_name if control_defaults else None)

    loras = _recipe_loras(recipe_loras) or [
        LoraEntry(name=item.name, weight=item.weight) for item in defaults.loras
    ]

    request = RunRequest(
        positive=read_string(prompt_blocks.get("positive")) or loader.positive,
        negative=read_string(prompt_blocks.get("negative")) or loader.negative,
        ckpt_name=loader.ckpt_name,
        width=int(loader.width),
        height=int(loader.height),
        mode=RunMode.refine if use_refine else RunMode.primary,
        loras=loras,
        controlnet_enabled=controlnet_enabled,
        controlnet_model=controlnet_model or None,
        preprocessor_enabled=preprocessor_enabled,
        preprocessor=preprocessor or None,
        controlnet_strength=controlnet_strength,
        ksampler=_sampler_overrides(ksampler),
    )
    return RecipeRun(
        request=request,
        init_image_name=init_image_name,
        controlnet_image_name=controlnet_image_name,
        recipe_snapshot={"recipe": recipe, "loras": recipe_loras},
    )
