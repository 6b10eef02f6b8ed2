"""Choice lists for the runner form, read from ComfyUI's node catalog."""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from cachetools import TTLCache

from .comfy_client import ComfyClient, get_client
from .errors import ComfyRequestError, TemplateError
from .graph import walk_json
from .settings import get_settings
from .templates import get_refine_defaults, get_template_defaults

logger = logging.getLogger(__name__)

OPTION_LIST_KEYS = ("choices", "values", "options", "items", "enum", "allowed", "list")


@dataclass(frozen=True)
class OptionTarget:
    key: str
    node_class: str
    pattern: re.Pattern


OPTION_TARGETS = (
    OptionTarget("ckptNames", "Efficient Loader", re.compile(r"ckpt|checkpoint", re.IGNORECASE)),
    OptionTarget("loraNames", "LoRA Stacker", re.compile(r"lora.*name", re.IGNORECASE)),
    OptionTarget(
        "controlnetModelNames",
        "ControlNetLoader",
        re.compile(r"control[_-]?net.*(name|model)|controlnet", re.IGNORECASE),
    ),
    OptionTarget(
        "preprocessorNames",
        "ControlNetPreprocessorSelector",
        re.compile(r"preprocessor|preprocess|processor", re.IGNORECASE),
    ),
)


def _string_list(value: list) -> list[str]:
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def extract_option_values(value: Any) -> list[str]:
    """Pull a choice list out of one object_info input spec.

    ComfyUI describes a combo input as ``[[choice, ...], {...}]``; some custom
    nodes use an object with a ``choices``/``values``/... list instead.
    """
    if not value:
        return []
    if isinstance(value, list):
        if isinstance(value[0], list):
            return _string_list(value[0])
        nested = [item for entry in value for item in extract_option_values(entry)]
        return nested or _string_list(value)
    if isinstance(value, dict):
        for key in OPTION_LIST_KEYS:
            if isinstance(value.get(key), list):
                return _string_list(value[key])
    return []


def unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def collect_choices_by_key(payload: Any, matcher: Callable[[str], bool]) -> list[str]:
    """Choice lists of every object key accepted by ``matcher``, anywhere in ``payload``."""
    collected: list[str] = []
    for _, container in walk_json(payload):
        if not isinstance(container, dict):
            continue
        for key, value in container.items():
            if matcher(key):
                collected.extend(extract_option_values(value))
    return unique(collected)


def resolve_object_info(payload: Any, node_class: str) -> Any:
    if not isinstance(payload, dict):
        return payload
    if payload.get(node_class):
        return payload[node_class]
    if isinstance(payload.get("objectInfo"), dict):
        return payload["objectInfo"]
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("objectInfo"), dict):
        return data["objectInfo"]
    return payload


# One entry per node class lookup.
OBJECT_INFO_CACHE_SIZE = 64

_object_info_cache: Optional[TTLCache] = None


def get_object_info_cache() -> TTLCache:
    global _object_info_cache
    if _object_info_cache is None:
        _object_info_cache = TTLCache(maxsize=OBJECT_INFO_CACHE_SIZE, ttl=get_settings().object_info_cache_ttl)
    return _object_info_cache


def reset_object_info_cache() -> None:
    global _object_info_cache
    _object_info_cache = None


async def fetch_object_info(client: ComfyClient, node_class: str, use_cache: bool = False) -> Any:
    """object_info for one node class, optionally through the TTL cache."""
    cache = get_object_info_cache()
    if use_cache:
        cached = cache.get(node_class)
        if cached is not None:
            return cached
    object_info = resolve_object_info(await client.get_object_info(node_class), node_class)
    cache[node_class] = object_info
    return object_info


@dataclass
class RunnerOptions:
    values: dict[str, list[str]] = field(default_factory=dict)
    partial_errors: list[dict] = field(default_factory=list)
    defaults: Optional[dict] = None
    image2i_defaults: Optional[dict] = None

    @property
    def available(self) -> bool:
        """False when every catalog lookup failed."""
        return len(self.partial_errors) < len(OPTION_TARGETS)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {target.key: self.values.get(target.key, []) for target in OPTION_TARGETS}
        data["partialErrors"] = self.partial_errors
        data["defaults"] = self.defaults
        data["image2iDefaults"] = self.image2i_defaults
        return data


async def _collect_target(client: ComfyClient, target: OptionTarget) -> tuple[OptionTarget, Any]:
    try:
        info = await fetch_object_info(client, target.node_class, use_cache=True)
    except ComfyRequestError as e:
        logger.warning("object_info lookup failed for %s: %s", target.node_class, e.kind)
        return target, e
    return target, collect_choices_by_key(info, lambda key: bool(target.pattern.search(key)))


async def get_runner_options(client: Optional[ComfyClient] = None) -> RunnerOptions:
    """Collect checkpoint, LoRA, control model and preprocessor choices plus template defaults.

    A failed lookup is reported in ``partial_errors`` rather than raised.
    """
    client = client or get_client()
    results = await asyncio.gather(*(_collect_target(client, target) for target in OPTION_TARGETS))

    options = RunnerOptions()
    for target, result in results:
        if isinstance(result, ComfyRequestError):
            error = {"nodeClass": target.node_class, "message": result.kind}
            if result.details:
                error["details"] = result.details
            options.partial_errors.append(error)
            continue
        options.values[target.key] = result

    try:
        options.defaults = get_template_defaults().to_dict()
    except TemplateError:
        logger.exception("Failed to load template defaults")
    try:
        options.image2i_defaults = get_refine_defaults().to_dict()
    except TemplateError:
        logger.exception("Failed to load image2i defaults")

    return options
