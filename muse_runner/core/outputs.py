"""Output classification and history parsing.

A graph can write images from more than one place: the main sampler chain
and, when a control-signal branch is wired in, the preprocessor's own
save/preview nodes. ``classify_output_nodes`` separates them by walking
each save/preview node's ancestry; ``extract_history_outputs`` then walks
the history payload and keeps only the images that belong to the run's
real output.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from .graph import ancestors, walk_json

SAVE_CLASS_PATTERN = re.compile(r"saveimage", re.IGNORECASE)
PREVIEW_CLASS_PATTERN = re.compile(r"previewimage", re.IGNORECASE)
SAMPLER_CLASS_PATTERN = re.compile(r"ksampler", re.IGNORECASE)
PREPROCESSOR_CLASS_PATTERN = re.compile(r"preprocessor", re.IGNORECASE)


@dataclass(frozen=True)
class OutputImage:
    filename: str
    subfolder: Optional[str] = None
    type: Optional[str] = None
    node_id: Optional[str] = None

    @property
    def is_output(self) -> bool:
        return (self.type or "").lower() == "output" or (self.subfolder or "").lower() == "output"

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "subfolder": self.subfolder,
            "type": self.type,
            "node_id": self.node_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OutputImage":
        return cls(
            filename=data["filename"],
            subfolder=data.get("subfolder"),
            type=data.get("type"),
            node_id=data.get("node_id"),
        )


@dataclass
class OutputNodeInfo:
    output_node_ids: set[str] = field(default_factory=set)
    preprocessor_output_node_ids: set[str] = field(default_factory=set)
    preprocessor_preview_node_ids: set[str] = field(default_factory=set)


def _upstream_flags(workflow: dict, start_id: str) -> tuple[bool, bool]:
    """(has_preprocessor, has_sampler) over ``start_id`` and its ancestors."""
    has_preprocessor = False
    has_sampler = False
    for _, node in ancestors(workflow, start_id):
        class_type = node.get("class_type")
        if not isinstance(class_type, str):
            continue
        if PREPROCESSOR_CLASS_PATTERN.search(class_type):
            has_preprocessor = True
        if SAMPLER_CLASS_PATTERN.search(class_type):
            has_sampler = True
    return has_preprocessor, has_sampler


def classify_output_nodes(workflow: Any) -> Optional[OutputNodeInfo]:
    """Classify save/preview nodes of a submitted graph.

    A node is preprocessor-only when a preprocessor is upstream of it and no
    sampler is. Returns None when the graph has no save node at all.
    """
    if not isinstance(workflow, dict):
        return None

    info = OutputNodeInfo()
    for node_id, node in workflow.items():
        if not isinstance(node, dict):
            continue
        class_type = node.get("class_type")
        if not isinstance(class_type, str):
            continue
        if SAVE_CLASS_PATTERN.search(class_type):
            info.output_node_ids.add(node_id)
            has_preprocessor, has_sampler = _upstream_flags(workflow, node_id)
            if has_preprocessor and not has_sampler:
                info.preprocessor_output_node_ids.add(node_id)
        if PREVIEW_CLASS_PATTERN.search(class_type):
            has_preprocessor, has_sampler = _upstream_flags(workflow, node_id)
            if has_preprocessor and not has_sampler:
                info.preprocessor_preview_node_ids.add(node_id)

    return info if info.output_node_ids else None


@dataclass
class OutputSelection:
    output_node_ids: Optional[set[str]] = None
    exclude_node_ids: Optional[set[str]] = None
    include_node_ids: Optional[set[str]] = None


def output_selection(info: Optional[OutputNodeInfo], controlnet_enabled: bool) -> OutputSelection:
    """Which nodes to keep for a run, given whether its control branch is on.

    With the branch off, preprocessor-only saves and previews are dropped.
    With it on, preprocessor previews are added next to the real outputs.
    """
    if info is None:
        return OutputSelection()
    preprocessor_ids = info.preprocessor_output_node_ids | info.preprocessor_preview_node_ids
    return OutputSelection(
        output_node_ids=info.output_node_ids,
        exclude_node_ids=preprocessor_ids if not controlnet_enabled and preprocessor_ids else None,
        include_node_ids=info.preprocessor_preview_node_ids if controlnet_enabled else None,
    )


def _history_outputs_source(entry: dict) -> Any:
    for key in ("outputs", "output", "result"):
        value = entry.get(key)
        if value is not None:
            return value
    return None


def extract_history_outputs(
    entry: Optional[dict],
    selection: OutputSelection = OutputSelection(),
) -> list[OutputImage]:
    """Collect image descriptors from a history entry, one per filename."""
    if not entry:
        return []
    outputs = _history_outputs_source(entry)
    if not outputs:
        return []

    if isinstance(outputs, dict):
        roots = [(node_id, value) for node_id, value in outputs.items()]
    else:
        roots = [(None, outputs)]

    include = selection.include_node_ids or set()
    images: list[OutputImage] = []
    for root_id, root_value in roots:
        for node_id, container in walk_json(root_value, root_id):
            if not isinstance(container, dict) or not isinstance(container.get("filename"), str):
                continue
            if selection.exclude_node_ids and node_id and node_id in selection.exclude_node_ids:
                continue
            if (
                selection.output_node_ids is not None
                and node_id
                and node_id not in selection.output_node_ids
                and node_id not in include
            ):
                continue
            subfolder = container.get("subfolder") if isinstance(container.get("subfolder"), str) else None
            image_type = container.get("type") if isinstance(container.get("type"), str) else None
            if not image_type and subfolder and subfolder.lower() == "output":
                image_type = "output"
            images.append(OutputImage(
                filename=container["filename"],
                subfolder=subfolder,
                type=image_type,
                node_id=node_id,
            ))

    output_images = [image for image in images if image.is_output]
    selected = output_images if output_images else images
    if include:
        selected = selected + [image for image in images if image.node_id in include]

    return dedupe_by_filename(selected)


def dedupe_by_filename(images: list[OutputImage]) -> list[OutputImage]:
    """One image per filename, preferring the one typed "output"."""
    groups: dict[str, list[OutputImage]] = {}
    for image in images:
        groups.setdefault(image.filename, []).append(image)

    selected = []
    for group in groups.values():
        preferred = next((image for image in group if (image.type or "").lower() == "output"), None)
        selected.append(preferred or group[0])
    return selected


def resolve_queue_status(queue_data: Any, prompt_id: str) -> Optional[str]:
    """"running", "queued" or None for a prompt id in a /queue payload."""
    if not isinstance(queue_data, dict):
        return None

    def has_prompt(value: Any) -> bool:
        if not isinstance(value, list):
            return False
        for item in value:
            if isinstance(item, list) and item:
                # queue rows are [number, prompt_id, prompt, extra, outputs]
                if item[0] == prompt_id or (len(item) > 1 and item[1] == prompt_id):
                    return True
            elif isinstance(item, dict) and item.get("prompt_id") == prompt_id:
                return True
            elif item == prompt_id:
                return True
        return False

    if has_prompt(queue_data.get("queue_running")):
        return "running"
    if has_prompt(queue_data.get("queue_pending")):
        return "queued"
    return None


def resolve_history_entry(history_data: Any, prompt_id: str) -> Optional[dict]:
    if not isinstance(history_data, dict):
        return None
    entry = history_data.get(prompt_id)
    if isinstance(entry, dict):
        return entry
    if history_data.get("prompt_id") == prompt_id or history_data.get("promptId") == prompt_id:
        return history_data
    return None


def history_status_text(entry: dict) -> str:
    value = entry.get("status")
    if value is None:
        value = entry.get("status_str")
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("status_str"), str):
        return value["status_str"]
    return ""


def history_error(entry: dict) -> Any:
    value = entry.get("error")
    return value if value else entry.get("errors")


def history_error_message(entry: dict) -> Optional[str]:
    error = history_error(entry)
    if not error:
        return None
    if isinstance(error, str):
        return error
    if isinstance(error, list):
        return "; ".join(item if isinstance(item, str) else json.dumps(item) for item in error)
    return json.dumps(error)


def resolve_history_status(entry: Optional[dict], outputs: list[OutputImage]) -> Optional[str]:
    """"failed", "succeeded" or None when the entry is inconclusive."""
    if not entry:
        return None
    status_text = history_status_text(entry).lower()
    if history_error(entry) or "error" in status_text or "fail" in status_text:
        return "failed"
    if "success" in status_text or "complete" in status_text or outputs:
        return "succeeded"
    return None
