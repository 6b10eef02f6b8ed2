"""Reference images written into the ComfyUI input directory."""
import base64
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

INIT_IMAGES_DIR = "init_images"
CONTROL_IMAGES_DIR = "control_images"
INPUT_SUBDIRS = {"tagger_inputs", INIT_IMAGES_DIR, CONTROL_IMAGES_DIR}

ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}
MIME_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


@dataclass
class InputImage:
    """Image bytes plus the extension to store them with."""
    data: bytes
    extension: str = ".png"

    @classmethod
    def from_base64(cls, value: str) -> "InputImage":
        """Decode plain base64 or a ``data:image/...;base64,`` URL."""
        extension = ".png"
        if value.startswith("data:") and "," in value:
            header, value = value.split(",", 1)
            mime = header[len("data:"):].split(";", 1)[0].lower()
            extension = MIME_EXTENSIONS.get(mime, extension)
        return cls(data=base64.b64decode(value), extension=extension)

    @property
    def safe_extension(self) -> str:
        ext = self.extension.lower()
        if not ext.startswith("."):
            ext = f".{ext}"
        return ext if ext in ALLOWED_EXTENSIONS else ".png"


def normalize_input_root(root: Path) -> Path:
    """Strip a trailing known subdirectory so files never nest twice."""
    root = Path(root).resolve()
    if root.name.lower() in INPUT_SUBDIRS:
        return root.parent
    return root


def input_file_name(prefix: str, run_id: str, image: InputImage) -> str:
    return f"{prefix}_{run_id}_{int(time.time() * 1000)}{image.safe_extension}"


def write_input_file(input_root: Path, subdir: str, filename: str, data: bytes) -> str:
    """Write ``data`` under ``<root>/<subdir>/<filename>``.

    Returns the name ComfyUI's LoadImage node expects (``subdir/filename``).
    """
    directory = normalize_input_root(input_root) / subdir
    directory.mkdir(parents=True, exist_ok=True)
    (directory / filename).write_bytes(data)
    return str(PurePosixPath(subdir) / filename)
