"""Environment-driven settings for the runner."""
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_COMFY_URL = "http://127.0.0.1:8188"
DEFAULT_WORKFLOWS_DIR = Path(__file__).parent.parent / "workflows"

TEXT2I_TEMPLATE = "base_text2i.json"
IMAGE2I_TEMPLATE = "base_image2i.json"


def _env_number(name: str, default: float) -> float:
    """Positive finite number from the environment, else ``default``."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if not math.isfinite(value) or value <= 0:
        return default
    return value


def get_comfy_url(request_url: Optional[str] = None) -> str:
    """Get ComfyUI URL with fallback to env vars and default."""
    if request_url:
        return request_url.strip().rstrip("/")
    url = os.getenv("COMFY_BASE_URL") or os.getenv("COMFY_URL") or DEFAULT_COMFY_URL
    return url.strip().rstrip("/")


@dataclass
class Settings:
    comfy_url: str = DEFAULT_COMFY_URL
    request_timeout: float = 8.0
    object_info_timeout: float = 4.0
    object_info_cache_ttl: float = 60.0
    history_grace: float = 600.0
    input_dir: Path = Path("comfy_input")
    workflows_dir: Path = DEFAULT_WORKFLOWS_DIR

    @property
    def text2i_template_path(self) -> Path:
        return self.workflows_dir / TEXT2I_TEMPLATE

    @property
    def image2i_template_path(self) -> Path:
        return self.workflows_dir / IMAGE2I_TEMPLATE

    @classmethod
    def from_env(cls) -> "Settings":
        workflows_dir = os.getenv("COMFY_WORKFLOWS_DIR", "").strip()
        return cls(
            comfy_url=get_comfy_url(),
            request_timeout=_env_number("COMFY_REQUEST_TIMEOUT_MS", 8000) / 1000,
            object_info_timeout=_env_number("COMFY_OBJECT_INFO_TIMEOUT_MS", 4000) / 1000,
            object_info_cache_ttl=_env_number("COMFY_OBJECT_INFO_CACHE_TTL_MS", 60_000) / 1000,
            history_grace=_env_number("COMFY_HISTORY_GRACE_MS", 600_000) / 1000,
            input_dir=Path(os.getenv("COMFY_INPUT_DIR", "").strip() or "comfy_input"),
            workflows_dir=Path(workflows_dir) if workflows_dir else DEFAULT_WORKFLOWS_DIR,
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings(settings: Optional[Settings] = None) -> None:
    """Replace (or drop) the process-wide settings."""
    global _settings
    _settings = settings
