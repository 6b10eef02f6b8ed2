"""Tests for environment-driven settings."""
from pathlib import Path

import pytest

from muse_runner.core.settings import DEFAULT_WORKFLOWS_DIR, Settings, get_comfy_url


def test_defaults(monkeypatch):
    for name in ("COMFY_BASE_URL", "COMFY_URL", "COMFY_REQUEST_TIMEOUT_MS", "COMFY_HISTORY_GRACE_MS",
                 "COMFY_INPUT_DIR", "COMFY_WORKFLOWS_DIR"):
        monkeypatch.delenv(name, raising=False)

    current = Settings.from_env()

    assert current.comfy_url == "http://127.0.0.1:8188"
    assert current.request_timeout == 8.0
    assert current.history_grace == 600.0
    assert current.workflows_dir == DEFAULT_WORKFLOWS_DIR
    assert current.text2i_template_path.name == "base_text2i.json"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("COMFY_BASE_URL", "http://gpu-box:8188//")
    monkeypatch.setenv("COMFY_REQUEST_TIMEOUT_MS", "2500")
    monkeypatch.setenv("COMFY_HISTORY_GRACE_MS", "not-a-number")
    monkeypatch.setenv("COMFY_INPUT_DIR", "/srv/comfy/input")

    current = Settings.from_env()

    assert current.comfy_url == "http://gpu-box:8188"
    assert current.request_timeout == 2.5
    assert current.history_grace == 600.0
    assert current.input_dir == Path("/srv/comfy/input")


def test_comfy_url_fallback(monkeypatch):
    monkeypatch.delenv("COMFY_BASE_URL", raising=False)
    monkeypatch.setenv("COMFY_URL", "http://legacy:8188/")
    assert get_comfy_url() == "http://legacy:8188"
    assert get_comfy_url("http://explicit/") == "http://explicit"


@pytest.mark.parametrize("raw", ["nan", "inf", "-inf", "0", "-500"])
def test_non_finite_or_non_positive_values_fall_back(monkeypatch, raw):
    monkeypatch.setenv("COMFY_HISTORY_GRACE_MS", raw)
    monkeypatch.setenv("COMFY_REQUEST_TIMEOUT_MS", raw)

    current = Settings.from_env()

    assert current.history_grace == 600.0
    assert current.request_timeout == 8.0
