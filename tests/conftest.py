import pytest

from muse_runner.core import comfy_client, gallery_sync, options, runs, settings, templates
from muse_runner.core.errors import ComfyRequestError


class FakeComfy:
    """Stands in for ComfyClient with canned queue/history/object_info data."""

    def __init__(self):
        self.submitted: list[dict] = []
        self.prompt_response = {"prompt_id": "prompt-1", "number": 1, "node_errors": {}}
        self.queue = {"queue_running": [], "queue_pending": []}
        self.history = {}
        self.object_info = {}
        self.view_response = (b"\x89PNG", "image/png")
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []

    def _call(self, name: str):
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    def fail(self, name: str, kind: str):
        self.failures[name] = ComfyRequestError(kind, f"http://comfy/{name}")

    async def submit_prompt(self, workflow):
        self.submitted.append(workflow)
        self._call("submit_prompt")
        return self.prompt_response

    async def get_queue(self):
        self._call("get_queue")
        return self.queue

    async def get_history(self, prompt_id):
        self._call("get_history")
        return self.history

    async def get_object_info(self, node_class):
        self._call(f"get_object_info:{node_class}")
        return self.object_info.get(node_class, {})

    async def view(self, filename, subfolder=None, image_type=None):
        self._call("view")
        return self.view_response

    async def close(self):
        pass


@pytest.fixture(autouse=True)
def reset_runner(tmp_path):
    """Reset process-wide singletons and caches before each test."""
    settings.reset_settings(settings.Settings(input_dir=tmp_path / "comfy_input"))
    runs.set_store(None)
    comfy_client.set_client(None)
    gallery_sync.set_gallery_sink(None)
    options.reset_object_info_cache()
    templates.template_defaults_cache.clear()
    templates.refine_defaults_cache.clear()
    yield
    settings.reset_settings(None)
    comfy_client.set_client(None)


@pytest.fixture
def fake_comfy():
    client = FakeComfy()
    comfy_client.set_client(client)
    return client
