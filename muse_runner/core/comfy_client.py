"""Aiohttp client for the ComfyUI HTTP API.

Every call runs under an explicit ``aiohttp.ClientTimeout``. Failures are
raised as ``ComfyRequestError`` with a short kind string (``timeout``,
``unreachable``, ``invalid_json``, ``upstream_error``) that callers persist
verbatim as a run's error message.
"""
import asyncio
import json
import logging
from typing import Any, Optional
from urllib.parse import quote

import aiohttp

from .errors import ComfyRequestError
from .settings import get_settings

logger = logging.getLogger(__name__)

BODY_PREVIEW_LIMIT = 50_000


def truncate_text(text: str, limit: int = BODY_PREVIEW_LIMIT) -> str:
    if not text:
        return ""
    return f"{text[:limit]}..." if len(text) > limit else text


class ComfyClient:
    """Thin JSON client for /prompt, /queue, /history, /object_info and /view."""

    def __init__(self, url: str, timeout: float = 8.0, object_info_timeout: float = 4.0):
        self.url: str = url.rstrip("/")
        self.timeout = timeout
        self.object_info_timeout = object_info_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def ensure_session(self):
        """Lazy session creation."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

    async def close(self):
        """Close the session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _endpoint_url(self, endpoint: str) -> str:
        return f"{self.url}{'' if endpoint.startswith('/') else '/'}{endpoint}"

    async def request_json(
        self,
        method: str,
        endpoint: str,
        payload: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and return the parsed JSON body (``None`` if empty)."""
        await self.ensure_session()
        assert self._session is not None

        url = self._endpoint_url(endpoint)
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        kwargs: dict[str, Any] = {"timeout": client_timeout}
        if payload is not None:
            kwargs["json"] = payload

        try:
            async with self._session.request(method, url, **kwargs) as resp:
                status = resp.status
                body = await resp.text()
        except asyncio.TimeoutError as e:
            raise ComfyRequestError("timeout", url, {"error": str(e) or "timed out"})
        except aiohttp.ClientError as e:
            raise ComfyRequestError("unreachable", url, {"error": str(e)})

        parsed = None
        if body.strip():
            try:
                parsed = json.loads(body)
            except ValueError as e:
                raise ComfyRequestError(
                    "invalid_json", url, {"error": str(e), "body": truncate_text(body)}
                )

        if status >= 400:
            raise ComfyRequestError(
                "upstream_error", url, {"status": status, "body": truncate_text(body)}
            )

        return parsed

    async def submit_prompt(self, workflow: dict) -> Any:
        """POST a prompt graph to the queue."""
        return await self.request_json("POST", "/prompt", {"prompt": workflow})

    async def get_queue(self) -> Any:
        return await self.request_json("GET", "/queue")

    async def get_history(self, prompt_id: str) -> Any:
        return await self.request_json("GET", f"/history/{quote(prompt_id, safe='')}")

    async def get_object_info(self, node_class: str) -> Any:
        return await self.request_json(
            "GET",
            f"/object_info/{quote(node_class, safe='')}",
            timeout=self.object_info_timeout,
        )

    async def view(
        self,
        filename: str,
        subfolder: Optional[str] = None,
        image_type: Optional[str] = None,
    ) -> tuple[bytes, Optional[str]]:
        """Fetch a binary artifact. Returns (body, content_type)."""
        await self.ensure_session()
        assert self._session is not None

        params = {"filename": filename}
        if subfolder:
            params["subfolder"] = subfolder
        if image_type:
            params["type"] = image_type

        url = self._endpoint_url("/view")
        try:
            async with self._session.get(
                url,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise ComfyRequestError(
                        "upstream_error", url, {"status": resp.status, "body": truncate_text(text)}
                    )
                data = await resp.read()
                return data, resp.headers.get("Content-Type")
        except asyncio.TimeoutError as e:
            raise ComfyRequestError("timeout", url, {"error": str(e) or "timed out"})
        except aiohttp.ClientError as e:
            raise ComfyRequestError("unreachable", url, {"error": str(e)})


# Singleton instance
_client: Optional[ComfyClient] = None


def get_client() -> ComfyClient:
    """Get the singleton ComfyClient built from settings."""
    global _client
    if _client is None:
        settings = get_settings()
        _client = ComfyClient(
            settings.comfy_url,
            timeout=settings.request_timeout,
            object_info_timeout=settings.object_info_timeout,
        )
    return _client


def set_client(client: Optional[ComfyClient]) -> None:
    global _client
    _client = client
