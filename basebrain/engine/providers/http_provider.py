"""aiohttp client for an HTTP endpoint that streams ``data:`` event lines."""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import aiohttp

from basebrain.shared.models.message import ToolResult

from ..errors import ModelServiceError, StreamError
from ..models import StreamEvent
from .base import ModelClient, build_request_body, parse_event_line

logger = logging.getLogger(__name__)


class HttpModelClient(ModelClient):
    """POSTs the conversation and reads the event stream line by line."""

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        connect_timeout: float | None = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._connect_timeout = connect_timeout or None
        self._session = session
        self._owns_session = session is None

    @property
    def name(self) -> str:
        return "http"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # No total timeout: a turn may stream for as long as it needs.
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._connect_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def stream(
        self,
        history: list[dict[str, Any]],
        project_root: str,
        tool_results: list[ToolResult] | tuple[ToolResult, ...] = (),
    ) -> AsyncIterator[StreamEvent]:
        body = build_request_body(history, project_root, tool_results)
        session = self._get_session()
        logger.debug(
            "POST %s messages=%d tool_results=%d",
            self._url, len(history), len(tool_results),
        )
        try:
            async with session.post(self._url, json=body, headers=self._headers()) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise ModelServiceError(
                        await self._error_text(resp), status=resp.status,
                    )
                async for raw_line in resp.content:
                    line = raw_line.decode("utf-8", errors="replace")
                    try:
                        event = parse_event_line(line)
                    except StreamError as exc:
                        logger.debug("Skipping malformed stream line: %s", exc)
                        continue
                    if event is not None:
                        yield event
        except aiohttp.ClientError as exc:
            raise ModelServiceError(f"Model service request failed: {exc}") from exc

    @staticmethod
    async def _error_text(resp: aiohttp.ClientResponse) -> str:
        try:
            data = await resp.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            data = None
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        text = await resp.text()
        return text.strip()[:500] or f"Model service returned HTTP {resp.status}"

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
