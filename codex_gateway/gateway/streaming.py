from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable

import httpx

logger = logging.getLogger("uvicorn.error")

DEFAULT_PREVIEW_BYTES = 500


class PreviewingByteStream(httpx.AsyncByteStream):
    """Forwards an upstream body unchanged while copying a bounded prefix aside.

    The forwarded view drives the upstream read; the preview view only ever
    receives copies, stops at ``limit`` bytes and reports once.  Nothing the
    preview side does can raise into, reorder or hold back forwarded chunks.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        *,
        limit: int = DEFAULT_PREVIEW_BYTES,
        on_preview: Callable[[str, bool], None] | None = None,
    ) -> None:
        self._upstream = upstream
        self._limit = max(0, int(limit))
        self._on_preview = on_preview or _log_preview
        self._buffer = bytearray()
        self._preview_reported = False
        self._truncated = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._upstream.aiter_raw():
                self._offer(chunk)
                yield chunk
        finally:
            self._report_preview()

    async def aclose(self) -> None:
        self._report_preview()
        await self._upstream.aclose()

    def _offer(self, chunk: bytes) -> None:
        if self._preview_reported:
            return
        try:
            room = self._limit - len(self._buffer)
            if room > 0:
                self._buffer.extend(chunk[:room])
            if len(chunk) > room:
                self._truncated = True
            if len(self._buffer) >= self._limit:
                self._report_preview()
        except Exception as exc:
            logger.warning("upstream_preview_failed error=%s", exc)
            self._preview_reported = True

    def _report_preview(self) -> None:
        if self._preview_reported:
            return
        self._preview_reported = True
        try:
            text = self._buffer.decode("utf-8", errors="replace")
            self._on_preview(text, self._truncated)
        except Exception as exc:
            logger.warning("upstream_preview_failed error=%s", exc)


def _log_preview(text: str, truncated: bool) -> None:
    logger.info(
        "upstream_response_preview body=%r%s", text, "..." if truncated else ""
    )


def with_preview(
    upstream: httpx.Response,
    *,
    limit: int = DEFAULT_PREVIEW_BYTES,
    on_preview: Callable[[str, bool], None] | None = None,
) -> httpx.Response:
    return httpx.Response(
        status_code=upstream.status_code,
        headers=upstream.headers,
        stream=PreviewingByteStream(upstream, limit=limit, on_preview=on_preview),
        request=upstream.request,
        extensions=upstream.extensions,
    )
