from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from codex_gateway.gateway.streaming import with_preview
from tests.client_test_utils import ChunkStream

CHUNKS = (b"data: hello ", b"world\n\n", b"data: [DONE]\n\n")


def _upstream(*chunks: bytes) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        stream=ChunkStream(*chunks),
        request=httpx.Request("POST", "https://vendor.test/backend-api/responses"),
    )


async def _drain(response: httpx.Response) -> list[bytes]:
    return [chunk async for chunk in response.aiter_raw()]


def test_preview_forwards_identical_chunks_and_bounds_the_copy() -> None:
    previews: list[tuple[str, bool]] = []
    wrapped = with_preview(
        _upstream(*CHUNKS),
        limit=10,
        on_preview=lambda text, truncated: previews.append((text, truncated)),
    )

    forwarded = asyncio.run(_drain(wrapped))

    assert forwarded == list(CHUNKS)
    assert previews == [("data: hell", True)]
    assert wrapped.status_code == 200
    assert wrapped.headers["content-type"] == "text/event-stream"


def test_short_body_preview_is_reported_at_end_of_stream() -> None:
    previews: list[tuple[str, bool]] = []
    wrapped = with_preview(
        _upstream(*CHUNKS),
        on_preview=lambda text, truncated: previews.append((text, truncated)),
    )

    forwarded = asyncio.run(_drain(wrapped))

    assert b"".join(forwarded) == b"".join(CHUNKS)
    assert previews == [(b"".join(CHUNKS).decode(), False)]


def test_preview_failure_never_disturbs_forwarded_bytes(caplog: Any) -> None:
    def explode(text: str, truncated: bool) -> None:
        raise RuntimeError("preview sink broke")

    wrapped = with_preview(_upstream(*CHUNKS), limit=5, on_preview=explode)

    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        forwarded = asyncio.run(_drain(wrapped))

    assert forwarded == list(CHUNKS)
    assert "upstream_preview_failed" in caplog.text


def test_default_preview_is_logged(caplog: Any) -> None:
    wrapped = with_preview(_upstream(*CHUNKS))

    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        asyncio.run(_drain(wrapped))

    assert "upstream_response_preview" in caplog.text
