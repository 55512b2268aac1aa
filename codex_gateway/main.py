from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncIterator
from typing import Any, Awaitable, Callable

import httpx
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError

from codex_gateway.env_overrides import get_env_overrides_loader
from codex_gateway.gateway.payload import UpstreamOptions
from codex_gateway.gateway.upstream import UpstreamOrchestrator, UpstreamResult
from codex_gateway.settings import Settings, get_settings

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}

app = FastAPI(
    title="Codex Gateway",
    description="Authenticated gateway to the ChatGPT Codex responses API.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith(("/v1", "/api")):
        return await call_next(request)

    settings: Settings | None = getattr(app.state, "settings", None)
    expected = (settings.openai_api_key or "").strip() if settings else ""
    if expected:
        provided = request.headers.get("authorization", "").strip()
        scheme, _, token = provided.partition(" ")
        if scheme.lower() != "bearer" or not secrets.compare_digest(
            token.strip(), expected
        ):
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"error": {"message": "Invalid or missing API key."}},
            )

    return await call_next(request)


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name] = value
    return filtered


def _pop_content_type(response_headers: dict[str, str]) -> str | None:
    for name in list(response_headers.keys()):
        if name.lower() == "content-type":
            return response_headers.pop(name)
    return None


def _to_fastapi_response(result: UpstreamResult) -> Response:
    if result.error is not None:
        return result.error.to_response()

    upstream = result.response
    if upstream is None:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": {"message": "Upstream returned no response."}},
        )

    response_headers = _filter_response_headers(upstream.headers)
    media_type = _pop_content_type(response_headers) or "text/event-stream"

    async def stream_generator() -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        finally:
            await upstream.aclose()

    return StreamingResponse(
        content=stream_generator(),
        status_code=upstream.status_code,
        headers=response_headers,
        media_type=media_type,
    )


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Expected JSON body: {exc}"
        ) from exc

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400, detail="Expected a JSON object request body."
        )
    return payload


def _coerce_input_items(raw: Any) -> list[Any]:
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        return [{"role": "user", "content": [{"type": "input_text", "text": text}]}]
    if isinstance(raw, list):
        return raw
    if raw is None:
        return []
    raise HTTPException(
        status_code=400, detail="Expected 'input' to be a string or a list of items."
    )


def _apply_overrides(base: Settings, overrides: dict[str, str] | None) -> Settings:
    if not overrides:
        return base
    try:
        return Settings.with_overrides(overrides)
    except ValidationError as exc:
        rejected = sorted(
            {str(error["loc"][0]) for error in exc.errors() if error.get("loc")}
        )
        logger.warning(
            "env_overrides_rejected fields=%s errors=%d",
            ",".join(rejected) or "unknown",
            exc.error_count(),
        )
        return base


@app.on_event("startup")
async def startup() -> None:
    base_settings = get_settings()
    loader = get_env_overrides_loader(base_settings.env_overrides_path)
    overrides = await loader.get_overrides()
    settings = _apply_overrides(base_settings, overrides)
    orchestrator = UpstreamOrchestrator(settings)
    orchestrator.proxy_resolver.configure_tls()
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    logger.info(
        (
            "startup complete responses_url=%s auth_method=%s refreshable=%s "
            "passthrough_configured=%s overrides=%d"
        ),
        settings.chatgpt_responses_url,
        orchestrator.credentials.auth_method,
        orchestrator.credentials.is_refreshable,
        bool(settings.ollama_api_url),
        len(overrides or {}),
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    orchestrator: UpstreamOrchestrator | None = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/responses")
async def responses(request: Request) -> Response:
    payload = await _read_json_object(request)
    orchestrator: UpstreamOrchestrator = app.state.orchestrator
    instructions = payload.get("instructions")
    tools = payload.get("tools")
    reasoning = payload.get("reasoning")
    options = UpstreamOptions(
        instructions=instructions if isinstance(instructions, str) else None,
        tools=tools if isinstance(tools, list) else None,
        tool_choice=payload.get("tool_choice"),
        parallel_tool_calls=bool(payload.get("parallel_tool_calls", False)),
        reasoning=reasoning if isinstance(reasoning, dict) else None,
    )
    result = await orchestrator.send(
        str(payload.get("model") or ""),
        _coerce_input_items(payload.get("input")),
        options,
    )
    return _to_fastapi_response(result)


@app.post("/api/{subpath:path}")
async def passthrough(subpath: str, request: Request) -> Response:
    payload = await _read_json_object(request)
    orchestrator: UpstreamOrchestrator = app.state.orchestrator
    result = await orchestrator.send(
        str(payload.get("model") or ""),
        [],
        UpstreamOptions(passthrough_path=f"/api/{subpath}", passthrough_payload=payload),
    )
    return _to_fastapi_response(result)


def run() -> None:
    import uvicorn

    uvicorn.run(
        "codex_gateway.main:app", host="0.0.0.0", port=get_settings().port, reload=False
    )


if __name__ == "__main__":
    run()
