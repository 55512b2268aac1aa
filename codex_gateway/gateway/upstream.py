from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import httpx

from codex_gateway.errors import GatewayError
from codex_gateway.gateway.credentials import CredentialManager, CredentialRecord
from codex_gateway.gateway.instructions import InstructionsCache
from codex_gateway.gateway.payload import (
    UpstreamOptions,
    build_passthrough_headers,
    build_vendor_headers,
    build_vendor_payload,
    generate_session_id,
    normalize_model_name,
    redact_headers,
    resolve_reasoning_param,
    serialize_body,
)
from codex_gateway.gateway.proxy_config import ProxyResolver
from codex_gateway.gateway.streaming import DEFAULT_PREVIEW_BYTES, with_preview
from codex_gateway.settings import Settings

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class UpstreamResult:
    response: httpx.Response | None = None
    error: GatewayError | None = None

    @property
    def ok(self) -> bool:
        return self.response is not None


@dataclass(slots=True)
class PreparedUpstreamRequest:
    url: str
    body: bytes
    headers: dict[str, str]
    session_id: str | None
    passthrough: bool

    def body_text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def _request_error_details(exc: Exception) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, (httpx.TimeoutException, TimeoutError)),
    }
    request: httpx.Request | None = None
    if isinstance(exc, httpx.RequestError):
        try:
            request = exc.request
        except RuntimeError:
            request = None
    if request is not None:
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


async def _read_error_body(upstream: httpx.Response) -> dict[str, Any]:
    try:
        await upstream.aread()
        parsed = upstream.json()
    except (ValueError, httpx.HTTPError, httpx.StreamError):
        parsed = None
    finally:
        await upstream.aclose()
    if isinstance(parsed, dict):
        return parsed
    return {"raw": upstream.reason_phrase}


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except Exception:
        return False
    return True


class UpstreamOrchestrator:
    def __init__(
        self,
        settings: Settings,
        *,
        credentials: CredentialManager | None = None,
        instructions: InstructionsCache | None = None,
        proxy_resolver: ProxyResolver | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self.credentials = credentials or CredentialManager(settings)
        self.instructions = instructions or InstructionsCache(settings)
        self.proxy_resolver = proxy_resolver or ProxyResolver(settings)
        self.client = client
        self._client_lock = threading.Lock()
        self._deadline_seconds = max(0.1, float(settings.upstream_deadline_seconds))

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
        await self.credentials.aclose()
        await self.instructions.aclose()

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is not None:
            return self.client
        handle = await self.proxy_resolver.get_dispatch_handle()
        with self._client_lock:
            if self.client is None:
                self.client = self._build_client(handle)
            return self.client

    def _build_client(self, handle: httpx.AsyncHTTPTransport | None) -> httpx.AsyncClient:
        settings = self._settings
        connect_timeout = max(0.1, float(settings.upstream_connect_timeout_seconds))
        read_timeout = max(0.1, float(settings.upstream_read_timeout_seconds))
        write_timeout = max(0.1, float(settings.upstream_timeout_seconds))
        timeout = httpx.Timeout(
            timeout=None,
            connect=connect_timeout,
            read=read_timeout,
            write=write_timeout,
            pool=connect_timeout,
        )
        if handle is not None:
            return httpx.AsyncClient(timeout=timeout, transport=handle, trust_env=False)
        return httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            http2=_can_enable_http2(),
            verify=self.proxy_resolver.verify_tls,
            trust_env=False,
        )

    async def send(
        self,
        model: str,
        input_items: list[Any],
        options: UpstreamOptions | None = None,
    ) -> UpstreamResult:
        options = options or UpstreamOptions()
        verbose = bool(options.verbose or self._settings.verbose)
        request_id = uuid4().hex[:12]

        if verbose:
            logger.info(
                (
                    "upstream_verbose_start request_id=%s model=%s input_items=%d "
                    "tools=%d reasoning_effort=%s"
                ),
                request_id,
                model,
                len(input_items),
                len(options.tools or []),
                (options.reasoning or {}).get("effort") or "none",
            )

        credential = await self.credentials.get_current_credential()
        if verbose:
            logger.info(
                "upstream_verbose_auth request_id=%s method=%s account_id=%s",
                request_id,
                self.credentials.auth_method,
                credential.account_id or "not set",
            )
        if not credential.access_token:
            logger.warning("upstream_missing_credential request_id=%s", request_id)
            return UpstreamResult(error=GatewayError.missing_credential())

        if options.is_passthrough and not self._settings.ollama_api_url:
            logger.error(
                "upstream_passthrough_unconfigured request_id=%s path=%s",
                request_id,
                options.passthrough_path,
            )
            return UpstreamResult(
                error=GatewayError.transport_failure("OLLAMA_API_URL is not configured")
            )

        prepared = await self._prepare_request(
            model=model,
            input_items=input_items,
            options=options,
            credential=credential,
        )
        if verbose:
            logger.info(
                (
                    "upstream_verbose_request request_id=%s url=%s headers=%s "
                    "session_id=%s body_preview=%r"
                ),
                request_id,
                prepared.url,
                redact_headers(prepared.headers),
                prepared.session_id or "none",
                prepared.body_text()[:500],
            )

        try:
            client = await self._get_client()
            upstream = await self._dispatch(
                client, prepared, prepared.headers, request_id=request_id, verbose=verbose
            )
            if upstream.is_success:
                return UpstreamResult(response=self._finish_success(upstream, verbose))

            error_body = await _read_error_body(upstream)
            self._log_upstream_error(request_id, prepared, upstream, error_body)

            if (
                upstream.status_code == 401
                and not prepared.passthrough
                and self.credentials.is_refreshable
            ):
                retried = await self._retry_after_refresh(
                    client,
                    prepared,
                    credential,
                    request_id=request_id,
                    verbose=verbose,
                )
                if retried is not None:
                    return retried

            return UpstreamResult(
                error=GatewayError.from_upstream(upstream.status_code, error_body)
            )
        except (httpx.RequestError, httpx.InvalidURL, TimeoutError) as exc:
            details = _request_error_details(exc)
            logger.error(
                (
                    "upstream_request_failure request_id=%s url=%s error_type=%s "
                    "error=%s is_timeout=%s headers=%s request_body=%s"
                ),
                request_id,
                prepared.url,
                details["error_type"],
                details["error"],
                details["is_timeout"],
                redact_headers(prepared.headers),
                prepared.body_text(),
                exc_info=exc,
            )
            return UpstreamResult(
                error=GatewayError.transport_failure(
                    f"{details['error_type']}: {details['error']}"
                )
            )

    async def _prepare_request(
        self,
        *,
        model: str,
        input_items: list[Any],
        options: UpstreamOptions,
        credential: CredentialRecord,
    ) -> PreparedUpstreamRequest:
        if options.is_passthrough:
            base_url = (self._settings.ollama_api_url or "").rstrip("/")
            payload = (
                options.passthrough_payload
                if options.passthrough_payload is not None
                else {}
            )
            return PreparedUpstreamRequest(
                url=f"{base_url}{options.passthrough_path}",
                body=serialize_body(payload),
                headers=build_passthrough_headers(),
                session_id=None,
                passthrough=True,
            )

        session_id = generate_session_id(options.instructions, input_items)
        instructions = options.instructions or await self.instructions.get_instructions()
        payload = build_vendor_payload(
            model=normalize_model_name(model, self._settings.debug_model),
            instructions=instructions,
            input_items=input_items,
            options=options,
            reasoning=resolve_reasoning_param(options.reasoning, self._settings),
            session_id=session_id,
        )
        return PreparedUpstreamRequest(
            url=self._settings.chatgpt_responses_url,
            body=serialize_body(payload),
            headers=build_vendor_headers(
                access_token=credential.access_token,
                account_id=credential.account_id,
                session_id=session_id,
            ),
            session_id=session_id,
            passthrough=False,
        )

    async def _dispatch(
        self,
        client: httpx.AsyncClient,
        prepared: PreparedUpstreamRequest,
        headers: dict[str, str],
        *,
        request_id: str,
        verbose: bool,
    ) -> httpx.Response:
        request = client.build_request(
            method="POST",
            url=prepared.url,
            content=prepared.body,
            headers=headers,
        )
        started = time.perf_counter()
        async with asyncio.timeout(self._deadline_seconds):
            upstream = await client.send(request, stream=True)
        if verbose:
            logger.info(
                "upstream_verbose_response request_id=%s status=%d duration_ms=%.1f headers=%s",
                request_id,
                upstream.status_code,
                (time.perf_counter() - started) * 1000.0,
                dict(upstream.headers),
            )
        return upstream

    def _finish_success(self, upstream: httpx.Response, verbose: bool) -> httpx.Response:
        if not verbose:
            return upstream
        return with_preview(upstream, limit=DEFAULT_PREVIEW_BYTES)

    async def _retry_after_refresh(
        self,
        client: httpx.AsyncClient,
        prepared: PreparedUpstreamRequest,
        credential: CredentialRecord,
        *,
        request_id: str,
        verbose: bool,
    ) -> UpstreamResult | None:
        """Refresh the rejected credential and resend the same request once.

        Returns ``None`` when the refresh fails so the caller surfaces the first
        401. When the resent request fails too, its own status and message are
        returned because they describe the refreshed credential.
        """
        outcome = await self.credentials.refresh(rejected_token=credential.access_token)
        if outcome.record is None:
            logger.warning(
                "upstream_auth_refresh_failed request_id=%s reason=%s",
                request_id,
                outcome.error,
            )
            return None

        logger.info("upstream_auth_retry request_id=%s", request_id)
        # The session id is reused as-is so cache affinity survives the retry.
        headers = build_vendor_headers(
            access_token=outcome.record.access_token,
            account_id=outcome.record.account_id or credential.account_id,
            session_id=prepared.session_id,
        )
        retry = await self._dispatch(
            client, prepared, headers, request_id=request_id, verbose=verbose
        )
        if retry.is_success:
            return UpstreamResult(response=self._finish_success(retry, verbose))

        error_body = await _read_error_body(retry)
        self._log_upstream_error(request_id, prepared, retry, error_body, retry=True)
        return UpstreamResult(error=GatewayError.from_upstream(retry.status_code, error_body))

    def _log_upstream_error(
        self,
        request_id: str,
        prepared: PreparedUpstreamRequest,
        upstream: httpx.Response,
        error_body: dict[str, Any],
        *,
        retry: bool = False,
    ) -> None:
        logger.error(
            (
                "upstream_http_error request_id=%s retry=%s status=%d reason=%s url=%s "
                "response_headers=%s error_body=%s request_body=%s"
            ),
            request_id,
            retry,
            upstream.status_code,
            upstream.reason_phrase,
            prepared.url,
            dict(upstream.headers),
            error_body,
            prepared.body_text(),
        )
