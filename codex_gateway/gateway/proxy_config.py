from __future__ import annotations

import logging
import threading

import httpx

from codex_gateway.runtime.single_flight import ResolveOnce
from codex_gateway.settings import Settings

logger = logging.getLogger("uvicorn.error")


def _redact_proxy_url(proxy_url: str) -> str:
    try:
        url = httpx.URL(proxy_url)
    except Exception:
        return "<invalid>"
    if url.password:
        return str(url.copy_with(password="***"))
    return str(url)


class ProxyResolver:
    """Resolves the outbound proxy for upstream API traffic.

    Only the vendor API goes through the handle. The token exchange and the
    instructions fetch always connect directly.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._tls_lock = threading.Lock()
        self._tls_configured = False
        self._verify_tls = True
        self._once: ResolveOnce[httpx.AsyncHTTPTransport | None] = ResolveOnce(
            self._resolve, name="proxy_handle"
        )
        self.handle_constructions = 0

    @property
    def verify_tls(self) -> bool:
        self.configure_tls()
        return self._verify_tls

    def configure_tls(self) -> None:
        with self._tls_lock:
            if self._tls_configured:
                return
            self._tls_configured = True
            if not self._settings.tls_verification_disabled:
                return
            self._verify_tls = False
        logger.warning(
            "tls_verification_disabled NODE_TLS_REJECT_UNAUTHORIZED=0 "
            "certificate validation is OFF for upstream requests"
        )
        logger.warning(
            "tls_verification_disabled only use this in development with self-signed certificates"
        )

    def proxy_url(self) -> str | None:
        https_proxy = (self._settings.https_proxy or "").strip()
        http_proxy = (self._settings.http_proxy or "").strip()
        return https_proxy or http_proxy or None

    async def get_dispatch_handle(self) -> httpx.AsyncHTTPTransport | None:
        return await self._once.get()

    def is_proxy_configured(self) -> bool:
        return self._once.peek() is not None

    async def _resolve(self) -> httpx.AsyncHTTPTransport | None:
        self.configure_tls()
        proxy_url = self.proxy_url()
        if not proxy_url:
            return None

        redacted = _redact_proxy_url(proxy_url)
        logger.info("proxy_configured url=%s", redacted)
        try:
            self.handle_constructions += 1
            return httpx.AsyncHTTPTransport(
                proxy=httpx.Proxy(proxy_url),
                verify=self._verify_tls,
            )
        except Exception as exc:
            logger.error(
                "proxy_configure_failed url=%s error_type=%s error=%s",
                redacted,
                exc.__class__.__name__,
                exc,
            )
            return None
