from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx

from codex_gateway.runtime.single_flight import SingleFlight
from codex_gateway.settings import Settings

logger = logging.getLogger("uvicorn.error")

MINIMAL_INSTRUCTIONS = (
    "You are a coding agent running in the Codex CLI, a terminal-based coding "
    "assistant. You are expected to be precise, safe, and helpful."
)


class InstructionsFetchError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class InstructionsCacheEntry:
    text: str
    fetched_at: float


class InstructionsCache:
    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._url = settings.codex_instructions_url
        self._fallback_path = Path(settings.codex_instructions_path)
        self._ttl_seconds = max(0.0, float(settings.instructions_ttl_seconds))
        self._timeout_seconds = max(0.1, float(settings.instructions_timeout_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._entry: InstructionsCacheEntry | None = None
        self._flight: SingleFlight[str] = SingleFlight()
        # Direct connection: the upstream proxy is not used for this fetch.
        self.client = client or httpx.AsyncClient(
            timeout=self._timeout_seconds,
            verify=not settings.tls_verification_disabled,
            trust_env=False,
        )

    @property
    def entry(self) -> InstructionsCacheEntry | None:
        return self._entry

    def is_fresh(self, entry: InstructionsCacheEntry | None) -> bool:
        if entry is None:
            return False
        return self._clock() - entry.fetched_at < self._ttl_seconds

    async def get_instructions(self) -> str:
        entry = self._entry
        if entry is not None and self.is_fresh(entry):
            return entry.text
        return await self._flight.run("instructions", self._refresh)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _refresh(self) -> str:
        entry = self._entry
        if entry is not None and self.is_fresh(entry):
            return entry.text

        try:
            text = await self._fetch_remote()
        except Exception as exc:
            logger.error(
                "instructions_fetch_failed url=%s error_type=%s error=%s",
                self._url,
                exc.__class__.__name__,
                exc,
            )
        else:
            self._store(text)
            return text

        stale = self._entry
        if stale is not None:
            logger.warning(
                "instructions_stale_cache_used age_seconds=%.1f",
                self._clock() - stale.fetched_at,
            )
            return stale.text

        local_text = await self._read_fallback_file()
        if local_text is not None:
            self._store(local_text)
            return local_text

        logger.warning("instructions_builtin_fallback_used")
        return MINIMAL_INSTRUCTIONS

    async def _fetch_remote(self) -> str:
        response = await asyncio.wait_for(
            self.client.get(self._url), timeout=self._timeout_seconds
        )
        if response.status_code >= 400:
            raise InstructionsFetchError(
                f"Failed to fetch instructions: {response.status_code}"
            )
        text = response.text
        if not text.strip():
            raise InstructionsFetchError("Fetched instructions were empty")
        return text

    async def _read_fallback_file(self) -> str | None:
        try:
            text = await asyncio.to_thread(
                self._fallback_path.read_text, encoding="utf-8"
            )
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning(
                "instructions_fallback_file_unreadable path=%s error=%s",
                self._fallback_path,
                exc,
            )
            return None
        if not text.strip():
            return None
        logger.info("instructions_fallback_file_used path=%s", self._fallback_path)
        return text

    def _store(self, text: str) -> None:
        with self._lock:
            self._entry = InstructionsCacheEntry(text=text, fetched_at=self._clock())
