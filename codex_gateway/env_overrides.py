from __future__ import annotations

import asyncio
import logging
import re
import threading
from pathlib import Path

from codex_gateway.runtime.single_flight import ResolveOnce

logger = logging.getLogger("uvicorn.error")

_LINE_PATTERN = re.compile(r"^\s*([\w.-]+)\s*=\s*(.*)?\s*$")


def parse_env_content(content: str) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        match = _LINE_PATTERN.match(line)
        if match is None:
            continue

        key = match.group(1)
        value = match.group(2) or ""
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1].replace("\\n", "\n")
        elif len(value) >= 2 and value.startswith("'") and value.endswith("'"):
            value = value[1:-1]
        overrides[key] = value
    return overrides


class EnvOverrideLoader:
    def __init__(self, path: str | Path = ".env") -> None:
        self.path = Path(path)
        self._once: ResolveOnce[dict[str, str] | None] = ResolveOnce(
            self._load, name="env_overrides"
        )
        self._log_lock = threading.Lock()
        self._logged_success = False
        self._logged_failure = False
        self.load_attempts = 0

    async def get_overrides(self) -> dict[str, str] | None:
        return await self._once.get()

    async def _load(self) -> dict[str, str] | None:
        self.load_attempts += 1
        try:
            content = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
            overrides = parse_env_content(content)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            self._log_failure_once(exc)
            return None

        with self._log_lock:
            if not self._logged_success:
                self._logged_success = True
                logger.info(
                    "env_overrides_loaded path=%s keys=%d", self.path, len(overrides)
                )
        return overrides

    def _log_failure_once(self, exc: Exception) -> None:
        with self._log_lock:
            if self._logged_failure:
                return
            self._logged_failure = True
        logger.warning(
            "env_overrides_load_failed path=%s error_type=%s error=%s",
            self.path,
            exc.__class__.__name__,
            exc,
        )


_default_loader: EnvOverrideLoader | None = None
_default_loader_lock = threading.Lock()


def get_env_overrides_loader(path: str | Path = ".env") -> EnvOverrideLoader:
    global _default_loader
    with _default_loader_lock:
        if _default_loader is None:
            _default_loader = EnvOverrideLoader(path)
        return _default_loader
