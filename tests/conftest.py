from __future__ import annotations

from typing import Any

import pytest

from codex_gateway import env_overrides
from codex_gateway.settings import Settings, get_settings


@pytest.fixture(autouse=True)
def _isolate_gateway_env(monkeypatch: Any) -> Any:
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
        monkeypatch.delenv(name.lower(), raising=False)
    monkeypatch.setattr(env_overrides, "_default_loader", None)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
