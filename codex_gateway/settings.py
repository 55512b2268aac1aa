from __future__ import annotations

import logging
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("uvicorn.error")

DEFAULT_INSTRUCTIONS_URL = (
    "https://raw.githubusercontent.com/openai/codex/refs/heads/main/codex-rs/core/prompt.md"
)
VALID_REASONING_EFFORTS = ("none", "minimal", "low", "medium", "high")
VALID_REASONING_SUMMARIES = ("auto", "concise", "detailed", "none")
VALID_REASONING_COMPAT = ("think-tags", "o3", "legacy", "current")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class Settings(BaseSettings):
    openai_api_key: str | None = None
    openai_codex_auth: str | None = None
    chatgpt_access_token: str | None = None
    chatgpt_account_id: str | None = None
    chatgpt_responses_url: str = "https://chatgpt.com/backend-api/responses"
    chatgpt_local_client_id: str = "app_EMoamEEZ73f0CkXaXp7hrann"
    chatgpt_oauth_token_url: str = "https://auth.openai.com/oauth/token"
    ollama_api_url: str | None = None
    debug_model: str | None = None
    reasoning_effort: Literal["none", "minimal", "low", "medium", "high"] | None = None
    reasoning_summary: Literal["auto", "concise", "detailed", "none"] | None = None
    reasoning_compat: Literal["think-tags", "o3", "legacy", "current"] | None = None
    verbose: bool = False
    http_proxy: str | None = None
    https_proxy: str | None = None
    node_tls_reject_unauthorized: str | None = None
    codex_instructions_url: str = DEFAULT_INSTRUCTIONS_URL
    codex_instructions_path: str = "prompt.md"
    instructions_ttl_seconds: float = 300.0
    instructions_timeout_seconds: float = 10.0
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 120.0
    upstream_deadline_seconds: float = 60.0
    env_overrides_path: str = ".env"
    port: int = 8787

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=None,
        env_ignore_empty=True,
        extra="ignore",
    )

    @field_validator("reasoning_effort", mode="before")
    @classmethod
    def _coerce_reasoning_effort(cls, value: Any) -> str | None:
        return _choice_or_none("REASONING_EFFORT", value, VALID_REASONING_EFFORTS)

    @field_validator("reasoning_summary", mode="before")
    @classmethod
    def _coerce_reasoning_summary(cls, value: Any) -> str | None:
        return _choice_or_none("REASONING_SUMMARY", value, VALID_REASONING_SUMMARIES)

    @field_validator("reasoning_compat", mode="before")
    @classmethod
    def _coerce_reasoning_compat(cls, value: Any) -> str | None:
        return _choice_or_none("REASONING_COMPAT", value, VALID_REASONING_COMPAT)

    @field_validator("verbose", mode="before")
    @classmethod
    def _coerce_verbose(cls, value: Any) -> bool:
        if value is None or isinstance(value, bool):
            return bool(value)
        normalized = str(value).strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized not in _FALSE_VALUES:
            logger.warning("settings_value_ignored key=VERBOSE value=%r", value)
        return False

    @property
    def has_direct_token(self) -> bool:
        return bool((self.chatgpt_access_token or "").strip())

    @property
    def tls_verification_disabled(self) -> bool:
        return (self.node_tls_reject_unauthorized or "").strip() == "0"

    @classmethod
    def with_overrides(cls, overrides: Mapping[str, str] | None) -> Settings:
        """Layer ``.env`` overrides over the process environment.

        Empty values and keys that are not settings fields are dropped, so an
        override line can only ever replace a default with a real value.
        """
        fields: dict[str, str] = {}
        for key, value in (overrides or {}).items():
            name = key.strip().lower()
            if name in cls.model_fields and value.strip():
                fields[name] = value
        return cls(**fields)


def _choice_or_none(key: str, value: Any, choices: tuple[str, ...]) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if not normalized:
        return None
    if normalized not in choices:
        logger.warning(
            "settings_value_ignored key=%s value=%r allowed=%s",
            key,
            value,
            ",".join(choices),
        )
        return None
    return normalized


@lru_cache
def get_settings() -> Settings:
    return Settings()
