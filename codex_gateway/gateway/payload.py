from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any

from codex_gateway.settings import (
    VALID_REASONING_EFFORTS,
    VALID_REASONING_SUMMARIES,
    Settings,
)

OPENAI_BETA_HEADER = "responses=experimental"
ENCRYPTED_REASONING_INCLUDE = "reasoning.encrypted_content"


@dataclass(slots=True)
class UpstreamOptions:
    instructions: str | None = None
    tools: list[Any] | None = None
    tool_choice: Any = None
    parallel_tool_calls: bool | None = None
    reasoning: dict[str, Any] | None = None
    passthrough_path: str | None = None
    passthrough_payload: dict[str, Any] | None = None
    verbose: bool = False

    @property
    def is_passthrough(self) -> bool:
        return bool(self.passthrough_path)


def split_model_ref(model: str) -> tuple[str | None, str]:
    normalized = model.strip()
    if not normalized:
        return None, ""
    if "/" not in normalized:
        return None, normalized
    provider, model_id = normalized.split("/", 1)
    provider = provider.strip()
    model_id = model_id.strip()
    if not provider or not model_id:
        return None, normalized
    return provider, model_id


def normalize_model_name(model: str, debug_model: str | None = None) -> str:
    if debug_model and debug_model.strip():
        return debug_model.strip()
    _, model_id = split_model_ref(model or "")
    base = model_id.lower()
    if not base:
        return "gpt-5"
    if "codex" in base:
        return "gpt-5-codex"
    if base.startswith("gpt-5"):
        return "gpt-5"
    return model_id


def normalize_tool_choice(choice: Any) -> Any:
    if choice in ("auto", "none"):
        return choice
    if isinstance(choice, dict):
        return choice
    return "auto"


def resolve_reasoning_param(
    requested: dict[str, Any] | None, settings: Settings
) -> dict[str, Any] | None:
    reasoning: dict[str, Any] = {}
    if settings.reasoning_effort:
        reasoning["effort"] = settings.reasoning_effort
    if settings.reasoning_summary:
        reasoning["summary"] = settings.reasoning_summary

    if isinstance(requested, dict):
        effort = requested.get("effort")
        if isinstance(effort, str) and effort.strip().lower() in VALID_REASONING_EFFORTS:
            reasoning["effort"] = effort.strip().lower()
        summary = requested.get("summary")
        if isinstance(summary, str) and summary.strip().lower() in VALID_REASONING_SUMMARIES:
            reasoning["summary"] = summary.strip().lower()

    return reasoning or None


def generate_session_id(instructions: str | None, input_items: list[Any]) -> str:
    serialized_input = json.dumps(input_items, ensure_ascii=False, separators=(",", ":"))
    content = f"{instructions or ''}|{serialized_input}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def build_vendor_payload(
    *,
    model: str,
    instructions: str,
    input_items: list[Any],
    options: UpstreamOptions,
    reasoning: dict[str, Any] | None,
    session_id: str,
) -> dict[str, Any]:
    include: list[str] = []
    if (reasoning or {}).get("effort") != "none":
        include.append(ENCRYPTED_REASONING_INCLUDE)

    payload: dict[str, Any] = {
        "model": model,
        "instructions": instructions,
        "input": input_items,
        "tools": options.tools or [],
        "tool_choice": normalize_tool_choice(options.tool_choice),
        "parallel_tool_calls": bool(options.parallel_tool_calls),
        "store": False,
        # The ChatGPT backend only serves streamed responses.
        "stream": True,
        "include": include,
        "prompt_cache_key": session_id,
    }
    if reasoning:
        payload["reasoning"] = reasoning
    return payload


def build_vendor_headers(
    *,
    access_token: str,
    account_id: str | None,
    session_id: str | None,
) -> dict[str, str]:
    headers: dict[str, str] = {"Content-Type": "application/json"}
    headers["Authorization"] = f"Bearer {access_token}"
    headers["Accept"] = "text/event-stream"
    if account_id:
        headers["chatgpt-account-id"] = account_id
    headers["OpenAI-Beta"] = OPENAI_BETA_HEADER
    if session_id:
        headers["session_id"] = session_id
    return headers


def build_passthrough_headers() -> dict[str, str]:
    return {"Content-Type": "application/json"}


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    redacted = dict(headers)
    authorization = redacted.get("Authorization")
    if authorization:
        redacted["Authorization"] = f"{authorization[:20]}..."
    return redacted


def serialize_body(payload: Any) -> bytes:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
