from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Literal

import httpx
import jwt

from codex_gateway.runtime.single_flight import SingleFlight
from codex_gateway.settings import Settings

logger = logging.getLogger("uvicorn.error")

OPENAI_AUTH_CLAIM = "https://api.openai.com/auth"


@dataclass(frozen=True, slots=True)
class CredentialRecord:
    access_token: str
    account_id: str | None
    source: Literal["direct", "refreshable"]


@dataclass(frozen=True, slots=True)
class RefreshOutcome:
    record: CredentialRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None

    @classmethod
    def failed(cls, reason: str) -> RefreshOutcome:
        return cls(record=None, error=reason)


@dataclass(frozen=True, slots=True)
class OAuthRuntimeState:
    access_token: str
    refresh_token: str | None
    expires_at: int | None
    account_id: str | None = None

    def to_record(self) -> CredentialRecord:
        return CredentialRecord(
            access_token=self.access_token,
            account_id=self.account_id,
            source="refreshable",
        )


class CredentialManager:
    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._state_lock = threading.Lock()
        self._state: OAuthRuntimeState | None = None
        self._flight: SingleFlight[RefreshOutcome] = SingleFlight()
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            verify=not settings.tls_verification_disabled,
            trust_env=False,
        )
        self.refresh_exchanges = 0

    @property
    def is_refreshable(self) -> bool:
        if self._settings.has_direct_token:
            return False
        state = self._ensure_state()
        return bool(state.refresh_token)

    @property
    def auth_method(self) -> str:
        return "direct_token" if self._settings.has_direct_token else "oauth"

    async def aclose(self) -> None:
        await self.client.aclose()

    async def get_current_credential(self) -> CredentialRecord:
        if self._settings.has_direct_token:
            token = (self._settings.chatgpt_access_token or "").strip()
            account_id = (
                self._settings.chatgpt_account_id or ""
            ).strip() or _extract_chatgpt_account_id(token)
            return CredentialRecord(
                access_token=token, account_id=account_id, source="direct"
            )

        state = self._ensure_state()
        if state.refresh_token and (
            not state.access_token or _is_token_expiring(state.expires_at)
        ):
            outcome = await self.refresh()
            if outcome.record is not None:
                return outcome.record
            # Refresh failed: fall back to whatever is currently installed.
            state = self._ensure_state()
        return state.to_record()

    async def refresh(self, *, rejected_token: str | None = None) -> RefreshOutcome:
        if self._settings.has_direct_token:
            return RefreshOutcome.failed("direct_token_not_refreshable")
        if rejected_token is not None:
            current = self._ensure_state()
            if current.access_token and current.access_token != rejected_token:
                # Another caller already rotated the token after this one was issued.
                return RefreshOutcome(record=current.to_record())
        return await self._flight.run("refresh", self._exchange_refresh_token)

    def _ensure_state(self) -> OAuthRuntimeState:
        with self._state_lock:
            if self._state is None:
                self._state = _state_from_codex_auth(
                    self._settings.openai_codex_auth,
                    fallback_account_id=self._settings.chatgpt_account_id,
                )
            return self._state

    def _install(self, state: OAuthRuntimeState) -> None:
        with self._state_lock:
            self._state = state

    async def _exchange_refresh_token(self) -> RefreshOutcome:
        current = self._ensure_state()
        refresh_token = current.refresh_token
        if not refresh_token:
            logger.warning("oauth_refresh_skipped reason=missing_refresh_token")
            return RefreshOutcome.failed("missing_refresh_token")

        token_url = self._settings.chatgpt_oauth_token_url
        logger.info("oauth_refresh_start token_url=%s", token_url)
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._settings.chatgpt_local_client_id,
            "scope": "openid profile email",
        }
        self.refresh_exchanges += 1
        try:
            response = await self.client.post(
                token_url,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            logger.warning(
                "oauth_refresh_error reason=request_error error_type=%s error=%s",
                exc.__class__.__name__,
                exc,
            )
            return RefreshOutcome.failed("request_error")

        if response.status_code >= 400:
            logger.warning("oauth_refresh_error status=%d", response.status_code)
            return RefreshOutcome.failed(f"status_{response.status_code}")

        try:
            body = response.json()
        except ValueError:
            logger.warning("oauth_refresh_error reason=invalid_json")
            return RefreshOutcome.failed("invalid_json")
        if not isinstance(body, dict):
            logger.warning("oauth_refresh_error reason=invalid_json")
            return RefreshOutcome.failed("invalid_json")

        raw_access = body.get("access_token")
        access_token = str(raw_access).strip() if raw_access is not None else ""
        if not access_token:
            logger.warning("oauth_refresh_error reason=missing_access_token")
            return RefreshOutcome.failed("missing_access_token")

        raw_refresh = body.get("refresh_token")
        next_refresh = (
            str(raw_refresh).strip() if raw_refresh is not None else refresh_token
        ) or refresh_token
        expires_at = _extract_expires_at(body) or _token_expiry(access_token)
        account_id = (
            _string_or_none(body.get("account_id"))
            or _extract_chatgpt_account_id(_string_or_none(body.get("id_token")))
            or _extract_chatgpt_account_id(access_token)
            or current.account_id
        )

        state = OAuthRuntimeState(
            access_token=access_token,
            refresh_token=next_refresh,
            expires_at=expires_at,
            account_id=account_id,
        )
        self._install(state)
        logger.info(
            "oauth_refresh_success expires_at=%s account_id=%s",
            state.expires_at,
            state.account_id or "none",
        )
        return RefreshOutcome(record=state.to_record())


def _string_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _state_from_codex_auth(
    raw: str | None, *, fallback_account_id: str | None = None
) -> OAuthRuntimeState:
    empty = OAuthRuntimeState(
        access_token="",
        refresh_token=None,
        expires_at=None,
        account_id=_string_or_none(fallback_account_id),
    )
    if not raw or not raw.strip():
        return empty
    try:
        blob = json.loads(raw)
    except ValueError:
        logger.warning("codex_auth_invalid reason=invalid_json")
        return empty
    if not isinstance(blob, dict):
        logger.warning("codex_auth_invalid reason=not_an_object")
        return empty

    tokens = blob.get("tokens")
    source: dict[str, Any] = tokens if isinstance(tokens, dict) else blob
    access_token = _string_or_none(source.get("access_token")) or ""
    account_id = (
        _string_or_none(source.get("account_id"))
        or _string_or_none(fallback_account_id)
        or _extract_chatgpt_account_id(_string_or_none(source.get("id_token")))
        or _extract_chatgpt_account_id(access_token)
    )
    return OAuthRuntimeState(
        access_token=access_token,
        refresh_token=_string_or_none(source.get("refresh_token")),
        expires_at=_token_expiry(access_token),
        account_id=account_id,
    )


def _decode_claims(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    try:
        claims = jwt.decode(
            token, options={"verify_signature": False, "verify_exp": False}
        )
    except jwt.PyJWTError:
        return None
    return claims if isinstance(claims, dict) else None


def _token_expiry(token: str | None) -> int | None:
    claims = _decode_claims(token)
    if claims is None:
        return None
    raw_exp = claims.get("exp")
    try:
        return int(raw_exp) if raw_exp is not None else None
    except (TypeError, ValueError):
        return None


def _extract_chatgpt_account_id(token: str | None) -> str | None:
    claims = _decode_claims(token)
    if claims is None:
        return None
    auth_claim = claims.get(OPENAI_AUTH_CLAIM)
    if isinstance(auth_claim, dict):
        account_id = auth_claim.get("chatgpt_account_id")
        if isinstance(account_id, str) and account_id.strip():
            return account_id.strip()
    return None


def _is_token_expiring(expires_at: int | None, skew_seconds: int = 60) -> bool:
    if expires_at is None:
        return False
    return expires_at <= int(time.time()) + skew_seconds


def _extract_expires_at(token_response: dict[str, Any]) -> int | None:
    now = int(time.time())

    raw_expires_in = token_response.get("expires_in")
    if raw_expires_in is not None:
        try:
            return now + int(float(raw_expires_in))
        except (TypeError, ValueError):
            pass

    raw_expires_at = token_response.get("expires_at")
    if raw_expires_at is not None:
        try:
            return int(float(raw_expires_at))
        except (TypeError, ValueError):
            pass

    return None
