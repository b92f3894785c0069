"""
Request-time refresh state machine for session records.

``advance`` moves a record forward by one request. Rules are checked in order
and the first match wins:

1. sign-in supplied          → fresh record (ISSUED)
2. no provider refresh token → record + error (MISSING_REFRESH_TOKEN)
3. absolute cap reached      → terminal record (ABSOLUTE_CAP_REACHED)
4. provider window still open → record, error cleared (FRESH)
5. otherwise                  → call the provider refresh (REFRESHED / REFRESH_FAILED)

A record that already ended on the absolute cap keeps re-deriving the same
terminal state. Refresh failures are recorded on the record and never raised.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Optional

from session_service.config import logger
from session_service.core.models import ABSOLUTE_SESSION_END, ProviderTokens, RefreshOutcome, SessionRecord

DEFAULT_ID_TOKEN_WINDOW_MS = 15 * 60 * 1000
DEFAULT_MAX_SESSION_SECONDS = 90 * 24 * 60 * 60

RefreshFn = Callable[[str], Optional[ProviderTokens | Mapping[str, Any]]]


@dataclass(frozen=True)
class SignIn:
    """Identity handed over by the upstream sign-in flow."""

    subject: Optional[str]
    refresh_token: Optional[str]


def issue(subject: Optional[str], refresh_token: Optional[str], now_ms: int, *, max_session_seconds: int = DEFAULT_MAX_SESSION_SECONDS, id_token_window_ms: int = DEFAULT_ID_TOKEN_WINDOW_MS) -> SessionRecord:
    """Create the record for a brand-new sign-in.

    The provider window is deliberately shorter than the upstream token's real
    lifetime so the refresh path runs routinely. The absolute cap is fixed
    here and never moved again.
    """
    return SessionRecord(
        subject=subject,
        provider_refresh_token=refresh_token,
        provider_id_token_expires_at=now_ms + id_token_window_ms,
        absolute_session_expires_at=now_ms + max_session_seconds * 1000,
        session_ended=None,
        token_rotated_at=None,
        token_rotation_count=0,
        error=None,
    )


def _end_absolute(record: SessionRecord) -> SessionRecord:
    return record.model_copy(update={"provider_refresh_token": None, "session_ended": ABSOLUTE_SESSION_END}).with_error(
        "Absolute session cap reached", "Session ended due to absolute session cap."
    )


def _refresh(record: SessionRecord, now_ms: int, refresh_fn: RefreshFn, id_token_window_ms: int) -> tuple[SessionRecord, RefreshOutcome]:
    logger.info("Attempting provider ID token refresh", subject=record.subject, rotation_count=record.token_rotation_count)
    try:
        result = refresh_fn(record.provider_refresh_token)
        tokens = None if result is None else ProviderTokens.model_validate(result)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logger.warning("Provider ID token refresh raised", subject=record.subject, error_type=type(exc).__name__)
        return record.with_error("Provider ID token refresh exception", str(exc) or type(exc).__name__), RefreshOutcome.REFRESH_FAILED

    if tokens is None:
        logger.warning("Provider ID token refresh returned no tokens", subject=record.subject)
        return record.with_error("Provider ID token refresh failed", "Failed to refresh provider ID token."), RefreshOutcome.REFRESH_FAILED

    refreshed = record.model_copy(
        update={
            # Rotation: the provider has invalidated the refresh token we just used.
            "provider_refresh_token": tokens.refresh_token or record.provider_refresh_token,
            "token_rotated_at": now_ms,
            "token_rotation_count": record.token_rotation_count + 1,
            "provider_id_token_expires_at": now_ms + id_token_window_ms,
            "error": None,
        }
    )
    logger.info("Provider ID token refreshed", subject=record.subject, rotation_count=refreshed.token_rotation_count, provider_id_token_expires_at=refreshed.provider_id_token_expires_at)
    return refreshed, RefreshOutcome.REFRESHED


def advance(
    record: Optional[SessionRecord],
    now_ms: int,
    refresh_fn: RefreshFn,
    *,
    id_token_window_ms: int = DEFAULT_ID_TOKEN_WINDOW_MS,
    max_session_seconds: int = DEFAULT_MAX_SESSION_SECONDS,
    sign_in: Optional[SignIn] = None,
) -> tuple[SessionRecord, RefreshOutcome]:
    """Advance a session record by one request.

    Args:
        record: Current record, or None when ``sign_in`` is supplied.
        now_ms: Current time in epoch milliseconds.
        refresh_fn: Provider refresh collaborator; may return None or raise.
        id_token_window_ms: Length of the short provider window.
        max_session_seconds: Absolute session lifetime, used on sign-in only.
        sign_in: Identity from a completed sign-in; starts a new record.

    Returns:
        The next record and the outcome of this step.

    Raises:
        ValueError: When neither a record nor a sign-in is supplied.
    """
    if sign_in is not None:
        record = issue(sign_in.subject, sign_in.refresh_token, now_ms, max_session_seconds=max_session_seconds, id_token_window_ms=id_token_window_ms)
        return record, RefreshOutcome.ISSUED

    if record is None:
        raise ValueError("A session record or a sign-in is required.")

    if record.session_ended == ABSOLUTE_SESSION_END:
        return _end_absolute(record), RefreshOutcome.ABSOLUTE_CAP_REACHED

    if not record.provider_refresh_token:
        return record.with_error("Missing providerRefreshToken", "Cannot refresh provider ID token."), RefreshOutcome.MISSING_REFRESH_TOKEN

    if record.absolute_session_expires_at and now_ms >= record.absolute_session_expires_at:
        logger.warning("Absolute session cap reached; ending session", subject=record.subject, absolute_session_expires_at=record.absolute_session_expires_at)
        return _end_absolute(record), RefreshOutcome.ABSOLUTE_CAP_REACHED

    if record.provider_id_token_expires_at and now_ms < record.provider_id_token_expires_at:
        return record.model_copy(update={"error": None}), RefreshOutcome.FRESH

    return _refresh(record, now_ms, refresh_fn, id_token_window_ms)
