"""
Per-request session orchestration.

``SessionManager.validate`` is the only entry point request handlers need:

    incoming cookies → reassemble → decrypt → advance → encrypt → chunk → outgoing cookies

It never raises. A missing, truncated, tampered or expired session comes back
as ``SessionResult(view=None, cookies=[])``; a failed provider refresh comes
back as a view carrying ``error``, which ``is_valid`` reports as invalid.
"""

import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import ValidationError

from session_service import config
from session_service.config import logger
from session_service.core.models import ABSOLUTE_SESSION_END, RefreshOutcome, SessionRecord, SessionView
from session_service.core.refresh_state import RefreshFn, SignIn, advance
from session_service.exceptions import SessionTooLargeError
from session_service.utils import cookie_chunks, token_cipher
from session_service.utils.cookie_chunks import Cookie, CookieOptions
from session_service.utils.provider_tokens import ProviderConfig, build_refresh_fn


@dataclass(frozen=True)
class SessionResult:
    """
    Outcome of one session pass.

    Attributes:
        view: Caller-safe projection of the session, or None when there is no usable session.
        cookies: Cookies to set on the response (new chunks and clears).
        outcome: Refresh state machine outcome, or None when the state machine did not run.
    """

    view: Optional[SessionView]
    cookies: list[Cookie] = field(default_factory=list)
    outcome: Optional[RefreshOutcome] = None


def _now_ms(now_ms: Optional[int]) -> int:
    return int(time.time() * 1000) if now_ms is None else now_ms


def is_valid(view: Optional[SessionView], now_ms: Optional[int] = None) -> bool:
    """
    Return whether a session view represents a usable session.

    Args:
        view: Session view from ``SessionManager.validate``.
        now_ms: Current time in epoch milliseconds; defaults to the current time.

    Returns:
        False when there is no view, the absolute cap ended the session, an
        error is recorded, the session expiry has passed, or the provider
        window has passed.
    """
    if view is None:
        return False
    if view.session_ended == ABSOLUTE_SESSION_END:
        return False
    if view.error is not None:
        return False

    current_ms = _now_ms(now_ms)
    if view.expires is not None and current_ms > view.expires.timestamp() * 1000:
        return False
    # Advancing should never surface an expired window without an error; checked anyway.
    return not (view.provider_id_token_expires_at and current_ms > view.provider_id_token_expires_at)


class SessionManager:
    """
    Stateless session lifecycle manager backed by encrypted, chunked cookies.

    All session state lives in the request's cookies; instances hold
    configuration only and are safe to share between threads.
    """

    def __init__(
        self,
        secret: str | Sequence[str],
        *,
        refresh_fn: Optional[RefreshFn] = None,
        cookie_name: str = config.SESSION_COOKIE_NAME,
        cookie_options: Optional[CookieOptions] = None,
        max_session_seconds: int = config.SESSION_MAX_AGE_SECONDS,
        id_token_window_seconds: int = config.PROVIDER_ID_TOKEN_WINDOW_SECONDS,
        time_provider: Optional[Callable[[], float]] = None,
    ) -> None:
        """
        Configure the session manager.

        Args:
            secret: Master secret, or current secret followed by superseded ones.
            refresh_fn: Provider refresh collaborator; built from the environment when omitted.
            cookie_name: Base session cookie name, also the key-derivation purpose.
            cookie_options: Attributes applied to every session cookie.
            max_session_seconds: Absolute session lifetime and envelope max age.
            id_token_window_seconds: Short provider window between refreshes.
            time_provider: Optional UNIX-time provider (seconds) for deterministic tests.

        Raises:
            ValueError: When the secret is missing or durations are not positive.
        """
        secrets = [secret] if isinstance(secret, str) else list(secret)
        if not any(candidate and candidate.strip() for candidate in secrets):
            raise ValueError("A non-empty session secret is required.")
        if not cookie_name:
            raise ValueError("cookie_name is required.")
        if max_session_seconds <= 0:
            raise ValueError("max_session_seconds must be greater than zero.")
        if id_token_window_seconds <= 0:
            raise ValueError("id_token_window_seconds must be greater than zero.")

        self._secrets = [candidate.strip() for candidate in secrets if candidate and candidate.strip()]
        self._refresh_fn = refresh_fn or build_refresh_fn(ProviderConfig.from_env())
        self.cookie_name = cookie_name
        self.cookie_options = cookie_options or CookieOptions(secure=config.SESSION_COOKIE_SECURE)
        self._max_session_seconds = max_session_seconds
        self._id_token_window_ms = id_token_window_seconds * 1000
        self._time_provider = time_provider or time.time

    @classmethod
    def from_env(cls, **overrides: Any) -> "SessionManager":
        """Build a manager from the environment-backed config module."""
        return cls(config.AUTH_SECRETS, **overrides)

    def _now_ms(self) -> int:
        return int(self._time_provider() * 1000)

    def _emit(self, record: SessionRecord, previous_names: Sequence[str], now_ms: int) -> tuple[SessionRecord, list[Cookie]]:
        issued_at = now_ms // 1000
        blob = token_cipher.encode(record.to_claims(), secret=self._secrets, salt=self.cookie_name, max_age=self._max_session_seconds, now=issued_at)
        record = record.model_copy(update={"issued_at": issued_at, "expires_at": issued_at + self._max_session_seconds})

        # Pin the cookie to the absolute cap so activity never extends it.
        options = self.cookie_options
        if record.absolute_session_expires_at:
            options = options.replace(expires=datetime.fromtimestamp(record.absolute_session_expires_at / 1000, tz=UTC))
        return record, cookie_chunks.chunk(blob, self.cookie_name, options, previous_names=previous_names)

    def validate(self, cookies: Mapping[str, str]) -> SessionResult:
        """
        Load, advance and re-issue the session carried by a cookie snapshot.

        Args:
            cookies: Incoming cookie snapshot (name → value).

        Returns:
            Session view plus outgoing cookies; ``SessionResult(None, [])`` when
            there is no usable session.
        """
        previous_names = cookie_chunks.family_names(cookies, self.cookie_name)
        if not previous_names:
            return SessionResult(view=None)

        try:
            now_ms = self._now_ms()
            blob = cookie_chunks.reassemble(cookies, self.cookie_name)
            claims = token_cipher.decode(blob, secret=self._secrets, salt=self.cookie_name, now=now_ms // 1000)
            if claims is None:
                logger.warning("SessionManager: session cookies did not decode; treating as signed out", cookie_name=self.cookie_name, chunk_count=len(previous_names))
                return SessionResult(view=None)

            record = SessionRecord.model_validate(claims)
            record, outcome = advance(record, now_ms, self._refresh_fn, id_token_window_ms=self._id_token_window_ms, max_session_seconds=self._max_session_seconds)
            record, outgoing = self._emit(record, previous_names, now_ms)
        except ValidationError:
            logger.warning("SessionManager: session payload failed schema validation", cookie_name=self.cookie_name)
            return SessionResult(view=None)
        except SessionTooLargeError as exc:
            logger.warning("SessionManager: session payload exceeded maximum chunk count", chunk_count=exc.chunk_count, max_chunks=exc.max_chunks)
            return SessionResult(view=None)
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("SessionManager: unexpected failure while validating session", cookie_name=self.cookie_name)
            return SessionResult(view=None)

        return SessionResult(view=SessionView.from_record(record), cookies=outgoing, outcome=outcome)

    def start(self, subject: Optional[str], refresh_token: Optional[str], cookies: Optional[Mapping[str, str]] = None) -> SessionResult:
        """
        Issue a brand-new session after an upstream sign-in.

        Args:
            subject: Stable user identifier from the identity provider.
            refresh_token: Provider refresh token from the code exchange.
            cookies: Incoming cookie snapshot, so leftover chunks of an older session are cleared.

        Returns:
            Session view plus the cookies that carry the new session.

        Raises:
            SessionTooLargeError: When the new session does not fit in the allowed cookies.
        """
        now_ms = self._now_ms()
        previous_names = cookie_chunks.family_names(cookies or {}, self.cookie_name)
        record, outcome = advance(
            None,
            now_ms,
            self._refresh_fn,
            id_token_window_ms=self._id_token_window_ms,
            max_session_seconds=self._max_session_seconds,
            sign_in=SignIn(subject=subject, refresh_token=refresh_token),
        )
        record, outgoing = self._emit(record, previous_names, now_ms)
        logger.info("Session issued", subject=subject, chunk_count=sum(1 for cookie in outgoing if not cookie.is_clear))
        return SessionResult(view=SessionView.from_record(record), cookies=outgoing, outcome=outcome)

    def end(self, cookies: Mapping[str, str]) -> list[Cookie]:
        """
        Return cookies that clear every chunk of the session (logout).

        Args:
            cookies: Incoming cookie snapshot.

        Returns:
            Clearing cookies; always includes the base name.
        """
        names = [self.cookie_name, *cookie_chunks.family_names(cookies, self.cookie_name)]
        return cookie_chunks.clear(names, self.cookie_options)

    def is_valid(self, view: Optional[SessionView], now_ms: Optional[int] = None) -> bool:
        """Check a view against this manager's clock."""
        return is_valid(view, self._now_ms() if now_ms is None else now_ms)
