"""
Shared pytest setup for unit tests.

Every test drives time explicitly, either through ``now`` arguments or the
mutable ``clock`` fixture handed to ``SessionManager`` as its time provider,
and replaces the provider refresh call with an in-memory fake.
"""

from dataclasses import dataclass, field
from typing import Optional

import pytest

from session_service.core.models import ProviderTokens
from session_service.session_manager import SessionManager
from session_service.utils.cookie_chunks import CookieOptions

TEST_SECRET = "unit-test-secret-with-enough-entropy-0123456789"
TEST_COOKIE_NAME = "sess"


@dataclass
class FakeRefresher:
    """
    Test double for the provider refresh collaborator.

    Hands out ``rt-1``, ``rt-2`` … on each call, or fails the way it is told to.

    Attributes:
        calls: Refresh tokens received, in order.
        fail_with: Exception to raise instead of refreshing.
        return_none: Return None instead of tokens.
        rotate: Whether to issue a new refresh token on each call.
    """

    calls: list[str] = field(default_factory=list)
    fail_with: Optional[Exception] = None
    return_none: bool = False
    rotate: bool = True

    def __call__(self, refresh_token: str) -> Optional[ProviderTokens]:
        self.calls.append(refresh_token)
        if self.fail_with is not None:
            raise self.fail_with
        if self.return_none:
            return None
        next_token = f"rt-{len(self.calls)}" if self.rotate else None
        return ProviderTokens(access_token=f"at-{len(self.calls)}", id_token=f"id-{len(self.calls)}", refresh_token=next_token)


@dataclass
class Clock:
    """Mutable UNIX clock (seconds)."""

    now: float = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def refresher() -> FakeRefresher:
    return FakeRefresher()


@pytest.fixture
def manager(clock: Clock, refresher: FakeRefresher) -> SessionManager:
    return SessionManager(
        TEST_SECRET,
        refresh_fn=refresher,
        cookie_name=TEST_COOKIE_NAME,
        cookie_options=CookieOptions(secure=False),
        time_provider=clock,
    )


def cookie_snapshot(cookies) -> dict[str, str]:
    """Turn outgoing cookies into the snapshot the browser would send next."""
    return {cookie.name: cookie.value for cookie in cookies if not cookie.is_clear}
