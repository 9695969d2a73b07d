"""
Pytest configuration and fixtures for studybuddy-voice tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src directory to Python path to allow importing studybuddy_voice
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from studybuddy_voice.models import Plan  # noqa: E402
from studybuddy_voice.storage.database import SubscriptionStore  # noqa: E402


# Configure anyio to only use asyncio (not trio)
@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def store() -> SubscriptionStore:
    """Fresh in-memory store with the schema created."""
    s = SubscriptionStore("sqlite:///:memory:")
    s.create_schema()
    yield s
    s.dispose()


@pytest.fixture
def make_subscription(store, now):
    """Create a subscription row in a given state."""

    def _make(
        student_id: str = "student-1",
        plan: Plan = Plan.PRO,
        used: int = 0,
        limit: int = 150000,
        active: bool = True,
        ends_at=None,
    ):
        if plan == Plan.PRO and ends_at is None:
            ends_at = now + timedelta(days=30)
        with store.transaction() as conn:
            store.ensure_subscription(conn, student_id, now)
            store.update_subscription(
                conn,
                student_id,
                now=now,
                plan=plan,
                characters_used=used,
                characters_limit=limit,
                active=active,
                ends_at=ends_at,
            )
            return store.get_subscription(conn, student_id)

    return _make
