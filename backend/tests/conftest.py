"""
Shared fixtures for the coin ledger test suite.

Everything runs against the in-memory store; no MongoDB or network needed.
"""

import sys
from datetime import date
from pathlib import Path

import pytest
import pytest_asyncio

# Add backend to path for direct imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from coin_ledger.config import RESOURCE_COSTS
from coin_ledger.ledger_service import LedgerService
from coin_ledger.notifications import NotificationSink
from coin_ledger.plans import PlanCatalog
from coin_ledger.store import LedgerStore

USER_EMAIL = "alice@example.com"
OTHER_EMAIL = "bob@example.com"
ADMIN_EMAIL = "admin@example.com"
TODAY = date(2025, 3, 14)


class RecordingSink(NotificationSink):
    """Collects delivered events instead of sending them anywhere."""

    def __init__(self):
        super().__init__()
        self.events = []

    async def send(self, title: str, message: str) -> None:
        self.events.append((title, message))


@pytest.fixture
def store():
    return LedgerStore.in_memory()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def catalog():
    return PlanCatalog.load("")


@pytest.fixture
def ledger(store, catalog, sink):
    costs = dict(RESOURCE_COSTS)
    costs["cpu"] = 10
    return LedgerService(
        store,
        catalog=catalog,
        notifier=sink,
        resource_costs=costs,
        today=lambda: TODAY
    )


@pytest_asyncio.fixture
async def seeded(ledger, store):
    """alice and bob hold fresh accounts; admin holds the admin flag."""
    await store.admins.set(ADMIN_EMAIL, True)
    for email in (USER_EMAIL, OTHER_EMAIL, ADMIN_EMAIL):
        result = await ledger.open_account(email, email.split("@")[0])
        assert result.ok
    return ledger


async def give_coins(ledger, email, amount):
    result = await ledger.set_coins(ADMIN_EMAIL, email, amount)
    assert result.ok, result.error_message
    return result.account
