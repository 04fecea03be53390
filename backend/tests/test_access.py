"""
Unit Tests for AccessGate
=========================
"""

import pytest

from coin_ledger.access import AccessGate
from coin_ledger.models import LedgerErrorCode
from coin_ledger.store import LedgerStore


@pytest.fixture
def gate():
    return AccessGate(LedgerStore.in_memory())


class TestAccessGate:

    @pytest.mark.asyncio
    async def test_plain_user_allowed(self, gate):
        decision = await gate.authorize("a@example.com")
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_admin_required(self, gate):
        decision = await gate.authorize("a@example.com", require_admin=True)

        assert decision.outcome == "forbidden"
        assert decision.to_result().error_code == LedgerErrorCode.FORBIDDEN

    @pytest.mark.asyncio
    async def test_admin_allowed(self, gate):
        await gate.store.admins.set("root@example.com", True)
        assert (await gate.authorize("root@example.com", require_admin=True)).allowed
        assert await gate.is_admin("root@example.com")

    @pytest.mark.asyncio
    async def test_ban_checked_before_admin(self, gate):
        await gate.store.admins.set("root@example.com", True)
        await gate.store.bans.set("root@example.com", "compromised")

        decision = await gate.authorize("root@example.com", require_admin=True)

        assert decision.outcome == "banned"
        result = decision.to_result()
        assert result.error_code == LedgerErrorCode.BANNED
        assert result.details == {"reason": "compromised"}

    @pytest.mark.asyncio
    async def test_ban_without_reason(self, gate):
        await gate.store.bans.set("a@example.com", "")

        decision = await gate.authorize("a@example.com")

        assert decision.outcome == "banned"
        assert decision.reason is None
        assert await gate.is_banned("a@example.com")

    @pytest.mark.asyncio
    async def test_false_admin_flag(self, gate):
        await gate.store.admins.set("a@example.com", False)
        assert not await gate.is_admin("a@example.com")
