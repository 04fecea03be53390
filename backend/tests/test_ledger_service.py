"""
Unit Tests for LedgerService
============================

Tests:
1. Account opening and lookup
2. Resource purchase arithmetic and balance checks
3. Plan switching (delta application, round trip)
4. Daily claim idempotence
5. Ban/admin gate with before/after snapshots
6. Versioned writes under concurrency
7. Store failures and journal entries
"""

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from conftest import ADMIN_EMAIL, OTHER_EMAIL, TODAY, USER_EMAIL, give_coins
from coin_ledger.identity import IdentityProvider, IdentityProviderError
from coin_ledger.ledger_service import LedgerService
from coin_ledger.models import LedgerErrorCode
from coin_ledger.store import StoreError


async def snapshot(store, email):
    account = await store.accounts.get_versioned(email)
    journal = await store.journal.recent(email, 200)
    return account, journal


# ==================== ACCOUNTS ====================

class TestAccounts:

    @pytest.mark.asyncio
    async def test_open_account_defaults(self, ledger):
        result = await ledger.open_account("carol@example.com", "carol")

        assert result.ok
        assert result.details["created"] is True
        account = result.account
        assert account.coins == 0
        assert account.plan == "BASIC"
        assert account.resources.cpu == 100
        assert account.resources.ram == 1024
        assert account.resources.disk == 10240
        assert account.resources.backup == 2

    @pytest.mark.asyncio
    async def test_open_account_returns_existing(self, seeded):
        await give_coins(seeded, USER_EMAIL, 40)

        result = await seeded.open_account(USER_EMAIL)

        assert result.ok
        assert result.details["created"] is False
        assert result.account.coins == 40

    @pytest.mark.asyncio
    async def test_open_account_invalid_email(self, ledger):
        result = await ledger.open_account("   ")
        assert result.error_code == LedgerErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_get_account_not_found(self, ledger):
        result = await ledger.get_account("nobody@example.com")
        assert not result.ok
        assert result.error_code == LedgerErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_open_account_resolves_panel_id(self, store, catalog, sink):
        class StaticProvider(IdentityProvider):
            async def resolve_external_id(self, email, username):
                return "42"

        ledger = LedgerService(store, catalog=catalog, notifier=sink, identity=StaticProvider())
        result = await ledger.open_account("dave@example.com", "dave")

        assert result.ok
        assert result.account.external_id == "42"

    @pytest.mark.asyncio
    async def test_open_account_provider_failure(self, store, catalog, sink):
        class BrokenProvider(IdentityProvider):
            async def resolve_external_id(self, email, username):
                raise IdentityProviderError("panel down")

        ledger = LedgerService(store, catalog=catalog, notifier=sink, identity=BrokenProvider())
        result = await ledger.open_account("dave@example.com", "dave")

        assert result.error_code == LedgerErrorCode.STORE_FAILURE
        assert await store.accounts.get("dave@example.com") is None


# ==================== COINS ====================

class TestCoins:

    @pytest.mark.asyncio
    async def test_credit_coins(self, seeded):
        result = await seeded.credit_coins(USER_EMAIL, 5)
        assert result.ok
        assert result.account.coins == 5

    @pytest.mark.asyncio
    async def test_credit_coins_numeric_string(self, seeded):
        result = await seeded.credit_coins(USER_EMAIL, "7")
        assert result.ok
        assert result.account.coins == 7

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, "abc", 2.5, True, None])
    async def test_credit_coins_invalid_amount(self, seeded, store, amount):
        before = await snapshot(store, USER_EMAIL)

        result = await seeded.credit_coins(USER_EMAIL, amount)

        assert result.error_code == LedgerErrorCode.INVALID_AMOUNT
        assert await snapshot(store, USER_EMAIL) == before

    @pytest.mark.asyncio
    async def test_credit_unknown_account(self, seeded):
        result = await seeded.credit_coins("ghost@example.com", 5)
        assert result.error_code == LedgerErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_admin_add_and_set_coins(self, seeded, sink):
        added = await seeded.credit_coins(USER_EMAIL, 30, actor=ADMIN_EMAIL)
        assert added.ok
        assert added.account.coins == 30

        updated = await seeded.set_coins(ADMIN_EMAIL, USER_EMAIL, 12)
        assert updated.ok
        assert updated.account.coins == 12

        await sink.drain()
        titles = [title for title, _ in sink.events]
        assert "add coins" in titles
        assert "set coins" in titles

    @pytest.mark.asyncio
    async def test_set_coins_rejects_negative(self, seeded):
        result = await seeded.set_coins(ADMIN_EMAIL, USER_EMAIL, -1)
        assert result.error_code == LedgerErrorCode.INVALID_AMOUNT

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, seeded, store):
        before = await snapshot(store, OTHER_EMAIL)

        results = [
            await seeded.set_coins(USER_EMAIL, OTHER_EMAIL, 1000),
            await seeded.credit_coins(OTHER_EMAIL, 1000, actor=USER_EMAIL),
            await seeded.grant_resources(USER_EMAIL, OTHER_EMAIL, {"cpu": 100}),
            await seeded.set_resources(USER_EMAIL, OTHER_EMAIL, {"cpu": 100}),
            await seeded.ban(USER_EMAIL, OTHER_EMAIL, "nope"),
        ]

        assert all(r.error_code == LedgerErrorCode.FORBIDDEN for r in results)
        assert await snapshot(store, OTHER_EMAIL) == before
        assert await store.bans.get(OTHER_EMAIL) is None


# ==================== RESOURCES ====================

class TestResourcePurchase:

    @pytest.mark.asyncio
    async def test_cpu_purchase_arithmetic(self, seeded):
        """unit cost 10, coins 25, buy 2 cpu -> coins 5, cpu +200"""
        await give_coins(seeded, USER_EMAIL, 25)

        result = await seeded.purchase_resource(USER_EMAIL, "cpu", 2)

        assert result.ok
        assert result.account.coins == 5
        assert result.account.resources.cpu == 300
        assert result.details["cost"] == 20
        assert result.details["gain"] == 200

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, seeded, store):
        await give_coins(seeded, USER_EMAIL, 25)
        before = await snapshot(store, USER_EMAIL)

        result = await seeded.purchase_resource(USER_EMAIL, "cpu", 3)

        assert result.error_code == LedgerErrorCode.INSUFFICIENT_BALANCE
        assert result.details == {"required": 30, "balance": 25}
        assert await snapshot(store, USER_EMAIL) == before

    @pytest.mark.asyncio
    async def test_ram_multiplier(self, seeded):
        await give_coins(seeded, USER_EMAIL, 100)

        result = await seeded.purchase_resource(USER_EMAIL, "ram", 1)

        assert result.ok
        assert result.account.resources.ram == 1024 + 1024

    @pytest.mark.asyncio
    @pytest.mark.parametrize("units", [0, 11, -1, "abc", 1.5])
    async def test_units_out_of_range(self, seeded, units):
        await give_coins(seeded, USER_EMAIL, 1000)
        result = await seeded.purchase_resource(USER_EMAIL, "cpu", units)
        assert result.error_code == LedgerErrorCode.INVALID_AMOUNT

    @pytest.mark.asyncio
    async def test_invalid_params(self, seeded):
        assert (await seeded.purchase_resource(USER_EMAIL, "gpu", 1)).error_code == LedgerErrorCode.INVALID_PARAMS
        assert (await seeded.purchase_resource(USER_EMAIL, "cpu", None)).error_code == LedgerErrorCode.INVALID_PARAMS
        assert (await seeded.purchase_resource("", "cpu", 1)).error_code == LedgerErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_purchase_notifies(self, seeded, sink):
        await give_coins(seeded, USER_EMAIL, 10)
        await seeded.purchase_resource(USER_EMAIL, "cpu", 1)

        await sink.drain()
        assert ("resources purchased", "alice has purchased `100 CPU` !") in sink.events

    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self, seeded):
        """credit 5, fail to buy, credit 10, buy: coins 5, cpu 200"""
        account = (await seeded.get_account(USER_EMAIL)).account
        assert account.coins == 0
        assert account.resources.cpu == 100

        assert (await seeded.credit_coins(USER_EMAIL, 5)).account.coins == 5

        rejected = await seeded.purchase_resource(USER_EMAIL, "cpu", 1)
        assert rejected.error_code == LedgerErrorCode.INSUFFICIENT_BALANCE
        assert (await seeded.get_account(USER_EMAIL)).account.coins == 5

        assert (await seeded.credit_coins(USER_EMAIL, 10)).account.coins == 15

        bought = await seeded.purchase_resource(USER_EMAIL, "cpu", 1)
        assert bought.ok
        assert bought.account.coins == 5
        assert bought.account.resources.cpu == 200


class TestAdminResources:

    @pytest.mark.asyncio
    async def test_grant_resources(self, seeded):
        result = await seeded.grant_resources(ADMIN_EMAIL, USER_EMAIL, {"cpu": 50, "database": "3"})

        assert result.ok
        assert result.account.resources.cpu == 150
        assert result.account.resources.database == 5

    @pytest.mark.asyncio
    async def test_grant_cannot_go_negative(self, seeded, store):
        before = await snapshot(store, USER_EMAIL)

        result = await seeded.grant_resources(ADMIN_EMAIL, USER_EMAIL, {"cpu": -500})

        assert result.error_code == LedgerErrorCode.INVALID_AMOUNT
        assert await snapshot(store, USER_EMAIL) == before

    @pytest.mark.asyncio
    async def test_set_resources(self, seeded):
        result = await seeded.set_resources(ADMIN_EMAIL, USER_EMAIL, {"disk": 0, "allocation": 9})

        assert result.ok
        assert result.account.resources.disk == 0
        assert result.account.resources.allocation == 9
        assert result.account.resources.cpu == 100

    @pytest.mark.asyncio
    async def test_unknown_resource(self, seeded):
        result = await seeded.set_resources(ADMIN_EMAIL, USER_EMAIL, {"gpu": 1})
        assert result.error_code == LedgerErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_set_resources_rejects_negative(self, seeded):
        result = await seeded.set_resources(ADMIN_EMAIL, USER_EMAIL, {"cpu": -1})
        assert result.error_code == LedgerErrorCode.INVALID_AMOUNT


# ==================== PLANS ====================

class TestPlans:

    @pytest.mark.asyncio
    async def test_upgrade_applies_delta(self, seeded):
        await give_coins(seeded, USER_EMAIL, 300)

        result = await seeded.change_plan(USER_EMAIL, 2)

        assert result.ok
        assert result.account.plan == "STANDARD"
        assert result.account.coins == 50
        assert result.account.resources.cpu == 200
        assert result.account.resources.disk == 20480
        assert result.details["delta"]["cpu"] == 100

    @pytest.mark.asyncio
    async def test_round_trip_restores_resources(self, seeded):
        await give_coins(seeded, USER_EMAIL, 1000)
        original = (await seeded.get_account(USER_EMAIL)).account.resources

        assert (await seeded.change_plan(USER_EMAIL, 3)).ok
        back = await seeded.change_plan(USER_EMAIL, 1)

        assert back.ok
        assert back.account.resources == original
        assert back.account.coins == 250

    @pytest.mark.asyncio
    async def test_admin_grant_survives_switch(self, seeded):
        await give_coins(seeded, USER_EMAIL, 1000)
        await seeded.grant_resources(ADMIN_EMAIL, USER_EMAIL, {"cpu": 50})

        up = await seeded.change_plan(USER_EMAIL, 2)
        assert up.account.resources.cpu == 250

        down = await seeded.change_plan(USER_EMAIL, 1)
        assert down.account.resources.cpu == 150

    @pytest.mark.asyncio
    async def test_downgrade_clamps_at_zero(self, seeded):
        await give_coins(seeded, USER_EMAIL, 1000)
        await seeded.change_plan(USER_EMAIL, 2)
        await seeded.set_resources(ADMIN_EMAIL, USER_EMAIL, {"cpu": 30})

        result = await seeded.change_plan(USER_EMAIL, 1)

        assert result.ok
        assert result.account.resources.cpu == 0

    @pytest.mark.asyncio
    async def test_already_on_plan(self, seeded):
        result = await seeded.change_plan(USER_EMAIL, 1)
        assert result.error_code == LedgerErrorCode.ALREADY_ON_PLAN

    @pytest.mark.asyncio
    async def test_unknown_plan(self, seeded):
        result = await seeded.change_plan(USER_EMAIL, 99)
        assert result.error_code == LedgerErrorCode.NOT_FOUND
        assert result.error_message == "Plan not found."

    @pytest.mark.asyncio
    async def test_plan_insufficient_balance(self, seeded, store):
        await give_coins(seeded, USER_EMAIL, 100)
        before = await snapshot(store, USER_EMAIL)

        result = await seeded.change_plan(USER_EMAIL, 3)

        assert result.error_code == LedgerErrorCode.INSUFFICIENT_BALANCE
        assert result.details["required"] == 750
        assert await snapshot(store, USER_EMAIL) == before


# ==================== DAILY COINS ====================

class TestDailyClaim:

    async def enable_daily(self, ledger, amount=20):
        result = await ledger.update_settings(ADMIN_EMAIL, {"daily_coins_enabled": True, "daily_coins": amount})
        assert result.ok

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, seeded):
        result = await seeded.claim_daily(USER_EMAIL)
        assert result.error_code == LedgerErrorCode.FEATURE_DISABLED

    @pytest.mark.asyncio
    async def test_claim_once_per_day(self, seeded):
        await self.enable_daily(seeded)

        first = await seeded.claim_daily(USER_EMAIL)
        second = await seeded.claim_daily(USER_EMAIL)

        assert first.ok
        assert first.account.coins == 20
        assert first.account.last_daily_claim == TODAY.isoformat()
        assert second.error_code == LedgerErrorCode.ALREADY_CLAIMED
        assert (await seeded.get_account(USER_EMAIL)).account.coins == 20

    @pytest.mark.asyncio
    async def test_claim_next_day(self, seeded):
        await self.enable_daily(seeded, 15)

        await seeded.claim_daily(USER_EMAIL)
        result = await seeded.claim_daily(USER_EMAIL, today=date(2025, 3, 15))

        assert result.ok
        assert result.account.coins == 30

    @pytest.mark.asyncio
    async def test_concurrent_claims_credit_once(self, seeded):
        await self.enable_daily(seeded)

        results = await asyncio.gather(*(seeded.claim_daily(USER_EMAIL) for _ in range(5)))

        assert sum(1 for r in results if r.ok) == 1
        assert (await seeded.get_account(USER_EMAIL)).account.coins == 20


# ==================== ACCESS CONTROL ====================

class TestBans:

    @pytest.mark.asyncio
    async def test_banned_account_unchanged(self, seeded, store):
        await give_coins(seeded, USER_EMAIL, 1000)
        await seeded.update_settings(ADMIN_EMAIL, {"daily_coins_enabled": True, "daily_coins": 5})
        assert (await seeded.ban(ADMIN_EMAIL, USER_EMAIL, "abuse")).ok
        before = await snapshot(store, USER_EMAIL)

        results = [
            await seeded.credit_coins(USER_EMAIL, 5),
            await seeded.credit_coins(USER_EMAIL, 5, actor=ADMIN_EMAIL),
            await seeded.set_coins(ADMIN_EMAIL, USER_EMAIL, 0),
            await seeded.grant_resources(ADMIN_EMAIL, USER_EMAIL, {"cpu": 1}),
            await seeded.set_resources(ADMIN_EMAIL, USER_EMAIL, {"cpu": 1}),
            await seeded.purchase_resource(USER_EMAIL, "cpu", 1),
            await seeded.change_plan(USER_EMAIL, 2),
            await seeded.claim_daily(USER_EMAIL),
        ]

        assert all(r.error_code == LedgerErrorCode.BANNED for r in results)
        assert await snapshot(store, USER_EMAIL) == before

    @pytest.mark.asyncio
    async def test_ban_reason_reported(self, seeded):
        await seeded.ban(ADMIN_EMAIL, USER_EMAIL, "abuse")
        result = await seeded.credit_coins(USER_EMAIL, 1)
        assert result.details == {"reason": "abuse"}

    @pytest.mark.asyncio
    async def test_banned_admin_blocked(self, seeded):
        await seeded.ban(ADMIN_EMAIL, ADMIN_EMAIL, None)
        result = await seeded.set_coins(ADMIN_EMAIL, USER_EMAIL, 10)
        assert result.error_code == LedgerErrorCode.BANNED

    @pytest.mark.asyncio
    async def test_unban_restores_access(self, seeded):
        await seeded.ban(ADMIN_EMAIL, USER_EMAIL, "abuse")
        unbanned = await seeded.unban(ADMIN_EMAIL, USER_EMAIL)

        assert unbanned.details["was_banned"] is True
        assert (await seeded.credit_coins(USER_EMAIL, 1)).ok


# ==================== SETTINGS ====================

class TestSettings:

    @pytest.mark.asyncio
    async def test_defaults(self, ledger):
        result = await ledger.get_settings()
        assert result.details["settings"]["daily_coins_enabled"] is False

    @pytest.mark.asyncio
    async def test_update_requires_admin(self, seeded):
        result = await seeded.update_settings(USER_EMAIL, {"maintenance": True})
        assert result.error_code == LedgerErrorCode.FORBIDDEN

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_and_invalid(self, seeded):
        unknown = await seeded.update_settings(ADMIN_EMAIL, {"free_money": True})
        invalid = await seeded.update_settings(ADMIN_EMAIL, {"daily_coins": -3})

        assert unknown.error_code == LedgerErrorCode.INVALID_PARAMS
        assert invalid.error_code == LedgerErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_update_merges(self, seeded):
        await seeded.update_settings(ADMIN_EMAIL, {"daily_coins": 10})
        result = await seeded.update_settings(ADMIN_EMAIL, {"maintenance": True})

        settings = result.details["settings"]
        assert settings["daily_coins"] == 10
        assert settings["maintenance"] is True


# ==================== CONCURRENCY ====================

class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_purchases_never_overspend(self, seeded):
        await give_coins(seeded, USER_EMAIL, 25)

        results = await asyncio.gather(
            seeded.purchase_resource(USER_EMAIL, "cpu", 2),
            seeded.purchase_resource(USER_EMAIL, "cpu", 2),
        )

        codes = sorted(r.error_code.value if r.error_code else "OK" for r in results)
        assert codes == ["INSUFFICIENT_BALANCE", "OK"]
        account = (await seeded.get_account(USER_EMAIL)).account
        assert account.coins == 5
        assert account.resources.cpu == 300

    @pytest.mark.asyncio
    async def test_concurrent_credits_not_lost(self, store, catalog, sink, seeded):
        ledger = LedgerService(store, catalog=catalog, notifier=sink, max_retries=50)

        results = await asyncio.gather(*(ledger.credit_coins(USER_EMAIL, 1) for _ in range(20)))

        assert all(r.ok for r in results)
        assert (await ledger.get_account(USER_EMAIL)).account.coins == 20

    @pytest.mark.asyncio
    async def test_conflict_exhaustion_is_store_failure(self, store, catalog, sink, seeded):
        ledger = LedgerService(store, catalog=catalog, notifier=sink, max_retries=1)

        results = await asyncio.gather(
            ledger.credit_coins(USER_EMAIL, 1),
            ledger.credit_coins(USER_EMAIL, 1),
        )

        codes = sorted(r.error_code.value if r.error_code else "OK" for r in results)
        assert codes == ["OK", "STORE_FAILURE"]
        assert (await ledger.get_account(USER_EMAIL)).account.coins == 1


# ==================== STORE FAILURES & JOURNAL ====================

class TestStoreFailures:

    @pytest.mark.asyncio
    async def test_read_failure_surfaces_store_failure(self, seeded, store):
        store.accounts.get_versioned = AsyncMock(side_effect=StoreError("connection reset"))

        result = await seeded.credit_coins(USER_EMAIL, 5)

        assert not result.ok
        assert result.error_code == LedgerErrorCode.STORE_FAILURE

    @pytest.mark.asyncio
    async def test_journal_failure_keeps_mutation(self, seeded, store):
        store.journal.append = AsyncMock(side_effect=StoreError("journal full"))

        result = await seeded.credit_coins(USER_EMAIL, 5)

        assert result.ok
        assert (await seeded.get_account(USER_EMAIL)).account.coins == 5


class TestJournal:

    @pytest.mark.asyncio
    async def test_purchase_journaled(self, seeded):
        await give_coins(seeded, USER_EMAIL, 25)
        await seeded.purchase_resource(USER_EMAIL, "cpu", 2)

        result = await seeded.get_journal(USER_EMAIL)

        entries = {e["action"]: e for e in result.details["entries"]}
        assert set(entries) == {"OPEN_ACCOUNT", "SET_COINS", "PURCHASE_RESOURCE"}
        purchase = entries["PURCHASE_RESOURCE"]
        assert purchase["coins_delta"] == -20
        assert purchase["resource_deltas"] == {"cpu": 200}
        assert purchase["coins_after"] == 5
        assert entries["SET_COINS"]["actor"] == ADMIN_EMAIL

    @pytest.mark.asyncio
    async def test_failed_operations_not_journaled(self, seeded):
        await seeded.purchase_resource(USER_EMAIL, "cpu", 1)

        result = await seeded.get_journal(USER_EMAIL)

        assert [e["action"] for e in result.details["entries"]] == ["OPEN_ACCOUNT"]

    @pytest.mark.asyncio
    async def test_journal_limit(self, seeded):
        for _ in range(5):
            await seeded.credit_coins(USER_EMAIL, 1)

        result = await seeded.get_journal(USER_EMAIL, limit=3)
        assert result.details["count"] == 3

    @pytest.mark.asyncio
    async def test_journal_limit_must_be_a_number(self, seeded):
        result = await seeded.get_journal(USER_EMAIL, limit="abc")
        assert result.error_code == LedgerErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_journal_limit_numeric_string_clamped(self, seeded):
        for _ in range(3):
            await seeded.credit_coins(USER_EMAIL, 1)

        assert (await seeded.get_journal(USER_EMAIL, limit="2")).details["count"] == 2
        assert (await seeded.get_journal(USER_EMAIL, limit=0)).details["count"] == 1
