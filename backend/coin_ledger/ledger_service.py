"""
Ledger Service

Core ledger operations including:
- Account opening (lazy panel id resolution)
- Coin credits and admin coin/resource grants
- Resource and plan purchases
- Daily coin claims
- Bans and settings
- Journal entries

CRITICAL: Every account mutation is a versioned read-modify-write. The
account is read together with its version, changed in memory, and written
back with compare_and_set. If another writer got there first the write is
refused, the account is re-read and the whole operation (including its
balance checks) runs again. Lost updates are impossible; negative balances
are rejected before the write.

Every public operation returns a LedgerResult. Validation failures never
raise; StoreError is logged here and surfaced as a generic STORE_FAILURE.
"""

import functools
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from .access import AccessGate
from .config import (
    DEFAULT_PLAN,
    DEFAULT_RESOURCES,
    DEFAULT_SETTINGS,
    LEDGER_MAX_RETRIES,
    MAX_PURCHASE_UNITS,
    RESOURCE_COSTS,
    RESOURCE_KEYS,
    RESOURCE_MULTIPLIERS,
)
from .identity import IdentityProvider, IdentityProviderError
from .models import (
    JournalEntry,
    LedgerErrorCode,
    LedgerResult,
    Resources,
    SettingsRecord,
    UserAccount,
)
from .notifications import LogSink, NotificationSink
from .plans import PlanCatalog
from .store import SETTINGS_KEY, LedgerStore, StoreError

logger = logging.getLogger(__name__)

Mutation = Callable[[UserAccount], Optional[LedgerResult]]


def store_failure_boundary(func):
    """Turn StoreError into a logged STORE_FAILURE result."""
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except StoreError as e:
            logger.error(f"Ledger {func.__name__} failed: {e} ({e.__cause__})")
            return LedgerResult.failure(LedgerErrorCode.STORE_FAILURE)
    return wrapper


def _valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(email.strip())


def _parse_amount(value: Any) -> Optional[int]:
    """Integer value of an amount, or None when it is not a whole number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LedgerService:
    """Service for reading and mutating account balances."""

    def __init__(
        self,
        store: LedgerStore,
        catalog: Optional[PlanCatalog] = None,
        notifier: Optional[NotificationSink] = None,
        identity: Optional[IdentityProvider] = None,
        resource_costs: Optional[Dict[str, int]] = None,
        max_retries: int = LEDGER_MAX_RETRIES,
        today: Optional[Callable[[], date]] = None
    ):
        self.store = store
        self.catalog = catalog or PlanCatalog.load()
        self.gate = AccessGate(store)
        self.notifier = notifier or LogSink()
        self.identity = identity
        self.resource_costs = dict(resource_costs or RESOURCE_COSTS)
        self.max_retries = max(1, max_retries)
        self._today = today or (lambda: datetime.now(timezone.utc).date())

    # ==================== ACCOUNTS ====================

    @store_failure_boundary
    async def open_account(
        self,
        email: str,
        username: Optional[str] = None,
        external_id: Optional[str] = None
    ) -> LedgerResult:
        """
        Create the ledger account for email, or return the existing one.

        If no external_id is given and an IdentityProvider is configured,
        the panel id is resolved (or the panel user created) first.
        """
        if not _valid_email(email):
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        decision = await self.gate.authorize(email)
        if not decision.allowed:
            return decision.to_result()

        existing = await self.store.accounts.get(email)
        if existing is not None:
            return LedgerResult.success(UserAccount.model_validate(existing), created=False)

        if external_id is None and self.identity is not None:
            try:
                external_id = await self.identity.resolve_external_id(email, username or email.split("@")[0])
            except IdentityProviderError as e:
                logger.error(f"Panel account resolution failed for {email}: {e}")
                return LedgerResult.failure(
                    LedgerErrorCode.STORE_FAILURE,
                    "Account provisioning failed. Please try again later."
                )

        default_plan = self.catalog.get_by_name(DEFAULT_PLAN)
        now = _now_iso()
        account = UserAccount(
            email=email,
            external_id=external_id,
            username=username,
            coins=0,
            resources=Resources(**DEFAULT_RESOURCES),
            plan=default_plan.key if default_plan else None,
            version=1,
            created_at=now,
            updated_at=now
        )

        if not await self.store.accounts.compare_and_set(email, account.model_dump(), 0):
            # Registered concurrently; hand back the winner
            winner = await self.store.accounts.get(email)
            return LedgerResult.success(UserAccount.model_validate(winner), created=False)

        await self._write_journal(None, account, "OPEN_ACCOUNT")
        logger.info(f"[REGISTER] {username or email} registered.")
        return LedgerResult.success(account, created=True)

    @store_failure_boundary
    async def get_account(self, email: str) -> LedgerResult:
        if not _valid_email(email):
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        raw, version = await self.store.accounts.get_versioned(email)
        if raw is None:
            return LedgerResult.failure(LedgerErrorCode.NOT_FOUND)
        account = UserAccount.model_validate(raw)
        account.version = version
        return LedgerResult.success(account)

    # ==================== COINS ====================

    @store_failure_boundary
    async def credit_coins(
        self,
        email: str,
        amount: Any,
        actor: Optional[str] = None
    ) -> LedgerResult:
        """
        Add coins to an account.

        Without an actor this is a system credit (AFK accrual). With an
        actor it is an admin grant and the actor must hold the admin flag.
        Not idempotent: retrying a timed-out call can credit twice.
        """
        if not _valid_email(email) or (actor is not None and not _valid_email(actor)):
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        parsed = _parse_amount(amount)
        if parsed is None or parsed <= 0:
            return LedgerResult.failure(LedgerErrorCode.INVALID_AMOUNT)

        rejection = await self._authorize(email, actor)
        if rejection:
            return rejection

        def mutate(account: UserAccount) -> Optional[LedgerResult]:
            account.coins += parsed
            return None

        action = "ADD_COINS" if actor else "CREDIT"
        result = await self._apply(email, action, mutate, actor=actor, details={"amount": parsed})

        if result.ok and actor:
            self.notifier.publish("add coins", f"{actor} has add `{parsed}` coins for `{email}` !")
        return result

    @store_failure_boundary
    async def set_coins(self, actor: str, email: str, amount: Any) -> LedgerResult:
        """Replace an account's coin balance (admin only)."""
        if not _valid_email(email) or not _valid_email(actor):
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        parsed = _parse_amount(amount)
        if parsed is None or parsed < 0:
            return LedgerResult.failure(LedgerErrorCode.INVALID_AMOUNT)

        rejection = await self._authorize(email, actor)
        if rejection:
            return rejection

        def mutate(account: UserAccount) -> Optional[LedgerResult]:
            account.coins = parsed
            return None

        result = await self._apply(email, "SET_COINS", mutate, actor=actor, details={"amount": parsed})
        if result.ok:
            self.notifier.publish("set coins", f"{actor} has set `{parsed}` coins for `{email}` !")
        return result

    # ==================== RESOURCES ====================

    @store_failure_boundary
    async def grant_resources(self, actor: str, email: str, deltas: Dict[str, Any]) -> LedgerResult:
        """Add each delta to the current resource value (admin only)."""
        if not _valid_email(email) or not _valid_email(actor):
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        parsed, error = self._parse_resource_map(deltas, allow_negative=True)
        if error:
            return error

        rejection = await self._authorize(email, actor)
        if rejection:
            return rejection

        def mutate(account: UserAccount) -> Optional[LedgerResult]:
            for resource, delta in parsed.items():
                updated = getattr(account.resources, resource) + delta
                if updated < 0:
                    return LedgerResult.failure(
                        LedgerErrorCode.INVALID_AMOUNT,
                        f"{resource} cannot go below zero."
                    )
                setattr(account.resources, resource, updated)
            return None

        result = await self._apply(email, "GRANT_RESOURCES", mutate, actor=actor, details={"deltas": parsed})
        if result.ok:
            self.notifier.publish(
                "add resources",
                f"{actor} has add resources for {email} with : {self._format_resources(parsed)} !"
            )
        return result

    @store_failure_boundary
    async def set_resources(self, actor: str, email: str, absolutes: Dict[str, Any]) -> LedgerResult:
        """Replace the given resource values (admin only)."""
        if not _valid_email(email) or not _valid_email(actor):
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        parsed, error = self._parse_resource_map(absolutes, allow_negative=False)
        if error:
            return error

        rejection = await self._authorize(email, actor)
        if rejection:
            return rejection

        def mutate(account: UserAccount) -> Optional[LedgerResult]:
            for resource, value in parsed.items():
                setattr(account.resources, resource, value)
            return None

        result = await self._apply(email, "SET_RESOURCES", mutate, actor=actor, details={"values": parsed})
        if result.ok:
            self.notifier.publish(
                "set resources",
                f"{actor} has set resources for {email} with : {self._format_resources(parsed)} !"
            )
        return result

    @store_failure_boundary
    async def purchase_resource(self, email: str, resource: str, units: Any) -> LedgerResult:
        """
        Buy resource units with coins.

        cost = unit cost * units, gain = multiplier * units. The balance
        check, the deduction and the grant happen in one versioned write.
        """
        if not _valid_email(email) or resource not in RESOURCE_KEYS or units is None:
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        parsed = _parse_amount(units)
        if parsed is None or not 1 <= parsed <= MAX_PURCHASE_UNITS:
            return LedgerResult.failure(
                LedgerErrorCode.INVALID_AMOUNT,
                f"Units must be between 1 and {MAX_PURCHASE_UNITS}."
            )

        cost = self.resource_costs[resource] * parsed
        gain = RESOURCE_MULTIPLIERS[resource] * parsed

        rejection = await self._authorize(email)
        if rejection:
            return rejection

        def mutate(account: UserAccount) -> Optional[LedgerResult]:
            if account.coins < cost:
                return LedgerResult.failure(
                    LedgerErrorCode.INSUFFICIENT_BALANCE,
                    required=cost,
                    balance=account.coins
                )
            account.coins -= cost
            setattr(account.resources, resource, getattr(account.resources, resource) + gain)
            return None

        details = {"resource": resource, "units": parsed, "cost": cost, "gain": gain}
        result = await self._apply(email, "PURCHASE_RESOURCE", mutate, details=details)

        if result.ok:
            name = result.account.username or email
            self.notifier.publish("resources purchased", f"{name} has purchased `{gain} {resource.upper()}` !")
        return result

    # ==================== PLANS ====================

    @store_failure_boundary
    async def change_plan(self, email: str, plan_id: Any) -> LedgerResult:
        """
        Switch the account to another plan.

        The difference between the two plan allotments is added to the LIVE
        resource values, so resources granted on top of the old plan survive
        the switch. Values never drop below zero.
        """
        parsed_id = _parse_amount(plan_id)
        if not _valid_email(email) or parsed_id is None:
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        target = self.catalog.get(parsed_id)
        if target is None:
            return LedgerResult.failure(LedgerErrorCode.NOT_FOUND, "Plan not found.")

        rejection = await self._authorize(email)
        if rejection:
            return rejection

        applied: Dict[str, int] = {}

        def mutate(account: UserAccount) -> Optional[LedgerResult]:
            if account.plan and account.plan.upper() == target.key:
                return LedgerResult.failure(LedgerErrorCode.ALREADY_ON_PLAN)
            if account.coins < target.price:
                return LedgerResult.failure(
                    LedgerErrorCode.INSUFFICIENT_BALANCE,
                    required=target.price,
                    balance=account.coins
                )

            current = self.catalog.get_by_name(account.plan)
            if account.plan and current is None:
                logger.warning(f"Account {email} holds unknown plan {account.plan}; treating it as empty")

            applied.clear()
            applied.update(self.catalog.delta(current, target))
            for resource, delta in applied.items():
                updated = max(0, getattr(account.resources, resource) + delta)
                setattr(account.resources, resource, updated)

            account.coins -= target.price
            account.plan = target.key
            return None

        result = await self._apply(
            email, "CHANGE_PLAN", mutate,
            details={"plan": target.key, "price": target.price, "delta": applied}
        )

        if result.ok:
            name = result.account.username or email
            self.notifier.publish("plan purchased", f"{name} has purchased `{target.key}` Plan !")
        return result

    # ==================== DAILY COINS ====================

    @store_failure_boundary
    async def claim_daily(self, email: str, today: Optional[date] = None) -> LedgerResult:
        """
        Claim the configured daily coins, at most once per UTC calendar day.

        The claim date and the credit are written together, so two
        concurrent claims on the same day cannot both succeed.
        """
        if not _valid_email(email):
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        today_str = (today or self._today()).isoformat()

        rejection = await self._authorize(email)
        if rejection:
            return rejection

        settings = await self._load_settings()

        def mutate(account: UserAccount) -> Optional[LedgerResult]:
            # ISO dates compare correctly as strings
            if account.last_daily_claim and account.last_daily_claim >= today_str:
                return LedgerResult.failure(LedgerErrorCode.ALREADY_CLAIMED)
            if not settings.daily_coins_enabled:
                return LedgerResult.failure(LedgerErrorCode.FEATURE_DISABLED)
            account.coins += settings.daily_coins
            account.last_daily_claim = today_str
            return None

        return await self._apply(
            email, "DAILY_CLAIM", mutate,
            details={"amount": settings.daily_coins, "date": today_str}
        )

    # ==================== BANS ====================

    @store_failure_boundary
    async def ban(self, actor: str, email: str, reason: Optional[str] = None) -> LedgerResult:
        if not _valid_email(email) or not _valid_email(actor):
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        decision = await self.gate.authorize(actor, require_admin=True)
        if not decision.allowed:
            return decision.to_result()

        await self.store.bans.set(email, reason or "")
        self.notifier.publish("ban", f"{actor} has ban `{email}` with reason `{reason}` !")
        return LedgerResult.success(email=email, reason=reason)

    @store_failure_boundary
    async def unban(self, actor: str, email: str) -> LedgerResult:
        if not _valid_email(email) or not _valid_email(actor):
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        decision = await self.gate.authorize(actor, require_admin=True)
        if not decision.allowed:
            return decision.to_result()

        removed = await self.store.bans.delete(email)
        self.notifier.publish("unban", f"{actor} has unban `{email}` !")
        return LedgerResult.success(email=email, was_banned=removed)

    # ==================== SETTINGS ====================

    @store_failure_boundary
    async def get_settings(self) -> LedgerResult:
        settings = await self._load_settings()
        return LedgerResult.success(settings=settings.model_dump())

    @store_failure_boundary
    async def update_settings(self, actor: str, changes: Dict[str, Any]) -> LedgerResult:
        """Merge changes into the settings record (admin only)."""
        if not _valid_email(actor) or not isinstance(changes, dict) or not changes:
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        unknown = set(changes) - set(SettingsRecord.model_fields)
        if unknown:
            return LedgerResult.failure(
                LedgerErrorCode.INVALID_PARAMS,
                f"Unknown settings: {sorted(unknown)}"
            )

        decision = await self.gate.authorize(actor, require_admin=True)
        if not decision.allowed:
            return decision.to_result()

        current = await self._load_settings()
        try:
            updated = SettingsRecord.model_validate({**current.model_dump(), **changes})
        except ValidationError as e:
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS, str(e))

        await self.store.settings.set(SETTINGS_KEY, updated.model_dump())
        logger.info(f"{actor} updated settings: {changes}")
        return LedgerResult.success(settings=updated.model_dump())

    # ==================== JOURNAL ====================

    @store_failure_boundary
    async def get_journal(self, email: str, limit: int = 50) -> LedgerResult:
        """Recent journal entries for email, newest first."""
        if not _valid_email(email):
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)
        parsed = _parse_amount(limit)
        if parsed is None:
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)
        limit = max(1, min(200, parsed))
        entries = await self.store.journal.recent(email, limit)
        return LedgerResult.success(entries=entries, count=len(entries))

    # ==================== INTERNALS ====================

    async def _authorize(self, email: str, actor: Optional[str] = None) -> Optional[LedgerResult]:
        """Admin check for actor (if any), then ban check for the target."""
        if actor is not None:
            decision = await self.gate.authorize(actor, require_admin=True)
            if not decision.allowed:
                return decision.to_result()

        decision = await self.gate.authorize(email)
        if not decision.allowed:
            return decision.to_result()
        return None

    async def _apply(
        self,
        email: str,
        action: str,
        mutate: Mutation,
        actor: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> LedgerResult:
        """
        Versioned read-modify-write of one account.

        mutate() changes the account in place, or returns a failure result to
        abort without writing. It is re-run from a fresh read after every
        version conflict, so its checks always see the latest balance.
        """
        for attempt in range(1, self.max_retries + 1):
            raw, version = await self.store.accounts.get_versioned(email)
            if raw is None:
                return LedgerResult.failure(LedgerErrorCode.NOT_FOUND)

            account = UserAccount.model_validate(raw)
            before = account.model_copy(deep=True)

            rejection = mutate(account)
            if rejection is not None:
                return rejection

            if account.coins < 0 or any(v < 0 for v in account.resources.model_dump().values()):
                logger.error(f"{action} for {email} would leave a negative balance; refused")
                return LedgerResult.failure(LedgerErrorCode.INVALID_AMOUNT)

            account.version = version + 1
            account.updated_at = _now_iso()

            if await self.store.accounts.compare_and_set(email, account.model_dump(), version):
                await self._write_journal(before, account, action, actor=actor, details=details)
                return LedgerResult.success(account, **(details or {}))

            logger.warning(
                f"Version conflict on {email} during {action} "
                f"(attempt {attempt}/{self.max_retries}), retrying..."
            )

        logger.error(f"{action} for {email} gave up after {self.max_retries} version conflicts")
        return LedgerResult.failure(LedgerErrorCode.STORE_FAILURE)

    async def _write_journal(
        self,
        before: Optional[UserAccount],
        after: UserAccount,
        action: str,
        actor: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Write a journal entry. The mutation is already committed, so failures are only logged."""
        old = before.resources.model_dump() if before else {}
        new = after.resources.model_dump()
        resource_deltas = {r: new[r] - old.get(r, 0) for r in RESOURCE_KEYS if new[r] != old.get(r, 0)}

        entry = JournalEntry(
            email=after.email,
            action=action,
            coins_delta=after.coins - (before.coins if before else 0),
            resource_deltas=resource_deltas,
            coins_after=after.coins,
            actor=actor,
            request_id=str(uuid.uuid4()),
            timestamp=_now_iso(),
            details=details or {}
        )
        try:
            await self.store.journal.append(entry.model_dump())
        except StoreError as e:
            logger.error(f"Journal write failed for {after.email} ({action}): {e}")

    async def _load_settings(self) -> SettingsRecord:
        raw = await self.store.settings.get(SETTINGS_KEY)
        if raw is None:
            return SettingsRecord(**DEFAULT_SETTINGS)
        return SettingsRecord.model_validate(raw)

    @staticmethod
    def _parse_resource_map(
        values: Any,
        allow_negative: bool
    ) -> Tuple[Dict[str, int], Optional[LedgerResult]]:
        if not isinstance(values, dict) or not values:
            return {}, LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)

        unknown = set(values) - set(RESOURCE_KEYS)
        if unknown:
            return {}, LedgerResult.failure(
                LedgerErrorCode.INVALID_PARAMS,
                f"Unknown resources: {sorted(unknown)}"
            )

        parsed: Dict[str, int] = {}
        for resource, value in values.items():
            amount = _parse_amount(value)
            if amount is None or (amount < 0 and not allow_negative):
                return {}, LedgerResult.failure(
                    LedgerErrorCode.INVALID_AMOUNT,
                    f"Invalid amount for {resource}: {value!r}"
                )
            parsed[resource] = amount
        return parsed, None

    @staticmethod
    def _format_resources(values: Dict[str, int]) -> str:
        return ", ".join(f"{r.upper()}: {v}" for r, v in values.items())
