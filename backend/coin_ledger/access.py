"""
Access Gate - Ban/admin check in front of every ledger mutation

Enforces:
- Banned accounts cannot mutate anything (ban check ALWAYS runs first,
  so a banned admin is still blocked)
- Admin-only operations require the admin flag

The gate finishes all of its store lookups before the caller touches the
account, so a rejected call leaves no partial mutation behind.
"""

import logging

from .models import AccessDecision
from .store import LedgerStore

logger = logging.getLogger(__name__)


class AccessGate:
    """
    Usage:
        gate = AccessGate(store)
        decision = await gate.authorize(email, require_admin=True)
        if not decision.allowed:
            return decision.to_result()
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    async def authorize(self, email: str, require_admin: bool = False) -> AccessDecision:
        reason = await self.store.bans.get(email)
        if reason is not None:
            logger.info(f"Blocked banned account {email}")
            return AccessDecision(outcome="banned", reason=str(reason) or None)

        if require_admin and not await self.is_admin(email):
            logger.warning(f"Admin operation refused for {email}")
            return AccessDecision(outcome="forbidden")

        return AccessDecision(outcome="allowed")

    async def is_admin(self, email: str) -> bool:
        return bool(await self.store.admins.get(email))

    async def is_banned(self, email: str) -> bool:
        return await self.store.bans.get(email) is not None
