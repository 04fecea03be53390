"""
AFK Accrual Sessions

One live session per connected account. Every second the session counts
down, pushes {"type": "count", "amount": remaining} to the client, and when
the countdown reaches zero credits AFK_COINS_PER_INTERVAL coins through the
LedgerService and pushes {"type": "coin"}.

Design:
- SessionRegistry (owned by the manager, keyed by email) is the only thing
  preventing double accrual for one account across several connections
- One AsyncIOScheduler owned by the manager drives every session. Each
  session is its own interval job (coalesce=True, max_instances=1), so a
  slow client only delays its own ticks and missed ticks are skipped
- Every push is bounded by AFK_PUSH_TIMEOUT_SECONDS
- Closing a session removes its job. A credit already in flight is shielded
  from cancellation and allowed to complete
- A failed credit, push or tick terminates that session only
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import AFK_COINS_PER_INTERVAL, AFK_INTERVAL_SECONDS, AFK_PUSH_TIMEOUT_SECONDS
from .ledger_service import LedgerService
from .models import LedgerErrorCode, LedgerResult

logger = logging.getLogger(__name__)


class PushChannel(Protocol):
    """Server-to-client message channel (a Starlette WebSocket satisfies this)."""

    async def send_json(self, data: Any) -> None:
        ...


@dataclass
class AccrualSession:
    email: str
    channel: PushChannel
    remaining: int
    session_id: int
    opened_at: float

    @property
    def job_id(self) -> str:
        return f"afk:{self.email}:{self.session_id}"


class SessionRegistry:
    """Active sessions keyed by account email."""

    def __init__(self):
        self._sessions: Dict[str, AccrualSession] = {}

    def register(self, session: AccrualSession) -> bool:
        if session.email in self._sessions:
            return False
        self._sessions[session.email] = session
        return True

    def remove(self, email: str, session_id: Optional[int] = None) -> Optional[AccrualSession]:
        session = self._sessions.get(email)
        if session is None or (session_id is not None and session.session_id != session_id):
            return None
        return self._sessions.pop(email)

    def get(self, email: str) -> Optional[AccrualSession]:
        return self._sessions.get(email)

    def emails(self):
        return list(self._sessions)

    def clear(self) -> None:
        self._sessions.clear()

    def __contains__(self, email: str) -> bool:
        return email in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class AccrualSessionManager:
    """
    Usage:
        manager = AccrualSessionManager(ledger)
        manager.start()
        result = await manager.open_session(email, websocket)
        ...
        manager.close_session(email, result.details["session_id"])
        await manager.stop()

    Jobs added before start() stay pending until the scheduler runs; tick()
    can always be called directly.
    """

    def __init__(
        self,
        ledger: LedgerService,
        interval: int = AFK_INTERVAL_SECONDS,
        tick_seconds: float = 1.0,
        push_timeout: float = AFK_PUSH_TIMEOUT_SECONDS,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        if interval < 1:
            raise ValueError("AFK interval must be at least one tick")
        self.ledger = ledger
        self.interval = interval
        self.tick_seconds = tick_seconds
        self.push_timeout = push_timeout
        self.registry = SessionRegistry()
        self.scheduler = scheduler or AsyncIOScheduler()
        self._ids = itertools.count(1)

    # ==================== SESSION LIFECYCLE ====================

    async def open_session(self, email: str, channel: PushChannel) -> LedgerResult:
        """Register a session for email. Rejects with ALREADY_ACTIVE if one exists."""
        if not email:
            return LedgerResult.failure(LedgerErrorCode.INVALID_PARAMS)
        if email in self.registry:
            return LedgerResult.failure(LedgerErrorCode.ALREADY_ACTIVE)

        existing = await self.ledger.get_account(email)
        if not existing.ok:
            return existing
        if await self.ledger.gate.is_banned(email):
            return LedgerResult.failure(LedgerErrorCode.BANNED)

        session = AccrualSession(
            email=email,
            channel=channel,
            remaining=self.interval,
            session_id=next(self._ids),
            opened_at=time.monotonic()
        )
        # No await between here and add_job, so the registry check is atomic
        if not self.registry.register(session):
            return LedgerResult.failure(LedgerErrorCode.ALREADY_ACTIVE)

        self.scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self.tick_seconds),
            args=[email, session.session_id],
            id=session.job_id,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=1
        )

        logger.info(f"AFK session {session.session_id} opened for {email}")
        return LedgerResult.success(session_id=session.session_id, remaining=self.interval)

    def close_session(self, email: str, session_id: Optional[int] = None) -> bool:
        """
        Remove the session and its scheduler job.

        Passing session_id only closes that exact session, so a late close
        from an old connection cannot end a newer one.
        """
        session = self.registry.remove(email, session_id)
        if session is None:
            return False
        try:
            self.scheduler.remove_job(session.job_id)
        except JobLookupError:
            pass
        logger.info(f"AFK session {session.session_id} closed for {email}")
        return True

    def is_active(self, email: str) -> bool:
        return email in self.registry

    # ==================== TICKING ====================

    async def tick(self, email: str, session_id: Optional[int] = None) -> bool:
        """
        Advance one session by one tick (the scheduler job body).

        Returns False if the session is gone or ended during this tick.
        Any unexpected error ends this session only.
        """
        session = self.registry.get(email)
        if session is None or (session_id is not None and session.session_id != session_id):
            return False
        try:
            return await self._tick(session)
        except Exception:
            logger.exception(f"AFK tick failed for {email}; ending session")
            await self._terminate(session)
            return False

    async def tick_all(self) -> int:
        """Tick every active session once, concurrently. Returns the number still active."""
        emails = self.registry.emails()
        alive = await asyncio.gather(*(self.tick(email) for email in emails))
        return sum(1 for keep in alive if keep)

    async def _tick(self, session: AccrualSession) -> bool:
        session.remaining -= 1

        if not await self._push(session, {"type": "count", "amount": session.remaining}):
            return False

        if session.remaining > 0:
            return True

        session.remaining = self.interval
        result = await asyncio.shield(
            self.ledger.credit_coins(session.email, AFK_COINS_PER_INTERVAL)
        )
        if not result.ok:
            logger.error(f"AFK credit failed for {session.email}: {result.error_code.value}; ending session")
            await self._terminate(session)
            return False

        return await self._push(session, {"type": "coin"})

    async def _push(self, session: AccrualSession, message: Dict[str, Any]) -> bool:
        if self.registry.get(session.email) is not session:
            return False
        try:
            await asyncio.wait_for(session.channel.send_json(message), timeout=self.push_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"AFK push to {session.email} timed out after {self.push_timeout}s; ending session")
            await self._terminate(session)
            return False
        except Exception as e:
            logger.info(f"AFK push to {session.email} failed ({e.__class__.__name__}); ending session")
            await self._terminate(session)
            return False
        return True

    async def _terminate(self, session: AccrualSession) -> None:
        """Close the session and its channel (server-initiated end)."""
        self.close_session(session.email, session.session_id)
        close = getattr(session.channel, "close", None)
        if close is None:
            return
        try:
            await asyncio.wait_for(close(), timeout=self.push_timeout)
        except Exception as e:
            logger.debug(f"Closing channel for {session.email} failed: {e}")

    # ==================== SCHEDULER ====================

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info(f"AFK scheduler started (interval={self.interval} ticks)")

    async def stop(self) -> None:
        """Stop the scheduler and drop every session (process shutdown)."""
        self.scheduler.remove_all_jobs()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.registry.clear()
        logger.info("AFK scheduler stopped")
