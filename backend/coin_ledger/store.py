"""
Ledger Store

Typed collections over a key/value backend:
- accounts: versioned account documents (compare-and-set writes)
- bans: email -> reason
- admins: email -> bool
- settings: single "settings" record
- journal: append-only mutation log

Each collection guarantees per-key atomicity only. Cross-key atomicity is
NOT provided; the accounts collection offers compare_and_set so callers can
detect a concurrent write instead of silently overwriting it.

Two backends:
- MongoDB via motor (production)
- In-process memory (tests, single-node development)
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from .models import UserAccount

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"


class StoreError(Exception):
    """Raised when the backend cannot complete a read or write."""


# ==================== COLLECTION INTERFACE ====================

class Collection(ABC):
    """Key/value collection with a per-key version counter."""

    @abstractmethod
    async def get_versioned(self, key: str) -> Tuple[Optional[Any], int]:
        """Return (value, version). Absent keys return (None, 0)."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> bool:
        """Unconditional write (last write wins). Bumps the version."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove key. Returns True if something was deleted."""

    @abstractmethod
    async def compare_and_set(self, key: str, value: Any, expected_version: int) -> bool:
        """
        Write only if the stored version equals expected_version.

        expected_version == 0 means the key must not exist yet.
        Returns False on a version mismatch; the stored value is untouched.
        """

    async def get(self, key: str) -> Optional[Any]:
        value, _ = await self.get_versioned(key)
        return value


class Journal(ABC):
    """Append-only log of ledger mutations."""

    @abstractmethod
    async def append(self, entry: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def recent(self, email: str, limit: int = 50) -> List[Dict[str, Any]]:
        ...


# ==================== MONGODB BACKEND ====================

class MongoCollection(Collection):
    """
    Collection backed by a motor collection.

    Documents are stored as {"_id": key, "value": ..., "version": n, "updated_at": ...}.
    compare_and_set uses a conditional update_one filtered on the version, so
    two concurrent writers can never both succeed against the same version.
    """

    def __init__(self, collection):
        self.collection = collection

    async def get_versioned(self, key: str) -> Tuple[Optional[Any], int]:
        try:
            doc = await self.collection.find_one({"_id": key})
        except PyMongoError as e:
            raise StoreError(f"read failed for {self.collection.name}/{key}") from e

        if not doc:
            return None, 0
        return doc.get("value"), int(doc.get("version", 0))

    async def set(self, key: str, value: Any) -> bool:
        try:
            await self.collection.update_one(
                {"_id": key},
                {
                    "$set": {"value": value, "updated_at": _now_iso()},
                    "$inc": {"version": 1}
                },
                upsert=True
            )
        except PyMongoError as e:
            raise StoreError(f"write failed for {self.collection.name}/{key}") from e
        return True

    async def delete(self, key: str) -> bool:
        try:
            result = await self.collection.delete_one({"_id": key})
        except PyMongoError as e:
            raise StoreError(f"delete failed for {self.collection.name}/{key}") from e
        return result.deleted_count > 0

    async def compare_and_set(self, key: str, value: Any, expected_version: int) -> bool:
        now = _now_iso()
        try:
            if expected_version == 0:
                await self.collection.insert_one(
                    {"_id": key, "value": value, "version": 1, "updated_at": now}
                )
                return True

            result = await self.collection.update_one(
                {"_id": key, "version": expected_version},
                {"$set": {"value": value, "version": expected_version + 1, "updated_at": now}}
            )
        except DuplicateKeyError:
            # Someone else created the key first
            return False
        except PyMongoError as e:
            raise StoreError(f"conditional write failed for {self.collection.name}/{key}") from e

        return result.modified_count > 0


class MongoJournal(Journal):

    def __init__(self, collection):
        self.collection = collection

    async def append(self, entry: Dict[str, Any]) -> None:
        try:
            await self.collection.insert_one(dict(entry))
        except PyMongoError as e:
            raise StoreError("journal append failed") from e

    async def recent(self, email: str, limit: int = 50) -> List[Dict[str, Any]]:
        try:
            cursor = self.collection.find(
                {"email": email},
                {"_id": 0}
            ).sort("timestamp", -1).limit(limit)
            return await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise StoreError("journal read failed") from e


# ==================== MEMORY BACKEND ====================

class MemoryCollection(Collection):
    """
    In-process collection.

    Values are deep-copied on the way in and out, so callers see the same
    value semantics as a serializing backend. Each read yields to the event
    loop once, like a real round trip would.
    """

    def __init__(self, name: str = "memory"):
        self.name = name
        self._data: Dict[str, Tuple[Any, int]] = {}

    async def get_versioned(self, key: str) -> Tuple[Optional[Any], int]:
        value, version = self._data.get(key, (None, 0))
        value = copy.deepcopy(value)
        # Yield after the read so other writers can interleave before our write
        await asyncio.sleep(0)
        return value, version

    async def set(self, key: str, value: Any) -> bool:
        _, version = self._data.get(key, (None, 0))
        self._data[key] = (copy.deepcopy(value), version + 1)
        return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def compare_and_set(self, key: str, value: Any, expected_version: int) -> bool:
        _, version = self._data.get(key, (None, 0))
        if version != expected_version:
            return False
        self._data[key] = (copy.deepcopy(value), version + 1)
        return True


class MemoryJournal(Journal):

    def __init__(self):
        self._entries: List[Dict[str, Any]] = []

    async def append(self, entry: Dict[str, Any]) -> None:
        self._entries.append(copy.deepcopy(entry))

    async def recent(self, email: str, limit: int = 50) -> List[Dict[str, Any]]:
        matching = [e for e in self._entries if e.get("email") == email]
        matching.sort(key=lambda e: e.get("timestamp", ""), reverse=True)
        return copy.deepcopy(matching[:limit])


# ==================== LEDGER STORE ====================

class LedgerStore:
    """Bundle of the typed collections the ledger works against."""

    def __init__(
        self,
        accounts: Collection,
        bans: Collection,
        admins: Collection,
        settings: Collection,
        journal: Journal
    ):
        self.accounts = accounts
        self.bans = bans
        self.admins = admins
        self.settings = settings
        self.journal = journal

    @classmethod
    def from_motor(cls, db) -> "LedgerStore":
        """Build a store on a motor AsyncIOMotorDatabase."""
        return cls(
            accounts=MongoCollection(db.ledger_accounts),
            bans=MongoCollection(db.ledger_bans),
            admins=MongoCollection(db.ledger_admins),
            settings=MongoCollection(db.ledger_settings),
            journal=MongoJournal(db.ledger_journal)
        )

    @classmethod
    def in_memory(cls) -> "LedgerStore":
        return cls(
            accounts=MemoryCollection("accounts"),
            bans=MemoryCollection("bans"),
            admins=MemoryCollection("admins"),
            settings=MemoryCollection("settings"),
            journal=MemoryJournal()
        )


# ==================== LEGACY FLAT KEY LAYOUT ====================

class FlatKeyStore:
    """
    get/set/delete over the flat key layout used by older dashboards:

        user-<email>        account document
        banned-<email>      ban reason
        admin-<email>       admin flag
        last-claim-<email>  last daily claim date (stored on the account)
        settings            settings record

    Useful for import scripts that still speak the old layout. Writes through
    this adapter are last-write-wins, except last-claim which goes through
    the account's compare_and_set.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    def _route(self, key: str) -> Tuple[str, str]:
        if key == SETTINGS_KEY:
            return "settings", SETTINGS_KEY
        # last-claim- must be tested before the shorter prefixes
        for prefix, kind in (
            ("last-claim-", "last_claim"),
            ("banned-", "bans"),
            ("admin-", "admins"),
            ("user-", "accounts"),
        ):
            if key.startswith(prefix) and len(key) > len(prefix):
                return kind, key[len(prefix):]
        raise KeyError(f"Unknown ledger key: {key}")

    async def get(self, key: str) -> Optional[Any]:
        kind, ident = self._route(key)
        if kind == "last_claim":
            account = await self.store.accounts.get(ident)
            return account.get("last_daily_claim") if account else None
        return await getattr(self.store, kind).get(ident)

    async def set(self, key: str, value: Any) -> bool:
        """
        Write one key. Returns False when the write is refused: an account
        document that fails validation (negative coins or resources, or an
        email that differs from the key), or a last-claim date earlier than
        the one already stored.
        """
        kind, ident = self._route(key)
        if kind == "accounts":
            try:
                account = UserAccount.model_validate(value)
            except ValidationError as e:
                logger.warning(f"Refused account write for {ident}: {e.error_count()} invalid field(s)")
                return False
            if account.email != ident:
                logger.warning(f"Refused account write for {ident}: document email is {account.email}")
                return False
            return await self.store.accounts.set(ident, account.model_dump())
        if kind != "last_claim":
            return await getattr(self.store, kind).set(ident, value)

        account, version = await self.store.accounts.get_versioned(ident)
        if account is None:
            return False
        previous = account.get("last_daily_claim")
        # ISO dates order lexically; None clears the claim
        if value is not None and previous is not None and value < previous:
            logger.warning(f"Refused last-claim rewind for {ident}: {value} < {previous}")
            return False
        account["last_daily_claim"] = value
        account["version"] = version + 1
        return await self.store.accounts.compare_and_set(ident, account, version)

    async def delete(self, key: str) -> bool:
        kind, ident = self._route(key)
        if kind == "last_claim":
            return await self.set(key, None)
        return await getattr(self.store, kind).delete(ident)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
