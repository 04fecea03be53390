"""
Coin Ledger Data Models

Pydantic models for ledger operations.
These define the structure of documents stored in the ledger collections
and the typed results returned by every ledger operation.
"""

from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import ERROR_MESSAGES


# ==================== ERROR TAXONOMY ====================

class LedgerErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_PARAMS = "INVALID_PARAMS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    ALREADY_ON_PLAN = "ALREADY_ON_PLAN"
    ALREADY_ACTIVE = "ALREADY_ACTIVE"
    BANNED = "BANNED"
    FORBIDDEN = "FORBIDDEN"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    STORE_FAILURE = "STORE_FAILURE"


# ==================== ACCOUNT MODELS ====================

class Resources(BaseModel):
    """Provisionable capacity held by an account"""
    model_config = ConfigDict(extra="ignore")

    cpu: int = Field(0, ge=0)
    ram: int = Field(0, ge=0)
    disk: int = Field(0, ge=0)
    backup: int = Field(0, ge=0)
    database: int = Field(0, ge=0)
    allocation: int = Field(0, ge=0)


class UserAccount(BaseModel):
    """Ledger record for one account, keyed by email"""
    model_config = ConfigDict(extra="ignore")

    email: str
    external_id: Optional[str] = None  # Panel user id, opaque to the ledger
    username: Optional[str] = None
    coins: int = Field(0, ge=0)
    resources: Resources = Field(default_factory=Resources)
    plan: Optional[str] = None  # PlanCatalog key, e.g. "STANDARD"
    last_daily_claim: Optional[str] = None  # ISO date, YYYY-MM-DD
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ==================== PLAN MODELS ====================

class PlanDefinition(BaseModel):
    """Purchasable bundle of baseline resources"""
    id: int
    key: str
    name: str
    price: int = Field(0, ge=0)
    resources: Resources = Field(default_factory=Resources)


# ==================== SETTINGS MODELS ====================

class SettingsRecord(BaseModel):
    """Process-wide feature toggles"""
    model_config = ConfigDict(extra="ignore")

    daily_coins_enabled: bool = False
    daily_coins: int = Field(0, ge=0)
    maintenance: bool = False
    join_guild_enabled: bool = False
    join_guild_id: str = ""


# ==================== JOURNAL MODELS ====================

class JournalEntry(BaseModel):
    """Immutable record of a successful ledger mutation"""
    email: str
    action: str  # CREDIT, SET_COINS, GRANT_RESOURCES, PURCHASE_RESOURCE, ...
    coins_delta: int = 0
    resource_deltas: Dict[str, int] = Field(default_factory=dict)
    coins_after: int = 0
    actor: Optional[str] = None
    request_id: str
    timestamp: str  # ISO datetime string
    details: Optional[dict] = None


# ==================== RESULT MODELS ====================

class LedgerResult(BaseModel):
    """Result of a ledger operation"""
    ok: bool
    error_code: Optional[LedgerErrorCode] = None
    error_message: Optional[str] = None
    account: Optional[UserAccount] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, account: Optional[UserAccount] = None, **details) -> "LedgerResult":
        return cls(ok=True, account=account, details=details or None)

    @classmethod
    def failure(cls, code: LedgerErrorCode, message: Optional[str] = None, **details) -> "LedgerResult":
        return cls(
            ok=False,
            error_code=code,
            error_message=message or ERROR_MESSAGES[code.value],
            details=details or None
        )


class AccessDecision(BaseModel):
    """Outcome of the ban/admin gate"""
    outcome: Literal["allowed", "banned", "forbidden"]
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == "allowed"

    def to_result(self) -> LedgerResult:
        if self.outcome == "banned":
            return LedgerResult.failure(LedgerErrorCode.BANNED, reason=self.reason)
        return LedgerResult.failure(LedgerErrorCode.FORBIDDEN)


# ==================== REQUEST MODELS ====================

class PurchaseResourceRequest(BaseModel):
    """Request to buy resource units with coins"""
    resource: str = Field(..., description="cpu, ram, disk, backup, database or allocation")
    units: int = Field(..., description="Units to buy (1-10)")


class ChangePlanRequest(BaseModel):
    """Request to switch to another plan"""
    plan_id: int = Field(..., description="Plan ID from the catalog")


class AdminCoinsRequest(BaseModel):
    email: str
    amount: int


class AdminResourcesRequest(BaseModel):
    email: str
    resources: Dict[str, Any] = Field(..., description="Resource name -> amount")


class BanRequest(BaseModel):
    email: str
    reason: Optional[str] = None


class SettingsUpdateRequest(BaseModel):
    daily_coins_enabled: Optional[bool] = None
    daily_coins: Optional[int] = None
    maintenance: Optional[bool] = None
    join_guild_enabled: Optional[bool] = None
    join_guild_id: Optional[str] = None
