"""
Coin Ledger API Routes

Endpoints:
- GET /api/ledger/me - Get (or open) the caller's account
- POST /api/ledger/store/resource - Buy resource units with coins
- POST /api/ledger/store/plan - Switch plan
- POST /api/ledger/daily - Claim daily coins
- GET /api/ledger/plans - Plan catalog
- GET /api/ledger/journal - Caller's journal entries
- POST /api/ledger/admin/... - Admin coin, resource, ban and settings endpoints
- WS /api/afk/ws?token=... - AFK accrual session
"""

import logging

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from utils.auth import decode_token, get_current_user
from coin_ledger.accrual import AccrualSessionManager
from coin_ledger.ledger_service import LedgerService
from coin_ledger.models import (
    AdminCoinsRequest,
    AdminResourcesRequest,
    BanRequest,
    ChangePlanRequest,
    LedgerErrorCode,
    LedgerResult,
    PurchaseResourceRequest,
    SettingsUpdateRequest,
)

logger = logging.getLogger(__name__)

ledger_router = APIRouter(prefix="/ledger", tags=["Coin Ledger"])
afk_router = APIRouter(prefix="/afk", tags=["AFK"])

HTTP_STATUS = {
    LedgerErrorCode.NOT_FOUND: 404,
    LedgerErrorCode.INVALID_PARAMS: 400,
    LedgerErrorCode.INVALID_AMOUNT: 400,
    LedgerErrorCode.INSUFFICIENT_BALANCE: 402,
    LedgerErrorCode.ALREADY_CLAIMED: 409,
    LedgerErrorCode.ALREADY_ON_PLAN: 409,
    LedgerErrorCode.ALREADY_ACTIVE: 409,
    LedgerErrorCode.BANNED: 403,
    LedgerErrorCode.FORBIDDEN: 403,
    LedgerErrorCode.FEATURE_DISABLED: 503,
    LedgerErrorCode.STORE_FAILURE: 500,
}

# Application-defined close codes (4000-4999)
WS_CLOSE_REJECTED = 4409


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_accrual(request: Request) -> AccrualSessionManager:
    return request.app.state.accrual


def unwrap(result: LedgerResult) -> dict:
    """Response body for a successful result; HTTPException otherwise."""
    if not result.ok:
        raise HTTPException(
            status_code=HTTP_STATUS.get(result.error_code, 500),
            detail={
                "error_code": result.error_code.value,
                "message": result.error_message,
                **(result.details or {})
            }
        )
    body = dict(result.details or {})
    if result.account is not None:
        body["account"] = result.account.model_dump(exclude={"version"})
    return body


# ==================== ACCOUNT ENDPOINTS ====================

@ledger_router.get("/me")
async def get_me(
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    """
    Get the caller's balance, resources and plan.

    The account is opened on first access.
    """
    return unwrap(await ledger.open_account(user["email"], user.get("username")))


@ledger_router.get("/journal")
async def get_journal(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    """Recent ledger entries for the caller, newest first."""
    return unwrap(await ledger.get_journal(user["email"], limit))


# ==================== STORE ENDPOINTS ====================

@ledger_router.get("/plans")
async def list_plans(ledger: LedgerService = Depends(get_ledger)):
    return {"plans": [plan.model_dump() for plan in ledger.catalog.all()]}


@ledger_router.post("/store/resource")
async def purchase_resource(
    request: PurchaseResourceRequest,
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    """Buy 1-10 units of one resource."""
    result = await ledger.purchase_resource(user["email"], request.resource, request.units)
    return unwrap(result)


@ledger_router.post("/store/plan")
async def change_plan(
    request: ChangePlanRequest,
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    return unwrap(await ledger.change_plan(user["email"], request.plan_id))


@ledger_router.post("/daily")
async def claim_daily(
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    return unwrap(await ledger.claim_daily(user["email"]))


# ==================== ADMIN ENDPOINTS ====================

@ledger_router.post("/admin/coins/add")
async def admin_add_coins(
    request: AdminCoinsRequest,
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    result = await ledger.credit_coins(request.email, request.amount, actor=user["email"])
    return unwrap(result)


@ledger_router.post("/admin/coins/set")
async def admin_set_coins(
    request: AdminCoinsRequest,
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    return unwrap(await ledger.set_coins(user["email"], request.email, request.amount))


@ledger_router.post("/admin/resources/add")
async def admin_add_resources(
    request: AdminResourcesRequest,
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    return unwrap(await ledger.grant_resources(user["email"], request.email, request.resources))


@ledger_router.post("/admin/resources/set")
async def admin_set_resources(
    request: AdminResourcesRequest,
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    return unwrap(await ledger.set_resources(user["email"], request.email, request.resources))


@ledger_router.post("/admin/ban")
async def admin_ban(
    request: BanRequest,
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    return unwrap(await ledger.ban(user["email"], request.email, request.reason))


@ledger_router.post("/admin/unban")
async def admin_unban(
    request: BanRequest,
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    return unwrap(await ledger.unban(user["email"], request.email))


@ledger_router.patch("/admin/settings")
async def admin_update_settings(
    request: SettingsUpdateRequest,
    user: dict = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger)
):
    """Toggle daily coins, maintenance and guild joining."""
    changes = request.model_dump(exclude_none=True)
    return unwrap(await ledger.update_settings(user["email"], changes))


# ==================== AFK WEBSOCKET ====================

@afk_router.websocket("/ws")
async def afk_session(websocket: WebSocket, token: str = Query("")):
    """
    AFK accrual session. The server pushes {"type": "count", "amount": n}
    every second and {"type": "coin"} on every credit. Anything the client
    sends is ignored.
    """
    try:
        user = decode_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    manager: AccrualSessionManager = websocket.app.state.accrual
    email = user["email"]

    await websocket.accept()
    result = await manager.open_session(email, websocket)
    if not result.ok:
        await websocket.send_json({
            "type": "error",
            "error_code": result.error_code.value,
            "message": result.error_message
        })
        await websocket.close(code=WS_CLOSE_REJECTED)
        return

    session_id = result.details["session_id"]
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"AFK client {email} disconnected")
    except RuntimeError:
        # Socket already closed by the server side (credit failure)
        pass
    finally:
        manager.close_session(email, session_id)
