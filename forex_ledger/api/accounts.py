"""
Cash account endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import get_actor, get_back_office_dep, http_error
from .schemas import AccountBalanceRequest, AccountMovementRequest, AccountTransferRequest
from ..errors import ForexError
from ..rbac import Actor
from ..system import BackOffice


router = APIRouter()


@router.get("")
async def get_accounts(
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        return {"accounts": [account.to_dict() for account in system.get_accounts(actor)]}
    except ForexError as e:
        raise http_error(e)


@router.get("/{kind}/movements")
async def get_movements(
    kind: str,
    limit: Optional[int] = 100,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Most recent movements of an account"""
    try:
        movements = system.get_movements(actor, kind, limit=limit)
        return {"movements": [m.to_dict() for m in reversed(movements)]}
    except ForexError as e:
        raise http_error(e)


@router.put("/{kind}/balance")
async def set_account_balance(
    kind: str,
    request: AccountBalanceRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        return system.set_account_balance(kind, request.new_balance, actor, request.note).to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/{kind}/deposit")
async def deposit(
    kind: str,
    request: AccountMovementRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        return system.deposit_account(kind, request.amount, actor, request.note, request.reference).to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/{kind}/debit")
async def debit(
    kind: str,
    request: AccountMovementRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        return system.debit_account(kind, request.amount, actor, request.note, request.reference).to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/transfer")
async def transfer(
    request: AccountTransferRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Move funds between two accounts"""
    try:
        movements = system.transfer_between_accounts(
            request.from_account, request.to_account, request.amount, actor, request.note, request.reference
        )
        return {"movements": [m.to_dict() for m in movements]}
    except ForexError as e:
        raise http_error(e)


@router.post("/{kind}/commission")
async def post_commission(
    kind: str,
    request: AccountMovementRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        return system.post_commission(kind, request.amount, actor, request.note, request.reference).to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/{kind}/reconcile")
async def reconcile_pool(
    kind: str,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Recompute a pool balance from its movement log"""
    try:
        return {"account": kind, "balance": str(system.reconcile_pool(kind, actor))}
    except ForexError as e:
        raise http_error(e)
