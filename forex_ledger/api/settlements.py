"""
Cash settlement endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status

from .dependencies import get_actor, get_back_office_dep, http_error, require_any_permission
from .schemas import (
    CreateSettlementRequest, RejectSettlementRequest, UnloadingRequest, ValidateSettlementRequest
)
from ..errors import ForexError
from ..rbac import Actor, Permission
from ..settlements import SettlementStatus
from ..system import BackOffice


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_settlement(
    request: CreateSettlementRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Open the closeout of the caller's day"""
    try:
        settlement = system.create_settlement(
            actor, request.settlement_date, request.total_transactions_amount,
            request.unloading_amount, request.unloading_reason
        )
        return settlement.to_dict()
    except ForexError as e:
        raise http_error(e)


@router.get("")
async def list_settlements(
    cashier_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Supervisors see every settlement, cashiers only their own"""
    try:
        settlement_status = SettlementStatus(status_filter) if status_filter else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status_filter}")
    if not actor.has_permission(Permission.VALIDATE_SETTLEMENT):
        cashier_id = actor.id
    settlements = system.settlements.list_settlements(cashier_id, settlement_status)
    return {"settlements": [s.to_dict() for s in settlements]}


@router.get("/stats")
async def get_settlement_stats(
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    require_any_permission(actor, Permission.VALIDATE_SETTLEMENT)
    stats = system.settlements.settlement_stats()
    for key in ("total_validated_amount", "total_exception_amount"):
        stats[key] = str(stats[key])
    return stats


@router.get("/{settlement_id}")
async def get_settlement(
    settlement_id: str,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Settlement with its unloadings"""
    try:
        settlement = system.settlements.get_settlement(settlement_id)
    except ForexError as e:
        raise http_error(e)
    if settlement.cashier_id != actor.id:
        require_any_permission(actor, Permission.VALIDATE_SETTLEMENT)
    data = settlement.to_dict()
    data["unloadings"] = [u.to_dict() for u in system.settlements.get_unloadings(settlement_id)]
    return data


@router.post("/{settlement_id}/unloadings", status_code=status.HTTP_201_CREATED)
async def add_unloading(
    settlement_id: str,
    request: UnloadingRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        return system.add_unloading(settlement_id, request.amount, request.reason, actor).to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/{settlement_id}/validate")
async def validate_settlement(
    settlement_id: str,
    request: ValidateSettlementRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        settlement = system.validate_settlement(
            settlement_id, request.received_amount, actor,
            notes=request.validation_notes, exception_reason=request.exception_reason
        )
        return settlement.to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/{settlement_id}/reject")
async def reject_settlement(
    settlement_id: str,
    request: RejectSettlementRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        return system.reject_settlement(settlement_id, request.reason, actor).to_dict()
    except ForexError as e:
        raise http_error(e)
