"""
Exchange desk endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_actor, get_back_office_dep, http_error, require_any_permission
from .schemas import CessionRequest, ReplenishRequest, SaleRequest, TillAdjustmentRequest
from ..errors import ForexError
from ..exchange_desk import FundingSource, OperationKind
from ..rbac import Actor, Permission
from ..system import BackOffice


router = APIRouter()

DESK_READERS = (Permission.OPERATE_EXCHANGE_DESK, Permission.VIEW_CASH_ACCOUNTS)


@router.get("/tills")
async def get_tills(
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Till balances with their last acquisition rate"""
    require_any_permission(actor, *DESK_READERS)
    tills = []
    for till in system.desk.get_tills():
        data = till.to_dict()
        rate = system.desk.last_acquisition_rate(till.currency) if not till.currency.is_local else None
        data['last_acquisition_rate'] = str(rate) if rate is not None else None
        tills.append(data)
    return {"tills": tills}


@router.get("/operations")
async def get_operations(
    kind: Optional[str] = None,
    limit: Optional[int] = 100,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    require_any_permission(actor, *DESK_READERS)
    try:
        operation_kind = OperationKind(kind) if kind else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown operation kind: {kind}")
    operations = system.desk.get_operations(operation_kind, limit=limit)
    return {"operations": [op.to_dict() for op in reversed(operations)]}


@router.get("/commissions")
async def get_commissions(
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Sale commissions per foreign currency, in XAF"""
    require_any_permission(actor, *DESK_READERS)
    return {code: str(total) for code, total in system.desk.commissions_generated().items()}


@router.post("/replenish", status_code=status.HTTP_201_CREATED)
async def replenish(
    request: ReplenishRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Buy foreign currency to restock a till"""
    try:
        funding_source = FundingSource(request.funding_source) if request.funding_source else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown funding source: {request.funding_source}")
    try:
        operation = system.record_exchange_replenishment(
            request.funding_currency, request.amount, request.target_currency, request.purchase_rate,
            actor,
            funding_source=funding_source,
            transport_expense=request.transport_expense,
            handling_expense=request.handling_expense,
            note_exchange_fee=request.note_exchange_fee,
            note=request.note
        )
        return operation.to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/sell", status_code=status.HTTP_201_CREATED)
async def sell(
    request: SaleRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        operation = system.record_exchange_sale(
            request.currency, request.sold_amount, request.today_rate, actor,
            received_local=request.received_local, client=request.client
        )
        return operation.to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/cede", status_code=status.HTTP_201_CREATED)
async def cede(
    request: CessionRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        operation = system.record_exchange_cession(
            request.currency, request.amount, actor, note=request.note, beneficiary=request.beneficiary
        )
        return operation.to_dict()
    except ForexError as e:
        raise http_error(e)


@router.put("/tills/{currency}")
async def adjust_till(
    currency: str,
    request: TillAdjustmentRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Administrative override of a till balance"""
    try:
        operation = system.adjust_exchange_till(currency, request.new_balance, actor, request.note)
        return operation.to_dict()
    except ForexError as e:
        raise http_error(e)
