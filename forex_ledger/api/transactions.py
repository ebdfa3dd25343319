"""
Transaction endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status

from .dependencies import get_actor, get_back_office_dep, http_error, require_any_permission
from .schemas import (
    CreateTransactionRequest, DeletionRequest, ExecuteTransactionRequest,
    RealAmountRequest, UpdateStatusRequest
)
from ..errors import ForexError
from ..rbac import Actor, Permission
from ..state_machine import TransactionStatus, TransactionType
from ..system import BackOffice
from ..transactions import parse_details


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    request: CreateTransactionRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Create a transaction"""
    try:
        transaction_type = TransactionType(request.type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown transaction type: {request.type}")
    if transaction_type is TransactionType.SETTLEMENT:
        raise HTTPException(status_code=400, detail="Settlement transactions are recorded by the settlement workflow")
    try:
        transaction = system.create_transaction(
            type=transaction_type,
            description=request.description,
            amount=request.amount,
            currency=request.currency,
            creator=actor,
            agency=request.agency,
            details=parse_details(transaction_type, request.details)
        )
        return transaction.to_dict()
    except ForexError as e:
        raise http_error(e)


# Permissions that open every transaction to reading; other callers see their own
OVERSIGHT = (Permission.VIEW_CASH_ACCOUNTS, Permission.VALIDATE_TRANSACTION)


def oversees(actor: Actor) -> bool:
    return any(actor.has_permission(permission) for permission in OVERSIGHT)


@router.get("")
async def list_transactions(
    status_filter: Optional[str] = Query(None, alias="status"),
    type: Optional[str] = None,
    creator: Optional[str] = None,
    agency: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """List transactions, most recent first; cashiers see their own"""
    try:
        transactions = system.transactions.list_transactions(
            status=TransactionStatus(status_filter) if status_filter else None,
            type=TransactionType(type) if type else None,
            creator=creator if oversees(actor) else actor.id,
            agency=agency
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"transactions": [t.to_dict() for t in transactions]}


@router.get("/pending")
async def get_pending_transactions(
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Transactions waiting for a decision"""
    require_any_permission(actor, *OVERSIGHT)
    return {"transactions": [t.to_dict() for t in system.transactions.get_pending_transactions()]}


@router.get("/stats")
async def get_transaction_stats(
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    require_any_permission(actor, *OVERSIGHT)
    stats = system.transactions.transaction_stats()
    stats["transfer_commission"] = str(stats["transfer_commission"])
    return stats


@router.get("/executor/{executor_id}")
async def get_executor_transactions(
    executor_id: str,
    include_executed: bool = False,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Transfers assigned to an executor; executors only see their own queue"""
    if executor_id != actor.id:
        require_any_permission(actor, *OVERSIGHT)
    transactions = system.transactions.get_transactions_for_executor(executor_id, include_executed)
    return {"transactions": [t.to_dict() for t in transactions]}


@router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        transaction = system.transactions.get_transaction(transaction_id)
    except ForexError as e:
        raise http_error(e)
    if actor.id not in (transaction.created_by, transaction.executor_id):
        require_any_permission(actor, *OVERSIGHT)
    return transaction.to_dict()


@router.put("/{transaction_id}/status")
async def update_transaction_status(
    transaction_id: str,
    request: UpdateStatusRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Move a transaction to a new status"""
    try:
        target = TransactionStatus(request.status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status: {request.status}")
    try:
        transaction = system.update_transaction_status(transaction_id, target, actor, request.reason)
        return transaction.to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/{transaction_id}/real-amount")
async def validate_transfer_real_amount(
    transaction_id: str,
    request: RealAmountRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Audit gate of a transfer: validated or rejected depending on the commission"""
    try:
        transaction = system.validate_transfer_real_amount(transaction_id, request.real_amount, actor)
        return transaction.to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/{transaction_id}/execute")
async def execute_transaction(
    transaction_id: str,
    request: ExecuteTransactionRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        transaction = system.execute_transaction(
            transaction_id, actor, request.receipt_reference,
            comment=request.comment, as_auditor=request.as_auditor
        )
        return transaction.to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/{transaction_id}/deletion-request")
async def request_deletion(
    transaction_id: str,
    request: DeletionRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        return system.request_deletion(transaction_id, actor, request.reason).to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/{transaction_id}/deletion-validation")
async def validate_deletion(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        return system.validate_deletion(transaction_id, actor).to_dict()
    except ForexError as e:
        raise http_error(e)
