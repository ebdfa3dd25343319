"""
Expense endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status

from .dependencies import get_actor, get_back_office_dep, http_error
from .schemas import CashierSurplusRequest, ExpenseDecisionRequest, SubmitExpenseRequest
from ..errors import ForexError
from ..expenses import ExpenseStatus
from ..rbac import Actor, Permission
from ..system import BackOffice


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_expense(
    request: SubmitExpenseRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    try:
        expense = system.submit_expense(
            request.description, request.amount, request.category, actor,
            agency=request.agency, comment=request.comment,
            deduct_from_surplus=request.deduct_from_surplus, cashier_id=request.cashier_id
        )
        return expense.to_dict()
    except ForexError as e:
        raise http_error(e)


@router.get("")
async def list_expenses(
    status_filter: Optional[str] = Query(None, alias="status"),
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Approvers see every expense, everyone else only their own"""
    try:
        expense_status = ExpenseStatus(status_filter) if status_filter else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status_filter}")
    moderates = (actor.has_permission(Permission.APPROVE_EXPENSE_CONTROL)
                 or actor.has_permission(Permission.APPROVE_EXPENSE_EXECUTIVE))
    expenses = system.expenses.list_expenses(
        requester=None if moderates else actor.id,
        status=expense_status
    )
    return {"expenses": [expense.to_dict() for expense in expenses]}


@router.post("/{expense_id}/control")
async def approve_by_control(
    expense_id: str,
    request: ExpenseDecisionRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Accounting decision"""
    try:
        return system.approve_expense_by_control(expense_id, request.approve, actor, request.reason).to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/{expense_id}/executive")
async def approve_by_executive(
    expense_id: str,
    request: ExpenseDecisionRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Director decision; approval debits the expense's account"""
    try:
        return system.approve_expense_by_executive(expense_id, request.approve, actor, request.reason).to_dict()
    except ForexError as e:
        raise http_error(e)


@router.post("/surplus", status_code=status.HTTP_201_CREATED)
async def record_cashier_surplus(
    request: CashierSurplusRequest,
    actor: Actor = Depends(get_actor),
    system: BackOffice = Depends(get_back_office_dep)
):
    """Declare a cashier's exchange surplus"""
    try:
        movement = system.record_cashier_surplus(request.cashier_id, request.amount, actor, request.note)
        return {
            "movement": movement.to_dict(),
            "available": str(system.expenses.cashier_surplus_available(request.cashier_id))
        }
    except ForexError as e:
        raise http_error(e)
