"""
Pydantic schemas for API requests
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


# Transaction schemas
class CreateTransactionRequest(BaseModel):
    type: str = Field(..., description="reception, exchange, transfer, card or receipt")
    description: str
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = "XAF"
    agency: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict, description="Fields of the type's detail variant")


class UpdateStatusRequest(BaseModel):
    status: str
    reason: Optional[str] = None


class RealAmountRequest(BaseModel):
    real_amount: str = Field(..., description="Amount paid out abroad, in the settlement currency")


class ExecuteTransactionRequest(BaseModel):
    receipt_reference: str
    comment: Optional[str] = None
    as_auditor: bool = False


class DeletionRequest(BaseModel):
    reason: Optional[str] = None


# Exchange desk schemas
class ReplenishRequest(BaseModel):
    funding_currency: str
    amount: str
    target_currency: str
    purchase_rate: str
    funding_source: Optional[str] = Field(None, description="local_till, foreign_till or vault")
    transport_expense: str = "0"
    handling_expense: str = "0"
    note_exchange_fee: str = "0"
    note: Optional[str] = None


class SaleRequest(BaseModel):
    currency: str
    sold_amount: str
    today_rate: str
    received_local: Optional[str] = None
    client: Optional[str] = None


class CessionRequest(BaseModel):
    currency: str
    amount: str
    note: Optional[str] = None
    beneficiary: Optional[str] = None


class TillAdjustmentRequest(BaseModel):
    new_balance: str
    note: str


# Cash account schemas
class AccountBalanceRequest(BaseModel):
    new_balance: str
    note: str


class AccountMovementRequest(BaseModel):
    amount: str
    note: str
    reference: Optional[str] = None


class AccountTransferRequest(BaseModel):
    from_account: str
    to_account: str
    amount: str
    note: str
    reference: Optional[str] = None


# Expense schemas
class SubmitExpenseRequest(BaseModel):
    description: str
    amount: str
    category: str = "other"
    agency: Optional[str] = None
    comment: Optional[str] = None
    deduct_from_surplus: bool = False
    cashier_id: Optional[str] = None


class ExpenseDecisionRequest(BaseModel):
    approve: bool
    reason: Optional[str] = None


class CashierSurplusRequest(BaseModel):
    cashier_id: str
    amount: str
    note: Optional[str] = None


# Settlement schemas
class CreateSettlementRequest(BaseModel):
    settlement_date: str = Field(..., description="ISO date of the business day")
    total_transactions_amount: str
    unloading_amount: str = "0"
    unloading_reason: Optional[str] = None


class UnloadingRequest(BaseModel):
    amount: str
    reason: str


class ValidateSettlementRequest(BaseModel):
    received_amount: str
    validation_notes: Optional[str] = None
    exception_reason: Optional[str] = None


class RejectSettlementRequest(BaseModel):
    reason: str


# Administration schemas
class UpdateSettingsRequest(BaseModel):
    usd_rate: Optional[str] = None
    eur_rate: Optional[str] = None
    usd_buy_rate: Optional[str] = None
    usd_sell_rate: Optional[str] = None
    eur_buy_rate: Optional[str] = None
    eur_sell_rate: Optional[str] = None
    transfer_commission_min: Optional[str] = None
