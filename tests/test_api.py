"""
Integration tests for the Forex Back-Office API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from forex_ledger.api import create_app
from forex_ledger.rbac import StaticExecutorDirectory
from forex_ledger.storage import InMemoryStorage
from forex_ledger.system import BackOffice


def actor(actor_id, role, name=None):
    headers = {"X-Actor-Id": actor_id, "X-Actor-Role": role}
    if name:
        headers["X-Actor-Name"] = name
    return headers


CASHIER = actor("cashier-1", "cashier", "Awa")
OTHER_CASHIER = actor("cashier-2", "cashier")
AUDITOR = actor("auditor-1", "auditor")
EXECUTOR = actor("exec-1", "executor")
DIRECTOR = actor("director-1", "director")
ACCOUNTING = actor("accounting-1", "accounting")

TRANSFER = {
    "type": "transfer",
    "description": "Transfer to Paris",
    "amount": "65000",
    "currency": "XAF",
    "details": {
        "beneficiary_name": "Jean Dupont",
        "destination_country": "France",
        "transfer_method": "bank",
        "withdrawal_mode": "cash",
    },
}


@pytest.fixture
def back_office():
    system = BackOffice(storage=InMemoryStorage(), sinks=[], executors=StaticExecutorDirectory(["exec-1"]))
    yield system
    system.close()


@pytest.fixture
def client(back_office):
    """Create a test client bound to an in-memory back office"""
    return TestClient(create_app(back_office))


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "healthy", "service": "forex_ledger_api", "version": "1.0.0"}

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert r.json()["endpoints"]["settlements"] == "/settlements"


class TestIdentity:
    """Caller identity headers"""

    def test_missing_headers(self, client):
        r = client.post("/transactions", json=TRANSFER)
        assert r.status_code == 422

    def test_unknown_role(self, client):
        r = client.post("/transactions", json=TRANSFER, headers=actor("x", "janitor"))
        assert r.status_code == 401

    def test_forbidden_role(self, client):
        r = client.post("/transactions", json=TRANSFER, headers=EXECUTOR)
        assert r.status_code == 403


class TestReadAccess:
    """Reads need an identified caller and are scoped by role"""

    def test_reads_require_identity(self, client):
        for path in ("/transactions", "/transactions/stats", "/settlements", "/exchange/tills",
                     "/admin/settings"):
            assert client.get(path).status_code == 422

    def test_transactions_scoped_to_creator(self, client):
        transaction_id = client.post("/transactions", json=TRANSFER, headers=CASHIER).json()["id"]

        mine = client.get("/transactions", headers=CASHIER).json()["transactions"]
        assert [t["id"] for t in mine] == [transaction_id]
        assert client.get("/transactions", headers=OTHER_CASHIER).json()["transactions"] == []
        r = client.get("/transactions", params={"creator": "cashier-1"}, headers=OTHER_CASHIER)
        assert r.json()["transactions"] == []

        assert client.get(f"/transactions/{transaction_id}", headers=CASHIER).status_code == 200
        assert client.get(f"/transactions/{transaction_id}", headers=OTHER_CASHIER).status_code == 403
        assert client.get(f"/transactions/{transaction_id}", headers=AUDITOR).status_code == 200

    def test_oversight_reads(self, client):
        assert client.get("/transactions/pending", headers=CASHIER).status_code == 403
        assert client.get("/transactions/stats", headers=EXECUTOR).status_code == 403
        assert client.get("/transactions/executor/exec-2", headers=EXECUTOR).status_code == 403
        assert client.get("/transactions/executor/exec-2", headers=AUDITOR).status_code == 200
        assert client.get("/exchange/tills", headers=EXECUTOR).status_code == 403
        assert client.get("/admin/audit/verify", headers=CASHIER).status_code == 403

    def test_settlements_scoped_to_cashier(self, client):
        settlement_id = client.post("/settlements", headers=CASHIER, json={
            "settlement_date": "2024-05-01", "total_transactions_amount": "1000"
        }).json()["id"]

        assert client.get(f"/settlements/{settlement_id}", headers=OTHER_CASHIER).status_code == 403
        assert client.get(f"/settlements/{settlement_id}", headers=ACCOUNTING).status_code == 200
        assert client.get("/settlements", headers=OTHER_CASHIER).json()["settlements"] == []
        assert len(client.get("/settlements", headers=ACCOUNTING).json()["settlements"]) == 1
        assert client.get("/settlements/stats", headers=CASHIER).status_code == 403


class TestTransactionFlow:
    """End-to-end transfer workflow"""

    def test_transfer_lifecycle(self, client):
        r = client.put("/admin/settings", json={"eur_rate": "640"}, headers=DIRECTOR)
        assert r.status_code == 200

        r = client.post("/transactions", json=TRANSFER, headers=CASHIER)
        assert r.status_code == 201
        transaction = r.json()
        assert transaction["status"] == "pending"
        assert transaction["details"]["settlement_currency"] == "EUR"
        transaction_id = transaction["id"]

        r = client.get("/transactions/pending", headers=AUDITOR)
        assert [t["id"] for t in r.json()["transactions"]] == [transaction_id]

        r = client.post(f"/transactions/{transaction_id}/real-amount",
                        json={"real_amount": "100"}, headers=AUDITOR)
        assert r.status_code == 200
        assert r.json()["status"] == "validated"
        assert Decimal(r.json()["commission"]) == Decimal("1000")
        assert r.json()["executor_id"] == "exec-1"

        r = client.get("/transactions/executor/exec-1", headers=EXECUTOR)
        assert len(r.json()["transactions"]) == 1

        r = client.post(f"/transactions/{transaction_id}/execute",
                        json={"receipt_reference": "WU-123"}, headers=EXECUTOR)
        assert r.status_code == 200
        assert r.json()["status"] == "executed"

        r = client.put(f"/transactions/{transaction_id}/status",
                       json={"status": "completed"}, headers=EXECUTOR)
        assert r.status_code == 200
        assert r.json()["status"] == "completed"

        r = client.get("/transactions/stats", headers=DIRECTOR)
        assert Decimal(r.json()["transfer_commission"]) == Decimal("1000")

        r = client.get("/accounts", headers=AUDITOR)
        balances = {a["kind"]: Decimal(a["balance"]) for a in r.json()["accounts"]}
        assert balances["transfer_commission_pool"] == Decimal("1000")

    def test_rejected_at_reference_rate(self, client):
        transaction_id = client.post("/transactions", json=TRANSFER, headers=CASHIER).json()["id"]
        r = client.post(f"/transactions/{transaction_id}/real-amount",
                        json={"real_amount": "100"}, headers=AUDITOR)
        assert r.json()["status"] == "rejected"

        r = client.get("/transactions", params={"status": "rejected"}, headers=AUDITOR)
        assert [t["id"] for t in r.json()["transactions"]] == [transaction_id]

    def test_receipt_deletion(self, client):
        r = client.post("/transactions", headers=CASHIER, json={
            "type": "receipt",
            "description": "Receipt",
            "amount": "10000",
            "details": {"receipt_number": "R-1", "commission": "500"},
        })
        assert r.json()["status"] == "completed"
        transaction_id = r.json()["id"]

        r = client.post(f"/transactions/{transaction_id}/deletion-request",
                        json={"reason": "Duplicate"}, headers=CASHIER)
        assert r.json()["status"] == "pending_delete"

        r = client.post(f"/transactions/{transaction_id}/deletion-validation", headers=DIRECTOR)
        assert r.status_code == 200
        assert r.json()["status"] == "rejected"

    def test_errors(self, client):
        r = client.post("/transactions", json=dict(TRANSFER, type="loan"), headers=CASHIER)
        assert r.status_code == 400

        r = client.post("/transactions", json=dict(TRANSFER, type="settlement"), headers=CASHIER)
        assert r.status_code == 400

        r = client.post("/transactions", json=dict(TRANSFER, details={}), headers=CASHIER)
        assert r.status_code == 400

        r = client.get("/transactions/TRX-19990101-0000-000", headers=AUDITOR)
        assert r.status_code == 404

        transaction_id = client.post("/transactions", json=TRANSFER, headers=CASHIER).json()["id"]
        r = client.post(f"/transactions/{transaction_id}/execute",
                        json={"receipt_reference": "WU-1"}, headers=EXECUTOR)
        assert r.status_code == 409

        r = client.put(f"/transactions/{transaction_id}/status",
                       json={"status": "archived"}, headers=AUDITOR)
        assert r.status_code == 400


class TestExchangeDesk:
    """Exchange desk endpoints"""

    def test_replenish_and_sell(self, client):
        r = client.put("/exchange/tills/XAF", json={"new_balance": "100000", "note": "Opening float"},
                       headers=DIRECTOR)
        assert r.status_code == 200

        r = client.post("/exchange/replenish", headers=CASHIER, json={
            "funding_currency": "XAF",
            "amount": "58000",
            "target_currency": "USD",
            "purchase_rate": "580",
            "funding_source": "local_till",
        })
        assert r.status_code == 201
        assert r.json()["kind"] == "replenish"

        r = client.post("/exchange/sell", headers=CASHIER,
                        json={"currency": "USD", "sold_amount": "100", "today_rate": "590"})
        assert r.status_code == 201
        assert Decimal(r.json()["payload"]["commission"]) == Decimal("1000")

        r = client.get("/exchange/commissions", headers=CASHIER)
        assert Decimal(r.json()["USD"]) == Decimal("1000")

        tills = {t["currency"]: t for t in client.get("/exchange/tills", headers=CASHIER).json()["tills"]}
        assert Decimal(tills["USD"]["balance"]) == Decimal("0")
        assert Decimal(tills["XAF"]["balance"]) == Decimal("101000")
        assert Decimal(tills["USD"]["last_acquisition_rate"]) == Decimal("580")

        r = client.post("/exchange/sell", headers=CASHIER,
                        json={"currency": "USD", "sold_amount": "1", "today_rate": "590"})
        assert r.status_code == 409

        operations = client.get("/exchange/operations", params={"kind": "sell"},
                                headers=CASHIER).json()["operations"]
        assert len(operations) == 1

    def test_desk_errors(self, client):
        r = client.post("/exchange/replenish", headers=CASHIER, json={
            "funding_currency": "XAF",
            "amount": "58000",
            "target_currency": "USD",
            "purchase_rate": "580",
        })
        assert r.status_code == 400

        r = client.post("/exchange/replenish", headers=CASHIER, json={
            "funding_currency": "XAF",
            "amount": "58000",
            "target_currency": "USD",
            "purchase_rate": "580",
            "funding_source": "piggy_bank",
        })
        assert r.status_code == 400

        r = client.put("/exchange/tills/USD", json={"new_balance": "10", "note": "Count"}, headers=CASHIER)
        assert r.status_code == 403

        r = client.put("/exchange/tills/USD", json={"new_balance": "10", "note": " "}, headers=DIRECTOR)
        assert r.status_code == 400

        r = client.get("/exchange/operations", params={"kind": "barter"}, headers=CASHIER)
        assert r.status_code == 400


class TestCashAccounts:
    """Cash account endpoints"""

    def test_movements(self, client):
        r = client.post("/accounts/bank_a/deposit", json={"amount": "500000", "note": "Opening"},
                        headers=DIRECTOR)
        assert r.status_code == 200

        r = client.post("/accounts/transfer", headers=DIRECTOR, json={
            "from_account": "bank_a", "to_account": "vault", "amount": "200000", "note": "Cash"
        })
        assert len(r.json()["movements"]) == 2

        r = client.post("/accounts/vault/debit", json={"amount": "250000", "note": "Too much"},
                        headers=DIRECTOR)
        assert r.status_code == 409

        r = client.get("/accounts/vault/movements", headers=AUDITOR)
        movements = r.json()["movements"]
        assert len(movements) == 1
        assert Decimal(movements[0]["amount"]) == Decimal("200000")

        r = client.put("/accounts/vault/balance", json={"new_balance": "150000", "note": "Count"},
                       headers=DIRECTOR)
        assert Decimal(r.json()["balance"]) == Decimal("150000")

    def test_errors(self, client):
        r = client.post("/accounts/vault/deposit", json={"amount": "100", "note": "x"}, headers=CASHIER)
        assert r.status_code == 403

        r = client.get("/accounts", headers=CASHIER)
        assert r.status_code == 403

        r = client.post("/accounts/bank_z/deposit", json={"amount": "100", "note": "x"}, headers=DIRECTOR)
        assert r.status_code == 404

        r = client.put("/accounts/transfer_commission_pool/balance",
                       json={"new_balance": "100", "note": "x"}, headers=DIRECTOR)
        assert r.status_code == 409

    def test_reconcile_pool(self, client):
        client.post("/accounts/receipt_commission_pool/commission",
                    json={"amount": "700", "note": "Receipt", "reference": "TRX-1"}, headers=DIRECTOR)
        r = client.post("/accounts/receipt_commission_pool/reconcile", headers=AUDITOR)
        assert r.json() == {"account": "receipt_commission_pool", "balance": "700"}


class TestExpenses:
    """Two-stage expense approval"""

    def test_approval_debits_vault(self, client):
        client.post("/accounts/vault/deposit", json={"amount": "100000", "note": "Funding"}, headers=DIRECTOR)

        r = client.post("/expenses", json={"description": "Printer paper", "amount": "20000",
                                           "category": "supplies"}, headers=CASHIER)
        assert r.status_code == 201
        expense_id = r.json()["id"]

        r = client.post(f"/expenses/{expense_id}/executive", json={"approve": True}, headers=DIRECTOR)
        assert r.status_code == 409

        r = client.post(f"/expenses/{expense_id}/control", json={"approve": True}, headers=ACCOUNTING)
        assert r.json()["status"] == "accounting_approved"

        r = client.post(f"/expenses/{expense_id}/executive", json={"approve": True}, headers=DIRECTOR)
        assert r.json()["status"] == "director_approved"

        balances = {a["kind"]: Decimal(a["balance"]) for a in client.get("/accounts", headers=DIRECTOR).json()["accounts"]}
        assert balances["vault"] == Decimal("80000")

    def test_listing_scope(self, client):
        client.post("/expenses", json={"description": "Taxi", "amount": "3000"}, headers=CASHIER)
        client.post("/expenses", json={"description": "Water", "amount": "1500"}, headers=DIRECTOR)

        mine = client.get("/expenses", headers=CASHIER).json()["expenses"]
        assert [e["description"] for e in mine] == ["Taxi"]

        everything = client.get("/expenses", headers=ACCOUNTING).json()["expenses"]
        assert len(everything) == 2

        r = client.get("/expenses", params={"status": "lost"}, headers=ACCOUNTING)
        assert r.status_code == 400

    def test_rejection_needs_reason(self, client):
        expense_id = client.post("/expenses", json={"description": "Taxi", "amount": "3000"},
                                 headers=CASHIER).json()["id"]
        r = client.post(f"/expenses/{expense_id}/control", json={"approve": False}, headers=ACCOUNTING)
        assert r.status_code == 400

        r = client.post("/expenses/missing/control", json={"approve": True}, headers=ACCOUNTING)
        assert r.status_code == 404


class TestSettlements:
    """Cash settlement endpoints"""

    def test_settlement_flow(self, client):
        r = client.post("/settlements", headers=CASHIER, json={
            "settlement_date": "2024-05-01",
            "total_transactions_amount": "500000",
            "unloading_amount": "50000",
            "unloading_reason": "Bank deposit",
        })
        assert r.status_code == 201
        settlement = r.json()
        assert Decimal(settlement["final_amount"]) == Decimal("450000")

        r = client.get(f"/settlements/{settlement['id']}", headers=CASHIER)
        assert len(r.json()["unloadings"]) == 1

        r = client.post(f"/settlements/{settlement['id']}/validate",
                        json={"received_amount": "440000"}, headers=ACCOUNTING)
        assert r.status_code == 400

        r = client.post(f"/settlements/{settlement['id']}/validate",
                        json={"received_amount": "450000"}, headers=ACCOUNTING)
        assert r.json()["status"] == "validated"

        r = client.post(f"/settlements/{settlement['id']}/reject",
                        json={"reason": "Too late"}, headers=ACCOUNTING)
        assert r.status_code == 409

        stats = client.get("/settlements/stats", headers=ACCOUNTING).json()
        assert stats["validated_settlements"] == 1
        assert Decimal(stats["total_validated_amount"]) == Decimal("450000")

        mirrors = client.get("/transactions", params={"type": "settlement"},
                             headers=ACCOUNTING).json()["transactions"]
        assert len(mirrors) == 1

    def test_permissions(self, client):
        r = client.post("/settlements", headers=ACCOUNTING,
                        json={"settlement_date": "2024-05-01", "total_transactions_amount": "1000"})
        assert r.status_code == 403

        r = client.get("/settlements/missing", headers=ACCOUNTING)
        assert r.status_code == 404


class TestAdmin:
    """Settings, reconciliation and audit endpoints"""

    def test_settings(self, client):
        r = client.put("/admin/settings", json={"usd_rate": "590"}, headers=DIRECTOR)
        assert Decimal(r.json()["usd_rate"]) == Decimal("590")

        r = client.get("/admin/settings", headers=CASHIER)
        assert Decimal(r.json()["usd_rate"]) == Decimal("590")

        r = client.get("/admin/settings/history", params={"changed_by": "director-1"}, headers=DIRECTOR)
        assert len(r.json()["history"]) == 1

        r = client.put("/admin/settings", json={"usd_rate": "0"}, headers=DIRECTOR)
        assert r.status_code == 400

        r = client.put("/admin/settings", json={"usd_rate": "610"}, headers=CASHIER)
        assert r.status_code == 403

    def test_reconciliation_and_audit(self, client):
        client.post("/accounts/vault/deposit", json={"amount": "1000", "note": "Opening"}, headers=DIRECTOR)

        r = client.post("/admin/reconciliation", headers=AUDITOR)
        assert r.status_code == 200
        assert r.json()["consistent"] is True

        r = client.post("/admin/reconciliation", headers=CASHIER)
        assert r.status_code == 403

        r = client.get("/admin/audit/verify", headers=AUDITOR)
        assert r.json()["valid"] is True

        r = client.get("/admin/audit/account/vault", headers=AUDITOR)
        assert r.status_code == 200
