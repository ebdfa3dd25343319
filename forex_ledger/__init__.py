"""
Forex Ledger - Ledger & Transaction Workflow Engine for a currency-exchange
and money-transfer back office.
"""

__version__ = "1.0.0"
