"""
Settlement Kernel

The financial document settlement core of the back office:
- Fund-sufficiency checks against cash and bank balances
- Payment and credit allocation against bills and sales invoices
- Counterparty credit ledger
- Draft -> approval -> settlement state machine
- Append-only payment and audit trails
"""

__version__ = "0.1.0"
