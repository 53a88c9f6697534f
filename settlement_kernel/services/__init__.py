"""Services for the settlement kernel (write side)."""

from settlement_kernel.services.balance_guard import BalanceGuard
from settlement_kernel.services.credit_ledger import CreditLedger
from settlement_kernel.services.entity_locks import EntityLocks, process_locks
from settlement_kernel.services.notifications import (
    DocumentNotification,
    LoggingNotifier,
    Notifier,
    NullNotifier,
)
from settlement_kernel.services.repository import DocumentRepository
from settlement_kernel.services.sequence_service import DocumentNumberAllocator, SequenceService
from settlement_kernel.services.settlement_service import (
    BulkPaymentFailure,
    BulkPaymentResult,
    SettlementReceipt,
    SettlementService,
)

__all__ = [
    "BalanceGuard",
    "BulkPaymentFailure",
    "BulkPaymentResult",
    "CreditLedger",
    "DocumentNotification",
    "DocumentNumberAllocator",
    "DocumentRepository",
    "EntityLocks",
    "LoggingNotifier",
    "Notifier",
    "NullNotifier",
    "SequenceService",
    "SettlementReceipt",
    "SettlementService",
    "process_locks",
]
