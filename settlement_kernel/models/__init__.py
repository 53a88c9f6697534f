"""ORM models.  Importing this package registers every table on ``Base.metadata``."""

from settlement_kernel.models.credit_ledger import CreditBalanceModel, CreditMovementModel
from settlement_kernel.models.document import (
    AllocationRecordModel,
    DocumentAuditModel,
    DocumentLineModel,
    DocumentPaymentModel,
    FinancialDocumentModel,
)
from settlement_kernel.models.funding_source import FundingMovementModel, FundingSourceModel
from settlement_kernel.models.sequence_counter import SequenceCounter

__all__ = [
    "AllocationRecordModel",
    "CreditBalanceModel",
    "CreditMovementModel",
    "DocumentAuditModel",
    "DocumentLineModel",
    "DocumentPaymentModel",
    "FinancialDocumentModel",
    "FundingMovementModel",
    "FundingSourceModel",
    "SequenceCounter",
]
