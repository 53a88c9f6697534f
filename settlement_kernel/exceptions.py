"""
Typed error hierarchy for the settlement kernel.

===============================================================================
WHY TYPED ERRORS
===============================================================================

Callers of the settlement engine must tell apart three very different
situations:

  - "fix your call"        -- the caller asked for an illegal transition
                              (recording payment on a draft, approving a
                              rejected bill).
  - "ask the user"         -- the request is well formed but the business
                              rules refuse it (insufficient funds, an
                              allocation larger than the outstanding balance).
  - "reload and retry"     -- another transaction changed the same rows.

Matching on message text is fragile, so every error:
  1. is a distinct class (catch or match by type),
  2. has a ``code`` class attribute (machine-readable, API-safe),
  3. has a ``kind`` (``ErrorKind``) naming which of the situations above it is,
  4. carries structured data as attributes, never only a message string.

Errors are *returned* inside ``Outcome`` objects for expected business
conditions (see ``settlement_kernel.domain.outcome``).  They subclass
``Exception`` so that engines and ``Outcome.unwrap()`` can raise them when a
caller prefers exceptions.

===============================================================================
HIERARCHY
===============================================================================

    SettlementError (base)
    |
    +-- ValidationError                 VALIDATION_ERROR
    |   +-- DocumentNotFoundError       DOCUMENT_NOT_FOUND
    |   +-- FundingSourceNotFoundError  FUNDING_SOURCE_NOT_FOUND
    |
    +-- InsufficientFundsError          INSUFFICIENT_FUNDS
    +-- OverAllocationError             OVER_ALLOCATION
    +-- InsufficientCreditError         INSUFFICIENT_CREDIT
    +-- IllegalStateTransitionError     ILLEGAL_STATE_TRANSITION
    +-- ConcurrencyConflictError        CONCURRENCY_CONFLICT
    +-- AppendOnlyViolationError        APPEND_ONLY_VIOLATION

===============================================================================
HANDLING PATTERN
===============================================================================

    outcome = service.record_payment(bill_id, request)
    if not outcome.is_success:
        match outcome.error:
            case InsufficientFundsError() as e:
                prompt_user(e.remediation_options())
            case ConcurrencyConflictError():
                retry()
            case IllegalStateTransitionError() as e:
                raise e          # caller bug
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Which kind of failure an error represents."""

    VALIDATION = "validation"
    BUSINESS = "business"
    CONTRACT = "contract"
    CONCURRENCY = "concurrency"


class SettlementError(Exception):
    """
    Base class for all settlement kernel errors.

    Every subclass defines ``code`` and ``kind`` as class attributes.
    """

    code: str = "SETTLEMENT_ERROR"
    kind: ErrorKind = ErrorKind.BUSINESS

    @property
    def is_business_error(self) -> bool:
        """True for errors a user can resolve by changing the request."""
        return self.kind == ErrorKind.BUSINESS

    @property
    def is_contract_violation(self) -> bool:
        """True for errors that indicate a caller bug."""
        return self.kind == ErrorKind.CONTRACT

    def to_dict(self) -> dict[str, Any]:
        """Serialize code, kind, message and structured attributes."""
        payload: dict[str, Any] = {
            "code": self.code,
            "kind": self.kind.value,
            "message": str(self),
        }
        for key, val in vars(self).items():
            if key.startswith("_"):
                continue
            payload[key] = val if isinstance(val, (int, bool, type(None))) else str(val)
        return payload


# Validation errors


class ValidationError(SettlementError):
    """Malformed input, rejected before any side effect."""

    code: str = "VALIDATION_ERROR"
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class DocumentNotFoundError(ValidationError):
    """No financial document with the given id."""

    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: Any):
        self.document_id = str(document_id)
        super().__init__(f"Document not found: {document_id}", field="document_id")


class FundingSourceNotFoundError(ValidationError):
    """No funding source with the given id."""

    code: str = "FUNDING_SOURCE_NOT_FOUND"

    def __init__(self, funding_source_id: Any):
        self.funding_source_id = str(funding_source_id)
        super().__init__(
            f"Funding source not found: {funding_source_id}",
            field="funding_source_id",
        )


# Business-rule errors


class InsufficientFundsError(SettlementError):
    """
    The funding source cannot cover the requested amount.

    The ``funding_source_label``, ``available``, ``requested`` and
    ``shortfall`` attributes are presented to the user verbatim together with
    ``remediation_options()``.
    """

    code: str = "INSUFFICIENT_FUNDS"
    kind: ErrorKind = ErrorKind.BUSINESS

    def __init__(
        self,
        funding_source_id: Any,
        funding_source_label: str,
        available: Any,
        requested: Any,
    ):
        self.funding_source_id = str(funding_source_id)
        self.funding_source_label = funding_source_label
        self.available = available
        self.requested = requested
        self.shortfall = requested - available
        super().__init__(
            f"Insufficient balance in {funding_source_label}. "
            f"Available: {available}, Required: {requested}, "
            f"Shortfall: {self.shortfall}"
        )

    def remediation_options(self) -> list[dict[str, Any]]:
        """The recovery menu shown to the user: pay partial, switch source, personal funds."""
        options: list[dict[str, Any]] = []
        if self.available.is_positive:
            options.append({
                "action": "pay_partial",
                "amount": str(self.available),
                "label": f"Pay {self.available} from {self.funding_source_label}",
            })
        options.append({
            "action": "switch_source",
            "label": "Choose a different cash or bank account",
        })
        options.append({
            "action": "use_personal_funds",
            "amount": str(self.requested),
            "label": "Pay from owner's personal funds",
        })
        return options


class OverAllocationError(SettlementError):
    """An allocation exceeds a document's outstanding amount or the available funds."""

    code: str = "OVER_ALLOCATION"
    kind: ErrorKind = ErrorKind.BUSINESS

    def __init__(
        self,
        message: str,
        document_id: Any | None = None,
        requested: Any | None = None,
        limit: Any | None = None,
    ):
        self.document_id = str(document_id) if document_id is not None else None
        self.requested = requested
        self.limit = limit
        super().__init__(message)


class InsufficientCreditError(SettlementError):
    """A counterparty's credit balance cannot cover the requested consumption."""

    code: str = "INSUFFICIENT_CREDIT"
    kind: ErrorKind = ErrorKind.BUSINESS

    def __init__(self, counterparty_id: Any, available: Any, requested: Any):
        self.counterparty_id = str(counterparty_id)
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient credit for counterparty {counterparty_id}: "
            f"available {available}, requested {requested}"
        )


# Contract errors


class IllegalStateTransitionError(SettlementError):
    """The requested action is not legal from the document's current state."""

    code: str = "ILLEGAL_STATE_TRANSITION"
    kind: ErrorKind = ErrorKind.CONTRACT

    def __init__(
        self,
        document_id: Any,
        from_state: str,
        action: str,
        reason: str | None = None,
    ):
        self.document_id = str(document_id)
        self.from_state = from_state
        self.action = action
        self.reason = reason
        message = f"Cannot {action} document {document_id} in state {from_state}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


# Concurrency errors


class ConcurrencyConflictError(SettlementError):
    """Optimistic-lock version mismatch; reload and retry."""

    code: str = "CONCURRENCY_CONFLICT"
    kind: ErrorKind = ErrorKind.CONCURRENCY

    def __init__(
        self,
        entity_type: str,
        entity_id: Any,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )


# Integrity errors


class AppendOnlyViolationError(SettlementError):
    """An attempt to UPDATE or DELETE a row of an append-only trail."""

    code: str = "APPEND_ONLY_VIOLATION"
    kind: ErrorKind = ErrorKind.CONTRACT

    def __init__(self, entity_type: str, entity_id: Any, operation: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.operation = operation
        super().__init__(
            f"{entity_type} {entity_id} is append-only; {operation} is not allowed"
        )
