"""
ORM-level append-only enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

A document's payment trail and audit log are the evidence replay and fraud
review rely on.  Entries are only ever appended; corrections are new entries.
The same holds for allocation records and for the funding and credit
movement logs.

SQLAlchemy fires ``before_update`` / ``before_delete`` mapper events before
SQL reaches the database.  The listeners below raise
``AppendOnlyViolationError`` for any UPDATE or DELETE of a protected row, so
the flush aborts and the database is never modified.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                  | Immutable
------------------------|---------------------------
DocumentPaymentModel    | always (from creation)
DocumentAuditModel      | always
AllocationRecordModel   | always
FundingMovementModel    | always
CreditMovementModel     | always

Core UPDATE/DELETE statements bypass mapper events; nothing in the kernel
issues such statements against these tables.

Usage:
    from settlement_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # idempotent; called by init_engine_from_url
"""

from sqlalchemy import event

from settlement_kernel.exceptions import AppendOnlyViolationError
from settlement_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _protected_models() -> tuple[type, ...]:
    from settlement_kernel.models import (
        AllocationRecordModel,
        CreditMovementModel,
        DocumentAuditModel,
        DocumentPaymentModel,
        FundingMovementModel,
    )

    return (
        DocumentPaymentModel,
        DocumentAuditModel,
        AllocationRecordModel,
        FundingMovementModel,
        CreditMovementModel,
    )


def _reject_update(mapper, connection, target):
    logger.error(
        "append_only_violation",
        extra={"entity_type": type(target).__name__, "entity_id": str(target.id), "operation": "update"},
    )
    raise AppendOnlyViolationError(type(target).__name__, target.id, "update")


def _reject_delete(mapper, connection, target):
    logger.error(
        "append_only_violation",
        extra={"entity_type": type(target).__name__, "entity_id": str(target.id), "operation": "delete"},
    )
    raise AppendOnlyViolationError(type(target).__name__, target.id, "delete")


def register_immutability_listeners() -> None:
    """Register before_update/before_delete guards on every append-only model."""
    for model in _protected_models():
        if not event.contains(model, "before_update", _reject_update):
            event.listen(model, "before_update", _reject_update)
        if not event.contains(model, "before_delete", _reject_delete):
            event.listen(model, "before_delete", _reject_delete)


def unregister_immutability_listeners() -> None:
    """Remove the guards.  FOR TESTING ONLY."""
    for model in _protected_models():
        if event.contains(model, "before_update", _reject_update):
            event.remove(model, "before_update", _reject_update)
        if event.contains(model, "before_delete", _reject_delete):
            event.remove(model, "before_delete", _reject_delete)
