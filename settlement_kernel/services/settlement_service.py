"""
SettlementService -- the document settlement state machine.

Responsibility:
    Drives a financial document through
    ``draft -> pending_approval -> approved -> partial -> paid`` (with
    ``rejected`` and ``cancelled`` exits), and orchestrates every settlement:

        payment request
          -> funding legs validated (source exists, method fits source)
          -> Balance Guard reserve (payables) / deposit (receivables)
          -> Allocation Calculator
          -> Credit Ledger consume
          -> document mutation (payments trail, audit, lock, status)
          -> Credit Ledger credit for the excess
          -> allocation records

Architecture position:
    Kernel > Services -- imperative shell.  The only service that owns
    transaction boundaries (when ``auto_commit=True``).

Invariants enforced:
    - One public call is one transaction: on any failure every reservation
      made by the call is released and the transaction rolled back, so no
      partial settlement is ever visible.
    - Transitions are checked against ``SETTLEMENT_WORKFLOW``; an action that
      is not legal from the current state is an IllegalStateTransitionError
      (contract kind), never a business error.
    - Rejected payment attempts (business or contract failures) leave a
      ``payment_rejected`` audit entry written in a fresh transaction.
      Validation failures leave nothing.
    - Work on the same document, counterparty or funding source is
      serialized by EntityLocks; on PostgreSQL documents are also loaded
      ``FOR UPDATE``.

Failure modes (returned inside ``Outcome``):
    - ValidationError / DocumentNotFoundError / FundingSourceNotFoundError
    - InsufficientFundsError, OverAllocationError, InsufficientCreditError
    - IllegalStateTransitionError
    - ConcurrencyConflictError
    Anything else is a programming error: rolled back, logged and re-raised.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from settlement_config import SettlementConfig, get_active_config
from settlement_engines.allocation import (
    AllocationCalculator,
    AllocationCandidate,
    AllocationRecord,
    AllocationResult,
    PaymentIntent,
)
from settlement_engines.totals import DocumentTotals, compute_totals
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.domain.documents import (
    ApprovalStatus,
    AuditAction,
    Direction,
    DocumentKind,
    FinancialDocument,
    LineItem,
    PaymentEntry,
    PaymentMethod,
    PaymentSource,
    document_class,
)
from settlement_kernel.domain.funding import (
    CreditMovement,
    ExplicitAllocation,
    FundingSource,
    FundingSourceKind,
    PaymentLeg,
    PaymentRequest,
    ReservationToken,
    validate_leg_method,
)
from settlement_kernel.domain.outcome import Outcome
from settlement_kernel.domain.values import Money, sum_money
from settlement_kernel.domain.workflow import SETTLEMENT_WORKFLOW
from settlement_kernel.exceptions import (
    ConcurrencyConflictError,
    DocumentNotFoundError,
    FundingSourceNotFoundError,
    IllegalStateTransitionError,
    OverAllocationError,
    SettlementError,
    ValidationError,
)
from settlement_kernel.logging_config import LogContext, get_logger
from settlement_kernel.services.balance_guard import BalanceGuard
from settlement_kernel.services.credit_ledger import CreditLedger
from settlement_kernel.services.entity_locks import EntityLocks, process_locks
from settlement_kernel.services.notifications import (
    DocumentNotification,
    Notifier,
    NullNotifier,
    dispatch,
)
from settlement_kernel.services.repository import DocumentRepository
from settlement_kernel.services.sequence_service import (
    DocumentNumberAllocator,
    SequenceService,
)

logger = get_logger("services.settlement")

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Result types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class SettlementReceipt:
    """
    Everything one settlement changed.

    ``documents`` are the post-settlement snapshots of the documents that
    received money; ``credit_issued`` is the excess that became counterparty
    credit; ``credit_balance`` is the counterparty's balance afterwards.
    """

    settlement_id: UUID
    counterparty_id: str
    documents: tuple[FinancialDocument, ...]
    allocation: AllocationResult
    tokens: tuple[ReservationToken, ...]
    credit_issued: Money
    credit_consumed: Money
    credit_balance: Money

    def document(self, document_id: UUID) -> FinancialDocument | None:
        for doc in self.documents:
            if doc.id == document_id:
                return doc
        return None


@dataclass(frozen=True)
class BulkPaymentFailure:
    document_id: UUID
    error: SettlementError


@dataclass(frozen=True)
class BulkPaymentResult:
    """Per-document outcome of ``bulk_payment``; each document is its own transaction."""

    successful: tuple[SettlementReceipt, ...]
    failed: tuple[BulkPaymentFailure, ...]

    @property
    def total_paid(self) -> Money:
        return sum_money(r.allocation.direct_applied for r in self.successful)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


@dataclass
class _Attempt:
    """Scratch state of one public call, used to unwind it on failure."""

    operation: str
    actor: str
    tokens: list[ReservationToken] = field(default_factory=list)
    audit_targets: list[UUID] = field(default_factory=list)
    amount: Money | None = None
    settlement_id: UUID | None = None
    notifications: list[DocumentNotification] = field(default_factory=list)


def _require_actor(actor: str) -> None:
    if not actor or not str(actor).strip():
        raise ValidationError("actor is required", field="actor")


# -----------------------------------------------------------------------------
# Service
# -----------------------------------------------------------------------------


class SettlementService:
    """
    Document lifecycle and settlement orchestration.

    Contract:
        Every public method returns an ``Outcome``.  With ``auto_commit=True``
        (the default) each call commits on success and rolls back on
        failure; with ``auto_commit=False`` the caller owns the transaction
        and must roll it back when an outcome fails.
    Guarantees:
        - A failed call leaves balances, credit and documents unchanged.
        - Notifications are dispatched only after a successful commit.
    Non-goals:
        - No ledger postings, refunds or inventory movements.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: SettlementConfig | None = None,
        notifier: Notifier | None = None,
        locks: EntityLocks | None = None,
        auto_commit: bool = True,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._config = config or get_active_config()
        self._notifier = notifier or NullNotifier()
        self._locks = locks or process_locks()
        self._auto_commit = auto_commit

        self._repo = DocumentRepository(session)
        self._guard = BalanceGuard(session, self._clock)
        self._ledger = CreditLedger(session, self._clock)
        self._calculator = AllocationCalculator()
        self._numbers = DocumentNumberAllocator(
            SequenceService(session), self._config.document_prefixes,
        )

    @property
    def repository(self) -> DocumentRepository:
        return self._repo

    @property
    def balance_guard(self) -> BalanceGuard:
        return self._guard

    @property
    def credit_ledger(self) -> CreditLedger:
        return self._ledger

    # -------------------------------------------------------------------------
    # Transaction scaffolding
    # -------------------------------------------------------------------------

    def _run(
        self,
        attempt: _Attempt,
        lock_keys: Sequence[tuple[str, Any]],
        work: Callable[[_Attempt], T],
        document_id: UUID | None = None,
    ) -> Outcome[T]:
        with LogContext.bind(
            correlation_id=str(uuid4()),
            actor_id=attempt.actor,
            document_id=str(document_id) if document_id else None,
        ):
            t0 = time.monotonic()
            with self._locks.hold(*lock_keys):
                try:
                    value = work(attempt)
                    self._finish(attempt)
                except SettlementError as error:
                    self._unwind(attempt, error)
                    return Outcome.fail(error)
                except Exception:
                    if self._auto_commit:
                        self.session.rollback()
                    logger.error(
                        "settlement_operation_failed",
                        extra={
                            "operation": attempt.operation,
                            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                        },
                        exc_info=True,
                    )
                    raise

            logger.info("settlement_operation_completed", extra={
                "operation": attempt.operation,
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            })
            for notification in attempt.notifications:
                dispatch(self._notifier, notification)
        return Outcome.ok(value)

    def _finish(self, attempt: _Attempt) -> None:
        try:
            if self._auto_commit:
                self.session.commit()
            else:
                self.session.flush()
        except StaleDataError as e:
            target = attempt.audit_targets[0] if attempt.audit_targets else None
            raise ConcurrencyConflictError("FinancialDocument", target) from e

    def _unwind(self, attempt: _Attempt, error: SettlementError) -> None:
        if attempt.tokens and self.session.is_active:
            try:
                self._guard.release_all(attempt.tokens)
            except SettlementError:
                # The rollback below still restores the balance.
                logger.warning("token_release_failed", extra={
                    "operation": attempt.operation,
                    "token_count": len(attempt.tokens),
                }, exc_info=True)
        if self._auto_commit:
            self.session.rollback()

        logger.warning("settlement_operation_rejected", extra={
            "operation": attempt.operation,
            "error_code": error.code,
            "error_kind": error.kind.value,
            "reason": str(error),
            "released_count": len(attempt.tokens),
        })

        if (
            self._auto_commit
            and attempt.audit_targets
            and (error.is_business_error or error.is_contract_violation)
        ):
            self._record_rejection(attempt, error)

    def _record_rejection(self, attempt: _Attempt, error: SettlementError) -> None:
        """Write ``payment_rejected`` on each target in a transaction of its own."""
        now = self._clock.now()
        try:
            for document_id in dict.fromkeys(attempt.audit_targets):
                document = self._repo.load(document_id)
                if document is None or document.is_deleted:
                    continue
                document = document.with_audit(
                    AuditAction.PAYMENT_REJECTED,
                    attempt.actor,
                    now,
                    operation=attempt.operation,
                    error_code=error.code,
                    error_kind=error.kind.value,
                    message=str(error),
                    amount=str(attempt.amount) if attempt.amount is not None else None,
                    settlement_id=str(attempt.settlement_id) if attempt.settlement_id else None,
                )
                self._repo.save(document, attempt.actor)
            self.session.commit()
        except SettlementError:
            self.session.rollback()
            logger.warning("payment_rejection_audit_failed", extra={
                "operation": attempt.operation,
                "error_code": error.code,
            }, exc_info=True)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _document_keys(self, document_id: UUID) -> list[tuple[str, Any]]:
        keys: list[tuple[str, Any]] = [("document", document_id)]
        counterparty_id = self._repo.counterparty_of(document_id)
        if counterparty_id is not None:
            keys.append(("counterparty", counterparty_id))
        return keys

    @staticmethod
    def _funding_keys(request: PaymentRequest) -> list[tuple[str, Any]]:
        return [("funding_source", leg.funding_source_id) for leg in request.legs]

    def _load_document(self, document_id: UUID, for_update: bool = True) -> FinancialDocument:
        document = self._repo.load(document_id, for_update=for_update)
        if document is None or document.is_deleted:
            raise DocumentNotFoundError(document_id)
        return document

    @staticmethod
    def _require(document: FinancialDocument, action: str, reason: str | None = None) -> None:
        state = document.settlement_state
        if not SETTLEMENT_WORKFLOW.allows(state, action):
            raise IllegalStateTransitionError(document.id, state, action, reason)

    @staticmethod
    def _require_unlocked(document: FinancialDocument, action: str) -> None:
        if document.is_locked:
            raise IllegalStateTransitionError(
                document.id, document.settlement_state, action,
                "document is locked by an applied payment or credit",
            )

    @staticmethod
    def _require_settleable(document: FinancialDocument) -> None:
        if document.direction is Direction.CREDIT:
            raise IllegalStateTransitionError(
                document.id, document.settlement_state, "settle",
                "credit notes are settled by issuing credit on approval",
            )

    def _notification(
        self,
        event: str,
        document: FinancialDocument,
        actor: str,
        now: datetime,
        **details: Any,
    ) -> DocumentNotification:
        return DocumentNotification(
            event=event,
            document_id=document.id,
            document_number=document.document_number,
            document_kind=document.kind.value,
            counterparty_id=document.counterparty_id,
            actor=actor,
            occurred_at=now,
            details=details,
        )

    def _default_due_date(self, cls: type[FinancialDocument], issue_date: date) -> date | None:
        terms = self._config.default_payment_terms_days
        if cls.DIRECTION is Direction.CREDIT or terms is None:
            return None
        return issue_date + timedelta(days=terms)

    def _allocate_number(self, kind: DocumentKind, issue_date: date) -> str:
        return self._numbers.allocate(kind.value, issue_date)

    @staticmethod
    def _with_totals(document: FinancialDocument, totals: DocumentTotals) -> FinancialDocument:
        return replace(
            document,
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            line_discounts=totals.line_discounts,
            document_discount=totals.document_discount,
            total_amount=totals.total_amount,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_document(self, document_id: UUID) -> Outcome[FinancialDocument]:
        document = self._repo.load(document_id)
        if document is None or document.is_deleted:
            return Outcome.fail(DocumentNotFoundError(document_id))
        return Outcome.ok(document.as_of(self._clock.now()))

    def credit_balance(self, counterparty_id: str) -> Money:
        return self._ledger.balance(counterparty_id)

    def credit_history(self, counterparty_id: str) -> tuple[CreditMovement, ...]:
        return self._ledger.history(counterparty_id)

    # -------------------------------------------------------------------------
    # Funding sources
    # -------------------------------------------------------------------------

    def add_funding_source(
        self,
        kind: FundingSourceKind,
        label: str,
        actor: str,
        opening_balance: Money | None = None,
    ) -> Outcome[FundingSource]:
        """Register a cash drawer, bank account or the owner's personal funds."""
        attempt = _Attempt(operation="add_funding_source", actor=actor)

        def work(attempt: _Attempt) -> FundingSource:
            _require_actor(actor)
            if not label or not label.strip():
                raise ValidationError("label is required", field="label")
            balance = opening_balance
            if kind is not FundingSourceKind.OWNER_PERSONAL_FUNDS and balance is None:
                balance = Money.zero()
            source = FundingSource(id=uuid4(), kind=kind, label=label, available_balance=balance)
            return self._repo.save_funding_source(source, actor)

        return self._run(attempt, (), work)

    # -------------------------------------------------------------------------
    # Document lifecycle
    # -------------------------------------------------------------------------

    def create_document(
        self,
        kind: DocumentKind | str,
        counterparty_id: str,
        issue_date: date,
        line_items: Sequence[LineItem],
        actor: str,
        due_date: date | None = None,
        document_discount: Money | None = None,
        notes: str | None = None,
    ) -> Outcome[FinancialDocument]:
        """Create a ``draft`` with a freshly allocated number and computed totals."""
        try:
            cls = document_class(kind)
            _require_actor(actor)
            if not counterparty_id:
                raise ValidationError("counterparty_id is required", field="counterparty_id")
            if isinstance(issue_date, datetime):
                issue_date = issue_date.date()
        except ValidationError as e:
            return Outcome.fail(e)

        sequence_name = self._numbers.sequence_name(cls.KIND.value, issue_date)
        attempt = _Attempt(operation="create_document", actor=actor)

        def work(attempt: _Attempt) -> FinancialDocument:
            totals = compute_totals(tuple(line_items), document_discount).unwrap()
            now = self._clock.now()
            document = cls(
                id=uuid4(),
                document_number=self._allocate_number(cls.KIND, issue_date),
                counterparty_id=counterparty_id,
                issue_date=issue_date,
                due_date=due_date if due_date is not None else self._default_due_date(cls, issue_date),
                line_items=tuple(line_items),
                notes=notes,
            )
            document = self._with_totals(document, totals)
            document = replace(document, payment_status=document.payment_status_at(now))
            document = document.with_audit(
                AuditAction.CREATED, actor, now,
                document_number=document.document_number,
                total_amount=str(document.total_amount),
            )
            document = self._repo.add(document, actor)
            logger.info("document_created", extra={
                "document_id": str(document.id),
                "document_number": document.document_number,
                "document_kind": document.kind.value,
                "counterparty_id": counterparty_id,
                "total_amount": str(document.total_amount),
            })
            return document

        return self._run(
            attempt,
            [("sequence", sequence_name), ("counterparty", counterparty_id)],
            work,
        )

    def update_line_items(
        self,
        document_id: UUID,
        line_items: Sequence[LineItem],
        actor: str,
        document_discount: Money | None = None,
    ) -> Outcome[FinancialDocument]:
        """Replace the lines of an unlocked draft and recompute its totals."""
        attempt = _Attempt(operation="update_line_items", actor=actor)

        def work(attempt: _Attempt) -> FinancialDocument:
            _require_actor(actor)
            document = self._load_document(document_id)
            self._require(document, "edit")
            self._require_unlocked(document, "edit")
            discount = document_discount if document_discount is not None else document.document_discount
            totals = compute_totals(tuple(line_items), discount).unwrap()
            now = self._clock.now()
            previous_total = document.total_amount
            document = self._with_totals(replace(document, line_items=tuple(line_items)), totals)
            document = replace(document, payment_status=document.payment_status_at(now))
            document = document.with_audit(
                AuditAction.UPDATED, actor, now,
                previous_total=str(previous_total),
                total_amount=str(document.total_amount),
                line_count=len(document.line_items),
            )
            return self._repo.save(document, actor)

        return self._run(attempt, self._document_keys(document_id), work, document_id)

    def submit_for_approval(self, document_id: UUID, actor: str) -> Outcome[FinancialDocument]:
        """
        ``draft -> pending_approval``.

        When the deployment has no approval workflow the document is
        approved in the same step.
        """
        attempt = _Attempt(operation="submit_for_approval", actor=actor)

        def work(attempt: _Attempt) -> FinancialDocument:
            _require_actor(actor)
            document = self._load_document(document_id)
            self._require(document, "submit")
            now = self._clock.now()
            document = document.with_audit(AuditAction.SUBMITTED, actor, now)
            if self._config.approval_workflow_enabled:
                document = replace(document, approval_status=ApprovalStatus.PENDING_APPROVAL)
                event = "submitted"
            else:
                document = self._approve_document(document, actor, now, automatic=True)
                event = "approved"
            document = self._repo.save(document, actor)
            attempt.notifications.append(self._notification(event, document, actor, now))
            return document

        return self._run(attempt, self._document_keys(document_id), work, document_id)

    def _approve_document(
        self,
        document: FinancialDocument,
        actor: str,
        now: datetime,
        automatic: bool = False,
    ) -> FinancialDocument:
        document = replace(
            document,
            approval_status=ApprovalStatus.APPROVED,
            approved_by=actor,
            approved_at=now,
            payment_status=document.payment_status_at(now),
        )
        document = document.with_audit(AuditAction.APPROVED, actor, now, automatic=automatic)

        if document.direction is Direction.CREDIT and document.total_amount.is_positive:
            self._ledger.credit(
                document.counterparty_id,
                document.total_amount,
                reason=f"credit note {document.document_number}",
                document_id=document.id,
                actor=actor,
            ).unwrap()
            issuance = PaymentEntry(
                amount=document.total_amount,
                method=PaymentMethod.CREDIT_NOTE,
                recorded_at=now,
                source=PaymentSource.CREDIT_ISSUANCE,
            )
            document = self._apply_entry(document, issuance, actor, now)
        return document

    def approve(self, document_id: UUID, actor: str) -> Outcome[FinancialDocument]:
        """``draft | pending_approval -> approved``; credit notes issue their credit."""
        attempt = _Attempt(operation="approve", actor=actor)

        def work(attempt: _Attempt) -> FinancialDocument:
            _require_actor(actor)
            document = self._load_document(document_id)
            self._require(document, "approve")
            now = self._clock.now()
            document = self._repo.save(self._approve_document(document, actor, now), actor)
            attempt.notifications.append(self._notification("approved", document, actor, now))
            logger.info("document_approved", extra={
                "document_id": str(document.id),
                "document_number": document.document_number,
                "total_amount": str(document.total_amount),
            })
            return document

        return self._run(attempt, self._document_keys(document_id), work, document_id)

    def reject(self, document_id: UUID, actor: str, reason: str) -> Outcome[FinancialDocument]:
        """``draft | pending_approval -> rejected``.  An empty reason changes nothing."""
        attempt = _Attempt(operation="reject", actor=actor)

        def work(attempt: _Attempt) -> FinancialDocument:
            _require_actor(actor)
            if not reason or not reason.strip():
                raise ValidationError("A rejection reason is required", field="reason")
            document = self._load_document(document_id)
            self._require(document, "reject")
            now = self._clock.now()
            document = replace(
                document,
                approval_status=ApprovalStatus.REJECTED,
                rejected_by=actor,
                rejected_at=now,
                rejection_reason=reason.strip(),
            )
            document = document.with_audit(AuditAction.REJECTED, actor, now, reason=reason.strip())
            document = self._repo.save(document, actor)
            attempt.notifications.append(
                self._notification("rejected", document, actor, now, reason=reason.strip())
            )
            return document

        return self._run(attempt, self._document_keys(document_id), work, document_id)

    def resubmit(self, document_id: UUID, actor: str) -> Outcome[FinancialDocument]:
        """Copy a rejected document into a new draft; the original stays rejected."""
        original = self._repo.load(document_id)
        if original is None or original.is_deleted:
            return Outcome.fail(DocumentNotFoundError(document_id))
        attempt = _Attempt(operation="resubmit", actor=actor)
        keys = self._document_keys(document_id) + [
            ("sequence", self._numbers.sequence_name(original.kind.value, original.issue_date)),
        ]

        def work(attempt: _Attempt) -> FinancialDocument:
            _require_actor(actor)
            rejected = self._load_document(document_id)
            self._require(rejected, "resubmit")
            now = self._clock.now()
            draft = type(rejected)(
                id=uuid4(),
                document_number=self._allocate_number(rejected.kind, rejected.issue_date),
                counterparty_id=rejected.counterparty_id,
                issue_date=rejected.issue_date,
                due_date=rejected.due_date,
                line_items=rejected.line_items,
                subtotal=rejected.subtotal,
                tax_amount=rejected.tax_amount,
                line_discounts=rejected.line_discounts,
                document_discount=rejected.document_discount,
                total_amount=rejected.total_amount,
                notes=rejected.notes,
                resubmitted_from=rejected.id,
            )
            draft = replace(draft, payment_status=draft.payment_status_at(now))
            draft = draft.with_audit(
                AuditAction.CREATED, actor, now,
                document_number=draft.document_number,
                total_amount=str(draft.total_amount),
                resubmitted_from=str(rejected.id),
            )
            draft = self._repo.add(draft, actor)
            self._repo.save(
                rejected.with_audit(
                    AuditAction.RESUBMITTED, actor, now,
                    new_document_id=str(draft.id),
                    new_document_number=draft.document_number,
                ),
                actor,
            )
            logger.info("document_resubmitted", extra={
                "document_id": str(rejected.id),
                "new_document_id": str(draft.id),
                "new_document_number": draft.document_number,
            })
            return draft

        return self._run(attempt, keys, work, document_id)

    def cancel(
        self,
        document_id: UUID,
        actor: str,
        reason: str | None = None,
    ) -> Outcome[FinancialDocument]:
        """
        Cancel a draft, approved, partially paid or paid document.

        Without payments cancellation is free.  With payments a reversal
        reason is required (unless the deployment waives it) and the refund
        is left as a manual follow-up.  A cancelled credit note takes its
        issued credit back out of the ledger.
        """
        attempt = _Attempt(operation="cancel", actor=actor)

        def work(attempt: _Attempt) -> FinancialDocument:
            _require_actor(actor)
            document = self._load_document(document_id)
            self._require(document, "cancel")
            reason_text = (reason or "").strip()
            if (
                document.has_payments
                and self._config.require_reason_for_paid_cancel
                and not reason_text
            ):
                raise ValidationError(
                    f"A reversal reason is required to cancel {document.document_number}, "
                    f"which has {document.settled_amount} settled",
                    field="reason",
                )

            now = self._clock.now()
            issued = sum_money(
                p.amount for p in document.payments if p.source is PaymentSource.CREDIT_ISSUANCE
            )
            if issued.is_positive:
                self._ledger.consume(
                    document.counterparty_id,
                    issued,
                    reason=f"credit note {document.document_number} cancelled",
                    document_id=document.id,
                    actor=actor,
                ).unwrap()

            had_payments = document.has_payments
            document = replace(
                document,
                approval_status=ApprovalStatus.CANCELLED,
                cancelled_by=actor,
                cancelled_at=now,
                cancellation_reason=reason_text or None,
            )
            document = document.with_audit(
                AuditAction.CANCELLED, actor, now,
                reason=reason_text or None,
                had_payments=had_payments,
                settled_amount=str(document.settled_amount),
                credit_withdrawn=str(issued),
            )
            document = self._repo.save(document, actor)

            if had_payments and not issued.is_positive:
                logger.warning("cancellation_refund_followup", extra={
                    "document_id": str(document.id),
                    "document_number": document.document_number,
                    "settled_amount": str(document.settled_amount),
                })
            attempt.notifications.append(
                self._notification("cancelled", document, actor, now, reason=reason_text or None)
            )
            return document

        return self._run(attempt, self._document_keys(document_id), work, document_id)

    def delete_document(self, document_id: UUID, actor: str) -> Outcome[FinancialDocument]:
        """Soft-delete an unlocked draft, rejected or cancelled document."""
        attempt = _Attempt(operation="delete_document", actor=actor)

        def work(attempt: _Attempt) -> FinancialDocument:
            _require_actor(actor)
            document = self._load_document(document_id)
            self._require(document, "delete")
            self._require_unlocked(document, "delete")
            now = self._clock.now()
            document = replace(document, is_deleted=True).with_audit(AuditAction.DELETED, actor, now)
            return self._repo.save(document, actor)

        return self._run(attempt, self._document_keys(document_id), work, document_id)

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate_request(request: PaymentRequest) -> None:
        _require_actor(request.actor)
        if not request.legs:
            raise ValidationError("At least one funding leg is required", field="legs")
        for leg in request.legs:
            if not isinstance(leg.amount, Money):
                raise TypeError(f"leg amount must be Money, got {type(leg.amount).__name__}")
            if not leg.amount.is_positive:
                raise ValidationError(f"Leg amount must be positive, got {leg.amount}", field="amount")

    def _validate_legs(self, legs: Sequence[PaymentLeg]) -> None:
        for leg in legs:
            source = self._repo.load_funding_source(leg.funding_source_id)
            if source is None:
                raise FundingSourceNotFoundError(leg.funding_source_id)
            if not source.is_active:
                raise ValidationError(
                    f"Funding source {source.label} is inactive", field="funding_source_id",
                )
            validate_leg_method(source, leg)

    def _apply_entry(
        self,
        document: FinancialDocument,
        entry: PaymentEntry,
        actor: str,
        now: datetime,
    ) -> FinancialDocument:
        was_locked = document.is_locked
        document = document.with_payment(entry, now)
        action = {
            PaymentSource.DIRECT_PAYMENT: AuditAction.PAYMENT_RECORDED,
            PaymentSource.CREDIT_CONSUMPTION: AuditAction.CREDIT_APPLIED,
            PaymentSource.CREDIT_ISSUANCE: AuditAction.CREDIT_ISSUED,
        }[entry.source]
        document = document.with_audit(
            action, actor, now,
            amount=str(entry.amount),
            method=entry.method.value,
            funding_source_id=str(entry.funding_source_id) if entry.funding_source_id else None,
            reference=entry.reference,
            settlement_id=str(entry.settlement_id) if entry.settlement_id else None,
            outstanding=str(document.outstanding_amount),
            payment_status=document.payment_status.value,
        )
        if not was_locked:
            document = document.with_audit(AuditAction.LOCKED, actor, now, trigger=action.value)
        return document

    @staticmethod
    def _payment_entries(
        allocation: AllocationResult,
        request: PaymentRequest,
        now: datetime,
        settlement_id: UUID,
    ) -> dict[UUID, list[PaymentEntry]]:
        """Spread direct records over the legs in leg order; credit records stand alone."""
        remaining = [[leg, leg.amount] for leg in request.legs]
        entries: dict[UUID, list[PaymentEntry]] = {}
        for record in allocation.records:
            bucket = entries.setdefault(record.document_id, [])
            if record.source is PaymentSource.CREDIT_CONSUMPTION:
                bucket.append(PaymentEntry(
                    amount=record.applied_amount,
                    method=PaymentMethod.CREDIT_NOTE,
                    recorded_at=now,
                    source=PaymentSource.CREDIT_CONSUMPTION,
                    settlement_id=settlement_id,
                ))
                continue
            due = record.applied_amount
            for slot in remaining:
                if due.is_zero:
                    break
                leg, left = slot
                if not left.is_positive:
                    continue
                take = min(due, left)
                slot[1] = left - take
                due = due - take
                bucket.append(PaymentEntry(
                    amount=take,
                    method=leg.method,
                    recorded_at=now,
                    funding_source_id=leg.funding_source_id,
                    reference=leg.reference,
                    settlement_id=settlement_id,
                ))
        return entries

    def _settle(
        self,
        attempt: _Attempt,
        counterparty_id: str,
        direction: Direction,
        candidates: Sequence[FinancialDocument],
        request: PaymentRequest,
    ) -> SettlementReceipt:
        settlement_id = attempt.settlement_id
        now = request.recorded_at or self._clock.now()
        self._validate_legs(request.legs)

        # Funds first: an insufficient source rejects before any document is touched.
        if direction is Direction.OUTFLOW:
            tokens = self._guard.check_and_reserve_many(request.legs).unwrap()
        else:
            tokens = self._guard.deposit_many(request.legs).unwrap()
        attempt.tokens.extend(tokens)

        allocation = self._calculator.allocate(
            payment=PaymentIntent(
                amount=request.total,
                explicit_allocations=request.explicit_allocations,
            ),
            candidates=[AllocationCandidate(d.id, d.outstanding_amount) for d in candidates],
            existing_credit=self._ledger.balance(counterparty_id),
        ).unwrap()

        if allocation.credit_consumed.is_positive:
            self._ledger.consume(
                counterparty_id,
                allocation.credit_consumed,
                reason=f"settlement {settlement_id}",
                actor=request.actor,
            ).unwrap()

        by_id = {d.id: d for d in candidates}
        entries = self._payment_entries(allocation, request, now, settlement_id)
        updated: list[FinancialDocument] = []
        for document_id in allocation.document_ids:
            document = by_id[document_id]
            for entry in entries[document_id]:
                document = self._apply_entry(document, entry, request.actor, now)
            updated.append(self._repo.save(document, request.actor))

        if allocation.excess_amount.is_positive:
            self._ledger.credit(
                counterparty_id,
                allocation.excess_amount,
                reason="overpayment" if allocation.records else "advance payment",
                actor=request.actor,
            ).unwrap()

        self._repo.add_allocation_records(settlement_id, allocation.records, now)

        receipt = SettlementReceipt(
            settlement_id=settlement_id,
            counterparty_id=counterparty_id,
            documents=tuple(updated),
            allocation=allocation,
            tokens=tuple(tokens),
            credit_issued=allocation.excess_amount,
            credit_consumed=allocation.credit_consumed,
            credit_balance=self._ledger.balance(counterparty_id),
        )
        logger.info("settlement_recorded", extra={
            "counterparty_id": counterparty_id,
            "direction": direction.value,
            "leg_count": len(request.legs),
            "amount": str(request.total),
            "document_count": len(updated),
            "direct_applied": str(allocation.direct_applied),
            "credit_consumed": str(allocation.credit_consumed),
            "credit_issued": str(allocation.excess_amount),
        })
        return receipt

    def record_payment(self, document_id: UUID, request: PaymentRequest) -> Outcome[SettlementReceipt]:
        """
        Settle one approved bill or sales invoice.

        Without explicit allocations the document is the single candidate,
        so ``min(amount, outstanding)`` is applied and any excess becomes
        counterparty credit.
        """
        settlement_id = uuid4()
        attempt = _Attempt(
            operation="record_payment",
            actor=request.actor,
            amount=request.total,
            settlement_id=settlement_id,
        )

        def work(attempt: _Attempt) -> SettlementReceipt:
            document = self._load_document(document_id)
            attempt.audit_targets.append(document.id)
            self._require_settleable(document)
            self._require(document, "settle")
            self._validate_request(request)
            return self._settle(
                attempt, document.counterparty_id, document.direction, [document], request,
            )

        with LogContext.bind(settlement_id=str(settlement_id)):
            return self._run(
                attempt,
                self._document_keys(document_id) + self._funding_keys(request),
                work,
                document_id,
            )

    def settle(
        self,
        counterparty_id: str,
        kind: DocumentKind | str,
        request: PaymentRequest,
    ) -> Outcome[SettlementReceipt]:
        """
        Settle against every open approved document of one counterparty.

        With several open documents and no explicit allocations nothing is
        applied and the whole amount becomes credit; with none it is an
        advance payment.
        """
        try:
            cls = document_class(kind)
            if cls.DIRECTION is Direction.CREDIT:
                raise ValidationError("Credit notes are not settled with funds", field="kind")
            if not counterparty_id:
                raise ValidationError("counterparty_id is required", field="counterparty_id")
        except ValidationError as e:
            return Outcome.fail(e)

        settlement_id = uuid4()
        attempt = _Attempt(
            operation="settle",
            actor=request.actor,
            amount=request.total,
            settlement_id=settlement_id,
        )

        def work(attempt: _Attempt) -> SettlementReceipt:
            self._validate_request(request)
            open_documents = self._repo.open_documents_for(counterparty_id, cls.KIND)
            candidates = [self._load_document(d.id) for d in open_documents]
            explicit_ids = [a.document_id for a in request.explicit_allocations]
            attempt.audit_targets.extend(explicit_ids or [d.id for d in candidates])
            return self._settle(attempt, counterparty_id, cls.DIRECTION, candidates, request)

        with LogContext.bind(settlement_id=str(settlement_id)):
            return self._run(
                attempt,
                [("counterparty", counterparty_id)] + self._funding_keys(request),
                work,
            )

    def apply_credit(
        self,
        document_id: UUID,
        amount: Money,
        actor: str,
        reference: str | None = None,
    ) -> Outcome[SettlementReceipt]:
        """Consume counterparty credit against one approved document; no funds move."""
        if not isinstance(amount, Money):
            raise TypeError(f"amount must be Money, got {type(amount).__name__}")
        settlement_id = uuid4()
        attempt = _Attempt(
            operation="apply_credit", actor=actor, amount=amount, settlement_id=settlement_id,
        )

        def work(attempt: _Attempt) -> SettlementReceipt:
            _require_actor(actor)
            if not amount.is_positive:
                raise ValidationError(f"Credit amount must be positive, got {amount}", field="amount")
            document = self._load_document(document_id)
            attempt.audit_targets.append(document.id)
            self._require_settleable(document)
            self._require(document, "settle")
            if amount > document.outstanding_amount:
                raise OverAllocationError(
                    f"Credit of {amount} exceeds outstanding {document.outstanding_amount} "
                    f"on {document.document_number}",
                    document_id=document.id,
                    requested=amount,
                    limit=document.outstanding_amount,
                )

            now = self._clock.now()
            self._ledger.consume(
                document.counterparty_id,
                amount,
                reason=f"applied to {document.document_number}",
                document_id=document.id,
                actor=actor,
            ).unwrap()
            entry = PaymentEntry(
                amount=amount,
                method=PaymentMethod.CREDIT_NOTE,
                recorded_at=now,
                source=PaymentSource.CREDIT_CONSUMPTION,
                reference=reference,
                settlement_id=settlement_id,
            )
            document = self._repo.save(self._apply_entry(document, entry, actor, now), actor)
            record = AllocationRecord(
                document_id=document.id,
                applied_amount=amount,
                source=PaymentSource.CREDIT_CONSUMPTION,
            )
            self._repo.add_allocation_records(settlement_id, (record,), now)
            logger.info("credit_applied", extra={
                "counterparty_id": document.counterparty_id,
                "amount": str(amount),
                "outstanding": str(document.outstanding_amount),
            })
            return SettlementReceipt(
                settlement_id=settlement_id,
                counterparty_id=document.counterparty_id,
                documents=(document,),
                allocation=AllocationResult(
                    records=(record,),
                    excess_amount=Money.zero(),
                    credit_consumed=amount,
                    direct_applied=Money.zero(),
                ),
                tokens=(),
                credit_issued=Money.zero(),
                credit_consumed=amount,
                credit_balance=self._ledger.balance(document.counterparty_id),
            )

        with LogContext.bind(settlement_id=str(settlement_id)):
            return self._run(attempt, self._document_keys(document_id), work, document_id)

    def bulk_payment(
        self,
        document_ids: Sequence[UUID],
        funding_source_id: UUID,
        method: PaymentMethod,
        actor: str,
        reference: str | None = None,
    ) -> BulkPaymentResult:
        """
        Pay each document's full outstanding from one source.

        Every document is settled in its own call, so one failure (for
        example the source running dry part-way) does not undo the
        documents already paid.
        """
        successful: list[SettlementReceipt] = []
        failed: list[BulkPaymentFailure] = []
        for document_id in dict.fromkeys(document_ids):
            document = self._repo.load(document_id)
            if document is None or document.is_deleted:
                failed.append(BulkPaymentFailure(document_id, DocumentNotFoundError(document_id)))
                continue
            outstanding = document.outstanding_amount
            request = PaymentRequest(
                legs=(PaymentLeg(funding_source_id, outstanding, method, reference),),
                actor=actor,
                explicit_allocations=(
                    (ExplicitAllocation(document.id, outstanding),) if outstanding.is_positive else ()
                ),
            )
            outcome = self.record_payment(document.id, request)
            if outcome.is_success:
                successful.append(outcome.value)
            else:
                failed.append(BulkPaymentFailure(document_id, outcome.error))

        result = BulkPaymentResult(successful=tuple(successful), failed=tuple(failed))
        logger.info("bulk_payment_completed", extra={
            "document_count": len(successful) + len(failed),
            "successful_count": len(successful),
            "failed_count": len(failed),
            "total_paid": str(result.total_paid),
        })
        return result
