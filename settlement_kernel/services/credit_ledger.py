"""
CreditLedger -- per-counterparty unapplied credit.

Responsibility:
    Tracks the reusable balance a customer or supplier holds from
    overpayments, advances and credit notes.  ``credit`` increases it,
    ``consume`` decreases it, ``balance`` and ``history`` read it.

Architecture position:
    Kernel > Services -- imperative shell.  Called by SettlementService
    after the Allocation Calculator has decided how much credit is
    consumed and how much excess becomes new credit.

Invariants enforced:
    - Balance is never negative.  ``consume`` is a conditional UPDATE
      guarded by the current balance, the same technique as the Balance
      Guard; zero rows updated means insufficient credit.
    - Every change appends a CreditMovement row with the running balance.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.domain.funding import CreditMovement, CreditMovementKind
from settlement_kernel.domain.outcome import Outcome
from settlement_kernel.domain.values import Money
from settlement_kernel.exceptions import InsufficientCreditError, ValidationError
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.credit_ledger import CreditBalanceModel, CreditMovementModel
from settlement_kernel.services.base import BaseService

logger = get_logger("services.credit_ledger")

SYSTEM_ACTOR = "system"


class CreditLedger(BaseService):
    """
    Counterparty credit balances.

    Contract:
        Flushes within the caller's transaction; never commits.
    Guarantees:
        - ``balance(x) >= 0`` for every counterparty at every observed state.
    """

    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def _row(self, counterparty_id: str) -> CreditBalanceModel | None:
        return self.session.execute(
            select(CreditBalanceModel)
            .where(CreditBalanceModel.counterparty_id == counterparty_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _ensure_row(self, counterparty_id: str, actor: str) -> None:
        if self._row(counterparty_id) is not None:
            return
        if self.supports_row_locks:
            savepoint = self.session.begin_nested()
            try:
                self.session.add(CreditBalanceModel(
                    counterparty_id=counterparty_id, available_credit_minor=0, created_by=actor,
                ))
                self.session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
        else:
            self.session.add(CreditBalanceModel(
                counterparty_id=counterparty_id, available_credit_minor=0, created_by=actor,
            ))
            self.session.flush()

    @staticmethod
    def _validate(counterparty_id: str, amount: Money) -> None:
        if not counterparty_id:
            raise ValidationError("counterparty_id is required", field="counterparty_id")
        if not isinstance(amount, Money):
            raise TypeError(f"amount must be Money, got {type(amount).__name__}")
        if not amount.is_positive:
            raise ValidationError(f"Credit amount must be positive, got {amount}", field="amount")

    def _append_movement(
        self,
        counterparty_id: str,
        kind: CreditMovementKind,
        amount: Money,
        reason: str,
        document_id: UUID | None,
    ) -> Money:
        balance = self.balance(counterparty_id)
        previous = self.session.execute(
            select(func.count(CreditMovementModel.id))
            .where(CreditMovementModel.counterparty_id == counterparty_id)
        ).scalar_one()
        self.session.add(CreditMovementModel(
            counterparty_id=counterparty_id,
            sequence=previous + 1,
            kind=kind.value,
            amount_minor=amount.minor_units,
            balance_after_minor=balance.minor_units,
            reason=reason,
            document_id=document_id,
            created_at=self._clock.now(),
        ))
        self.session.flush()
        return balance

    def credit(
        self,
        counterparty_id: str,
        amount: Money,
        reason: str,
        document_id: UUID | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> Outcome[Money]:
        """Increase the counterparty's credit; returns the new balance."""
        try:
            self._validate(counterparty_id, amount)
        except ValidationError as e:
            return Outcome.fail(e)

        self._ensure_row(counterparty_id, actor)
        self.session.execute(
            update(CreditBalanceModel)
            .where(CreditBalanceModel.counterparty_id == counterparty_id)
            .values(
                available_credit_minor=CreditBalanceModel.available_credit_minor + amount.minor_units,
                version=CreditBalanceModel.version + 1,
                updated_by=actor,
            )
            .execution_options(synchronize_session=False)
        )
        balance = self._append_movement(
            counterparty_id, CreditMovementKind.CREDIT, amount, reason, document_id,
        )
        logger.info("credit_added", extra={
            "counterparty_id": counterparty_id,
            "amount": str(amount),
            "balance": str(balance),
            "reason": reason,
        })
        return Outcome.ok(balance)

    def consume(
        self,
        counterparty_id: str,
        amount: Money,
        reason: str,
        document_id: UUID | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> Outcome[Money]:
        """Decrease the counterparty's credit if it covers ``amount``; returns the new balance."""
        try:
            self._validate(counterparty_id, amount)
        except ValidationError as e:
            return Outcome.fail(e)

        cents = amount.minor_units
        result = self.session.execute(
            update(CreditBalanceModel)
            .where(
                CreditBalanceModel.counterparty_id == counterparty_id,
                CreditBalanceModel.available_credit_minor >= cents,
            )
            .values(
                available_credit_minor=CreditBalanceModel.available_credit_minor - cents,
                version=CreditBalanceModel.version + 1,
                updated_by=actor,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            available = self.balance(counterparty_id)
            logger.warning("insufficient_credit", extra={
                "counterparty_id": counterparty_id,
                "available": str(available),
                "requested": str(amount),
            })
            return Outcome.fail(InsufficientCreditError(counterparty_id, available, amount))

        balance = self._append_movement(
            counterparty_id, CreditMovementKind.CONSUME, amount, reason, document_id,
        )
        logger.info("credit_consumed", extra={
            "counterparty_id": counterparty_id,
            "amount": str(amount),
            "balance": str(balance),
            "reason": reason,
        })
        return Outcome.ok(balance)

    def balance(self, counterparty_id: str) -> Money:
        """Read-only projection; zero for counterparties never credited."""
        cents = self.session.execute(
            select(CreditBalanceModel.available_credit_minor)
            .where(CreditBalanceModel.counterparty_id == counterparty_id)
        ).scalar_one_or_none()
        return Money.from_minor_units(cents or 0)

    def history(self, counterparty_id: str) -> tuple[CreditMovement, ...]:
        """Every movement for the counterparty, oldest first."""
        rows = self.session.execute(
            select(CreditMovementModel)
            .where(CreditMovementModel.counterparty_id == counterparty_id)
            .order_by(CreditMovementModel.sequence)
        ).scalars().all()
        return tuple(
            CreditMovement(
                counterparty_id=row.counterparty_id,
                kind=CreditMovementKind(row.kind),
                amount=Money.from_minor_units(row.amount_minor),
                balance_after=Money.from_minor_units(row.balance_after_minor),
                reason=row.reason,
                created_at=row.created_at,
                document_id=row.document_id,
            )
            for row in rows
        )
