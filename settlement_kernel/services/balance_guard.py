"""
BalanceGuard -- the only component that reads or writes funding balances.

Responsibility:
    Checks that a payment can be drawn from a funding source and debits it
    in the same atomic step; credits sources for inflows; releases either
    kind of mutation exactly once when a later settlement step fails.

Architecture position:
    Kernel > Services -- imperative shell.  Called by SettlementService
    before the Allocation Calculator runs, so insufficient funds are
    rejected before any document is touched.

Invariants enforced:
    - available_balance >= 0 at every observed state.  A reservation is a
      single conditional UPDATE:
          UPDATE funding_sources
             SET available_balance_minor = available_balance_minor - :amount
           WHERE id = :id AND available_balance_minor >= :amount
      Zero rows updated means insufficient funds; no read-modify-write gap
      exists, even across processes.
    - Owner personal funds are unlimited: reservations always succeed and
      nothing is debited.
    - Every mutation appends a FundingMovement row (out / in / release).
    - ``release`` is idempotent: a token already released is returned as is.

Failure modes (returned inside ``Outcome``):
    - ValidationError for a non-positive amount or inactive source.
    - FundingSourceNotFoundError for an unknown id.
    - InsufficientFundsError carrying label, available, requested and
      shortfall for the remediation prompt.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from uuid import UUID, uuid4

from sqlalchemy import select, update

from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.domain.funding import (
    FundingSourceKind,
    MovementKind,
    PaymentLeg,
    ReservationToken,
)
from settlement_kernel.domain.outcome import Outcome
from settlement_kernel.domain.values import Money
from settlement_kernel.exceptions import (
    FundingSourceNotFoundError,
    InsufficientFundsError,
    ValidationError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.funding_source import FundingMovementModel, FundingSourceModel
from settlement_kernel.services.base import BaseService

logger = get_logger("services.balance_guard")


class BalanceGuard(BaseService):
    """
    Atomic reserve / deposit / release over funding source balances.

    Contract:
        Flushes within the caller's transaction; never commits.
    Guarantees:
        - No balance ever goes negative.
        - A failed ``check_and_reserve_many`` leaves every balance as it
          found it.
    """

    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _load(self, funding_source_id: UUID) -> FundingSourceModel | None:
        stmt = (
            select(FundingSourceModel)
            .where(FundingSourceModel.id == funding_source_id)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def available(self, funding_source_id: UUID) -> Outcome[Money | None]:
        """Current balance (``None`` for owner funds).  For remediation prompts only."""
        model = self._load(funding_source_id)
        if model is None:
            return Outcome.fail(FundingSourceNotFoundError(funding_source_id))
        if model.available_balance_minor is None:
            return Outcome.ok(None)
        return Outcome.ok(Money.from_minor_units(model.available_balance_minor))

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _validate(self, funding_source_id: UUID, amount: Money) -> FundingSourceModel:
        if not isinstance(amount, Money):
            raise TypeError(f"amount must be Money, got {type(amount).__name__}")
        if not amount.is_positive:
            raise ValidationError(f"Amount must be positive, got {amount}", field="amount")
        model = self._load(funding_source_id)
        if model is None:
            raise FundingSourceNotFoundError(funding_source_id)
        if not model.is_active:
            raise ValidationError(
                f"Funding source {model.label} is inactive", field="funding_source_id",
            )
        return model

    def _record_movement(
        self,
        funding_source_id: UUID,
        token_id: UUID,
        kind: MovementKind,
        amount: Money,
        reference: str | None,
    ) -> None:
        self.session.add(FundingMovementModel(
            funding_source_id=funding_source_id,
            token_id=token_id,
            kind=kind.value,
            amount_minor=amount.minor_units,
            reference=reference,
            created_at=self._clock.now(),
        ))
        self.session.flush()

    def _token(self, funding_source_id: UUID, amount: Money, applied: Money, kind: MovementKind) -> ReservationToken:
        return ReservationToken(
            id=uuid4(),
            funding_source_id=funding_source_id,
            amount=amount,
            applied=applied,
            kind=kind,
            created_at=self._clock.now(),
        )

    def check_and_reserve(
        self,
        funding_source_id: UUID,
        amount: Money,
        reference: str | None = None,
    ) -> Outcome[ReservationToken]:
        """Debit ``amount`` if and only if the source can cover it."""
        try:
            model = self._validate(funding_source_id, amount)
        except (ValidationError, FundingSourceNotFoundError) as e:
            return Outcome.fail(e)

        if model.kind == FundingSourceKind.OWNER_PERSONAL_FUNDS.value:
            token = self._token(funding_source_id, amount, Money.zero(), MovementKind.OUT)
            logger.info("funds_reserved", extra={
                "funding_source_id": str(funding_source_id),
                "funding_source_kind": model.kind,
                "amount": str(amount),
                "debited": "0.00",
            })
            return Outcome.ok(token)

        cents = amount.minor_units
        result = self.session.execute(
            update(FundingSourceModel)
            .where(
                FundingSourceModel.id == funding_source_id,
                FundingSourceModel.available_balance_minor >= cents,
            )
            .values(
                available_balance_minor=FundingSourceModel.available_balance_minor - cents,
                version=FundingSourceModel.version + 1,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = self._load(funding_source_id)
            available = Money.from_minor_units(current.available_balance_minor or 0)
            error = InsufficientFundsError(
                funding_source_id=funding_source_id,
                funding_source_label=current.label,
                available=available,
                requested=amount,
            )
            logger.warning("insufficient_funds", extra={
                "funding_source_id": str(funding_source_id),
                "funding_source_label": current.label,
                "available": str(available),
                "requested": str(amount),
                "shortfall": str(error.shortfall),
            })
            return Outcome.fail(error)

        token = self._token(funding_source_id, amount, amount, MovementKind.OUT)
        self._record_movement(funding_source_id, token.id, MovementKind.OUT, amount, reference)
        logger.info("funds_reserved", extra={
            "funding_source_id": str(funding_source_id),
            "funding_source_kind": model.kind,
            "amount": str(amount),
            "debited": str(amount),
            "token_id": str(token.id),
        })
        return Outcome.ok(token)

    def deposit(
        self,
        funding_source_id: UUID,
        amount: Money,
        reference: str | None = None,
    ) -> Outcome[ReservationToken]:
        """Credit ``amount`` to the source (receivable settlements)."""
        try:
            model = self._validate(funding_source_id, amount)
        except (ValidationError, FundingSourceNotFoundError) as e:
            return Outcome.fail(e)

        if model.kind == FundingSourceKind.OWNER_PERSONAL_FUNDS.value:
            return Outcome.ok(self._token(funding_source_id, amount, Money.zero(), MovementKind.IN))

        self.session.execute(
            update(FundingSourceModel)
            .where(FundingSourceModel.id == funding_source_id)
            .values(
                available_balance_minor=FundingSourceModel.available_balance_minor + amount.minor_units,
                version=FundingSourceModel.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        token = self._token(funding_source_id, amount, amount, MovementKind.IN)
        self._record_movement(funding_source_id, token.id, MovementKind.IN, amount, reference)
        logger.info("funds_deposited", extra={
            "funding_source_id": str(funding_source_id),
            "amount": str(amount),
            "token_id": str(token.id),
        })
        return Outcome.ok(token)

    def _already_released(self, token: ReservationToken) -> bool:
        stmt = select(FundingMovementModel.id).where(
            FundingMovementModel.token_id == token.id,
            FundingMovementModel.kind == MovementKind.RELEASE.value,
        )
        return self.session.execute(stmt).first() is not None

    def release(self, token: ReservationToken) -> ReservationToken:
        """
        Reverse a reservation or deposit exactly once.

        A reservation is re-credited; a deposit is debited back.  Releasing
        a token twice is a no-op returning the released token.
        """
        if token.released:
            return token
        released = replace(token, released=True)
        if token.applied.is_zero or self._already_released(token):
            return released

        cents = token.applied.minor_units
        if token.kind is MovementKind.OUT:
            self.session.execute(
                update(FundingSourceModel)
                .where(FundingSourceModel.id == token.funding_source_id)
                .values(
                    available_balance_minor=FundingSourceModel.available_balance_minor + cents,
                    version=FundingSourceModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
        else:
            result = self.session.execute(
                update(FundingSourceModel)
                .where(
                    FundingSourceModel.id == token.funding_source_id,
                    FundingSourceModel.available_balance_minor >= cents,
                )
                .values(
                    available_balance_minor=FundingSourceModel.available_balance_minor - cents,
                    version=FundingSourceModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = self._load(token.funding_source_id)
                raise InsufficientFundsError(
                    funding_source_id=token.funding_source_id,
                    funding_source_label=current.label,
                    available=Money.from_minor_units(current.available_balance_minor or 0),
                    requested=token.applied,
                )

        self._record_movement(
            token.funding_source_id, token.id, MovementKind.RELEASE, token.applied, None,
        )
        logger.info("funds_released", extra={
            "funding_source_id": str(token.funding_source_id),
            "token_id": str(token.id),
            "amount": str(token.applied),
            "reversed": token.kind.value,
        })
        return released

    def release_all(self, tokens: Sequence[ReservationToken]) -> tuple[ReservationToken, ...]:
        """Release tokens in reverse order of creation."""
        return tuple(reversed([self.release(t) for t in reversed(tokens)]))

    # -------------------------------------------------------------------------
    # Multi-leg settlements
    # -------------------------------------------------------------------------

    @staticmethod
    def _group_legs(legs: Sequence[PaymentLeg]) -> list[tuple[UUID, Money]]:
        totals: dict[UUID, Money] = {}
        for leg in legs:
            if not isinstance(leg.amount, Money):
                raise TypeError(f"leg amount must be Money, got {type(leg.amount).__name__}")
            if not leg.amount.is_positive:
                raise ValidationError(f"Leg amount must be positive, got {leg.amount}", field="amount")
            totals[leg.funding_source_id] = totals.get(leg.funding_source_id, Money.zero()) + leg.amount
        return sorted(totals.items(), key=lambda item: str(item[0]))

    def _apply_many(self, legs: Sequence[PaymentLeg], operation) -> Outcome[tuple[ReservationToken, ...]]:
        if not legs:
            return Outcome.fail(ValidationError("At least one funding leg is required", field="legs"))
        try:
            grouped = self._group_legs(legs)
        except ValidationError as e:
            return Outcome.fail(e)

        tokens: list[ReservationToken] = []
        for funding_source_id, amount in grouped:
            outcome = operation(funding_source_id, amount)
            if not outcome.is_success:
                self.release_all(tokens)
                logger.warning("multi_leg_rejected", extra={
                    "leg_count": len(legs),
                    "failed_funding_source_id": str(funding_source_id),
                    "released_count": len(tokens),
                    "error_code": outcome.error.code,
                })
                return Outcome.fail(outcome.error)
            tokens.append(outcome.value)
        return Outcome.ok(tuple(tokens))

    def check_and_reserve_many(self, legs: Sequence[PaymentLeg]) -> Outcome[tuple[ReservationToken, ...]]:
        """
        Validate and reserve every leg jointly.

        Amounts on the same source are summed; sources are processed in
        sorted id order; on the first failure every earlier reservation is
        released and the failure returned.
        """
        return self._apply_many(legs, self.check_and_reserve)

    def deposit_many(self, legs: Sequence[PaymentLeg]) -> Outcome[tuple[ReservationToken, ...]]:
        """Deposit every leg; the inflow counterpart of ``check_and_reserve_many``."""
        return self._apply_many(legs, self.deposit)
