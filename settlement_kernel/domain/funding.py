"""
Funding-source value types and payment request shapes.

A ``FundingSource`` is a place money is drawn from or deposited to: a cash
drawer, a bank account, or the owner's personal funds (unlimited and
untracked).  Balances change only through the Balance Guard; these objects
are snapshots of what it last saw.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

from settlement_kernel.domain.documents import PaymentMethod
from settlement_kernel.domain.values import Money
from settlement_kernel.exceptions import ValidationError


class FundingSourceKind(Enum):
    CASH = "cash"
    BANK_ACCOUNT = "bank_account"
    OWNER_PERSONAL_FUNDS = "owner_personal_funds"


class MovementKind(Enum):
    """Balance mutations recorded by the Balance Guard."""
    OUT = "out"
    IN = "in"
    RELEASE = "release"


@dataclass(frozen=True)
class FundingSource:
    """Snapshot of a funding source.

    ``available_balance`` is ``None`` for owner personal funds and a
    non-negative ``Money`` otherwise.
    """
    id: UUID
    kind: FundingSourceKind
    label: str
    available_balance: Money | None = None
    version: int = 1
    is_active: bool = True

    def __post_init__(self):
        if self.kind is FundingSourceKind.OWNER_PERSONAL_FUNDS:
            if self.available_balance is not None:
                raise ValidationError(
                    "Owner personal funds do not track a balance",
                    field="available_balance",
                )
        elif self.available_balance is None or self.available_balance.is_negative:
            raise ValidationError(
                f"{self.kind.value} source requires a non-negative balance",
                field="available_balance",
            )

    @property
    def is_unlimited(self) -> bool:
        return self.kind is FundingSourceKind.OWNER_PERSONAL_FUNDS


@dataclass(frozen=True)
class ReservationToken:
    """
    Proof of a balance mutation made by the Balance Guard.

    ``applied`` is the amount actually moved on the source (zero for owner
    funds).  ``kind`` is ``OUT`` for reservations and ``IN`` for deposits;
    releasing a token reverses it exactly once.
    """
    id: UUID
    funding_source_id: UUID
    amount: Money
    applied: Money
    kind: MovementKind
    created_at: datetime
    released: bool = False


@dataclass(frozen=True)
class PaymentLeg:
    """One ``{funding_source_id, amount}`` pair of a settlement."""
    funding_source_id: UUID
    amount: Money
    method: PaymentMethod = PaymentMethod.CASH
    reference: str | None = None


@dataclass(frozen=True)
class ExplicitAllocation:
    """Caller-requested amount for one document."""
    document_id: UUID
    amount: Money


@dataclass(frozen=True)
class PaymentRequest:
    """
    A settlement request: an ordered list of funding legs plus optional
    explicit per-document allocations.  All legs are validated jointly.
    """
    legs: tuple[PaymentLeg, ...]
    actor: str
    explicit_allocations: tuple[ExplicitAllocation, ...] = field(default_factory=tuple)
    recorded_at: datetime | None = None

    def __post_init__(self):
        object.__setattr__(self, "legs", tuple(self.legs))
        object.__setattr__(self, "explicit_allocations", tuple(self.explicit_allocations))

    @property
    def total(self) -> Money:
        total = Money.zero()
        for leg in self.legs:
            total = total + leg.amount
        return total


_METHODS_BY_SOURCE_KIND: dict[FundingSourceKind, frozenset[PaymentMethod]] = {
    FundingSourceKind.CASH: frozenset({PaymentMethod.CASH}),
    FundingSourceKind.BANK_ACCOUNT: frozenset({
        PaymentMethod.BANK,
        PaymentMethod.UPI,
        PaymentMethod.CARD,
        PaymentMethod.CHEQUE,
    }),
    FundingSourceKind.OWNER_PERSONAL_FUNDS: frozenset({PaymentMethod.OWNER}),
}


def validate_leg_method(source: FundingSource, leg: PaymentLeg) -> None:
    """Raise ValidationError when the leg's method cannot draw on ``source``."""
    allowed = _METHODS_BY_SOURCE_KIND[source.kind]
    if leg.method not in allowed:
        raise ValidationError(
            f"Payment method {leg.method.value} cannot be used with "
            f"{source.kind.value} source {source.label}",
            field="method",
        )


class CreditMovementKind(Enum):
    CREDIT = "credit"
    CONSUME = "consume"


@dataclass(frozen=True)
class CreditMovement:
    """One entry of a counterparty's append-only credit history."""
    counterparty_id: str
    kind: CreditMovementKind
    amount: Money
    balance_after: Money
    reason: str
    created_at: datetime
    document_id: UUID | None = None
