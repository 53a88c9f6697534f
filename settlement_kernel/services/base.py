"""
BaseService -- abstract base for kernel services that touch the database.

Responsibility:
    Common constructor and session-handling contract.  Services receive a
    SQLAlchemy ``Session`` and use ``session.flush()`` -- never
    ``session.commit()``.  Only ``SettlementService`` owns transaction
    boundaries, and only when constructed with ``auto_commit=True``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Failure modes:
    - A subclass that commits on its own breaks the all-or-nothing
      guarantee of a settlement.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Contract:
        Accepts a session from the caller and flushes within the caller's
        transaction.
    Non-goals:
        - Does NOT manage commit/rollback.
        - Does NOT provide reporting reads -- those live in ``selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session

    @property
    def supports_row_locks(self) -> bool:
        """True when the bound backend honours ``SELECT ... FOR UPDATE``."""
        return self.session.get_bind().dialect.name == "postgresql"
