"""
Module: settlement_kernel.selectors.base
Responsibility: Base class for read-only query selectors.
Architecture position: Kernel > Selectors.  Selectors never create, modify
    or delete data and never take locks; the aging classifier and reports
    run fully concurrently with settlements.

Invariants enforced:
    - Read-only: no session.add(), flush(), commit() or delete().
    - Selectors return frozen domain snapshots or report dataclasses, never
      ORM rows.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        The caller owns the session and its transaction scope.
    """

    def __init__(self, session: Session):
        self.session = session
