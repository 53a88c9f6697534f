"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing sequence numbers from a dedicated counter
    table, and formats them into human-readable document numbers
    ``<PREFIX>-YYYYMMDD-NNN`` (one sequence per prefix and day).

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by SettlementService when a document is created.

Invariants enforced:
    - The locked counter row is the sole source of truth for the next
      value; ``MAX(...) + 1`` over documents is never used.
    - The increment is visible only after the caller's transaction commits.

Failure modes:
    - IntegrityError on a concurrent first use of the same counter.  On
      PostgreSQL this is absorbed with a savepoint and a retry; elsewhere the
      caller serializes first use through EntityLocks.
"""

from collections.abc import Mapping
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.sequence_counter import SequenceCounter
from settlement_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class SequenceService(BaseService):
    """
    Service for generating transactional sequence numbers.

    Guarantees:
        - Strictly monotonic per sequence name.
        - ``SELECT ... FOR UPDATE`` serializes concurrent allocations on
          PostgreSQL.
    Non-goals:
        - Does NOT call ``session.commit()``.
    """

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self.session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """Lock (or create) the counter row, increment it, return the new value."""
        counter = self._locked_counter(sequence_name)

        if counter is None:
            if self.supports_row_locks:
                savepoint = self.session.begin_nested()
                try:
                    self.session.add(SequenceCounter(name=sequence_name, current_value=1))
                    self.session.flush()
                    savepoint.commit()
                    logger.debug("sequence_allocated", extra={"sequence_name": sequence_name, "value": 1})
                    return 1
                except IntegrityError:
                    logger.debug("sequence_counter_race_retry", extra={"sequence_name": sequence_name})
                    savepoint.rollback()
                    counter = self._locked_counter(sequence_name)
            else:
                self.session.add(SequenceCounter(name=sequence_name, current_value=1))
                self.session.flush()
                logger.debug("sequence_allocated", extra={"sequence_name": sequence_name, "value": 1})
                return 1

        counter.current_value += 1
        self.session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing, or None if never used."""
        return self.session.execute(
            select(SequenceCounter.current_value).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()


class DocumentNumberAllocator:
    """Formats ``<PREFIX>-YYYYMMDD-NNN`` numbers from per-day sequences."""

    def __init__(self, sequences: SequenceService, prefixes: Mapping[str, str]):
        self._sequences = sequences
        self._prefixes = dict(prefixes)

    def sequence_name(self, kind: str, on: date) -> str:
        return f"{self._prefixes[kind]}-{on:%Y%m%d}"

    def allocate(self, kind: str, on: date) -> str:
        name = self.sequence_name(kind, on)
        value = self._sequences.next_value(name)
        return f"{name}-{value:03d}"
