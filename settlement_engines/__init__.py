"""
Module: settlement_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used by the
    settlement service and the reporting selectors.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import settlement_kernel domain values, documents and errors.
    MUST NOT import settlement_kernel services, models or db.

Invariants enforced:
    - Purity: engines never call ``datetime.now()`` or ``date.today()``;
      "now" is passed in by the caller.
    - Decimal-only arithmetic through ``Money``.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Engine entry points are wrapped with ``@traced_engine`` and emit
    SETTLEMENT_ENGINE_TRACE records carrying an input fingerprint.
"""

from settlement_engines.aging import (
    AgedItem,
    AgingBucket,
    AgingClassification,
    AgingItem,
    AgingReport,
    AgingReportBuilder,
    BucketSummary,
    SettlementSummary,
    classify,
    summarize,
)
from settlement_engines.allocation import (
    AllocationCalculator,
    AllocationCandidate,
    AllocationRecord,
    AllocationResult,
    PaymentIntent,
)
from settlement_engines.totals import DocumentTotals, compute_totals
from settlement_engines.tracer import traced_engine

__all__ = [
    # Aging
    "AgedItem",
    "AgingBucket",
    "AgingClassification",
    "AgingItem",
    "AgingReport",
    "AgingReportBuilder",
    "BucketSummary",
    "SettlementSummary",
    "classify",
    "summarize",
    # Allocation
    "AllocationCalculator",
    "AllocationCandidate",
    "AllocationRecord",
    "AllocationResult",
    "PaymentIntent",
    # Totals
    "DocumentTotals",
    "compute_totals",
    # Tracing
    "traced_engine",
]
