"""
SettlementConfig schema.

The deployment-level knobs of the settlement engine: whether documents go
through an approval step, default payment terms, document number prefixes,
the cancellation policy for documents that already carry payments, and the
database / logging settings used when the engine is bootstrapped.

YAML files and environment overrides are parsed into this type by the
loader; nothing else reads configuration sources directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_DOCUMENT_PREFIXES: dict[str, str] = {
    "bill": "BILL",
    "sales_invoice": "INV",
    "credit_note": "CN",
}

DEFAULT_DATABASE_URL = "sqlite:///settlement.db"

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class SettlementConfig:
    """Validated settlement engine configuration."""

    approval_workflow_enabled: bool = True
    default_payment_terms_days: int | None = 30
    document_prefixes: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_DOCUMENT_PREFIXES)
    )
    require_reason_for_paid_cancel: bool = True
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not isinstance(self.approval_workflow_enabled, bool):
            raise ValueError("approval_workflow_enabled must be a boolean")
        if not isinstance(self.require_reason_for_paid_cancel, bool):
            raise ValueError("require_reason_for_paid_cancel must be a boolean")

        terms = self.default_payment_terms_days
        if terms is not None and (isinstance(terms, bool) or not isinstance(terms, int) or terms < 0):
            raise ValueError(
                f"default_payment_terms_days must be a non-negative integer, got {terms!r}"
            )

        prefixes = dict(DEFAULT_DOCUMENT_PREFIXES)
        prefixes.update(self.document_prefixes or {})
        unknown = set(prefixes) - set(DEFAULT_DOCUMENT_PREFIXES)
        if unknown:
            raise ValueError(f"document_prefixes has unknown document kinds: {sorted(unknown)}")
        for kind, prefix in prefixes.items():
            if not prefix or not str(prefix).strip():
                raise ValueError(f"document prefix for {kind} must be non-empty")
        object.__setattr__(self, "document_prefixes", prefixes)

        if not self.database_url:
            raise ValueError("database_url must be non-empty")

        level = str(self.log_level).upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}, got {self.log_level!r}")
        object.__setattr__(self, "log_level", level)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SettlementConfig:
        """Build a config from a parsed YAML mapping; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**data)

    def with_defaults(self, **overrides: Any) -> SettlementConfig:
        """Copy with ``overrides`` applied and re-validated."""
        return replace(self, **overrides)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
