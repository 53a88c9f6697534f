"""
settlement_config -- single public entrypoint for settlement configuration.

Responsibility:
    ``get_active_config()`` is the only way services obtain configuration at
    runtime.  It loads the YAML file and environment overrides once and
    caches the validated ``SettlementConfig``.

Architecture position:
    Configuration -- sits beside ``settlement_kernel``.  This package never
    imports from the kernel's services.

Audit relevance:
    The first load emits a ``SETTLEMENT_CONFIG_TRACE`` record naming the
    source file and the effective settings.
"""

from __future__ import annotations

import logging
import os
import threading

from settlement_config.loader import CONFIG_PATH_ENV, load_config
from settlement_config.schema import SettlementConfig

_logger = logging.getLogger("settlement_kernel.config")

_active: SettlementConfig | None = None
_active_lock = threading.Lock()


def get_active_config() -> SettlementConfig:
    """Return the cached configuration, loading it on first use."""
    global _active
    with _active_lock:
        if _active is None:
            _active = load_config()
            _logger.info(
                "SETTLEMENT_CONFIG_TRACE",
                extra={
                    "trace_type": "SETTLEMENT_CONFIG_TRACE",
                    "config_source": os.environ.get(CONFIG_PATH_ENV) or "defaults",
                    "approval_workflow_enabled": _active.approval_workflow_enabled,
                    "default_payment_terms_days": _active.default_payment_terms_days,
                    "require_reason_for_paid_cancel": _active.require_reason_for_paid_cancel,
                },
            )
        return _active


def set_active_config(config: SettlementConfig | None) -> None:
    """Replace (or with ``None``, clear) the cached configuration."""
    global _active
    with _active_lock:
        _active = config


__all__ = [
    "SettlementConfig",
    "get_active_config",
    "load_config",
    "set_active_config",
]
