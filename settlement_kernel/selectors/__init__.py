"""Read-only reporting selectors."""

from settlement_kernel.selectors.base import BaseSelector
from settlement_kernel.selectors.document_selector import DocumentSelector

__all__ = ["BaseSelector", "DocumentSelector"]
