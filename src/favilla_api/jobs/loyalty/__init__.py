"""Loyalty job exports."""

from .reconciliation import run_points_reconciliation  # noqa: F401
from .vouchers import expire_loyalty_vouchers  # noqa: F401

__all__ = [
    "expire_loyalty_vouchers",
    "run_points_reconciliation",
]
