"""Scheduling utilities for recurring loyalty maintenance."""

from .config import JobDefinition, load_job_definitions
from .runner import LoyaltyJobScheduler

__all__ = ["JobDefinition", "LoyaltyJobScheduler", "load_job_definitions"]
