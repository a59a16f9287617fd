"""Scheduling utilities for loyalty maintenance jobs."""

from .config import JobDefinition, load_job_definitions
from .runner import LoyaltyJobScheduler

__all__ = ["JobDefinition", "LoyaltyJobScheduler", "load_job_definitions"]
