"""
Job runners for the settlement feature.
"""

from .reconcile_job import run_payout_reconcile_job, start_payout_reconcile_scheduler

__all__ = ["run_payout_reconcile_job", "start_payout_reconcile_scheduler"]
