"""
Rate limiting package for the Content Service.

Tracks the remote request budgets and decides whether a call may be issued.
"""

from .quota_tracker import Admission, InterfaceKind, QuotaState, QuotaTracker

__all__ = [
    "Admission",
    "InterfaceKind",
    "QuotaState",
    "QuotaTracker",
]
