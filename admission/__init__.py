"""
Reservation admission against per-tenant monthly quotas.
"""

from admission.quota import Admitted, QuotaTracker, Refused, effective_limit

__all__ = ["Admitted", "QuotaTracker", "Refused", "effective_limit"]
