"""
Tollgate - Billing Module

Credit ledger and usage metering.
- Append-only ledger; balance is derived, never stored
- Token-estimated pricing in credits
- Atomic charge: usage event and ledger debit commit together
"""

from .ledger import CreditLedger, usage_reason
from .metering import UsageMeter, ChargeResult, estimate_tokens, compute_cost

__all__ = [
    "CreditLedger",
    "usage_reason",
    "UsageMeter",
    "ChargeResult",
    "estimate_tokens",
    "compute_cost",
]
