# ledger/keys.py
"""
Deterministic idempotency keys.

Every writer that posts money derives its key here, so that the same logical
event (one benefit day, one referral payout, one reversal) always maps to the
same string and the ledger's unique constraint can reject the duplicate.
"""


def _require(**parts):
    for name, value in parts.items():
        if value is None or value == "":
            raise ValueError(f"Idempotency key component '{name}' is required")


def benefit_key(purchase_id, cycle, day):
    _require(purchase_id=purchase_id, cycle=cycle, day=day)
    return f"benefit_{purchase_id}_{cycle}_{day}"


def referral_key(purchase_id, recipient_id):
    _require(purchase_id=purchase_id, recipient_id=recipient_id)
    return f"referral_{purchase_id}_{recipient_id}"


def parent_bonus_key(purchase_id, recipient_id):
    _require(purchase_id=purchase_id, recipient_id=recipient_id)
    return f"parent_bonus_{purchase_id}_{recipient_id}"


def commission_direct_key(purchase_id):
    _require(purchase_id=purchase_id)
    return f"commission_direct_{purchase_id}"


def commission_parent_key(referrer_id):
    """One parent bonus per direct referrer, ever."""
    _require(referrer_id=referrer_id)
    return f"commission_parent_{referrer_id}"


def withdrawal_key(withdrawal_id):
    _require(withdrawal_id=withdrawal_id)
    return f"withdrawal_{withdrawal_id}"


def reversal_key(entry_id):
    _require(entry_id=entry_id)
    return f"reversal_{entry_id}"
