# wallets/policies.py
import secrets
from datetime import datetime


class RandomPolicy:
    """Uniform choice among available addresses; unpredictable to observers."""

    name = "random"

    def __init__(self, rng=None):
        self._rng = rng or secrets.SystemRandom()

    def choose(self, candidates):
        if not candidates:
            return None
        return self._rng.choice(candidates)


class LRSPolicy:
    """Least-recently-shown: oldest last_shown_at (never shown first), then lowest shown_count."""

    name = "lrs"

    def choose(self, candidates):
        if not candidates:
            return None
        return min(candidates, key=self._rank)

    @staticmethod
    def _rank(wallet):
        return (
            wallet.last_shown_at is not None,
            wallet.last_shown_at or datetime.min,
            wallet.shown_count or 0,
            wallet.id,
        )


POLICIES = {
    RandomPolicy.name: RandomPolicy,
    LRSPolicy.name: LRSPolicy,
}


def build_policy(name):
    try:
        return POLICIES[(name or RandomPolicy.name).lower()]()
    except KeyError:
        raise ValueError(f"Unknown wallet rotation policy '{name}' (expected one of {sorted(POLICIES)})")
