"""Tests for the collection wallet pool: allocation, release, expiry and rotation policies."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from extensions import db
from models import WalletAddress, WalletAssignment, WalletStatus
from wallets.policies import LRSPolicy, RandomPolicy, build_policy
from wallets.pool import WalletPool, WalletPoolError, NoWalletAvailableError
from conftest import wallet_address


NOW = datetime(2026, 1, 1, 12, 0, 0)


class ClaimedElsewherePolicy(LRSPolicy):
    """Picks like LRS, but another worker assigns the first pick before our claim runs."""

    def __init__(self):
        self.calls = 0
        self.taken = None

    def choose(self, candidates):
        self.calls += 1
        chosen = super().choose(candidates)
        if chosen is not None and self.taken is None:
            self.taken = chosen
            db.session.execute(
                update(WalletAddress)
                .where(WalletAddress.id == chosen.id)
                .values(status=WalletStatus.ASSIGNED, assigned_purchase_id=999)
                .execution_options(synchronize_session=False)
            )
        return chosen


@pytest.fixture
def pool(app) -> WalletPool:
    return WalletPool(policy=LRSPolicy(), assignment_ttl_hours=24, cooldown_minutes=15)


class TestAcquire:
    """Every acquire hands out a distinct available address."""

    def test_no_double_allocation(self, pool, seed_wallets) -> None:
        seed_wallets(5)
        addresses = [pool.acquire(purchase_id=i, user_id=1, now=NOW).address for i in range(1, 6)]

        assert len(set(addresses)) == 5
        assert WalletAddress.query.filter_by(status=WalletStatus.ASSIGNED).count() == 5

    def test_assignment_fields(self, pool, seed_wallets) -> None:
        seed_wallets(1)
        wallet = pool.acquire(purchase_id=42, user_id=7, expected_amount="100", now=NOW)

        assert wallet.status == WalletStatus.ASSIGNED
        assert wallet.assigned_purchase_id == 42
        assert wallet.assignment_expires_at == NOW + timedelta(hours=24)
        assert wallet.shown_count == 1
        assert WalletAssignment.query.filter_by(wallet_id=wallet.id, purchase_id=42).count() == 1

    def test_exhausted_pool_raises(self, pool, seed_wallets) -> None:
        seed_wallets(2)
        pool.acquire(purchase_id=1, now=NOW)
        pool.acquire(purchase_id=2, now=NOW)

        with pytest.raises(NoWalletAvailableError) as exc:
            pool.acquire(purchase_id=3, now=NOW)
        assert exc.value.code == "ERR_NO_WALLET_AVAILABLE"

    def test_filters_network_and_currency(self, pool, seed_wallets) -> None:
        seed_wallets(1, network="TRC20")
        with pytest.raises(NoWalletAvailableError):
            pool.acquire(purchase_id=1, now=NOW)
        wallet = pool.acquire(network="TRC20", purchase_id=1, now=NOW)
        assert wallet.network == "TRC20"

    def test_claim_is_compare_and_swap(self, pool, seed_wallets) -> None:
        wallet = seed_wallets(1)[0]
        expires = NOW + timedelta(hours=1)
        assert pool._claim(wallet.id, NOW, expires, 1, 1, None) is True
        assert pool._claim(wallet.id, NOW, expires, 2, 1, None) is False

    def test_more_acquirers_than_wallets(self, pool, seed_wallets) -> None:
        seed_wallets(3)
        assigned, refused = [], []
        for purchase_id in range(1, 6):
            try:
                assigned.append(pool.acquire(purchase_id=purchase_id, now=NOW).address)
            except NoWalletAvailableError as e:
                refused.append(e.code)

        assert len(assigned) == len(set(assigned)) == 3
        assert refused == ["ERR_NO_WALLET_AVAILABLE"] * 2
        assert WalletAddress.query.filter_by(status=WalletStatus.ASSIGNED).count() == 3

    def test_lost_claim_reselects(self, seed_wallets) -> None:
        seed_wallets(2)
        policy = ClaimedElsewherePolicy()
        pool = WalletPool(policy=policy)

        wallet = pool.acquire(purchase_id=1, now=NOW)

        assert policy.calls == 2
        assert wallet.address != policy.taken.address
        assert wallet.assigned_purchase_id == 1
        assert db.session.get(WalletAddress, policy.taken.id).assigned_purchase_id == 999

    def test_lost_claim_on_last_wallet_raises(self, seed_wallets) -> None:
        seed_wallets(1)
        pool = WalletPool(policy=ClaimedElsewherePolicy())

        with pytest.raises(NoWalletAvailableError):
            pool.acquire(purchase_id=1, now=NOW)
        assert WalletAssignment.query.filter_by(purchase_id=1).count() == 0



class TestReleaseAndRecovery:

    def test_release_moves_to_cooldown(self, pool, seed_wallets) -> None:
        seed_wallets(1)
        wallet = pool.acquire(purchase_id=1, now=NOW)

        assert pool.release(wallet.address, now=NOW) is True
        wallet = db.session.get(WalletAddress, wallet.id, populate_existing=True)
        assert wallet.status == WalletStatus.COOLDOWN
        assert wallet.cooldown_until == NOW + timedelta(minutes=15)
        assert wallet.assigned_purchase_id is None

    def test_release_unassigned_is_noop(self, pool, seed_wallets) -> None:
        wallet = seed_wallets(1)[0]
        assert pool.release(wallet.address, now=NOW) is False

    def test_release_unknown_address_raises(self, pool) -> None:
        with pytest.raises(WalletPoolError):
            pool.release(wallet_address(999), now=NOW)

    def test_release_guarded_by_purchase(self, pool, seed_wallets) -> None:
        seed_wallets(1)
        wallet = pool.acquire(purchase_id=1, now=NOW)
        assert pool.release(wallet.address, now=NOW, purchase_id=2) is False
        assert pool.release(wallet.address, now=NOW, purchase_id=1) is True

    def test_exhaustion_then_recovery_with_zero_cooldown(self, pool, seed_wallets) -> None:
        seed_wallets(1)
        wallet = pool.acquire(purchase_id=1, now=NOW)
        with pytest.raises(NoWalletAvailableError):
            pool.acquire(purchase_id=2, now=NOW)

        pool.release(wallet.address, cooldown_minutes=0, now=NOW)
        again = pool.acquire(purchase_id=2, now=NOW)
        assert again.address == wallet.address
        assert again.assigned_purchase_id == 2

    def test_cooldown_blocks_until_elapsed(self, pool, seed_wallets) -> None:
        seed_wallets(1)
        wallet = pool.acquire(purchase_id=1, now=NOW)
        pool.release(wallet.address, now=NOW)

        with pytest.raises(NoWalletAvailableError):
            pool.acquire(purchase_id=2, now=NOW + timedelta(minutes=10))
        assert pool.acquire(purchase_id=2, now=NOW + timedelta(minutes=15)).address == wallet.address


class TestExpiry:

    def test_expired_assignment_reclaimed(self, pool, seed_wallets) -> None:
        seed_wallets(1)
        wallet = pool.acquire(purchase_id=1, now=NOW)

        result = pool.reconcile_expired(now=NOW + timedelta(hours=25))

        assert result["expired"] == [{"wallet_id": wallet.id, "address": wallet.address, "purchase_id": 1}]
        # expired at +24h, cooldown 15m, so already available at +25h
        assert result["recovered"] == 1
        wallet = db.session.get(WalletAddress, wallet.id, populate_existing=True)
        assert wallet.status == WalletStatus.AVAILABLE
        history = WalletAssignment.query.filter_by(wallet_id=wallet.id).one()
        assert history.outcome == "expired"

    def test_live_assignment_untouched(self, pool, seed_wallets) -> None:
        seed_wallets(1)
        pool.acquire(purchase_id=1, now=NOW)
        result = pool.reconcile_expired(now=NOW + timedelta(hours=1))
        assert result == {"expired": [], "recovered": 0}

    def test_acquire_reclaims_lazily(self, pool, seed_wallets) -> None:
        seed_wallets(1)
        first = pool.acquire(purchase_id=1, now=NOW)
        second = pool.acquire(purchase_id=2, now=NOW + timedelta(hours=30))
        assert second.address == first.address


class TestAdministration:

    def test_provision_skips_duplicates_and_invalid(self, pool) -> None:
        stats = pool.provision([wallet_address(1), wallet_address(1), "not-an-address", "", wallet_address(2)])
        assert stats == {"created": 2, "skipped": 1, "invalid": ["not-an-address"]}

    def test_disable_and_enable(self, pool, seed_wallets) -> None:
        wallet = seed_wallets(1)[0]
        assert pool.disable(wallet.address, "compromised") is True
        with pytest.raises(NoWalletAvailableError):
            pool.acquire(purchase_id=1, now=NOW)
        assert pool.enable(wallet.address) is True
        assert pool.acquire(purchase_id=1, now=NOW).address == wallet.address

    def test_assigned_wallet_cannot_be_disabled(self, pool, seed_wallets) -> None:
        seed_wallets(1)
        wallet = pool.acquire(purchase_id=1, now=NOW)
        assert pool.disable(wallet.address) is False

    def test_pool_stats(self, pool, seed_wallets) -> None:
        seed_wallets(4)
        pool.acquire(purchase_id=1, now=NOW)
        stats = pool.pool_stats()
        assert stats["total"] == 4
        assert stats["by_status"]["assigned"] == 1
        assert stats["availability"] == 0.75


class TestPolicies:

    def test_lrs_prefers_never_shown_then_oldest(self, app) -> None:
        never = WalletAddress(id=3, address="c", last_shown_at=None, shown_count=0)
        old = WalletAddress(id=1, address="a", last_shown_at=NOW - timedelta(days=2), shown_count=5)
        recent = WalletAddress(id=2, address="b", last_shown_at=NOW, shown_count=1)

        assert LRSPolicy().choose([recent, old, never]) is never
        assert LRSPolicy().choose([recent, old]) is old

    def test_lrs_rotates_through_pool(self, pool, seed_wallets) -> None:
        seed_wallets(3)
        seen = []
        for i in range(3):
            wallet = pool.acquire(purchase_id=i + 1, now=NOW + timedelta(minutes=i))
            seen.append(wallet.address)
            pool.release(wallet.address, cooldown_minutes=0, now=NOW + timedelta(minutes=i))
        assert len(set(seen)) == 3

    def test_random_policy_picks_a_candidate(self) -> None:
        assert RandomPolicy().choose(["a", "b"]) in ("a", "b")
        assert RandomPolicy().choose([]) is None

    def test_build_policy(self) -> None:
        assert build_policy("LRS").name == "lrs"
        assert build_policy(None).name == "random"
        with pytest.raises(ValueError):
            build_policy("round-robin")
