"""Tests for the purchase lifecycle: open, confirm fan-out, expiry."""

from datetime import timedelta
from decimal import Decimal

import pytest

from extensions import db
from models import (
    BenefitSchedule, Commission, Purchase, PurchaseStatus, WalletAddress, WalletStatus,
)
from purchases.service import PurchaseError, PurchaseStateError
from wallets.pool import NoWalletAvailableError
from conftest import T0


class TestOpenPurchase:

    def test_assigns_wallet(self, core, make_user, seed_wallets, package) -> None:
        seed_wallets(2)
        user = make_user()

        purchase = core.purchases.open_purchase(user.id, package_code="starter", now=T0)

        assert purchase.status == PurchaseStatus.PENDING
        assert purchase.amount == Decimal("100.00")
        assert purchase.expires_at == T0 + timedelta(hours=24)
        wallet = WalletAddress.query.filter_by(address=purchase.wallet_address).one()
        assert wallet.status == WalletStatus.ASSIGNED
        assert wallet.assigned_purchase_id == purchase.id

    def test_no_wallet_leaves_no_purchase(self, core, make_user) -> None:
        user = make_user()
        with pytest.raises(NoWalletAvailableError):
            core.purchases.open_purchase(user.id, amount="50", now=T0)
        assert Purchase.query.count() == 0

    def test_rejects_bad_input(self, core, make_user, seed_wallets) -> None:
        seed_wallets(1)
        user = make_user()
        with pytest.raises(PurchaseError):
            core.purchases.open_purchase(user.id, package_code="missing", now=T0)
        with pytest.raises(PurchaseError):
            core.purchases.open_purchase(user.id, amount="0", now=T0)
        with pytest.raises(PurchaseError):
            core.purchases.open_purchase(9999, amount="10", now=T0)


class TestConfirm:

    def test_fans_out(self, core, make_user, seed_wallets) -> None:
        seed_wallets(1)
        parent = make_user()
        buyer = make_user(referrer=parent)
        purchase = core.purchases.open_purchase(buyer.id, amount="100", now=T0)

        result = core.purchases.confirm(purchase.id, tx_hash="0xabc", confirmed_at=T0 + timedelta(hours=1))

        assert result["errors"] == []
        assert result["wallet_released"] is True
        assert result["schedules"] == 5
        assert len(result["commissions"]) == 1
        assert db.session.get(Purchase, purchase.id).status == PurchaseStatus.CONFIRMED
        wallet = WalletAddress.query.filter_by(address=purchase.wallet_address).one()
        assert wallet.status == WalletStatus.COOLDOWN

    def test_confirm_twice_is_idempotent(self, core, make_user, seed_wallets) -> None:
        seed_wallets(1)
        parent = make_user()
        buyer = make_user(referrer=parent)
        purchase = core.purchases.open_purchase(buyer.id, amount="100", now=T0)

        core.purchases.confirm(purchase.id, confirmed_at=T0 + timedelta(hours=1))
        again = core.purchases.confirm(purchase.id, confirmed_at=T0 + timedelta(hours=2))

        assert again["already_confirmed"] is True
        assert again["wallet_released"] is False
        assert BenefitSchedule.query.count() == 5
        assert Commission.query.count() == 1

    def test_commission_failure_does_not_undo_sale(self, core, make_user, seed_wallets, monkeypatch) -> None:
        def boom(purchase, commit=True):
            raise RuntimeError("referral tree unavailable")

        seed_wallets(1)
        buyer = make_user(referrer=make_user())
        purchase = core.purchases.open_purchase(buyer.id, amount="100", now=T0)
        monkeypatch.setattr(core.commissions, "on_purchase_confirmed", boom)

        result = core.purchases.confirm(purchase.id, confirmed_at=T0)

        assert result["schedules"] == 5
        assert len(result["errors"]) == 1
        assert db.session.get(Purchase, purchase.id).status == PurchaseStatus.CONFIRMED

    def test_expired_purchase_cannot_be_confirmed(self, core, make_user, seed_wallets) -> None:
        seed_wallets(1)
        purchase = core.purchases.open_purchase(make_user().id, amount="100", now=T0)
        core.purchases.expire_purchases([purchase.id], now=T0 + timedelta(hours=25))

        with pytest.raises(PurchaseStateError):
            core.purchases.confirm(purchase.id)

    def test_backfills_missing_schedules(self, core, make_user, make_confirmed_purchase) -> None:
        make_confirmed_purchase(make_user())
        stats = core.purchases.schedule_unscheduled()
        assert stats["created"] == 1
        assert core.purchases.schedule_unscheduled()["processed"] == 0


class TestExpiry:

    def test_expire_overdue(self, core, make_user, seed_wallets) -> None:
        seed_wallets(2)
        user = make_user()
        stale = core.purchases.open_purchase(user.id, amount="10", now=T0)
        fresh = core.purchases.open_purchase(user.id, amount="10", now=T0 + timedelta(hours=20))

        assert core.purchases.expire_overdue(now=T0 + timedelta(hours=25)) == 1
        assert db.session.get(Purchase, stale.id).status == PurchaseStatus.EXPIRED
        assert db.session.get(Purchase, fresh.id).status == PurchaseStatus.PENDING
