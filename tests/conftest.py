"""Shared fixtures: an app on in-memory SQLite with the core services wired in."""

import os

# config.py reads the environment at import time and refuses a production run without SECRET_KEY
os.environ.setdefault("FLASK_ENV", "testing")
os.environ.setdefault("SECRET_KEY", "testing")

from datetime import datetime
from decimal import Decimal

import pytest

from app import create_app
from config import TestingConfig
from core import get_core
from extensions import db
from models import User, Purchase, PurchaseStatus, PackageCatalog, WalletAddress, WalletStatus


T0 = datetime(2026, 1, 1, 10, 0, 0)


def wallet_address(n: int) -> str:
    return "0x" + format(n, "040x")


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def core(app):
    return get_core(app)


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(referrer=None, cohort=None, username=None):
        counter["n"] += 1
        user = User(
            username=username or f"user{counter['n']}",
            email=f"user{counter['n']}@example.com",
            referred_by=referrer.id if referrer is not None else None,
            cohort_id=cohort.id if cohort is not None else None,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def make_confirmed_purchase(app):
    def _make(user, amount="100.00", confirmed_at=T0, package=None):
        purchase = Purchase(
            user_id=user.id,
            package_id=package.id if package is not None else None,
            amount=Decimal(amount),
            status=PurchaseStatus.CONFIRMED,
            confirmed_at=confirmed_at,
        )
        db.session.add(purchase)
        db.session.commit()
        return purchase

    return _make


@pytest.fixture
def seed_wallets(app):
    def _seed(count, network="BEP20", currency="USDT", start=1):
        wallets = []
        for n in range(start, start + count):
            wallet = WalletAddress(
                address=wallet_address(n),
                network=network,
                currency=currency,
                status=WalletStatus.AVAILABLE,
            )
            db.session.add(wallet)
            wallets.append(wallet)
        db.session.commit()
        return wallets

    return _seed


@pytest.fixture
def package(app):
    package = PackageCatalog(code="starter", name="Starter", price=Decimal("100.00"))
    db.session.add(package)
    db.session.commit()
    return package
