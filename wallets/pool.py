from datetime import timedelta
from typing import Dict, Any, List, Optional
import logging

from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import WalletAddress, WalletAssignment, WalletStatus
from utils import utcnow, money, validate_wallet_address
from wallets.policies import RandomPolicy

logger = logging.getLogger(__name__)

# ==========================================================
#                  EXCEPTIONS
# ==========================================================
class WalletPoolError(Exception):
    """Base wallet pool exception"""
    pass

class NoWalletAvailableError(WalletPoolError):
    code = "ERR_NO_WALLET_AVAILABLE"

    def __init__(self, network, currency):
        self.network = network
        self.currency = currency
        super().__init__(f"No wallet currently available for {currency}/{network}, try again shortly")


# ==========================================================
#                  WALLET POOL
# ==========================================================
class WalletPool:
    """
    Shared pool of collection addresses.

    Every status change goes through a conditional UPDATE guarded on the
    current status, so two acquirers can never hold the same address.
    Expired assignments are reclaimed lazily on the next acquire.
    """

    def __init__(self, policy=None, network="BEP20", currency="USDT", purpose="collection",
                 assignment_ttl_hours=24, cooldown_minutes=15, max_attempts=2):
        self.policy = policy or RandomPolicy()
        self.network = network
        self.currency = currency
        self.purpose = purpose
        self.assignment_ttl = timedelta(hours=assignment_ttl_hours)
        self.cooldown_minutes = cooldown_minutes
        self.max_attempts = max_attempts

    # ------------------------------------------------------------------
    # acquire / release
    # ------------------------------------------------------------------
    def acquire(self, network=None, currency=None, purchase_id=None, user_id=None,
                expected_amount=None, ttl_hours=None, now=None, commit=True) -> WalletAddress:
        network = network or self.network
        currency = currency or self.currency
        now = now or utcnow()
        ttl = timedelta(hours=ttl_hours) if ttl_hours is not None else self.assignment_ttl

        self.reconcile_expired(now=now, commit=False)

        for attempt in range(1, self.max_attempts + 1):
            candidates = self._available(network, currency)
            chosen = self.policy.choose(candidates)
            if chosen is None:
                break

            if self._claim(chosen.id, now, now + ttl, purchase_id, user_id, expected_amount):
                db.session.add(WalletAssignment(
                    wallet_id=chosen.id,
                    purchase_id=purchase_id,
                    user_id=user_id,
                    assigned_at=now,
                    expires_at=now + ttl,
                ))
                if commit:
                    db.session.commit()
                else:
                    db.session.flush()
                wallet = db.session.get(WalletAddress, chosen.id, populate_existing=True)
                logger.info(
                    f"Wallet {wallet.address} assigned to purchase {purchase_id} "
                    f"until {wallet.assignment_expires_at} ({self.policy.name} policy)"
                )
                return wallet

            logger.warning(f"Wallet {chosen.id} claimed concurrently (attempt {attempt}), reselecting")

        if commit:
            db.session.commit()
        logger.error(f"Wallet pool exhausted for {currency}/{network}")
        raise NoWalletAvailableError(network, currency)

    def release(self, address: str, cooldown_minutes: Optional[int] = None,
                outcome: str = "released", now=None, purchase_id: Optional[int] = None,
                commit=True) -> bool:
        """
        assigned -> cooldown. Returns False when the address was not assigned
        (or, with ``purchase_id``, not assigned to that purchase).
        """
        now = now or utcnow()
        minutes = self.cooldown_minutes if cooldown_minutes is None else cooldown_minutes
        wallet = WalletAddress.query.filter_by(address=address).first()
        if wallet is None:
            raise WalletPoolError(f"Unknown wallet address {address}")

        released = self._to_cooldown(wallet.id, now + timedelta(minutes=max(minutes, 0)),
                                     expected_purchase_id=purchase_id)
        if released:
            self._close_assignment(wallet.id, now, outcome)
            logger.info(f"Wallet {address} released ({outcome}), cooldown {minutes}m")
        else:
            logger.info(f"Wallet {address} release ignored, not assigned")

        if commit:
            db.session.commit()
        return released

    def reconcile_expired(self, now=None, commit=True) -> Dict[str, Any]:
        """
        Reclaim expired assignments and finished cooldowns.

        An expired assignment goes through the normal release path (cooldown
        counted from its expiry), so one that expired long ago becomes
        available in the same pass.
        """
        now = now or utcnow()
        expired = []

        rows = (db.session.query(WalletAddress.id, WalletAddress.address, WalletAddress.assigned_purchase_id,
                                 WalletAddress.assignment_expires_at)
                .filter(WalletAddress.status == WalletStatus.ASSIGNED,
                        WalletAddress.assignment_expires_at <= now)
                .all())
        for wallet_id, address, purchase_id, expires_at in rows:
            cooldown_until = expires_at + timedelta(minutes=self.cooldown_minutes)
            if self._to_cooldown(wallet_id, cooldown_until, expected_expiry=expires_at):
                self._close_assignment(wallet_id, now, "expired")
                expired.append({"wallet_id": wallet_id, "address": address, "purchase_id": purchase_id})
                logger.info(f"Wallet {address} assignment expired (purchase {purchase_id})")

        result = db.session.execute(
            update(WalletAddress)
            .where(WalletAddress.status == WalletStatus.COOLDOWN,
                   WalletAddress.cooldown_until <= now)
            .values(status=WalletStatus.AVAILABLE, cooldown_until=None)
            .execution_options(synchronize_session=False)
        )
        recovered = result.rowcount or 0

        if commit:
            db.session.commit()
        else:
            db.session.flush()
        if expired or recovered:
            logger.info(f"Wallet reconcile: {len(expired)} expired, {recovered} back to available")
        return {"expired": expired, "recovered": recovered}

    # ------------------------------------------------------------------
    # Provisioning & administration
    # ------------------------------------------------------------------
    def provision(self, addresses: List[str], network=None, currency=None) -> Dict[str, Any]:
        network = network or self.network
        currency = currency or self.currency
        stats = {"created": 0, "skipped": 0, "invalid": []}

        for raw in addresses:
            address = (raw or "").strip()
            if not address:
                continue
            if not validate_wallet_address(address):
                stats["invalid"].append(address)
                continue
            if WalletAddress.query.filter_by(address=address).first():
                stats["skipped"] += 1
                continue
            try:
                with db.session.begin_nested():
                    db.session.add(WalletAddress(
                        address=address,
                        network=network,
                        currency=currency,
                        purpose=self.purpose,
                        status=WalletStatus.AVAILABLE,
                    ))
                    db.session.flush()
                stats["created"] += 1
            except IntegrityError:
                stats["skipped"] += 1

        db.session.commit()
        logger.info(
            f"Provisioned {stats['created']} wallets ({stats['skipped']} existing, "
            f"{len(stats['invalid'])} invalid) for {currency}/{network}"
        )
        return stats

    def disable(self, address: str, reason: str = "") -> bool:
        result = db.session.execute(
            update(WalletAddress)
            .where(WalletAddress.address == address,
                   WalletAddress.status.in_([WalletStatus.AVAILABLE, WalletStatus.COOLDOWN]))
            .values(status=WalletStatus.DISABLED, disabled_reason=reason or None, cooldown_until=None)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if result.rowcount != 1:
            logger.warning(f"Wallet {address} not disabled (unknown or currently assigned)")
            return False
        logger.info(f"Wallet {address} disabled: {reason}")
        return True

    def enable(self, address: str) -> bool:
        result = db.session.execute(
            update(WalletAddress)
            .where(WalletAddress.address == address,
                   WalletAddress.status == WalletStatus.DISABLED)
            .values(status=WalletStatus.AVAILABLE, disabled_reason=None)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    def pool_stats(self, network=None, currency=None) -> Dict[str, Any]:
        network = network or self.network
        currency = currency or self.currency
        counts = dict(
            db.session.query(WalletAddress.status, func.count(WalletAddress.id))
            .filter(WalletAddress.network == network,
                    WalletAddress.currency == currency,
                    WalletAddress.purpose == self.purpose)
            .group_by(WalletAddress.status)
            .all()
        )
        by_status = {status.value: counts.get(status, 0) for status in WalletStatus}
        total = sum(by_status.values())
        usable = total - by_status[WalletStatus.DISABLED.value]
        availability = (by_status[WalletStatus.AVAILABLE.value] / usable) if usable else 0.0
        return {
            "network": network,
            "currency": currency,
            "total": total,
            "by_status": by_status,
            "availability": round(availability, 4),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _available(self, network, currency):
        return (WalletAddress.query
                .filter(WalletAddress.network == network,
                        WalletAddress.currency == currency,
                        WalletAddress.purpose == self.purpose,
                        WalletAddress.status == WalletStatus.AVAILABLE)
                .populate_existing()
                .all())

    def _claim(self, wallet_id, now, expires_at, purchase_id, user_id, expected_amount) -> bool:
        result = db.session.execute(
            update(WalletAddress)
            .where(WalletAddress.id == wallet_id,
                   WalletAddress.status == WalletStatus.AVAILABLE)
            .values(
                status=WalletStatus.ASSIGNED,
                assigned_purchase_id=purchase_id,
                assigned_user_id=user_id,
                assigned_at=now,
                assignment_expires_at=expires_at,
                expected_amount=money(expected_amount) if expected_amount is not None else None,
                cooldown_until=None,
                last_shown_at=now,
                shown_count=WalletAddress.shown_count + 1,
                total_assigned=WalletAddress.total_assigned + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _to_cooldown(self, wallet_id, cooldown_until, expected_expiry=None, expected_purchase_id=None) -> bool:
        stmt = (update(WalletAddress)
                .where(WalletAddress.id == wallet_id,
                       WalletAddress.status == WalletStatus.ASSIGNED))
        if expected_expiry is not None:
            # Do not reclaim an address that was re-assigned since it was read
            stmt = stmt.where(WalletAddress.assignment_expires_at == expected_expiry)
        if expected_purchase_id is not None:
            stmt = stmt.where(WalletAddress.assigned_purchase_id == expected_purchase_id)
        result = db.session.execute(
            stmt.values(
                status=WalletStatus.COOLDOWN,
                cooldown_until=cooldown_until,
                assigned_purchase_id=None,
                assigned_user_id=None,
                assigned_at=None,
                assignment_expires_at=None,
                expected_amount=None,
            ).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _close_assignment(self, wallet_id, now, outcome):
        assignment = (WalletAssignment.query
                      .filter_by(wallet_id=wallet_id, released_at=None)
                      .order_by(WalletAssignment.id.desc())
                      .first())
        if assignment is not None:
            assignment.released_at = now
            assignment.outcome = outcome
