from datetime import timedelta
from decimal import Decimal
from typing import Dict, Any, List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import Purchase, PurchaseStatus, PackageCatalog, BenefitSchedule, User
from wallets.pool import WalletPoolError
from utils import utcnow, as_naive_utc, money

logger = logging.getLogger(__name__)


class PurchaseError(Exception):
    """Base purchase exception"""
    pass

class PurchaseStateError(PurchaseError):
    pass


class PurchaseService:
    """
    Purchase lifecycle around the financial core.

    ``open_purchase`` reserves a collection address, ``confirm`` consumes the
    payment-confirmed event and fans out to the pool, the benefit engine and
    the commission engine. Each fan-out step is isolated: a commission
    failure is reported but never undoes the sale.
    """

    def __init__(self, pool, benefits, commissions):
        self.pool = pool
        self.benefits = benefits
        self.commissions = commissions

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------
    def open_purchase(self, user_id: int, package_code: Optional[str] = None,
                      amount=None, now=None) -> Purchase:
        now = as_naive_utc(now) or utcnow()
        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            raise PurchaseError(f"User {user_id} not found or inactive")

        package = None
        if package_code:
            package = PackageCatalog.query.filter_by(code=package_code, is_active=True).first()
            if package is None:
                raise PurchaseError(f"Package {package_code} not available")
            amount = package.price
        if amount is None or money(amount) <= Decimal("0"):
            raise PurchaseError("Purchase amount must be positive")

        purchase = Purchase(
            user_id=user.id,
            package_id=package.id if package else None,
            amount=money(amount),
            currency=self.pool.currency,
            network=self.pool.network,
            status=PurchaseStatus.PENDING,
        )
        db.session.add(purchase)
        db.session.flush()

        # NoWalletAvailableError propagates; the caller tells the user to retry shortly
        try:
            wallet = self.pool.acquire(
                purchase_id=purchase.id,
                user_id=user.id,
                expected_amount=purchase.amount,
                now=now,
                commit=False,
            )
        except WalletPoolError:
            db.session.rollback()
            raise

        purchase.wallet_address = wallet.address
        purchase.expires_at = wallet.assignment_expires_at
        db.session.commit()
        logger.info(f"Purchase {purchase.id} opened for user {user.id}: {purchase.amount} to {wallet.address}")
        return purchase

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------
    def confirm(self, purchase_id: int, tx_hash: Optional[str] = None, confirmed_at=None) -> Dict[str, Any]:
        confirmed_at = as_naive_utc(confirmed_at) or utcnow()
        purchase = db.session.get(Purchase, purchase_id, with_for_update=True)
        if purchase is None:
            raise PurchaseError(f"Purchase {purchase_id} not found")

        result = {
            'purchase_id': purchase_id,
            'already_confirmed': False,
            'wallet_released': False,
            'schedules': 0,
            'commissions': [],
            'errors': [],
        }

        if purchase.status in (PurchaseStatus.CONFIRMED, PurchaseStatus.COMPLETED):
            result['already_confirmed'] = True
        elif purchase.status != PurchaseStatus.PENDING:
            raise PurchaseStateError(f"Purchase {purchase_id} is {purchase.status.value}, cannot confirm")
        else:
            purchase.status = PurchaseStatus.CONFIRMED
            purchase.confirmed_at = confirmed_at
            if tx_hash:
                purchase.tx_hash = tx_hash
            db.session.commit()
            logger.info(f"Purchase {purchase_id} confirmed at {confirmed_at.isoformat()}")

        if purchase.wallet_address and not result['already_confirmed']:
            try:
                result['wallet_released'] = self.pool.release(
                    purchase.wallet_address, outcome="confirmed", now=confirmed_at, purchase_id=purchase.id
                )
            except (WalletPoolError, SQLAlchemyError) as e:
                db.session.rollback()
                result['errors'].append(f"wallet release: {e}")
                logger.error(f"Purchase {purchase_id}: wallet release failed: {e}")

        try:
            result['schedules'] = len(self.benefits.on_purchase_confirmed(purchase))
        except Exception as e:
            db.session.rollback()
            result['errors'].append(f"benefit schedules: {e}")
            logger.error(f"Purchase {purchase_id}: benefit schedule creation failed: {e}")

        try:
            records = self.commissions.on_purchase_confirmed(purchase)
            result['commissions'] = [r.to_dict() for r in records]
        except Exception as e:
            db.session.rollback()
            result['errors'].append(f"commissions: {e}")
            logger.error(f"Purchase {purchase_id}: commission computation failed: {e}")

        return result

    def schedule_unscheduled(self, limit: int = 50) -> Dict[str, Any]:
        """Create schedules for confirmed purchases that missed them (crash between steps)."""
        stats = {'processed': 0, 'created': 0, 'errors': []}
        missing = (Purchase.query
                   .outerjoin(BenefitSchedule, BenefitSchedule.purchase_id == Purchase.id)
                   .filter(Purchase.status == PurchaseStatus.CONFIRMED,
                           BenefitSchedule.id.is_(None))
                   .order_by(Purchase.confirmed_at)
                   .limit(limit)
                   .all())
        for purchase in missing:
            stats['processed'] += 1
            try:
                self.benefits.on_purchase_confirmed(purchase)
                stats['created'] += 1
            except Exception as e:
                db.session.rollback()
                stats['errors'].append(f"purchase {purchase.id}: {e}")
                logger.error(f"Backfilling schedules for purchase {purchase.id} failed: {e}")
        return stats

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------
    def expire_purchases(self, purchase_ids: List[int], now=None) -> int:
        """Pending purchases whose address hold lapsed become expired."""
        now = as_naive_utc(now) or utcnow()
        expired = 0
        for purchase_id in purchase_ids:
            if purchase_id is None:
                continue
            purchase = db.session.get(Purchase, purchase_id, with_for_update=True)
            if purchase is None or purchase.status != PurchaseStatus.PENDING:
                continue
            purchase.status = PurchaseStatus.EXPIRED
            expired += 1
            logger.info(f"Purchase {purchase_id} expired, payment window closed at {now.isoformat()}")
        db.session.commit()
        return expired

    def expire_overdue(self, now=None, grace=timedelta(0)) -> int:
        now = as_naive_utc(now) or utcnow()
        ids = [row[0] for row in (
            db.session.query(Purchase.id)
            .filter(Purchase.status == PurchaseStatus.PENDING,
                    Purchase.expires_at.isnot(None),
                    Purchase.expires_at <= now - grace)
            .all()
        )]
        return self.expire_purchases(ids, now=now)
