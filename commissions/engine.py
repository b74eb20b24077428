from datetime import timedelta
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple
import logging

from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (
    User, Purchase, PurchaseStatus, Commission, CommissionTier, CommissionStatus, EntryKind,
)
from commissions.strategies import select_strategy, load_cohort
from ledger.keys import (
    commission_direct_key, commission_parent_key, referral_key, parent_bonus_key,
)
from utils import utcnow, as_naive_utc, money

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class CommissionError(Exception):
    """Base commission exception"""
    pass

class CommissionStateError(CommissionError):
    pass


ALLOWED_TRANSITIONS = {
    CommissionStatus.PENDING: {CommissionStatus.AVAILABLE, CommissionStatus.CANCELLED},
    CommissionStatus.AVAILABLE: {CommissionStatus.PAID, CommissionStatus.CANCELLED},
    CommissionStatus.PAID: set(),
    CommissionStatus.CANCELLED: set(),
}

LEDGER_KIND = {
    CommissionTier.DIRECT: EntryKind.DIRECT_REFERRAL_COMMISSION,
    CommissionTier.PARENT_BONUS: EntryKind.PARENT_BONUS_COMMISSION,
}


class CommissionEngine:
    """
    Two-tier referral commissions.

    Amounts are fixed once, when the purchase is confirmed, as pending
    records with an unlock date. ``unlock_tick`` later credits the ledger
    and moves due records to available; withdrawal is handled elsewhere.
    """

    def __init__(self, ledger, cohort_loader=load_cohort):
        self.ledger = ledger
        self.cohort_loader = cohort_loader

    # ==================================================================
    # Confirmation
    # ==================================================================
    def on_purchase_confirmed(self, purchase: Purchase, commit: bool = True) -> List[Commission]:
        if purchase.status not in (PurchaseStatus.CONFIRMED, PurchaseStatus.COMPLETED) or purchase.confirmed_at is None:
            raise CommissionError(f"Purchase {purchase.id} is not confirmed")

        existing = Commission.query.filter_by(purchase_id=purchase.id).order_by(Commission.id).all()
        if existing:
            return existing

        buyer = purchase.user
        if buyer is None or buyer.referred_by is None:
            logger.debug(f"Purchase {purchase.id}: buyer has no referrer, no commissions")
            return []

        direct_referrer = db.session.get(User, buyer.referred_by)
        if direct_referrer is None or not direct_referrer.is_active:
            logger.warning(f"Purchase {purchase.id}: referrer {buyer.referred_by} missing or inactive")
            return []

        strategy = select_strategy(buyer, self.cohort_loader)
        rates = strategy.rates()
        logger.info(
            f"Purchase {purchase.id}: {strategy.name} commission rates "
            f"(direct {rates.direct_rate}/{rates.direct_unlock_days}d, "
            f"parent {rates.parent_rate}/{rates.parent_unlock_days}d)"
        )

        records = []
        direct, created = self._create_record(
            purchase=purchase,
            recipient_id=direct_referrer.id,
            source_user_id=buyer.id,
            tier=CommissionTier.DIRECT,
            rate=rates.direct_rate,
            unlock_days=rates.direct_unlock_days,
            idempotency_key=commission_direct_key(purchase.id),
            strategy=strategy.name,
        )
        if direct is not None:
            records.append(direct)

        parent_bonus = self._parent_bonus(purchase, buyer, direct_referrer, rates, strategy.name)
        if parent_bonus is not None:
            records.append(parent_bonus)

        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return records

    def _parent_bonus(self, purchase, buyer, direct_referrer, rates, strategy_name) -> Optional[Commission]:
        if direct_referrer.referred_by is None:
            return None

        if self.has_prior_confirmed_purchase(direct_referrer.id, purchase):
            logger.info(
                f"Purchase {purchase.id}: referrer {direct_referrer.id} already activated, no parent bonus"
            )
            return None

        parent = db.session.get(User, direct_referrer.referred_by)
        if parent is None or not parent.is_active:
            logger.info(f"Purchase {purchase.id}: parent referrer missing or inactive, no parent bonus")
            return None

        record, created = self._create_record(
            purchase=purchase,
            recipient_id=parent.id,
            source_user_id=buyer.id,
            tier=CommissionTier.PARENT_BONUS,
            rate=rates.parent_rate,
            unlock_days=rates.parent_unlock_days,
            idempotency_key=commission_parent_key(direct_referrer.id),
            strategy=strategy_name,
        )
        if not created:
            # Another purchase already claimed this referrer's one parent bonus
            return None
        return record

    @staticmethod
    def has_prior_confirmed_purchase(user_id: int, purchase: Purchase) -> bool:
        count = (db.session.query(func.count(Purchase.id))
                 .filter(Purchase.user_id == user_id,
                         Purchase.id != purchase.id,
                         Purchase.status.in_([PurchaseStatus.CONFIRMED, PurchaseStatus.COMPLETED]),
                         Purchase.confirmed_at <= purchase.confirmed_at)
                 .scalar())
        return count > 0

    def _create_record(self, purchase, recipient_id, source_user_id, tier, rate, unlock_days,
                       idempotency_key, strategy) -> Tuple[Optional[Commission], bool]:
        existing = Commission.query.filter_by(idempotency_key=idempotency_key).first()
        if existing is not None:
            return existing, False

        base_amount = money(purchase.amount)
        amount = money(base_amount * Decimal(str(rate)))
        if amount <= ZERO:
            logger.info(f"Purchase {purchase.id}: {tier.value} commission is zero, skipped")
            return None, False

        record = Commission(
            recipient_id=recipient_id,
            source_user_id=source_user_id,
            purchase_id=purchase.id,
            package_id=purchase.package_id,
            tier=tier,
            rate=rate,
            base_amount=base_amount,
            amount=amount,
            status=CommissionStatus.PENDING,
            unlock_date=as_naive_utc(purchase.confirmed_at) + timedelta(days=unlock_days),
            strategy=strategy,
            idempotency_key=idempotency_key,
        )
        try:
            with db.session.begin_nested():
                db.session.add(record)
                db.session.flush()
        except IntegrityError:
            winner = Commission.query.filter_by(idempotency_key=idempotency_key).first()
            return winner, False

        logger.info(
            f"Commission {record.id}: {tier.value} {amount} to user {recipient_id} "
            f"from purchase {purchase.id}, unlocks {record.unlock_date.isoformat()}"
        )
        return record, True

    # ==================================================================
    # Unlock sweep
    # ==================================================================
    def unlock_tick(self, as_of=None) -> Dict[str, Any]:
        as_of = as_naive_utc(as_of) or utcnow()
        stats = {
            'processed': 0,
            'promoted': 0,
            'still_pending': 0,
            'failed': 0,
            'errors': [],
            'total_amount': ZERO,
        }

        due_ids = [row[0] for row in (
            db.session.query(Commission.id)
            .filter(Commission.status == CommissionStatus.PENDING,
                    Commission.unlock_date <= as_of)
            .order_by(Commission.unlock_date, Commission.id)
            .all()
        )]

        for commission_id in due_ids:
            stats['processed'] += 1
            try:
                amount = self._promote(commission_id, as_of)
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                stats['failed'] += 1
                stats['errors'].append(f"commission {commission_id}: {e}")
                logger.error(f"Commission {commission_id} unlock failed: {e}")
                continue

            if amount is not None:
                stats['promoted'] += 1
                stats['total_amount'] += amount

        stats['still_pending'] = (db.session.query(func.count(Commission.id))
                                  .filter(Commission.status == CommissionStatus.PENDING)
                                  .scalar())

        logger.info(
            f"Commission unlock {as_of.isoformat()}: promoted {stats['promoted']}, "
            f"still pending {stats['still_pending']}, failed {stats['failed']}, amount {stats['total_amount']}"
        )
        return stats

    def _promote(self, commission_id, as_of) -> Optional[Decimal]:
        commission = db.session.get(Commission, commission_id, with_for_update=True, populate_existing=True)
        if commission is None or commission.status != CommissionStatus.PENDING:
            return None
        if commission.unlock_date > as_of:
            raise CommissionStateError(
                f"Commission {commission_id} unlocks {commission.unlock_date}, not before {as_of}"
            )

        if commission.tier == CommissionTier.DIRECT:
            key = referral_key(commission.purchase_id, commission.recipient_id)
        else:
            key = parent_bonus_key(commission.purchase_id, commission.recipient_id)

        entry, created = self.ledger.post_if_absent(
            owner_id=commission.recipient_id,
            kind=LEDGER_KIND[commission.tier],
            amount=commission.amount,
            idempotency_key=key,
            reference={
                "purchase_id": commission.purchase_id,
                "commission_id": commission.id,
                "related_user_id": commission.source_user_id,
            },
            metadata={"source": "cron", "tier": commission.tier.value, "rate": str(commission.rate)},
            description=f"{commission.tier.value.replace('_', ' ').title()} commission from purchase {commission.purchase_id}",
        )

        result = db.session.execute(
            update(Commission)
            .where(Commission.id == commission.id,
                   Commission.status == CommissionStatus.PENDING)
            .values(status=CommissionStatus.AVAILABLE, available_at=as_of, ledger_entry_id=entry.id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CommissionStateError(f"Commission {commission_id} was unlocked concurrently")

        logger.info(f"Commission {commission_id} available: {commission.amount} to user {commission.recipient_id}")
        return money(commission.amount)

    # ==================================================================
    # Later transitions
    # ==================================================================
    def mark_paid(self, commission_id: int, now=None) -> Commission:
        now = as_naive_utc(now) or utcnow()
        try:
            commission = self._transition(commission_id, CommissionStatus.PAID, unlocked_by=now)
            commission.paid_at = now
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info(f"Commission {commission_id} paid")
        return commission

    def cancel(self, commission_id: int, reason: str, now=None) -> Commission:
        """Cancel a pending or available commission; an available one is reversed in the ledger."""
        now = as_naive_utc(now) or utcnow()
        try:
            commission = self._transition(commission_id, CommissionStatus.CANCELLED)
            if commission.ledger_entry_id is not None:
                self.ledger.reverse(commission.ledger_entry_id,
                                    reason=f"commission {commission_id} cancelled: {reason}")
            commission.cancelled_at = now
            commission.cancel_reason = reason
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info(f"Commission {commission_id} cancelled: {reason}")
        return commission

    def _transition(self, commission_id, target, unlocked_by=None) -> Commission:
        commission = db.session.get(Commission, commission_id, with_for_update=True, populate_existing=True)
        if commission is None:
            raise CommissionError(f"Commission {commission_id} not found")
        if target not in ALLOWED_TRANSITIONS[commission.status]:
            raise CommissionStateError(
                f"Commission {commission_id} cannot go from {commission.status.value} to {target.value}"
            )
        if unlocked_by is not None and commission.unlock_date > unlocked_by:
            raise CommissionStateError(f"Commission {commission_id} is not unlocked yet")
        commission.status = target
        return commission

    # ==================================================================
    # Reads
    # ==================================================================
    def summary_for(self, user_id: int) -> Dict[str, str]:
        rows = (db.session.query(Commission.status, func.coalesce(func.sum(Commission.amount), 0))
                .filter(Commission.recipient_id == user_id)
                .group_by(Commission.status)
                .all())
        totals = {status.value: ZERO for status in CommissionStatus}
        for status, total in rows:
            totals[status.value] = money(total)
        return {k: str(v) for k, v in totals.items()}
