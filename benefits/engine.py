from datetime import timedelta
from decimal import Decimal
from typing import Dict, Any, List
import logging

from sqlalchemy import func, or_, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import (
    Purchase, PurchaseStatus, License, LicenseStatus,
    BenefitSchedule, BenefitDay, BenefitDayStatus, EntryKind,
)
from benefits.schedule import BenefitTerms, plan_schedule, activation_date, benefit_cap
from ledger.keys import benefit_key
from utils import utcnow, as_naive_utc, money, whole_days_between

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class BenefitError(Exception):
    """Base benefit engine exception"""
    pass

class BenefitScheduleError(BenefitError):
    pass

class LicenseStateError(BenefitError):
    pass


class BenefitEngine:
    """
    Daily benefit accrual.

    A confirmed purchase gets one license and one schedule per cycle, each
    with its production days pre-dated. ``tick(as_of)`` releases every day
    that is due by ``as_of`` through the ledger, so running it twice for
    the same day posts nothing new.
    """

    def __init__(self, ledger, max_attempts: int = 3):
        self.ledger = ledger
        self.max_attempts = max_attempts

    # ==================================================================
    # Schedule creation
    # ==================================================================
    def on_purchase_confirmed(self, purchase: Purchase, commit: bool = True) -> List[BenefitSchedule]:
        if purchase.status not in (PurchaseStatus.CONFIRMED, PurchaseStatus.COMPLETED):
            raise BenefitScheduleError(f"Purchase {purchase.id} is {purchase.status.value}, not confirmed")
        if purchase.confirmed_at is None:
            raise BenefitScheduleError(f"Purchase {purchase.id} has no confirmation date")

        existing = self._schedules_for(purchase.id)
        if existing:
            logger.debug(f"Purchase {purchase.id} already has {len(existing)} benefit schedules")
            return existing

        try:
            with db.session.begin_nested():
                license = self._ensure_license(purchase)
                terms = BenefitTerms.from_license(license)
                for planned in plan_schedule(license.principal, purchase.confirmed_at, terms):
                    schedule = BenefitSchedule(
                        purchase_id=purchase.id,
                        license_id=license.id,
                        user_id=purchase.user_id,
                        cycle=planned.cycle,
                        starts_at=planned.starts_at,
                        production_days=terms.benefit_days,
                        principal=license.principal,
                        daily_rate=terms.daily_rate,
                        daily_amount=planned.daily_amount,
                        rule=planned.rule,
                    )
                    db.session.add(schedule)
                    db.session.flush()
                    for day_index, due_date, amount in planned.days:
                        db.session.add(BenefitDay(
                            schedule_id=schedule.id,
                            day_index=day_index,
                            due_date=due_date,
                            amount=amount,
                            status=BenefitDayStatus.SCHEDULED,
                        ))
                db.session.flush()
        except IntegrityError:
            logger.info(f"Benefit schedules for purchase {purchase.id} created concurrently")
            return self._schedules_for(purchase.id)

        if commit:
            db.session.commit()

        schedules = self._schedules_for(purchase.id)
        logger.info(
            f"Created {len(schedules)} benefit schedules for purchase {purchase.id} "
            f"(principal {purchase.amount}, first due {schedules[0].days[0].due_date.date()})"
        )
        return schedules

    def _ensure_license(self, purchase: Purchase) -> License:
        license = License.query.filter_by(purchase_id=purchase.id).first()
        if license is not None:
            return license

        terms = BenefitTerms.from_package(purchase.package)
        license = License(
            purchase_id=purchase.id,
            user_id=purchase.user_id,
            principal=money(purchase.amount),
            daily_benefit_rate=terms.daily_rate,
            benefit_days=terms.benefit_days,
            total_cycles=terms.total_cycles,
            cashback_rate=terms.cashback_rate,
            cashback_days=terms.cashback_days,
            status=LicenseStatus.ACTIVE,
            activated_at=activation_date(purchase.confirmed_at),
        )
        db.session.add(license)
        db.session.flush()
        return license

    # ==================================================================
    # Daily tick
    # ==================================================================
    def tick(self, as_of=None) -> Dict[str, Any]:
        """Release every due day as of ``as_of``; one day's failure never stops the batch."""
        as_of = as_naive_utc(as_of) or utcnow()
        stats = {
            'processed': 0,
            'released': 0,
            'failed': 0,
            'already_posted': 0,
            'exhausted': [],
            'completed_licenses': 0,
            'errors': [],
            'total_amount': ZERO,
        }

        day_ids = [row[0] for row in self._due_days_query(as_of).all()]
        if not day_ids:
            logger.info(f"No benefit days due as of {as_of.isoformat()}")
            return stats

        logger.info(f"Processing {len(day_ids)} benefit days due as of {as_of.isoformat()}")

        for day_id in day_ids:
            stats['processed'] += 1
            try:
                outcome = self._release_day(day_id, as_of)
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                logger.error(f"Benefit day {day_id} failed: {e}")
                self._record_failure(day_id, e, stats)
                continue

            if outcome is None:
                continue
            amount, created, completed = outcome
            stats['released'] += 1
            if created:
                stats['total_amount'] += amount
            else:
                stats['already_posted'] += 1
            if completed:
                stats['completed_licenses'] += 1

        logger.info(
            f"Benefit tick {as_of.date()}: processed {stats['processed']}, released {stats['released']}, "
            f"failed {stats['failed']}, exhausted {len(stats['exhausted'])}, amount {stats['total_amount']}"
        )
        return stats

    def _due_days_query(self, as_of):
        return (db.session.query(BenefitDay.id)
                .join(BenefitSchedule, BenefitSchedule.id == BenefitDay.schedule_id)
                .join(License, License.id == BenefitSchedule.license_id)
                .filter(
                    BenefitDay.due_date <= as_of,
                    License.status == LicenseStatus.ACTIVE,
                    or_(
                        BenefitDay.status == BenefitDayStatus.SCHEDULED,
                        and_(BenefitDay.status == BenefitDayStatus.FAILED,
                             BenefitDay.attempts < self.max_attempts),
                    ),
                )
                .order_by(BenefitDay.due_date, BenefitDay.id))

    def _release_day(self, day_id, as_of):
        day = db.session.get(BenefitDay, day_id, with_for_update=True, populate_existing=True)
        if day is None or day.status == BenefitDayStatus.RELEASED:
            return None

        schedule = day.schedule
        license = schedule.license
        if license.status != LicenseStatus.ACTIVE:
            return None

        cap = benefit_cap(license.principal, BenefitTerms.from_license(license))
        remaining = cap - self.released_total(schedule.purchase_id)
        amount = min(money(day.amount), max(remaining, ZERO))
        day.attempts += 1

        if amount <= ZERO:
            # Cap already reached by earlier days; nothing left to pay
            logger.warning(f"Benefit day {day.id} of purchase {schedule.purchase_id} skipped, cap reached")
            day.amount = ZERO
            day.status = BenefitDayStatus.RELEASED
            day.released_at = as_of
            day.last_error = None
            db.session.flush()
            return ZERO, True, self._maybe_complete(license, as_of)

        entry, created = self.ledger.post_if_absent(
            owner_id=schedule.user_id,
            kind=EntryKind.BENEFIT,
            amount=amount,
            idempotency_key=benefit_key(schedule.purchase_id, schedule.cycle, day.day_index),
            reference={"purchase_id": schedule.purchase_id, "schedule_id": schedule.id},
            metadata={
                "source": "cron",
                "cycle": schedule.cycle,
                "day": day.day_index,
                "rule": schedule.rule.value,
                "as_of": as_of.isoformat(),
            },
            description=f"Daily benefit cycle {schedule.cycle} day {day.day_index}",
        )
        if not created:
            logger.info(f"Benefit day {day.id} was already posted as ledger entry {entry.id}")

        day.amount = money(entry.amount)
        day.status = BenefitDayStatus.RELEASED
        day.ledger_entry_id = entry.id
        day.released_at = as_of
        day.last_error = None
        db.session.flush()

        return money(entry.amount), created, self._maybe_complete(license, as_of)

    def _record_failure(self, day_id, error, stats):
        stats['failed'] += 1
        stats['errors'].append(f"day {day_id}: {error}")
        try:
            day = db.session.get(BenefitDay, day_id, populate_existing=True)
            if day is None:
                return
            day.attempts = (day.attempts or 0) + 1
            day.status = BenefitDayStatus.FAILED
            day.last_error = str(error)[:500]
            schedule = day.schedule
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Could not record failure for benefit day {day_id}: {e}")
            return

        if day.attempts >= self.max_attempts:
            logger.error(
                f"Benefit day {day_id} (purchase {schedule.purchase_id}, cycle {schedule.cycle}, "
                f"day {day.day_index}) exhausted {day.attempts} attempts"
            )
            stats['exhausted'].append({
                'day_id': day_id,
                'purchase_id': schedule.purchase_id,
                'cycle': schedule.cycle,
                'day': day.day_index,
                'attempts': day.attempts,
                'error': day.last_error,
            })

    def _maybe_complete(self, license: License, as_of) -> bool:
        pending = (db.session.query(func.count(BenefitDay.id))
                   .join(BenefitSchedule, BenefitSchedule.id == BenefitDay.schedule_id)
                   .filter(BenefitSchedule.license_id == license.id,
                           BenefitDay.status != BenefitDayStatus.RELEASED)
                   .scalar())
        if pending:
            return False

        license.status = LicenseStatus.COMPLETED
        license.completed_at = as_of
        purchase = db.session.get(Purchase, license.purchase_id)
        if purchase is not None:
            purchase.status = PurchaseStatus.COMPLETED
        db.session.flush()
        logger.info(f"License {license.id} (purchase {license.purchase_id}) completed all benefit days")
        return True

    # ==================================================================
    # Pause / resume
    # ==================================================================
    def pause(self, license_id: int, reason: str = "", now=None) -> License:
        now = as_naive_utc(now) or utcnow()
        license = db.session.get(License, license_id, with_for_update=True)
        if license is None:
            raise LicenseStateError(f"License {license_id} not found")
        if license.status != LicenseStatus.ACTIVE:
            raise LicenseStateError(f"License {license_id} is {license.status.value}, cannot pause")

        license.status = LicenseStatus.PAUSED
        license.paused_at = now
        license.paused_reason = reason or None
        db.session.commit()
        logger.info(f"License {license_id} paused: {reason}")
        return license

    def resume(self, license_id: int, now=None) -> License:
        """Reactivate and push every unreleased day back by the whole days spent paused."""
        now = as_naive_utc(now) or utcnow()
        license = db.session.get(License, license_id, with_for_update=True)
        if license is None:
            raise LicenseStateError(f"License {license_id} not found")
        if license.status != LicenseStatus.PAUSED:
            raise LicenseStateError(f"License {license_id} is {license.status.value}, cannot resume")

        shift_days = whole_days_between(license.paused_at, now)
        if shift_days:
            shift = timedelta(days=shift_days)
            for schedule in license.schedules:
                unreleased = [d for d in schedule.days if d.status != BenefitDayStatus.RELEASED]
                for day in unreleased:
                    day.due_date = day.due_date + shift
                if len(unreleased) == len(schedule.days):
                    schedule.starts_at = schedule.starts_at + shift

        license.status = LicenseStatus.ACTIVE
        license.paused_at = None
        license.paused_reason = None
        db.session.commit()
        logger.info(f"License {license_id} resumed, unreleased days shifted by {shift_days}")
        return license

    # ==================================================================
    # Reads
    # ==================================================================
    def released_total(self, purchase_id: int) -> Decimal:
        total = (db.session.query(func.coalesce(func.sum(BenefitDay.amount), 0))
                 .join(BenefitSchedule, BenefitSchedule.id == BenefitDay.schedule_id)
                 .filter(BenefitSchedule.purchase_id == purchase_id,
                         BenefitDay.status == BenefitDayStatus.RELEASED)
                 .scalar())
        return money(total)

    def cap_for(self, purchase_id: int) -> Decimal:
        license = License.query.filter_by(purchase_id=purchase_id).first()
        if license is None:
            raise BenefitScheduleError(f"Purchase {purchase_id} has no license")
        return benefit_cap(license.principal, BenefitTerms.from_license(license))

    def _schedules_for(self, purchase_id):
        return (BenefitSchedule.query
                .filter_by(purchase_id=purchase_id)
                .order_by(BenefitSchedule.cycle)
                .all())
