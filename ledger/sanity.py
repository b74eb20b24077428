import logging
from typing import List, Dict, Any

from sqlalchemy import func

from extensions import db
from models import LedgerEntry, License, BenefitSchedule, BenefitDay, BenefitDayStatus
from benefits.schedule import BenefitTerms, benefit_cap
from utils import money

logger = logging.getLogger(__name__)


def check_balances(ledger, owner_ids=None) -> List[Dict[str, Any]]:
    """Latest confirmed balance must equal the sum of confirmed entries for every owner."""
    if owner_ids is None:
        owner_ids = [row[0] for row in db.session.query(LedgerEntry.user_id).distinct().all()]

    issues = []
    for owner_id in owner_ids:
        ok, balance, total = ledger.verify_owner(owner_id)
        if not ok:
            logger.error(f"Ledger mismatch for owner {owner_id}: balance {balance} != confirmed sum {total}")
            issues.append({
                "check": "balance",
                "owner_id": owner_id,
                "balance": str(balance),
                "confirmed_sum": str(total),
            })
    return issues


def check_benefit_caps() -> List[Dict[str, Any]]:
    """Released benefit per purchase never exceeds principal x rate x days x cycles."""
    released = dict(
        db.session.query(BenefitSchedule.purchase_id, func.coalesce(func.sum(BenefitDay.amount), 0))
        .join(BenefitDay, BenefitDay.schedule_id == BenefitSchedule.id)
        .filter(BenefitDay.status == BenefitDayStatus.RELEASED)
        .group_by(BenefitSchedule.purchase_id)
        .all()
    )
    if not released:
        return []

    issues = []
    licenses = License.query.filter(License.purchase_id.in_(list(released))).all()
    for license in licenses:
        cap = benefit_cap(license.principal, BenefitTerms.from_license(license))
        total = money(released[license.purchase_id])
        if total > cap:
            logger.error(f"Purchase {license.purchase_id} released {total} above its cap {cap}")
            issues.append({
                "check": "benefit_cap",
                "purchase_id": license.purchase_id,
                "released": str(total),
                "cap": str(cap),
            })
    return issues


def run_sanity_checks(ledger) -> Dict[str, Any]:
    issues = check_balances(ledger) + check_benefit_caps()
    owners = db.session.query(func.count(func.distinct(LedgerEntry.user_id))).scalar() or 0
    if issues:
        logger.error(f"Sanity checks found {len(issues)} issues")
    else:
        logger.info(f"Sanity checks passed for {owners} ledger owners")
    return {"processed": owners, "issues": issues, "errors": [], "total_amount": 0}
