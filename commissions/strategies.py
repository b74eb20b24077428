# commissions/strategies.py
from dataclasses import dataclass
from decimal import Decimal
import logging

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import Cohort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommissionRates:
    direct_rate: Decimal
    parent_rate: Decimal
    direct_unlock_days: int
    parent_unlock_days: int


DEFAULT_RATES = CommissionRates(
    direct_rate=Decimal("0.10"),
    parent_rate=Decimal("0.10"),
    direct_unlock_days=9,
    parent_unlock_days=17,
)


class DefaultRateStrategy:
    """Hard-coded platform rates."""

    name = "default"

    def rates(self) -> CommissionRates:
        return DEFAULT_RATES


class CohortRateStrategy:
    """Rates configured on the buyer's cohort; unset or invalid fields use the defaults."""

    name = "cohort"

    def __init__(self, cohort: Cohort):
        self.cohort = cohort

    def rates(self) -> CommissionRates:
        return CommissionRates(
            direct_rate=self._rate("direct_rate"),
            parent_rate=self._rate("parent_rate"),
            direct_unlock_days=self._days("direct_unlock_days"),
            parent_unlock_days=self._days("parent_unlock_days"),
        )

    def _rate(self, field):
        value = getattr(self.cohort, field)
        if value is None:
            return getattr(DEFAULT_RATES, field)
        value = Decimal(str(value))
        if value < 0 or value > 1:
            logger.warning(f"Cohort {self.cohort.name} has invalid {field}={value}, using default")
            return getattr(DEFAULT_RATES, field)
        return value

    def _days(self, field):
        value = getattr(self.cohort, field)
        if value is None or value < 0:
            return getattr(DEFAULT_RATES, field)
        return int(value)


def load_cohort(user):
    if user is None or user.cohort_id is None:
        return None
    return db.session.get(Cohort, user.cohort_id)


def select_strategy(buyer, cohort_loader=load_cohort):
    """Pick the rate strategy once per computation; lookup failures degrade to defaults."""
    try:
        with db.session.begin_nested():
            cohort = cohort_loader(buyer)
    except SQLAlchemyError as e:
        logger.warning(f"Cohort lookup failed for user {getattr(buyer, 'id', None)}, using default rates: {e}")
        return DefaultRateStrategy()

    if cohort is None or not cohort.is_active:
        return DefaultRateStrategy()
    return CohortRateStrategy(cohort)
