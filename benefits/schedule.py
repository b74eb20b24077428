# benefits/schedule.py
"""Pure schedule arithmetic: dates and per-day amounts for a license."""
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, ROUND_DOWN
from typing import List, Optional

from models import BenefitRule
from utils import CENT, money, start_of_day, to_decimal

DEFAULT_DAILY_RATE = Decimal("0.125")
DEFAULT_BENEFIT_DAYS = 8
DEFAULT_TOTAL_CYCLES = 5
DEFAULT_CASHBACK_DAYS = 8
PAUSE_DAYS_PER_CYCLE = 1


@dataclass
class BenefitTerms:
    daily_rate: Decimal = DEFAULT_DAILY_RATE
    benefit_days: int = DEFAULT_BENEFIT_DAYS
    total_cycles: int = DEFAULT_TOTAL_CYCLES
    cashback_rate: Optional[Decimal] = None
    cashback_days: int = DEFAULT_CASHBACK_DAYS

    def __post_init__(self):
        self.daily_rate = to_decimal(self.daily_rate, "daily_rate")
        if self.cashback_rate is None:
            # Cycle 1 returns the same total as a standard cycle
            self.cashback_rate = self.daily_rate * self.cashback_days
        self.cashback_rate = to_decimal(self.cashback_rate, "cashback_rate")
        if self.benefit_days < 1 or self.total_cycles < 1 or self.cashback_days < 1:
            raise ValueError("benefit_days, total_cycles and cashback_days must be positive")

    @classmethod
    def from_package(cls, package):
        if package is None:
            return cls()
        return cls(
            daily_rate=package.daily_benefit_rate,
            benefit_days=package.benefit_days,
            total_cycles=package.total_cycles,
            cashback_rate=package.cashback_rate,
            cashback_days=package.cashback_days,
        )

    @classmethod
    def from_license(cls, license):
        return cls(
            daily_rate=license.daily_benefit_rate,
            benefit_days=license.benefit_days,
            total_cycles=license.total_cycles,
            cashback_rate=license.cashback_rate,
            cashback_days=license.cashback_days,
        )

    @property
    def cycle_length_days(self):
        return self.benefit_days + PAUSE_DAYS_PER_CYCLE


@dataclass
class PlannedCycle:
    cycle: int
    starts_at: object
    rule: BenefitRule
    daily_amount: Decimal
    days: List[tuple] = field(default_factory=list)  # (day_index, due_date, amount)

    @property
    def total(self):
        return sum((amount for _, _, amount in self.days), Decimal("0.00"))


def activation_date(confirmed_at):
    return start_of_day(confirmed_at)


def cycle_start(activation, cycle, terms):
    return activation + timedelta(days=terms.cycle_length_days * (cycle - 1))


def cashback_daily_amount(principal, terms):
    return to_decimal(principal) * terms.cashback_rate / terms.cashback_days


def standard_daily_amount(principal, terms):
    return to_decimal(principal) * terms.daily_rate


def benefit_cap(principal, terms):
    return money(to_decimal(principal) * terms.daily_rate * terms.benefit_days * terms.total_cycles)


def split_cycle(exact_daily, days):
    """
    Cent amounts for one cycle: every day gets the daily amount rounded down,
    the last production day carries the remainder so the cycle sums to the
    rounded cycle total.
    """
    cycle_total = money(exact_daily * days)
    base = exact_daily.quantize(CENT, rounding=ROUND_DOWN)
    amounts = [base] * days
    amounts[-1] = cycle_total - base * (days - 1)
    return amounts


def plan_schedule(principal, confirmed_at, terms: BenefitTerms) -> List[PlannedCycle]:
    activation = activation_date(confirmed_at)
    plan = []
    for cycle in range(1, terms.total_cycles + 1):
        if cycle == 1:
            rule = BenefitRule.CASHBACK
            exact = cashback_daily_amount(principal, terms)
        else:
            rule = BenefitRule.STANDARD
            exact = standard_daily_amount(principal, terms)

        start = cycle_start(activation, cycle, terms)
        planned = PlannedCycle(cycle=cycle, starts_at=start, rule=rule, daily_amount=money(exact))
        for day_index, amount in enumerate(split_cycle(exact, terms.benefit_days), start=1):
            planned.days.append((day_index, start + timedelta(days=day_index), amount))
        plan.append(planned)
    return plan
