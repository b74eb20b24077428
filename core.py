# ==========================================================================================================
# -------------- Service wiring for the financial core ----------------------------------------------------
# ==========================================================================================================
import logging

from flask import current_app

from ledger.store import LedgerStore
from wallets.pool import WalletPool
from wallets.policies import build_policy
from benefits.engine import BenefitEngine
from commissions.engine import CommissionEngine
from purchases.service import PurchaseService
from jobs.flags import OperationFlags
from jobs.alerts import AlertNotifier
from jobs.locks import JobLock, build_redis
from jobs.runner import JobRunner

logger = logging.getLogger(__name__)

EXTENSION_KEY = "fincore"


class CoreServices:
    """One set of collaborating services per app, built from its config."""

    def __init__(self, ledger, pool, benefits, commissions, purchases, flags, notifier, runner,
                 low_availability_ratio=0.10):
        self.ledger = ledger
        self.pool = pool
        self.benefits = benefits
        self.commissions = commissions
        self.purchases = purchases
        self.flags = flags
        self.notifier = notifier
        self.runner = runner
        self.low_availability_ratio = low_availability_ratio

    @classmethod
    def from_config(cls, config, redis_client=None, alert_session=None):
        ledger = LedgerStore(currency=config.get("WALLET_CURRENCY", "USDT"))
        pool = WalletPool(
            policy=build_policy(config.get("WALLET_ROTATION_POLICY", "random")),
            network=config.get("WALLET_NETWORK", "BEP20"),
            currency=config.get("WALLET_CURRENCY", "USDT"),
            assignment_ttl_hours=config.get("WALLET_ASSIGNMENT_TTL_HOURS", 24),
            cooldown_minutes=config.get("WALLET_COOLDOWN_MINUTES", 15),
        )
        benefits = BenefitEngine(ledger, max_attempts=config.get("BENEFIT_MAX_ATTEMPTS", 3))
        commissions = CommissionEngine(ledger)
        purchases = PurchaseService(pool, benefits, commissions)

        notifier = AlertNotifier(
            webhook_url=config.get("ALERT_WEBHOOK_URL"),
            timeout=config.get("ALERT_TIMEOUT_SECONDS", 10),
            session=alert_session,
        )
        if redis_client is None:
            redis_client = build_redis(config.get("REDIS_URL"))
        lock = JobLock(redis_client, ttl_seconds=config.get("JOB_LOCK_TTL_SECONDS", 3600))
        runner = JobRunner(
            lock,
            notifier,
            stale_after_hours=config.get("JOB_STALE_HOURS", 25),
            lock_stale_seconds=config.get("JOB_LOCK_TTL_SECONDS", 3600),
        )

        return cls(
            ledger=ledger,
            pool=pool,
            benefits=benefits,
            commissions=commissions,
            purchases=purchases,
            flags=OperationFlags.from_config(config),
            notifier=notifier,
            runner=runner,
            low_availability_ratio=config.get("WALLET_LOW_AVAILABILITY_RATIO", 0.10),
        )


def init_core(app, **overrides):
    core = CoreServices.from_config(app.config, **overrides)
    app.extensions[EXTENSION_KEY] = core
    logger.info(
        f"Financial core ready: policy {core.pool.policy.name}, flags {core.flags.summary()}, "
        f"shared job lock {'on' if core.runner.lock.redis is not None else 'off'}"
    )
    return core


def get_core(app=None) -> CoreServices:
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
