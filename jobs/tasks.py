from datetime import timedelta
import logging

from ledger.sanity import run_sanity_checks

logger = logging.getLogger(__name__)


# ==========================================================================================================
# Job bodies. Each takes the core services and a fixed as_of and returns a stats dict.
# ==========================================================================================================
def benefits_job(core, as_of):
    backfill = core.purchases.schedule_unscheduled()
    stats = core.benefits.tick(as_of)
    stats['errors'] = backfill['errors'] + stats['errors']
    stats['schedules_backfilled'] = backfill['created']
    if stats['exhausted']:
        core.notifier.benefit_days_exhausted(stats['exhausted'])
    return stats


def commissions_job(core, as_of):
    return core.commissions.unlock_tick(as_of)


def wallets_release_job(core, as_of):
    reconciled = core.pool.reconcile_expired(now=as_of)
    expired_ids = [item['purchase_id'] for item in reconciled['expired']]
    expired = core.purchases.expire_purchases(expired_ids, now=as_of)
    # Purchases whose wallet was reclaimed by an acquire but never marked expired
    expired += core.purchases.expire_overdue(now=as_of, grace=timedelta(0))

    pool = core.pool.pool_stats()
    if pool['total'] and pool['availability'] < core.low_availability_ratio:
        core.notifier.pool_low(pool)

    return {
        'processed': len(reconciled['expired']) + reconciled['recovered'],
        'wallets_expired': len(reconciled['expired']),
        'wallets_recovered': reconciled['recovered'],
        'purchases_expired': expired,
        'pool': pool,
        'errors': [],
        'total_amount': 0,
    }


def sanity_job(core, as_of):
    stats = run_sanity_checks(core.ledger)
    if stats['issues']:
        core.notifier.invariant_violations(stats['issues'])
    return stats


# name -> (body, flag property on OperationFlags or None when always allowed)
JOBS = {
    'benefits': (benefits_job, 'benefits_enabled'),
    'commissions': (commissions_job, 'commissions_enabled'),
    'wallets-release': (wallets_release_job, 'writes_allowed'),
    'sanity': (sanity_job, None),
}


def run_job(core, name, as_of=None, fail_if_running=False):
    if name not in JOBS:
        raise KeyError(f"Unknown job '{name}', expected one of {', '.join(JOBS)}")
    body, flag = JOBS[name]
    enabled = True if flag is None else getattr(core.flags, flag)
    return core.runner.run(name, lambda fixed_as_of: body(core, fixed_as_of), as_of=as_of, enabled=enabled,
                           fail_if_running=fail_if_running)


def jobs_health(core, now=None):
    return core.runner.health(list(JOBS), now=now)
