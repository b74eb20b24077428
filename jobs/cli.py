# jobs/cli.py
# Usage (cron):
#   flask --app app:create_app jobs run benefits
#   flask --app app:create_app jobs run commissions --as-of 2026-01-10T00:05:00
#   flask --app app:create_app jobs health
import json
import sys
from datetime import datetime

import click
from flask import current_app
from flask.cli import AppGroup

from core import get_core
from jobs.runner import JobAlreadyRunningError
from jobs.tasks import JOBS, run_job, jobs_health
from utils import as_naive_utc

jobs_cli = AppGroup("jobs", help="Run and inspect the scheduled money jobs.")
wallets_cli = AppGroup("wallets", help="Manage the collection wallet pool.")


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


def _parse_as_of(value):
    if not value:
        return None
    try:
        return as_naive_utc(datetime.fromisoformat(value))
    except ValueError:
        raise click.BadParameter(f"'{value}' is not an ISO-8601 timestamp", param_hint="--as-of")


# ==========================================================================================================
# jobs
# ==========================================================================================================
@jobs_cli.command("run")
@click.argument("name", type=click.Choice(sorted(JOBS)))
@click.option("--as-of", "as_of", default=None, help="Fixed evaluation time (ISO-8601, UTC).")
@click.option("--strict", is_flag=True, help="Exit non-zero if the job is already running.")
def run_command(name, as_of, strict):
    """Run one job now."""
    try:
        result = run_job(get_core(), name, as_of=_parse_as_of(as_of), fail_if_running=strict)
    except JobAlreadyRunningError as e:
        click.echo(str(e), err=True)
        sys.exit(2)
    result.pop("stats", None)
    _echo_json(result)
    current_app.logger.info(f"CLI job {name} finished with status {result['status']}")
    if result["status"] == "error" or result["errors"]:
        sys.exit(1)


@jobs_cli.command("health")
def health_command():
    """Report stale or stuck jobs; exits non-zero when any job is unhealthy."""
    report = jobs_health(get_core())
    _echo_json(report)
    if not report["healthy"]:
        sys.exit(1)


# ==========================================================================================================
# wallets
# ==========================================================================================================
@wallets_cli.command("seed")
@click.argument("path", type=click.File("r"))
@click.option("--network", default=None)
@click.option("--currency", default=None)
def seed_command(path, network, currency):
    """Add addresses (one per line) to the pool."""
    addresses = [line.strip() for line in path if line.strip() and not line.startswith("#")]
    stats = get_core().pool.provision(addresses, network=network, currency=currency)
    _echo_json(stats)
    if stats["invalid"]:
        sys.exit(1)


@wallets_cli.command("stats")
def stats_command():
    """Show pool counts by status."""
    _echo_json(get_core().pool.pool_stats())


@wallets_cli.command("disable")
@click.argument("address")
@click.option("--reason", default="")
def disable_command(address, reason):
    if not get_core().pool.disable(address, reason):
        click.echo(f"Wallet {address} not disabled (unknown or assigned)", err=True)
        sys.exit(1)


@wallets_cli.command("enable")
@click.argument("address")
def enable_command(address):
    if not get_core().pool.enable(address):
        click.echo(f"Wallet {address} was not disabled", err=True)
        sys.exit(1)


def register_cli(app):
    app.cli.add_command(jobs_cli)
    app.cli.add_command(wallets_cli)
