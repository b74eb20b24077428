"""Tests for the batch orchestrator: flags, single-flight, persistence, alerts and health."""

import importlib
from datetime import timedelta
from decimal import Decimal

import fakeredis
import pytest
import requests

import config
from core import CoreServices
from extensions import db
from jobs.alerts import AlertNotifier
from jobs.flags import OperationFlags
from jobs.locks import JobLock
from jobs.runner import JobAlreadyRunningError, JobRunner
from jobs.tasks import JOBS, run_job, jobs_health
from models import JobRun, JobStatus, LedgerEntry, WalletStatus, WalletAddress
from utils import utcnow
from conftest import T0, wallet_address


ACTIVATION = T0.replace(hour=0)


@pytest.fixture
def runner(app) -> JobRunner:
    return JobRunner(JobLock(), AlertNotifier())


def stats(processed=1, errors=None, total_amount="0"):
    return lambda as_of: {"processed": processed, "errors": errors or [], "total_amount": Decimal(total_amount)}


class TestOperationFlags:

    def test_from_config(self) -> None:
        flags = OperationFlags.from_config({"ENABLE_BENEFITS_RELEASE": True, "MAINTENANCE_MODE": True})
        assert flags.benefits_release is True
        assert flags.benefits_enabled is False
        assert flags.commissions_enabled is False
        assert flags.summary()["maintenance"] is True

    def test_read_only_blocks_writes(self) -> None:
        flags = OperationFlags(benefits_release=True, commissions_release=True, read_only=True)
        assert not flags.writes_allowed
        assert not flags.benefits_enabled


class TestRunner:

    def test_success_persisted(self, runner) -> None:
        result = runner.run("benefits", stats(processed=3, total_amount="12.50"), as_of=T0)

        assert result["status"] == "success"
        row = JobRun.query.filter_by(job="benefits").one()
        assert row.status == JobStatus.SUCCESS
        assert row.processed == 3
        assert row.total_amount == Decimal("12.50")
        assert row.as_of == T0
        assert row.last_success is not None

    def test_disabled_is_clean_noop(self, runner) -> None:
        called = []
        result = runner.run("benefits", lambda as_of: called.append(as_of), as_of=T0, enabled=False)

        assert called == []
        assert result["status"] == "skipped"
        assert result["reason"] == "disabled"
        assert JobRun.query.filter_by(job="benefits").one().status == JobStatus.SKIPPED

    def test_single_flight_in_process(self, runner) -> None:
        inner = {}

        def reentrant(as_of):
            inner["result"] = runner.run("benefits", stats(), as_of=as_of)
            return {"processed": 0, "errors": [], "total_amount": 0}

        runner.run("benefits", reentrant, as_of=T0)
        assert inner["result"]["status"] == "skipped"
        assert inner["result"]["reason"] == "already_running"
        assert not runner.lock.is_held("benefits")

    def test_running_row_blocks_other_worker(self, runner) -> None:
        db.session.add(JobRun(job="benefits", status=JobStatus.RUNNING, started_at=utcnow()))
        db.session.commit()

        result = runner.run("benefits", stats(), as_of=T0)
        assert result["reason"] == "already_running"

    def test_running_row_raises_when_strict(self, runner) -> None:
        db.session.add(JobRun(job="benefits", status=JobStatus.RUNNING, started_at=utcnow()))
        db.session.commit()

        with pytest.raises(JobAlreadyRunningError):
            runner.run("benefits", stats(), as_of=T0, fail_if_running=True)
        assert not runner.lock.is_held("benefits")

    def test_stale_running_row_taken_over(self, runner) -> None:
        db.session.add(JobRun(job="benefits", status=JobStatus.RUNNING, started_at=utcnow() - timedelta(hours=3)))
        db.session.commit()

        assert runner.run("benefits", stats(), as_of=T0)["status"] == "success"

    def test_crash_recorded_and_alerted(self, runner) -> None:
        def crash(as_of):
            raise RuntimeError("boom")

        result = runner.run("commissions", crash, as_of=T0)

        assert result["status"] == "error"
        row = JobRun.query.filter_by(job="commissions").one()
        assert row.status == JobStatus.ERROR
        assert "boom" in row.error_message
        assert runner.notifier.recent[-1]["level"] == "critical"
        assert not runner.lock.is_held("commissions")

    def test_row_errors_alerted(self, runner) -> None:
        result = runner.run("benefits", stats(processed=2, errors=["day 7: timeout"]), as_of=T0)

        assert result["errors"] == 1
        assert result["error_samples"] == ["day 7: timeout"]
        levels = [alert["level"] for alert in runner.notifier.recent]
        assert levels == ["error"]

    def test_summary_sent_when_money_moved(self, runner) -> None:
        runner.run("benefits", stats(total_amount="25.00"), as_of=T0)
        assert [alert["level"] for alert in runner.notifier.recent] == ["info"]


class TestSharedLock:

    def test_redis_lock_blocks_second_holder(self) -> None:
        server = fakeredis.FakeServer()
        first = JobLock(fakeredis.FakeRedis(server=server, decode_responses=True), ttl_seconds=60)
        second = JobLock(fakeredis.FakeRedis(server=server, decode_responses=True), ttl_seconds=60)

        token = first.acquire("benefits")
        assert token is not None
        assert second.acquire("benefits") is None

        first.release("benefits", token)
        assert second.acquire("benefits") is not None

    def test_release_with_wrong_token_keeps_lock(self) -> None:
        client = fakeredis.FakeRedis(decode_responses=True)
        lock = JobLock(client)
        token = lock.acquire("sanity")
        lock.release("sanity", "not-the-token")
        assert client.get("fincore:job:sanity") == token

    def test_runner_with_shared_lock(self, app) -> None:
        lock = JobLock(fakeredis.FakeRedis(decode_responses=True))
        runner = JobRunner(lock, AlertNotifier())
        assert runner.run("sanity", stats(), as_of=T0)["status"] == "success"
        assert lock.redis.get("fincore:job:sanity") is None


class TestHealth:

    def test_never_run_is_unhealthy(self, runner) -> None:
        report = runner.health(["benefits"], now=T0)
        assert report["healthy"] is False
        assert report["jobs"]["benefits"]["reason"] == "never_run"

    def test_staleness(self, runner) -> None:
        runner.run("benefits", stats(), as_of=T0)
        last_run = JobRun.query.filter_by(job="benefits").one().last_run

        assert runner.health(["benefits"], now=last_run + timedelta(hours=24))["healthy"] is True
        stale = runner.health(["benefits"], now=last_run + timedelta(hours=26))
        assert stale["healthy"] is False
        assert stale["jobs"]["benefits"]["healthy"] is False

    def test_skipped_run_still_counts_as_alive(self, runner) -> None:
        runner.run("benefits", stats(), enabled=False)
        assert runner.health(["benefits"])["healthy"] is True


class TestAlerts:

    def test_logged_without_webhook(self) -> None:
        notifier = AlertNotifier()
        assert notifier.send("warning", "pool low", {"availability": 0.05}) is False
        assert notifier.recent[-1]["title"] == "pool low"

    def test_recent_keeps_newest(self) -> None:
        notifier = AlertNotifier(recent_limit=2)
        for n in range(3):
            notifier.send("info", f"alert {n}")
        assert [alert["title"] for alert in notifier.recent] == ["alert 1", "alert 2"]


    def test_delivery_failure_does_not_raise(self, monkeypatch) -> None:
        session = requests.Session()

        def refuse(*args, **kwargs):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(session, "post", refuse)
        notifier = AlertNotifier(webhook_url="http://alerts.invalid/hook", session=session)
        assert notifier.job_crashed("benefits", RuntimeError("x")) is False


class TestScheduledJobs:
    """The registered jobs run against the real engines."""

    def test_registry(self) -> None:
        assert set(JOBS) == {"benefits", "commissions", "wallets-release", "sanity"}

    def test_unknown_job(self, core) -> None:
        with pytest.raises(KeyError):
            run_job(core, "payouts")

    def test_benefits_job_is_idempotent(self, core, make_user, make_confirmed_purchase) -> None:
        purchase = make_confirmed_purchase(make_user())
        as_of = ACTIVATION + timedelta(days=3)

        first = run_job(core, "benefits", as_of=as_of)
        second = run_job(core, "benefits", as_of=as_of)

        assert first["stats"]["schedules_backfilled"] == 1
        assert first["total_amount"] == Decimal("37.50")
        assert second["total_amount"] == Decimal("0.00")
        assert LedgerEntry.query.count() == 3
        assert core.ledger.balance_of(purchase.user_id) == Decimal("37.50")

    def test_flags_off_moves_no_money(self, core, make_user, make_confirmed_purchase) -> None:
        make_confirmed_purchase(make_user())
        core.flags.benefits_release = False

        result = run_job(core, "benefits", as_of=ACTIVATION + timedelta(days=3))

        assert result["status"] == "skipped"
        assert LedgerEntry.query.count() == 0

    def test_wallets_release_expires_purchases(self, core, make_user, seed_wallets) -> None:
        seed_wallets(1)
        purchase = core.purchases.open_purchase(make_user().id, amount="10", now=T0)

        result = run_job(core, "wallets-release", as_of=T0 + timedelta(hours=25))

        assert result["stats"]["wallets_expired"] == 1
        assert result["stats"]["purchases_expired"] == 1
        wallet = WalletAddress.query.filter_by(address=purchase.wallet_address).one()
        assert wallet.status == WalletStatus.AVAILABLE

    def test_pool_low_alert(self, core, make_user, seed_wallets) -> None:
        seed_wallets(1)
        core.purchases.open_purchase(make_user().id, amount="10", now=T0)

        run_job(core, "wallets-release", as_of=T0 + timedelta(hours=1))

        assert any(alert["title"].startswith("Wallet pool availability") for alert in core.notifier.recent)

    def test_sanity_job(self, core, make_user, make_confirmed_purchase) -> None:
        make_confirmed_purchase(make_user())
        run_job(core, "benefits", as_of=ACTIVATION + timedelta(days=60))

        result = run_job(core, "sanity")
        assert result["status"] == "success"
        assert result["stats"]["issues"] == []

    def test_jobs_health_lists_every_job(self, core) -> None:
        report = jobs_health(core)
        assert set(report["jobs"]) == set(JOBS)


class TestWiring:

    def test_config_requires_secret_only_in_production(self, monkeypatch) -> None:
        with monkeypatch.context() as m:
            m.setenv("FLASK_ENV", "production")
            m.delenv("SECRET_KEY", raising=False)
            with pytest.raises(ValueError):
                importlib.reload(config)

        reloaded = importlib.reload(config)
        assert reloaded.TestingConfig.SECRET_KEY == "testing"

    def test_core_from_config(self, app) -> None:
        core = CoreServices.from_config(dict(app.config, WALLET_ROTATION_POLICY="lrs"))
        assert core.pool.policy.name == "lrs"
        assert core.runner.lock.redis is None
        assert core.flags.benefits_enabled

    def test_health_endpoints(self, app) -> None:
        client = app.test_client()
        assert client.get("/healthz").status_code == 200

        response = client.get("/healthz/jobs")
        assert response.status_code == 503
        body = response.get_json()
        assert body["flags"]["benefitsEnabled"] is True
        assert "walletPool" in body
        assert body["recentAlerts"] == []

    def test_health_shows_recent_alerts(self, app, core) -> None:
        core.notifier.send("warning", "pool low")
        body = app.test_client().get("/healthz/jobs").get_json()
        assert [alert["title"] for alert in body["recentAlerts"]] == ["pool low"]

    def test_cli_jobs_run(self, app) -> None:
        result = app.test_cli_runner().invoke(args=["jobs", "run", "sanity", "--as-of", "2026-01-05T00:00:00"])
        assert result.exit_code == 0
        assert '"status": "success"' in result.output

    def test_cli_jobs_health_fails_when_stale(self, app) -> None:
        result = app.test_cli_runner().invoke(args=["jobs", "health"])
        assert result.exit_code == 1

    def test_cli_wallet_seed_and_stats(self, app, tmp_path) -> None:
        seed_file = tmp_path / "wallets.txt"
        seed_file.write_text(f"# pool\n{wallet_address(1)}\n{wallet_address(2)}\n")
        cli = app.test_cli_runner()

        assert cli.invoke(args=["wallets", "seed", str(seed_file)]).exit_code == 0
        result = cli.invoke(args=["wallets", "stats"])
        assert '"total": 2' in result.output
