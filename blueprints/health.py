from flask import Blueprint, jsonify, current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from core import get_core
from jobs.tasks import jobs_health
from utils import utcnow

bp = Blueprint('health', __name__, url_prefix="/healthz")

# -------------------------------------------------------
# GET /healthz
# Liveness plus a database round trip
# -------------------------------------------------------

@bp.route("", methods=["GET"])
def healthz():
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Health check database error: {e}")
        return jsonify({"status": "error", "database": "unreachable"}), 503

    return jsonify({"status": "ok", "timestamp": utcnow().isoformat()}), 200


# -------------------------------------------------------
# GET /healthz/jobs
# Job freshness, operation flags, wallet pool counts and the last alerts
# -------------------------------------------------------

@bp.route("/jobs", methods=["GET"])
def jobs():
    core = get_core()
    report = jobs_health(core)
    report["flags"] = core.flags.summary()
    report["walletPool"] = core.pool.pool_stats()
    report["recentAlerts"] = list(core.notifier.recent)[-10:]
    return jsonify(report), 200 if report["healthy"] else 503
