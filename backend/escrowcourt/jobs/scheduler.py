"""
Background jobs for the escrow engine.

Each job runs in its own app context on an APScheduler background thread.
Jobs are independent of request handling: one failing job is logged and the
next tick runs as normal.
"""

from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from escrowcourt.extensions import db
from escrowcourt.jobs.complaint_runner import (
    close_expired_appeal_windows,
    escalate_seller_timeouts,
    refresh_queue_priorities,
    run_sla_monitor,
)
from escrowcourt.jobs.escrow_runner import run_disbursement_sweep
from escrowcourt.jobs.wallet_reconciler import reconcile_wallets

# (job id, function, config key holding the interval in minutes)
JOBS = (
    ("disbursement_sweep", run_disbursement_sweep, "DISBURSEMENT_SWEEP_MINUTES"),
    ("queue_priority_refresh", refresh_queue_priorities, "PRIORITY_REFRESH_MINUTES"),
    ("sla_monitor", run_sla_monitor, "SLA_SWEEP_MINUTES"),
    ("seller_timeout_escalation", escalate_seller_timeouts, "SELLER_TIMEOUT_SWEEP_MINUTES"),
    ("appeal_window_close", close_expired_appeal_windows, "APPEAL_CLOSE_MINUTES"),
    ("wallet_reconcile", reconcile_wallets, "WALLET_RECONCILE_MINUTES"),
)


def run_job(app, job_id: str, func) -> dict | None:
    with app.app_context():
        try:
            result = func()
            app.logger.info("job %s finished: %s", job_id, result)
            return result
        except Exception:
            db.session.rollback()
            app.logger.exception("job %s failed", job_id)
            return None
        finally:
            db.session.remove()


def build_scheduler(app) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 120,
        },
        timezone="UTC",
    )
    for job_id, func, interval_key in JOBS:
        minutes = int(app.config.get(interval_key) or 0)
        if minutes <= 0:
            app.logger.info("job %s disabled (%s=%s)", job_id, interval_key, minutes)
            continue
        scheduler.add_job(
            run_job,
            trigger=IntervalTrigger(minutes=minutes),
            args=(app, job_id, func),
            id=job_id,
            name=job_id.replace("_", " "),
            replace_existing=True,
        )
    return scheduler


def start_scheduler(app) -> BackgroundScheduler:
    scheduler = build_scheduler(app)
    scheduler.start()
    app.logger.info("scheduler started jobs=%s", [j.id for j in scheduler.get_jobs()])
    return scheduler
