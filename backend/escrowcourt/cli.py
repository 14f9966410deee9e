from __future__ import annotations

import json

import click
from flask.cli import AppGroup

from escrowcourt.jobs.complaint_runner import (
    close_expired_appeal_windows,
    escalate_seller_timeouts,
    refresh_queue_priorities,
    run_sla_monitor,
)
from escrowcourt.jobs.escrow_runner import run_disbursement_sweep
from escrowcourt.jobs.wallet_reconciler import reconcile_wallets
from escrowcourt.services import get_services

escrow_cli = AppGroup("escrow", help="Escrow settlement and complaint queue maintenance.")


def _echo(result) -> None:
    click.echo(json.dumps(result, indent=2, default=str))


@escrow_cli.command("disburse")
@click.option("--limit", type=int, default=None, help="Max lines to release in this run.")
def disburse_command(limit):
    """Release every line whose escrow window has passed."""
    _echo(run_disbursement_sweep(limit=limit))


@escrow_cli.command("disburse-line")
@click.argument("order_line_id", type=int)
def disburse_line_command(order_line_id):
    result = get_services().processor.disburse(order_line_id)
    _echo(result)
    if not result.get("success"):
        raise SystemExit(1)


@escrow_cli.command("refresh-priorities")
def refresh_priorities_command():
    _echo(refresh_queue_priorities())


@escrow_cli.command("sla-sweep")
@click.option("--limit", type=int, default=500)
def sla_sweep_command(limit):
    _echo(run_sla_monitor(limit=limit))


@escrow_cli.command("close-appeals")
@click.option("--limit", type=int, default=500)
def close_appeals_command(limit):
    """Close decided complaints whose appeal window ran out."""
    _echo(close_expired_appeal_windows(limit=limit))


@escrow_cli.command("seller-timeouts")
@click.option("--limit", type=int, default=500)
def seller_timeouts_command(limit):
    """Escalate complaints the seller did not answer in time."""
    _echo(escalate_seller_timeouts(limit=limit))


@escrow_cli.command("reconcile")
@click.option("--limit", type=int, default=500)
def reconcile_command(limit):
    _echo(reconcile_wallets(limit=limit))


@escrow_cli.command("queue-stats")
def queue_stats_command():
    queue = get_services().queue
    _echo({"stats": queue.get_queue_stats(), "workload": queue.get_moderator_workload()})
