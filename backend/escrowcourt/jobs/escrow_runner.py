from __future__ import annotations

from flask import current_app

from escrowcourt.services import get_services


def run_disbursement_sweep(*, limit: int | None = None) -> dict:
    """Release every escrowed line whose window has passed and has no blocking complaint.

    Lines under an active complaint or appeal are skipped by the query, so a
    sweep never fights the dispute workflow for the same money.
    """
    processor = get_services().processor
    limit = int(limit or current_app.config.get("DISBURSEMENT_BATCH_LIMIT", 100))
    result = processor.disburse_all_due(batch_limit=limit)
    if result.get("failed"):
        current_app.logger.warning(
            "escrow sweep finished with failures failed=%s of processed=%s",
            result.get("failed"), result.get("processed"),
        )
    return result
