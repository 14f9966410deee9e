from __future__ import annotations

from flask import current_app

from escrowcourt.extensions import db
from escrowcourt.models import AuditLog, Wallet
from escrowcourt.utils.clock import utc_now
from escrowcourt.utils.wallets import reconstruct_balances


def reconcile_wallets(*, limit: int = 500) -> dict:
    """Detect wallet anomalies (ledger vs stored balances).

    This does NOT auto-correct balances. It logs anomalies into AuditLog so they are visible.
    """
    checked = 0
    anomalies = 0
    now = utc_now()

    wallets = Wallet.query.order_by(Wallet.id.asc()).limit(int(limit)).all()

    for w in wallets:
        checked += 1
        computed_balance, computed_hold, unknown = reconstruct_balances(int(w.id))
        stored_balance = int(w.balance or 0)
        stored_hold = int(w.hold_balance or 0)

        issues = []
        if computed_balance != stored_balance:
            issues.append("balance_mismatch")
        if computed_hold != stored_hold:
            issues.append("hold_mismatch")
        if stored_balance < 0 or stored_hold < 0:
            issues.append("negative_balance")
        if unknown:
            issues.append("unknown_transaction_kind")

        if not issues:
            continue

        anomalies += 1
        meta = {
            "issues": issues,
            "wallet_id": int(w.id),
            "user_id": int(w.user_id),
            "computed_balance": computed_balance,
            "stored_balance": stored_balance,
            "computed_hold": computed_hold,
            "stored_hold": stored_hold,
            "unknown": [f"{t}/{d}" for t, d in unknown],
            "currency": w.currency or "VND",
            "at": now.isoformat(),
        }
        current_app.logger.warning("wallet anomaly wallet=%s issues=%s", w.id, ",".join(issues))
        AuditLog.record("wallet_anomaly", target_type="wallet", target_id=int(w.id), meta=meta, at=now)

    db.session.commit()
    return {"ok": True, "checked": checked, "anomalies": anomalies, "ts": now.isoformat()}
