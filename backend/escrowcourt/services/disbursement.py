from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import and_, exists

from escrowcourt.errors import DependencyFailureError, EscrowCourtError, NotFoundError, StateConflictError, ValidationError
from escrowcourt.extensions import db
from escrowcourt.models import AuditLog, ComplaintTicket, Order, OrderLine
from escrowcourt.models.statuses import Direction, HoldStatus, ItemStatus, OrderStatus, RefType, TxnType
from escrowcourt.services.complaint_states import DISBURSEMENT_BLOCKING_STATUSES, values
from escrowcourt.utils.clock import hours_between, utc_now
from escrowcourt.utils.commission import net_of_fee
from escrowcourt.utils.inventory import InventoryGateway
from escrowcourt.utils.unit_of_work import conditional_update, unit_of_work
from escrowcourt.utils.wallets import WalletProvider, adjust_wallet, record_txn

REMAINDER_HOLD = "hold"
REMAINDER_RELEASE = "release_to_seller"


def _result(success: bool, message: str, code: str | None = None, **extra) -> dict:
    out = {"success": bool(success), "message": message, "code": code or ("ok" if success else "error")}
    out.update(extra)
    return out


class DisbursementProcessor:
    """Moves escrowed money for one order line: release to the seller or refund to the buyer.

    Guard failures come back as ``{"success": False, "message", "code"}`` so a sweep
    can keep going. Anything unexpected propagates after the unit of work rolls back.
    """

    def __init__(
        self,
        *,
        wallets: WalletProvider,
        inventory: InventoryGateway,
        clock=utc_now,
        escrow_window_hours: int = 72,
        fee_rate: float = 0.05,
        batch_limit: int = 100,
        partial_refund_remainder: str = REMAINDER_HOLD,
    ):
        self.wallets = wallets
        self.inventory = inventory
        self.clock = clock
        self.escrow_window_hours = int(escrow_window_hours)
        self.fee_rate = float(fee_rate)
        self.batch_limit = int(batch_limit)
        self.partial_refund_remainder = partial_refund_remainder

    # -------------------------
    # Queries
    # -------------------------
    def _blocking_ticket_clause(self):
        return exists().where(
            and_(
                ComplaintTicket.order_line_id == OrderLine.id,
                ComplaintTicket.status.in_(values(DISBURSEMENT_BLOCKING_STATUSES)),
            )
        )

    def has_blocking_ticket(self, order_line_id: int) -> bool:
        row = (
            ComplaintTicket.query.filter(
                ComplaintTicket.order_line_id == int(order_line_id),
                ComplaintTicket.status.in_(values(DISBURSEMENT_BLOCKING_STATUSES)),
            )
            .with_entities(ComplaintTicket.id)
            .first()
        )
        return row is not None

    def due_line_ids(self, *, limit: int | None = None) -> list[int]:
        cutoff = self.clock() - timedelta(hours=self.escrow_window_hours)
        rows = (
            db.session.query(OrderLine.id)
            .filter(
                OrderLine.hold_status == HoldStatus.HOLDING.value,
                OrderLine.hold_at.isnot(None),
                OrderLine.hold_at <= cutoff,
                OrderLine.item_status != ItemStatus.DISPUTED.value,
                ~self._blocking_ticket_clause(),
            )
            .order_by(OrderLine.hold_at.asc(), OrderLine.id.asc())
            .limit(int(limit or self.batch_limit))
            .all()
        )
        return [int(r[0]) for r in rows]

    # -------------------------
    # Hold
    # -------------------------
    def place_hold(self, order_id: int) -> dict:
        """Charge a PendingPayment order to the buyer's wallet and escrow every line."""
        now = self.clock()
        order = db.session.get(Order, int(order_id))
        if order is None:
            raise NotFoundError("Order not found", order_id=int(order_id))
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            raise StateConflictError(f"Order {order.order_code} is {order.status}, not awaiting payment")

        lines = list(order.lines or [])
        if not lines:
            raise ValidationError(f"Order {order.order_code} has no lines")
        amounts = {}
        for line in lines:
            amt = int(line.hold_amount or 0) or int(line.subtotal or 0)
            if amt <= 0:
                raise ValidationError("Order line amount must be positive", order_line_id=int(line.id))
            amounts[int(line.id)] = amt
        total = sum(amounts.values())

        wallet = self.wallets.get_or_create(int(order.buyer_id))
        if int(wallet.balance or 0) < total:
            raise ValidationError("Insufficient wallet balance", required=total, balance=int(wallet.balance or 0))

        with unit_of_work():
            if not conditional_update(
                Order,
                order.id,
                [Order.status == OrderStatus.PENDING_PAYMENT.value],
                {"status": OrderStatus.PAID.value, "paid_at": now, "total_amount": total, "updated_at": now},
            ):
                raise StateConflictError("Order was paid concurrently", order_id=int(order_id))
            adjust_wallet(wallet.id, balance_delta=-total, hold_delta=total)
            for line in lines:
                amt = amounts[int(line.id)]
                line.hold_amount = amt
                line.hold_status = HoldStatus.HOLDING.value
                line.item_status = ItemStatus.DELIVERED.value
                line.hold_at = now
                line.delivered_at = now
                self.inventory.reserve(line.inventory_item_id, now)
                record_txn(
                    wallet_id=wallet.id,
                    type=TxnType.HOLD,
                    direction=Direction.OUT,
                    amount=amt,
                    ref_type=RefType.ORDER_LINE,
                    ref_id=line.id,
                    note=f"Escrow hold for order line #{int(line.id)}",
                    at=now,
                )

        current_app.logger.info("escrow hold placed order=%s total=%s lines=%s", order_id, total, len(lines))
        return _result(True, "Funds held in escrow", "ok", order_id=int(order_id), total=total)

    # -------------------------
    # Disbursement
    # -------------------------
    def _refused(self, order_line_id: int) -> dict:
        line = db.session.get(OrderLine, int(order_line_id))
        if line is None:
            return _result(False, "Order item not found", "not_found")
        if line.hold_status != HoldStatus.HOLDING.value:
            return _result(False, "Order item already processed", "already_processed")
        return _result(False, "Order item has an open complaint", "open_dispute")

    def disburse(self, order_line_id: int) -> dict:
        now = self.clock()
        line = db.session.get(OrderLine, int(order_line_id))
        if line is None:
            return _result(False, "Order item not found", "not_found")
        if line.hold_status != HoldStatus.HOLDING.value:
            return _result(False, "Order item already processed", "already_processed")

        elapsed = hours_between(line.hold_at, now)
        if line.hold_at is None or elapsed < self.escrow_window_hours:
            return _result(
                False,
                f"Escrow period not yet passed ({elapsed:.1f}h of {self.escrow_window_hours}h)",
                "window_open",
            )
        if line.item_status == ItemStatus.DISPUTED.value or self.has_blocking_ticket(line.id):
            return _result(False, "Order item has an open complaint", "open_dispute")

        line_id = int(line.id)
        order_id = int(line.order_id)
        item_id = line.inventory_item_id
        hold = int(line.hold_amount or 0)
        buyer_id = int(line.order.buyer_id)
        seller_id = int(line.seller_id)
        net, fee = net_of_fee(hold, self.fee_rate)

        seller_wallet = self.wallets.get_or_create(seller_id)

        with unit_of_work():
            buyer_wallet = self.wallets.get(buyer_id)
            if buyer_wallet is None:
                raise DependencyFailureError("Buyer wallet unavailable", order_line_id=line_id)

            claimed = conditional_update(
                OrderLine,
                line_id,
                [
                    OrderLine.hold_status == HoldStatus.HOLDING.value,
                    OrderLine.item_status != ItemStatus.DISPUTED.value,
                ],
                {
                    "hold_status": HoldStatus.RELEASED.value,
                    "item_status": ItemStatus.COMPLETED.value,
                    "release_at": now,
                    "updated_at": now,
                },
            )
            if not claimed:
                return self._refused(line_id)

            if hold > 0:
                adjust_wallet(buyer_wallet.id, hold_delta=-hold)
                record_txn(
                    wallet_id=buyer_wallet.id,
                    type=TxnType.RELEASE,
                    direction=Direction.OUT,
                    amount=hold,
                    ref_type=RefType.ORDER_LINE,
                    ref_id=line_id,
                    note=f"Escrow release for order line #{line_id}",
                    at=now,
                )
            if net > 0:
                adjust_wallet(seller_wallet.id, balance_delta=net)
                record_txn(
                    wallet_id=seller_wallet.id,
                    type=TxnType.RELEASE,
                    direction=Direction.IN,
                    amount=net,
                    ref_type=RefType.ORDER_LINE,
                    ref_id=line_id,
                    note=f"Sale proceeds for order line #{line_id} (fee {fee})",
                    at=now,
                )
            self.inventory.mark_delivered(item_id, now)
            self._settle_order(order_id, now)

        current_app.logger.info(
            "escrow released line=%s hold=%s seller=%s net=%s fee=%s", line_id, hold, seller_id, net, fee
        )
        return _result(True, "Disbursement successful", "ok", order_line_id=line_id, seller_amount=net, fee=fee)

    def disburse_all_due(self, batch_limit: int | None = None) -> dict:
        """Release every line whose escrow window has passed, one unit of work per line."""
        processed = 0
        succeeded = 0
        failed = 0
        errors = []

        for line_id in self.due_line_ids(limit=batch_limit):
            processed += 1
            try:
                res = self.disburse(line_id)
            except Exception as exc:
                db.session.rollback()
                current_app.logger.exception("escrow release failed line=%s", line_id)
                message = exc.message if isinstance(exc, EscrowCourtError) else "Temporary failure, retry later"
                res = _result(False, message, getattr(exc, "code", "error"))
            if res.get("success"):
                succeeded += 1
            else:
                failed += 1
                errors.append({"order_line_id": line_id, "message": res.get("message"), "code": res.get("code")})

        current_app.logger.info(
            "escrow sweep processed=%s succeeded=%s failed=%s", processed, succeeded, failed
        )
        return {
            "ok": True,
            "processed": processed,
            "succeeded": succeeded,
            "failed": failed,
            "errors": errors,
            "ts": self.clock().isoformat(),
        }

    # -------------------------
    # Refund
    # -------------------------
    def refund(self, order_line_id: int, refund_amount, ticket_id: int | None = None) -> dict:
        now = self.clock()
        line = db.session.get(OrderLine, int(order_line_id))
        if line is None:
            return _result(False, "Order item not found", "not_found")
        if line.hold_status != HoldStatus.HOLDING.value:
            return _result(False, "Order item already processed", "already_processed")

        hold = int(line.hold_amount or 0)
        try:
            amount = int(refund_amount)
        except (TypeError, ValueError):
            return _result(False, "Refund amount must be a whole number", "invalid_amount")
        if amount <= 0 or amount > hold:
            return _result(False, f"Refund amount must be between 1 and {hold}", "invalid_amount")

        line_id = int(line.id)
        order_id = int(line.order_id)
        item_id = line.inventory_item_id
        buyer_id = int(line.order.buyer_id)
        seller_id = int(line.seller_id)
        remainder = hold - amount
        release_remainder = remainder > 0 and self.partial_refund_remainder == REMAINDER_RELEASE
        seller_wallet = self.wallets.get_or_create(seller_id) if release_remainder else None
        ref_note = f" (ticket #{int(ticket_id)})" if ticket_id else ""

        with unit_of_work():
            buyer_wallet = self.wallets.get(buyer_id)
            if buyer_wallet is None:
                raise DependencyFailureError("Buyer wallet unavailable", order_line_id=line_id)

            claimed = conditional_update(
                OrderLine,
                line_id,
                [OrderLine.hold_status == HoldStatus.HOLDING.value],
                {
                    "hold_status": HoldStatus.REFUNDED.value,
                    "item_status": ItemStatus.REFUNDED.value,
                    "release_at": now,
                    "updated_at": now,
                },
            )
            if not claimed:
                return _result(False, "Order item already processed", "already_processed")

            adjust_wallet(buyer_wallet.id, balance_delta=amount, hold_delta=-amount)
            record_txn(
                wallet_id=buyer_wallet.id,
                type=TxnType.REFUND,
                direction=Direction.IN,
                amount=amount,
                ref_type=RefType.ORDER_LINE,
                ref_id=line_id,
                note=f"Refund for order line #{line_id}{ref_note}",
                at=now,
            )

            if release_remainder:
                self._release_remainder(buyer_wallet.id, seller_wallet.id, line_id, remainder, now)
            elif remainder > 0:
                AuditLog.record(
                    "escrow_remainder_held",
                    target_type="order_line",
                    target_id=line_id,
                    meta={
                        "order_line_id": line_id,
                        "ticket_id": ticket_id,
                        "hold_amount": hold,
                        "refund_amount": amount,
                        "remainder": remainder,
                        "buyer_id": buyer_id,
                        "seller_id": seller_id,
                    },
                    at=now,
                )

            self.inventory.mark_available(item_id)
            self._settle_order(order_id, now, partial_refund=amount < hold)

        current_app.logger.info(
            "escrow refunded line=%s amount=%s of %s ticket=%s", line_id, amount, hold, ticket_id
        )
        return _result(True, "Refund successful", "ok", order_line_id=line_id, refund_amount=amount, remainder=remainder)

    def _release_remainder(self, buyer_wallet_id: int, seller_wallet_id: int, line_id: int, remainder: int, now) -> None:
        net, fee = net_of_fee(remainder, self.fee_rate)
        adjust_wallet(buyer_wallet_id, hold_delta=-remainder)
        record_txn(
            wallet_id=buyer_wallet_id,
            type=TxnType.RELEASE,
            direction=Direction.OUT,
            amount=remainder,
            ref_type=RefType.ORDER_LINE,
            ref_id=line_id,
            note=f"Unrefunded remainder released for order line #{line_id}",
            at=now,
        )
        if net > 0:
            adjust_wallet(seller_wallet_id, balance_delta=net)
            record_txn(
                wallet_id=seller_wallet_id,
                type=TxnType.RELEASE,
                direction=Direction.IN,
                amount=net,
                ref_type=RefType.ORDER_LINE,
                ref_id=line_id,
                note=f"Partial sale proceeds for order line #{line_id} (fee {fee})",
                at=now,
            )

    # -------------------------
    # Order roll-up
    # -------------------------
    def _settle_order(self, order_id: int, now, *, partial_refund: bool | None = None) -> None:
        order = db.session.get(Order, int(order_id))
        if order is None:
            return
        statuses = [
            row[0]
            for row in db.session.query(OrderLine.item_status).filter(OrderLine.order_id == int(order_id)).all()
        ]
        settled = all(s in (ItemStatus.COMPLETED.value, ItemStatus.REFUNDED.value) for s in statuses)
        all_refunded = all(s == ItemStatus.REFUNDED.value for s in statuses)

        if partial_refund is None:
            # Release path
            if settled and not all_refunded:
                order.status = OrderStatus.COMPLETED.value
        elif partial_refund:
            order.status = OrderStatus.DISPUTED.value
        elif all_refunded:
            order.status = OrderStatus.REFUNDED.value
        elif settled:
            order.status = OrderStatus.COMPLETED.value
        else:
            order.status = OrderStatus.DISPUTED.value
        order.updated_at = now

    # Aliases
    process_order_item_disbursement = disburse
    process_all_pending_disbursements = disburse_all_due
    process_refund = refund
