"""escrow ledger and complaints

Revision ID: 3c1e9a7d5b20
Revises:
Create Date: 2026-10-19 09:12:44.318207

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c1e9a7d5b20'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_TICKET_WHERE = "status IN ('Open', 'InReview', 'NeedMoreInfo')"


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=160), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("trust_level", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("sku", sa.String(length=80), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("reserved_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_inventory_items_seller_id", "inventory_items", ["seller_id"])
    op.create_index("ix_inventory_items_status", "inventory_items", ["status"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_code", sa.String(length=40), nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="VND"),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_orders_order_code", "orders", ["order_code"], unique=True)
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])
    op.create_index("ix_orders_status", "orders", ["status"])

    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("inventory_item_id", sa.Integer(), sa.ForeignKey("inventory_items.id"), nullable=True),
        sa.Column("product_title", sa.String(length=200), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("subtotal", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("hold_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("hold_status", sa.String(length=16), nullable=False),
        sa.Column("item_status", sa.String(length=24), nullable=False),
        sa.Column("hold_at", sa.DateTime(), nullable=True),
        sa.Column("release_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_order_lines_order_id", "order_lines", ["order_id"])
    op.create_index("ix_order_lines_seller_id", "order_lines", ["seller_id"])
    op.create_index("ix_order_lines_hold_status", "order_lines", ["hold_status"])
    op.create_index("ix_order_lines_hold_at", "order_lines", ["hold_at"])

    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("hold_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="VND"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        sa.CheckConstraint("hold_balance >= 0", name="ck_wallets_hold_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_wallets_user_id", "wallets", ["user_id"], unique=True)

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("direction", sa.String(length=4), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("ref_type", sa.String(length=16), nullable=False),
        sa.Column("ref_id", sa.Integer(), nullable=True),
        sa.Column("note", sa.String(length=240), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_wallet_transactions_amount_positive"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_wallet_transactions_wallet_id", "wallet_transactions", ["wallet_id"])
    op.create_index("ix_wallet_transactions_type", "wallet_transactions", ["type"])
    op.create_index("ix_wallet_transactions_ref_id", "wallet_transactions", ["ref_id"])

    op.create_table(
        "complaint_tickets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ticket_code", sa.String(length=40), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("order_line_id", sa.Integer(), sa.ForeignKey("order_lines.id"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("subcategory", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("resolution_type", sa.String(length=24), nullable=False, server_default="None"),
        sa.Column("refund_amount", sa.BigInteger(), nullable=True),
        sa.Column("decision_note", sa.Text(), nullable=True),
        sa.Column("decided_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
        sa.Column("assigned_moderator_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("first_response_at", sa.DateTime(), nullable=True),
        sa.Column("seller_response_deadline", sa.DateTime(), nullable=True),
        sa.Column("seller_response_status", sa.String(length=16), nullable=False, server_default="Pending"),
        sa.Column("seller_response", sa.Text(), nullable=True),
        sa.Column("seller_responded_at", sa.DateTime(), nullable=True),
        sa.Column("seller_proposed_resolution", sa.String(length=24), nullable=True),
        sa.Column("seller_proposed_refund_amount", sa.BigInteger(), nullable=True),
        sa.Column("escalation_reason", sa.Text(), nullable=True),
        sa.Column("escalated_at", sa.DateTime(), nullable=True),
        sa.Column("appeal_deadline", sa.DateTime(), nullable=True),
        sa.Column("appeal_reason", sa.Text(), nullable=True),
        sa.Column("appeal_filed_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("appeal_filed_at", sa.DateTime(), nullable=True),
        sa.Column("appeal_decided_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("appeal_decided_at", sa.DateTime(), nullable=True),
        sa.Column("original_resolution_type", sa.String(length=24), nullable=True),
        sa.Column("order_value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("buyer_trust_level", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("seller_trust_level", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("order_snapshot", sa.Text(), nullable=True),
        sa.Column("calculated_priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escalation_level", sa.String(length=24), nullable=False, server_default="Level2_Moderator"),
        sa.Column("sla_breached", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_complaint_tickets_ticket_code", "complaint_tickets", ["ticket_code"], unique=True)
    op.create_index("ix_complaint_tickets_customer_id", "complaint_tickets", ["customer_id"])
    op.create_index("ix_complaint_tickets_seller_id", "complaint_tickets", ["seller_id"])
    op.create_index("ix_complaint_tickets_order_id", "complaint_tickets", ["order_id"])
    op.create_index("ix_complaint_tickets_order_line_id", "complaint_tickets", ["order_line_id"])
    op.create_index("ix_complaint_tickets_status", "complaint_tickets", ["status"])
    op.create_index("ix_complaint_tickets_assigned_moderator_id", "complaint_tickets", ["assigned_moderator_id"])
    op.create_index("ix_complaint_tickets_created_at", "complaint_tickets", ["created_at"])
    op.create_index(
        "uq_complaint_tickets_active_line",
        "complaint_tickets",
        ["order_line_id"],
        unique=True,
        sqlite_where=sa.text(ACTIVE_TICKET_WHERE),
        postgresql_where=sa.text(ACTIVE_TICKET_WHERE),
    )

    op.create_table(
        "complaint_evidence",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ticket_id", sa.Integer(), sa.ForeignKey("complaint_tickets.id"), nullable=False),
        sa.Column("uploaded_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("party", sa.String(length=16), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("url", sa.String(length=500), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_complaint_evidence_ticket_id", "complaint_evidence", ["ticket_id"])

    op.create_table(
        "complaint_internal_notes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ticket_id", sa.Integer(), sa.ForeignKey("complaint_tickets.id"), nullable=False),
        sa.Column("author_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_complaint_internal_notes_ticket_id", "complaint_internal_notes", ["ticket_id"])

    op.create_table(
        "complaint_queue",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ticket_id", sa.Integer(), sa.ForeignKey("complaint_tickets.id"), nullable=False),
        sa.Column("assigned_moderator_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("queue_priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_resolution_minutes", sa.Integer(), nullable=False, server_default="120"),
        sa.Column("added_to_queue_at", sa.DateTime(), nullable=False),
        sa.Column("picked_up_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("claim_token", sa.String(length=36), nullable=True),
        sa.Column("order_value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("buyer_trust_level", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("seller_trust_level", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("ticket_age", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_high_value", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_escalated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("claim_token"),
    )
    op.create_index("ix_complaint_queue_ticket_id", "complaint_queue", ["ticket_id"], unique=True)
    op.create_index("ix_complaint_queue_assigned_moderator_id", "complaint_queue", ["assigned_moderator_id"])
    op.create_index(
        "ix_complaint_queue_pick_order", "complaint_queue", ["status", "queue_priority", "added_to_queue_at"]
    )

    op.create_table(
        "complaint_timeline",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ticket_id", sa.Integer(), sa.ForeignKey("complaint_tickets.id"), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("actor_role", sa.String(length=16), nullable=False, server_default="system"),
        sa.Column("description", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("meta", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_complaint_timeline_ticket_id", "complaint_timeline", ["ticket_id"])
    op.create_index("ix_complaint_timeline_created_at", "complaint_timeline", ["created_at"])

    op.create_table(
        "moderator_daily_stats",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("moderator_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("tickets_assigned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tickets_resolved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("full_refunds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("partial_refunds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rejections", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("replacements", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("appeals_received", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("appeals_overturned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sla_breaches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("on_time_resolutions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_resolution_minutes", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_resolution_minutes", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("moderator_id", "day", name="uq_moderator_daily_stats_day"),
    )
    op.create_index("ix_moderator_daily_stats_moderator_id", "moderator_daily_stats", ["moderator_id"])
    op.create_index("ix_moderator_daily_stats_day", "moderator_daily_stats", ["day"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("target_type", sa.String(length=64), nullable=True),
        sa.Column("target_id", sa.Integer(), nullable=True),
        sa.Column("meta", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("moderator_daily_stats")
    op.drop_table("complaint_timeline")
    op.drop_table("complaint_queue")
    op.drop_table("complaint_internal_notes")
    op.drop_table("complaint_evidence")
    op.drop_index("uq_complaint_tickets_active_line", table_name="complaint_tickets")
    op.drop_table("complaint_tickets")
    op.drop_table("wallet_transactions")
    op.drop_table("wallets")
    op.drop_table("order_lines")
    op.drop_table("orders")
    op.drop_table("inventory_items")
    op.drop_table("users")
