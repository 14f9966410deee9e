from .user import User  # noqa: F401
from .inventory import InventoryItem  # noqa: F401
from .order import Order, OrderLine  # noqa: F401

from .wallet import Wallet  # noqa: F401
from .wallet_txn import WalletTransaction  # noqa: F401

from .complaint import ComplaintTicket, ComplaintEvidence, ComplaintInternalNote  # noqa: F401
from .complaint_queue import ComplaintQueueEntry  # noqa: F401
from .complaint_timeline import ComplaintTimelineEvent  # noqa: F401
from .moderator_stats import ModeratorDailyStats  # noqa: F401

from .audit_log import AuditLog  # noqa: F401
