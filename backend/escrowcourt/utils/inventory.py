from __future__ import annotations

from escrowcourt.models import InventoryItem
from escrowcourt.models.statuses import InventoryStatus
from escrowcourt.utils.unit_of_work import conditional_update


class InventoryGateway:
    """Inventory status changes made inside the caller's unit of work."""

    def mark_delivered(self, item_id: int | None, now) -> bool:
        if not item_id:
            return False
        return conditional_update(
            InventoryItem,
            item_id,
            [InventoryItem.status != InventoryStatus.REVOKED.value],
            {"status": InventoryStatus.DELIVERED.value, "delivered_at": now},
        )

    def mark_available(self, item_id: int | None) -> bool:
        if not item_id:
            return False
        return conditional_update(
            InventoryItem,
            item_id,
            [InventoryItem.status != InventoryStatus.REVOKED.value],
            {"status": InventoryStatus.AVAILABLE.value, "reserved_at": None},
        )

    def reserve(self, item_id: int | None, now) -> bool:
        if not item_id:
            return False
        return conditional_update(
            InventoryItem,
            item_id,
            [InventoryItem.status == InventoryStatus.AVAILABLE.value],
            {"status": InventoryStatus.RESERVED.value, "reserved_at": now},
        )
