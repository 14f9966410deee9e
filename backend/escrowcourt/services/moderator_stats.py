from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from escrowcourt.extensions import db
from escrowcourt.models import ModeratorDailyStats
from escrowcourt.models.statuses import ResolutionType
from escrowcourt.utils.clock import utc_now
from escrowcourt.utils.unit_of_work import conditional_update

_RESOLUTION_COUNTERS = {
    ResolutionType.FULL_REFUND.value: "full_refunds",
    ResolutionType.PARTIAL_REFUND.value: "partial_refunds",
    ResolutionType.REJECT.value: "rejections",
    ResolutionType.REPLACE.value: "replacements",
}


class ModeratorStatsRecorder:
    """Per-moderator, per-day counters, bumped in SQL inside the caller's unit of work."""

    def __init__(self, *, clock=utc_now):
        self.clock = clock

    def _row_id(self, moderator_id: int, day) -> int:
        row = ModeratorDailyStats.query.filter_by(moderator_id=int(moderator_id), day=day).first()
        if row:
            return int(row.id)
        try:
            with db.session.begin_nested():
                row = ModeratorDailyStats(moderator_id=int(moderator_id), day=day)
                db.session.add(row)
            return int(row.id)
        except IntegrityError:
            row = ModeratorDailyStats.query.filter_by(moderator_id=int(moderator_id), day=day).first()
            if row:
                return int(row.id)
            raise

    def increment(self, moderator_id: int | None, *, extra: dict | None = None, **counters: int) -> None:
        if not moderator_id:
            return
        row_id = self._row_id(int(moderator_id), self.clock().date())
        values = {
            name: getattr(ModeratorDailyStats, name) + int(by)
            for name, by in counters.items()
            if by
        }
        values.update(extra or {})
        if values:
            conditional_update(ModeratorDailyStats, row_id, [], values)

    def record_assignment(self, moderator_id: int) -> None:
        self.increment(moderator_id, tickets_assigned=1)

    def record_resolution(
        self, moderator_id: int, resolution_type: str, resolution_minutes: float, *, on_time: bool, count_breach: bool = True
    ) -> None:
        minutes = max(float(resolution_minutes or 0.0), 0.0)
        counters = {"tickets_resolved": 1}
        counter = _RESOLUTION_COUNTERS.get(str(resolution_type))
        if counter:
            counters[counter] = 1
        if on_time:
            counters["on_time_resolutions"] = 1
        elif count_breach:
            counters["sla_breaches"] = 1
        extra = {
            "total_resolution_minutes": ModeratorDailyStats.total_resolution_minutes + minutes,
            "avg_resolution_minutes": (ModeratorDailyStats.total_resolution_minutes + minutes)
            / (ModeratorDailyStats.tickets_resolved + 1),
        }
        self.increment(moderator_id, extra=extra, **counters)

    def record_appeal(self, moderator_id: int | None, *, overturned: bool) -> None:
        self.increment(moderator_id, appeals_received=1, appeals_overturned=1 if overturned else 0)

    def record_sla_breach(self, moderator_id: int | None) -> None:
        self.increment(moderator_id, sla_breaches=1)

    def get_stats(self, moderator_id: int, day=None) -> dict:
        day = day or self.clock().date()
        row = ModeratorDailyStats.query.filter_by(moderator_id=int(moderator_id), day=day).first()
        if row is None:
            # Unsaved row: every counter reads as zero
            row = ModeratorDailyStats(moderator_id=int(moderator_id), day=day)
        return row.to_dict()
