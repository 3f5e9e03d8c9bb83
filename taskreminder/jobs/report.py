"""Delivery report workload for heavy jobs."""

from collections import Counter
from datetime import datetime
from typing import Any

from sqlalchemy import func, select

from taskreminder.jobs.chunked import ChunkedProcessor
from taskreminder.storage.database import SessionFactory
from taskreminder.storage.tables import NotificationLog


class DeliveryReportProcessor(ChunkedProcessor):
    """Counts delivery logs by channel and status over a date range.

    Each chunk yields one ``{channel, status, count}`` row per pair seen in
    it. Running results keep one row per pair, so the checkpoint size does
    not grow with the number of logs; ``summarize`` nests the rows by channel.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: int | None = None,
    ):
        self._session_factory = session_factory
        self._start = start
        self._end = end
        self._user_id = user_id

    def _filters(self) -> list[Any]:
        filters = []
        if self._start is not None:
            filters.append(NotificationLog.created_at >= self._start)
        if self._end is not None:
            filters.append(NotificationLog.created_at < self._end)
        if self._user_id is not None:
            filters.append(NotificationLog.user_id == self._user_id)
        return filters

    async def total_item_count(self) -> int:
        async with self._session_factory() as session:
            count = await session.scalar(select(func.count(NotificationLog.id)).where(*self._filters()))
            return int(count or 0)

    async def fetch_items(self, offset: int, limit: int) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(NotificationLog.id, NotificationLog.channel, NotificationLog.status)
                .where(*self._filters())
                .order_by(NotificationLog.id)
                .offset(offset)
                .limit(limit)
            )
            return [{"id": row.id, "channel": row.channel, "status": row.status} for row in rows]

    async def process_chunk(self, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return _rows(Counter((item["channel"], item["status"]) for item in items))

    def accumulate(self, results: list[dict[str, Any]], chunk_results: list[dict[str, Any]]) -> list[dict[str, Any]]:
        counts: Counter[tuple[str, str]] = Counter()
        for row in (*results, *chunk_results):
            counts[(row["channel"], row["status"])] += row["count"]
        return _rows(counts)

    async def summarize(self, results: list[dict[str, Any]]) -> dict[str, dict[str, int]]:
        summary: dict[str, dict[str, int]] = {}
        for row in results:
            by_status = summary.setdefault(row["channel"], {})
            by_status[row["status"]] = by_status.get(row["status"], 0) + row["count"]
        return summary


def _rows(counts: Counter[tuple[str, str]]) -> list[dict[str, Any]]:
    return [
        {"channel": channel, "status": status, "count": count}
        for (channel, status), count in sorted(counts.items())
    ]


def _parse_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def build_processor(name: str, params: dict[str, Any], session_factory: SessionFactory) -> ChunkedProcessor:
    """Instantiate a heavy-job processor from its payload name.

    Raises:
        ValueError: If the processor name is unknown
    """
    if name == "delivery_report":
        return DeliveryReportProcessor(
            session_factory,
            start=_parse_datetime(params.get("start")),
            end=_parse_datetime(params.get("end")),
            user_id=params.get("user_id"),
        )
    raise ValueError(f"Unknown processor: {name}")
