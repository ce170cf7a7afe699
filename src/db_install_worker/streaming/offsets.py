"""Per-partition commit watermarks for concurrently handled messages."""

from __future__ import annotations

TopicPartitionKey = tuple[str, int]


class OffsetTracker:
    """Tracks in-flight and completed offsets per (topic, partition).

    Messages complete out of order, so a partition may only be committed up
    to the highest completed offset that lies below every in-flight offset.
    """

    def __init__(self) -> None:
        self._in_flight: dict[TopicPartitionKey, set[int]] = {}
        self._completed: dict[TopicPartitionKey, int] = {}
        self._last_committed: dict[TopicPartitionKey, int] = {}

    @property
    def in_flight(self) -> int:
        return sum(len(offsets) for offsets in self._in_flight.values())

    def begin(self, tp: TopicPartitionKey, offset: int) -> None:
        self._in_flight.setdefault(tp, set()).add(offset)

    def complete(self, tp: TopicPartitionKey, offset: int) -> None:
        pending = self._in_flight.get(tp)
        if pending is None or offset not in pending:
            # Partition was revoked while the message was in flight
            return
        pending.discard(offset)
        if offset > self._completed.get(tp, -1):
            self._completed[tp] = offset

    def committable(self) -> dict[TopicPartitionKey, int]:
        """Offsets (last handled, not next-to-fetch) that advanced since the
        previous :meth:`mark_committed`."""
        result: dict[TopicPartitionKey, int] = {}
        for tp, done in self._completed.items():
            pending = self._in_flight.get(tp)
            watermark = min(done, min(pending) - 1) if pending else done
            if watermark > self._last_committed.get(tp, -1):
                result[tp] = watermark
        return result

    def mark_committed(self, offsets: dict[TopicPartitionKey, int]) -> None:
        self._last_committed.update(offsets)

    def forget_committed(self, partitions: list[TopicPartitionKey]) -> None:
        """Undo :meth:`mark_committed` for partitions whose commit failed."""
        for tp in partitions:
            self._last_committed.pop(tp, None)

    def revoke(self, partitions: list[TopicPartitionKey]) -> None:
        for tp in partitions:
            self._in_flight.pop(tp, None)
            self._completed.pop(tp, None)
            self._last_committed.pop(tp, None)
