import logging
import time
from collections import deque
from collections.abc import Callable

from .errors import ReplayGapError
from .types import EventRecord

__all__ = ["EventLog"]

logger = logging.getLogger(__name__)


class EventLog:
    """Bounded, ordered buffer of pushed events for one session.

    Event ids start at 1 and increase by one per append. Records are evicted
    oldest-first once ``capacity`` is exceeded or they are older than
    ``max_age`` seconds. Eviction is lossy by design of the protocol: a client
    resuming from an evicted id gets :class:`ReplayGapError` and must start a
    new session.

    The log has no lock of its own; the owning session serializes access.
    """

    __slots__ = ("_capacity", "_clock", "_evicted_through", "_last_event_id", "_max_age", "_records")

    def __init__(
        self,
        capacity: int = 1024,
        max_age: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("Event log capacity must be positive")
        self._capacity = capacity
        self._max_age = max_age
        self._clock = clock
        self._records: deque[EventRecord] = deque()
        self._last_event_id = 0
        self._evicted_through = 0

    def __len__(self) -> int:
        return len(self._records)

    @property
    def last_event_id(self) -> int:
        """Id of the most recent append, 0 if nothing was appended."""
        return self._last_event_id

    @property
    def floor(self) -> int:
        """Id of the oldest event still replayable."""
        return self._evicted_through + 1

    def append(self, payload: str) -> int:
        return self.record(payload).event_id

    def record(self, payload: str) -> EventRecord:
        """Append ``payload`` and return the stored record."""
        self._last_event_id += 1
        record = EventRecord(event_id=self._last_event_id, payload=payload, emitted_at=self._clock())
        self._records.append(record)
        self.prune()
        return record

    def replay_from(self, event_id: int) -> list[EventRecord]:
        """Return every retained event after ``event_id``, oldest first.

        Raises:
            ReplayGapError: If events after ``event_id`` were already evicted, or
                ``event_id`` was never issued by this log.
        """
        self.prune()
        if event_id < self._evicted_through or event_id > self._last_event_id:
            raise ReplayGapError(event_id, self.floor)
        return [record for record in self._records if record.event_id > event_id]

    def prune(self) -> int:
        dropped = 0
        while len(self._records) > self._capacity:
            self._evict()
            dropped += 1

        if self._max_age is not None:
            deadline = self._clock() - self._max_age
            while self._records and self._records[0].emitted_at < deadline:
                self._evict()
                dropped += 1

        if dropped:
            logger.debug("Evicted %d event(s), replay floor is now %d", dropped, self.floor)
        return dropped

    def clear(self) -> None:
        """Release every record. Later replays fail with a gap."""
        self._evicted_through = self._last_event_id
        self._records.clear()

    def _evict(self) -> None:
        record = self._records.popleft()
        self._evicted_through = record.event_id
