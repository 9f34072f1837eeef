import threading
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


@dataclass(slots=True)
class _Entry:
    # high-water mark of the cumulative values observed
    value: "float"
    bucket_start: "int"
    # set once the bucket has been observed after its end time
    closed: "bool"


class BucketLedger:
    """
    BucketLedger: Is a thread-safe record of how much of each
    usage bucket has already been published to counters.

    Every (bucket key, sub-measure) maps to the cumulative value
    that has been reflected in the published counter so far.
    observe() returns the increment to publish for a fresh
    observation, so repeated or overlapping fetches never count
    the same bucket twice and counters never go backwards.

    When track_open_buckets is False, buckets that haven't ended
    yet are skipped and only counted once they close.

    Supports time-based eviction via evict_before() to prevent
    unbounded memory growth.
    """

    def __init__(self, track_open_buckets: "bool" = True) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._entries: "dict[str, _Entry]" = {}
        self._track_open = track_open_buckets

    @property
    def track_open_buckets(self) -> "bool":
        return self._track_open

    def __len__(self) -> "int":
        with self._lock:
            return len(self._entries)

    def observe(
        self,
        key: "str",
        value: "float",
        bucket_start: "int",
        closed: "bool",
    ) -> "float":
        """
        records an observation of a bucket's cumulative value and
        returns the amount that should be added to its counter.
        """
        if not closed and not self._track_open:
            return 0.0

        previous: "float | None" = None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = _Entry(value, bucket_start, closed)
                return value

            if entry.closed:
                return 0.0

            entry.closed = closed
            if value <= entry.value:
                if value < entry.value:
                    previous = entry.value
                delta = 0.0
            else:
                delta = value - entry.value
                entry.value = value

        if previous is not None:
            # upstream revised a bucket downwards; counters can't
            # decrease so the difference is dropped
            logger.warning(
                "usage_value_decreased",
                key=key,
                previous=previous,
                observed=value,
            )
        return delta

    def recorded(self, key: "str") -> "float | None":
        """
        returns the cumulative value published so far for key.
        """
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry is not None else None

    def evict_before(self, cutoff: "int") -> "int":
        """
        removes all entries with bucket_start older than cutoff.
        Returns the number of evicted entries.
        """
        with self._lock:
            to_remove = [k for k, e in self._entries.items() if e.bucket_start < cutoff]
            for k in to_remove:
                del self._entries[k]
            return len(to_remove)
