"""Bounded in-memory record of recently processed webhook deliveries.

.. warning:: **Single-process limitation**

   Fingerprints live in process memory only.  Every replica keeps its own
   set and a restart empties it, so this is a fast path for the common
   "provider retried within seconds" case, not an exactly-once guarantee.
   The durable outcome-record existence check remains the authoritative
   guard against double sends.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import OrderedDict

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
DEFAULT_RETAIN = 500


def fingerprint(payload: bytes) -> str:
    """Return a stable fingerprint for a raw webhook payload.

    Uses the delivery's sequence number plus the canonical JSON of its event
    list, so cosmetic differences in the envelope do not defeat deduplication.
    Falls back to a digest of the raw bytes when the payload is not the
    expected JSON object.
    """
    try:
        body = json.loads(payload)
        if not isinstance(body, dict):
            raise ValueError("webhook payload is not an object")
        material = json.dumps(
            {
                "sequence": body.get("firstEventSequence"),
                "events": body.get("events"),
            },
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")
    except (ValueError, TypeError):
        material = payload
    return hashlib.sha256(material).hexdigest()


class FingerprintCache:
    """Insertion-ordered set of fingerprints capped at *capacity* entries.

    When an insert pushes the size past *capacity*, the oldest entries are
    evicted until only the *retain* most recent remain.

    Parameters
    ----------
    capacity:
        Maximum number of fingerprints held before trimming.
    retain:
        Number of most recent fingerprints kept after a trim.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, retain: int = DEFAULT_RETAIN) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if not 0 < retain <= capacity:
            raise ValueError("retain must be between 1 and capacity")
        self._capacity = capacity
        self._retain = retain
        self._entries: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def check_and_record(self, key: str) -> bool:
        """Record *key*; return ``False`` if it had already been seen."""
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = None
            if len(self._entries) > self._capacity:
                evicted = len(self._entries) - self._retain
                for _ in range(evicted):
                    self._entries.popitem(last=False)
                logger.debug("Fingerprint cache trimmed: evicted=%d retained=%d", evicted, self._retain)
            return True

    def discard(self, key: str) -> None:
        """Forget *key* so a later redelivery is processed again."""
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
