"""Idempotency store: first-writer-wins claims over the key-value store"""

import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from issue_relay.models.base import utcnow
from issue_relay.services.errors import KeyValueStoreUnavailable
from issue_relay.services.kv_store import KeyValueStore
from issue_relay.services.metrics import MetricsSink

logger = logging.getLogger(__name__)

DEDUP_PREFIX = "dedup:"
MIN_TTL_SECONDS = 60
MAX_TTL_SECONDS = 86400


@dataclass(frozen=True)
class DeduplicationEntry:
    hash: str
    source_event: str
    entity_type: str
    entity_id: str
    timestamp: str
    ttl: int


def payload_digest(payload: Optional[Dict[str, Any]]) -> str:
    canonical = json.dumps(payload or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def event_hash(
    source: str,
    event_type: str,
    entity_id: str,
    timestamp: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> str:
    """Stable hash identifying one inbound event.

    Without a timestamp the payload content stands in for it, so only a
    byte-for-byte redelivery collides with an earlier event.
    """
    version = timestamp or f"payload:{payload_digest(payload)}"
    data = f"{source}:{event_type}:{entity_id}:{version}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def validate_ttl(ttl_seconds: int) -> int:
    ttl = int(ttl_seconds)
    if not MIN_TTL_SECONDS <= ttl <= MAX_TTL_SECONDS:
        raise ValueError(
            f"Deduplication TTL must be between {MIN_TTL_SECONDS} and {MAX_TTL_SECONDS} seconds, got {ttl}"
        )
    return ttl


class IdempotencyStore:
    """Atomic claim-or-reject reservations with automatic expiry.

    Failure policy: when the backing store is unreachable, `claim` answers True
    and `is_claimed` answers False (fail-open). Losing a legitimate event is
    worse for a relay than processing one twice, and every update the
    orchestrator issues is close to idempotent. Each fail-open decision is
    logged and counted, never silent.
    """

    def __init__(self, store: KeyValueStore, metrics: Optional[MetricsSink] = None):
        self._store = store
        self._metrics = metrics or MetricsSink()

    @staticmethod
    def _key(hash_: str) -> str:
        return f"{DEDUP_PREFIX}{hash_}"

    def claim(
        self, hash_: str, ttl_seconds: int, entry: Optional[DeduplicationEntry] = None
    ) -> bool:
        """Reserve `hash_` for `ttl_seconds`. False means someone already holds it."""
        ttl = validate_ttl(ttl_seconds)
        value = json.dumps(asdict(entry) if entry else {"hash": hash_, "timestamp": utcnow().isoformat()})
        try:
            claimed = self._store.set_if_absent(self._key(hash_), value, ttl)
        except KeyValueStoreUnavailable as e:
            logger.warning(f"Idempotency store unavailable, failing open for {hash_}: {e}")
            self._metrics.record_dedup_fail_open()
            return True
        if not claimed:
            logger.info(f"Duplicate event ignored: {hash_}")
            self._metrics.record_dedup_hit()
        return claimed

    def is_claimed(self, hash_: str) -> bool:
        """Read-only check."""
        try:
            return self._store.get(self._key(hash_)) is not None
        except KeyValueStoreUnavailable as e:
            logger.warning(f"Idempotency store unavailable, treating {hash_} as unclaimed: {e}")
            self._metrics.record_dedup_fail_open()
            return False

    def get_entry(self, hash_: str) -> Optional[Dict[str, Any]]:
        """Stored entry for a live claim, if any."""
        raw = self._store.get(self._key(hash_))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def release(self, hash_: str) -> bool:
        """Drop a claim so the event may be processed again."""
        return self._store.delete(self._key(hash_))
