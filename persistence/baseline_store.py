"""
Vigil Baseline Store

Redis persistence for baseline snapshots so a device profile survives
restarts without re-running calibration.

Record layout under BASELINE:{profile_id} (JSON):
    snapshot: BaselineSnapshot JSON
    checksum: sha256 of the snapshot JSON
    version:  monotonically increasing write counter

Writes use WATCH/MULTI/EXEC with retry; a record failing checksum or
validation is treated as missing.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Optional

import redis
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from core.schemas.outputs import BaselineSnapshot
from persistence.connection import get_redis_client


logger = logging.getLogger(__name__)


class BaselineStore:
    """
    Checksummed, versioned snapshot storage.

    Args:
        client: Redis client; the cached environment-configured client when omitted.
    """

    MAX_RETRIES: int = 5
    SNAPSHOT_TTL: Optional[int] = None  # snapshots persist until reset

    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self.client = client if client is not None else get_redis_client()

    def _key(self, profile_id: str) -> str:
        return f"BASELINE:{profile_id}"

    @staticmethod
    def _checksum(payload: str) -> str:
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def load(self, profile_id: str) -> Optional[BaselineSnapshot]:
        """Load and verify a snapshot; None if missing or corrupted."""
        try:
            raw = self.client.get(self._key(profile_id))
        except RedisError as e:
            logger.error(f"Failed to load baseline for {profile_id}: {e}")
            return None

        if raw is None:
            logger.debug(f"No stored baseline for {profile_id}")
            return None

        try:
            record = json.loads(raw)
            payload = record["snapshot"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Malformed baseline record for {profile_id}: {e}")
            return None

        if self._checksum(payload) != record.get("checksum"):
            logger.error(f"Checksum mismatch for baseline {profile_id}, ignoring record")
            return None

        try:
            snapshot = BaselineSnapshot.model_validate_json(payload)
        except ValidationError as e:
            logger.error(f"Rejected invalid baseline for {profile_id}: {e.error_count()} errors")
            return None

        logger.info(f"Loaded baseline {profile_id} (version {record.get('version', 0)})")
        return snapshot

    def version(self, profile_id: str) -> int:
        try:
            raw = self.client.get(self._key(profile_id))
            return int(json.loads(raw).get("version", 0)) if raw else 0
        except (RedisError, json.JSONDecodeError, TypeError, ValueError) as e:
            logger.error(f"Failed to read baseline version for {profile_id}: {e}")
            return 0

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def save(self, snapshot: BaselineSnapshot) -> bool:
        """
        Store a snapshot, bumping its version atomically.

        Returns:
            True on success, False on Redis errors or retry exhaustion.
        """
        key = self._key(snapshot.profile_id)
        payload = snapshot.model_dump_json()
        checksum = self._checksum(payload)

        for attempt in range(self.MAX_RETRIES):
            try:
                pipe = self.client.pipeline(True)
                pipe.watch(key)

                current = pipe.get(key)
                version = 0
                if current:
                    try:
                        version = int(json.loads(current).get("version", 0))
                    except (json.JSONDecodeError, TypeError, ValueError):
                        logger.warning(f"Overwriting unreadable baseline record {key}")

                record = json.dumps({
                    "snapshot": payload,
                    "checksum": checksum,
                    "version": version + 1,
                })

                pipe.multi()
                if self.SNAPSHOT_TTL:
                    pipe.setex(key, self.SNAPSHOT_TTL, record)
                else:
                    pipe.set(key, record)
                pipe.execute()

                logger.info(f"Saved baseline {snapshot.profile_id} (version {version + 1})")
                return True

            except WatchError:
                logger.debug(f"Watch conflict saving baseline, attempt {attempt + 1}")
                continue
            except RedisError as e:
                logger.error(f"Redis error saving baseline {snapshot.profile_id}: {e}")
                return False

        logger.warning(f"Max retries exceeded saving baseline {snapshot.profile_id}")
        return False

    def delete(self, profile_id: str) -> bool:
        try:
            self.client.delete(self._key(profile_id))
            logger.info(f"Deleted baseline {profile_id}")
            return True
        except RedisError as e:
            logger.error(f"Failed to delete baseline {profile_id}: {e}")
            return False
