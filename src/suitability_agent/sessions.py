"""Session persistence: in-memory map mirrored to JSONL and Redis."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis
from redis import Redis
from redis.exceptions import RedisError

from .models import Session

try:  # pragma: no cover - optional dependency path
    from redis.commands.json.path import Path as RedisJsonPath
except ImportError:  # pragma: no cover - fallback when RedisJSON missing
    RedisJsonPath = None

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "suitability:session:"
SESSION_INDEX_KEY = "suitability:sessions:index"
SESSION_STAGE_KEY = "suitability:sessions:stage"


def _timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class SessionStore:
    """Keeps sessions in memory and appends every save to a JSONL archive.

    When a Redis URL is configured each save is mirrored there as well,
    using RedisJSON when the server supports it. Redis failures are logged
    and never interrupt a turn.
    """

    def __init__(
        self,
        archive_path: Optional[Path] = None,
        redis_url: Optional[str] = None,
    ) -> None:
        self._sessions: Dict[str, Session] = {}
        self._archive_path = archive_path
        if self._archive_path is not None:
            self._archive_path.parent.mkdir(parents=True, exist_ok=True)
        self._redis_url = redis_url
        self._redis: Optional[Redis] = None

    @property
    def archive_path(self) -> Optional[Path]:
        return self._archive_path

    def _get_redis(self) -> Optional[Redis]:
        if not self._redis_url:
            return None
        if self._redis is None:
            try:
                self._redis = redis.from_url(  # type: ignore[call-overload]
                    self._redis_url,
                    decode_responses=True,
                )
            except RedisError as exc:  # pragma: no cover - network guarded
                logger.warning("Redis connection failed: %s", exc)
                self._redis = None
        return self._redis

    def create(self, ip: Optional[str] = None) -> Session:
        session = Session()
        session.data["audit"]["ip"] = ip
        self._sessions[session.id] = session
        logger.info("Created session %s", session.id)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        session = self._load_from_redis(session_id)
        if session is not None:
            self._sessions[session.id] = session
        return session

    def list(self) -> List[Session]:
        return sorted(self._sessions.values(), key=lambda item: item.created_at)

    def save(self, session: Session) -> None:
        self._sessions[session.id] = session
        record = session.to_dict()
        if self._archive_path is not None:
            meta = {
                "_meta": {
                    "session_id": session.id,
                    "ts": _timestamp(datetime.now(timezone.utc)),
                    "stage": session.stage.value,
                    "n_events": len(session.events),
                }
            }
            with self._archive_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(meta, ensure_ascii=False) + "\n")
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._mirror_to_redis(session, record)

    def load_archive(self) -> int:
        """Rebuild the in-memory map from the latest archived snapshots.

        Returns the number of sessions restored.
        """

        if self._archive_path is None or not self._archive_path.exists():
            return 0
        latest: Dict[str, Dict[str, Any]] = {}
        with self._archive_path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(
                        "Skipping malformed archive line %s in %s",
                        line_number,
                        self._archive_path,
                    )
                    continue
                if not isinstance(payload, dict) or "_meta" in payload or "id" not in payload:
                    continue
                latest[str(payload["id"])] = payload
        restored = 0
        for session_id, payload in latest.items():
            try:
                self._sessions[session_id] = Session.from_dict(payload)
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping archived session %s: %s", session_id, exc)
                continue
            restored += 1
        return restored

    def _mirror_to_redis(self, session: Session, record: Dict[str, Any]) -> None:
        client = self._get_redis()
        if not client:
            return
        key = f"{SESSION_KEY_PREFIX}{session.id}"
        try:
            if RedisJsonPath and hasattr(client, "json"):
                client.json().set(key, RedisJsonPath.root_path(), record)
            else:
                client.set(key, json.dumps(record, ensure_ascii=False))
            client.zadd(
                SESSION_INDEX_KEY,
                {session.id: datetime.now(timezone.utc).timestamp()},
            )
            client.hset(  # type: ignore[call-overload]
                SESSION_STAGE_KEY,
                session.id,
                session.stage.value,
            )
        except RedisError as exc:  # pragma: no cover - best effort
            logger.warning("Redis persistence failed for %s: %s", key, exc)

    def _load_from_redis(self, session_id: str) -> Optional[Session]:
        client = self._get_redis()
        if not client:
            return None
        key = f"{SESSION_KEY_PREFIX}{session_id}"
        try:
            if RedisJsonPath and hasattr(client, "json"):
                record = client.json().get(key)
            else:
                raw_value = client.get(key)
                record = json.loads(raw_value) if raw_value else None
        except (RedisError, json.JSONDecodeError) as exc:  # pragma: no cover
            logger.warning("Redis lookup failed for %s: %s", key, exc)
            return None
        if not isinstance(record, dict):
            return None
        try:
            return Session.from_dict(record)
        except (KeyError, ValueError) as exc:
            logger.warning("Ignoring unreadable session %s from Redis: %s", session_id, exc)
            return None
