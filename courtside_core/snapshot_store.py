"""Device-local snapshot storage for match state and configuration."""
from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import quote

from pydantic import ValidationError

from .validation import MatchConfiguration

logger = logging.getLogger(__name__)

MATCH_STATE_PREFIX = "courtside-match-state:"
MATCH_CONFIG_PREFIX = "courtside-match-config:"


class KeyValueBackend(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryBackend:
    """Process-lifetime backend, mainly for tests."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileBackend:
    """One JSON file per key under `root`; writes are atomic replaces."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for_key(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path_for_key(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path_for_key(key)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(value)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def delete(self, key: str) -> None:
        self._path_for_key(key).unlink(missing_ok=True)


@dataclass
class StoredMatchState:
    state: Dict[str, Any]
    saved_at: float


@dataclass
class StoredMatchConfig:
    config: MatchConfiguration
    saved_at: float


def _safe_parse(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        logger.warning(f"Failed to parse stored snapshot: {e}")
        return None
    if not isinstance(parsed, dict):
        logger.warning("Stored snapshot is not an object")
        return None
    return parsed


class LocalSnapshotStore:
    """
    Latest MatchState and MatchConfiguration per match id.

    Saves never raise: a storage failure is logged and reported as False, the
    caller's in-memory state stays authoritative for the session.
    """

    def __init__(self, backend: KeyValueBackend, clock: Callable[[], float] = time.time) -> None:
        self.backend = backend
        self._clock = clock

    def _write(self, key: str, payload: Dict[str, Any]) -> bool:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to serialize {key}: {e}")
            return False
        try:
            self.backend.set(key, serialized)
        except OSError as e:
            logger.warning(f"Failed to store {key} locally: {e}")
            return False
        return True

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self.backend.get(key)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read {key}: {e}")
            return None
        return _safe_parse(raw)

    def save_state(self, state: Dict[str, Any]) -> bool:
        key = f"{MATCH_STATE_PREFIX}{state['matchId']}"
        return self._write(key, {"state": state, "savedAt": self._clock()})

    def load_state(self, match_id: str) -> Optional[StoredMatchState]:
        payload = self._read(f"{MATCH_STATE_PREFIX}{match_id}")
        if payload is None:
            return None
        state = payload.get("state")
        if not isinstance(state, dict) or state.get("matchId") != match_id:
            logger.warning(f"Discarding malformed snapshot for match {match_id}")
            return None
        return StoredMatchState(state=state, saved_at=float(payload.get("savedAt") or 0.0))

    def clear_state(self, match_id: str) -> None:
        try:
            self.backend.delete(f"{MATCH_STATE_PREFIX}{match_id}")
        except OSError as e:
            logger.warning(f"Failed to clear match state cache: {e}")

    def save_config(self, config: MatchConfiguration) -> bool:
        key = f"{MATCH_CONFIG_PREFIX}{config.id}"
        return self._write(key, {"config": config.model_dump(mode="json"), "savedAt": self._clock()})

    def load_config(self, match_id: str) -> Optional[StoredMatchConfig]:
        payload = self._read(f"{MATCH_CONFIG_PREFIX}{match_id}")
        if payload is None:
            return None
        try:
            config = MatchConfiguration(**(payload.get("config") or {}))
        except ValidationError as e:
            logger.warning(f"Discarding invalid stored config for match {match_id}: {e}")
            return None
        return StoredMatchConfig(config=config, saved_at=float(payload.get("savedAt") or 0.0))
