"""Durable, ordered queue of pending remote operations.

Drain semantics:
- single-flight: a drain() call while another is running returns immediately
- no-op while the connectivity oracle reports offline
- strictly head-to-tail; an operation leaves the persisted queue only after
  the gateway accepted it or it was moved to the dead-letter log
- connectivity failure on the head stops the pass; the head stays queued
- application failure (validation/conflict/not_found) moves the head to the
  dead-letter log and the pass continues with the next operation
- failures nobody could classify count against the operation; after
  max_unclassified_attempts they are dead-lettered as well
- a new save_match_state replaces any not-yet-sent snapshot of the same
  match; it is a keyed upsert of the latest state and events travel separately

Triggers: start() (initial load + periodic timer) and the oracle's
offline -> online transition. enqueue() schedules a drain when an event loop
is running.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from copy import deepcopy
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from .connectivity import ConnectivityOracle
from .gateway import RemoteSyncGateway
from .snapshot_store import KeyValueBackend
from .types import QueuedOperationDict
from .validation import QueuedOperation

logger = logging.getLogger(__name__)

QUEUE_KEY = "courtside-offline-queue-v1"
DEAD_LETTER_KEY = "courtside-dead-letter-v1"


class MalformedOperationError(ValueError):
    """Queued payload lacks fields its operation type needs."""


def _require(payload: Dict[str, Any], *keys: str) -> None:
    missing = [key for key in keys if key not in payload]
    if missing:
        raise MalformedOperationError(f"payload missing {missing}")


class OfflineOperationQueue:
    def __init__(
        self,
        backend: KeyValueBackend,
        gateway: RemoteSyncGateway,
        oracle: ConnectivityOracle,
        *,
        drain_interval_s: float = 30.0,
        max_unclassified_attempts: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.gateway = gateway
        self.oracle = oracle
        self.drain_interval_s = max(1.0, float(drain_interval_s))
        self.max_unclassified_attempts = max(1, int(max_unclassified_attempts))
        self._clock = clock
        self._draining = False
        self._tasks: Set[asyncio.Task] = set()
        self._periodic_task: Optional[asyncio.Task] = None
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            "save_match_state": self._save_match_state,
            "append_event": self._append_event,
            "upsert_timer": self._upsert_timer,
            "close_timer": self._close_timer,
            "update_match_status": self._update_match_status,
        }
        self._queue: List[QueuedOperationDict] = self._load()
        self._remove_listener = oracle.add_listener(self.schedule_drain)

    # =========================================================
    # PERSISTENCE
    # =========================================================

    def _read_list(self, key: str) -> List[Any]:
        try:
            raw = self.backend.get(key)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to load {key}: {e}")
            return []
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Failed to parse {key}: {e}")
            return []
        if not isinstance(parsed, list):
            logger.warning(f"{key} is not a list, ignoring it")
            return []
        return parsed

    def _write_list(self, key: str, items: List[Any]) -> None:
        try:
            self.backend.set(key, json.dumps(items, ensure_ascii=False))
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to persist {key}: {e}")

    def _load(self) -> List[QueuedOperationDict]:
        queue: List[QueuedOperationDict] = []
        for index, entry in enumerate(self._read_list(QUEUE_KEY)):
            try:
                queue.append(QueuedOperation.model_validate(entry).model_dump())
            except ValidationError as e:
                logger.warning(f"Dropping malformed queued operation at position {index}: {e}")
        return queue

    def _save(self) -> None:
        self._write_list(QUEUE_KEY, self._queue)

    def _dead_letter(self, operation: Dict[str, Any], error: BaseException, classification: str) -> None:
        letters = self._read_list(DEAD_LETTER_KEY)
        letters.append(
            {
                "operation": operation,
                "error": str(error),
                "errorType": type(error).__name__,
                "classification": classification,
                "droppedAt": self._clock(),
            }
        )
        self._write_list(DEAD_LETTER_KEY, letters)

    # =========================================================
    # PUBLIC API
    # =========================================================

    def enqueue(self, op_type: str, payload: Dict[str, Any], *, op_id: str | None = None) -> str:
        """Append an operation and schedule a drain; returns the operation id."""
        if op_type not in self._handlers:
            raise ValueError(f"Unknown operation type: {op_type}")
        operation = {
            "id": op_id or str(uuid.uuid4()),
            "type": op_type,
            "payload": deepcopy(payload),
            "createdAt": self._clock(),
            "attempts": 0,
        }
        if op_type == "save_match_state":
            self._drop_superseded_snapshots(payload.get("matchId"))
        self._queue.append(operation)
        self._save()
        self.schedule_drain()
        return operation["id"]

    def _drop_superseded_snapshots(self, match_id: Any) -> None:
        # The head may be in flight during a drain; leave it in place.
        start = 1 if self._draining else 0
        kept = [
            op
            for op in self._queue[start:]
            if not (op["type"] == "save_match_state" and op["payload"].get("matchId") == match_id)
        ]
        dropped = len(self._queue) - start - len(kept)
        if dropped:
            self._queue = self._queue[:start] + kept
            logger.debug(f"Replaced {dropped} pending snapshot(s) for match {match_id}")

    def pending_count(self) -> int:
        return len(self._queue)

    def has_pending(self, op_type: str | None = None) -> bool:
        if op_type is None:
            return bool(self._queue)
        return any(op["type"] == op_type for op in self._queue)

    def pending(self) -> List[Dict[str, Any]]:
        return deepcopy(self._queue)

    def dead_letters(self) -> List[Dict[str, Any]]:
        return self._read_list(DEAD_LETTER_KEY)

    def clear_dead_letters(self) -> None:
        self._write_list(DEAD_LETTER_KEY, [])

    @property
    def is_draining(self) -> bool:
        return self._draining

    def schedule_drain(self) -> Optional[asyncio.Task]:
        """Start a background drain if an event loop is running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the next start()/drain() picks the queue up.
            return None
        if self._draining:
            return None
        task = loop.create_task(self.drain())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> int:
        """One pass over the queue; returns how many operations the gateway accepted."""
        if self._draining:
            return 0
        if not self.oracle.is_online():
            logger.debug("Offline, skipping drain")
            return 0

        self._draining = True
        synced = 0
        try:
            while self._queue:
                operation = self._queue[0]
                try:
                    await self._handlers[operation["type"]](operation["payload"])
                except MalformedOperationError as e:
                    logger.error(f"Dropping malformed {operation['type']} {operation['id']}: {e}")
                    self._dead_letter(operation, e, "application")
                    self._remove_head(operation)
                    continue
                except Exception as e:
                    classification = self.oracle.classify_error(e)
                    if classification == "connectivity":
                        logger.info(
                            f"Drain halted at {operation['type']} {operation['id']}: {e}"
                        )
                        break
                    if classification == "unknown":
                        operation["attempts"] += 1
                        if operation["attempts"] < self.max_unclassified_attempts:
                            self._save()
                            logger.warning(
                                f"Unclassified failure for {operation['type']} {operation['id']} "
                                f"(attempt {operation['attempts']}), will retry: {e}"
                            )
                            break
                    logger.error(
                        f"Failed to process offline operation {operation['type']} "
                        f"{operation['id']}, moving to dead letters: {e}"
                    )
                    self._dead_letter(operation, e, classification)
                    self._remove_head(operation)
                    continue

                self._remove_head(operation)
                synced += 1
        finally:
            self._draining = False

        if synced:
            logger.debug(f"Drained {synced} operation(s), {len(self._queue)} pending")
        return synced

    def _remove_head(self, operation: Dict[str, Any]) -> None:
        if self._queue and self._queue[0] is operation:
            self._queue.pop(0)
            self._save()

    # =========================================================
    # LIFECYCLE
    # =========================================================

    def start(self) -> None:
        """Drain now and keep draining periodically; needs a running event loop."""
        loop = asyncio.get_running_loop()
        self.schedule_drain()
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = loop.create_task(self._run_periodic())

    async def _run_periodic(self) -> None:
        while True:
            await asyncio.sleep(self.drain_interval_s)
            await self.drain()

    async def stop(self) -> None:
        """Stop the periodic timer and let in-flight drains finish."""
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        self._remove_listener()

    # =========================================================
    # HANDLERS
    # =========================================================

    async def _save_match_state(self, payload: Dict[str, Any]) -> None:
        _require(payload, "matchId", "state")
        await self.gateway.upsert_match_state(payload["matchId"], payload["state"])

    async def _append_event(self, payload: Dict[str, Any]) -> None:
        _require(payload, "matchId", "event")
        await self.gateway.append_event(payload["matchId"], payload["event"])

    async def _upsert_timer(self, payload: Dict[str, Any]) -> None:
        _require(payload, "timer")
        await self.gateway.upsert_timer(payload["timer"])

    async def _close_timer(self, payload: Dict[str, Any]) -> None:
        _require(payload, "timerId", "endedAt")
        await self.gateway.close_timer(payload["timerId"], payload["endedAt"])

    async def _update_match_status(self, payload: Dict[str, Any]) -> None:
        _require(payload, "matchId", "fields")
        await self.gateway.update_match_status(payload["matchId"], payload["fields"])
