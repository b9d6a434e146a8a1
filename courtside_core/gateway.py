"""Remote store boundary.

Every call is an idempotent upsert keyed by a stable id (match id, event id,
timer id) so the offline queue may replay a call whose acknowledgment was lost.
"""
from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Protocol, Tuple

import httpx

logger = logging.getLogger(__name__)

GATEWAY_ERROR_KINDS = {"connectivity", "validation", "conflict", "not_found"}


class GatewayError(Exception):
    """Failed remote call with a structured kind.

    kind='connectivity' failures are retried by the queue; every other kind
    means the operation can never succeed as sent.
    """

    def __init__(
        self, message: str, *, kind: str = "connectivity", status_code: int | None = None
    ) -> None:
        if kind not in GATEWAY_ERROR_KINDS:
            raise ValueError(f"kind must be one of {sorted(GATEWAY_ERROR_KINDS)}, got {kind}")
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_connectivity(self) -> bool:
        return self.kind == "connectivity"


class RemoteSyncGateway(Protocol):
    async def upsert_match_state(self, match_id: str, state: Dict[str, Any]) -> None:
        ...

    async def append_event(self, match_id: str, event: Dict[str, Any]) -> None:
        ...

    async def upsert_timer(self, timer: Dict[str, Any]) -> None:
        ...

    async def close_timer(self, timer_id: str, ended_at: str) -> None:
        ...

    async def update_match_status(self, match_id: str, fields: Dict[str, Any]) -> None:
        ...


# ==================== ROW MAPPING ====================


def match_state_row(match_id: str, state: Dict[str, Any]) -> Dict[str, Any]:
    timer = state.get("activeTimer")
    return {
        "match_id": match_id,
        "current_set": state["currentSet"],
        "sets_won": state["setsWon"],
        "scores": state["scores"],
        "current_server_team": state["currentServerTeam"],
        "current_server_player": state["currentServerPlayer"],
        "possession": state["possession"],
        "left_is_team_a": state["leftIsTeamA"],
        "timeouts_used": state["timeoutsUsed"],
        "technical_timeout_used": state["technicalTimeoutUsed"],
        "sides_switched": state["sidesSwitched"],
        "service_orders": state["serviceOrders"],
        "next_server_index": state["nextServerIndex"],
        "set_configurations": state["setConfigurations"],
        "active_timer": dict(timer) if timer else None,
        "is_game_ended": state["isGameEnded"],
    }


def match_event_row(match_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": event["id"],
        "match_id": match_id,
        "event_type": event["type"],
        "set_number": event.get("setNumber"),
        "team": event.get("team"),
        "point_category": event.get("pointCategory"),
        "metadata": event.get("data") or {},
        "created_at": event["timestamp"],
    }


def timer_row(timer: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": timer["id"],
        "match_id": timer.get("matchId"),
        "team": timer.get("team"),
        "timeout_type": timer["type"],
        "started_at": timer["startedAt"],
        "ends_at": timer["endsAt"],
        "duration_seconds": timer["durationSec"],
    }


# ==================== IN-MEMORY ====================


class InMemoryGateway:
    """
    Remote store kept in process memory with the same upsert semantics as the
    real backend. Failures can be scripted per method with fail_next().
    """

    def __init__(self) -> None:
        self.match_states: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.timers: Dict[str, Dict[str, Any]] = {}
        self.match_status: Dict[str, Dict[str, Any]] = defaultdict(dict)
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[str, Deque[BaseException]] = defaultdict(deque)

    def fail_next(self, method: str, error: BaseException, times: int = 1) -> None:
        for _ in range(times):
            self._failures[method].append(error)

    def _record(self, method: str, key: str) -> None:
        pending = self._failures.get(method)
        if pending:
            raise pending.popleft()
        self.calls.append((method, key))

    async def upsert_match_state(self, match_id: str, state: Dict[str, Any]) -> None:
        self._record("upsert_match_state", match_id)
        self.match_states[match_id] = match_state_row(match_id, state)

    async def append_event(self, match_id: str, event: Dict[str, Any]) -> None:
        self._record("append_event", event["id"])
        self.events[match_id][event["id"]] = match_event_row(match_id, event)

    async def upsert_timer(self, timer: Dict[str, Any]) -> None:
        self._record("upsert_timer", timer["id"])
        existing = self.timers.get(timer["id"], {})
        row = timer_row(timer)
        if "ended_at" in existing:
            row["ended_at"] = existing["ended_at"]
        self.timers[timer["id"]] = row

    async def close_timer(self, timer_id: str, ended_at: str) -> None:
        self._record("close_timer", timer_id)
        if timer_id not in self.timers:
            raise GatewayError(f"timer {timer_id} not found", kind="not_found", status_code=404)
        self.timers[timer_id]["ended_at"] = ended_at

    async def update_match_status(self, match_id: str, fields: Dict[str, Any]) -> None:
        self._record("update_match_status", match_id)
        self.match_status[match_id].update(fields)


# ==================== HTTP ====================


def _error_kind(status_code: int) -> Optional[str]:
    if status_code < 400:
        return None
    if status_code in (408, 425, 429) or status_code >= 500:
        return "connectivity"
    if status_code == 404:
        return "not_found"
    if status_code == 409:
        return "conflict"
    return "validation"


class HttpSyncGateway:
    """
    Gateway for a PostgREST-style backend (match_states, match_events,
    match_timeouts, matches tables).

    Upserts use `Prefer: resolution=merge-duplicates` with an explicit
    on_conflict column, so a replayed request updates the same row.
    """

    UPSERT_HEADERS = {"Prefer": "resolution=merge-duplicates,return=minimal"}

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_s,
            transport=transport,
        )

    async def __aenter__(self) -> "HttpSyncGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise GatewayError(f"network error: {e}", kind="connectivity") from e
        kind = _error_kind(resp.status_code)
        if kind is not None:
            body = resp.text[:300]
            logger.debug(f"{method} {url} -> {resp.status_code} ({kind})")
            raise GatewayError(
                f"{method} {url} failed with {resp.status_code}: {body}",
                kind=kind,
                status_code=resp.status_code,
            )
        return resp

    async def upsert_match_state(self, match_id: str, state: Dict[str, Any]) -> None:
        await self._send(
            "POST",
            "/match_states",
            params={"on_conflict": "match_id"},
            headers=self.UPSERT_HEADERS,
            json=match_state_row(match_id, state),
        )

    async def append_event(self, match_id: str, event: Dict[str, Any]) -> None:
        await self._send(
            "POST",
            "/match_events",
            params={"on_conflict": "id"},
            headers=self.UPSERT_HEADERS,
            json=match_event_row(match_id, event),
        )

    async def upsert_timer(self, timer: Dict[str, Any]) -> None:
        await self._send(
            "POST",
            "/match_timeouts",
            params={"on_conflict": "id"},
            headers=self.UPSERT_HEADERS,
            json=timer_row(timer),
        )

    async def close_timer(self, timer_id: str, ended_at: str) -> None:
        await self._send(
            "PATCH",
            "/match_timeouts",
            params={"id": f"eq.{timer_id}"},
            json={"ended_at": ended_at},
        )

    async def update_match_status(self, match_id: str, fields: Dict[str, Any]) -> None:
        await self._send(
            "PATCH",
            "/matches",
            params={"id": f"eq.{match_id}"},
            json=fields,
        )
