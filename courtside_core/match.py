"""Core match state transitions (pure, no storage/network).

This module implements the scoring rules for a beach-volleyball match.
All functions are deterministic and side-effect free (no I/O, no clock reads).

Architecture:
- State is a plain dict with keys like currentSet, scores, setsWon, leftIsTeamA, etc.
- Actions are plain dicts with a 'type' field (AWARD_POINT, START_TIMEOUT, ...)
  and an 'at' timestamp supplied by the caller
- apply_action() takes (state, action, config) and returns an ActionOutcome with
  the new state, or a Rejection when the action is illegal
- Mutations are performed on a deepcopy; the input state is never touched
- The caller (ScoreboardController) persists the outcome and queues remote sync

Key concepts:
- events: append-only log; POINT, TIMEOUT_START, TIMEOUT_END, SET_CONFIGURED and
  OVERRIDE record actions, SIDE_SWITCH, SET_END and GAME_END are derived from them
- replay_events() folds the recorded actions back through apply_action() and
  yields the same state, derived events included
- event ids and timer ids are derived from the log position, so replay is exact
- per-set lists (scores, timeoutsUsed, sidesSwitched, technicalTimeoutUsed) gain
  one entry when a set opens

Action types:
- AWARD_POINT: score, serve rotation, side switch, technical timeout flag, set/match end
- START_TIMEOUT / END_TIMEOUT: at most one active timer; timers are pure data
- CONFIGURE_SET: coin toss and choices for a set not configured yet
- OVERRIDE_STATE: operator correction, bypasses rules but keeps structure valid
"""
from __future__ import annotations

import math
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .types import ActionPayload, MatchState, Timer
from .validation import InputSanitizer, MatchConfiguration, isoformat_z, parse_timestamp

TEAM_KEYS = {"A": "teamA", "B": "teamB"}

PRIMARY_EVENT_TYPES = {"POINT", "TIMEOUT_START", "TIMEOUT_END", "SET_CONFIGURED", "OVERRIDE"}

OVERRIDE_FIELDS = (
    "currentSet",
    "scores",
    "setsWon",
    "timeoutsUsed",
    "setConfiguration",
    "currentServerTeam",
    "currentServerPlayer",
    "leftIsTeamA",
    "activeTimer",
    "isGameEnded",
    "winner",
)


@dataclass
class ActionOutcome:
    """Result of applying a legal action."""

    state: Dict[str, Any]
    action: Dict[str, Any]
    events: List[Dict[str, Any]] = field(default_factory=list)
    timer_started: Optional[Dict[str, Any]] = None
    timer_ended: Optional[Dict[str, Any]] = None


@dataclass
class Rejection:
    """Represents an illegal transition (pure core)."""

    kind: str
    message: str | None = None


def _other(team: str) -> str:
    return "B" if team == "A" else "A"


def _team_key(team: str) -> str:
    return TEAM_KEYS[team]


def _default_service_order(config: MatchConfiguration, team: str) -> List[int]:
    players = config.roster(team)
    if not players:
        return [1, 2]
    return [index + 1 for index in range(len(players))]


def _default_team_configuration(config: MatchConfiguration, team: str) -> Dict[str, Any]:
    players = config.roster(team)
    assignment = {str(index + 1): index for index in range(len(players))}
    return {
        "jerseyAssignment": assignment,
        "serviceOrder": _default_service_order(config, team),
    }


def default_set_configuration(config: MatchConfiguration, set_number: int) -> Dict[str, Any]:
    """Unconfigured placeholder for one set."""
    return {
        "setNumber": set_number,
        "isConfigured": False,
        "firstChoiceTeam": "A",
        "firstChoiceOption": "serve",
        "firstChoiceSide": None,
        "secondChoiceOption": "side",
        "secondChoiceSide": None,
        "sideChoiceTeam": "B",
        "sideSelection": "left",
        "startingServerTeam": "A",
        "startingReceiverTeam": "B",
        "startingServerPlayer": 1,
        "coinToss": {"performed": False, "winner": None, "loser": None},
        "teams": {
            "teamA": _default_team_configuration(config, "A"),
            "teamB": _default_team_configuration(config, "B"),
        },
    }


def default_state(config: MatchConfiguration) -> MatchState:
    """Create a fresh match state for a match about to start.

    Args:
        config: Validated match configuration

    Returns:
        Dict with set 1 opened (all per-set lists hold one entry) and every
        SetConfiguration unconfigured. Set 1 must be configured (coin toss)
        before the first point can be awarded.
    """
    order_a = _default_service_order(config, "A")
    order_b = _default_service_order(config, "B")
    return {
        "matchId": config.id,
        "currentSet": 1,
        "setsWon": {"teamA": 0, "teamB": 0},
        "scores": {"teamA": [0], "teamB": [0]},
        "isGameEnded": False,
        "winner": None,
        "currentServerTeam": "A",
        "currentServerPlayer": order_a[0],
        "possession": "A",
        "serviceOrders": {"teamA": order_a, "teamB": order_b},
        "nextServerIndex": {"teamA": 1 % len(order_a), "teamB": 0},
        "leftIsTeamA": True,
        "sidesSwitched": [0],
        "timeoutsUsed": {"teamA": [0], "teamB": [0]},
        "technicalTimeoutUsed": [False],
        "technicalTimeoutPending": False,
        "activeTimer": None,
        "setConfigurations": [
            default_set_configuration(config, number)
            for number in range(1, config.total_sets + 1)
        ],
        "events": [],
    }


# ==================== READ HELPERS ====================


def current_set_scores(state: Dict[str, Any]) -> Tuple[int, int]:
    index = state["currentSet"] - 1
    return state["scores"]["teamA"][index], state["scores"]["teamB"][index]


def current_set_target(config: MatchConfiguration, state: Dict[str, Any]) -> int:
    return config.target_points(state["currentSet"])


def is_set_won(score_a: int, score_b: int, target: int, need_two_point_lead: bool) -> bool:
    if max(score_a, score_b) < target:
        return False
    margin = abs(score_a - score_b)
    return margin >= 2 if need_two_point_lead else margin >= 1


def build_timer(
    *,
    timer_id: str,
    timer_type: str,
    started_at: str,
    duration_sec: int,
    team: Optional[str] = None,
) -> Timer:
    started = parse_timestamp(started_at)
    ends = started + timedelta(seconds=duration_sec)
    return {
        "id": timer_id,
        "type": timer_type,
        "team": team,
        "startedAt": isoformat_z(started),
        "endsAt": isoformat_z(ends),
        "durationSec": int(duration_sec),
    }


def timer_remaining_seconds(timer: Optional[Dict[str, Any]], now: datetime) -> int:
    """Seconds left on a timer, rounded up; 0 once elapsed or without a timer."""
    if not timer:
        return 0
    ends = parse_timestamp(timer["endsAt"])
    diff = math.ceil((ends - now).total_seconds())
    return diff if diff > 0 else 0


def is_timer_elapsed(timer: Optional[Dict[str, Any]], now: datetime) -> bool:
    # Read-time only: elapsed timers stay active until END_TIMEOUT is applied.
    if not timer:
        return False
    return now >= parse_timestamp(timer["endsAt"])


def set_score_rows(state: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Per-set score rows for every set that was opened."""
    rows: List[Dict[str, Any]] = []
    for index, (points_a, points_b) in enumerate(
        zip(state["scores"]["teamA"], state["scores"]["teamB"])
    ):
        rows.append(
            {
                "matchId": state["matchId"],
                "setNumber": index + 1,
                "teamAPoints": points_a,
                "teamBPoints": points_b,
            }
        )
    return rows


# ==================== EVENT LOG ====================


def _append_event(
    state: Dict[str, Any],
    new_events: List[Dict[str, Any]],
    event_type: str,
    at: str,
    *,
    team: Optional[str] = None,
    category: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    events = state["events"]
    event = {
        "id": f"{state['matchId']}:{len(events)}",
        "type": event_type,
        "timestamp": at,
        "setNumber": state["currentSet"],
        "team": team,
        "pointCategory": category,
        "data": data or {},
    }
    events.append(event)
    new_events.append(event)
    return event


def _last_timestamp(state: Dict[str, Any]) -> Optional[str]:
    events = state.get("events") or []
    if not events:
        return None
    return events[-1].get("timestamp")


# ==================== SERVE & SET LIFECYCLE ====================


def _set_server(state: Dict[str, Any], team: str, player: int) -> None:
    """Make `player` of `team` the current server and keep the rotation index consistent."""
    key = _team_key(team)
    order = state["serviceOrders"][key]
    position = order.index(player) if player in order else 0
    state["currentServerTeam"] = team
    state["currentServerPlayer"] = order[position]
    state["nextServerIndex"][key] = (position + 1) % len(order)
    state["possession"] = team


def _update_serve(state: Dict[str, Any], scoring_team: str) -> None:
    if state["currentServerTeam"] == scoring_team:
        # Serving side won the rally: same server again.
        return
    key = _team_key(scoring_team)
    order = state["serviceOrders"][key]
    index = state["nextServerIndex"][key] % len(order)
    _set_server(state, scoring_team, order[index])


def _apply_set_start(state: Dict[str, Any], set_cfg: Dict[str, Any]) -> None:
    teams = set_cfg.get("teams") or {}
    for key in ("teamA", "teamB"):
        order = (teams.get(key) or {}).get("serviceOrder")
        if order:
            state["serviceOrders"][key] = list(order)
    server = set_cfg["startingServerTeam"]
    receiver = _other(server)
    state["nextServerIndex"][_team_key(receiver)] = 0
    _set_server(state, server, set_cfg.get("startingServerPlayer") or 1)
    state["leftIsTeamA"] = (set_cfg["sideChoiceTeam"] == "A") == (
        set_cfg["sideSelection"] == "left"
    )


def _alternate_configuration(previous: Dict[str, Any], set_number: int) -> Dict[str, Any]:
    """Next set after a toss: the first receiver serves first and teams swap ends."""
    cfg = deepcopy(previous)
    server = previous["startingReceiverTeam"]
    cfg["setNumber"] = set_number
    cfg["isConfigured"] = True
    cfg["startingServerTeam"] = server
    cfg["startingReceiverTeam"] = previous["startingServerTeam"]
    cfg["sideSelection"] = "right" if previous["sideSelection"] == "left" else "left"
    order = cfg["teams"][_team_key(server)]["serviceOrder"]
    cfg["startingServerPlayer"] = order[0] if order else 1
    return cfg


def _open_set(
    state: Dict[str, Any],
    config: MatchConfiguration,
    set_number: int,
    at: str,
    new_events: List[Dict[str, Any]],
) -> None:
    state["currentSet"] = set_number
    for key in ("teamA", "teamB"):
        state["scores"][key].append(0)
        state["timeoutsUsed"][key].append(0)
    state["technicalTimeoutUsed"].append(False)
    state["sidesSwitched"].append(0)
    state["technicalTimeoutPending"] = False

    configs = state["setConfigurations"]
    set_cfg = configs[set_number - 1]
    if (
        not set_cfg.get("isConfigured")
        and config.coinTossMode == "initialThenAlternate"
        and not config.is_deciding_set(set_number)
        and configs[set_number - 2].get("isConfigured")
    ):
        set_cfg = _alternate_configuration(configs[set_number - 2], set_number)
        configs[set_number - 1] = set_cfg
        _append_event(
            state,
            new_events,
            "SET_CONFIGURED",
            at,
            team=set_cfg["startingServerTeam"],
            data={"automatic": True, "configuration": deepcopy(set_cfg)},
        )
    if set_cfg.get("isConfigured"):
        _apply_set_start(state, set_cfg)


def _close_set(
    state: Dict[str, Any],
    config: MatchConfiguration,
    winner: str,
    at: str,
    new_events: List[Dict[str, Any]],
) -> None:
    set_number = state["currentSet"]
    score_a, score_b = current_set_scores(state)
    state["setsWon"][_team_key(winner)] += 1
    state["technicalTimeoutPending"] = False
    _append_event(
        state,
        new_events,
        "SET_END",
        at,
        team=winner,
        data={"setNumber": set_number, "scoreA": score_a, "scoreB": score_b},
    )

    if state["setsWon"][_team_key(winner)] >= config.sets_to_win:
        state["isGameEnded"] = True
        state["winner"] = winner
        _append_event(
            state,
            new_events,
            "GAME_END",
            at,
            team=winner,
            data={"setsWon": dict(state["setsWon"])},
        )
        return

    if set_number < config.total_sets:
        _open_set(state, config, set_number + 1, at, new_events)


# ==================== TRANSITIONS ====================


def _award_point(
    state: Dict[str, Any],
    action: Dict[str, Any],
    config: MatchConfiguration,
    new_events: List[Dict[str, Any]],
) -> Rejection | None:
    if state["isGameEnded"]:
        return Rejection(kind="match_ended", message="match already ended")
    set_number = state["currentSet"]
    index = set_number - 1
    if not state["setConfigurations"][index].get("isConfigured"):
        return Rejection(
            kind="set_not_configured",
            message=f"set {set_number} needs a coin toss before play",
        )

    team = action["team"]
    at = action["at"]
    before_a, before_b = current_set_scores(state)
    if is_set_won(before_a, before_b, config.target_points(set_number), config.needTwoPointLead):
        return Rejection(kind="set_closed", message=f"set {set_number} is already closed")

    server_team = state["currentServerTeam"]
    server_player = state["currentServerPlayer"]
    state["scores"][_team_key(team)][index] += 1
    score_a, score_b = current_set_scores(state)
    before_sum = before_a + before_b
    after_sum = score_a + score_b

    _append_event(
        state,
        new_events,
        "POINT",
        at,
        team=team,
        category=action.get("category"),
        data={
            "scoreA": score_a,
            "scoreB": score_b,
            "servingTeam": server_team,
            "servingPlayer": server_player,
        },
    )

    _update_serve(state, team)

    if is_set_won(score_a, score_b, config.target_points(set_number), config.needTwoPointLead):
        _close_set(state, config, team, at, new_events)
        return None

    interval = config.switch_interval(set_number)
    crossed = after_sum // interval
    if crossed > before_sum // interval and state["sidesSwitched"][index] < crossed:
        state["leftIsTeamA"] = not state["leftIsTeamA"]
        state["sidesSwitched"][index] += 1
        _append_event(
            state,
            new_events,
            "SIDE_SWITCH",
            at,
            data={
                "pointSum": after_sum,
                "switchNumber": state["sidesSwitched"][index],
                "leftIsTeamA": state["leftIsTeamA"],
            },
        )

    trigger = config.technicalTimeoutSum
    if (
        config.hasTechnicalTimeout
        and not config.is_deciding_set(set_number)
        and not state["technicalTimeoutUsed"][index]
        and before_sum < trigger <= after_sum
    ):
        state["technicalTimeoutPending"] = True

    return None


def _timer_duration(config: MatchConfiguration, kind: str) -> int:
    return {
        "TIMEOUT_TEAM": config.teamTimeoutDurationSec,
        "TIMEOUT_TECHNICAL": config.technicalTimeoutDurationSec,
        "MEDICAL": config.medicalTimeoutDurationSec,
        "SET_INTERVAL": config.setIntervalDurationSec,
    }[kind]


def _start_timeout(
    state: Dict[str, Any],
    action: Dict[str, Any],
    config: MatchConfiguration,
    new_events: List[Dict[str, Any]],
) -> Tuple[Rejection | None, Optional[Dict[str, Any]]]:
    if state["isGameEnded"]:
        return Rejection(kind="match_ended", message="match already ended"), None
    if state.get("activeTimer"):
        return Rejection(kind="timer_active", message="another timer is running"), None

    kind = action["kind"]
    team = action.get("team")
    index = state["currentSet"] - 1

    if kind == "TIMEOUT_TEAM":
        used = state["timeoutsUsed"][_team_key(team)][index]
        if used >= config.teamTimeoutsPerSet:
            return (
                Rejection(
                    kind="no_timeouts_remaining",
                    message=f"team {team} has used {used} of {config.teamTimeoutsPerSet}",
                ),
                None,
            )
        state["timeoutsUsed"][_team_key(team)][index] = used + 1
    elif kind == "TIMEOUT_TECHNICAL":
        if not config.hasTechnicalTimeout:
            return (
                Rejection(kind="technical_timeout_disabled", message="format has no technical timeout"),
                None,
            )
        if state["technicalTimeoutUsed"][index]:
            return (
                Rejection(kind="technical_timeout_used", message="technical timeout already used"),
                None,
            )
        state["technicalTimeoutUsed"][index] = True
        state["technicalTimeoutPending"] = False
        team = None

    timer = build_timer(
        timer_id=f"{state['matchId']}:timer:{len(state['events'])}",
        timer_type=kind,
        started_at=action["at"],
        duration_sec=_timer_duration(config, kind),
        team=team,
    )
    state["activeTimer"] = timer
    _append_event(
        state,
        new_events,
        "TIMEOUT_START",
        action["at"],
        team=team,
        data={"timer": dict(timer)},
    )
    return None, dict(timer)


def _end_timeout(
    state: Dict[str, Any],
    action: Dict[str, Any],
    new_events: List[Dict[str, Any]],
) -> Tuple[Rejection | None, Optional[Dict[str, Any]]]:
    timer = state.get("activeTimer")
    if not timer:
        return Rejection(kind="no_active_timer", message="no timer is running"), None
    at = action["at"]
    ended = dict(timer)
    ended["endedAt"] = at
    state["activeTimer"] = None
    _append_event(
        state,
        new_events,
        "TIMEOUT_END",
        at,
        team=timer.get("team"),
        data={
            "timerId": timer["id"],
            "timerType": timer["type"],
            "endedAt": at,
            "early": parse_timestamp(at) < parse_timestamp(timer["endsAt"]),
        },
    )
    return None, ended


def _build_set_configuration(
    state: Dict[str, Any],
    action: Dict[str, Any],
    config: MatchConfiguration,
) -> Dict[str, Any] | Rejection:
    set_number = action["setNumber"]
    winner = action["coinTossWinner"]
    loser = _other(winner)
    first = action["firstChoiceOption"]

    cfg = default_set_configuration(config, set_number)
    cfg["isConfigured"] = True
    cfg["firstChoiceTeam"] = winner
    cfg["firstChoiceOption"] = first
    cfg["coinToss"] = {"performed": True, "winner": winner, "loser": loser}

    if first == "side":
        second = action["secondChoiceOption"]
        cfg["firstChoiceSide"] = action["firstChoiceSide"]
        cfg["secondChoiceOption"] = second
        cfg["sideChoiceTeam"] = winner
        cfg["sideSelection"] = action["firstChoiceSide"]
        server = loser if second == "serve" else winner
    else:
        side = action.get("secondChoiceSide") or "left"
        cfg["secondChoiceOption"] = "side"
        cfg["secondChoiceSide"] = side
        cfg["sideChoiceTeam"] = loser
        cfg["sideSelection"] = side
        server = winner if first == "serve" else loser

    orders = action.get("serviceOrders") or {}
    for key in ("teamA", "teamB"):
        if orders.get(key):
            cfg["teams"][key]["serviceOrder"] = list(orders[key])

    server_order = cfg["teams"][_team_key(server)]["serviceOrder"]
    player = action.get("startingServerPlayer") or server_order[0]
    if player not in server_order:
        return Rejection(
            kind="invalid_server",
            message=f"player {player} is not in team {server} service order",
        )

    cfg["startingServerTeam"] = server
    cfg["startingReceiverTeam"] = _other(server)
    cfg["startingServerPlayer"] = player
    return cfg


def _configure_set(
    state: Dict[str, Any],
    action: Dict[str, Any],
    config: MatchConfiguration,
    new_events: List[Dict[str, Any]],
) -> Rejection | None:
    if state["isGameEnded"]:
        return Rejection(kind="match_ended", message="match already ended")
    set_number = action["setNumber"]
    if set_number > config.total_sets:
        return Rejection(kind="invalid_set", message=f"format has {config.total_sets} sets")
    existing = state["setConfigurations"][set_number - 1]
    if existing.get("isConfigured"):
        return Rejection(kind="already_configured", message=f"set {set_number} already configured")
    if set_number < state["currentSet"]:
        return Rejection(kind="invalid_set", message=f"set {set_number} was already played")

    built = _build_set_configuration(state, action, config)
    if isinstance(built, Rejection):
        return built

    state["setConfigurations"][set_number - 1] = built
    recorded = {k: v for k, v in action.items() if k not in ("type", "at")}
    _append_event(
        state,
        new_events,
        "SET_CONFIGURED",
        action["at"],
        team=built["startingServerTeam"],
        data={"automatic": False, "action": recorded, "configuration": deepcopy(built)},
    )
    if set_number == state["currentSet"]:
        _apply_set_start(state, built)
    return None


def _non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _team_counts(value: Any) -> Dict[str, int] | None:
    if not isinstance(value, dict):
        return None
    result: Dict[str, int] = {}
    for key in ("teamA", "teamB"):
        if key not in value:
            continue
        if not _non_negative_int(value[key]):
            return None
        result[key] = value[key]
    return result


def _override_state(
    state: Dict[str, Any],
    action: Dict[str, Any],
    config: MatchConfiguration,
    new_events: List[Dict[str, Any]],
) -> Rejection | None:
    """Apply an operator correction.

    Legality rules are bypassed, structural invariants are not: scores and
    counters stay non-negative integers, the set number never decreases and
    the serve rotation index stays consistent with the current server.
    """
    patch = action["patch"]
    unknown = sorted(set(patch) - set(OVERRIDE_FIELDS))
    if unknown:
        return Rejection(kind="invalid_override", message=f"unsupported fields: {unknown}")

    at = action["at"]
    for name in OVERRIDE_FIELDS:
        if name not in patch:
            continue
        value = patch[name]

        if name == "currentSet":
            if not isinstance(value, int) or isinstance(value, bool):
                return Rejection(kind="invalid_override", message="currentSet must be an int")
            if value < state["currentSet"] or value > config.total_sets:
                return Rejection(
                    kind="invalid_override",
                    message="currentSet must not decrease or exceed the format",
                )
            while state["currentSet"] < value:
                _open_set(state, config, state["currentSet"] + 1, at, new_events)

        elif name == "scores":
            counts = _team_counts(value)
            if counts is None:
                return Rejection(kind="invalid_override", message="scores must be non-negative")
            index = state["currentSet"] - 1
            for key, points in counts.items():
                state["scores"][key][index] = points

        elif name == "setsWon":
            counts = _team_counts(value)
            if counts is None or any(v > config.sets_to_win for v in counts.values()):
                return Rejection(kind="invalid_override", message="invalid setsWon")
            state["setsWon"].update(counts)

        elif name == "timeoutsUsed":
            counts = _team_counts(value)
            if counts is None:
                return Rejection(kind="invalid_override", message="invalid timeoutsUsed")
            index = state["currentSet"] - 1
            for key, used in counts.items():
                state["timeoutsUsed"][key][index] = used

        elif name == "setConfiguration":
            if not isinstance(value, dict):
                return Rejection(kind="invalid_override", message="setConfiguration must be an object")
            set_number = value.get("setNumber", state["currentSet"])
            if not isinstance(set_number, int) or not 1 <= set_number <= config.total_sets:
                return Rejection(kind="invalid_override", message="invalid setNumber")
            merged = deepcopy(state["setConfigurations"][set_number - 1])
            merged.update(deepcopy(value))
            merged["setNumber"] = set_number
            merged["isConfigured"] = True
            if merged.get("startingServerTeam") not in TEAM_KEYS:
                return Rejection(kind="invalid_override", message="invalid startingServerTeam")
            merged["startingReceiverTeam"] = _other(merged["startingServerTeam"])
            state["setConfigurations"][set_number - 1] = merged
            index = set_number - 1
            untouched = (
                set_number == state["currentSet"]
                and state["scores"]["teamA"][index] == 0
                and state["scores"]["teamB"][index] == 0
            )
            if untouched:
                _apply_set_start(state, merged)

        elif name == "currentServerTeam":
            if value not in TEAM_KEYS:
                return Rejection(kind="invalid_override", message="invalid currentServerTeam")
            order = state["serviceOrders"][_team_key(value)]
            player = patch.get("currentServerPlayer", state["currentServerPlayer"])
            _set_server(state, value, player if player in order else order[0])

        elif name == "currentServerPlayer":
            order = state["serviceOrders"][_team_key(state["currentServerTeam"])]
            if value not in order:
                return Rejection(kind="invalid_override", message="player not in service order")
            _set_server(state, state["currentServerTeam"], value)

        elif name == "leftIsTeamA":
            if not isinstance(value, bool):
                return Rejection(kind="invalid_override", message="leftIsTeamA must be a bool")
            state["leftIsTeamA"] = value

        elif name == "activeTimer":
            if value is not None:
                return Rejection(kind="invalid_override", message="activeTimer can only be cleared")
            state["activeTimer"] = None

        elif name == "isGameEnded":
            if not isinstance(value, bool):
                return Rejection(kind="invalid_override", message="isGameEnded must be a bool")
            state["isGameEnded"] = value
            if not value:
                state["winner"] = None

        elif name == "winner":
            if value is not None and value not in TEAM_KEYS:
                return Rejection(kind="invalid_override", message="invalid winner")
            state["winner"] = value

    _append_event(
        state,
        new_events,
        "OVERRIDE",
        at,
        data={"patch": deepcopy(patch), "reason": action.get("reason")},
    )
    return None


def apply_action(
    state: Dict[str, Any], action: ActionPayload, config: MatchConfiguration
) -> ActionOutcome | Rejection:
    """Apply one scoreboard action.

    Pure transition: works on a deepcopy of the provided state.

    Args:
        state: Current match state dict (not mutated)
        action: Action dict with 'type', 'at' and type-specific fields
        config: Match configuration the state was created from

    Returns:
        ActionOutcome with the new state and the events it appended, or a
        Rejection when the action is illegal in the current state.

    Raises:
        ValueError: if the action is malformed (unknown type, missing fields)
    """
    validated = InputSanitizer.validate_and_sanitize_action(action).to_action()

    last = _last_timestamp(state)
    if last is not None and parse_timestamp(validated["at"]) < parse_timestamp(last):
        return Rejection(
            kind="non_monotonic_timestamp",
            message=f"action at {validated['at']} precedes last event at {last}",
        )

    new_state: Dict[str, Any] = deepcopy(state)
    new_events: List[Dict[str, Any]] = []
    timer_started = None
    timer_ended = None
    atype = validated["type"]

    if atype == "AWARD_POINT":
        rejection = _award_point(new_state, validated, config, new_events)
    elif atype == "START_TIMEOUT":
        rejection, timer_started = _start_timeout(new_state, validated, config, new_events)
    elif atype == "END_TIMEOUT":
        rejection, timer_ended = _end_timeout(new_state, validated, new_events)
    elif atype == "CONFIGURE_SET":
        rejection = _configure_set(new_state, validated, config, new_events)
    else:
        rejection = _override_state(new_state, validated, config, new_events)

    if rejection is not None:
        return rejection

    return ActionOutcome(
        state=new_state,
        action=validated,
        events=deepcopy(new_events),
        timer_started=timer_started,
        timer_ended=timer_ended,
    )


# ==================== REPLAY ====================


def event_to_action(event: Dict[str, Any]) -> Dict[str, Any] | None:
    """Action that produced a primary event; None for derived events."""
    etype = event.get("type")
    data = event.get("data") or {}
    at = event["timestamp"]

    if etype == "POINT":
        action = {"type": "AWARD_POINT", "at": at, "team": event["team"]}
        if event.get("pointCategory"):
            action["category"] = event["pointCategory"]
        return action
    if etype == "TIMEOUT_START":
        action = {"type": "START_TIMEOUT", "at": at, "kind": data["timer"]["type"]}
        if event.get("team"):
            action["team"] = event["team"]
        return action
    if etype == "TIMEOUT_END":
        return {"type": "END_TIMEOUT", "at": at}
    if etype == "SET_CONFIGURED":
        if data.get("automatic"):
            return None
        return {"type": "CONFIGURE_SET", "at": at, **data["action"]}
    if etype == "OVERRIDE":
        action = {"type": "OVERRIDE_STATE", "at": at, "patch": data["patch"]}
        if data.get("reason"):
            action["reason"] = data["reason"]
        return action
    return None


def replay_events(config: MatchConfiguration, events: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Rebuild match state as a left fold of the recorded actions.

    Raises:
        ValueError: if an event cannot be re-applied (corrupt or foreign log)
    """
    state = default_state(config)
    for event in events:
        action = event_to_action(event)
        if action is None:
            continue
        outcome = apply_action(state, action, config)
        if isinstance(outcome, Rejection):
            raise ValueError(
                f"event {event.get('id')} cannot be replayed: {outcome.kind} ({outcome.message})"
            )
        state = outcome.state
    return state
