"""Type definitions for match state, events, timers and queued operations."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, TypedDict

TeamId = Literal["A", "B"]
CoinChoice = Literal["serve", "receive", "side"]
CourtSide = Literal["left", "right"]
TimerType = Literal["TIMEOUT_TEAM", "TIMEOUT_TECHNICAL", "SET_INTERVAL", "MEDICAL"]
PointCategory = Literal["ATTACK", "BLOCK", "SERVE_POINT", "OPPONENT_ERROR"]
EventType = Literal[
    "POINT",
    "TIMEOUT_START",
    "TIMEOUT_END",
    "SIDE_SWITCH",
    "SET_CONFIGURED",
    "SET_END",
    "GAME_END",
    "OVERRIDE",
]
OperationType = Literal[
    "save_match_state",
    "append_event",
    "upsert_timer",
    "close_timer",
    "update_match_status",
]


class TeamPair(TypedDict):
    teamA: int
    teamB: int


class TeamLists(TypedDict):
    teamA: List[int]
    teamB: List[int]


class CoinToss(TypedDict, total=False):
    performed: bool
    winner: Optional[TeamId]
    loser: Optional[TeamId]


class TeamSetConfiguration(TypedDict):
    # jersey number (as string) -> roster index
    jerseyAssignment: Dict[str, int]
    serviceOrder: List[int]


class SetConfiguration(TypedDict, total=False):
    """Coin-toss outcome and initial choices for one set."""
    setNumber: int
    isConfigured: bool
    firstChoiceTeam: TeamId
    firstChoiceOption: CoinChoice
    firstChoiceSide: Optional[CourtSide]
    secondChoiceOption: CoinChoice
    secondChoiceSide: Optional[CourtSide]
    sideChoiceTeam: TeamId
    sideSelection: CourtSide
    startingServerTeam: TeamId
    startingReceiverTeam: TeamId
    startingServerPlayer: int
    coinToss: CoinToss
    teams: Dict[str, TeamSetConfiguration]


class Timer(TypedDict):
    id: str
    type: TimerType
    team: Optional[TeamId]
    startedAt: str  # ISO-8601 UTC
    endsAt: str
    durationSec: int


class GameEvent(TypedDict, total=False):
    id: str
    type: EventType
    timestamp: str
    setNumber: int
    team: Optional[TeamId]
    pointCategory: Optional[PointCategory]
    data: Dict[str, Any]


class MatchState(TypedDict, total=False):
    """
    TypedDict representing the live state of one match.

    Per-set lists (scores, timeoutsUsed, technicalTimeoutUsed, sidesSwitched)
    gain one entry each time a set is opened.
    """
    matchId: str

    # Set progression
    currentSet: int
    setsWon: TeamPair
    scores: TeamLists
    isGameEnded: bool
    winner: Optional[TeamId]

    # Serve
    currentServerTeam: TeamId
    currentServerPlayer: int
    possession: TeamId
    serviceOrders: TeamLists
    nextServerIndex: TeamPair

    # Court
    leftIsTeamA: bool
    sidesSwitched: List[int]

    # Timeouts
    timeoutsUsed: TeamLists
    technicalTimeoutUsed: List[bool]
    technicalTimeoutPending: bool
    activeTimer: Optional[Timer]

    setConfigurations: List[SetConfiguration]
    events: List[GameEvent]


class ActionPayload(TypedDict, total=False):
    """
    TypedDict for actions passed to apply_action().

    Fields vary by action type.
    """
    type: str
    at: str

    # AWARD_POINT
    team: TeamId
    category: Optional[PointCategory]

    # START_TIMEOUT
    kind: TimerType

    # CONFIGURE_SET
    setNumber: int
    coinTossWinner: TeamId
    firstChoiceOption: CoinChoice
    firstChoiceSide: Optional[CourtSide]
    secondChoiceOption: Optional[CoinChoice]
    secondChoiceSide: Optional[CourtSide]
    startingServerPlayer: Optional[int]
    serviceOrders: Optional[Dict[str, List[int]]]

    # OVERRIDE_STATE
    patch: Dict[str, Any]
    reason: Optional[str]


class QueuedOperationDict(TypedDict):
    id: str
    type: OperationType
    payload: Dict[str, Any]
    createdAt: float
    attempts: int

