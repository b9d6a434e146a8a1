from .match import (
    ActionOutcome,
    Rejection,
    apply_action,
    build_timer,
    current_set_scores,
    current_set_target,
    default_set_configuration,
    default_state,
    event_to_action,
    is_set_won,
    is_timer_elapsed,
    replay_events,
    set_score_rows,
    timer_remaining_seconds,
)
from .types import GameEvent, MatchState, SetConfiguration, Timer
from .validation import (
    InputSanitizer,
    MatchConfiguration,
    MatchFormatPresets,
    QueuedOperation,
    ValidatedAction,
    calculate_side_switch_sum,
)
from .stats import TeamStats, calculate_win_probability, team_statistics
from .connectivity import ConnectivityOracle, looks_like_network_failure
from .gateway import GatewayError, HttpSyncGateway, InMemoryGateway, RemoteSyncGateway
from .snapshot_store import FileBackend, LocalSnapshotStore, MemoryBackend
from .sync_queue import OfflineOperationQueue
from .controller import IllegalTransitionError, ScoreboardController
from .config import SyncSettings, build_sync_stack

__all__ = [
    "ActionOutcome",
    "Rejection",
    "apply_action",
    "build_timer",
    "current_set_scores",
    "current_set_target",
    "default_set_configuration",
    "default_state",
    "event_to_action",
    "is_set_won",
    "is_timer_elapsed",
    "replay_events",
    "set_score_rows",
    "timer_remaining_seconds",
    "GameEvent",
    "MatchState",
    "SetConfiguration",
    "Timer",
    "InputSanitizer",
    "MatchConfiguration",
    "MatchFormatPresets",
    "QueuedOperation",
    "ValidatedAction",
    "calculate_side_switch_sum",
    "TeamStats",
    "calculate_win_probability",
    "team_statistics",
    "ConnectivityOracle",
    "looks_like_network_failure",
    "GatewayError",
    "HttpSyncGateway",
    "InMemoryGateway",
    "RemoteSyncGateway",
    "FileBackend",
    "LocalSnapshotStore",
    "MemoryBackend",
    "OfflineOperationQueue",
    "IllegalTransitionError",
    "ScoreboardController",
    "SyncSettings",
    "build_sync_stack",
]
