"""Orchestration of one match: state machine -> local snapshot -> sync queue."""
from __future__ import annotations

import logging
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .match import (
    ActionOutcome,
    Rejection,
    apply_action,
    current_set_scores,
    current_set_target,
    default_state,
    is_timer_elapsed,
    set_score_rows,
    timer_remaining_seconds,
)
from .snapshot_store import LocalSnapshotStore
from .stats import TeamStats, calculate_win_probability, team_statistics
from .sync_queue import OfflineOperationQueue
from .validation import MatchConfiguration, isoformat_z, parse_timestamp

logger = logging.getLogger(__name__)


class IllegalTransitionError(Exception):
    """An action the match rules do not allow in the current state."""

    def __init__(self, rejection: Rejection) -> None:
        super().__init__(f"{rejection.kind}: {rejection.message}" if rejection.message else rejection.kind)
        self.rejection = rejection

    @property
    def kind(self) -> str:
        return self.rejection.kind


def match_status(state: Dict[str, Any]) -> str:
    if state["isGameEnded"]:
        return "finished"
    if any(cfg.get("isConfigured") for cfg in state["setConfigurations"]):
        return "in_progress"
    return "scheduled"


class ScoreboardController:
    """
    The only caller of apply_action() for a match.

    Every accepted action is saved to the snapshot store before the call
    returns, then turned into queued remote operations: one state upsert, one
    append per logged event, timer open/close records and a status update when
    the match starts or finishes. Rejections raise IllegalTransitionError and
    touch neither the store nor the queue.
    """

    def __init__(
        self,
        config: MatchConfiguration,
        store: LocalSnapshotStore,
        queue: OfflineOperationQueue,
        *,
        state: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        auto_technical_timeout: bool = True,
    ) -> None:
        self.config = config
        self.store = store
        self.queue = queue
        self.auto_technical_timeout = auto_technical_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.state: Dict[str, Any] = deepcopy(state) if state is not None else default_state(config)
        if self.state["matchId"] != config.id:
            raise ValueError(f"state belongs to match {self.state['matchId']}, not {config.id}")
        self.store.save_config(config)
        self.store.save_state(self.state)

    @classmethod
    def resume(
        cls,
        match_id: str,
        store: LocalSnapshotStore,
        queue: OfflineOperationQueue,
        **kwargs: Any,
    ) -> "ScoreboardController":
        """Rebuild a controller from the snapshot store after a restart.

        Raises:
            LookupError: if no configuration was stored for the match
        """
        stored_config = store.load_config(match_id)
        if stored_config is None:
            raise LookupError(f"No stored configuration for match {match_id}")
        stored_state = store.load_state(match_id)
        if stored_state is None:
            logger.warning(f"No stored state for match {match_id}, starting fresh")
        return cls(
            stored_config.config,
            store,
            queue,
            state=stored_state.state if stored_state else None,
            **kwargs,
        )

    # ==================== ACTIONS ====================

    def _now(self) -> str:
        """Clock reading, held at the last event time if the clock stepped back."""
        now = isoformat_z(self._clock())
        events = self.state["events"]
        if events and parse_timestamp(now) < parse_timestamp(events[-1]["timestamp"]):
            logger.warning(f"Clock is behind the last event of match {self.config.id}, using its timestamp")
            return events[-1]["timestamp"]
        return now

    def apply(self, action: Dict[str, Any]) -> ActionOutcome:
        """Apply an action dict; 'at' defaults to the controller clock.

        Raises:
            IllegalTransitionError: when the rules reject the action
            ValueError: when the action is malformed
        """
        action = dict(action)
        if action.get("at") is None:
            action["at"] = self._now()

        outcome = apply_action(self.state, action, self.config)
        if isinstance(outcome, Rejection):
            logger.info(f"Rejected {action.get('type')} for match {self.config.id}: {outcome.kind}")
            raise IllegalTransitionError(outcome)

        previous = self.state
        self.state = outcome.state
        if not self.store.save_state(self.state):
            logger.warning(f"Match {self.config.id} state kept in memory only")
        self._enqueue_sync(previous, outcome)

        if (
            self.auto_technical_timeout
            and self.state["technicalTimeoutPending"]
            and not self.state["activeTimer"]
        ):
            self.apply({"type": "START_TIMEOUT", "kind": "TIMEOUT_TECHNICAL", "at": outcome.action["at"]})
        return outcome

    def award_point(
        self, team: str, category: Optional[str] = None, *, at: Optional[str] = None
    ) -> ActionOutcome:
        return self.apply({"type": "AWARD_POINT", "team": team, "category": category, "at": at})

    def start_timeout(
        self, kind: str, team: Optional[str] = None, *, at: Optional[str] = None
    ) -> ActionOutcome:
        return self.apply({"type": "START_TIMEOUT", "kind": kind, "team": team, "at": at})

    def end_timeout(self, *, at: Optional[str] = None) -> ActionOutcome:
        return self.apply({"type": "END_TIMEOUT", "at": at})

    def configure_set(
        self,
        set_number: int,
        coin_toss_winner: str,
        first_choice_option: str,
        *,
        first_choice_side: Optional[str] = None,
        second_choice_option: Optional[str] = None,
        second_choice_side: Optional[str] = None,
        starting_server_player: Optional[int] = None,
        service_orders: Optional[Dict[str, List[int]]] = None,
        at: Optional[str] = None,
    ) -> ActionOutcome:
        return self.apply(
            {
                "type": "CONFIGURE_SET",
                "setNumber": set_number,
                "coinTossWinner": coin_toss_winner,
                "firstChoiceOption": first_choice_option,
                "firstChoiceSide": first_choice_side,
                "secondChoiceOption": second_choice_option,
                "secondChoiceSide": second_choice_side,
                "startingServerPlayer": starting_server_player,
                "serviceOrders": service_orders,
                "at": at,
            }
        )

    def override(
        self, patch: Dict[str, Any], *, reason: Optional[str] = None, at: Optional[str] = None
    ) -> ActionOutcome:
        return self.apply({"type": "OVERRIDE_STATE", "patch": patch, "reason": reason, "at": at})

    # ==================== SYNC ====================

    def _enqueue_sync(self, previous: Dict[str, Any], outcome: ActionOutcome) -> None:
        match_id = self.config.id
        state = outcome.state
        at = outcome.action["at"]

        self.queue.enqueue("save_match_state", {"matchId": match_id, "state": state})
        for event in outcome.events:
            self.queue.enqueue("append_event", {"matchId": match_id, "event": event})

        ended = outcome.timer_ended
        old_timer = previous.get("activeTimer")
        if ended is None and old_timer and not state.get("activeTimer"):
            # Cleared by an override.
            ended = {**old_timer, "endedAt": at}
        if ended is not None:
            self.queue.enqueue("close_timer", {"timerId": ended["id"], "endedAt": ended["endedAt"]})
        if outcome.timer_started is not None:
            self.queue.enqueue("upsert_timer", {"timer": {**outcome.timer_started, "matchId": match_id}})

        status = match_status(state)
        if status != match_status(previous):
            fields: Dict[str, Any] = {"status": status}
            if status == "finished":
                fields.update(
                    {
                        "winner": state["winner"],
                        "setsWon": dict(state["setsWon"]),
                        "sets": set_score_rows(state),
                        "finishedAt": at,
                    }
                )
            elif status == "in_progress" and match_status(previous) == "scheduled":
                fields["startedAt"] = at
            self.queue.enqueue("update_match_status", {"matchId": match_id, "fields": fields})

    @property
    def pending_sync(self) -> bool:
        return self.queue.has_pending()

    # ==================== READ HELPERS ====================

    def timer_remaining(self, now: Optional[datetime] = None) -> int:
        return timer_remaining_seconds(self.state["activeTimer"], now or self._clock())

    def timer_elapsed(self, now: Optional[datetime] = None) -> bool:
        return is_timer_elapsed(self.state["activeTimer"], now or self._clock())

    def win_probability(self) -> float:
        score_a, score_b = current_set_scores(self.state)
        return calculate_win_probability(score_a, score_b, current_set_target(self.config, self.state))

    def statistics(self) -> Dict[str, TeamStats]:
        return team_statistics(self.state["events"])
