from datetime import datetime, timedelta, timezone

import pytest

from courtside_core import MatchConfiguration, Rejection, apply_action, default_state
from courtside_core.match import build_timer, is_timer_elapsed, timer_remaining_seconds
from courtside_core.validation import isoformat_z

T0 = datetime(2026, 7, 4, 10, 0, tzinfo=timezone.utc)


def ts(seconds):
    return isoformat_z(T0 + timedelta(seconds=seconds))


def make_config(**overrides):
    return MatchConfiguration.from_preset(
        "best3_21_15",
        match_id="m1",
        team_a={"name": "Sand Sharks", "players": [{"name": "Ana", "number": 1}, {"name": "Bea", "number": 2}]},
        team_b={"name": "Dune Riders", "players": [{"name": "Cris", "number": 1}, {"name": "Dora", "number": 2}]},
        **overrides,
    )


class Play:
    """Applies actions with increasing timestamps and keeps the latest state."""

    def __init__(self, config):
        self.config = config
        self.state = default_state(config)
        self.t = 0

    def act(self, **action):
        self.t += 1
        outcome = apply_action(self.state, {"at": ts(self.t), **action}, self.config)
        if not isinstance(outcome, Rejection):
            self.state = outcome.state
        return outcome

    def configure(self, set_number=1, winner="A", **choices):
        choices.setdefault("firstChoiceOption", "serve")
        return self.act(type="CONFIGURE_SET", setNumber=set_number, coinTossWinner=winner, **choices)

    def point(self, team, category=None):
        return self.act(type="AWARD_POINT", team=team, category=category)

    def set_scores(self, a, b):
        return self.act(type="OVERRIDE_STATE", patch={"scores": {"teamA": a, "teamB": b}})


def event_types(outcome):
    return [event["type"] for event in outcome.events]


def test_default_state_opens_unconfigured_first_set():
    state = default_state(make_config())
    assert state["currentSet"] == 1
    assert state["scores"] == {"teamA": [0], "teamB": [0]}
    assert len(state["setConfigurations"]) == 3
    assert not any(cfg["isConfigured"] for cfg in state["setConfigurations"])
    assert state["events"] == []
    assert state["activeTimer"] is None


def test_point_rejected_before_coin_toss():
    play = Play(make_config())
    outcome = play.point("A")
    assert isinstance(outcome, Rejection)
    assert outcome.kind == "set_not_configured"


def test_configure_set_serve_choice():
    play = Play(make_config())
    outcome = play.configure(winner="A", firstChoiceOption="serve", secondChoiceSide="left")
    assert event_types(outcome) == ["SET_CONFIGURED"]
    cfg = play.state["setConfigurations"][0]
    assert cfg["isConfigured"] is True
    assert cfg["coinToss"] == {"performed": True, "winner": "A", "loser": "B"}
    assert cfg["startingServerTeam"] == "A"
    assert cfg["sideChoiceTeam"] == "B"
    assert play.state["currentServerTeam"] == "A"
    assert play.state["currentServerPlayer"] == 1
    # B picked the left court.
    assert play.state["leftIsTeamA"] is False


def test_configure_set_side_choice_gives_serve_to_other_pick():
    play = Play(make_config())
    play.configure(
        winner="A",
        firstChoiceOption="side",
        firstChoiceSide="right",
        secondChoiceOption="serve",
    )
    cfg = play.state["setConfigurations"][0]
    assert cfg["startingServerTeam"] == "B"
    assert cfg["sideChoiceTeam"] == "A"
    assert play.state["currentServerTeam"] == "B"
    assert play.state["leftIsTeamA"] is False


def test_configure_set_rejections():
    play = Play(make_config())
    assert not isinstance(play.configure(), Rejection)
    again = play.configure()
    assert isinstance(again, Rejection) and again.kind == "already_configured"

    too_far = play.configure(set_number=4)
    assert isinstance(too_far, Rejection) and too_far.kind == "invalid_set"

    bad_server = play.configure(set_number=2, startingServerPlayer=5)
    assert isinstance(bad_server, Rejection) and bad_server.kind == "invalid_server"


def test_malformed_action_raises_value_error():
    state = default_state(make_config())
    with pytest.raises(ValueError):
        apply_action(state, {"type": "AWARD_POINT", "at": ts(1)}, make_config())
    with pytest.raises(ValueError):
        apply_action(state, {"type": "JUMP", "at": ts(1)}, make_config())
    with pytest.raises(ValueError):
        apply_action(state, {"type": "AWARD_POINT", "team": "A", "at": "2026-07-04T10:00:00"}, make_config())


def test_apply_action_does_not_mutate_input_state():
    play = Play(make_config())
    play.configure()
    before = play.state
    snapshot = repr(before)
    outcome = apply_action(before, {"type": "AWARD_POINT", "team": "B", "at": ts(100)}, play.config)
    assert repr(before) == snapshot
    assert outcome.state is not before


def test_timestamps_must_not_go_backwards():
    play = Play(make_config())
    play.configure()
    play.point("A")
    outcome = apply_action(play.state, {"type": "AWARD_POINT", "team": "A", "at": ts(0)}, play.config)
    assert isinstance(outcome, Rejection)
    assert outcome.kind == "non_monotonic_timestamp"


def test_serve_rotation_follows_side_outs():
    play = Play(make_config())
    play.configure(winner="A", firstChoiceOption="serve")
    servers = []
    for team in ["A", "B", "A", "B", "B", "A"]:
        play.point(team)
        state = play.state
        server_team = state["currentServerTeam"]
        key = "teamA" if server_team == "A" else "teamB"
        order = state["serviceOrders"][key]
        assert state["currentServerPlayer"] == order[(state["nextServerIndex"][key] - 1) % len(order)]
        assert state["possession"] == server_team
        servers.append((server_team, state["currentServerPlayer"]))
    assert servers == [("A", 1), ("B", 1), ("A", 2), ("B", 2), ("B", 2), ("A", 1)]


def test_point_event_records_score_and_server():
    play = Play(make_config())
    play.configure()
    outcome = play.point("B", category="BLOCK")
    point = outcome.events[0]
    assert point["type"] == "POINT"
    assert point["team"] == "B"
    assert point["pointCategory"] == "BLOCK"
    assert point["data"]["scoreA"] == 0 and point["data"]["scoreB"] == 1
    assert point["data"]["servingTeam"] == "A"
    assert point["id"] == "m1:1"


def test_side_switch_fires_when_sum_reaches_seven():
    play = Play(make_config())
    play.configure()
    left_before = play.state["leftIsTeamA"]
    for team in ["A", "B", "A", "B", "A", "B"]:
        outcome = play.point(team)
        assert "SIDE_SWITCH" not in event_types(outcome)
    assert play.state["sidesSwitched"][0] == 0

    outcome = play.point("A")
    assert event_types(outcome) == ["POINT", "SIDE_SWITCH"]
    assert play.state["leftIsTeamA"] is (not left_before)
    assert play.state["sidesSwitched"][0] == 1

    outcome = play.point("B")
    assert event_types(outcome) == ["POINT"]


def test_side_switch_every_five_in_deciding_set():
    play = Play(make_config())
    play.configure()
    play.act(type="OVERRIDE_STATE", patch={"currentSet": 3})
    play.configure(set_number=3)
    switches = []
    for team in ["A", "B"] * 5:
        outcome = play.point(team)
        if "SIDE_SWITCH" in event_types(outcome):
            switches.append(sum(play.state["scores"][k][2] for k in ("teamA", "teamB")))
    assert switches == [5, 10]


@pytest.mark.parametrize(
    "start, scorer, closes, winner",
    [
        ((19, 19), "A", False, None),
        ((20, 19), "A", True, "A"),
        ((21, 20), "A", True, "A"),
        ((23, 24), "B", True, "B"),
        ((21, 21), "B", False, None),
    ],
)
def test_set_needs_target_and_two_point_lead(start, scorer, closes, winner):
    play = Play(make_config())
    play.configure()
    play.set_scores(*start)
    outcome = play.point(scorer)
    assert ("SET_END" in event_types(outcome)) is closes
    if closes:
        key = "teamA" if winner == "A" else "teamB"
        assert play.state["setsWon"][key] == 1
        assert play.state["currentSet"] == 2
    else:
        assert play.state["currentSet"] == 1


def test_set_without_two_point_lead_closes_at_target():
    play = Play(make_config(needTwoPointLead=False))
    play.configure()
    play.set_scores(20, 20)
    outcome = play.point("B")
    assert "SET_END" in event_types(outcome)


def test_closed_set_rejects_more_points():
    play = Play(make_config(coinTossMode="tossEverySet"))
    play.configure()
    play.set_scores(21, 15)
    outcome = play.point("A")
    assert isinstance(outcome, Rejection)
    assert outcome.kind == "set_closed"


def test_next_set_alternates_server_and_ends():
    play = Play(make_config())
    play.configure(winner="A", firstChoiceOption="serve", secondChoiceSide="left")
    play.set_scores(20, 5)
    outcome = play.point("A")
    assert event_types(outcome) == ["POINT", "SET_END", "SET_CONFIGURED"]
    assert outcome.events[2]["data"]["automatic"] is True

    cfg = play.state["setConfigurations"][1]
    assert cfg["isConfigured"] is True
    assert cfg["startingServerTeam"] == "B"
    assert cfg["sideSelection"] == "right"
    assert play.state["currentServerTeam"] == "B"
    assert play.state["leftIsTeamA"] is True
    assert play.state["scores"] == {"teamA": [21, 0], "teamB": [5, 0]}
    assert play.state["timeoutsUsed"] == {"teamA": [0, 0], "teamB": [0, 0]}


def test_toss_every_set_leaves_next_set_unconfigured():
    play = Play(make_config(coinTossMode="tossEverySet"))
    play.configure()
    play.set_scores(20, 5)
    outcome = play.point("A")
    assert event_types(outcome) == ["POINT", "SET_END"]
    assert play.state["setConfigurations"][1]["isConfigured"] is False
    assert play.point("A").kind == "set_not_configured"


def test_two_sets_to_nil_ends_match_without_third_set():
    play = Play(make_config())
    play.configure()
    play.set_scores(20, 3)
    play.point("A")
    play.set_scores(20, 3)
    outcome = play.point("A")

    assert event_types(outcome)[-2:] == ["SET_END", "GAME_END"]
    assert play.state["isGameEnded"] is True
    assert play.state["winner"] == "A"
    assert play.state["setsWon"] == {"teamA": 2, "teamB": 0}
    assert play.state["currentSet"] == 2
    assert len(play.state["scores"]["teamA"]) == 2

    after = play.point("B")
    assert isinstance(after, Rejection) and after.kind == "match_ended"
    timeout = play.act(type="START_TIMEOUT", kind="MEDICAL")
    assert isinstance(timeout, Rejection) and timeout.kind == "match_ended"


def test_split_sets_open_unconfigured_deciding_set():
    play = Play(make_config())
    play.configure()
    play.set_scores(20, 3)
    play.point("A")
    play.set_scores(3, 20)
    outcome = play.point("B")

    assert "SET_CONFIGURED" not in event_types(outcome)
    assert play.state["currentSet"] == 3
    assert play.state["setsWon"] == {"teamA": 1, "teamB": 1}
    assert play.state["setConfigurations"][2]["isConfigured"] is False
    assert play.state["scores"]["teamA"] == [21, 3, 0]
    assert play.point("A").kind == "set_not_configured"

    play.configure(set_number=3, winner="B", firstChoiceOption="receive")
    assert play.state["currentServerTeam"] == "A"
    play.set_scores(14, 10)
    outcome = play.point("A")
    assert event_types(outcome)[-1] == "GAME_END"
    assert play.state["winner"] == "A"


def test_team_timeout_lifecycle():
    play = Play(make_config())
    play.configure()
    outcome = play.act(type="START_TIMEOUT", kind="TIMEOUT_TEAM", team="B")
    timer = outcome.timer_started
    assert timer["type"] == "TIMEOUT_TEAM"
    assert timer["team"] == "B"
    assert timer["durationSec"] == 30
    assert timer["startedAt"] == ts(play.t)
    assert timer["endsAt"] == ts(play.t + 30)
    assert play.state["activeTimer"] == timer
    assert play.state["timeoutsUsed"]["teamB"] == [1]

    busy = play.act(type="START_TIMEOUT", kind="MEDICAL")
    assert isinstance(busy, Rejection) and busy.kind == "timer_active"

    ended = play.act(type="END_TIMEOUT")
    assert ended.timer_ended["id"] == timer["id"]
    assert ended.timer_ended["endedAt"] == ts(play.t)
    assert ended.events[0]["data"]["early"] is True
    assert play.state["activeTimer"] is None

    exhausted = play.act(type="START_TIMEOUT", kind="TIMEOUT_TEAM", team="B")
    assert isinstance(exhausted, Rejection) and exhausted.kind == "no_timeouts_remaining"

    nothing = play.act(type="END_TIMEOUT")
    assert isinstance(nothing, Rejection) and nothing.kind == "no_active_timer"


def test_medical_timeout_has_no_allotment():
    play = Play(make_config())
    play.configure()
    for _ in range(3):
        assert not isinstance(play.act(type="START_TIMEOUT", kind="MEDICAL", team="A"), Rejection)
        assert not isinstance(play.act(type="END_TIMEOUT"), Rejection)
    assert play.state["timeoutsUsed"]["teamA"] == [0]


def test_technical_timeout_disabled_by_default():
    play = Play(make_config())
    play.configure()
    outcome = play.act(type="START_TIMEOUT", kind="TIMEOUT_TECHNICAL")
    assert isinstance(outcome, Rejection)
    assert outcome.kind == "technical_timeout_disabled"


def test_technical_timeout_flagged_at_point_sum():
    play = Play(make_config(hasTechnicalTimeout=True, technicalTimeoutSum=21))
    play.configure()
    play.set_scores(10, 9)
    play.point("B")
    assert play.state["technicalTimeoutPending"] is False
    play.point("A")
    assert play.state["technicalTimeoutPending"] is True

    outcome = play.act(type="START_TIMEOUT", kind="TIMEOUT_TECHNICAL")
    assert outcome.timer_started["team"] is None
    assert play.state["technicalTimeoutPending"] is False
    assert play.state["technicalTimeoutUsed"] == [True]

    play.act(type="END_TIMEOUT")
    again = play.act(type="START_TIMEOUT", kind="TIMEOUT_TECHNICAL")
    assert isinstance(again, Rejection) and again.kind == "technical_timeout_used"


def test_timer_read_helpers():
    timer = build_timer(timer_id="t1", timer_type="TIMEOUT_TEAM", started_at=ts(0), duration_sec=30, team="A")
    assert timer_remaining_seconds(timer, T0 + timedelta(seconds=10.5)) == 20
    assert timer_remaining_seconds(timer, T0 + timedelta(seconds=45)) == 0
    assert timer_remaining_seconds(None, T0) == 0
    assert is_timer_elapsed(timer, T0 + timedelta(seconds=29)) is False
    assert is_timer_elapsed(timer, T0 + timedelta(seconds=30)) is True


def test_override_corrects_score_and_server():
    play = Play(make_config())
    play.configure()
    outcome = play.act(
        type="OVERRIDE_STATE",
        patch={"scores": {"teamA": 4}, "currentServerTeam": "B", "currentServerPlayer": 2},
        reason="scorer missed a rally",
    )
    assert event_types(outcome) == ["OVERRIDE"]
    assert outcome.events[0]["data"]["reason"] == "scorer missed a rally"
    assert play.state["scores"]["teamA"] == [4]
    assert play.state["currentServerTeam"] == "B"
    assert play.state["currentServerPlayer"] == 2
    assert play.state["nextServerIndex"]["teamB"] == 0

    # Side-out after the correction goes back to A's rotation.
    play.point("A")
    assert play.state["currentServerTeam"] == "A"


def test_override_rejects_structural_damage():
    play = Play(make_config())
    play.configure()
    play.act(type="OVERRIDE_STATE", patch={"currentSet": 2})

    for patch in [
        {"scores": {"teamA": -1}},
        {"currentSet": 1},
        {"currentSet": 4},
        {"unknownField": 1},
        {"currentServerPlayer": 9},
        {"winner": "C"},
    ]:
        outcome = play.act(type="OVERRIDE_STATE", patch=patch)
        assert isinstance(outcome, Rejection), patch
        assert outcome.kind == "invalid_override"


def test_override_allowed_after_match_end():
    play = Play(make_config(pointsPerSet=[21], sideSwitchSum=[7]))
    play.configure()
    play.set_scores(20, 0)
    play.point("A")
    assert play.state["isGameEnded"] is True

    outcome = play.act(type="OVERRIDE_STATE", patch={"isGameEnded": False, "scores": {"teamA": 20}})
    assert not isinstance(outcome, Rejection)
    assert play.state["isGameEnded"] is False
    assert play.state["winner"] is None
