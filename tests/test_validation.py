import pytest

from courtside_core import InputSanitizer, MatchConfiguration, MatchFormatPresets, QueuedOperation, ValidatedAction
from courtside_core.validation import calculate_side_switch_sum

TEAM_A = {"name": "Sand Sharks", "players": [{"name": "Ana", "number": 1}, {"name": "Bea", "number": 2}]}
TEAM_B = {"name": "Dune Riders", "players": [{"name": "Cris", "number": 1}, {"name": "Dora", "number": 2}]}


def test_configuration_defaults():
    config = MatchConfiguration(id="m1", teamA=TEAM_A, teamB=TEAM_B)
    assert config.pointsPerSet == [21, 21, 15]
    assert config.sideSwitchSum == [7, 7, 5]
    assert config.needTwoPointLead is True
    assert config.teamTimeoutsPerSet == 1
    assert config.coinTossMode == "initialThenAlternate"
    assert config.total_sets == 3
    assert config.sets_to_win == 2
    assert config.is_deciding_set(3) and not config.is_deciding_set(2)
    assert config.target_points(3) == 15
    assert config.switch_interval(3) == 5


def test_side_switch_sum_is_padded():
    config = MatchConfiguration(id="m1", teamA=TEAM_A, teamB=TEAM_B, pointsPerSet=[15, 15, 15], sideSwitchSum=[5])
    assert config.sideSwitchSum == [5, 5, 5]
    assert calculate_side_switch_sum([21, 25, 11]) == [7, 7, 5]


@pytest.mark.parametrize("points", [[], [21, 21], [0], [21, 100, 15]])
def test_configuration_rejects_bad_formats(points):
    with pytest.raises(ValueError):
        MatchConfiguration(id="m1", teamA=TEAM_A, teamB=TEAM_B, pointsPerSet=points)


def test_configuration_is_frozen():
    config = MatchConfiguration(id="m1", teamA=TEAM_A, teamB=TEAM_B)
    with pytest.raises(ValueError):
        config.pointsPerSet = [11]


def test_presets():
    config = MatchConfiguration.from_preset("best3_15_10", match_id="m1", team_a=TEAM_A, team_b=TEAM_B)
    assert config.pointsPerSet == [15, 15, 10]
    assert config.sideSwitchSum == [5, 5, 5]
    assert MatchFormatPresets.get("unknown") == MatchFormatPresets.get(None)


def test_names_are_sanitized():
    config = MatchConfiguration(
        id="m1",
        teamA={"name": "  <Sand> Sharks ", "players": [{"name": "Ána;", "number": 3}]},
        teamB=TEAM_B,
    )
    assert config.teamA.name == "Sand Sharks"
    assert config.teamA.players[0].name == "Ána"
    with pytest.raises(ValueError):
        MatchConfiguration(id="m1", teamA={"name": "<>"}, teamB=TEAM_B)


def test_action_timestamp_is_normalized_to_utc():
    action = ValidatedAction(type="AWARD_POINT", team="A", at="2026-07-04T12:00:00+02:00")
    assert action.at == "2026-07-04T10:00:00.000Z"
    assert action.to_action() == {"type": "AWARD_POINT", "team": "A", "at": "2026-07-04T10:00:00.000Z"}


def test_action_field_requirements():
    at = "2026-07-04T10:00:00Z"
    with pytest.raises(ValueError):
        ValidatedAction(type="START_TIMEOUT", at=at)
    with pytest.raises(ValueError):
        ValidatedAction(type="START_TIMEOUT", kind="TIMEOUT_TEAM", at=at)
    with pytest.raises(ValueError):
        ValidatedAction(type="CONFIGURE_SET", setNumber=1, coinTossWinner="A", firstChoiceOption="side", at=at)
    with pytest.raises(ValueError):
        ValidatedAction(
            type="CONFIGURE_SET",
            setNumber=1,
            coinTossWinner="A",
            firstChoiceOption="serve",
            secondChoiceOption="receive",
            at=at,
        )
    with pytest.raises(ValueError):
        ValidatedAction(type="OVERRIDE_STATE", patch={}, at=at)
    with pytest.raises(ValueError):
        ValidatedAction(type="CONFIGURE_SET", serviceOrders={"teamA": [1, 1]}, at=at)


def test_override_patch_keeps_explicit_nulls():
    action = ValidatedAction(type="OVERRIDE_STATE", patch={"activeTimer": None}, at="2026-07-04T10:00:00Z")
    assert action.to_action()["patch"] == {"activeTimer": None}


def test_sanitizer_wraps_errors_in_value_error():
    with pytest.raises(ValueError, match="Invalid action"):
        InputSanitizer.validate_and_sanitize_action({"type": "AWARD_POINT", "team": "C", "at": "2026-07-04T10:00:00Z"})
    assert InputSanitizer.sanitize_string("  abc\0def  ", 5) == "abcd"


def test_queued_operation_envelope():
    op = QueuedOperation(id="op-1", type="append_event", payload={"matchId": "m1"}, createdAt=1.5)
    assert op.attempts == 0
    with pytest.raises(ValueError):
        QueuedOperation(id="op-1", type="drop_table", payload={}, createdAt=1.5)
