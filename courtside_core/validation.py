"""
Input validation schemas using Pydantic v2
Validates match configuration, scoreboard actions and queued operations
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)

TeamLiteral = Literal["A", "B"]
CoinChoiceLiteral = Literal["serve", "receive", "side"]
CourtSideLiteral = Literal["left", "right"]
TimerTypeLiteral = Literal["TIMEOUT_TEAM", "TIMEOUT_TECHNICAL", "SET_INTERVAL", "MEDICAL"]
PointCategoryLiteral = Literal["ATTACK", "BLOCK", "SERVE_POINT", "OPPONENT_ERROR"]
OperationTypeLiteral = Literal[
    "save_match_state",
    "append_event",
    "upsert_timer",
    "close_timer",
    "update_match_status",
]

ACTION_TYPES = {
    "AWARD_POINT",
    "START_TIMEOUT",
    "END_TIMEOUT",
    "OVERRIDE_STATE",
    "CONFIGURE_SET",
}

# ==================== TIMESTAMPS ====================


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are rejected."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError("timestamp must be timezone-aware")
    return parsed.astimezone(timezone.utc)


def isoformat_z(dt: datetime) -> str:
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    dt_utc = dt.astimezone(timezone.utc)
    return dt_utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ==================== MATCH CONFIGURATION ====================


def calculate_side_switch_sum(points_per_set: List[int]) -> List[int]:
    """Side-switch interval per set: 7 for sets to 21 or more, 5 otherwise."""
    return [7 if points >= 21 else 5 for points in points_per_set]


class MatchFormatPresets:
    """Standard beach-volleyball formats"""

    PRESETS: Dict[str, Dict[str, Any]] = {
        "best3_21_15": {
            "label": "Best of 3 sets (21/21/15)",
            "pointsPerSet": [21, 21, 15],
            "sideSwitchSum": [7, 7, 5],
        },
        "best3_15_15": {
            "label": "Best of 3 sets (15/15/15)",
            "pointsPerSet": [15, 15, 15],
            "sideSwitchSum": [5, 5, 5],
        },
        "best3_15_10": {
            "label": "Best of 3 sets (15/15/10)",
            "pointsPerSet": [15, 15, 10],
            "sideSwitchSum": [5, 5, 5],
        },
        "single_21": {
            "label": "Single set to 21",
            "pointsPerSet": [21],
            "sideSwitchSum": [7],
        },
    }

    DEFAULT = "best3_21_15"

    @classmethod
    def get(cls, key: Optional[str]) -> Dict[str, Any]:
        preset = cls.PRESETS.get(key or cls.DEFAULT) or cls.PRESETS[cls.DEFAULT]
        return {
            "pointsPerSet": list(preset["pointsPerSet"]),
            "sideSwitchSum": list(preset["sideSwitchSum"]),
        }


class Player(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    number: int = Field(..., ge=0, le=99)

    model_config = ConfigDict(frozen=True)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = InputSanitizer.sanitize_name(v)
        if not v:
            raise ValueError("player name cannot be empty")
        return v


class Team(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    players: List[Player] = Field(default_factory=list, max_length=6)

    model_config = ConfigDict(frozen=True)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = InputSanitizer.sanitize_name(v)
        if not v:
            raise ValueError("team name cannot be empty")
        return v


class MatchConfiguration(BaseModel):
    """Immutable rules for one match, fixed once the match starts"""

    id: str = Field(..., min_length=1, max_length=64, description="Match id")
    teamA: Team
    teamB: Team

    pointsPerSet: List[int] = Field(
        default_factory=lambda: [21, 21, 15], min_length=1, max_length=7
    )
    needTwoPointLead: bool = True
    sideSwitchSum: Optional[List[int]] = Field(None, validate_default=True)

    hasTechnicalTimeout: bool = False
    technicalTimeoutSum: int = Field(21, ge=1, le=199)
    technicalTimeoutDurationSec: int = Field(30, ge=1, le=600)

    teamTimeoutsPerSet: int = Field(1, ge=0, le=5)
    teamTimeoutDurationSec: int = Field(30, ge=1, le=600)
    medicalTimeoutDurationSec: int = Field(300, ge=1, le=3600)
    setIntervalDurationSec: int = Field(60, ge=1, le=3600)

    coinTossMode: Literal["initialThenAlternate", "tossEverySet"] = "initialThenAlternate"
    notes: Optional[str] = Field(None, max_length=1000)

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("pointsPerSet")
    @classmethod
    def validate_points_per_set(cls, v: List[int]) -> List[int]:
        for points in v:
            if points < 1 or points > 99:
                raise ValueError("pointsPerSet entries must be 1-99")
        if len(v) % 2 == 0:
            raise ValueError("pointsPerSet must describe an odd number of sets")
        return v

    @field_validator("sideSwitchSum")
    @classmethod
    def fill_side_switch_sum(
        cls, v: Optional[List[int]], info: ValidationInfo
    ) -> List[int]:
        points = info.data.get("pointsPerSet")
        if not points:
            # pointsPerSet failed validation already
            return list(v or [])
        if not v:
            return calculate_side_switch_sum(points)
        for interval in v:
            if interval < 1:
                raise ValueError("sideSwitchSum entries must be positive")
        padded = list(v[: len(points)])
        while len(padded) < len(points):
            padded.append(padded[-1])
        return padded

    @property
    def total_sets(self) -> int:
        return len(self.pointsPerSet)

    @property
    def sets_to_win(self) -> int:
        return self.total_sets // 2 + 1

    def target_points(self, set_number: int) -> int:
        index = min(max(set_number - 1, 0), self.total_sets - 1)
        return self.pointsPerSet[index]

    def switch_interval(self, set_number: int) -> int:
        switches = self.sideSwitchSum or calculate_side_switch_sum(self.pointsPerSet)
        index = min(max(set_number - 1, 0), len(switches) - 1)
        return switches[index]

    def is_deciding_set(self, set_number: int) -> bool:
        return self.total_sets > 1 and set_number == self.total_sets

    def roster(self, team: str) -> List[Player]:
        return list(self.teamA.players if team == "A" else self.teamB.players)

    @classmethod
    def from_preset(
        cls, preset: Optional[str], *, match_id: str, team_a: Dict, team_b: Dict, **overrides
    ) -> "MatchConfiguration":
        data: Dict[str, Any] = {"id": match_id, "teamA": team_a, "teamB": team_b}
        data.update(MatchFormatPresets.get(preset))
        data.update(overrides)
        return cls(**data)


# ==================== ACTIONS ====================


class ValidatedAction(BaseModel):
    """Scoreboard action with per-type field requirements"""

    type: str = Field(..., min_length=1, max_length=50, description="Action type")
    at: str = Field(..., min_length=1, max_length=40, description="ISO-8601 timestamp")

    # AWARD_POINT / START_TIMEOUT
    team: Optional[TeamLiteral] = None
    category: Optional[PointCategoryLiteral] = None
    kind: Optional[TimerTypeLiteral] = None

    # CONFIGURE_SET
    setNumber: Optional[int] = Field(None, ge=1, le=7)
    coinTossWinner: Optional[TeamLiteral] = None
    firstChoiceOption: Optional[CoinChoiceLiteral] = None
    firstChoiceSide: Optional[CourtSideLiteral] = None
    secondChoiceOption: Optional[CoinChoiceLiteral] = None
    secondChoiceSide: Optional[CourtSideLiteral] = None
    startingServerPlayer: Optional[int] = Field(None, ge=1, le=6)
    serviceOrders: Optional[Dict[str, List[int]]] = None

    # OVERRIDE_STATE
    patch: Optional[Dict[str, Any]] = None
    reason: Optional[str] = Field(None, max_length=255)

    model_config = ConfigDict(extra="ignore")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Validate action type is one of allowed types"""
        if v not in ACTION_TYPES:
            raise ValueError(f"type must be one of {sorted(ACTION_TYPES)}, got {v}")
        return v

    @field_validator("at")
    @classmethod
    def normalize_timestamp(cls, v: str) -> str:
        try:
            return isoformat_z(parse_timestamp(v))
        except ValueError:
            raise ValueError("at must be an ISO-8601 timestamp with timezone")

    @field_validator("serviceOrders")
    @classmethod
    def validate_service_orders(
        cls, v: Optional[Dict[str, List[int]]]
    ) -> Optional[Dict[str, List[int]]]:
        if v is None:
            return v
        for key, order in v.items():
            if key not in ("teamA", "teamB"):
                raise ValueError("serviceOrders keys must be teamA/teamB")
            if not order or len(set(order)) != len(order):
                raise ValueError(f"serviceOrders.{key} must be non-empty and unique")
            if any(player < 1 for player in order):
                raise ValueError(f"serviceOrders.{key} entries must be positive")
        return v

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return InputSanitizer.sanitize_string(v, 255)

    @model_validator(mode="after")
    def validate_action_fields(self) -> Self:
        """Validate required fields based on action type"""
        action_type = self.type

        if action_type == "AWARD_POINT":
            if self.team is None:
                raise ValueError("AWARD_POINT requires team")

        elif action_type == "START_TIMEOUT":
            if self.kind is None:
                raise ValueError("START_TIMEOUT requires kind")
            if self.kind == "TIMEOUT_TEAM" and self.team is None:
                raise ValueError("TIMEOUT_TEAM requires team")

        elif action_type == "CONFIGURE_SET":
            if self.setNumber is None:
                raise ValueError("CONFIGURE_SET requires setNumber")
            if self.coinTossWinner is None:
                raise ValueError("CONFIGURE_SET requires coinTossWinner")
            if self.firstChoiceOption is None:
                raise ValueError("CONFIGURE_SET requires firstChoiceOption")
            if self.firstChoiceOption == "side":
                if self.firstChoiceSide is None:
                    raise ValueError("choosing side requires firstChoiceSide")
                if self.secondChoiceOption not in ("serve", "receive"):
                    raise ValueError(
                        "after a side choice the other team must pick serve or receive"
                    )
            elif self.secondChoiceOption not in (None, "side"):
                raise ValueError(
                    "after a serve/receive choice the other team can only pick a side"
                )

        elif action_type == "OVERRIDE_STATE":
            if not self.patch:
                raise ValueError("OVERRIDE_STATE requires a non-empty patch")

        return self

    def to_action(self) -> Dict[str, Any]:
        # Only top-level None fields are dropped; patch values may be None.
        return {k: v for k, v in self.model_dump().items() if v is not None}


# ==================== QUEUED OPERATIONS ====================


class QueuedOperation(BaseModel):
    """Persisted envelope of one pending remote operation"""

    id: str = Field(..., min_length=1, max_length=128)
    type: OperationTypeLiteral
    payload: Dict[str, Any]
    createdAt: float = Field(..., ge=0)
    attempts: int = Field(0, ge=0)

    model_config = ConfigDict(extra="ignore")


class InputSanitizer:
    """Utility class for input sanitization"""

    @staticmethod
    def sanitize_string(value: str, max_length: int = 255) -> str:
        """Sanitize string input"""
        if not isinstance(value, str):
            return str(value)[:max_length]

        value = value.strip()
        value = value[:max_length]
        value = value.replace("\0", "")

        return value

    @staticmethod
    def sanitize_name(name: str) -> str:
        """Sanitize team/player name for display - keep accented letters"""
        name = InputSanitizer.sanitize_string(name, 255)

        dangerous_chars = r'[<>{}[\]\\|;()&$`"\*\x00-\x1f\x7f]'
        name = re.sub(dangerous_chars, "", name)

        return name.strip()

    @staticmethod
    def validate_and_sanitize_action(action_dict: dict) -> ValidatedAction:
        """
        Validate and sanitize action dictionary

        Returns:
            ValidatedAction: Validated action object

        Raises:
            ValueError: If validation fails
        """
        try:
            return ValidatedAction(**action_dict)
        except Exception as e:
            logger.warning(f"Action validation failed: {e}")
            raise ValueError(f"Invalid action: {str(e)}")


# ==================== EXPORT ====================

__all__ = [
    "MatchConfiguration",
    "MatchFormatPresets",
    "Player",
    "Team",
    "ValidatedAction",
    "QueuedOperation",
    "InputSanitizer",
    "calculate_side_switch_sum",
    "isoformat_z",
    "parse_timestamp",
]
