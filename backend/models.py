from dataclasses import asdict, dataclass
from typing import Any, Literal

ScanType = Literal["departure", "return"]
LogType = Literal["departure", "return", "change"]


@dataclass(frozen=True)
class Activity:
    id: int
    event_id: int
    name: str


@dataclass(frozen=True)
class Participant:
    id: int
    event_id: int
    name: str
    qr_code: str
    current_activity_id: int | None = None


@dataclass(frozen=True)
class NewActivityLog:
    """Fields supplied by the caller when appending a movement record."""

    event_id: int
    participant_id: int
    activity_id: int
    leader_id: int
    type: LogType
    from_activity_id: int | None = None


@dataclass(frozen=True)
class ActivityLog:
    id: int
    event_id: int
    participant_id: int
    activity_id: int
    leader_id: int
    type: LogType
    from_activity_id: int | None = None
    created_at: str | None = None


def to_payload(record: Any) -> dict[str, Any] | None:
    if record is None:
        return None
    return asdict(record)
