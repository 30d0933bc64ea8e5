"""
Scan resolution: decides what a leader's scan does to a participant.

Rules:
  - departure, already at the target           => rejected (ALREADY_AT_ACTIVITY)
  - departure, at a different activity         => "change" log, location = target
  - departure, not at any activity             => "departure" log, location = target
  - return, not at any activity                => rejected (NOT_AT_ACTIVITY)
  - return, at an activity                     => "return" log, location cleared

An accepted scan appends exactly one log and then updates the location.
A log written before a failed location update is left in place.
"""

import logging
from dataclasses import dataclass
from typing import Literal, cast

from backend.config import LOCATION_COMPARE_AND_SWAP
from backend.models import Activity, ActivityLog, LogType, NewActivityLog, Participant, ScanType
from backend.store import ParticipantStore, StoreError

logger = logging.getLogger(__name__)

SCAN_TYPES: set[str] = {"departure", "return"}

DecisionCode = Literal[
    "DEPARTURE",
    "CHANGE",
    "RETURN",
    "ALREADY_AT_ACTIVITY",
    "NOT_AT_ACTIVITY",
]


class ScanError(Exception):
    """Base class for scan workflow failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ScanValidationError(ScanError):
    """Scan settings are incomplete; nothing was looked up."""


class IdentityError(ScanError):
    """No leader could be identified for the scan."""


class ParticipantNotFound(ScanError):
    """The QR payload does not belong to a participant of the event."""


class ScanRejected(ScanError):
    """A guard refused the transition (duplicate departure or empty return)."""

    def __init__(self, message: str, resolution: "ScanResolution"):
        super().__init__(message)
        self.resolution = resolution


class CommitError(ScanError):
    """Appending the log or updating the location failed."""


@dataclass(frozen=True)
class ScanResolution:
    scan_type: ScanType
    decision_code: DecisionCode
    current_activity: Activity | None
    target_activity: Activity | None
    log_type: LogType | None = None
    activity_id: int | None = None
    from_activity_id: int | None = None
    new_location_id: int | None = None

    @property
    def accepted(self) -> bool:
        return self.log_type is not None


@dataclass(frozen=True)
class ScanPreview:
    participant: Participant
    current_activity: Activity | None
    resolution: ScanResolution
    prompt: str


@dataclass(frozen=True)
class ScanCommit:
    log: ActivityLog
    resolution: ScanResolution


def validate_scan_settings(scan_type: str | None, activity_id: int | None) -> ScanType:
    clean_type = (scan_type or "").strip().lower()
    if not clean_type:
        raise ScanValidationError("Please select a scan type before scanning.")
    if clean_type not in SCAN_TYPES:
        raise ScanValidationError(f"Unknown scan type: {clean_type}.")
    if clean_type == "departure" and activity_id is None:
        raise ScanValidationError("Please select an activity for departure.")
    return cast(ScanType, clean_type)


async def select_target_activity(
    store: ParticipantStore,
    *,
    event_id: int,
    scan_type: ScanType,
    activity_id: int | None,
) -> Activity | None:
    """Pick the departure target out of the event's activities; returns ignore it."""
    if scan_type == "return":
        return None
    activities = await store.list_activities_for_event(event_id)
    target = next((a for a in activities if a.id == activity_id), None)
    if target is None:
        raise ScanValidationError("Selected activity does not belong to this event.")
    return target


def resolve_scan(
    scan_type: ScanType,
    current_activity: Activity | None,
    target_activity: Activity | None = None,
) -> ScanResolution:
    if scan_type == "departure":
        if target_activity is None:
            raise ScanValidationError("Please select an activity for departure.")
        if current_activity is not None and current_activity.id == target_activity.id:
            return ScanResolution(
                scan_type=scan_type,
                decision_code="ALREADY_AT_ACTIVITY",
                current_activity=current_activity,
                target_activity=target_activity,
            )
        if current_activity is not None:
            return ScanResolution(
                scan_type=scan_type,
                decision_code="CHANGE",
                current_activity=current_activity,
                target_activity=target_activity,
                log_type="change",
                activity_id=target_activity.id,
                from_activity_id=current_activity.id,
                new_location_id=target_activity.id,
            )
        return ScanResolution(
            scan_type=scan_type,
            decision_code="DEPARTURE",
            current_activity=None,
            target_activity=target_activity,
            log_type="departure",
            activity_id=target_activity.id,
            new_location_id=target_activity.id,
        )

    # return: target activity is ignored
    if current_activity is None:
        return ScanResolution(
            scan_type=scan_type,
            decision_code="NOT_AT_ACTIVITY",
            current_activity=None,
            target_activity=None,
        )
    return ScanResolution(
        scan_type=scan_type,
        decision_code="RETURN",
        current_activity=current_activity,
        target_activity=None,
        log_type="return",
        activity_id=current_activity.id,
        new_location_id=None,
    )


def confirmation_text(participant: Participant, resolution: ScanResolution) -> str:
    if resolution.decision_code == "CHANGE":
        return (
            f"{participant.name} is currently at {resolution.current_activity.name}. "
            f"Change to {resolution.target_activity.name}?"
        )
    if resolution.decision_code == "DEPARTURE":
        return f"Register {participant.name} for {resolution.target_activity.name}?"
    if resolution.decision_code == "RETURN":
        return f"Confirm {participant.name} is returning to camp?"
    return rejection_message(participant, resolution)


def rejection_message(participant: Participant, resolution: ScanResolution) -> str:
    if resolution.decision_code == "ALREADY_AT_ACTIVITY":
        return f"{participant.name} is already at {resolution.current_activity.name}."
    if resolution.decision_code == "NOT_AT_ACTIVITY":
        return f"{participant.name} is already at camp."
    return ""


async def preview_scan(
    store: ParticipantStore,
    *,
    event_id: int,
    qr_code: str,
    scan_type: ScanType,
    target_activity: Activity | None,
) -> ScanPreview:
    """
    Look a scanned code up and decide what confirming it would do.
    Raises ParticipantNotFound or ScanRejected; store errors propagate.
    """
    participant = await store.find_participant_by_code(qr_code.strip(), event_id)
    if participant is None:
        raise ParticipantNotFound("Invalid QR code. Participant not found.")

    current = await store.get_current_activity(participant.id)
    resolution = resolve_scan(scan_type, current, target_activity)
    if not resolution.accepted:
        message = rejection_message(participant, resolution)
        logger.info("Scan rejected for participant %s: %s", participant.id, resolution.decision_code)
        raise ScanRejected(message, resolution)

    return ScanPreview(
        participant=participant,
        current_activity=current,
        resolution=resolution,
        prompt=confirmation_text(participant, resolution),
    )


async def commit_scan(
    store: ParticipantStore,
    *,
    event_id: int,
    participant: Participant,
    scan_type: ScanType,
    target_activity: Activity | None,
    leader_id: int | None,
) -> ScanCommit:
    """
    Re-read the participant's location, then append the log and move them.
    """
    if not leader_id:
        raise IdentityError("Error: unable to identify scanner.")

    try:
        current = await store.get_current_activity(participant.id)
    except StoreError as e:
        raise CommitError("Error updating participant activity.") from e

    resolution = resolve_scan(scan_type, current, target_activity)
    if not resolution.accepted:
        raise ScanRejected(rejection_message(participant, resolution), resolution)

    entry = NewActivityLog(
        event_id=event_id,
        participant_id=participant.id,
        activity_id=resolution.activity_id,
        from_activity_id=resolution.from_activity_id,
        leader_id=leader_id,
        type=resolution.log_type,
    )
    try:
        log = await store.append_activity_log(entry)
    except StoreError as e:
        raise CommitError("Error updating participant activity.") from e

    try:
        await store.set_participant_location(
            event_id,
            participant.id,
            resolution.new_location_id,
            expected_activity_id=current.id if current else None,
            check_expected=LOCATION_COMPARE_AND_SWAP,
        )
    except StoreError as e:
        # log stays; location is whatever the store holds now
        logger.warning(
            "Activity log %s written but location update failed for participant %s: %s",
            log.id,
            participant.id,
            e,
        )
        raise CommitError("Error updating participant activity.") from e

    logger.info(
        "Recorded %s for participant %s (activity=%s, from=%s, leader=%s)",
        log.type,
        participant.id,
        log.activity_id,
        log.from_activity_id,
        leader_id,
    )
    return ScanCommit(log=log, resolution=resolution)
