"""
Scanner lifecycle as an explicit state machine.

`transition(snapshot, event, timings)` is the only place scanner state
changes. It never performs I/O: it returns the next snapshot plus a list of
effects (lookups, commits, cues, timers, decode surface rebuilds) for
`ScannerController` to carry out.

    RESET --camera granted--> ARMED --code--> PROCESSING --found--> AWAITING_CONFIRMATION
      ^                         |                 |                      |        |
      |                      idle (60s)     not found/rejected        confirm   cancel
      |                         |                 v                      v        |
      +--------rearm------------+------------- COOLDOWN (3s) <--fail-- PROCESSING |
      +<------------------------------------------------------------ok----+-------+
"""

import enum
from dataclasses import dataclass, field, replace
from typing import Any, Union

from backend.config import (
    SCANNER_CONFIRM_REARM_SECONDS,
    SCANNER_ERROR_COOLDOWN_SECONDS,
    SCANNER_IDLE_TIMEOUT_SECONDS,
    SCANNER_RESET_DELAY_SECONDS,
)
from backend.models import Activity, ActivityLog, Participant, ScanType, to_payload
from backend.services.scan_resolution import ScanResolution

CAMERA_ERROR_MESSAGE = "Error accessing camera. Please check permissions."


class ScannerState(str, enum.Enum):
    ARMED = "armed"
    PROCESSING = "processing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COOLDOWN = "cooldown"
    RESET = "reset"


class CameraStatus(str, enum.Enum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


class TimerKind(str, enum.Enum):
    IDLE = "idle"
    COOLDOWN = "cooldown"
    REARM = "rearm"


class Cue(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ScannerTimings:
    idle_timeout: float = SCANNER_IDLE_TIMEOUT_SECONDS
    error_cooldown: float = SCANNER_ERROR_COOLDOWN_SECONDS
    confirm_rearm: float = SCANNER_CONFIRM_REARM_SECONDS
    reset_delay: float = SCANNER_RESET_DELAY_SECONDS


@dataclass(frozen=True)
class ScanSettings:
    scan_type: ScanType
    target_activity: Activity | None = None


@dataclass(frozen=True)
class ScannerSnapshot:
    settings: ScanSettings
    state: ScannerState = ScannerState.RESET
    camera: CameraStatus = CameraStatus.PENDING
    generation: int = 0
    cycle: int = 0
    participant: Participant | None = None
    current_activity: Activity | None = None
    resolution: ScanResolution | None = None
    prompt: str | None = None
    error: str | None = None

    @property
    def committing(self) -> bool:
        return self.state is ScannerState.PROCESSING and self.resolution is not None


# -----------------------------
# Events
# -----------------------------
@dataclass(frozen=True)
class CameraProbed:
    granted: bool


@dataclass(frozen=True)
class CodeDecoded:
    text: str


@dataclass(frozen=True)
class LookupResolved:
    cycle: int
    participant: Participant
    current_activity: Activity | None
    resolution: ScanResolution
    prompt: str


@dataclass(frozen=True)
class LookupFailed:
    cycle: int
    message: str


@dataclass(frozen=True)
class Confirmed:
    pass


@dataclass(frozen=True)
class Cancelled:
    pass


@dataclass(frozen=True)
class CommitSucceeded:
    cycle: int
    log: ActivityLog


@dataclass(frozen=True)
class CommitFailed:
    cycle: int
    message: str


@dataclass(frozen=True)
class CameraFailed:
    message: str = CAMERA_ERROR_MESSAGE


@dataclass(frozen=True)
class TimerExpired:
    kind: TimerKind


@dataclass(frozen=True)
class ResetRequested:
    pass


@dataclass(frozen=True)
class SettingsChanged:
    settings: ScanSettings


ScannerEvent = Union[
    CameraProbed,
    CodeDecoded,
    LookupResolved,
    LookupFailed,
    Confirmed,
    Cancelled,
    CommitSucceeded,
    CommitFailed,
    CameraFailed,
    TimerExpired,
    ResetRequested,
    SettingsChanged,
]


# -----------------------------
# Effects
# -----------------------------
@dataclass(frozen=True)
class StartLookup:
    cycle: int
    code: str
    settings: ScanSettings


@dataclass(frozen=True)
class StartCommit:
    cycle: int
    participant: Participant
    resolution: ScanResolution


@dataclass(frozen=True)
class PlayCue:
    cue: Cue


@dataclass(frozen=True)
class StartTimer:
    kind: TimerKind
    delay: float


@dataclass(frozen=True)
class CancelTimer:
    kind: TimerKind


@dataclass(frozen=True)
class RebuildSurface:
    generation: int


@dataclass(frozen=True)
class ReleaseSurface:
    pass


ScannerEffect = Union[
    StartLookup,
    StartCommit,
    PlayCue,
    StartTimer,
    CancelTimer,
    RebuildSurface,
    ReleaseSurface,
]


@dataclass
class Transition:
    snapshot: ScannerSnapshot
    effects: list[ScannerEffect] = field(default_factory=list)


def _cleared(snapshot: ScannerSnapshot, **changes: Any) -> ScannerSnapshot:
    return replace(
        snapshot,
        participant=None,
        current_activity=None,
        resolution=None,
        prompt=None,
        error=None,
        **changes,
    )


def _enter_reset(snapshot: ScannerSnapshot, delay: float) -> Transition:
    return Transition(
        _cleared(snapshot, state=ScannerState.RESET),
        [
            CancelTimer(TimerKind.IDLE),
            CancelTimer(TimerKind.COOLDOWN),
            ReleaseSurface(),
            StartTimer(TimerKind.REARM, delay),
        ],
    )


def _enter_cooldown(snapshot: ScannerSnapshot, message: str, timings: ScannerTimings) -> Transition:
    return Transition(
        replace(_cleared(snapshot, state=ScannerState.COOLDOWN), error=message),
        [
            CancelTimer(TimerKind.IDLE),
            CancelTimer(TimerKind.REARM),
            PlayCue(Cue.ERROR),
            StartTimer(TimerKind.COOLDOWN, timings.error_cooldown),
        ],
    )


def _enter_armed(snapshot: ScannerSnapshot, timings: ScannerTimings, **changes: Any) -> Transition:
    generation = snapshot.generation + 1
    return Transition(
        _cleared(snapshot, state=ScannerState.ARMED, generation=generation, **changes),
        [
            CancelTimer(TimerKind.REARM),
            RebuildSurface(generation),
            StartTimer(TimerKind.IDLE, timings.idle_timeout),
        ],
    )


def transition(
    snapshot: ScannerSnapshot,
    event: ScannerEvent,
    timings: ScannerTimings | None = None,
) -> Transition:
    timings = timings or ScannerTimings()
    unchanged = Transition(snapshot)
    state = snapshot.state

    # Permission denied is terminal.
    if snapshot.camera is CameraStatus.DENIED:
        return unchanged

    if isinstance(event, SettingsChanged):
        return Transition(replace(snapshot, settings=event.settings))

    if isinstance(event, CameraProbed):
        if snapshot.camera is not CameraStatus.PENDING:
            return unchanged
        if event.granted:
            return _enter_armed(snapshot, timings, camera=CameraStatus.GRANTED)
        return Transition(
            _cleared(snapshot, camera=CameraStatus.DENIED),
            [CancelTimer(kind) for kind in TimerKind] + [ReleaseSurface()],
        )

    if snapshot.camera is CameraStatus.PENDING:
        return unchanged

    if isinstance(event, CodeDecoded):
        if state is not ScannerState.ARMED:
            return unchanged
        code = (event.text or "").strip()
        if not code:
            return Transition(snapshot, [StartTimer(TimerKind.IDLE, timings.idle_timeout)])
        cycle = snapshot.cycle + 1
        return Transition(
            _cleared(snapshot, state=ScannerState.PROCESSING, cycle=cycle),
            [CancelTimer(TimerKind.IDLE), StartLookup(cycle, code, snapshot.settings)],
        )

    if isinstance(event, (LookupResolved, LookupFailed)):
        if state is not ScannerState.PROCESSING or snapshot.committing or event.cycle != snapshot.cycle:
            return unchanged
        if isinstance(event, LookupFailed):
            return _enter_cooldown(snapshot, event.message, timings)
        if not event.resolution.accepted:
            return _enter_cooldown(snapshot, event.prompt, timings)
        return Transition(
            replace(
                snapshot,
                state=ScannerState.AWAITING_CONFIRMATION,
                participant=event.participant,
                current_activity=event.current_activity,
                resolution=event.resolution,
                prompt=event.prompt,
                error=None,
            ),
            [PlayCue(Cue.SUCCESS)],
        )

    if isinstance(event, Confirmed):
        if state is not ScannerState.AWAITING_CONFIRMATION:
            return unchanged
        return Transition(
            replace(snapshot, state=ScannerState.PROCESSING),
            [StartCommit(snapshot.cycle, snapshot.participant, snapshot.resolution)],
        )

    if isinstance(event, Cancelled):
        if state is not ScannerState.AWAITING_CONFIRMATION:
            return unchanged
        return _enter_reset(snapshot, timings.reset_delay)

    if isinstance(event, (CommitSucceeded, CommitFailed)):
        if not snapshot.committing or event.cycle != snapshot.cycle:
            return unchanged
        if isinstance(event, CommitFailed):
            return _enter_cooldown(snapshot, event.message, timings)
        return _enter_reset(snapshot, timings.confirm_rearm)

    if isinstance(event, CameraFailed):
        if state not in (ScannerState.ARMED, ScannerState.RESET):
            return unchanged
        return _enter_cooldown(snapshot, event.message, timings)

    if isinstance(event, TimerExpired):
        if event.kind is TimerKind.IDLE and state is ScannerState.ARMED:
            return _enter_reset(snapshot, timings.reset_delay)
        if event.kind is TimerKind.COOLDOWN and state is ScannerState.COOLDOWN:
            return _enter_reset(snapshot, timings.reset_delay)
        if event.kind is TimerKind.REARM and state is ScannerState.RESET:
            return _enter_armed(snapshot, timings)
        return unchanged

    if isinstance(event, ResetRequested):
        if state not in (ScannerState.ARMED, ScannerState.COOLDOWN, ScannerState.RESET):
            return unchanged
        return _enter_reset(snapshot, timings.reset_delay)

    return unchanged


def snapshot_payload(snapshot: ScannerSnapshot) -> dict[str, Any]:
    resolution = snapshot.resolution
    return {
        "type": "state",
        "state": snapshot.state.value,
        "camera": snapshot.camera.value,
        "generation": snapshot.generation,
        "scan_type": snapshot.settings.scan_type,
        "target_activity": to_payload(snapshot.settings.target_activity),
        "participant": to_payload(snapshot.participant),
        "current_activity": to_payload(snapshot.current_activity),
        "log_type": resolution.log_type if resolution else None,
        "prompt": snapshot.prompt,
        "error": snapshot.error,
    }
