import asyncio
import logging
from typing import Any, Awaitable, Callable

from starlette.concurrency import run_in_threadpool

from backend.scanner.decoder import FrameDecodeError, QrDecoder
from backend.scanner.machine import (
    CameraFailed,
    CameraProbed,
    Cancelled,
    CancelTimer,
    CodeDecoded,
    CommitFailed,
    CommitSucceeded,
    Confirmed,
    LookupFailed,
    LookupResolved,
    PlayCue,
    RebuildSurface,
    ReleaseSurface,
    ResetRequested,
    ScannerEffect,
    ScannerEvent,
    ScannerSnapshot,
    ScannerState,
    ScannerTimings,
    ScanSettings,
    SettingsChanged,
    StartCommit,
    StartLookup,
    StartTimer,
    TimerExpired,
    TimerKind,
    snapshot_payload,
    transition,
)
from backend.services.scan_resolution import ScanError, commit_scan, preview_scan
from backend.store import ParticipantStore

logger = logging.getLogger(__name__)

Notify = Callable[[dict[str, Any]], Awaitable[None]]


class ScannerController:
    """
    Runs one leader's scanner session.

    Owns the decode surface, the single-shot timers and any in-flight
    lookup/commit task. All of them are released by `close()`, which also
    runs when the controller is used as an async context manager.
    """

    def __init__(
        self,
        store: ParticipantStore,
        *,
        event_id: int,
        leader_id: int | None,
        settings: ScanSettings,
        notify: Notify,
        timings: ScannerTimings | None = None,
        decoder_factory: Callable[[], QrDecoder] = QrDecoder,
    ):
        self.store = store
        self.event_id = event_id
        self.leader_id = leader_id
        self.timings = timings or ScannerTimings()
        self._notify = notify
        self._decoder_factory = decoder_factory
        self._snapshot = ScannerSnapshot(settings=settings)
        self._timers: dict[TimerKind, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._surface: QrDecoder | None = None
        self._closed = False

    @property
    def snapshot(self) -> ScannerSnapshot:
        return self._snapshot

    @property
    def closed(self) -> bool:
        return self._closed

    def pending_timers(self) -> set[TimerKind]:
        return set(self._timers)

    async def __aenter__(self) -> "ScannerController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -----------------------------
    # Inputs
    # -----------------------------
    async def camera_probed(self, granted: bool) -> None:
        if not granted:
            logger.warning("Camera permission denied for event %s scanner", self.event_id)
        await self.dispatch(CameraProbed(granted))

    async def code_decoded(self, text: str) -> None:
        await self.dispatch(CodeDecoded(text))

    async def frame_received(self, data: bytes) -> None:
        # Frames are only decoded while armed.
        surface = self._surface
        if self._snapshot.state is not ScannerState.ARMED or surface is None:
            return
        try:
            text = await run_in_threadpool(surface.decode_image_bytes, data)
        except FrameDecodeError as e:
            if self._surface_stale(surface):
                logger.debug("Dropping decode error from released surface: %s", e)
                return
            logger.warning("Frame decode failed: %s", e)
            await self.dispatch(CameraFailed())
            return
        if self._surface_stale(surface):
            logger.debug("Dropping frame decoded on released surface")
            return
        await self.dispatch(CodeDecoded(text or ""))

    def _surface_stale(self, surface: QrDecoder) -> bool:
        return (
            self._closed
            or surface is not self._surface
            or self._snapshot.state is not ScannerState.ARMED
        )

    async def camera_error(self, message: str | None = None) -> None:
        logger.error("Camera error reported by client: %s", message or "unknown")
        await self.dispatch(CameraFailed())

    async def confirm(self) -> None:
        await self.dispatch(Confirmed())

    async def cancel(self) -> None:
        await self.dispatch(Cancelled())

    async def reset(self) -> None:
        await self.dispatch(ResetRequested())

    async def change_settings(self, settings: ScanSettings) -> None:
        await self.dispatch(SettingsChanged(settings))

    # -----------------------------
    # Machine driver
    # -----------------------------
    async def dispatch(self, event: ScannerEvent) -> None:
        if self._closed:
            return

        previous = self._snapshot
        result = transition(previous, event, self.timings)
        self._snapshot = result.snapshot
        if previous.state is not result.snapshot.state:
            logger.debug(
                "Scanner %s -> %s on %s",
                previous.state.value,
                result.snapshot.state.value,
                type(event).__name__,
            )

        messages: list[dict[str, Any]] = []
        for effect in result.effects:
            message = self._apply(effect)
            if message:
                messages.append(message)

        if result.snapshot != previous:
            messages.insert(0, snapshot_payload(result.snapshot))

        for message in messages:
            await self._send(message)

    def _apply(self, effect: ScannerEffect) -> dict[str, Any] | None:
        if isinstance(effect, StartTimer):
            self._start_timer(effect.kind, effect.delay)
        elif isinstance(effect, CancelTimer):
            self._cancel_timer(effect.kind)
        elif isinstance(effect, StartLookup):
            self._spawn(self._lookup(effect))
        elif isinstance(effect, StartCommit):
            self._spawn(self._commit(effect))
        elif isinstance(effect, PlayCue):
            return {"type": "feedback", "cue": effect.cue.value}
        elif isinstance(effect, RebuildSurface):
            self._release_surface()
            self._surface = self._decoder_factory()
            return {"type": "rebuild", "generation": effect.generation}
        elif isinstance(effect, ReleaseSurface):
            self._release_surface()
        return None

    async def _send(self, message: dict[str, Any]) -> None:
        try:
            await self._notify(message)
        except Exception as e:
            logger.warning("Dropping scanner message %s: %s", message.get("type"), e)

    # -----------------------------
    # Timers and tasks
    # -----------------------------
    def _start_timer(self, kind: TimerKind, delay: float) -> None:
        self._cancel_timer(kind)
        loop = asyncio.get_running_loop()
        self._timers[kind] = loop.call_later(delay, self._on_timer, kind)

    def _cancel_timer(self, kind: TimerKind) -> None:
        handle = self._timers.pop(kind, None)
        if handle is not None:
            handle.cancel()

    def _on_timer(self, kind: TimerKind) -> None:
        self._timers.pop(kind, None)
        if self._closed:
            return
        if kind is TimerKind.IDLE:
            logger.info("Idle timeout reached, resetting scanner")
        self._spawn(self.dispatch(TimerExpired(kind)))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _lookup(self, effect: StartLookup) -> None:
        settings = effect.settings
        logger.info("Scanned QR text: %s", effect.code)
        try:
            preview = await preview_scan(
                self.store,
                event_id=self.event_id,
                qr_code=effect.code,
                scan_type=settings.scan_type,
                target_activity=settings.target_activity,
            )
            event: ScannerEvent = LookupResolved(
                cycle=effect.cycle,
                participant=preview.participant,
                current_activity=preview.current_activity,
                resolution=preview.resolution,
                prompt=preview.prompt,
            )
        except ScanError as e:
            event = LookupFailed(effect.cycle, e.message)
        except Exception:
            logger.exception("Error processing QR code %s", effect.code)
            event = LookupFailed(effect.cycle, "Error processing QR code.")

        if self._closed:
            logger.debug("Ignoring lookup result after scanner closed")
            return
        await self.dispatch(event)

    async def _commit(self, effect: StartCommit) -> None:
        resolution = effect.resolution
        try:
            result = await commit_scan(
                self.store,
                event_id=self.event_id,
                participant=effect.participant,
                scan_type=resolution.scan_type,
                target_activity=resolution.target_activity,
                leader_id=self.leader_id,
            )
            event: ScannerEvent = CommitSucceeded(effect.cycle, result.log)
        except ScanError as e:
            logger.warning("Scan commit failed for participant %s: %s", effect.participant.id, e.message)
            event = CommitFailed(effect.cycle, e.message)
        except Exception:
            logger.exception("Error updating participant %s activity", effect.participant.id)
            event = CommitFailed(effect.cycle, "Error updating participant activity.")

        if self._closed:
            logger.debug("Ignoring commit result after scanner closed")
            return
        await self.dispatch(event)

    # -----------------------------
    # Teardown
    # -----------------------------
    def _release_surface(self) -> None:
        if self._surface is not None:
            self._surface.close()
            self._surface = None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for kind in list(self._timers):
            self._cancel_timer(kind)

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        self._release_surface()
        logger.info("Scanner for event %s closed", self.event_id)
