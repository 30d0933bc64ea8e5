import asyncio
import time

import pytest

from backend.scanner.controller import ScannerController
from backend.scanner.decoder import FrameDecodeError
from backend.scanner.machine import (
    CAMERA_ERROR_MESSAGE,
    CameraStatus,
    ScannerState,
    ScannerTimings,
    ScanSettings,
    TimerExpired,
    TimerKind,
)

FAST = ScannerTimings(idle_timeout=5, error_cooldown=0.02, confirm_rearm=0.02, reset_delay=0.01)


class StubDecoder:
    """Treats frame bytes as the decoded QR text."""

    instances: list["StubDecoder"] = []

    def __init__(self):
        self.closed = False
        StubDecoder.instances.append(self)

    def decode_image_bytes(self, data: bytes):
        if data == b"broken":
            raise FrameDecodeError("Invalid image data.")
        return data.decode() or None

    def close(self):
        self.closed = True


async def wait_for(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_controller(store, messages, *, target=None, scan_type="departure", leader_id=7, timings=FAST):
    async def notify(message):
        messages.append(message)

    return ScannerController(
        store,
        event_id=1,
        leader_id=leader_id,
        settings=ScanSettings(scan_type=scan_type, target_activity=target),
        notify=notify,
        timings=timings,
        decoder_factory=StubDecoder,
    )


def states(messages):
    return [m["state"] for m in messages if m["type"] == "state"]


def cues(messages):
    return [m["cue"] for m in messages if m["type"] == "feedback"]


def test_confirmed_departure_moves_participant_and_rearms(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    pat = store.add_participant("Pat", "QR-PAT")
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-PAT")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.AWAITING_CONFIRMATION)
            assert scanner.snapshot.prompt == "Register Pat for Art?"

            await scanner.confirm()
            await wait_for(lambda: scanner.snapshot.state is ScannerState.ARMED and scanner.snapshot.generation == 2)

    asyncio.run(scenario())

    assert store.location_of(pat) == art.id
    assert [log.type for log in store.logs] == ["departure"]
    assert cues(messages) == ["success"]
    assert states(messages)[:4] == ["armed", "processing", "awaiting_confirmation", "processing"]
    assert [m["generation"] for m in messages if m["type"] == "rebuild"] == [1, 2]


def test_confirmed_return_clears_location(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    pat = store.add_participant("Pat", "QR-PAT", current=art)
    messages = []

    async def scenario():
        async with make_controller(store, messages, scan_type="return") as scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-PAT")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.AWAITING_CONFIRMATION)
            assert scanner.snapshot.prompt == "Confirm Pat is returning to camp?"
            await scanner.confirm()
            await wait_for(lambda: scanner.snapshot.generation == 2)

    asyncio.run(scenario())

    assert store.location_of(pat) is None
    assert store.logs[0].type == "return"
    assert store.logs[0].activity_id == art.id


def test_duplicate_departure_cools_down_then_rearms(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    store.add_participant("Pat", "QR-PAT", current=art)
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-PAT")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.COOLDOWN)
            assert scanner.snapshot.error == "Pat is already at Art."
            await wait_for(lambda: scanner.snapshot.state is ScannerState.ARMED and scanner.snapshot.generation == 2)

    asyncio.run(scenario())

    assert store.logs == []
    assert cues(messages) == ["error"]


def test_unknown_code_reports_not_found(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-NOBODY")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.COOLDOWN)
            assert scanner.snapshot.error == "Invalid QR code. Participant not found."

    asyncio.run(scenario())


def test_lookup_store_failure_uses_generic_message(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    store.add_participant("Pat", "QR-PAT")
    store.fail_on.add("find_participant_by_code")
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-PAT")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.COOLDOWN)
            assert scanner.snapshot.error == "Error processing QR code."

    asyncio.run(scenario())


def test_decodes_during_lookup_are_ignored(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    pat = store.add_participant("Pat", "QR-PAT")
    store.add_participant("Sam", "QR-SAM")
    messages = []

    async def scenario():
        store.lookup_gate = asyncio.Event()
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-PAT")
            await scanner.code_decoded("QR-SAM")
            await scanner.code_decoded("QR-PAT")
            store.lookup_gate.set()
            await wait_for(lambda: scanner.snapshot.state is ScannerState.AWAITING_CONFIRMATION)
            assert scanner.snapshot.participant == pat

    asyncio.run(scenario())

    assert store.calls.count("find_participant_by_code") == 1


def test_double_confirm_writes_one_log(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    store.add_participant("Pat", "QR-PAT")
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-PAT")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.AWAITING_CONFIRMATION)
            await scanner.confirm()
            await scanner.confirm()
            await wait_for(lambda: scanner.snapshot.generation == 2)

    asyncio.run(scenario())

    assert len(store.logs) == 1


def test_cancel_discards_pending_scan(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    pat = store.add_participant("Pat", "QR-PAT")
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-PAT")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.AWAITING_CONFIRMATION)
            await scanner.cancel()
            assert scanner.snapshot.state is ScannerState.RESET
            assert scanner.pending_timers() == {TimerKind.REARM}
            await scanner.cancel()
            await wait_for(lambda: scanner.snapshot.state is ScannerState.ARMED)
            assert scanner.snapshot.participant is None

    asyncio.run(scenario())

    assert store.logs == []
    assert store.location_of(pat) is None
    assert "append_activity_log" not in store.calls


def test_commit_failure_reports_and_recovers(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    pat = store.add_participant("Pat", "QR-PAT")
    store.fail_on.add("append_activity_log")
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-PAT")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.AWAITING_CONFIRMATION)
            await scanner.confirm()
            await wait_for(lambda: scanner.snapshot.state is ScannerState.COOLDOWN)
            assert scanner.snapshot.error == "Error updating participant activity."
            await wait_for(lambda: scanner.snapshot.state is ScannerState.ARMED and scanner.snapshot.generation == 2)

    asyncio.run(scenario())

    assert store.location_of(pat) is None
    assert cues(messages) == ["success", "error"]


def test_missing_leader_cannot_commit(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    store.add_participant("Pat", "QR-PAT")
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art, leader_id=None) as scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-PAT")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.AWAITING_CONFIRMATION)
            await scanner.confirm()
            await wait_for(lambda: scanner.snapshot.state is ScannerState.COOLDOWN)
            assert scanner.snapshot.error == "Error: unable to identify scanner."

    asyncio.run(scenario())

    assert store.logs == []
    assert "append_activity_log" not in store.calls


def test_idle_timeout_rebuilds_surface(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    messages = []
    timings = ScannerTimings(idle_timeout=0.03, error_cooldown=0.02, confirm_rearm=0.02, reset_delay=0.01)

    async def scenario():
        StubDecoder.instances.clear()
        async with make_controller(store, messages, target=art, timings=timings) as scanner:
            await scanner.camera_probed(True)
            await wait_for(lambda: scanner.snapshot.generation >= 3)
            assert scanner.snapshot.camera is CameraStatus.GRANTED

    asyncio.run(scenario())

    assert len(StubDecoder.instances) >= 3
    assert all(d.closed for d in StubDecoder.instances)
    assert store.calls == []


def test_camera_denied_stays_inert(fake_store):
    store = fake_store
    store.add_participant("Pat", "QR-PAT")
    messages = []

    async def scenario():
        async with make_controller(store, messages, scan_type="return") as scanner:
            await scanner.camera_probed(False)
            await scanner.code_decoded("QR-PAT")
            await scanner.reset()
            await asyncio.sleep(0.05)
            assert scanner.snapshot.camera is CameraStatus.DENIED
            assert scanner.pending_timers() == set()

    asyncio.run(scenario())

    assert store.calls == []
    assert not any(m["type"] == "rebuild" for m in messages)


def test_close_drops_in_flight_lookup_and_timers(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    store.add_participant("Pat", "QR-PAT")
    messages = []

    async def scenario():
        store.lookup_gate = asyncio.Event()
        scanner = make_controller(store, messages, target=art)
        await scanner.camera_probed(True)
        await scanner.code_decoded("QR-PAT")
        await wait_for(lambda: "find_participant_by_code" in store.calls)

        await scanner.close()
        store.lookup_gate.set()
        await asyncio.sleep(0.05)

        assert scanner.closed
        assert scanner.pending_timers() == set()
        assert scanner.snapshot.state is ScannerState.PROCESSING

        sent = len(messages)
        await scanner.code_decoded("QR-PAT")
        assert len(messages) == sent

    asyncio.run(scenario())

    assert "awaiting_confirmation" not in states(messages)


def test_frames_are_decoded_only_while_armed(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    store.add_participant("Pat", "QR-PAT")
    store.add_participant("Sam", "QR-SAM")
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.frame_received(b"QR-PAT")
            assert store.calls == []

            await scanner.camera_probed(True)
            await scanner.frame_received(b"")
            assert scanner.snapshot.state is ScannerState.ARMED

            await scanner.frame_received(b"QR-PAT")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.AWAITING_CONFIRMATION)
            await scanner.frame_received(b"QR-SAM")
            assert scanner.snapshot.participant.name == "Pat"

    asyncio.run(scenario())

    assert store.calls.count("find_participant_by_code") == 1


def test_unreadable_frame_is_a_camera_error(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.camera_probed(True)
            await scanner.frame_received(b"broken")
            assert scanner.snapshot.state is ScannerState.COOLDOWN
            assert scanner.snapshot.error == CAMERA_ERROR_MESSAGE
            await wait_for(lambda: scanner.snapshot.state is ScannerState.ARMED)

    asyncio.run(scenario())


def test_notify_failures_do_not_break_the_session(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    store.add_participant("Pat", "QR-PAT")

    async def notify(_message):
        raise RuntimeError("socket gone")

    async def scenario():
        scanner = ScannerController(
            store,
            event_id=1,
            leader_id=7,
            settings=ScanSettings(scan_type="departure", target_activity=art),
            notify=notify,
            timings=FAST,
            decoder_factory=StubDecoder,
        )
        async with scanner:
            await scanner.camera_probed(True)
            await scanner.code_decoded("QR-PAT")
            await wait_for(lambda: scanner.snapshot.state is ScannerState.AWAITING_CONFIRMATION)

    asyncio.run(scenario())


class SlowDecoder(StubDecoder):
    """Blocks in the thread pool long enough for the scanner to move on."""

    honor_close = True

    def decode_image_bytes(self, data: bytes):
        time.sleep(0.2)
        if self.closed and self.honor_close:
            raise FrameDecodeError("Decode surface is closed.")
        return data.decode() or None


class SlowDecoderIgnoringClose(SlowDecoder):
    honor_close = False


@pytest.mark.parametrize("decoder", [SlowDecoder, SlowDecoderIgnoringClose])
def test_reset_during_slow_decode_drops_the_frame(fake_store, decoder):
    store = fake_store
    art = store.add_activity("Art")
    store.add_participant("Pat", "QR-PAT")
    messages = []

    async def notify(message):
        messages.append(message)

    async def scenario():
        scanner = ScannerController(
            store,
            event_id=1,
            leader_id=7,
            settings=ScanSettings(scan_type="departure", target_activity=art),
            notify=notify,
            timings=FAST,
            decoder_factory=decoder,
        )
        async with scanner:
            await scanner.camera_probed(True)
            frame = asyncio.create_task(scanner.frame_received(b"QR-PAT"))
            await asyncio.sleep(0.05)
            await scanner.reset()
            await frame
            await wait_for(lambda: scanner.snapshot.state is ScannerState.ARMED)
            assert scanner.snapshot.error is None
            assert scanner.snapshot.generation == 2

    asyncio.run(scenario())

    assert "cooldown" not in states(messages)
    assert cues(messages) == []
    assert store.calls == []


def test_early_rearm_leaves_no_rearm_timer(fake_store):
    store = fake_store
    art = store.add_activity("Art")
    messages = []

    async def scenario():
        async with make_controller(store, messages, target=art) as scanner:
            await scanner.camera_probed(True)
            await scanner.reset()
            assert scanner.pending_timers() == {TimerKind.REARM}
            await scanner.dispatch(TimerExpired(TimerKind.REARM))
            assert scanner.snapshot.state is ScannerState.ARMED
            assert scanner.pending_timers() == {TimerKind.IDLE}

    asyncio.run(scenario())
