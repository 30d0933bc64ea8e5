import asyncio
from dataclasses import replace
from itertools import count

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from backend.models import Activity, ActivityLog, NewActivityLog, Participant
from backend.store import LocationConflictError, StoreError


@pytest.fixture()
def client(tmp_path, monkeypatch):
    test_db = tmp_path / "scantrack_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()

    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def auth_token(client):
    res = client.post(
        "/auth/login",
        json={
            "username": config.ADMIN_USERNAME,
            "password": config.ADMIN_PASSWORD,
        },
    )
    assert res.status_code == 200
    return res.json()["access_token"]


@pytest.fixture()
def auth_headers(auth_token):
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture()
def camp(client):
    event_id = db.add_event("Summer Camp")
    return {
        "event_id": event_id,
        "music": db.add_activity(event_id, "Music"),
        "art": db.add_activity(event_id, "Art"),
        "archery": db.add_activity(event_id, "Archery"),
        "pat": db.add_participant(event_id, "Pat", "QR-PAT"),
        "sam": db.add_participant(event_id, "Sam", "QR-SAM"),
    }


class FakeStore:
    """In-memory ParticipantStore with call recording and failure injection."""

    def __init__(self, event_id: int = 1):
        self.event_id = event_id
        self.activities: dict[int, Activity] = {}
        self.participants: dict[int, Participant] = {}
        self.logs: list[ActivityLog] = []
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        self.lookup_gate: asyncio.Event | None = None
        self._ids = count(1)

    def add_activity(self, name: str) -> Activity:
        activity = Activity(id=next(self._ids), event_id=self.event_id, name=name)
        self.activities[activity.id] = activity
        return activity

    def add_participant(self, name: str, qr_code: str, current: Activity | None = None) -> Participant:
        participant = Participant(
            id=next(self._ids),
            event_id=self.event_id,
            name=name,
            qr_code=qr_code,
            current_activity_id=current.id if current else None,
        )
        self.participants[participant.id] = participant
        return participant

    def location_of(self, participant: Participant) -> int | None:
        return self.participants[participant.id].current_activity_id

    def _record(self, op: str) -> None:
        self.calls.append(op)
        if op in self.fail_on:
            raise StoreError(f"{op} failed")

    async def list_activities_for_event(self, event_id: int) -> list[Activity]:
        self._record("list_activities_for_event")
        return sorted(
            (a for a in self.activities.values() if a.event_id == event_id),
            key=lambda a: a.name.casefold(),
        )

    async def find_participant_by_code(self, qr_code: str, event_id: int) -> Participant | None:
        self._record("find_participant_by_code")
        if self.lookup_gate is not None:
            await self.lookup_gate.wait()
        for participant in self.participants.values():
            if participant.qr_code == qr_code and participant.event_id == event_id:
                return participant
        return None

    async def get_current_activity(self, participant_id: int) -> Activity | None:
        self._record("get_current_activity")
        current_id = self.participants[participant_id].current_activity_id
        return self.activities.get(current_id) if current_id else None

    async def append_activity_log(self, entry: NewActivityLog) -> ActivityLog:
        self._record("append_activity_log")
        log = ActivityLog(
            id=len(self.logs) + 1,
            event_id=entry.event_id,
            participant_id=entry.participant_id,
            activity_id=entry.activity_id,
            from_activity_id=entry.from_activity_id,
            leader_id=entry.leader_id,
            type=entry.type,
        )
        self.logs.append(log)
        return log

    async def set_participant_location(
        self,
        event_id: int,
        participant_id: int,
        activity_id: int | None,
        *,
        expected_activity_id: int | None = None,
        check_expected: bool = False,
    ) -> None:
        self._record("set_participant_location")
        participant = self.participants[participant_id]
        if check_expected and participant.current_activity_id != expected_activity_id:
            raise LocationConflictError("moved")
        self.participants[participant_id] = replace(participant, current_activity_id=activity_id)


@pytest.fixture()
def fake_store():
    return FakeStore()
