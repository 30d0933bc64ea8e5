"""
Data-access seam for the scan workflow.

`ParticipantStore` is the whole contract the scan logic and the scanner
controller rely on. `SqliteParticipantStore` backs it with `database.db`,
running the blocking sqlite calls in the Starlette thread pool.
"""

import logging
import sqlite3
from typing import Protocol

from starlette.concurrency import run_in_threadpool

from backend.models import Activity, ActivityLog, NewActivityLog, Participant
from database import db

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A store operation was rejected or could not be completed."""


class LocationConflictError(StoreError):
    """The participant moved between the decision read and the location write."""


class ParticipantStore(Protocol):
    async def list_activities_for_event(self, event_id: int) -> list[Activity]: ...

    async def find_participant_by_code(self, qr_code: str, event_id: int) -> Participant | None: ...

    async def get_current_activity(self, participant_id: int) -> Activity | None: ...

    async def append_activity_log(self, entry: NewActivityLog) -> ActivityLog: ...

    async def set_participant_location(
        self,
        event_id: int,
        participant_id: int,
        activity_id: int | None,
        *,
        expected_activity_id: int | None = None,
        check_expected: bool = False,
    ) -> None: ...


class SqliteParticipantStore:
    async def _call(self, func, *args, **kwargs):
        try:
            return await run_in_threadpool(func, *args, **kwargs)
        except sqlite3.Error as e:
            logger.error("Store call %s failed: %s", func.__name__, e)
            raise StoreError(str(e)) from e

    async def list_activities_for_event(self, event_id: int) -> list[Activity]:
        rows = await self._call(db.get_activities_by_event, event_id)
        activities = [Activity(**r) for r in rows]
        return sorted(activities, key=lambda a: a.name.casefold())

    async def find_participant_by_code(self, qr_code: str, event_id: int) -> Participant | None:
        row = await self._call(db.get_participant_by_qr_code, qr_code, event_id)
        return Participant(**row) if row else None

    async def get_current_activity(self, participant_id: int) -> Activity | None:
        row = await self._call(db.get_participant_current_activity, participant_id)
        return Activity(**row) if row else None

    async def append_activity_log(self, entry: NewActivityLog) -> ActivityLog:
        row = await self._call(
            db.create_activity_log,
            event_id=entry.event_id,
            participant_id=entry.participant_id,
            activity_id=entry.activity_id,
            from_activity_id=entry.from_activity_id,
            leader_id=entry.leader_id,
            log_type=entry.type,
        )
        return ActivityLog(**row)

    async def set_participant_location(
        self,
        event_id: int,
        participant_id: int,
        activity_id: int | None,
        *,
        expected_activity_id: int | None = None,
        check_expected: bool = False,
    ) -> None:
        changed = await self._call(
            db.update_participant_location,
            event_id,
            participant_id,
            activity_id,
            check_expected=check_expected,
            expected_activity_id=expected_activity_id,
        )
        if changed:
            return
        if check_expected:
            raise LocationConflictError(
                f"Participant {participant_id} is no longer at activity {expected_activity_id}."
            )
        raise StoreError(f"Participant {participant_id} not found in event {event_id}.")


def get_store() -> ParticipantStore:
    return SqliteParticipantStore()
