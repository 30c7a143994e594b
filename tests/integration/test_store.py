"""
Tests for the async event store against a temporary SQLite database.
"""

from datetime import datetime, timedelta

import pytest

from core import NotFoundError
from core.ids import remote_event_uuid
from schemas import CalendarEventSchema
from tests.conftest import OTHER_OWNER_ID, OWNER_ID, REMOTE_CALENDAR_ID

NOW = datetime(2025, 1, 1, 8, 0)


def _fields(title: str = "Remote meeting") -> dict:
    start = datetime(2025, 1, 3, 15, 0)
    return {
        "title": title,
        "start_time": start,
        "end_time": start + timedelta(hours=1),
        "is_all_day": False,
        "timezone": "UTC",
        "status": "confirmed",
        "attendees": [],
        "metadata_": {"providerEventId": "remote-9"},
    }


async def _insert(database, calendar_id: str, owner_id: str = OWNER_ID, **fields) -> CalendarEventSchema:
    start = datetime(2025, 1, 2, 10, 0)
    values = {
        "id": fields.pop("id", f"evt-{owner_id}-{start.isoformat()}-{fields.get('title', 'x')}"),
        "owner_id": owner_id,
        "calendar_id": calendar_id,
        "title": "Planning",
        "start_time": start,
        "end_time": start + timedelta(minutes=30),
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(fields)
    return await database.insert_event(CalendarEventSchema(**values))


class TestRemoteUpsert:
    async def test_same_remote_id_applied_twice_gives_one_row(self, database, mirrored_calendar):
        first, created_first = await database.apply_remote_event(
            OWNER_ID, "google", mirrored_calendar.id, "remote-9", REMOTE_CALENDAR_ID,
            _fields(), version_at=NOW, synced_at=NOW, remote_updated_at=NOW,
        )
        second, created_second = await database.apply_remote_event(
            OWNER_ID, "google", mirrored_calendar.id, "remote-9", REMOTE_CALENDAR_ID,
            _fields("Renamed"), version_at=NOW + timedelta(hours=1), synced_at=NOW, remote_updated_at=NOW,
        )

        assert created_first is True
        assert created_second is False
        assert first.id == second.id == remote_event_uuid("google", OWNER_ID, "remote-9")
        assert second.title == "Renamed"
        assert second.updated_at == NOW + timedelta(hours=1)
        assert await database.count_events(OWNER_ID) == 1

    async def test_applied_event_is_synced(self, database, mirrored_calendar):
        event, _ = await database.apply_remote_event(
            OWNER_ID, "google", mirrored_calendar.id, "remote-9", REMOTE_CALENDAR_ID,
            _fields(), version_at=NOW, synced_at=NOW, remote_updated_at=NOW,
        )

        state = event.sync_state_for("google")
        assert state.sync_status == "synced"
        assert state.remote_event_id == "remote-9"
        assert state.remote_updated_at == NOW
        assert event.metadata == {"providerEventId": "remote-9"}

        found = await database.get_event_by_remote_id(OWNER_ID, "google", "remote-9")
        assert found.id == event.id
        assert await database.get_event_by_remote_id(OTHER_OWNER_ID, "google", "remote-9") is None


class TestSyncState:
    async def test_remote_id_exposed_only_while_synced(self, database, mirrored_calendar):
        event = await _insert(database, mirrored_calendar.id)

        synced = await database.set_sync_state(OWNER_ID, event.id, "google", "synced", remote_event_id="remote-1")
        assert synced.sync_state_for("google").remote_event_id == "remote-1"

        failed = await database.set_sync_state(
            OWNER_ID, event.id, "google", "error", error="503", count_attempt=True
        )
        state = failed.sync_state_for("google")
        assert state.sync_status == "error"
        assert state.remote_event_id is None
        assert state.push_attempts == 1
        assert state.last_error == "503"
        assert await database.get_last_known_remote_id(OWNER_ID, event.id, "google") == "remote-1"

        again = await database.set_sync_state(OWNER_ID, event.id, "google", "synced", remote_event_id="remote-1")
        state = again.sync_state_for("google")
        assert state.remote_event_id == "remote-1"
        assert state.push_attempts == 0
        assert state.last_error is None

    async def test_synced_requires_remote_id(self, database, mirrored_calendar):
        event = await _insert(database, mirrored_calendar.id)

        with pytest.raises(ValueError):
            await database.set_sync_state(OWNER_ID, event.id, "google", "synced")

    async def test_transient_states_are_not_stored(self, database, mirrored_calendar):
        event = await _insert(database, mirrored_calendar.id)

        with pytest.raises(ValueError):
            await database.set_sync_state(OWNER_ID, event.id, "google", "pushing")

    async def test_pending_pushes(self, database, mirrored_calendar):
        unsynced = await _insert(database, mirrored_calendar.id, id="evt-unsynced")
        done = await _insert(database, mirrored_calendar.id, id="evt-done")
        gone = await _insert(database, mirrored_calendar.id, id="evt-gone", status="cancelled")
        await database.set_sync_state(OWNER_ID, unsynced.id, "google", "unsynced")
        await database.set_sync_state(OWNER_ID, done.id, "google", "synced", remote_event_id="remote-2")
        await database.set_sync_state(OWNER_ID, gone.id, "google", "error", error="boom")

        pending = await database.list_pending_pushes(OWNER_ID, "google")

        assert [e.id for e in pending] == ["evt-unsynced"]


class TestOwnerScoping:
    async def test_other_owner_cannot_read_or_update(self, database, mirrored_calendar):
        event = await _insert(database, mirrored_calendar.id)

        assert await database.get_event(OTHER_OWNER_ID, event.id) is None
        with pytest.raises(NotFoundError):
            await database.update_event(OTHER_OWNER_ID, event.id, {"title": "Hijacked"}, updated_at=NOW)
        assert await database.cancel_events(OTHER_OWNER_ID, [event.id], updated_at=NOW) == []
        assert (await database.get_event(OWNER_ID, event.id)).status == "confirmed"

    async def test_update_rejects_unknown_columns(self, database, mirrored_calendar):
        event = await _insert(database, mirrored_calendar.id)

        with pytest.raises(ValueError):
            await database.update_event(OWNER_ID, event.id, {"owner_id": OTHER_OWNER_ID}, updated_at=NOW)


class TestListing:
    async def test_cancelled_hidden_by_default(self, database, local_calendar):
        await _insert(database, local_calendar.id, id="evt-a")
        await _insert(database, local_calendar.id, id="evt-b", status="cancelled")

        visible, total = await database.list_events(OWNER_ID)
        everything, everything_total = await database.list_events(OWNER_ID, status="all")
        cancelled, _ = await database.list_events(OWNER_ID, status="cancelled")

        assert [e.id for e in visible] == ["evt-a"] and total == 1
        assert everything_total == 2 and len(everything) == 2
        assert [e.id for e in cancelled] == ["evt-b"]

    async def test_window_and_pagination(self, database, local_calendar):
        for day in range(1, 6):
            start = datetime(2025, 1, day, 9, 0)
            await _insert(database, local_calendar.id, id=f"evt-{day}", start_time=start, end_time=start + timedelta(hours=1))

        page, total = await database.list_events(
            OWNER_ID, start=datetime(2025, 1, 2), end=datetime(2025, 1, 4, 23, 59), limit=2, offset=1
        )

        assert total == 3
        assert [e.id for e in page] == ["evt-3", "evt-4"]


class TestInstances:
    async def test_upsert_is_idempotent_and_keeps_cancellations(self, database, local_calendar):
        master = await _insert(
            database, local_calendar.id, id="master-1", is_recurring=True, recurrence_rule="FREQ=DAILY;COUNT=3"
        )
        instances = [
            master.model_copy(update={
                "id": f"inst-{i}",
                "is_recurring": False,
                "recurrence_rule": None,
                "parent_event_id": master.id,
                "occurrence_index": i,
                "start_time": master.start_time + timedelta(days=i),
                "end_time": master.end_time + timedelta(days=i),
            })
            for i in range(3)
        ]

        assert await database.upsert_instances(instances) == (3, 0)
        assert await database.upsert_instances(instances) == (0, 0)

        await database.cancel_events(OWNER_ID, ["inst-1"], updated_at=NOW)
        await database.upsert_instances(instances)

        assert (await database.get_event(OWNER_ID, "inst-1")).status == "cancelled"
        assert await database.count_instances(OWNER_ID, master.id) == 3

    async def test_cancel_future_instances_keeps_listed_ids(self, database, local_calendar):
        master = await _insert(database, local_calendar.id, id="master-2", is_recurring=True, recurrence_rule="FREQ=DAILY")
        instances = [
            master.model_copy(update={
                "id": f"future-{i}",
                "is_recurring": False,
                "recurrence_rule": None,
                "parent_event_id": master.id,
                "occurrence_index": i,
                "start_time": master.start_time + timedelta(days=i),
                "end_time": master.end_time + timedelta(days=i),
            })
            for i in range(4)
        ]
        await database.upsert_instances(instances)

        cancelled = await database.cancel_future_instances(
            OWNER_ID, master.id, master.start_time + timedelta(days=1), keep_ids=["future-2"], updated_at=NOW
        )

        assert cancelled == 2
        statuses = {i.id: (await database.get_event(OWNER_ID, i.id)).status for i in instances}
        assert statuses == {
            "future-0": "confirmed",
            "future-1": "cancelled",
            "future-2": "confirmed",
            "future-3": "cancelled",
        }


class TestAccounts:
    async def test_due_for_sync(self, database, account):
        assert [a.id for a in await database.get_accounts_due_for_sync(NOW, 10)] == [account.id]

        await database.mark_account_synced(account.id, NOW)

        assert await database.get_accounts_due_for_sync(NOW - timedelta(minutes=30), 10) == []
        assert [a.id for a in await database.get_accounts_due_for_sync(NOW + timedelta(minutes=1), 10)] == [account.id]

    async def test_lookup_by_grant(self, database, account):
        assert (await database.get_account_by_grant("grant-1")).id == account.id
        assert await database.get_account_by_grant("grant-unknown") is None
