"""Tests for the pump history merge cycle, retention window and treatments."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from factories import bolus_event, marker_event, minutes_ago, temp_basal_event
from pump_history.config import settings
from pump_history.schemas.pump_history import (
    HistoryEvent,
    HistoryEventType,
    PumpEventKind,
    Treatment,
    TreatmentEventType,
)
from pump_history.services.broadcaster import Topic
from pump_history.services.file_storage import FileStorageError
from pump_history.services.pump_history import PumpHistoryStorage


class TestStorePumpEvents:
    """Tests for appending normalized pump events."""

    async def test_bolus_scenario(self, history_storage):
        t = minutes_ago(10)
        await history_storage.store_pump_events([bolus_event(t, units="2.5")])

        recent = await history_storage.recent()
        assert len(recent) == 1
        assert recent[0].type == HistoryEventType.BOLUS
        assert recent[0].amount == Decimal("2.5")
        assert recent[0].duration == 0
        assert recent[0].timestamp == t

    async def test_temp_basal_scenario(self, history_storage):
        t = minutes_ago(10)
        await history_storage.store_pump_events([temp_basal_event(t, rate="1.2", duration_minutes=30)])

        recent = await history_storage.recent()
        assert len(recent) == 2
        by_type = {e.type: e for e in recent}
        assert by_type[HistoryEventType.TEMP_BASAL_DURATION].duration_min == 30
        assert by_type[HistoryEventType.TEMP_BASAL].rate == Decimal("1.2")

        treatments = await history_storage.pending_treatments()
        assert len(treatments) == 1
        assert treatments[0].event_type == TreatmentEventType.TEMP_BASAL
        assert treatments[0].rate == Decimal("1.2")
        assert treatments[0].duration == 30
        assert treatments[0].created_at == t

    async def test_returns_committed_history(self, history_storage):
        returned = await history_storage.store_pump_events([bolus_event(minutes_ago(5))])
        assert returned == await history_storage.recent()

    async def test_unmapped_events_store_nothing(self, history_storage):
        await history_storage.store_pump_events(
            [marker_event(PumpEventKind.ALARM, minutes_ago(5))]
        )
        assert await history_storage.recent() == []

    async def test_recent_is_empty_before_any_write(self, history_storage):
        assert await history_storage.recent() == []


class TestDeduplication:
    """Tests for id-based, first-write-wins deduplication."""

    async def test_same_raw_event_twice_is_idempotent(self, history_storage):
        event = temp_basal_event(minutes_ago(15))

        await history_storage.store_pump_events([event])
        once = await history_storage.recent()
        await history_storage.store_pump_events([event])
        twice = await history_storage.recent()

        assert once == twice
        assert len(twice) == 2

    async def test_duplicates_within_one_batch_collapse(self, history_storage):
        event = bolus_event(minutes_ago(15))
        await history_storage.store_pump_events([event, event])
        assert len(await history_storage.recent()) == 1

    async def test_first_write_wins_on_id_collision(self, history_storage):
        t = minutes_ago(15)
        await history_storage.store_pump_events([bolus_event(t, units="1.0", raw=b"same")])
        await history_storage.store_pump_events([bolus_event(t, units="9.0", raw=b"same")])

        recent = await history_storage.recent()
        assert len(recent) == 1
        assert recent[0].amount == Decimal("1.0")


class TestRetentionWindow:
    """Tests for the rolling 24 hour window."""

    async def test_old_events_are_not_retained(self, history_storage):
        await history_storage.store_pump_events(
            [bolus_event(minutes_ago(25 * 60)), bolus_event(minutes_ago(60))]
        )
        recent = await history_storage.recent()
        assert len(recent) == 1
        assert recent[0].timestamp > datetime.now(UTC) - timedelta(hours=24)

    async def test_stored_events_are_evicted_on_later_merge(self, file_storage, broadcaster):
        now = datetime.now(UTC)
        clock = MagicMock(return_value=now)
        storage = PumpHistoryStorage(file_storage, broadcaster, clock=clock)

        await storage.store_pump_events([bolus_event(now - timedelta(hours=23))])
        assert len(await storage.recent()) == 1

        clock.return_value = now + timedelta(hours=2)
        await storage.store_pump_events([])
        assert await storage.recent() == []

    async def test_custom_retention(self, file_storage, broadcaster):
        storage = PumpHistoryStorage(file_storage, broadcaster, retention=timedelta(hours=1))
        await storage.store_pump_events(
            [bolus_event(minutes_ago(90)), bolus_event(minutes_ago(30))]
        )
        assert len(await storage.recent()) == 1

    async def test_default_retention_from_settings(self, history_storage):
        assert settings.history_retention_hours == 24
        await history_storage.store_pump_events(
            [bolus_event(minutes_ago(23 * 60 + 50)), bolus_event(minutes_ago(24 * 60 + 10))]
        )
        assert len(await history_storage.recent()) == 1

    async def test_evicted_rate_leaves_unpaired_duration(self, file_storage, broadcaster):
        now = datetime.now(UTC)
        t = now - timedelta(hours=1)
        storage = PumpHistoryStorage(file_storage, broadcaster, clock=lambda: now)
        await storage.store_pump_events([temp_basal_event(t)])

        # Simulate a history where only the duration half survived.
        history = await storage.recent()
        durations = [e for e in history if e.type == HistoryEventType.TEMP_BASAL_DURATION]
        await file_storage.save(settings.pump_history_key, durations)

        assert await storage.pending_treatments() == []


class TestOrdering:
    """Tests for the canonical newest-first ordering."""

    async def test_recent_sorted_newest_first(self, history_storage):
        await history_storage.store_pump_events(
            [
                bolus_event(minutes_ago(120)),
                temp_basal_event(minutes_ago(5)),
                marker_event(PumpEventKind.SUSPEND, minutes_ago(60)),
            ]
        )
        await history_storage.store_pump_events([bolus_event(minutes_ago(30))])

        timestamps = [e.timestamp for e in await history_storage.recent()]
        assert timestamps == sorted(timestamps, reverse=True)

    async def test_rate_precedes_duration_in_stored_order(self, history_storage):
        await history_storage.store_pump_events([temp_basal_event(minutes_ago(5))])
        assert [e.type for e in await history_storage.recent()] == [
            HistoryEventType.TEMP_BASAL,
            HistoryEventType.TEMP_BASAL_DURATION,
        ]

    async def test_cancel_and_new_temp_at_same_instant(self, history_storage):
        t = minutes_ago(5)
        await history_storage.store_pump_events(
            [
                temp_basal_event(t, rate="0", duration_minutes=0, raw=b"cancel"),
                temp_basal_event(t, rate="1.5", duration_minutes=30, raw=b"set"),
            ]
        )

        history = await history_storage.recent()
        for rate, duration in zip(history[::2], history[1::2]):
            assert rate.type == HistoryEventType.TEMP_BASAL
            assert duration.id == rate.id.removeprefix("_")

        pending = await history_storage.pending_treatments()
        assert sorted((p.rate, p.duration) for p in pending) == [
            (Decimal("0"), 0),
            (Decimal("1.5"), 30),
        ]


class TestJournalCarbs:
    """Tests for journaled carbohydrate entries."""

    async def test_two_entries_in_quick_succession(self, history_storage):
        await history_storage.store_journal_carbs(45)
        await history_storage.store_journal_carbs(45)

        recent = await history_storage.recent()
        assert len(recent) == 2
        assert all(e.type == HistoryEventType.JOURNAL_CARBS for e in recent)
        assert recent[0].id != recent[1].id

        treatments = await history_storage.pending_treatments()
        assert len(treatments) == 2
        assert all(t.event_type == TreatmentEventType.CARB_CORRECTION for t in treatments)
        assert all(t.carbs == 45 for t in treatments)

    async def test_timestamp_comes_from_clock(self, file_storage, broadcaster):
        now = datetime.now(UTC) - timedelta(minutes=3)
        storage = PumpHistoryStorage(file_storage, broadcaster, clock=lambda: now)
        await storage.store_journal_carbs(20)
        assert (await storage.recent())[0].timestamp == now


class TestPendingTreatments:
    """Tests for treatments that still need uploading."""

    async def test_empty_history_does_not_read_snapshot(self, broadcaster):
        file_storage = MagicMock()
        file_storage.retrieve = AsyncMock(return_value=None)
        storage = PumpHistoryStorage(file_storage, broadcaster)

        assert await storage.pending_treatments() == []
        file_storage.retrieve.assert_awaited_once()
        assert file_storage.retrieve.await_args.args[0] == settings.pump_history_key

    async def test_uploaded_treatments_are_excluded(self, history_storage, file_storage):
        await history_storage.store_pump_events(
            [bolus_event(minutes_ago(30)), temp_basal_event(minutes_ago(10))]
        )
        all_pending = await history_storage.pending_treatments()
        assert len(all_pending) == 2

        bolus = next(t for t in all_pending if t.event_type == TreatmentEventType.BOLUS)
        await file_storage.save(settings.uploaded_treatments_key, [bolus])

        pending = await history_storage.pending_treatments()
        assert len(pending) == 1
        assert pending[0].event_type == TreatmentEventType.TEMP_BASAL

    async def test_everything_uploaded(self, history_storage, file_storage):
        await history_storage.store_pump_events(
            [bolus_event(minutes_ago(30)), temp_basal_event(minutes_ago(10))]
        )
        await history_storage.store_journal_carbs(30)
        pending = await history_storage.pending_treatments()

        await file_storage.save(settings.uploaded_treatments_key, list(reversed(pending)))
        assert await history_storage.pending_treatments() == []

    async def test_pending_sorted_newest_first(self, history_storage):
        await history_storage.store_pump_events(
            [
                bolus_event(minutes_ago(90)),
                temp_basal_event(minutes_ago(45)),
                bolus_event(minutes_ago(10)),
            ]
        )
        created = [t.created_at for t in await history_storage.pending_treatments()]
        assert created == sorted(created, reverse=True)

    async def test_entered_by_override(self, file_storage, broadcaster):
        storage = PumpHistoryStorage(file_storage, broadcaster, entered_by="rig-01")
        await storage.store_pump_events([bolus_event(minutes_ago(5))])
        assert (await storage.pending_treatments())[0].entered_by == "rig-01"


class TestNotifications:
    """Tests for post-commit observer notification."""

    async def test_observers_receive_committed_history(self, history_storage, broadcaster):
        received: list[list[HistoryEvent]] = []
        broadcaster.register(Topic.HISTORY_UPDATED, received.append)

        await history_storage.store_pump_events([temp_basal_event(minutes_ago(5))])
        await broadcaster.drain()

        assert len(received) == 1
        assert received[0] == await history_storage.recent()

    async def test_observer_sees_persisted_state(self, history_storage, broadcaster):
        seen: list[int] = []

        async def observer(events):
            seen.append(len(await history_storage.recent()))

        broadcaster.register(Topic.HISTORY_UPDATED, observer)
        await history_storage.store_pump_events([bolus_event(minutes_ago(5))])
        await broadcaster.drain()

        assert seen == [1]

    async def test_notify_does_not_wait_for_observers(self, history_storage, broadcaster):
        release = asyncio.Event()

        async def slow_observer(events):
            await release.wait()

        broadcaster.register(Topic.HISTORY_UPDATED, slow_observer)
        await asyncio.wait_for(
            history_storage.store_pump_events([bolus_event(minutes_ago(5))]), timeout=5
        )
        release.set()
        await broadcaster.drain()

    async def test_failed_merge_does_not_notify(self, broadcaster):
        failing_storage = MagicMock()
        failing_storage.transaction = MagicMock(side_effect=FileStorageError("disk gone"))
        received = []
        broadcaster.register(Topic.HISTORY_UPDATED, received.append)
        storage = PumpHistoryStorage(failing_storage, broadcaster)

        with pytest.raises(FileStorageError):
            await storage.store_pump_events([bolus_event(minutes_ago(5))])
        await broadcaster.drain()

        assert received == []


class TestConcurrency:
    """Tests for serialized merge cycles under concurrent callers."""

    async def test_concurrent_appends_lose_nothing(self, history_storage):
        events = [bolus_event(minutes_ago(i + 1), units=str(i + 1)) for i in range(10)]

        await asyncio.gather(
            *(history_storage.store_pump_events([event]) for event in events),
            history_storage.store_journal_carbs(12),
        )

        recent = await history_storage.recent()
        assert len(recent) == 11
        assert len({e.id for e in recent}) == 11

    async def test_notifications_follow_submission_order(self, history_storage, broadcaster):
        sizes: list[int] = []
        broadcaster.register(Topic.HISTORY_UPDATED, lambda events: sizes.append(len(events)))

        await asyncio.gather(
            *(
                history_storage.store_pump_events([bolus_event(minutes_ago(i + 1))])
                for i in range(5)
            )
        )
        await broadcaster.drain()

        assert sizes == [1, 2, 3, 4, 5]

    async def test_readers_only_see_whole_cycles(self, history_storage):
        observed: list[int] = []

        async def reader():
            for _ in range(10):
                observed.append(len(await history_storage.recent()))
                await asyncio.sleep(0)

        await asyncio.gather(
            reader(),
            *(
                history_storage.store_pump_events([temp_basal_event(minutes_ago(i + 1))])
                for i in range(5)
            ),
        )
        # Each temp basal commits its two records together.
        assert all(count % 2 == 0 for count in observed)


class TestSnapshotFormat:
    """Tests for the persisted document layout."""

    async def test_history_uses_pumphistory_field_names(self, history_storage, session_maker):
        from pump_history.models import StoredDocument

        await history_storage.store_pump_events([temp_basal_event(minutes_ago(5), rate="0.75")])

        async with session_maker() as session:
            document = await session.get(StoredDocument, settings.pump_history_key)

        rate_record, duration_record = document.payload
        assert rate_record["_type"] == "TempBasal"
        assert rate_record["rate"] == "0.75"
        assert rate_record["temp"] == "absolute"
        assert duration_record["_type"] == "TempBasalDuration"
        assert duration_record["duration (min)"] == 30
        assert "amount" not in duration_record

    async def test_uploaded_snapshot_roundtrip_keeps_equality(self, history_storage, file_storage):
        await history_storage.store_pump_events([temp_basal_event(minutes_ago(5))])
        pending = await history_storage.pending_treatments()

        await file_storage.save(settings.uploaded_treatments_key, pending)
        stored = await file_storage.retrieve(settings.uploaded_treatments_key, Treatment)

        assert stored == pending
        assert set(stored) == set(pending)
