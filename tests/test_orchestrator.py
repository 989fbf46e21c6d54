import asyncio
import logging
from datetime import timedelta

import pytest

from campus_alerts.config import BotConfig, NotificationConfig, SessionConfig, Settings
from campus_alerts.dedup import DedupStore
from campus_alerts.delivery import ThrottledDeliveryQueue
from campus_alerts.models import ChangeKind, Role, UserProfile
from campus_alerts.orchestrator import (
    NotificationOrchestrator,
    WatchState,
    classify_course,
    classify_event,
    classify_schedule,
)
from campus_alerts.scoping import GlobalScope, LearnerScope, StaffScope
from campus_alerts.store import MemoryStore


ADMIN = UserProfile(id="admin-1", name="Admin", role=Role.ADMIN)


def schedule(sid: str, day: str, title: str = "Databases", lecturer: str = "Dr. Silva") -> dict:
    return {
        "id": sid,
        "moduleTitle": title,
        "lecturerName": lecturer,
        "classroomNumber": "204",
        "date": day,
        "startTime": "09:00",
        "endTime": "11:00",
    }


def make_pipeline(store, sink, today, user=ADMIN, **kwargs) -> NotificationOrchestrator:
    return NotificationOrchestrator(
        store=store,
        user=user,
        queue=ThrottledDeliveryQueue(sink=sink, min_interval=0),
        dedup=DedupStore(),
        today=lambda: today,
        fetch_retry_delay=0,
        sweep_initial_delay=60,
        **kwargs,
    )


async def settle():
    for _ in range(5):
        await asyncio.sleep(0.01)


# region classification
def test_classify_event_today_and_tomorrow(today):
    record = {"id": "e1", "title": "Hackathon", "location": "Hall A", "startDate": "2026-10-16", "startTime": "10:00"}

    catch_up = classify_event(record, None, today)
    live = classify_event({**record, "startDate": "2026-10-17"}, ChangeKind.ADDED, today)

    assert catch_up.message == 'Event today: "Hackathon" at 10:00 in Hall A'
    assert str(catch_up.key) == "event|e1@2026-10-16|today|upcoming"
    assert live.message == 'New event tomorrow: "Hackathon" at 10:00 in Hall A'
    assert classify_event({**record, "startDate": "2026-12-01"}, ChangeKind.ADDED, today) is None
    assert classify_event(record, ChangeKind.REMOVED, today) is None


def test_classify_schedule_added_and_modified_share_key(today):
    record = schedule("s1", "2026-10-17")

    added = classify_schedule(record, ChangeKind.ADDED, today)
    modified = classify_schedule(record, ChangeKind.MODIFIED, today)
    catch_up = classify_schedule(record, None, today)

    assert added.key == modified.key == catch_up.key
    assert str(added.key) == "schedule|s1@2026-10-17|tomorrow|upcoming"
    assert added.message == "Schedule update tomorrow: Databases at 09:00 in Room 204"
    assert catch_up.message == "Class tomorrow: Databases at 09:00 in Room 204"


def test_schedule_key_follows_the_date(today):
    first = classify_schedule(schedule("s1", "2026-10-17"), ChangeKind.ADDED, today)
    moved = classify_schedule(schedule("s1", "2026-10-18"), ChangeKind.MODIFIED, today + timedelta(days=1))

    assert first.key.bucket == moved.key.bucket == "tomorrow"
    assert first.key != moved.key
    assert str(moved.key) == "schedule|s1@2026-10-18|tomorrow|upcoming"


def test_classify_schedule_removed_ignores_date(today):
    notice = classify_schedule(schedule("s1", "2001-01-01"), ChangeKind.REMOVED, today)

    assert notice.message == "Class cancelled: Databases on 2001-01-01"
    assert str(notice.key) == "schedule|s1|cancelled|removed"


def test_classify_course(today):
    record = {"id": "c1", "title": "Computing", "code": "CS101"}

    assert classify_course(record, ChangeKind.ADDED, today).message == "New course available: Computing (CS101)"
    assert classify_course(record, ChangeKind.MODIFIED, today).message == "Course updated: Computing (CS101)"
    assert classify_course(record, ChangeKind.REMOVED, today) is None
    assert classify_course(record, None, today) is None


# endregion


@pytest.mark.asyncio
async def test_catch_up_surfaces_relevant_items_once(sink, today):
    store = MemoryStore()
    store.seed(
        "events",
        [
            {"id": "e1", "title": "Open day", "location": "Main hall", "startDate": "2026-10-16", "startTime": "12:00"},
            {"id": "e2", "title": "Old fair", "location": "Gym", "startDate": "2026-09-01", "startTime": "12:00"},
        ],
    )
    store.seed("schedules", [schedule("s1", "2026-10-17")])
    pipeline = make_pipeline(store, sink, today)

    await pipeline.start()
    await sink.wait_for(2)
    await store.update("events", "e1", {"location": "Main hall"})
    await settle()

    assert sorted(sink.messages) == [
        "Class tomorrow: Databases at 09:00 in Room 204",
        'Event today: "Open day" at 12:00 in Main hall',
    ]
    assert pipeline.state.catch_up_items == 3
    assert pipeline.state.notifications_suppressed == 1
    await pipeline.stop()


@pytest.mark.asyncio
async def test_added_then_modified_tomorrow_schedule_notifies_once(sink, today):
    store = MemoryStore()
    pipeline = make_pipeline(store, sink, today)
    await pipeline.start()

    await store.create("schedules", schedule("s1", "2026-10-17"))
    await store.update("schedules", "s1", {"classroomNumber": "205"})
    await settle()

    assert sink.messages == ["Schedule update tomorrow: Databases at 09:00 in Room 204"]
    assert not any("today" in m for m in sink.messages)
    assert pipeline.state.changes_seen == 2
    await pipeline.stop()


@pytest.mark.asyncio
async def test_removed_schedule_from_the_past_still_cancels(sink, today):
    store = MemoryStore()
    store.seed("schedules", [schedule("s9", "2019-03-04")])
    pipeline = make_pipeline(store, sink, today)
    await pipeline.start()

    await store.delete("schedules", "s9")
    await sink.wait_for(1)

    assert sink.messages == ["Class cancelled: Databases on 2019-03-04"]
    await pipeline.stop()


@pytest.mark.asyncio
async def test_course_changes_always_notify(sink, today):
    store = MemoryStore()
    store.seed("courses", [{"id": "c0", "title": "Existing", "code": "EX1"}])
    pipeline = make_pipeline(store, sink, today)
    await pipeline.start()

    await store.create("courses", {"id": "c1", "title": "Computing", "code": "CS101"})
    await store.update("courses", "c1", {"title": "Computing II"})
    await store.update("courses", "c1", {"code": "CS102"})
    await settle()

    assert sink.messages == [
        "New course available: Existing (EX1)",
        "New course available: Computing (CS101)",
        "Course updated: Computing II (CS101)",
    ]
    await pipeline.stop()


@pytest.mark.asyncio
async def test_staff_only_hear_about_their_own_classes(sink, today):
    store = MemoryStore()
    store.seed(
        "schedules",
        [schedule("mine", "2026-10-16"), schedule("theirs", "2026-10-16", lecturer="Dr. Other")],
    )
    lecturer = UserProfile(id="t1", name="Dr. Silva", role=Role.STAFF)
    pipeline = make_pipeline(store, sink, today, user=lecturer)

    await pipeline.start()
    await store.create("schedules", schedule("other-new", "2026-10-17", lecturer="Dr. Other"))
    await store.create("schedules", schedule("mine-new", "2026-10-17", title="Networks"))
    await settle()

    assert isinstance(pipeline.scope, StaffScope)
    assert sink.messages == [
        "Class today: Databases at 09:00 in Room 204",
        "Schedule update tomorrow: Networks at 09:00 in Room 204",
    ]
    await pipeline.stop()


@pytest.mark.asyncio
async def test_staff_without_name_gets_no_schedule_feed(sink, today):
    store = MemoryStore()
    pipeline = make_pipeline(store, sink, today, user=UserProfile(id="t1", role=Role.STAFF))

    await pipeline.start()

    assert pipeline.watch_state("schedules") is WatchState.UNSUBSCRIBED
    assert pipeline.watch_state("events") is WatchState.SUBSCRIBED
    await pipeline.stop()


def seed_enrollment(store: MemoryStore) -> None:
    store.seed("enrollments", [{"id": "en1", "studentId": "st1", "courseId": "c1"}])
    store.seed("courses", [{"id": "c1", "title": "Computing", "code": "CS101", "modules": ["m1", "m2"]}])
    store.seed("modules", [{"id": "m1", "title": "Databases"}, {"id": "m2", "title": "Networks"}, {"id": "m3", "title": "Art"}])


@pytest.mark.asyncio
async def test_learner_scope_follows_enrollments_to_schedules(sink, today):
    store = MemoryStore()
    seed_enrollment(store)
    store.seed(
        "schedules",
        [
            schedule("s1", "2026-10-16", title="Databases"),
            schedule("s2", "2026-10-16", title="Art"),
        ],
    )
    student = UserProfile(id="st1", name="Student", role=Role.LEARNER)
    pipeline = make_pipeline(store, sink, today, user=student)

    await pipeline.start()
    await store.create("schedules", schedule("s3", "2026-10-17", title="Networks"))
    await store.create("schedules", schedule("s4", "2026-10-17", title="Art"))
    await settle()

    assert isinstance(pipeline.scope, LearnerScope)
    assert pipeline.scope.module_titles == {"Databases", "Networks"}
    assert sorted(sink.messages) == [
        "Class today: Databases at 09:00 in Room 204",
        "New course available: Computing (CS101)",
        "Schedule update tomorrow: Networks at 09:00 in Room 204",
    ]
    await pipeline.stop()


@pytest.mark.asyncio
async def test_scoping_failure_does_not_stop_other_collections(sink, today, caplog):
    store = MemoryStore()
    seed_enrollment(store)
    store.failing_collections.add("enrollments")
    store.seed("events", [{"id": "e1", "title": "Talk", "location": "Lab", "startDate": "2026-10-16", "startTime": "15:00"}])
    student = UserProfile(id="st1", role=Role.LEARNER)
    pipeline = make_pipeline(store, sink, today, user=student, fetch_attempts=2)

    await pipeline.start()
    await store.create("courses", {"id": "c2", "title": "Law", "code": "LW1"})
    await settle()

    assert sorted(sink.messages) == [
        'Event today: "Talk" at 15:00 in Lab',
        "New course available: Computing (CS101)",
        "New course available: Law (LW1)",
    ]
    assert pipeline.state.last_error.startswith("schedules:")
    assert "Retrying" in caplog.text
    await pipeline.stop()


@pytest.mark.asyncio
async def test_malformed_record_only_loses_its_own_notification(sink, today, caplog):
    store = MemoryStore()
    store.seed("schedules", [schedule("bad", "16.10.2026"), schedule("good", "2026-10-16")])
    pipeline = make_pipeline(store, sink, today)

    with caplog.at_level(logging.WARNING):
        await pipeline.start()
        await store.create("courses", {"id": "c1", "title": "X", "code": 12})
        await settle()

    assert sink.messages == ["Class today: Databases at 09:00 in Room 204"]
    assert "16.10.2026" in caplog.text
    assert "Skipping malformed courses record" in caplog.text
    await pipeline.stop()


@pytest.mark.asyncio
async def test_close_unsubscribes_everything_synchronously(sink, today):
    store = MemoryStore()
    pipeline = make_pipeline(store, sink, today)
    await pipeline.start()
    assert all(store.subscriber_count(c) == 1 for c in ("events", "schedules", "courses"))

    pipeline.close()

    assert all(store.subscriber_count(c) == 0 for c in ("events", "schedules", "courses"))
    assert all(pipeline.watch_state(c) is WatchState.UNSUBSCRIBED for c in ("events", "schedules", "courses"))
    assert not pipeline.state.is_running
    await store.create("courses", {"id": "c1", "title": "Computing", "code": "CS101"})
    await settle()
    assert sink.messages == []


@pytest.mark.asyncio
async def test_notifications_are_throttled_through_the_queue(sink, today):
    store = MemoryStore()
    pipeline = NotificationOrchestrator(
        store=store,
        user=ADMIN,
        queue=ThrottledDeliveryQueue(sink=sink, min_interval=0.05),
        dedup=DedupStore(),
        today=lambda: today,
    )
    await pipeline.start()

    for i in range(3):
        await store.create("courses", {"id": f"c{i}", "title": f"Course {i}", "code": f"C{i}"})
    await sink.wait_for(3)

    times = [t for t, _ in sink.deliveries]
    assert all(b - a >= 0.05 for a, b in zip(times, times[1:]))
    assert pipeline.state.deliveries == 3
    await pipeline.stop()


def test_from_settings_maps_session_role(tmp_path, sink):
    settings = Settings(
        bot=BotConfig(token="t", admin_chat_id=1),
        session=SessionConfig(user_id="st1", user_name="Ann", role="student"),
        notifications=NotificationConfig(delivery_interval=0.5, cache_path=tmp_path / "cache.json"),
    )

    pipeline = NotificationOrchestrator.from_settings(MemoryStore(), sink, settings)

    assert pipeline.user.role is Role.LEARNER
    assert isinstance(pipeline.scope, LearnerScope)
    assert pipeline.queue.min_interval == 0.5
    assert pipeline.dedup.ttl_seconds == 24 * 3600
    assert pipeline.dedup.cache_path == tmp_path / "cache.json"


def test_admin_gets_global_scope(sink, today):
    assert isinstance(make_pipeline(MemoryStore(), sink, today).scope, GlobalScope)


@pytest.mark.asyncio
async def test_schedule_moved_to_the_next_tomorrow_notifies_again(sink, today):
    current = {"day": today}
    store = MemoryStore()
    pipeline = make_pipeline(store, sink, today)
    pipeline.today = lambda: current["day"]
    await pipeline.start()

    await store.create("schedules", schedule("s1", "2026-10-17", title="DB"))
    current["day"] = today + timedelta(days=1)
    await store.update("schedules", "s1", {"date": "2026-10-18"})
    await settle()

    assert sink.messages == ["Schedule update tomorrow: DB at 09:00 in Room 204"] * 2
    await pipeline.stop()


@pytest.mark.asyncio
async def test_existing_courses_surface_once_across_sessions(sink, today):
    store = MemoryStore()
    store.seed("courses", [{"id": "c0", "title": "Existing", "code": "EX1"}])
    dedup = DedupStore()

    for _ in range(2):
        pipeline = make_pipeline(store, sink, today)
        pipeline.dedup = dedup
        await pipeline.start()
        await settle()
        await pipeline.stop()

    assert sink.messages == ["New course available: Existing (EX1)"]


@pytest.mark.asyncio
async def test_start_after_close_stays_closed(sink, today):
    store = MemoryStore()
    pipeline = make_pipeline(store, sink, today)
    await pipeline.start()
    pipeline.close()

    await pipeline.start()

    assert pipeline.dedup._sweeper is None
    assert not pipeline.state.is_running
    assert all(store.subscriber_count(c) == 0 for c in ("events", "schedules", "courses"))
    await store.create("courses", {"id": "c1", "title": "Computing", "code": "CS101"})
    await settle()
    assert sink.messages == []
