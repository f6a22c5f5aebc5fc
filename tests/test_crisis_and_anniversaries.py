import asyncio
from datetime import date

from fakes import FakeClock, RecordingNotifier
from kindred.anniversaries import SqliteAnniversaryStore, next_occurrence
from kindred.crisis import MAX_EVENTS, CrisisLevel, CrisisMonitor, CrisisNotifier, WatchStatus
from kindred.models import Anniversary
from kindred.signals import SignalProcessor


def assess(monitor, text, processor=None):
    processor = processor or SignalProcessor(clock=FakeClock())
    return monitor.assess(text, processor.analyze(text))


class FailingNotifier(CrisisNotifier):
    async def notify(self, event):
        raise RuntimeError("webhook down")


# ============================================================================
# Crisis
# ============================================================================

def test_single_crisis_keyword_is_high():
    monitor = CrisisMonitor([])
    event = assess(monitor, "I want to die")
    assert event.level is CrisisLevel.HIGH
    assert event.resources
    assert monitor.status is WatchStatus.CRISIS
    assert monitor.in_crisis


def test_two_crisis_keywords_are_critical():
    event = assess(CrisisMonitor([]), "活不下去了，想自杀")
    assert event.level is CrisisLevel.CRITICAL
    assert event.recommendation


def test_warning_alone_is_low_and_not_delivered():
    notifier = RecordingNotifier()
    monitor = CrisisMonitor([notifier])
    event = assess(monitor, "I feel hopeless")

    assert event.level is CrisisLevel.LOW
    assert asyncio.run(monitor.deliver(event)) == 0
    assert notifier.events == []


def test_repeated_warnings_escalate_to_medium():
    monitor = CrisisMonitor([])
    processor = SignalProcessor(clock=FakeClock())
    levels = [assess(monitor, "so depressed and hopeless", processor).level for _ in range(3)]
    assert levels[-1] is CrisisLevel.MEDIUM
    assert monitor.status is WatchStatus.WARNING


def test_neutral_message_records_nothing():
    monitor = CrisisMonitor([])
    assert assess(monitor, "what's for dinner?") is None
    assert not monitor.events


def test_deliver_counts_successes():
    good = RecordingNotifier()
    monitor = CrisisMonitor([FailingNotifier(), good])
    event = assess(monitor, "I want to die")

    assert asyncio.run(monitor.deliver(event)) == 1
    assert good.events == [event]


def test_disabled_monitor_is_silent():
    assert assess(CrisisMonitor([], enabled=False), "I want to die") is None


def test_mark_handled_and_reset():
    monitor = CrisisMonitor([])
    assess(monitor, "I want to die")
    monitor.mark_handled(0)
    assert not monitor.in_crisis
    monitor.reset()
    assert not monitor.events
    assert monitor.status is WatchStatus.NORMAL


def test_event_history_is_bounded():
    monitor = CrisisMonitor([])
    for _ in range(MAX_EVENTS + 5):
        assess(monitor, "I want to die")
    assert len(monitor.events) == MAX_EVENTS


# ============================================================================
# Anniversaries
# ============================================================================

def test_next_occurrence_this_year_and_next():
    assert next_occurrence(3, 15, date(2024, 3, 15)) == date(2024, 3, 15)
    assert next_occurrence(3, 14, date(2024, 3, 15)) == date(2025, 3, 14)


def test_feb_29_in_common_year():
    assert next_occurrence(2, 29, date(2025, 1, 10)) == date(2025, 2, 28)
    assert next_occurrence(2, 29, date(2024, 1, 10)) == date(2024, 2, 29)


def test_store_dedupes_and_lists_upcoming(tmp_path):
    store = SqliteAnniversaryStore(tmp_path / "chat.db", clock=lambda: 0.0)
    birthday = Anniversary(type="birthday", name="Luke's birthday", month=3, day=15, year=1995)
    first_chat = Anniversary(type="anniversary", name="first chat", month=12, day=1)

    assert asyncio.run(store.record([birthday, first_chat, birthday])) == 2
    assert len(store.list_all()) == 2

    upcoming = store.upcoming(within_days=30, today=date(2024, 3, 1))
    assert [u.anniversary.name for u in upcoming] == ["Luke's birthday"]
    assert upcoming[0].days_until == 14
    assert store.today(date(2024, 12, 1))[0].name == "first chat"


def test_record_nothing(tmp_path):
    store = SqliteAnniversaryStore(tmp_path / "chat.db")
    assert asyncio.run(store.record([])) == 0
