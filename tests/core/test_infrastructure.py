"""
Tests for the database service, key locks and structured event logging
"""

import json
import logging
import threading
import time

from activity_engine.core.services.database import KeyLockRegistry
from activity_engine.core.services.grading_service import RawAttempt
from activity_engine.core.services.logging import get_logging_service


def test_key_lock_serialises_same_key_only():
    registry = KeyLockRegistry()
    active = {"n": 0, "max": 0}
    guard = threading.Lock()

    def worker():
        with registry.hold(("attempt", 1, 1)):
            with guard:
                active["n"] += 1
                active["max"] = max(active["max"], active["n"])
            time.sleep(0.01)
            with guard:
                active["n"] -= 1

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert active["max"] == 1
    assert len(registry) == 0


def test_database_stats_count_pending(db_service, grading, student, mcq):
    grading.grade(RawAttempt(student.id, mcq.id, "table"))

    stats = db_service.get_database_stats()

    assert stats == {
        "review_states": 1,
        "attempts": 1,
        "pending_attempts": 0,
        "ledger_entries": 1,
    }


def test_grading_events_are_written_as_json(tmp_path):
    service = get_logging_service()
    service.log_grading_event("pending", student_id=4, activity_id=9, status="grading_pending")
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = (tmp_path / "logs" / "engine.log").read_text(encoding="utf-8").splitlines()
    events = [json.loads(line) for line in lines if line.startswith("{")]
    pending = [e for e in events if e.get("event_type") == "grading.pending"]

    assert pending
    assert pending[-1]["user_id"] == 4
    assert pending[-1]["activity_id"] == 9
    assert pending[-1]["level"] == "warning"


def test_graded_attempt_writes_ledger_event(tmp_path, db_service, grading, student, mcq):
    outcome = grading.grade(RawAttempt(student.id, mcq.id, "table"))
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert outcome.status.value == "graded"
    lines = (tmp_path / "logs" / "engine.log").read_text(encoding="utf-8").splitlines()
    events = [json.loads(line) for line in lines if line.startswith("{")]
    applied = [e for e in events if e.get("event_type") == "ledger.applied"]

    assert len(applied) == 1
    assert applied[0]["attempt_id"] == outcome.attempt.id
    assert applied[0]["xp_delta"] == outcome.progression.xp_delta
    assert applied[0]["level_after"] == outcome.progression.level_after
    assert applied[0]["level"] == "info"
