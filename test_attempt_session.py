"""Headless tests of the session state machine with an in-memory store."""
import random
import threading
import time
from datetime import datetime, timedelta

import pytest

from attempt_session import (
    AttemptSession, InvalidAnswer, InvalidTransition, PersistenceError, SessionState, grade,
)

T0 = datetime(2026, 1, 1, 9, 0, 0)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeStore:
    def __init__(self, fail_create=False, fail_update=False):
        self.fail_create = fail_create
        self.fail_update = fail_update
        self.creates = []
        self.updates = []
        self.attempt = None

    def create_attempt(self, test_id, student_name, question_order):
        if self.fail_create:
            raise PersistenceError("Failed to start test")
        self.creates.append((test_id, student_name, list(question_order)))
        self.attempt = {
            "id": "att-1", "testId": test_id, "studentName": student_name,
            "answers": {}, "score": 0, "totalMarks": 0, "timeTaken": 0,
            "isCompleted": False, "questionOrder": list(question_order),
            "startedAt": T0.isoformat(), "submittedAt": None,
        }
        return dict(self.attempt)

    def update_attempt(self, attempt_id, updates):
        if self.fail_update:
            raise PersistenceError("Failed to submit test")
        self.updates.append((attempt_id, dict(updates)))
        self.attempt.update(updates)
        self.attempt["submittedAt"] = T0.isoformat()
        return dict(self.attempt)


class ReverseRng:
    def shuffle(self, seq):
        seq.reverse()


def make_question(qid, correct="A", marks=1):
    return {
        "id": qid, "testId": "t1", "questionText": f"Question {qid}",
        "optionA": "a", "optionB": "b", "optionC": "c", "optionD": "d",
        "correctAnswer": correct, "marks": marks, "timeLimit": None, "order": 0,
    }


QUESTIONS = [make_question("q1", "A", 1), make_question("q2", "B", 2), make_question("q3", "C", 3)]


def make_session(shuffle=False, duration=10, store=None, clock=None, rng=None, questions=QUESTIONS):
    test = {"id": "t1", "title": "Quiz", "duration": duration, "shuffleQuestions": shuffle}
    return AttemptSession(test, questions, store or FakeStore(), clock=clock or FakeClock(), rng=rng or random)


def test_score_example():
    session = make_session()
    session.start("Ada")
    session.select_answer("q1", "A")
    session.select_answer("q2", "C")
    session.select_answer("q3", "C")

    attempt = session.submit()

    assert attempt["score"] == 4
    assert attempt["totalMarks"] == 6
    assert attempt["isCompleted"] is True
    assert session.state is SessionState.COMPLETED


def test_grade_counts_unanswered_marks():
    assert grade(QUESTIONS, {}) == (0, 6)
    assert grade(QUESTIONS, {"q1": "A", "q2": "B", "q3": "C"}) == (6, 6)


def test_start_writes_once_with_zeroed_attempt():
    store = FakeStore()
    session = make_session(store=store)
    attempt = session.start()

    assert store.creates == [("t1", None, ["q1", "q2", "q3"])]
    assert attempt["score"] == 0
    assert attempt["answers"] == {}
    assert attempt["isCompleted"] is False
    assert session.state is SessionState.IN_PROGRESS


def test_start_twice_is_rejected():
    session = make_session()
    session.start()
    with pytest.raises(InvalidTransition):
        session.start()


def test_last_answer_wins():
    session = make_session()
    session.start()
    session.select_answer("q1", "b")
    session.select_answer("q1", "A")
    assert session.answers == {"q1": "A"}


def test_invalid_answers():
    session = make_session()
    session.start()
    with pytest.raises(InvalidAnswer):
        session.select_answer("q1", "E")
    with pytest.raises(InvalidAnswer):
        session.select_answer("nope", "A")


def test_answering_before_start_or_after_submit_is_rejected():
    session = make_session()
    with pytest.raises(InvalidTransition):
        session.select_answer("q1", "A")
    session.start()
    session.submit()
    with pytest.raises(InvalidTransition):
        session.select_answer("q1", "A")
    with pytest.raises(InvalidTransition):
        session.toggle_flag("q1")


def test_navigation_is_clamped_and_unconditional():
    session = make_session()
    session.start()
    assert session.previous()["id"] == "q1"
    assert session.next()["id"] == "q2"
    assert session.next()["id"] == "q3"
    assert session.next()["id"] == "q3"
    assert session.position == 3


def test_shuffle_is_fixed_for_the_session_and_used_for_scoring():
    store = FakeStore()
    session = make_session(shuffle=True, store=store, rng=ReverseRng())
    session.start()

    order = [q["id"] for q in session.questions]
    assert order == ["q3", "q2", "q1"]
    assert store.creates[0][2] == order

    session.next()
    session.next()
    session.previous()
    assert [q["id"] for q in session.questions] == order

    session.select_answer("q3", "C")
    attempt = session.submit()
    assert attempt["totalMarks"] == 6
    assert attempt["score"] == 3


def test_random_shuffle_is_a_permutation():
    questions = [make_question(f"q{i}") for i in range(20)]
    session = make_session(shuffle=True, rng=random.Random(7), questions=questions)
    session.start()
    assert sorted(q["id"] for q in session.questions) == sorted(q["id"] for q in questions)
    assert session.submit()["totalMarks"] == 20


def test_no_shuffle_keeps_test_order():
    session = make_session(shuffle=False, rng=ReverseRng())
    session.start()
    assert [q["id"] for q in session.questions] == ["q1", "q2", "q3"]


def test_time_taken_from_session_start():
    clock = FakeClock()
    session = make_session(clock=clock)
    session.start()
    clock.advance(95.7)
    assert session.submit()["timeTaken"] == 95


def test_time_taken_is_never_negative():
    clock = FakeClock()
    session = make_session(clock=clock)
    session.start()
    clock.advance(-30)
    assert session.submit()["timeTaken"] == 0


def test_countdown_and_timeout_submit():
    clock = FakeClock()
    store = FakeStore()
    session = make_session(duration=1, clock=clock, store=store)
    session.start()

    assert session.tick() == 60
    clock.advance(59)
    assert session.tick() == 1
    assert store.updates == []

    clock.advance(1)
    assert session.tick() == 0
    assert session.state is SessionState.COMPLETED
    assert session.timed_out is True
    assert len(store.updates) == 1

    clock.advance(1)
    session.tick()
    assert len(store.updates) == 1


def test_timeout_handler_is_idempotent():
    store = FakeStore()
    session = make_session(store=store)
    session.start()
    session.handle_timeout()
    session.handle_timeout()
    assert len(store.updates) == 1


def test_timeout_after_manual_submit_is_a_noop():
    store = FakeStore()
    session = make_session(store=store)
    session.start()
    session.submit()
    assert session.handle_timeout() is None
    assert session.submit()["isCompleted"] is True
    assert len(store.updates) == 1
    assert session.timed_out is False


class SlowStore(FakeStore):
    def update_attempt(self, attempt_id, updates):
        time.sleep(0.2)
        return super().update_attempt(attempt_id, updates)


def test_concurrent_submit_and_timeout_write_once():
    store = SlowStore()
    session = make_session(store=store)
    session.start()

    threads = [threading.Thread(target=session.submit), threading.Thread(target=session.handle_timeout)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store.updates) == 1
    assert session.state is SessionState.COMPLETED


def test_failed_start_stays_not_started():
    session = make_session(store=FakeStore(fail_create=True))
    with pytest.raises(PersistenceError):
        session.start()
    assert session.state is SessionState.NOT_STARTED
    assert session.attempt is None


def test_failed_submit_stays_in_progress():
    store = FakeStore()
    session = make_session(store=store)
    session.start()
    session.select_answer("q1", "A")

    store.fail_update = True
    with pytest.raises(PersistenceError):
        session.submit()
    assert session.state is SessionState.IN_PROGRESS
    assert session.answers == {"q1": "A"}

    store.fail_update = False
    assert session.submit()["score"] == 1


def test_flags_toggle():
    session = make_session()
    session.start()
    assert session.toggle_flag("q2") is True
    assert session.flagged == {"q2"}
    assert session.toggle_flag("q2") is False
    assert session.flagged == set()


def test_review_only_after_completion():
    session = make_session()
    session.start()
    with pytest.raises(InvalidTransition):
        session.review()
    session.select_answer("q1", "A")
    session.select_answer("q2", "D")
    session.submit()

    review = session.review()
    assert [(r["id"], r["selectedAnswer"], r["isCorrect"]) for r in review] == [
        ("q1", "A", True), ("q2", "D", False), ("q3", None, False),
    ]
    assert review[1]["correctAnswer"] == "B"


def test_view_hides_answers_until_completed():
    session = make_session()
    session.start()
    view = session.view()
    assert "correctAnswer" not in view["currentQuestion"]
    assert all("correctAnswer" not in q for q in view["questions"])
    assert view["state"] == "in_progress"

    session.submit()
    view = session.view()
    assert view["currentQuestion"]["correctAnswer"] == "A"
    assert view["remainingSeconds"] == 0


def test_restore_keeps_persisted_order_and_start_time():
    attempt = {
        "id": "att-9", "answers": {"q2": "B"}, "isCompleted": False,
        "questionOrder": ["q2", "q3", "q1"], "startedAt": T0.isoformat(),
    }
    clock = FakeClock(T0 + timedelta(seconds=120))
    test = {"id": "t1", "duration": 10, "shuffleQuestions": True}
    session = AttemptSession.restore(test, QUESTIONS, attempt, FakeStore(), clock=clock)

    assert [q["id"] for q in session.questions] == ["q2", "q3", "q1"]
    assert session.state is SessionState.IN_PROGRESS
    assert session.answers == {"q2": "B"}
    assert session.remaining_seconds() == 480
