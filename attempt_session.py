"""Test session state machine: start, answer capture, shuffle, submit or timeout."""
import logging
import random
import threading
from datetime import datetime
from enum import Enum

logger = logging.getLogger(__name__)

ANSWER_LETTERS = ("A", "B", "C", "D")


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class SessionError(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.message = message


class InvalidTransition(SessionError):
    """Operation not allowed in the session's current state."""


class InvalidAnswer(SessionError):
    """Unknown question or a letter outside A-D."""


class PersistenceError(SessionError):
    """The store could not write the attempt."""


def grade(questions, answers):
    """Return (score, total_marks) for a question sequence and an answer map.

    Every question counts toward the total whether answered or not; marks are
    awarded only on an exact match with the correct letter.
    """
    score = 0
    total = 0
    for q in questions:
        marks = q.get("marks", 1)
        total += marks
        if answers.get(q["id"]) == q["correctAnswer"]:
            score += marks
    return score, total


def public_question(question, reveal=False):
    data = {k: v for k, v in question.items() if k != "correctAnswer"}
    if reveal:
        data["correctAnswer"] = question["correctAnswer"]
    return data


def ordered(questions, question_order):
    """Questions in a persisted attempt order; ones missing from it go last."""
    by_id = {q["id"]: q for q in questions}
    order = [qid for qid in question_order or [] if qid in by_id]
    seen = set(order)
    return [by_id[qid] for qid in order] + [q for q in questions if q["id"] not in seen]


def parse_timestamp(value):
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class AttemptSession:
    """One student's run through a test."""

    def __init__(self, test, questions, store, clock=datetime.utcnow, rng=random):
        self.test = test
        self.questions = list(questions)
        self.store = store
        self.clock = clock
        self.rng = rng

        self.state = SessionState.NOT_STARTED
        self.attempt = None
        self.answers = {}
        self.flagged = set()
        self.current_index = 0
        self.started_at = None
        self.timed_out = False
        # request threads and the countdown may submit concurrently
        self._submit_lock = threading.Lock()

    @classmethod
    def restore(cls, test, questions, attempt, store, clock=datetime.utcnow, rng=random):
        """Rebuild a session from a persisted attempt, keeping its question order."""
        session = cls(test, questions, store, clock=clock, rng=rng)
        session.questions = ordered(questions, attempt.get("questionOrder"))

        session.attempt = attempt
        session.answers = dict(attempt.get("answers") or {})
        session.started_at = parse_timestamp(attempt["startedAt"])
        if attempt.get("isCompleted"):
            session.state = SessionState.COMPLETED
        else:
            session.state = SessionState.IN_PROGRESS
        return session

    # --- properties ---

    @property
    def attempt_id(self):
        return self.attempt["id"] if self.attempt else None

    @property
    def duration_seconds(self):
        return int(self.test["duration"]) * 60

    @property
    def current_question(self):
        if not self.questions:
            return None
        return self.questions[self.current_index]

    @property
    def position(self):
        return self.current_index + 1

    # --- transitions ---

    def start(self, student_name=None):
        if self.state is not SessionState.NOT_STARTED:
            raise InvalidTransition("Test session already started")

        sequence = list(self.questions)
        if self.test.get("shuffleQuestions"):
            self.rng.shuffle(sequence)

        attempt = self.store.create_attempt(
            self.test["id"], student_name, [q["id"] for q in sequence]
        )

        self.questions = sequence
        self.attempt = attempt
        self.started_at = self.clock()
        self.state = SessionState.IN_PROGRESS
        logger.info("Attempt %s started on test %s (%d questions)",
                    self.attempt_id, self.test["id"], len(sequence))
        return attempt

    def submit(self, timed_out=False):
        """Grade and persist the attempt. A second call returns the stored result."""
        with self._submit_lock:
            if self.state is SessionState.COMPLETED:
                return self.attempt
            if self.state is SessionState.NOT_STARTED:
                raise InvalidTransition("Test session has not started")

            score, total = grade(self.questions, self.answers)
            updates = {
                "answers": dict(self.answers),
                "score": score,
                "totalMarks": total,
                "timeTaken": self.elapsed_seconds(),
                "isCompleted": True,
            }
            attempt = self.store.update_attempt(self.attempt_id, updates)
            if attempt is None:
                raise PersistenceError("Test attempt not found")

            self.attempt = attempt
            self.timed_out = timed_out
            self.state = SessionState.COMPLETED
        logger.info("Attempt %s submitted%s: %d/%d",
                    self.attempt_id, " on timeout" if timed_out else "", score, total)
        return attempt

    def handle_timeout(self):
        if self.state is not SessionState.IN_PROGRESS:
            return None
        return self.submit(timed_out=True)

    # --- timer ---

    def elapsed_seconds(self, now=None):
        if self.started_at is None:
            return 0
        now = now or self.clock()
        return max(0, int((now - self.started_at).total_seconds()))

    def remaining_seconds(self, now=None):
        if self.state is SessionState.COMPLETED:
            return 0
        return max(0, self.duration_seconds - self.elapsed_seconds(now))

    def tick(self, now=None):
        """Advance the countdown; forces the timeout submit once time is up."""
        if self.state is not SessionState.IN_PROGRESS:
            return self.remaining_seconds(now)
        remaining = self.duration_seconds - self.elapsed_seconds(now)
        if remaining <= 0:
            self.handle_timeout()
            return 0
        return remaining

    # --- answers and navigation ---

    def _require_in_progress(self):
        if self.state is not SessionState.IN_PROGRESS:
            raise InvalidTransition("Test session is not in progress")

    def _require_question(self, question_id):
        if not any(q["id"] == question_id for q in self.questions):
            raise InvalidAnswer(f"Question {question_id} is not part of this attempt")

    def select_answer(self, question_id, letter):
        self._require_in_progress()
        self._require_question(question_id)
        letter = str(letter or "").strip().upper()
        if letter not in ANSWER_LETTERS:
            raise InvalidAnswer("Answer must be one of A, B, C or D")
        self.answers[question_id] = letter

    def clear_answer(self, question_id):
        self._require_in_progress()
        self._require_question(question_id)
        self.answers.pop(question_id, None)

    def toggle_flag(self, question_id):
        self._require_in_progress()
        self._require_question(question_id)
        if question_id in self.flagged:
            self.flagged.discard(question_id)
            return False
        self.flagged.add(question_id)
        return True

    def next(self):
        if self.state is SessionState.NOT_STARTED:
            raise InvalidTransition("Test session has not started")
        if self.current_index < len(self.questions) - 1:
            self.current_index += 1
        return self.current_question

    def previous(self):
        if self.state is SessionState.NOT_STARTED:
            raise InvalidTransition("Test session has not started")
        if self.current_index > 0:
            self.current_index -= 1
        return self.current_question

    # --- views ---

    def review(self):
        """Read-only questions with the student's choice and the correct one."""
        if self.state is not SessionState.COMPLETED:
            raise InvalidTransition("Review is available after submission")
        out = []
        for q in self.questions:
            selected = self.answers.get(q["id"])
            item = public_question(q, reveal=True)
            item["selectedAnswer"] = selected
            item["isCorrect"] = selected == q["correctAnswer"]
            out.append(item)
        return out

    def view(self, now=None):
        completed = self.state is SessionState.COMPLETED
        current = self.current_question
        return {
            "attemptId": self.attempt_id,
            "testId": self.test["id"],
            "title": self.test.get("title"),
            "state": self.state.value,
            "timedOut": self.timed_out,
            "position": self.position,
            "totalQuestions": len(self.questions),
            "answered": len(self.answers),
            "answers": dict(self.answers),
            "flagged": sorted(self.flagged),
            "remainingSeconds": self.remaining_seconds(now),
            "currentQuestion": public_question(current, reveal=completed) if current else None,
            "questions": [public_question(q, reveal=completed) for q in self.questions],
            "attempt": self.attempt,
        }
