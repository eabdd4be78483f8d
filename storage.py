# storage.py
import io
import logging
from datetime import datetime

import pandas as pd
from sqlalchemy.exc import SQLAlchemyError

from attempt_session import PersistenceError
from models import db, Test, Question, Attempt, Answer

logger = logging.getLogger(__name__)

# wire name -> column name for attempt updates
ATTEMPT_FIELDS = {
    "answers": "answers",
    "score": "score",
    "totalMarks": "total_marks",
    "timeTaken": "time_taken",
    "isCompleted": "is_completed",
}

# =========================
# Tests
# =========================
def create_test(data):
    test = Test(
        title=data["title"],
        description=data.get("description"),
        duration=data["duration"],
        shuffle_questions=bool(data.get("shuffleQuestions", False)),
    )
    db.session.add(test)
    db.session.commit()
    return test


def get_test(test_id):
    return db.session.get(Test, test_id)


def get_all_tests():
    return Test.query.order_by(Test.created_at.desc()).all()


def get_test_with_questions(test_id):
    test = get_test(test_id)
    if not test:
        return None
    data = test.to_dict()
    data["questions"] = [q.to_dict() for q in get_test_questions(test_id)]
    return data


def update_test_settings(test_id, changes):
    test = get_test(test_id)
    if not test:
        return None
    if "title" in changes:
        test.title = changes["title"]
    if "description" in changes:
        test.description = changes["description"]
    if "duration" in changes:
        test.duration = changes["duration"]
    if "shuffleQuestions" in changes:
        test.shuffle_questions = bool(changes["shuffleQuestions"])
    test.updated_at = datetime.utcnow()
    db.session.commit()
    return test


def delete_test(test_id):
    test = get_test(test_id)
    if not test:
        return False
    db.session.delete(test)
    db.session.commit()
    return True


def duplicate_test(test_id):
    test = get_test(test_id)
    if not test:
        return None
    copy = Test(
        title=f"{test.title} (Copy)",
        description=test.description,
        duration=test.duration,
        shuffle_questions=test.shuffle_questions,
    )
    db.session.add(copy)
    db.session.flush()
    for q in get_test_questions(test_id):
        db.session.add(Question(
            test_id=copy.id,
            question_text=q.question_text,
            option_a=q.option_a,
            option_b=q.option_b,
            option_c=q.option_c,
            option_d=q.option_d,
            correct_answer=q.correct_answer,
            marks=q.marks,
            time_limit=q.time_limit,
            order=q.order,
        ))
    db.session.commit()
    return copy


# =========================
# Questions
# =========================
def create_questions(test_id, rows):
    """Bulk insert validated rows; order is renumbered 1..n by position."""
    if not rows:
        return []
    created = []
    for index, row in enumerate(rows, start=1):
        q = Question(
            test_id=test_id,
            question_text=row["questionText"],
            option_a=row["optionA"],
            option_b=row["optionB"],
            option_c=row["optionC"],
            option_d=row["optionD"],
            correct_answer=row["correctAnswer"],
            marks=row.get("marks", 1),
            time_limit=row.get("timeLimit"),
            order=index,
        )
        db.session.add(q)
        created.append(q)
    db.session.commit()
    logger.info("Inserted %d questions into test %s", len(created), test_id)
    return created


def get_test_questions(test_id):
    return (
        Question.query.filter_by(test_id=test_id)
        .order_by(Question.order.asc(), Question.seq.asc())
        .all()
    )


# =========================
# Attempts
# =========================
def create_attempt(test_id, student_name=None, question_order=None):
    att = Attempt(
        test_id=test_id,
        student_name=student_name,
        answers={},
        score=0,
        total_marks=0,
        time_taken=0,
        is_completed=False,
        question_order=list(question_order or []),
        started_at=datetime.utcnow(),
    )
    db.session.add(att)
    db.session.commit()
    return att


def update_attempt(attempt_id, updates):
    """Apply wire-named updates to an unfinished attempt.

    submitted_at is stamped when completion is set. The write only matches
    rows that are still unfinished, so a completed attempt comes back as
    stored and is never written twice.
    """
    att = get_attempt(attempt_id)
    if not att:
        return None
    values = {}
    for key, column in ATTEMPT_FIELDS.items():
        if key in updates:
            value = updates[key]
            if key == "answers":
                value = dict(value or {})
            values[column] = value
    if updates.get("isCompleted"):
        values["submitted_at"] = datetime.utcnow()
    if not values:
        return att

    matched = (
        Attempt.query.filter_by(id=attempt_id, is_completed=False)
        .update(values, synchronize_session=False)
    )
    db.session.commit()
    if not matched:
        logger.warning("Attempt %s already completed, update skipped", attempt_id)
    db.session.refresh(att)
    return att


def save_answer(attempt_id, question_id, letter):
    """Record (or with letter None, forget) a selection on an unfinished attempt."""
    draft = db.session.get(Answer, (attempt_id, question_id))
    if letter is None:
        if draft:
            db.session.delete(draft)
    elif draft:
        draft.selected = letter
        draft.answered_at = datetime.utcnow()
    else:
        db.session.add(Answer(attempt_id=attempt_id, question_id=question_id, selected=letter))
    db.session.commit()


def get_draft_answers(attempt_id):
    return {a.question_id: a.selected for a in Answer.query.filter_by(attempt_id=attempt_id)}


def get_attempt(attempt_id):
    return db.session.get(Attempt, attempt_id)


def get_test_attempts(test_id):
    return (
        Attempt.query.filter_by(test_id=test_id)
        .order_by(Attempt.started_at.desc())
        .all()
    )


def get_incomplete_attempts():
    return Attempt.query.filter_by(is_completed=False).all()


def attempts_frame(attempts):
    return pd.DataFrame(
        [a.to_dict() for a in attempts],
        columns=["id", "studentName", "score", "totalMarks", "timeTaken",
                 "isCompleted", "startedAt", "submittedAt"],
    )


def get_test_stats(test_id):
    test = get_test(test_id)
    if not test:
        return None

    df = attempts_frame(get_test_attempts(test_id))
    stats = test.to_dict()
    if df.empty:
        stats.update(totalAttempts=0, averageScore=0, averagePercentage=0,
                     completionRate=0, averageTime=0)
        return stats

    completed = df[df["isCompleted"] & (df["totalMarks"] > 0)]
    percentages = completed["score"] / completed["totalMarks"] * 100

    stats.update(
        totalAttempts=int(len(df)),
        averageScore=float(df["score"].mean()),
        averagePercentage=float(percentages.mean()) if not percentages.empty else 0,
        completionRate=float(df["isCompleted"].sum() / len(df) * 100),
        averageTime=float(df["timeTaken"].mean()),
    )
    return stats


def export_attempts(test_id):
    """Attempts of a test as an xlsx workbook (bytes)."""
    df = attempts_frame(get_test_attempts(test_id))
    df["percentage"] = [
        round(s / t * 100, 1) if t else 0.0
        for s, t in zip(df["score"], df["totalMarks"])
    ]
    df = df.rename(columns={
        "studentName": "Student",
        "score": "Score",
        "totalMarks": "Total Marks",
        "percentage": "Percentage",
        "timeTaken": "Time Taken (s)",
        "isCompleted": "Completed",
        "startedAt": "Started At",
        "submittedAt": "Submitted At",
    }).drop(columns=["id"])
    df["Student"] = df["Student"].fillna("Anonymous")

    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name="attempts", index=False)
    return buf.getvalue()


# =========================
# Session store
# =========================
class SqlAttemptStore:
    """Attempt writes for AttemptSession, with database failures wrapped."""

    def create_attempt(self, test_id, student_name, question_order):
        try:
            return create_attempt(test_id, student_name, question_order).to_dict()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Could not create attempt for test %s: %s", test_id, e)
            raise PersistenceError("Failed to start test") from e

    def update_attempt(self, attempt_id, updates):
        try:
            att = update_attempt(attempt_id, updates)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Could not update attempt %s: %s", attempt_id, e)
            raise PersistenceError("Failed to submit test") from e
        return att.to_dict() if att else None

    def save_answer(self, attempt_id, question_id, letter):
        try:
            save_answer(attempt_id, question_id, letter)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Could not save answer on attempt %s: %s", attempt_id, e)
            raise PersistenceError("Failed to save answer") from e
