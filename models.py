# models.py
import uuid
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def new_id():
    return str(uuid.uuid4())


def iso(value):
    return value.isoformat() if value else None


class Test(db.Model):
    __tablename__ = "tests"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=True)
    duration = db.Column(db.Integer, nullable=False)  # minutes
    shuffle_questions = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    questions = db.relationship("Question", backref="test", cascade="all, delete-orphan")
    attempts = db.relationship("Attempt", backref="test", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "duration": self.duration,
            "shuffleQuestions": self.shuffle_questions,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class Question(db.Model):
    __tablename__ = "questions"

    # seq keeps insertion order for questions sharing the same order value
    seq = db.Column(db.Integer, primary_key=True, autoincrement=True)
    id = db.Column(db.String(36), unique=True, nullable=False, default=new_id)
    test_id = db.Column(db.String(36), db.ForeignKey("tests.id", ondelete="CASCADE"), nullable=False)
    question_text = db.Column(db.Text, nullable=False)
    option_a = db.Column(db.Text, nullable=False)
    option_b = db.Column(db.Text, nullable=False)
    option_c = db.Column(db.Text, nullable=False)
    option_d = db.Column(db.Text, nullable=False)
    correct_answer = db.Column(db.String(1), nullable=False)  # 'A'/'B'/'C'/'D'
    marks = db.Column(db.Integer, default=1, nullable=False)
    time_limit = db.Column(db.Integer, nullable=True)  # seconds
    order = db.Column(db.Integer, nullable=False)

    def to_dict(self, include_answer=True):
        data = {
            "id": self.id,
            "testId": self.test_id,
            "questionText": self.question_text,
            "optionA": self.option_a,
            "optionB": self.option_b,
            "optionC": self.option_c,
            "optionD": self.option_d,
            "marks": self.marks,
            "timeLimit": self.time_limit,
            "order": self.order,
        }
        if include_answer:
            data["correctAnswer"] = self.correct_answer
        return data


class Attempt(db.Model):
    __tablename__ = "test_attempts"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    test_id = db.Column(db.String(36), db.ForeignKey("tests.id", ondelete="CASCADE"), nullable=False)
    student_name = db.Column(db.Text, nullable=True)
    answers = db.Column(db.JSON, nullable=False, default=dict)  # {question_id: "A", ...}
    score = db.Column(db.Integer, nullable=False, default=0)
    total_marks = db.Column(db.Integer, nullable=False, default=0)
    time_taken = db.Column(db.Integer, nullable=False, default=0)  # seconds
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    question_order = db.Column(db.JSON, nullable=False, default=list)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    submitted_at = db.Column(db.DateTime, nullable=True)

    drafts = db.relationship("Answer", backref="attempt", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "testId": self.test_id,
            "studentName": self.student_name,
            "answers": dict(self.answers or {}),
            "score": self.score,
            "totalMarks": self.total_marks,
            "timeTaken": self.time_taken,
            "isCompleted": self.is_completed,
            "questionOrder": list(self.question_order or []),
            "startedAt": iso(self.started_at),
            "submittedAt": iso(self.submitted_at),
        }


class Answer(db.Model):
    """A selection made during an unfinished attempt."""
    __tablename__ = "attempt_answers"

    attempt_id = db.Column(db.String(36), db.ForeignKey("test_attempts.id", ondelete="CASCADE"), primary_key=True)
    question_id = db.Column(db.String(36), primary_key=True)
    selected = db.Column(db.String(1), nullable=False)
    answered_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
