# app.py
import io
import json
import logging
import os
from datetime import datetime

from flask import Flask, request, jsonify, send_file
from flask_cors import CORS
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

import storage
from attempt_session import (
    AttemptSession, SessionState, InvalidAnswer, InvalidTransition, PersistenceError,
    grade, ordered,
)
from models import db
from question_parser import parse_upload, NoValidQuestions
from schemas import TestIn, TestSettingsIn, QuestionIn, AttemptIn, AttemptUpdate

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# =========================
# App Setup
# =========================
app = Flask(__name__)
CORS(app, origins=os.environ.get("CORS_ORIGINS", "*"))

# =========================
# Database (SQLite by default)
# =========================
BASE_DIR = os.path.abspath(os.path.dirname(__file__))
DB_PATH = os.path.join(BASE_DIR, "exam.db")

app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", f"sqlite:///{DB_PATH}")
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_UPLOAD_MB", "10")) * 1024 * 1024

db.init_app(app)
with app.app_context():
    db.create_all()

# =========================
# Live test sessions
# =========================
# attempt_id -> AttemptSession; rebuilt from the database on a miss
SESSIONS = {}
STORE = storage.SqlAttemptStore()


def question_dicts(test_id):
    return [q.to_dict() for q in storage.get_test_questions(test_id)]


def load_session(attempt_id):
    live = SESSIONS.get(attempt_id)
    if live:
        return live

    att = storage.get_attempt(attempt_id)
    if not att:
        return None
    data = att.to_dict()
    if not att.is_completed:
        # selections made before the registry lost the session
        data["answers"] = storage.get_draft_answers(attempt_id)
    live = AttemptSession.restore(att.test.to_dict(), question_dicts(att.test_id), data, STORE)
    SESSIONS[attempt_id] = live
    logger.info("Restored session for attempt %s (%s)", attempt_id, live.state.value)
    return live


def error(message, status, **extra):
    payload = {"message": message}
    payload.update(extra)
    return jsonify(payload), status


def validation_errors(e):
    return json.loads(e.json(include_url=False))

# =========================
# Error handlers
# =========================
@app.errorhandler(ValidationError)
def handle_validation(e):
    return error("Invalid data", 400, errors=validation_errors(e))


@app.errorhandler(NoValidQuestions)
def handle_no_questions(e):
    return error(e.message, 400)


@app.errorhandler(InvalidAnswer)
def handle_invalid_answer(e):
    return error(e.message, 400)


@app.errorhandler(InvalidTransition)
def handle_invalid_transition(e):
    return error(e.message, 409)


@app.errorhandler(PersistenceError)
def handle_persistence(e):
    return error(e.message, 503)


@app.errorhandler(RequestEntityTooLarge)
def handle_too_large(e):
    limit = app.config["MAX_CONTENT_LENGTH"] // (1024 * 1024)
    return error(f"File too large (limit {limit} MB)", 413)


@app.errorhandler(HTTPException)
def handle_http(e):
    return error(e.description or e.name, e.code)

# =========================
# Test APIs
# =========================
@app.route("/api/tests", methods=["POST"])
def create_test():
    data = TestIn.model_validate(request.get_json(silent=True) or {})
    test = storage.create_test(data.model_dump())
    logger.info("Created test %s (%s)", test.id, test.title)
    return jsonify(test.to_dict()), 201


@app.route("/api/tests")
def list_tests():
    return jsonify([t.to_dict() for t in storage.get_all_tests()])


@app.route("/api/tests/<test_id>")
def get_test(test_id):
    test = storage.get_test(test_id)
    if not test:
        return error("Test not found", 404)
    return jsonify(test.to_dict())


@app.route("/api/tests/<test_id>/settings", methods=["PUT"])
def update_settings(test_id):
    data = TestSettingsIn.model_validate(request.get_json(silent=True) or {})
    test = storage.update_test_settings(test_id, data.model_dump(exclude_unset=True))
    if not test:
        return error("Test not found", 404)
    return jsonify(test.to_dict())


@app.route("/api/tests/<test_id>", methods=["DELETE"])
def delete_test(test_id):
    if not storage.delete_test(test_id):
        return error("Test not found", 404)
    for attempt_id in [k for k, s in SESSIONS.items() if s.test["id"] == test_id]:
        SESSIONS.pop(attempt_id, None)
    return jsonify({"message": "Test deleted successfully"})


@app.route("/api/tests/<test_id>/duplicate", methods=["POST"])
def duplicate_test(test_id):
    copy = storage.duplicate_test(test_id)
    if not copy:
        return error("Test not found", 404)
    return jsonify(copy.to_dict()), 201


@app.route("/api/tests/<test_id>/with-questions")
def test_with_questions(test_id):
    data = storage.get_test_with_questions(test_id)
    if not data:
        return error("Test not found", 404)
    return jsonify(data)


@app.route("/api/tests/<test_id>/stats")
def test_stats(test_id):
    stats = storage.get_test_stats(test_id)
    if not stats:
        return error("Test not found", 404)
    return jsonify(stats)

# =========================
# Question APIs
# =========================
def validate_batch(rows):
    """Validate every row before inserting any; the first bad row aborts the batch."""
    validated = []
    for index, row in enumerate(rows, start=1):
        try:
            validated.append(QuestionIn.model_validate(row).model_dump())
        except ValidationError as e:
            return None, error(f"Question {index}: invalid question data", 400,
                               errors=validation_errors(e))
    return validated, None


@app.route("/api/tests/<test_id>/questions", methods=["POST"])
def add_questions(test_id):
    if not storage.get_test(test_id):
        return error("Test not found", 404)

    data = request.get_json(silent=True) or {}
    rows = data.get("questions")
    if not isinstance(rows, list):
        return error("Questions must be an array", 400)

    validated, failure = validate_batch(rows)
    if failure:
        return failure
    created = storage.create_questions(test_id, validated)
    return jsonify([q.to_dict() for q in created]), 201


@app.route("/api/tests/<test_id>/questions")
def list_questions(test_id):
    return jsonify(question_dicts(test_id))


@app.route("/api/tests/<test_id>/questions/upload", methods=["POST"])
def upload_questions(test_id):
    if not storage.get_test(test_id):
        return error("Test not found", 404)

    file = request.files.get("file")
    if not file or not file.filename:
        return error("No file uploaded", 400)

    logger.info("Question upload received: %s", file.filename)
    records = parse_upload(file.read(), file.filename)
    if not records:
        raise NoValidQuestions()

    validated, failure = validate_batch(records)
    if failure:
        return failure
    created = storage.create_questions(test_id, validated)
    return jsonify({
        "message": f"Successfully uploaded {len(created)} questions",
        "count": len(created),
        "questions": [q.to_dict() for q in created],
    }), 201

# =========================
# Attempt APIs
# =========================
@app.route("/api/tests/<test_id>/attempts", methods=["POST"])
def start_attempt(test_id):
    test = storage.get_test(test_id)
    if not test:
        return error("Test not found", 404)

    data = AttemptIn.model_validate(request.get_json(silent=True) or {})
    questions = question_dicts(test_id)
    if not questions:
        return error("Test has no questions", 400)

    live = AttemptSession(test.to_dict(), questions, STORE)
    attempt = live.start(data.studentName)
    SESSIONS[live.attempt_id] = live
    payload = dict(attempt)
    payload["session"] = live.view()
    return jsonify(payload), 201


@app.route("/api/tests/<test_id>/attempts")
def list_attempts(test_id):
    return jsonify([a.to_dict() for a in storage.get_test_attempts(test_id)])


@app.route("/api/tests/<test_id>/attempts/export")
def export_attempts(test_id):
    test = storage.get_test(test_id)
    if not test:
        return error("Test not found", 404)
    return send_file(
        io.BytesIO(storage.export_attempts(test_id)),
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        as_attachment=True,
        download_name=f"{test.title}-attempts.xlsx",
    )


@app.route("/api/attempts/<attempt_id>")
def get_attempt(attempt_id):
    att = storage.get_attempt(attempt_id)
    if not att:
        return error("Test attempt not found", 404)
    return jsonify(att.to_dict())


@app.route("/api/attempts/<attempt_id>", methods=["PUT"])
def update_attempt(attempt_id):
    att = storage.get_attempt(attempt_id)
    if not att:
        return error("Test attempt not found", 404)
    if att.is_completed:
        return error("Test attempt already submitted", 409)

    changes = AttemptUpdate.model_validate(request.get_json(silent=True) or {}).changes()
    if changes.get("isCompleted"):
        # score and totalMarks are graded from the answers, not taken from the client
        answers = changes.get("answers", storage.get_draft_answers(attempt_id))
        sequence = ordered(question_dicts(att.test_id), att.question_order)
        score, total = grade(sequence, answers)
        if "score" in changes and changes["score"] != score:
            logger.warning("Attempt %s: client score %s replaced by %s",
                           attempt_id, changes["score"], score)
        changes.update(answers=dict(answers), score=score, totalMarks=total)
        if "timeTaken" not in changes:
            elapsed = (datetime.utcnow() - att.started_at).total_seconds()
            changes["timeTaken"] = max(0, int(elapsed))
    elif changes.get("score", att.score) > changes.get("totalMarks", att.total_marks):
        return error("score cannot exceed totalMarks", 400)

    updated = STORE.update_attempt(attempt_id, changes)
    # any live session for this attempt is stale now
    SESSIONS.pop(attempt_id, None)
    return jsonify(updated)

# =========================
# Session APIs
# =========================
def ticked_session(attempt_id):
    live = load_session(attempt_id)
    if live:
        live.tick()
    return live


@app.route("/api/attempts/<attempt_id>/session")
def session_view(attempt_id):
    live = ticked_session(attempt_id)
    if not live:
        return error("Test attempt not found", 404)
    return jsonify(live.view())


@app.route("/api/attempts/<attempt_id>/answers", methods=["PUT"])
def select_answer(attempt_id):
    live = ticked_session(attempt_id)
    if not live:
        return error("Test attempt not found", 404)

    data = request.get_json(silent=True) or {}
    question_id = data.get("questionId")
    if data.get("answer") in (None, ""):
        live.clear_answer(question_id)
    else:
        live.select_answer(question_id, data.get("answer"))
    STORE.save_answer(attempt_id, question_id, live.answers.get(question_id))
    return jsonify(live.view())


@app.route("/api/attempts/<attempt_id>/navigate", methods=["POST"])
def navigate(attempt_id):
    live = ticked_session(attempt_id)
    if not live:
        return error("Test attempt not found", 404)

    direction = (request.get_json(silent=True) or {}).get("direction")
    if direction == "next":
        live.next()
    elif direction == "previous":
        live.previous()
    else:
        return error("direction must be 'next' or 'previous'", 400)
    return jsonify(live.view())


@app.route("/api/attempts/<attempt_id>/flag", methods=["POST"])
def toggle_flag(attempt_id):
    live = ticked_session(attempt_id)
    if not live:
        return error("Test attempt not found", 404)

    live.toggle_flag((request.get_json(silent=True) or {}).get("questionId"))
    return jsonify(live.view())


@app.route("/api/attempts/<attempt_id>/submit", methods=["POST"])
def submit_attempt(attempt_id):
    live = ticked_session(attempt_id)
    if not live:
        return error("Test attempt not found", 404)

    attempt = live.submit()
    payload = dict(attempt)
    payload["timedOut"] = live.timed_out
    return jsonify(payload)


@app.route("/api/attempts/<attempt_id>/review")
def review_attempt(attempt_id):
    live = ticked_session(attempt_id)
    if not live:
        return error("Test attempt not found", 404)
    if live.state is not SessionState.COMPLETED:
        return error("Review is available after submission", 409)
    return jsonify({"attempt": live.attempt, "questions": live.review()})

# =========================
# Health Check
# =========================
@app.route("/api/health")
def health():
    return jsonify({"status": "ok"})

# =========================
# Local Run
# =========================
if __name__ == "__main__":
    app.run(debug=True)
