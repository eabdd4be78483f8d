import os

os.environ["DATABASE_URL"] = "sqlite://"

import pytest

from app import app as flask_app, SESSIONS
from models import db


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        SESSIONS.clear()
        yield flask_app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()
