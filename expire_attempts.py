from app import app, load_session
from attempt_session import SessionState
import storage


def expire_attempts(now=None):
    """Force-submit every unfinished attempt whose time is up. Returns the count."""
    expired = 0
    for att in storage.get_incomplete_attempts():
        live = load_session(att.id)
        live.tick(now)
        if live.state is SessionState.COMPLETED:
            expired += 1
    return expired


if __name__ == "__main__":
    with app.app_context():
        count = expire_attempts()
        print(f"Expired {count} attempts")
