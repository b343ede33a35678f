import uuid
from unittest.mock import Mock

from sqlalchemy.exc import OperationalError

from leadflow.services.notification_service import (
    PostCommitEvents,
    hot_lead_event,
    new_message_event,
    preview,
)


class TestPreview:
    def test_truncates_at_100(self):
        assert preview("x" * 150) == "x" * 100 + "..."

    def test_short_text_untouched(self):
        assert preview("hello") == "hello"
        assert preview(None) == ""


class TestEventBuilders:
    def test_new_message_is_high_priority(self):
        owner = uuid.uuid4()
        event = new_message_event(uuid.uuid4(), uuid.uuid4(), "Joana", "Oi", user_id=owner)
        assert event.priority == "high"
        assert event.user_id == owner
        assert event.title == "New message from Joana"

    def test_hot_lead(self):
        event = hot_lead_event(uuid.uuid4(), uuid.uuid4(), "Carlos", 85, "Asked for payment options")
        assert event.type == "hot_lead"
        assert "85" in event.title


class TestPostCommitEvents:
    def test_flush_writes_and_runs_callbacks(self, db_session):
        events = PostCommitEvents()
        callback = Mock()
        events.notify(new_message_event(uuid.uuid4(), uuid.uuid4(), "Joana", "Oi"))
        events.after_commit(callback)
        assert len(events) == 2

        written = events.flush(db_session)

        assert written == 1
        db_session.add.assert_called_once()
        db_session.commit.assert_called_once()
        callback.assert_called_once()
        assert len(events) == 0

    def test_notification_failure_does_not_stop_callbacks(self, db_session):
        events = PostCommitEvents()
        callback = Mock()
        db_session.commit.side_effect = OperationalError("INSERT", {}, Exception("down"))
        events.notify(new_message_event(uuid.uuid4(), uuid.uuid4(), "Joana", "Oi"))
        events.after_commit(callback)

        assert events.flush(db_session) == 0
        db_session.rollback.assert_called_once()
        callback.assert_called_once()

    def test_failing_callback_is_contained(self, db_session):
        events = PostCommitEvents()
        second = Mock()
        events.after_commit(Mock(side_effect=RuntimeError("boom")))
        events.after_commit(second)

        events.flush(db_session)

        second.assert_called_once()
        db_session.commit.assert_not_called()
