"""Tests for storage module."""
import threading

import pytest

from mocktwilio.errors import LifecycleError, NotFoundError
from mocktwilio.storage import Storage

ACCOUNT = "AC" + "x" * 32


def _create_message(storage, sid="SM1", **overrides):
    fields = {
        "message_sid": sid,
        "account_sid": ACCOUNT,
        "from_number": "+15550001111",
        "to_number": "+15550002222",
        "body": "Test message",
        "webhook_url": "http://example.com/hook",
    }
    fields.update(overrides)
    return storage.create_message(**fields)


def _create_call(storage, sid="CA1", **overrides):
    fields = {
        "call_sid": sid,
        "account_sid": ACCOUNT,
        "from_number": "+15550001111",
        "to_number": "+15550002222",
        "url": "http://example.com/answer",
    }
    fields.update(overrides)
    return storage.create_call(**fields)


class TestStorageInitialization:
    """Tests for storage setup."""

    def test_file_database_created(self, tmp_path):
        db_path = tmp_path / "nested" / "test.db"

        storage = Storage(str(db_path))
        storage.close()

        assert db_path.exists()

    def test_rows_from_previous_run_dropped(self, tmp_path):
        """A new Storage on an existing file starts with empty tables."""
        db_path = str(tmp_path / "test.db")
        storage = Storage(db_path)
        _create_message(storage)
        storage.close()

        storage = Storage(db_path)
        try:
            assert storage.get_all_messages() == []
            assert storage.get_statistics()["messages"] == 0
        finally:
            storage.close()

    def test_close_is_idempotent(self):
        storage = Storage()

        storage.close()
        storage.close()

        with pytest.raises(RuntimeError):
            storage.get_statistics()


class TestMessageOperations:
    """Tests for message rows."""

    def test_create_message(self, test_storage):
        message = _create_message(
            test_storage,
            media_urls=["http://example.com/a.png"],
            messaging_service_sid="MG1",
            num_segments=2,
        )

        assert message["message_sid"] == "SM1"
        assert message["status"] == "queued"
        assert message["media_urls"] == ["http://example.com/a.png"]
        assert message["messaging_service_sid"] == "MG1"
        assert message["num_segments"] == 2
        assert message["error_code"] is None
        assert message["created_at"] == message["updated_at"]

    def test_create_records_queued_event(self, test_storage):
        _create_message(test_storage)

        events = test_storage.get_delivery_events(message_sid="SM1")

        assert [event["status"] for event in events] == ["queued"]

    def test_duplicate_sid_rejected(self, test_storage):
        _create_message(test_storage)

        with pytest.raises(LifecycleError):
            _create_message(test_storage)

    def test_get_message(self, test_storage):
        _create_message(test_storage)

        assert test_storage.get_message("SM1")["body"] == "Test message"
        assert test_storage.get_message("SM404") is None

    def test_transition_message(self, test_storage):
        _create_message(test_storage)

        test_storage.transition_message("SM1", "sending")
        test_storage.transition_message("SM1", "sent")
        message = test_storage.transition_message("SM1", "failed", 30008)

        assert message["status"] == "failed"
        assert message["error_code"] == 30008
        events = test_storage.get_delivery_events(message_sid="SM1")
        assert [event["status"] for event in events] == ["queued", "sending", "sent", "failed"]

    def test_illegal_transition_rejected(self, test_storage):
        _create_message(test_storage)

        with pytest.raises(LifecycleError):
            test_storage.transition_message("SM1", "delivered")

        assert test_storage.get_message("SM1")["status"] == "queued"
        assert len(test_storage.get_delivery_events(message_sid="SM1")) == 1

    def test_terminal_state_is_final(self, test_storage):
        _create_message(test_storage)
        for status in ("sending", "sent", "delivered"):
            test_storage.transition_message("SM1", status)

        with pytest.raises(LifecycleError):
            test_storage.transition_message("SM1", "failed")

    def test_transition_unknown_message(self, test_storage):
        with pytest.raises(NotFoundError):
            test_storage.transition_message("SM404", "sending")

    def test_get_all_messages_newest_first(self, test_storage):
        for i in range(5):
            _create_message(test_storage, sid=f"SM{i}")

        messages = test_storage.get_all_messages(limit=2, offset=1)

        assert [m["message_sid"] for m in messages] == ["SM3", "SM2"]


class TestCallOperations:
    """Tests for call rows."""

    def test_create_call(self, test_storage):
        call = _create_call(test_storage, webhook_url="http://example.com/status")

        assert call["call_sid"] == "CA1"
        assert call["status"] == "queued"
        assert call["duration"] is None
        assert call["webhook_url"] == "http://example.com/status"

    def test_duplicate_sid_rejected(self, test_storage):
        _create_call(test_storage)

        with pytest.raises(LifecycleError):
            _create_call(test_storage)

    def test_transition_call_keeps_duration(self, test_storage):
        _create_call(test_storage)
        for status in ("initiated", "ringing", "in-progress"):
            test_storage.transition_call("CA1", status)

        call = test_storage.transition_call("CA1", "completed", duration=12)

        assert call["status"] == "completed"
        assert call["duration"] == 12
        events = test_storage.get_delivery_events(call_sid="CA1")
        assert [event["status"] for event in events] == [
            "queued", "initiated", "ringing", "in-progress", "completed",
        ]

    def test_ringing_can_end_without_answer(self, test_storage):
        _create_call(test_storage)
        test_storage.transition_call("CA1", "initiated")
        test_storage.transition_call("CA1", "ringing")

        call = test_storage.transition_call("CA1", "busy", duration=0)

        assert call["status"] == "busy"
        assert call["duration"] == 0

    def test_illegal_transition_rejected(self, test_storage):
        _create_call(test_storage)

        with pytest.raises(LifecycleError):
            test_storage.transition_call("CA1", "completed")

    def test_transition_unknown_call(self, test_storage):
        with pytest.raises(NotFoundError):
            test_storage.transition_call("CA404", "initiated")

    def test_get_call(self, test_storage):
        _create_call(test_storage)

        assert test_storage.get_call("CA1")["url"] == "http://example.com/answer"
        assert test_storage.get_call("CA404") is None
        assert len(test_storage.get_all_calls()) == 1


class TestCallbackLogs:
    """Tests for callback log rows."""

    def test_create_callback_log(self, test_storage):
        log_id = test_storage.create_callback_log(
            target_url="http://example.com/hook",
            payload='{"MessageSid": "SM1"}',
            status_code=200,
            response_body="OK",
            attempt_number=2,
            sid="SM1",
        )

        logs = test_storage.get_all_callback_logs()

        assert logs[0]["id"] == log_id
        assert logs[0]["sid"] == "SM1"
        assert logs[0]["attempt_number"] == 2

    def test_statistics(self, test_storage):
        _create_message(test_storage)
        _create_call(test_storage)
        test_storage.create_callback_log(target_url="http://example.com", payload="{}")

        assert test_storage.get_statistics() == {"messages": 1, "calls": 1, "callbacks": 1}


class TestConcurrentAccess:
    """Storage is shared by every lifecycle task and API thread."""

    def test_concurrent_writers(self, test_storage):
        def worker(n):
            for i in range(50):
                sid = f"SM{n}-{i}"
                _create_message(test_storage, sid=sid)
                test_storage.transition_message(sid, "sending")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        messages = test_storage.get_all_messages(limit=1000)
        assert len(messages) == 200
        assert {m["status"] for m in messages} == {"sending"}
