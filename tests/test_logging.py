from pilotlog.logging import (
    SERVICE_NAME,
    _add_request_context,
    _redact_sensitive,
    get_correlation_id,
    set_correlation_id,
)


class TestRedaction:
    def test_credentials_are_masked(self):
        event = _redact_sensitive(
            None, "info", {"session_id": "a1b2c3d4e5f6a7b8", "password": "hunter2", "count": 3}
        )
        assert event["session_id"] == "a1***b8"
        assert event["password"] == "***"
        assert event["count"] == 3

    def test_emails_keep_domain(self):
        event = _redact_sensitive(None, "info", {"recipient_email": "pilot@example.com"})
        assert event["recipient_email"] == "p***@example.com"

    def test_setting_names_are_left_readable(self):
        event = _redact_sensitive(
            None, "warning", {"cookie_name": "auth_session", "session_cookie": "a1b2c3d4e5f6"}
        )
        assert event["cookie_name"] == "auth_session"
        assert event["session_cookie"] == "a1***f6"


class TestCorrelationId:
    def test_supplied_id_is_used(self):
        assert set_correlation_id("req-abc") == "req-abc"
        assert get_correlation_id() == "req-abc"

    def test_missing_id_is_generated(self):
        cid = set_correlation_id(None)
        assert len(cid) == 36

    def test_context_is_added_to_events(self):
        set_correlation_id("req-xyz")
        event = _add_request_context(None, "info", {"event": "login"})
        assert event["correlation_id"] == "req-xyz"
        assert event["service"] == SERVICE_NAME
