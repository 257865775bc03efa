import pytest
import requests

from tests.conftest import FakeHTTPResponse
from tradelens.app.common.config import reset_config
from tradelens.app.notifications.email_queue import (
    TEMPLATE_IDS,
    EmailDeliveryError,
    build_brevo_payload,
    process_email_queue,
)
from tradelens.app.notifications.notify import create_notification, enqueue_email


@pytest.fixture
def brevo(monkeypatch):
    monkeypatch.setenv("BREVO_API_KEY", "brevo-key")
    monkeypatch.setenv("EMAIL_MAX_RETRIES", "2")
    reset_config()

    sent = []

    def fake_post(url, json=None, headers=None, timeout=None):
        sent.append({"url": url, "json": json, "headers": headers})
        return FakeHTTPResponse(201, {"messageId": f"<msg-{len(sent)}>"})

    monkeypatch.setattr("tradelens.app.notifications.email_queue.requests.post", fake_post)
    return sent


def queue(db, email_type="payment_success", **data):
    return enqueue_email(db, "user-1", "trader@example.com", email_type, "Subject", data)


def test_enqueue_email(db):
    row = queue(db, amount=19.99)
    assert row["status"] == "pending"
    assert row["retry_count"] == 0
    assert row["email_data"] == {"amount": 19.99}


def test_payload_uses_template():
    payload = build_brevo_payload(
        {"recipient_email": "a@b.c", "email_type": "welcome", "subject": "Hi", "email_data": {}}
    )
    assert payload["templateId"] == TEMPLATE_IDS["welcome"]
    assert payload["to"] == [{"email": "a@b.c"}]
    assert "htmlContent" not in payload


def test_payload_falls_back_to_html():
    payload = build_brevo_payload(
        {
            "recipient_email": "a@b.c",
            "email_type": "custom",
            "email_data": {"html_content": "<p>Hello</p>"},
        }
    )
    assert payload["htmlContent"] == "<p>Hello</p>"
    assert "templateId" not in payload

    with pytest.raises(EmailDeliveryError):
        build_brevo_payload({"recipient_email": "a@b.c", "email_type": "custom"})


def test_process_requires_api_key(db):
    with pytest.raises(RuntimeError, match="BREVO_API_KEY"):
        process_email_queue(db)


def test_process_sends_pending(db, brevo):
    queue(db)
    queue(db, email_type="welcome")

    result = process_email_queue(db)
    assert result == {"processed": 2, "sent": 2, "failed": 0}
    assert brevo[0]["headers"]["api-key"] == "brevo-key"

    assert {r["status"] for r in db.rows("email_queue")} == {"sent"}
    logs = db.rows("email_logs")
    assert [log["status"] for log in logs] == ["sent", "sent"]
    assert logs[0]["provider_message_id"] == "<msg-1>"
    assert logs[0]["template_id"] == str(TEMPLATE_IDS["payment_success"])

    assert process_email_queue(db) == {"processed": 0, "sent": 0, "failed": 0}


def test_failed_sends_retry_until_cap(db, brevo, monkeypatch):
    queue(db)
    monkeypatch.setattr(
        "tradelens.app.notifications.email_queue.requests.post",
        lambda url, **kwargs: FakeHTTPResponse(500, text="upstream down"),
    )

    assert process_email_queue(db) == {"processed": 1, "sent": 0, "failed": 1}
    row = db.rows("email_queue")[0]
    assert row["status"] == "pending"
    assert row["retry_count"] == 1
    assert "upstream down" in row["error_message"]

    assert process_email_queue(db)["failed"] == 1
    row = db.rows("email_queue")[0]
    assert row["status"] == "failed"
    assert row["retry_count"] == 2

    # exhausted rows are no longer picked up
    assert process_email_queue(db)["processed"] == 0
    assert [log["status"] for log in db.rows("email_logs")] == ["failed", "failed"]


def test_network_errors_count_as_failures(db, brevo, monkeypatch):
    queue(db)

    def boom(url, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr("tradelens.app.notifications.email_queue.requests.post", boom)
    assert process_email_queue(db)["failed"] == 1
    assert db.rows("email_queue")[0]["retry_count"] == 1


def test_batch_size_and_order(db, brevo, monkeypatch):
    monkeypatch.setenv("EMAIL_BATCH_SIZE", "1")
    reset_config()
    db.seed(
        "email_queue",
        {"id": "late", "recipient_email": "b@x.y", "email_type": "welcome", "status": "pending",
         "retry_count": 0, "created_at": "2024-01-02T00:00:00+00:00"},
        {"id": "early", "recipient_email": "a@x.y", "email_type": "welcome", "status": "pending",
         "retry_count": 0, "created_at": "2024-01-01T00:00:00+00:00"},
    )

    assert process_email_queue(db)["processed"] == 1
    assert brevo[0]["json"]["to"] == [{"email": "a@x.y"}]


def test_create_notification(db):
    row = create_notification(db, "user-1", "Hello", "World", type="success")
    assert row["is_read"] is False
    assert db.rows("notifications")[0]["type"] == "success"


def test_create_notification_logs_failures(caplog):
    class BrokenDB:
        def table(self, name):
            raise ConnectionError("db down")

    assert create_notification(BrokenDB(), "user-1", "Hello", "World") is None
    assert "db down" in caplog.text


def test_cron_email_route(client, db):
    assert client.post("/cron/process-email-queue").status_code == 503
