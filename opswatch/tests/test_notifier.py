"""Tests for notification documents and SMTP delivery."""

import uuid
from datetime import datetime

import pytest

from opswatch.src.models.schemas import AuthorizationRequestResponse, ExecutionHistoryResponse
from opswatch.src.services import notifier as notifier_module
from opswatch.src.services.errors import UpstreamError
from opswatch.src.services.notifier import (
    EmailNotifier,
    render_authorization_request,
    render_execution_history,
)

def make_history(**overrides):
    values = dict(
        id=uuid.uuid4(),
        pipeline_run_id=uuid.uuid4(),
        requester_id=uuid.uuid4(),
        requester_name="Rita",
        approver_name="Arlo",
        status="rejected",
        started_at=datetime(2024, 5, 1, 12, 0, 0),
        completed_at=datetime(2024, 5, 1, 12, 3, 0),
        execution_time=180.0,
        error_message="Service billing pipeline 7 failed with status failed",
        macro_service_name="storefront",
        micro_service_names=["billing", "cart"],
    )
    values.update(overrides)
    return ExecutionHistoryResponse(**values)

def test_render_authorization_request():
    request = AuthorizationRequestResponse(
        id=uuid.uuid4(),
        pipeline_run_id=uuid.uuid4(),
        requester_id=uuid.uuid4(),
        requester_name="Rita <ops>",
        status="pending",
        macro_service_name="storefront",
        micro_service_names=["billing"],
    )
    html = render_authorization_request(request)

    assert "Authorization Request Details" in html
    assert "storefront" in html
    assert "<li>billing</li>" in html
    # names are escaped
    assert "Rita &lt;ops&gt;" in html

def test_render_history_with_error():
    html = render_execution_history(make_history())
    assert "Pipeline Execution History" in html
    assert "180.0s" in html
    assert "failed with status failed" in html

def test_render_history_without_services():
    html = render_execution_history(make_history(micro_service_names=[], status="completed",
                                                 error_message=None))
    assert "No microservices listed" in html
    assert "Error:" not in html

async def test_send_skipped_without_smtp_host():
    notifier = EmailNotifier(host="")
    await notifier.send_html("Pipeline Triggered", "<p>hi</p>", ["rita@example.com"])

async def test_empty_recipients_rejected():
    notifier = EmailNotifier(host="smtp.example.com")
    with pytest.raises(UpstreamError, match="No recipients"):
        await notifier.send_html("Pipeline Triggered", "<p>hi</p>", ["", None])

class FakeSMTP:
    instances = []
    fail = False

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def send_message(self, message):
        if FakeSMTP.fail:
            raise notifier_module.smtplib.SMTPException("relay denied")
        self.sent.append(message)

@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail = False
    monkeypatch.setattr(notifier_module.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP

async def test_send_html_over_smtp(fake_smtp):
    notifier = EmailNotifier(host="smtp.example.com", port=2525, username="bot", password="pw",
                             sender="opswatch@example.com", starttls=True)
    await notifier.send_html("Pipeline Has Been Approved", "<p>approved</p>", ["rita@example.com"])

    smtp = fake_smtp.instances[0]
    assert (smtp.host, smtp.port) == ("smtp.example.com", 2525)
    assert smtp.started_tls
    assert smtp.logged_in == ("bot", "pw")

    message = smtp.sent[0]
    assert message["Subject"] == "Pipeline Has Been Approved"
    assert message["To"] == "rita@example.com"
    assert message["From"] == "opswatch@example.com"
    html_part = message.get_body(preferencelist=("html",))
    assert "<p>approved</p>" in html_part.get_content()

async def test_smtp_failure_raises_upstream_error(fake_smtp):
    fake_smtp.fail = True
    notifier = EmailNotifier(host="smtp.example.com", starttls=False)
    with pytest.raises(UpstreamError, match="relay denied"):
        await notifier.send_html("Pipeline Triggered", "<p>hi</p>", ["rita@example.com"])
