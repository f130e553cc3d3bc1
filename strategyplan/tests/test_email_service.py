import httpx
import pytest
from unittest.mock import Mock, patch

from strategyplan.core.config import settings
from strategyplan.features.email.service import (
    RESEND_API_URL,
    EmailDeliveryError,
    LogEmailSender,
    ResendEmailSender,
    get_email_sender,
    render_welcome_email,
)


def test_welcome_email_contents():
    message = render_welcome_email("a@b.test", "Ada", "Xy7!pQ", "Team", login_url="https://app.test/login")
    assert message.subject == "Welcome to StrategyPlan"
    assert "Temporary password: Xy7!pQ" in message.text
    assert "https://app.test/login" in message.html


def test_resend_posts_message():
    response = Mock()
    with patch("httpx.post", return_value=response) as post:
        ResendEmailSender("re_123", sender="Billing <b@test>").send(render_welcome_email("a@b.test", "Ada", "pw", "Pro"))

    args, kwargs = post.call_args
    assert args == (RESEND_API_URL,)
    assert kwargs["headers"] == {"Authorization": "Bearer re_123"}
    assert kwargs["json"]["to"] == ["a@b.test"]
    assert kwargs["json"]["from"] == "Billing <b@test>"
    response.raise_for_status.assert_called_once()


def test_resend_failure_raises_delivery_error():
    with patch("httpx.post", side_effect=httpx.ConnectError("down")):
        with pytest.raises(EmailDeliveryError):
            ResendEmailSender("re_123").send(render_welcome_email("a@b.test", "Ada", "pw", "Pro"))


def test_sender_selection(monkeypatch):
    monkeypatch.setattr(settings, "RESEND_API_KEY", None)
    assert isinstance(get_email_sender(), LogEmailSender)
    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_123")
    assert isinstance(get_email_sender(), ResendEmailSender)
