# tests/test_emails.py

import requests

import config
import emails


class _Response:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


def _configure(monkeypatch):
    monkeypatch.setattr(config, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(config, "FROM_EMAIL", "noreply@example.com")


def test_missing_credentials_skip_sending(monkeypatch) -> None:
    def fail(*args, **kwargs):
        raise AssertionError("should not call Resend")

    monkeypatch.setattr(requests, "post", fail)
    assert emails.send_email("a@example.com", "hi", "<p>hi</p>") is False


def test_posts_to_resend(monkeypatch) -> None:
    _configure(monkeypatch)
    calls = []

    def fake_post(url, headers, json, timeout):
        calls.append((url, headers, json))
        return _Response(200)

    monkeypatch.setattr(requests, "post", fake_post)

    assert emails.send_project_invitation_email(
        "b@example.com", "Apollo", "Ada", "viewer", "tok123", "2024-01-01T00:00:00.000Z"
    )
    url, headers, body = calls[0]
    assert url == emails.RESEND_URL
    assert headers["Authorization"] == "Bearer re_test"
    assert body["to"] == ["b@example.com"]
    assert "/invite/tok123" in body["html"]
    assert "Viewer" in body["html"]


def test_rejected_or_failed_requests_return_false(monkeypatch) -> None:
    _configure(monkeypatch)
    monkeypatch.setattr(requests, "post", lambda *a, **kw: _Response(422, "bad"))
    assert emails.send_verification_email("a@example.com", "t") is False

    def boom(*args, **kwargs):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(requests, "post", boom)
    assert emails.send_password_reset_email("a@example.com", "t") is False
