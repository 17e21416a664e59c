import json

import httpx
import pytest

from authcore.service.identity import (
    IdentityProviderError,
    SupabaseIdentityDelegate,
    classify_provider_error,
)

SERVICE_KEY = "service-role-key"

SESSION_BODY = {
    "access_token": "at-1",
    "refresh_token": "rt-1",
    "token_type": "bearer",
    "expires_in": 3600,
    "user": {
        "id": "ext-1",
        "email": "new@student.example.edu",
        "user_metadata": {"name": "New Student"},
    },
}


class Recorder:
    def __init__(self, status_code=200, body=None, content=None):
        self.requests: list[httpx.Request] = []
        self.status_code = status_code
        self.body = body
        self.content = content

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.content is not None:
            return httpx.Response(self.status_code, content=self.content)
        return httpx.Response(self.status_code, json=self.body if self.body is not None else {})

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> dict:
        return json.loads(self.last.content)


def _delegate(recorder) -> SupabaseIdentityDelegate:
    client = httpx.Client(transport=httpx.MockTransport(recorder))
    return SupabaseIdentityDelegate("https://project.supabase.co/", SERVICE_KEY, client=client)


class TestEndpoints:
    def test_register_posts_signup(self):
        recorder = Recorder(body=SESSION_BODY)

        session = _delegate(recorder).register("new@student.example.edu", "Password123", "New Student")

        request = recorder.last
        assert request.method == "POST"
        assert str(request.url) == "https://project.supabase.co/auth/v1/signup"
        assert request.headers["apikey"] == SERVICE_KEY
        assert recorder.last_json() == {
            "email": "new@student.example.edu",
            "password": "Password123",
            "email_confirm": True,
            "data": {"name": "New Student"},
        }
        assert session.user.id == "ext-1"
        assert session.user.name == "New Student"
        assert session.refresh_token == "rt-1"
        assert session.expires_in == 3600
        assert session.has_tokens

    def test_register_pending_confirmation_returns_bare_user(self):
        recorder = Recorder(body={"id": "ext-2", "email": "new@student.example.edu"})

        session = _delegate(recorder).register("new@student.example.edu", "Password123", "Fallback")

        assert session.user.id == "ext-2"
        assert session.user.name == "Fallback"
        assert session.access_token == ""
        assert not session.has_tokens

    def test_login_uses_password_grant(self):
        recorder = Recorder(body=SESSION_BODY)

        session = _delegate(recorder).login("new@student.example.edu", "Password123")

        assert recorder.last.url.path == "/auth/v1/token"
        assert recorder.last.url.params["grant_type"] == "password"
        assert recorder.last_json() == {"email": "new@student.example.edu", "password": "Password123"}
        assert session.access_token == "at-1"

    def test_refresh_uses_refresh_grant(self):
        recorder = Recorder(body=SESSION_BODY)

        _delegate(recorder).refresh("rt-0")

        assert recorder.last.url.params["grant_type"] == "refresh_token"
        assert recorder.last_json() == {"refresh_token": "rt-0"}

    def test_logout_sends_user_bearer(self):
        recorder = Recorder(status_code=204, content=b"")

        _delegate(recorder).logout("at-1")

        assert recorder.last.url.path == "/auth/v1/logout"
        assert recorder.last.headers["Authorization"] == "Bearer at-1"

    def test_password_reset_carries_redirect(self):
        recorder = Recorder()

        _delegate(recorder).request_password_reset(
            "new@student.example.edu", "https://app.example.edu/reset-password"
        )

        assert recorder.last.url.path == "/auth/v1/recover"
        assert recorder.last_json()["redirect_to"] == "https://app.example.edu/reset-password"

    def test_delete_user_uses_service_key(self):
        recorder = Recorder()

        _delegate(recorder).delete_user("ext-1")

        assert recorder.last.method == "DELETE"
        assert recorder.last.url.path == "/auth/v1/admin/users/ext-1"
        assert recorder.last.headers["Authorization"] == f"Bearer {SERVICE_KEY}"

    def test_verify_token(self):
        recorder = Recorder(body=SESSION_BODY["user"])

        user = _delegate(recorder).verify_token("at-1")

        assert recorder.last.method == "GET"
        assert recorder.last.url.path == "/auth/v1/user"
        assert user.id == "ext-1"
        assert user.email == "new@student.example.edu"

    def test_resend_confirmation(self):
        recorder = Recorder()

        _delegate(recorder).resend_confirmation("new@student.example.edu")

        assert recorder.last.url.path == "/auth/v1/resend"
        assert recorder.last_json() == {"type": "signup", "email": "new@student.example.edu"}


class TestFailures:
    def test_error_response_is_classified(self):
        recorder = Recorder(
            status_code=422, body={"error_code": "user_already_exists", "msg": "User already registered"}
        )

        with pytest.raises(IdentityProviderError) as excinfo:
            _delegate(recorder).register("new@student.example.edu", "Password123", "New")

        assert excinfo.value.code == "email_taken"
        assert excinfo.value.status_code == 422
        assert excinfo.value.message == "User already registered"

    def test_non_json_error_body(self):
        recorder = Recorder(status_code=502, content=b"<html>bad gateway</html>")

        with pytest.raises(IdentityProviderError) as excinfo:
            _delegate(recorder).login("a@student.example.edu", "pw")

        assert excinfo.value.code == "unknown"

    def test_malformed_success_body(self):
        recorder = Recorder(status_code=200, content=b"not json")

        with pytest.raises(IdentityProviderError) as excinfo:
            _delegate(recorder).login("a@student.example.edu", "pw")

        assert excinfo.value.code == "unknown"

    def test_missing_user_in_session(self):
        recorder = Recorder(body={"access_token": "at", "user": None})

        with pytest.raises(IdentityProviderError):
            _delegate(recorder).login("a@student.example.edu", "pw")

    def test_connection_error_is_transport(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(refuse))
        delegate = SupabaseIdentityDelegate("https://project.supabase.co", SERVICE_KEY, client=client)

        with pytest.raises(IdentityProviderError) as excinfo:
            delegate.login("a@student.example.edu", "pw")

        assert excinfo.value.code == "transport"

    def test_timeout_is_transport(self):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = httpx.Client(transport=httpx.MockTransport(slow))
        delegate = SupabaseIdentityDelegate("https://project.supabase.co", SERVICE_KEY, client=client)

        with pytest.raises(IdentityProviderError) as excinfo:
            delegate.refresh("rt")

        assert excinfo.value.code == "transport"


@pytest.mark.parametrize(
    "payload, status_code, expected",
    [
        ({"msg": "User already registered"}, 422, "email_taken"),
        ({"error_code": "email_exists"}, 422, "email_taken"),
        ({"error": "invalid_grant", "error_description": "Invalid login credentials"}, 400, "invalid_credentials"),
        ({"error": "invalid_grant"}, 400, "invalid_credentials"),
        ({"msg": "User not found"}, 404, "user_not_found"),
        ({"error_code": "bad_jwt", "msg": "invalid JWT"}, 401, "invalid_token"),
        ({"error_code": "refresh_token_not_found"}, 400, "refresh_token_expired"),
        ({"msg": "Password should be at least 6 characters"}, 422, "weak_password"),
        ({}, 429, "rate_limited"),
        ({"error_code": "over_email_send_rate_limit"}, 400, "rate_limited"),
        ({"msg": "Email not confirmed"}, 400, "email_not_confirmed"),
        ({"msg": "Something else broke"}, 500, "unknown"),
        ("not a dict", 500, "unknown"),
    ],
)
def test_classify_provider_error(payload, status_code, expected):
    assert classify_provider_error(payload, status_code) == expected
