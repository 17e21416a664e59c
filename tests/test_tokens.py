import base64
import json
import time

import pytest

from authcore.service.errors import InitializationError
from authcore.service.tokens import AccessTokenSigner
from conftest import TEST_JWT_SECRET


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _decode_segment(segment: str) -> dict:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(segment + padding))


@pytest.fixture
def token_signer():
    return AccessTokenSigner(TEST_JWT_SECRET, issuer="authcore", audience="clients", ttl_minutes=5)


class TestAccessTokenSigner:
    @pytest.mark.parametrize("secret", [None, "", "too-short"])
    def test_rejects_weak_secret(self, secret):
        with pytest.raises(InitializationError):
            AccessTokenSigner(secret, issuer="authcore", audience="clients")

    def test_rejects_non_positive_ttl(self):
        with pytest.raises(InitializationError):
            AccessTokenSigner(TEST_JWT_SECRET, issuer="a", audience="b", ttl_minutes=0)

    def test_issue_and_decode(self, token_signer):
        token, exp = token_signer.issue(user_id="u-1", email="a@student.example.edu", role="mahasiswa")

        claims = token_signer.decode(token)

        assert claims["sub"] == "u-1"
        assert claims["email"] == "a@student.example.edu"
        assert claims["role"] == "mahasiswa"
        assert claims["token_type"] == "access"
        assert claims["exp"] == exp
        assert token_signer.expires_in == 300
        assert abs(exp - (time.time() + 300)) < 5

    def test_each_token_has_unique_id(self, token_signer):
        first, _ = token_signer.issue(user_id="u-1", email="a@x.example.edu", role="")
        second, _ = token_signer.issue(user_id="u-1", email="a@x.example.edu", role="")

        assert token_signer.decode(first)["jti"] != token_signer.decode(second)["jti"]

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens(self, token_signer, token):
        assert token_signer.decode(token) is None

    def test_rejects_modified_payload(self, token_signer):
        token, _ = token_signer.issue(user_id="u-1", email="a@x.example.edu", role="mahasiswa")
        header, payload, signature = token.split(".")
        claims = _decode_segment(payload)
        claims["role"] = "admin"

        assert token_signer.decode(f"{header}.{_segment(claims)}.{signature}") is None

    def test_rejects_other_algorithms(self, token_signer):
        token, _ = token_signer.issue(user_id="u-1", email="a@x.example.edu", role="")
        _, payload, signature = token.split(".")
        header = _segment({"alg": "none", "typ": "JWT"})

        assert token_signer.decode(f"{header}.{payload}.{signature}") is None
        assert token_signer.decode(f"{header}.{payload}.") is None

    def test_rejects_other_secret(self, token_signer):
        other = AccessTokenSigner("x" * 40, issuer="authcore", audience="clients")
        token, _ = other.issue(user_id="u-1", email="a@x.example.edu", role="")

        assert token_signer.decode(token) is None

    def test_rejects_wrong_audience_and_issuer(self, token_signer):
        wrong_audience = AccessTokenSigner(TEST_JWT_SECRET, issuer="authcore", audience="elsewhere")
        wrong_issuer = AccessTokenSigner(TEST_JWT_SECRET, issuer="someone", audience="clients")

        for signer in (wrong_audience, wrong_issuer):
            token, _ = signer.issue(user_id="u-1", email="a@x.example.edu", role="")
            assert token_signer.decode(token) is None

    def test_expiry_honours_leeway(self, token_signer, monkeypatch):
        token, exp = token_signer.issue(user_id="u-1", email="a@x.example.edu", role="")

        monkeypatch.setattr(time, "time", lambda: exp + 60)
        assert token_signer.decode(token) is not None

        monkeypatch.setattr(time, "time", lambda: exp + 121)
        assert token_signer.decode(token) is None
