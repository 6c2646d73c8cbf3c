from datetime import datetime, timedelta, timezone

import jwt
import pytest

from chatbot_core.domain.exceptions import InvalidToken
from chatbot_core.infrastructure.auth.tokens import TokenVerifier


def test_issue_and_verify():
    verifier = TokenVerifier("s3cret-key-for-tests-0123456789abcdef", "HS256", 30)
    assert verifier.verify(verifier.issue(42)).user_id == 42


def test_verify_rejects_wrong_secret_and_garbage():
    token = TokenVerifier("one-secret-key-value-0123456789abcdef", "HS256", 30).issue(42)
    verifier = TokenVerifier("other-secret-key-value-0123456789abcdef", "HS256", 30)
    with pytest.raises(InvalidToken):
        verifier.verify(token)
    with pytest.raises(InvalidToken):
        verifier.verify("garbage")
    with pytest.raises(InvalidToken):
        verifier.verify("")


def test_verify_rejects_expired_token():
    secret = "s3cret-key-for-tests-0123456789abcdef"
    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    token = jwt.encode({"user_id": 42, "exp": past}, secret, algorithm="HS256")
    with pytest.raises(InvalidToken) as ei:
        TokenVerifier(secret).verify(token)
    assert ei.value.code == "TOKEN_EXPIRED"


def test_verify_rejects_token_without_user():
    secret = "s3cret-key-for-tests-0123456789abcdef"
    token = jwt.encode({"sub": "x"}, secret, algorithm="HS256")
    with pytest.raises(InvalidToken):
        TokenVerifier(secret).verify(token)
