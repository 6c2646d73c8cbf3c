"""访问令牌签发与校验。

只做身份识别：令牌里携带 user_id，校验通过后返回 Identity。
会话是否属于该用户由存储层判断。
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from chatbot_core.config.settings import settings
from chatbot_core.domain.exceptions import InvalidToken


@dataclass(frozen=True)
class Identity:
    user_id: int


class TokenVerifier:
    def __init__(self, secret: str, algorithm: str = "HS256", expire_minutes: int = 60 * 24):
        self._secret = secret
        self._algorithm = algorithm
        self._expire_minutes = expire_minutes

    @classmethod
    def from_settings(cls, cfg=settings) -> "TokenVerifier":
        return cls(cfg.jwt_secret, cfg.jwt_algorithm, cfg.access_token_expire_minutes)

    def issue(self, user_id: int) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "sub": str(user_id),
            "user_id": user_id,
            "iat": now,
            "exp": now + timedelta(minutes=self._expire_minutes),
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> Identity:
        if not token:
            raise InvalidToken(code="INVALID_TOKEN", message="missing access token")
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            raise InvalidToken(code="TOKEN_EXPIRED", message="access token expired")
        except jwt.PyJWTError as e:
            raise InvalidToken(code="INVALID_TOKEN", message=f"invalid access token: {e}")
        user_id = claims.get("user_id")
        if not isinstance(user_id, int) or user_id <= 0:
            raise InvalidToken(code="INVALID_TOKEN", message="access token carries no user")
        return Identity(user_id=user_id)
