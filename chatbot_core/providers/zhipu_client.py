"""智谱 / BigModel Provider 适配器。

接口与 OpenAI 的 chat/completions 一致，差别只在鉴权：
- API Key 形如 "<id>.<secret>"；
- 每次请求都用 secret 对 {api_key, exp, timestamp} 做 HS256 签名，
  生成有效期约 1 小时的 Bearer token，token 不做缓存。
"""

import time
from typing import Dict

import jwt

from chatbot_core.domain.exceptions import MissingCredential
from chatbot_core.providers.openai_compat_client import OpenAICompatClient

TOKEN_TTL_MS = 3600 * 1000


class ZhipuClient(OpenAICompatClient):
    name = "zhipu"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._sign_token()}",
            "Content-Type": "application/json",
        }

    def _sign_token(self) -> str:
        parts = (self._api_key or "").split(".")
        if len(parts) != 2 or not all(parts):
            raise MissingCredential(code="INVALID_API_KEY", message="ZHIPU_API_KEY must look like '<id>.<secret>'")
        key_id, secret = parts
        now_ms = int(time.time() * 1000)
        claims = {
            "api_key": key_id,
            "exp": now_ms + TOKEN_TTL_MS,
            "timestamp": now_ms,
        }
        return jwt.encode(claims, secret, algorithm="HS256", headers={"sign_type": "SIGN"})
