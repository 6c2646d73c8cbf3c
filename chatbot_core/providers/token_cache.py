"""Provider 凭证缓存。

Coze 的 access token 通过 OAuth 换取，签发代价高且有频率限制，
因此在进程内缓存：读路径无锁，只在过期时由一个线程加锁刷新，
其余线程拿到锁后会发现已经刷新过，直接复用。
缓存时长比 token 实际有效期短（默认 14 分钟），提前刷新。
"""

import threading
import time
from typing import Callable, Optional, Tuple


class TokenCache:
    def __init__(
        self,
        fetch: Callable[[], str],
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # (token, 本地过期时间)，整体替换，读到的永远是一致的一对
        self._entry: Optional[Tuple[str, float]] = None

    def get(self) -> str:
        entry = self._entry
        if entry and entry[1] > self._clock():
            return entry[0]
        with self._lock:
            entry = self._entry
            if entry and entry[1] > self._clock():
                return entry[0]
            token = self._fetch()
            self._entry = (token, self._clock() + self._ttl)
            return token

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None
