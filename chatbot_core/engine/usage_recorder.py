"""Provider 调用的用量记录。

每轮对话通过 UsageRecorder.begin() 拿到一个 UsageTracker，
tracker 内部的 recorded 标记保证一次调用只落一条记录：
成功与失败（或失败与取消）同时发生时，先到者生效。

用量写入失败只记日志，不影响返回给用户的结果。
"""

import logging
import threading
import time
from typing import Optional

from chatbot_core.domain.ai_model import AIModel
from chatbot_core.domain.exceptions import BusinessError
from chatbot_core.domain.models import ChatUsage
from chatbot_core.domain.usage import UsageRecord, UsageStore
from chatbot_core.infrastructure.logging.logger import logger


def estimate_tokens(text: str) -> int:
    """粗略估算：每 4 个字符约 1 个 token。"""

    return len(text or "") // 4


def estimate_cost(total_tokens: int, model: AIModel) -> float:
    return round(total_tokens / 1000 * (model.cost_per_1k_tokens or 0.0), 6)


class UsageTracker:
    """单次调用的用量记录器，只能结算一次。"""

    def __init__(self, store: UsageStore, user_id: int, model: AIModel, prompt: str):
        self._store = store
        self._user_id = user_id
        self._model = model
        self._prompt = prompt
        self._started = time.monotonic()
        self._lock = threading.Lock()
        self.recorded = False

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def succeed(
        self,
        response: str,
        usage: Optional[ChatUsage] = None,
        message_id: Optional[int] = None,
    ) -> Optional[UsageRecord]:
        if usage is not None and usage.total_tokens:
            # 厂商给出的精确统计优先
            prompt_tokens = usage.prompt_tokens
            completion_tokens = usage.completion_tokens
            total_tokens = usage.total_tokens
        else:
            prompt_tokens = estimate_tokens(self._prompt)
            completion_tokens = estimate_tokens(response)
            total_tokens = prompt_tokens + completion_tokens
        record = UsageRecord(
            user_id=self._user_id,
            model_id=self._model.id,
            status="success",
            prompt=self._prompt,
            response=response,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            duration_ms=self.elapsed_ms,
            cost=estimate_cost(total_tokens, self._model),
            message_id=message_id,
        )
        return self._commit(record)

    def fail(self, error: BaseException) -> Optional[UsageRecord]:
        message = error.message if isinstance(error, BusinessError) else str(error)
        prompt_tokens = estimate_tokens(self._prompt)
        record = UsageRecord(
            user_id=self._user_id,
            model_id=self._model.id,
            status="error",
            prompt=self._prompt,
            prompt_tokens=prompt_tokens,
            total_tokens=prompt_tokens,
            duration_ms=self.elapsed_ms,
            error_msg=message or error.__class__.__name__,
        )
        return self._commit(record)

    def _commit(self, record: UsageRecord) -> Optional[UsageRecord]:
        with self._lock:
            if self.recorded:
                return None
            self.recorded = True
        try:
            return self._store.record(record)
        except BusinessError as e:
            logger.log(
                logging.ERROR,
                "Failed to record usage",
                extra={"extra": {
                    "user_id": record.user_id,
                    "model_id": record.model_id,
                    "status": record.status,
                    "error_code": e.code,
                    "error": e.message,
                }},
            )
            return None


class UsageRecorder:
    def __init__(self, store: UsageStore):
        self._store = store

    def begin(self, user_id: int, model: AIModel, prompt: str) -> UsageTracker:
        return UsageTracker(self._store, user_id, model, prompt)
