import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from chatbot_core.config.settings import settings

logger = logging.getLogger("chatbot_core")


class JsonFormatter(logging.Formatter):
    def __init__(self, redact_content: bool = False):
        super().__init__()
        self._redact = redact_content

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self._redact:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(cfg=settings) -> logging.Logger:
    """给 chatbot_core logger 挂上 JSON 文件 handler，重复调用不会重复挂载。"""

    logger.setLevel(getattr(logging, str(cfg.log_level).upper(), logging.INFO))
    if any(getattr(h, "_chatbot_core", False) for h in logger.handlers):
        return logger
    log_dir = Path(cfg.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "chatbot.log", encoding="utf-8")
    fh.setFormatter(JsonFormatter(redact_content=cfg.log_redact_content))
    fh._chatbot_core = True  # type: ignore[attr-defined]
    logger.addHandler(fh)
    return logger
