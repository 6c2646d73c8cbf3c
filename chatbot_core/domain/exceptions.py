"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或流式通道里做统一捕获与用户提示。

分类：
- ValidationError: 入参/配置错误，发生在任何持久化之前，不重试。
- AuthError: 凭证缺失、无效或过期。
- NotFoundError: 会话/模型不存在或不属于当前用户。
- ProviderError: 上游 AI 调用失败（网络、鉴权、响应解析）。
- PersistenceError: 会话/消息/用量写入失败。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    default_status = 400

    def __init__(self, code: str, message: str, http_status: int = 0, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status or self.default_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class EmptyPrompt(ValidationError):
    """提问内容为空或只有空白字符。"""


class AuthError(BusinessError):
    default_status = 401


class InvalidToken(AuthError):
    """访问令牌缺失、签名错误或已过期。"""


class NotFoundError(BusinessError):
    default_status = 404


class SessionNotFound(NotFoundError):
    pass


class ModelNotFound(NotFoundError):
    pass


class NoDefaultModel(NotFoundError):
    pass


class ProviderError(BusinessError):
    """上游 AI Provider 调用失败。"""

    default_status = 502


class NetworkError(ProviderError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(ProviderError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(ProviderError):
    """Provider 限流错误，由调用方在请求级别决定是否重试。"""

    default_status = 429


class EmptyResponse(ProviderError):
    """Provider 返回了零个 choice。"""


class StreamParseError(ProviderError):
    """流式响应中的某一行无法解析。"""


class StreamCancelled(ProviderError):
    """客户端断开或 sink 要求停止，本轮被提前终止。"""


class UnsupportedProvider(ProviderError):
    default_status = 400


class MissingCredential(ProviderError):
    default_status = 500


class PersistenceError(BusinessError):
    default_status = 500
