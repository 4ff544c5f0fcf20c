"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在控制器或 UI 层做统一捕获与用户提示。

分类：
- DecodeError: 流式帧在结构完整的行上解析失败，不允许静默吞掉。
- TransportError: 网络/超时/上游非 2xx 响应。
- CancellationError: 预期中的取消，不作为错误展示给用户。
- ConfigurationError: 缺少凭证或未初始化就发起请求。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "DECODE_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 session_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class DecodeError(BusinessError):
    """结构完整的帧无法解析，或不完整片段超出允许范围。"""

    def __init__(self, message: str, line: Optional[str] = None, **extra):
        super().__init__(code="DECODE_ERROR", message=message, **extra)
        self.line = line


class TransportError(BusinessError):
    """传输层错误基类：网络失败、超时、上游返回错误。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(TransportError):
    """上游 API 返回非 2xx 错误时抛出。

    upstream_message 为上游 JSON 中 error.message 字段（若存在）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, upstream_message: Optional[str] = None, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)
        self.upstream_message = upstream_message


class RateLimitError(ApiError):
    """Provider 限流错误，由用户手动重试。"""


class CancellationError(BusinessError):
    """会话被取消。只用于控制流，不会转成错误消息。"""

    def __init__(self, session_id: str):
        super().__init__(code="CANCELED", message=f"session {session_id} canceled", session_id=session_id)
        self.session_id = session_id


class ConfigurationError(BusinessError):
    """配置缺失或无效（如未设置 API Key），会阻止请求发起。"""
