"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在会话层统一捕获并转换为用户可见的提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_WRITE_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 url、model 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """与模型服务通信失败：非 2xx 状态或网络错误，流开始前后均可能出现。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、超时、读流中断等。"""


class ApiError(TransportError):
    """模型服务返回非 2xx 状态，或在流中返回 error 行。"""


class StorageCapacityExceeded(BusinessError):
    """键值存储写入超出配额。由持久化层就地恢复，不向上抛出。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
