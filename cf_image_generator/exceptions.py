"""
自定义异常类

所有对外暴露的错误都是 AppError 的子类，并携带一个封闭的 ErrorKind 标签，
调用方按 kind 分支处理，而不是依赖运行时类型判断。
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """错误分类"""
    INVALID_ARGUMENT = "invalid_argument"
    TRANSIENT = "transient"
    FATAL = "fatal"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    CONFIGURATION = "configuration"


# 各类错误对应的默认状态码提示
DEFAULT_STATUS = {
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.FATAL: 502,
    ErrorKind.UPSTREAM_UNAVAILABLE: 503,
    ErrorKind.CONFIGURATION: 500,
}


class AppError(Exception):
    """应用基础异常"""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status if status is not None else DEFAULT_STATUS[self.kind]
        super().__init__(message)

    def to_dict(self) -> dict:
        """转换为可序列化的字典"""
        return {
            "kind": self.kind.value,
            "error": self.message,
            "status": self.status,
        }


class InvalidArgumentError(AppError):
    """调用参数错误（空提示词、未知模型、尺寸或步数越界）"""

    kind = ErrorKind.INVALID_ARGUMENT

    def __init__(self, message: str, field: str = None):
        self.field = field
        super().__init__(message)


class TransientError(AppError):
    """单个账号上的临时失败，可切换账号重试"""

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        account_index: int = None,
        upstream_status: int = None,
    ):
        self.account_index = account_index
        self.upstream_status = upstream_status
        super().__init__(message)


class FatalError(AppError):
    """请求本身无效，与账号无关，不重试"""

    kind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        account_index: int = None,
        upstream_status: int = None,
        status: int = None,
    ):
        self.account_index = account_index
        self.upstream_status = upstream_status
        super().__init__(message, status=status)


class UpstreamUnavailableError(AppError):
    """所有账号均临时失败"""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE

    def __init__(self, message: str, attempts: int = 0, last_error: AppError = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class ConfigurationError(AppError):
    """配置错误，启动时即失败"""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, field: str = None):
        self.field = field
        super().__init__(message)
