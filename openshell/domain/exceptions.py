"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 ChatService 或 Bot 层做统一捕获与用户提示。

持久化失败不在此列：会话存储的读写问题只记录 warning，不抛出。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "SPAWN_FAILED"）。
        message: 用户可读错误信息。
        extra: 其他补充字段（例如 provider、exit_code 等）。
    """

    def __init__(self, code: str, message: str, **extra):
        self.code = code
        self.message = message
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """聊天平台 API 返回失败时抛出。"""


class ValidationError(BusinessError):
    """参数或配置校验失败，在启动任何子进程之前抛出。"""


class ProviderError(BusinessError):
    """单次 Provider 调用失败的公共父类。"""


class SpawnError(ProviderError):
    """子进程无法启动（命令不存在、无权限等），不会与非零退出混淆。"""


class ProtocolError(ProviderError):
    """子进程在流中报告了结构化错误。"""


class NonZeroExitError(ProviderError):
    """子进程以非零状态退出。"""


class EmptyReplyError(ProviderError):
    """子进程成功退出但没有产生任何可用文本。"""


class CliTimeoutError(ProviderError):
    """子进程超过配置的超时时间，已被强制终止。"""
