"""
异常定义模块 (Agent Exceptions)

Agent 中所有可预期的错误都派生自 AgentError。
配置错误和生命周期误用同步抛给调用方；解析失败只在注册轮次内部出现，
由轮次捕获并上报到事件接收器，不会向外传播。
"""
from typing import Optional


class AgentError(Exception):
    """Agent 异常基类 (Base Agent Exception)"""

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class ConfigurationError(AgentError, ValueError):
    """构造参数或配置文件不合法 (Invalid Configuration)"""

    def __init__(self, param: str, message: str, detail: Optional[str] = None):
        self.param = param
        super().__init__(f"{param}: {message}", detail)


class LifecycleError(AgentError, RuntimeError):
    """生命周期误用，例如重复启动 (Lifecycle Misuse)"""


class ResolutionError(AgentError):
    """目标主机名解析失败 (Destination Resolution Failed)"""

    def __init__(self, hostname: str, message: str):
        self.hostname = hostname
        super().__init__(message)


class SerializationError(AgentError, ValueError):
    """注册载荷无法解码 (Malformed Registration Payload)"""
