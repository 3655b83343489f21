#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 错误类型

连接器与配置引擎抛出的全部异常都继承自 Fail2banFleetError，
上游可以据此区分客户端错误（输入不合法、对象不存在）与服务端错误（传输失败、重载失败）。
"""

from typing import List, Optional


class Fail2banFleetError(Exception):
    """系统异常基类"""

    client_error = False

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        """初始化异常

        Args:
            message: 错误消息
            original_error: 原始异常
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class ValidationError(Fail2banFleetError):
    """输入校验失败（jail名、过滤器名、IP地址等）"""

    client_error = True


class NotFoundError(Fail2banFleetError):
    """服务器、jail或文件不存在"""

    client_error = True


class TransportError(Fail2banFleetError):
    """传输层错误

    本地命令执行失败、SSH认证/连接失败、代理不可达都归为此类。
    """

    def __init__(
        self,
        message: str,
        target: Optional[str] = None,
        output: str = '',
        timeout: bool = False,
        original_error: Optional[Exception] = None
    ) -> None:
        """初始化传输错误

        Args:
            message: 错误消息
            target: 出错的命令或URL
            output: 命令输出
            timeout: 是否为超时
            original_error: 原始异常
        """
        if target:
            message = f"{message} [{target}]"
        super().__init__(message, original_error)
        self.target = target
        self.output = output
        self.timeout = timeout


class TransportTimeoutError(TransportError):
    """传输超时"""

    def __init__(
        self,
        message: str,
        target: Optional[str] = None,
        output: str = '',
        original_error: Optional[Exception] = None
    ) -> None:
        super().__init__(message, target=target, output=output, timeout=True, original_error=original_error)


class ReloadFailure(Fail2banFleetError):
    """fail2ban拒绝了新的配置"""

    def __init__(
        self,
        message: str,
        output: str = '',
        jails: Optional[List[str]] = None,
        auto_disabled: bool = False,
        original_error: Optional[Exception] = None
    ) -> None:
        """初始化重载失败

        Args:
            message: 错误消息
            output: fail2ban-client 输出
            jails: 受影响的jail
            auto_disabled: jail是否已被自动禁用
            original_error: 原始异常
        """
        super().__init__(message, original_error)
        self.output = output
        self.jails = list(jails or [])
        self.auto_disabled = auto_disabled


def is_client_error(error: Exception) -> bool:
    """判断异常是否应作为客户端错误返回"""
    return isinstance(error, Fail2banFleetError) and error.client_error


def error_kind(error: Exception) -> str:
    """返回异常的类别名称，用于代理接口的错误响应"""
    if isinstance(error, ValidationError):
        return 'validation'
    if isinstance(error, NotFoundError):
        return 'not_found'
    if isinstance(error, ReloadFailure):
        return 'reload'
    if isinstance(error, TransportError):
        return 'timeout' if error.timeout else 'transport'
    return 'internal'
