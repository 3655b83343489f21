#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 连接器接口

每个连接器绑定一台服务器，对上层提供统一的操作集合，
本地、SSH和代理三种实现的差别只在传输方式上。
"""

import ipaddress
from abc import ABC, abstractmethod
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from jailconf.jail_config import JailInfo
from utils.config import DefaultJailSettings, Server
from utils.errors import ValidationError


RESTART_MODE_RESTART = 'restart'
RESTART_MODE_RELOAD = 'reload'


def validate_ip_address(ip: Any) -> str:
    """校验IPv4/IPv6地址

    Raises:
        ValidationError: 地址不合法
    """
    if not isinstance(ip, str) or not ip.strip():
        raise ValidationError("IP地址不能为空")
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except ValueError:
        raise ValidationError(f"IP地址不合法: {ip}")


class Connector(ABC):
    """连接器基类"""

    def __init__(self, server: Server) -> None:
        self.server = server

    @property
    def id(self) -> str:
        return self.server.id

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.server.id} ({self.server.type})>"

    # ------------------------------------------------------------------
    # 服务控制
    # ------------------------------------------------------------------

    @abstractmethod
    async def restart_with_mode(self) -> str:
        """重启fail2ban，返回实际执行的方式（'restart' 或 'reload'）"""

    async def restart(self) -> None:
        await self.restart_with_mode()

    @abstractmethod
    async def reload(self) -> None:
        """重新加载配置（保留现有封禁）

        Raises:
            ReloadFailure: fail2ban拒绝了新配置
        """

    @abstractmethod
    async def ban_ip(self, jail: str, ip: str) -> None:
        ...

    @abstractmethod
    async def unban_ip(self, jail: str, ip: str) -> None:
        ...

    # ------------------------------------------------------------------
    # jail
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_jail_infos(self) -> List[JailInfo]:
        """正在运行的jail及其封禁信息"""

    @abstractmethod
    async def get_all_jails(self) -> List[JailInfo]:
        """配置文件中定义的所有jail（包括未启用的）"""

    @abstractmethod
    async def create_jail(self, jail_name: str, content: str) -> None:
        ...

    @abstractmethod
    async def delete_jail(self, jail_name: str) -> None:
        ...

    @abstractmethod
    async def get_jail_config(self, jail_name: str) -> Tuple[str, str]:
        ...

    @abstractmethod
    async def set_jail_config(self, jail_name: str, content: str) -> None:
        ...

    @abstractmethod
    async def update_jail_enabled_states(self, updates: Mapping[str, bool]) -> None:
        ...

    # ------------------------------------------------------------------
    # 过滤器
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_filter_config(self, filter_name: str) -> Tuple[str, str]:
        ...

    @abstractmethod
    async def set_filter_config(self, filter_name: str, content: str) -> None:
        ...

    @abstractmethod
    async def create_filter(self, filter_name: str, content: str) -> None:
        ...

    @abstractmethod
    async def delete_filter(self, filter_name: str) -> None:
        ...

    @abstractmethod
    async def get_filters(self) -> List[str]:
        ...

    @abstractmethod
    async def test_filter(
        self,
        filter_name: str,
        log_lines: Sequence[str],
        filter_content: Optional[str] = None
    ) -> Tuple[str, str]:
        """返回 (fail2ban-regex 输出, 过滤器路径)"""

    # ------------------------------------------------------------------
    # 托管文件与辅助功能
    # ------------------------------------------------------------------

    @abstractmethod
    async def check_jail_local_integrity(self) -> Tuple[bool, bool]:
        """返回 (jail.local 是否存在, 是否为托管文件)"""

    @abstractmethod
    async def ensure_jail_local_structure(self) -> bool:
        ...

    @abstractmethod
    async def update_default_settings(self, defaults: DefaultJailSettings) -> None:
        ...

    @abstractmethod
    async def test_logpath_with_resolution(self, logpath: str) -> Tuple[str, str, List[str]]:
        ...

    @abstractmethod
    async def ensure_action_file(self, callback_url: str, secret: str) -> bool:
        """写入回调动作文件，返回文件是否被修改"""

    async def close(self) -> None:
        """释放连接器持有的传输资源"""
