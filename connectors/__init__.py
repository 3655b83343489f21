#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 连接器

根据服务器类型创建连接器：local（本机）、ssh（远程命令）、agent（HTTP代理）。
"""

from typing import Optional

from jailconf.locks import JailLockRegistry
from jailconf.migration import JailMigrator
from utils.config import AppSettings, Server
from utils.errors import ValidationError

from .agent import AgentConnector
from .base import Connector
from .local import LocalConnector
from .ssh import SSHConnector

CONNECTOR_TYPES = {
    'local': LocalConnector,
    'ssh': SSHConnector,
}


def create_connector(
    server: Server,
    settings: AppSettings,
    locks: Optional[JailLockRegistry] = None,
    migrator: Optional[JailMigrator] = None
) -> Connector:
    """按服务器类型创建连接器

    Raises:
        ValidationError: 未知的服务器类型
    """
    if server.type == 'agent':
        return AgentConnector(server, settings)
    connector_cls = CONNECTOR_TYPES.get(server.type)
    if connector_cls is None:
        raise ValidationError(f"不支持的服务器类型: {server.type}")
    return connector_cls(server, settings, locks=locks, migrator=migrator)


__all__ = [
    'AgentConnector',
    'Connector',
    'LocalConnector',
    'SSHConnector',
    'create_connector',
]
