#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 中央控制模块

连接器注册表和组合控制服务。
"""

__version__ = "1.0.0"
__author__ = "Fail2ban开发团队"

from .manager import SERVER_HEADER, ConnectorManager
from .service import ApplyResult, ControlService

__all__ = [
    'SERVER_HEADER',
    'ConnectorManager',
    'ApplyResult',
    'ControlService',
]
