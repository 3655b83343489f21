#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 代理模块

在被管理主机上运行的HTTP代理。
"""

__version__ = "1.0.0"
__author__ = "Fail2ban开发团队"

from .server import AgentServer

__all__ = [
    'AgentServer'
]
