#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 工具模块

配置、日志、错误类型和密钥生成。
"""

__version__ = "1.0.0"
__author__ = "Fail2ban开发团队"

from .config import AppSettings, ConfigManager, Fail2banPaths, Server
from .errors import (
    Fail2banFleetError, NotFoundError, ReloadFailure, TransportError,
    TransportTimeoutError, ValidationError
)
from .logger import get_logger, setup_logger
from .security import generate_api_key, generate_callback_secret

__all__ = [
    'AppSettings',
    'ConfigManager',
    'Fail2banPaths',
    'Server',
    'Fail2banFleetError',
    'NotFoundError',
    'ReloadFailure',
    'TransportError',
    'TransportTimeoutError',
    'ValidationError',
    'get_logger',
    'setup_logger',
    'generate_api_key',
    'generate_callback_secret',
]
