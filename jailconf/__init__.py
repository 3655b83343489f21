#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 配置引擎

jail、过滤器、托管文件和迁移的文本处理，全部通过 FileStore 读写。
"""

from .filter_config import FilterConfigEngine, validate_filter_name
from .jail_config import JailConfigEngine, JailInfo, validate_jail_name
from .locks import JailLockRegistry
from .migration import JailMigrator
from .storage import FileStore, LocalFileStore

__all__ = [
    'FilterConfigEngine',
    'JailConfigEngine',
    'JailInfo',
    'JailLockRegistry',
    'JailMigrator',
    'FileStore',
    'LocalFileStore',
    'validate_filter_name',
    'validate_jail_name',
]
