#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 日志记录工具

所有模块的日志记录器都是 ``fail2ban_fleet`` 的子记录器，
只需在入口处调用一次 setup_logger / setup_logger_from_config 即可统一输出。
"""

import logging
import logging.handlers
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional


ROOT_LOGGER_NAME = 'fail2ban_fleet'

VALID_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class LoggerConfigError(Exception):
    """日志配置错误

    当日志记录器配置失败时抛出此异常。
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.original_error = original_error
        self.message = message


def get_logger(component: str) -> logging.Logger:
    """获取组件日志记录器

    Args:
        component: 组件名，如 'connectors.ssh'

    Returns:
        ``fail2ban_fleet`` 下的子记录器
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    level: str = 'INFO',
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console_output: bool = True
) -> logging.Logger:
    """设置日志记录器

    Args:
        name: 日志记录器名称
        level: 日志级别 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: 日志文件路径
        max_bytes: 单个日志文件最大字节数
        backup_count: 备份文件数量
        console_output: 是否输出到控制台

    Returns:
        配置好的日志记录器

    Raises:
        LoggerConfigError: 日志配置错误
    """
    if not name or not isinstance(name, str):
        raise LoggerConfigError("日志记录器名称必须是非空字符串")

    if not isinstance(level, str) or level.upper() not in VALID_LEVELS:
        raise LoggerConfigError(f"无效的日志级别: {level}")

    if not isinstance(max_bytes, int) or max_bytes <= 0:
        raise LoggerConfigError("日志文件最大字节数必须是正整数")

    if not isinstance(backup_count, int) or backup_count < 0:
        raise LoggerConfigError("备份文件数量必须是非负整数")

    logger = logging.getLogger(name)

    # 避免重复添加处理器
    if logger.handlers:
        return logger

    log_level = getattr(logging, level.upper())
    logger.setLevel(log_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if console_output:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        try:
            log_dir = Path(log_file).parent
            log_dir.mkdir(parents=True, exist_ok=True)

            if not os.access(log_dir, os.W_OK):
                raise LoggerConfigError(f"没有写入权限: {log_dir}")

            # 使用RotatingFileHandler进行日志轮转
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except LoggerConfigError:
            raise
        except OSError as e:
            raise LoggerConfigError(f"无法创建文件日志处理器: {e}", e)

    return logger


def setup_logger_from_config(config: Dict[str, Any], name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """从配置字典设置日志记录器

    Args:
        config: 配置字典，读取其中的 logging 节:
            - logging.level: 日志级别 (默认: 'INFO')
            - logging.file: 日志文件路径
            - logging.max_size: 最大文件大小 (默认: '10MB')
            - logging.backup_count: 备份文件数量 (默认: 5)
            - logging.console: 是否输出到控制台 (默认: True)
        name: 日志记录器名称

    Returns:
        配置好的日志记录器

    Raises:
        LoggerConfigError: 配置错误
    """
    if not isinstance(config, dict):
        raise LoggerConfigError("配置必须是字典类型")

    logging_config = config.get('logging') or {}
    if not isinstance(logging_config, dict):
        raise LoggerConfigError("logging配置必须是字典类型")

    log_file = logging_config.get('file')
    if log_file is not None and not isinstance(log_file, str):
        raise LoggerConfigError("日志文件路径必须是字符串")

    console_output = logging_config.get('console', True)
    if not isinstance(console_output, bool):
        raise LoggerConfigError("控制台输出标志必须是布尔值")

    return setup_logger(
        name=name,
        level=logging_config.get('level', 'INFO'),
        log_file=log_file,
        max_bytes=_parse_size(str(logging_config.get('max_size', '10MB'))),
        backup_count=logging_config.get('backup_count', 5),
        console_output=console_output
    )


def _parse_size(size_str: str) -> int:
    """解析大小字符串

    Args:
        size_str: 大小字符串，如 '10MB', '1GB', '512KB'

    Returns:
        字节数

    Raises:
        LoggerConfigError: 无效的大小格式
    """
    if not size_str or not size_str.strip():
        return 10 * 1024 * 1024  # 默认10MB

    match = re.match(r'^(\d+(?:\.\d+)?)\s*([KMGT]?B?)$', size_str.upper().strip())
    if not match:
        raise LoggerConfigError(f"无效的大小格式: {size_str}，支持格式如: 10MB, 1GB, 512KB")

    number_str, unit = match.groups()
    multipliers: Dict[str, int] = {
        '': 1,
        'B': 1,
        'KB': 1024,
        'MB': 1024 ** 2,
        'GB': 1024 ** 3,
        'TB': 1024 ** 4,
        'K': 1024,
        'M': 1024 ** 2,
        'G': 1024 ** 3,
        'T': 1024 ** 4,
    }

    result = int(float(number_str) * multipliers[unit])
    if result < 1024:
        raise LoggerConfigError("文件大小不能小于1KB")
    return result
