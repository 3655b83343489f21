#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - fail2ban-client 输出解析
"""

import re
from typing import List

from utils.errors import ReloadFailure


RELOAD_ERROR_MARKERS = ('Errors in jail', 'Unable to read the filter')
_FAILED_JAIL_PATTERN = re.compile(r"Errors in jail\s+'?([A-Za-z0-9_-]+)'?")


def parse_jail_list(output: str) -> List[str]:
    """解析 ``fail2ban-client status`` 中的 ``Jail list:`` 行"""
    for line in output.splitlines():
        if 'Jail list:' in line:
            raw = line.split(':', 1)[1]
            return [jail.strip() for jail in raw.split(',') if jail.strip()]
    return []


def parse_banned_ips(output: str) -> List[str]:
    """解析 ``fail2ban-client status <jail>`` 中的 ``IP list:`` 行"""
    for line in output.splitlines():
        if 'IP list:' in line:
            return line.split(':', 1)[1].split()
    return []


def is_pong(output: str) -> bool:
    return 'pong' in output.strip().lower()


def failed_jails(output: str) -> List[str]:
    return list(dict.fromkeys(_FAILED_JAIL_PATTERN.findall(output)))


def check_reload_output(output: str) -> None:
    """重载命令退出码为0时，检查输出中是否仍有配置错误

    Raises:
        ReloadFailure: 输出包含jail或过滤器错误
    """
    trimmed = output.strip()
    if not trimmed or trimmed == 'OK':
        return
    if any(marker in output for marker in RELOAD_ERROR_MARKERS):
        raise ReloadFailure(
            f"fail2ban重载完成但存在错误: {trimmed}",
            output=output,
            jails=failed_jails(output)
        )
