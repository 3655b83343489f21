#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 封禁日志解析

从 fail2ban.log 中提取 ``fail2ban.actions ... NOTICE [jail] Ban <ip>`` 事件，
用于统计最近一小时内的新封禁数。
"""

import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional


BAN_LOG_PATTERN = re.compile(
    r'^(\S+\s+\S+) fail2ban\.actions.*?\[\d+\]: NOTICE\s+\[(\S+)\]\s+Ban\s+(\S+)'
)
BAN_LOG_TIME_FORMAT = '%Y-%m-%d %H:%M:%S,%f'


@dataclass
class BanEvent:
    time: datetime
    jail: str
    ip: str
    log_line: str


def parse_ban_log(content: str) -> Dict[str, List[BanEvent]]:
    """按jail分组返回封禁事件，时间戳无法解析的行被忽略"""
    events: Dict[str, List[BanEvent]] = defaultdict(list)
    for line in content.splitlines():
        match = BAN_LOG_PATTERN.match(line)
        if not match:
            continue
        timestamp, jail, ip = match.groups()
        try:
            parsed = datetime.strptime(timestamp, BAN_LOG_TIME_FORMAT)
        except ValueError:
            continue
        events[jail].append(BanEvent(time=parsed, jail=jail, ip=ip, log_line=line))
    return dict(events)


def count_recent_bans(
    events_by_jail: Dict[str, List[BanEvent]],
    now: Optional[datetime] = None,
    window: timedelta = timedelta(hours=1)
) -> Dict[str, int]:
    """统计每个jail在时间窗口内的封禁次数（日志时间为本地时间）"""
    now = now or datetime.now()
    since = now - window
    return {
        jail: sum(1 for event in events if since <= event.time <= now)
        for jail, events in events_by_jail.items()
    }
