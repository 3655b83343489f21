#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 按jail加锁

同一服务器上同一个jail（或过滤器）的写操作串行执行，不同jail之间互不阻塞。
"""

import asyncio
import threading
from typing import Dict, Tuple


class JailLockRegistry:
    """(服务器ID, 对象名) -> asyncio.Lock 的注册表

    锁在第一次使用时创建，并在注册表的整个生命周期内保留，
    因此连接器重建后仍然共享同一把锁。
    """

    def __init__(self) -> None:
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, scope: str, name: str) -> asyncio.Lock:
        key = (scope, name)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)
