#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 并发汇总jail信息
"""

import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional

from jailconf.jail_config import JailInfo
from utils.logger import get_logger


BannedIPsFetcher = Callable[[str], Awaitable[List[str]]]


async def collect_jail_infos(
    jails: Iterable[str],
    fetch: BannedIPsFetcher,
    max_workers: int = 8,
    timeout: Optional[float] = None
) -> List[JailInfo]:
    """并发获取每个jail的封禁IP

    并发数由信号量限制，整个汇总共用一个截止时间。获取失败的jail被丢弃；
    截止时间到达时仍未完成的任务被取消并丢弃。结果按jail名称排序。

    Args:
        jails: jail名称
        fetch: 获取单个jail封禁IP的协程函数
        max_workers: 最大并发数
        timeout: 整体超时（秒），None表示不限

    Returns:
        JailInfo列表
    """
    logger = get_logger('connectors.aggregator')
    names = [jail for jail in dict.fromkeys(jails) if jail]
    if not names:
        return []

    semaphore = asyncio.Semaphore(max(1, max_workers))

    async def _collect(jail: str) -> JailInfo:
        async with semaphore:
            ips = await fetch(jail)
        return JailInfo(jail_name=jail, enabled=True, total_banned=len(ips), banned_ips=list(ips))

    tasks = {asyncio.ensure_future(_collect(jail)): jail for jail in names}
    try:
        done, pending = await asyncio.wait(tasks, timeout=timeout)
    finally:
        unfinished = [task for task in tasks if not task.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)

    for task in pending:
        logger.warning(f"获取jail {tasks[task]} 的封禁信息超时，已丢弃")

    infos = []
    for task in done:
        if task.cancelled():
            continue
        error = task.exception()
        if error is not None:
            logger.warning(f"获取jail {tasks[task]} 的封禁信息失败: {error}")
            continue
        infos.append(task.result())

    infos.sort(key=lambda info: info.jail_name)
    return infos
