#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 本地连接器
"""

from typing import Optional

from connectors.runners import LocalRunner
from connectors.shell import ShellConnector
from jailconf.locks import JailLockRegistry
from jailconf.migration import JailMigrator
from jailconf.storage import LocalFileStore
from utils.config import AppSettings, Server


class LocalConnector(ShellConnector):
    """控制本机fail2ban：asyncio子进程 + aiofiles"""

    def __init__(
        self,
        server: Server,
        settings: AppSettings,
        locks: Optional[JailLockRegistry] = None,
        migrator: Optional[JailMigrator] = None,
        runner: Optional[LocalRunner] = None
    ) -> None:
        super().__init__(
            server,
            settings,
            runner or LocalRunner(timeout=settings.command_timeout),
            LocalFileStore(),
            locks=locks,
            migrator=migrator
        )
