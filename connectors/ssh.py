#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - SSH连接器

通过 asyncssh 在远程主机执行 fail2ban-client 和shell脚本。
连接在第一次使用时建立并缓存，断开后下一次调用自动重连。
"""

import asyncio
import subprocess
from typing import Any, Dict, Optional, Sequence

import asyncssh

from connectors.remote_store import ShellFileStore
from connectors.runners import TEXT_ERRORS, CommandRunner, format_command
from connectors.shell import ShellConnector
from jailconf.locks import JailLockRegistry
from jailconf.migration import JailMigrator
from utils.config import AppSettings, Server
from utils.errors import TransportError, TransportTimeoutError
from utils.logger import get_logger


class SSHRunner(CommandRunner):
    """在远程主机执行命令"""

    def __init__(self, server: Server, settings: AppSettings) -> None:
        self.server = server
        self.settings = settings
        self.target = f"ssh://{server.ssh_user + '@' if server.ssh_user else ''}{server.host}:{server.port or 22}"
        self.timeout = settings.command_timeout
        self.use_sudo = settings.ssh_use_sudo
        self.logger = get_logger('connectors.ssh')

        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._lock = asyncio.Lock()

    def _connect_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            'host': self.server.host,
            'port': self.server.port or 22,
        }
        if self.server.ssh_user:
            options['username'] = self.server.ssh_user
        if self.server.ssh_key_path:
            options['client_keys'] = [self.server.ssh_key_path]
        if not self.settings.ssh_strict_host_key_checking:
            options['known_hosts'] = None
        elif self.settings.ssh_known_hosts:
            options['known_hosts'] = self.settings.ssh_known_hosts
        return options

    async def _connection(self) -> asyncssh.SSHClientConnection:
        async with self._lock:
            if self._conn is not None and not self._conn.is_closed():
                return self._conn

            connect_timeout = self.settings.ssh_connect_timeout
            self.logger.debug(f"建立SSH连接: {self.target}")
            try:
                self._conn = await asyncio.wait_for(
                    asyncssh.connect(**self._connect_options()),
                    timeout=connect_timeout
                )
            except asyncio.TimeoutError as e:
                raise TransportTimeoutError(
                    f"SSH连接超时（{connect_timeout}秒）", target=self.target, original_error=e
                )
            except (asyncssh.Error, OSError) as e:
                raise TransportError(f"SSH连接失败: {e}", target=self.target, original_error=e)

            self.logger.info(f"SSH连接已建立: {self.target}")
            return self._conn

    async def _drop_connection(self) -> None:
        async with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    async def run(
        self,
        argv: Sequence[str],
        input: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> subprocess.CompletedProcess:
        timeout = self.timeout if timeout is None else timeout
        argv = list(argv)
        if self.use_sudo:
            argv = ['sudo', '-n'] + argv
        command = format_command(argv)
        target = f"{self.target}: {command}"

        conn = await self._connection()
        self.logger.debug(f"执行远程命令 [{self.target}]: {command}")
        try:
            # 退出 async with 时关闭通道，取消操作也会关闭远程进程
            async with conn.create_process(command, input=input, errors=TEXT_ERRORS) as process:
                completed = await process.wait(check=False, timeout=timeout)
        except (asyncssh.TimeoutError, asyncio.TimeoutError) as e:
            raise TransportTimeoutError(f"远程命令执行超时（{timeout}秒）", target=target, original_error=e)
        except (asyncssh.Error, OSError) as e:
            await self._drop_connection()
            raise TransportError(f"远程命令执行失败: {e}", target=target, original_error=e)

        returncode = completed.exit_status if completed.exit_status is not None else 255
        return subprocess.CompletedProcess(argv, returncode, completed.stdout or '', completed.stderr or '')

    async def close(self) -> None:
        await self._drop_connection()


class SSHConnector(ShellConnector):
    """通过SSH控制远程fail2ban"""

    def __init__(
        self,
        server: Server,
        settings: AppSettings,
        locks: Optional[JailLockRegistry] = None,
        migrator: Optional[JailMigrator] = None,
        runner: Optional[CommandRunner] = None
    ) -> None:
        runner = runner or SSHRunner(server, settings)
        super().__init__(
            server,
            settings,
            runner,
            ShellFileStore(runner, timeout=settings.command_timeout),
            locks=locks,
            migrator=migrator
        )
