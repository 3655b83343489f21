#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 命令执行器

LocalRunner 在本机用 asyncio 子进程执行命令，SSHRunner（见 connectors.ssh）在远程主机执行。
两者都返回 subprocess.CompletedProcess，超时抛出 TransportTimeoutError，
被取消时终止子进程（或关闭SSH通道）。
"""

import asyncio
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from utils.errors import TransportError, TransportTimeoutError
from utils.logger import get_logger


TEXT_ERRORS = 'surrogateescape'


def format_command(argv: Sequence[str]) -> str:
    return ' '.join(shlex.quote(str(arg)) for arg in argv)


def combined_output(result: subprocess.CompletedProcess) -> str:
    """合并 stdout 和 stderr（fail2ban-client 把部分错误写到 stderr）"""
    return (result.stdout or '') + (result.stderr or '')


class CommandRunner(ABC):
    """命令执行器接口"""

    target = 'local'

    @abstractmethod
    async def run(
        self,
        argv: Sequence[str],
        input: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> subprocess.CompletedProcess:
        """执行命令

        非零退出码不视为错误，由调用方检查 returncode。

        Raises:
            TransportError: 无法执行命令
            TransportTimeoutError: 执行超时
        """

    async def command_exists(self, name: str) -> bool:
        result = await self.run(['sh', '-c', 'command -v "$1" >/dev/null 2>&1', 'sh', name])
        return result.returncode == 0

    async def close(self) -> None:
        """释放连接等资源"""


class LocalRunner(CommandRunner):
    """本地子进程执行器"""

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout
        self.logger = get_logger('connectors.runner')

    async def command_exists(self, name: str) -> bool:
        return shutil.which(name) is not None

    async def run(
        self,
        argv: Sequence[str],
        input: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> subprocess.CompletedProcess:
        timeout = self.timeout if timeout is None else timeout
        command = format_command(argv)
        self.logger.debug(f"执行命令: {command}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as e:
            raise TransportError(f"命令不存在: {argv[0]}", target=command, original_error=e)
        except OSError as e:
            raise TransportError(f"命令启动失败: {e}", target=command, original_error=e)

        data = input.encode('utf-8', errors=TEXT_ERRORS) if input is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(data), timeout=timeout)
        except asyncio.TimeoutError as e:
            self._kill(process)
            await process.wait()
            raise TransportTimeoutError(f"命令执行超时（{timeout}秒）", target=command, original_error=e)
        except asyncio.CancelledError:
            self._kill(process)
            raise

        return subprocess.CompletedProcess(
            list(argv),
            process.returncode,
            stdout.decode('utf-8', errors=TEXT_ERRORS),
            stderr.decode('utf-8', errors=TEXT_ERRORS)
        )

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
