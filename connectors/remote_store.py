#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 远程shell文件存储

通过 CommandRunner 执行 ``sh -c`` 脚本读写远程文件。路径总是作为位置参数传入，
不会被拼接进脚本文本。写入由一条命令完成：先写同目录临时文件，再 ``mv -f`` 覆盖。
"""

import re
from typing import List, Optional

from connectors.runners import CommandRunner
from jailconf.storage import FileStore
from utils.errors import TransportError, ValidationError


MISSING_EXIT_CODE = 3
SAFE_GLOB_PATTERN = re.compile(r'^[A-Za-z0-9_./*?\[\]@+,:-]+$')

_READ_SCRIPT = '[ -f "$1" ] || exit 3; cat -- "$1"'
_WRITE_SCRIPT = (
    'd=$(dirname -- "$1") && mkdir -p -- "$d" || exit 1; '
    't="$d/.$(basename -- "$1").$$.tmp"; '
    'cat > "$t" || { rm -f -- "$t"; exit 1; }; '
    'mv -f -- "$t" "$1"'
)
_COPY_SCRIPT = (
    '[ -f "$1" ] || exit 3; '
    'd=$(dirname -- "$2") && mkdir -p -- "$d" || exit 1; '
    't="$d/.$(basename -- "$2").$$.tmp"; '
    'cp -p -- "$1" "$t" || { rm -f -- "$t"; exit 1; }; '
    'mv -f -- "$t" "$2"'
)
_REMOVE_SCRIPT = '[ -e "$1" ] || exit 3; rm -f -- "$1"'
_LIST_SCRIPT = (
    '[ -d "$1" ] || exit 3; cd -- "$1" || exit 1; '
    'for f in * .[!.]* ..?*; do [ -f "$f" ] && printf "%s\\n" "$f"; done; exit 0'
)
_FIND_SCRIPT = '[ -d "$1" ] || exit 0; find "$1" -type f -iname "*$2"'
_GLOB_SCRIPT = 'for f in $1; do [ -e "$f" ] && printf "%s\\n" "$f"; done; exit 0'
_MKTEMP_SCRIPT = 'mktemp -d "${TMPDIR:-/tmp}/f2b-fleet-XXXXXX"'


class ShellFileStore(FileStore):
    """基于远程shell的文件存储"""

    def __init__(self, runner: CommandRunner, timeout: Optional[float] = None) -> None:
        self.runner = runner
        self.timeout = timeout

    async def _sh(self, script: str, *args: str, input: Optional[str] = None):
        return await self.runner.run(['sh', '-c', script, 'sh', *args], input=input, timeout=self.timeout)

    def _fail(self, action: str, path: str, result) -> TransportError:
        detail = (result.stderr or result.stdout or '').strip()
        return TransportError(
            f"{action}失败（退出码 {result.returncode}）: {detail}",
            target=f"{self.runner.target}:{path}",
            output=detail
        )

    async def read_text(self, path: str) -> Optional[str]:
        result = await self._sh(_READ_SCRIPT, path)
        if result.returncode == MISSING_EXIT_CODE:
            return None
        if result.returncode != 0:
            raise self._fail("读取文件", path, result)
        return result.stdout

    async def write_text(self, path: str, content: str) -> None:
        result = await self._sh(_WRITE_SCRIPT, path, input=content)
        if result.returncode != 0:
            raise self._fail("写入文件", path, result)

    async def copy_file(self, src: str, dst: str) -> None:
        result = await self._sh(_COPY_SCRIPT, src, dst)
        if result.returncode == MISSING_EXIT_CODE:
            raise TransportError("源文件不存在", target=f"{self.runner.target}:{src}")
        if result.returncode != 0:
            raise self._fail("复制文件", dst, result)

    async def exists(self, path: str) -> bool:
        return (await self._sh('[ -e "$1" ]', path)).returncode == 0

    async def is_dir(self, path: str) -> bool:
        return (await self._sh('[ -d "$1" ]', path)).returncode == 0

    async def remove(self, path: str) -> bool:
        result = await self._sh(_REMOVE_SCRIPT, path)
        if result.returncode == MISSING_EXIT_CODE:
            return False
        if result.returncode != 0:
            raise self._fail("删除文件", path, result)
        return True

    async def list_files(self, directory: str) -> Optional[List[str]]:
        result = await self._sh(_LIST_SCRIPT, directory)
        if result.returncode == MISSING_EXIT_CODE:
            return None
        if result.returncode != 0:
            raise self._fail("读取目录", directory, result)
        return sorted(line for line in result.stdout.splitlines() if line)

    async def find_files(self, root: str, suffix: str) -> List[str]:
        result = await self._sh(_FIND_SCRIPT, root, suffix)
        if result.returncode != 0:
            raise self._fail("查找文件", root, result)
        return sorted(line for line in result.stdout.splitlines() if line)

    async def glob(self, pattern: str) -> List[str]:
        if not SAFE_GLOB_PATTERN.match(pattern):
            raise ValidationError(f"路径通配符包含不支持的字符: {pattern}")
        result = await self._sh(_GLOB_SCRIPT, pattern)
        if result.returncode != 0:
            raise self._fail("展开通配符", pattern, result)
        return sorted(line for line in result.stdout.splitlines() if line)

    async def make_temp_dir(self) -> str:
        result = await self._sh(_MKTEMP_SCRIPT)
        path = result.stdout.strip()
        if result.returncode != 0 or not path:
            raise self._fail("创建临时目录", '${TMPDIR:-/tmp}', result)
        return path

    async def remove_tree(self, path: str) -> None:
        if path.rstrip('/') in ('', '.'):
            raise ValidationError(f"拒绝删除目录: '{path}'")
        result = await self._sh('rm -rf -- "$1"', path)
        if result.returncode != 0:
            raise self._fail("删除目录", path, result)
