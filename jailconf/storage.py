#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 配置文件存储

配置引擎只通过 FileStore 读写文件：本地实例使用 LocalFileStore（aiofiles），
SSH实例使用 connectors.remote_store.ShellFileStore（远程shell命令）。
所有写入都是原子的：先写同目录下的临时文件，再rename覆盖目标。
"""

import asyncio
import glob
import os
import secrets
import shutil
import tempfile
from abc import ABC, abstractmethod
from typing import List, Optional

import aiofiles
import aiofiles.os

from utils.errors import TransportError


class FileStore(ABC):
    """文件存储接口"""

    @abstractmethod
    async def read_text(self, path: str) -> Optional[str]:
        """读取文件内容，文件不存在时返回None"""

    @abstractmethod
    async def write_text(self, path: str, content: str) -> None:
        """原子写入文件（必要时创建父目录）"""

    @abstractmethod
    async def copy_file(self, src: str, dst: str) -> None:
        """逐字节复制文件"""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """路径是否存在"""

    @abstractmethod
    async def is_dir(self, path: str) -> bool:
        """路径是否为目录"""

    @abstractmethod
    async def remove(self, path: str) -> bool:
        """删除文件，返回是否确实删除了文件"""

    @abstractmethod
    async def list_files(self, directory: str) -> Optional[List[str]]:
        """列出目录下的普通文件名（已排序），目录不存在时返回None"""

    @abstractmethod
    async def find_files(self, root: str, suffix: str) -> List[str]:
        """递归查找以suffix结尾的文件，返回排序后的完整路径"""

    @abstractmethod
    async def glob(self, pattern: str) -> List[str]:
        """按shell通配符展开路径"""

    @abstractmethod
    async def make_temp_dir(self) -> str:
        """创建临时目录"""

    @abstractmethod
    async def remove_tree(self, path: str) -> None:
        """递归删除目录"""


class LocalFileStore(FileStore):
    """本地文件系统存储"""

    async def read_text(self, path: str) -> Optional[str]:
        try:
            async with aiofiles.open(path, 'rb') as f:
                data = await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise TransportError(f"读取文件失败: {e}", target=path, original_error=e)
        # surrogateescape 保证非UTF-8字节在写回时原样保留
        return data.decode('utf-8', errors='surrogateescape')

    async def _atomic_write(self, path: str, data: bytes) -> None:
        directory = os.path.dirname(path) or '.'
        tmp_path = os.path.join(directory, f".{os.path.basename(path)}.{secrets.token_hex(4)}.tmp")
        try:
            await aiofiles.os.makedirs(directory, exist_ok=True)
            async with aiofiles.open(tmp_path, 'wb') as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, path)
        except BaseException as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            if isinstance(e, OSError):
                raise TransportError(f"写入文件失败: {e}", target=path, original_error=e)
            raise

    async def write_text(self, path: str, content: str) -> None:
        await self._atomic_write(path, content.encode('utf-8', errors='surrogateescape'))

    async def copy_file(self, src: str, dst: str) -> None:
        try:
            async with aiofiles.open(src, 'rb') as f:
                data = await f.read()
        except OSError as e:
            raise TransportError(f"读取文件失败: {e}", target=src, original_error=e)
        await self._atomic_write(dst, data)

    async def exists(self, path: str) -> bool:
        return await aiofiles.os.path.exists(path)

    async def is_dir(self, path: str) -> bool:
        return await aiofiles.os.path.isdir(path)

    async def remove(self, path: str) -> bool:
        try:
            await aiofiles.os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise TransportError(f"删除文件失败: {e}", target=path, original_error=e)

    async def list_files(self, directory: str) -> Optional[List[str]]:
        if not await aiofiles.os.path.isdir(directory):
            return None
        try:
            names = await aiofiles.os.listdir(directory)
        except OSError as e:
            raise TransportError(f"读取目录失败: {e}", target=directory, original_error=e)
        return sorted(n for n in names if os.path.isfile(os.path.join(directory, n)))

    async def find_files(self, root: str, suffix: str) -> List[str]:
        def _walk() -> List[str]:
            found = []
            for dirpath, _dirnames, filenames in os.walk(root):
                for name in filenames:
                    if name.lower().endswith(suffix):
                        found.append(os.path.join(dirpath, name))
            return sorted(found)

        return await asyncio.to_thread(_walk)

    async def glob(self, pattern: str) -> List[str]:
        return sorted(await asyncio.to_thread(glob.glob, pattern))

    async def make_temp_dir(self) -> str:
        return await asyncio.to_thread(tempfile.mkdtemp, prefix='f2b-fleet-')

    async def remove_tree(self, path: str) -> None:
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise TransportError(f"删除目录失败: {e}", target=path, original_error=e)
