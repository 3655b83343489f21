#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 过滤器配置引擎

管理 filter.d/<name>.local / <name>.conf，并在临时文件上运行 fail2ban-regex 测试过滤器。
"""

import posixpath
import re
import secrets
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from jailconf.locks import JailLockRegistry
from jailconf.storage import FileStore
from utils.config import Fail2banPaths
from utils.errors import NotFoundError, ValidationError
from utils.logger import get_logger


FILTER_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
TEST_FILTER_PREFIX = '.fleet-test-'

# (日志文件路径, 过滤器文件路径) -> fail2ban-regex 输出
RegexRunner = Callable[[str, str], Awaitable[str]]


def validate_filter_name(name: Any) -> str:
    """校验过滤器名称（允许点号，但不能以点号开头，也不能包含 '..'）"""
    if not isinstance(name, str) or not name:
        raise ValidationError("过滤器名称不能为空")
    if '..' in name or not FILTER_NAME_PATTERN.match(name):
        raise ValidationError(f"过滤器名称 '{name}' 不合法")
    return name


class FilterConfigEngine:
    """过滤器配置引擎"""

    def __init__(
        self,
        store: FileStore,
        paths: Fail2banPaths,
        locks: Optional[JailLockRegistry] = None,
        scope: str = 'local'
    ) -> None:
        self.store = store
        self.paths = paths
        self.locks = locks or JailLockRegistry()
        self.scope = scope
        self.logger = get_logger('jailconf.filters')

    def _lock(self, filter_name: str):
        return self.locks.lock_for(self.scope, f"filter:{filter_name}")

    async def get_filter_config(self, filter_name: str) -> Tuple[str, str]:
        """读取过滤器，.local 优先

        Raises:
            NotFoundError: .local 和 .conf 都不存在
        """
        filter_name = validate_filter_name(filter_name)
        for suffix in ('.local', '.conf'):
            path = self.paths.filter_file(filter_name, suffix)
            content = await self.store.read_text(path)
            if content is not None:
                return content, path
        raise NotFoundError(f"过滤器 '{filter_name}' 不存在")

    async def set_filter_config(self, filter_name: str, content: str) -> str:
        filter_name = validate_filter_name(filter_name)
        path = self.paths.filter_file(filter_name, '.local')
        async with self._lock(filter_name):
            await self.store.write_text(path, content)
        self.logger.debug(f"过滤器配置已写入: {path}")
        return path

    async def create_filter(self, filter_name: str, content: str) -> str:
        """创建新过滤器（写入 .local）

        Raises:
            ValidationError: 同名过滤器已存在
        """
        filter_name = validate_filter_name(filter_name)
        path = self.paths.filter_file(filter_name, '.local')
        async with self._lock(filter_name):
            for suffix in ('.local', '.conf'):
                if await self.store.exists(self.paths.filter_file(filter_name, suffix)):
                    raise ValidationError(f"过滤器 '{filter_name}' 已存在")
            await self.store.write_text(path, content)
        self.logger.info(f"已创建过滤器: {path}")
        return path

    async def delete_filter(self, filter_name: str) -> List[str]:
        filter_name = validate_filter_name(filter_name)
        deleted = []
        async with self._lock(filter_name):
            for suffix in ('.local', '.conf'):
                path = self.paths.filter_file(filter_name, suffix)
                if await self.store.remove(path):
                    deleted.append(path)
        if not deleted:
            raise NotFoundError(f"过滤器 '{filter_name}' 不存在")
        self.logger.info(f"已删除过滤器 {filter_name}: {', '.join(deleted)}")
        return deleted

    async def get_filters(self) -> List[str]:
        """列出所有过滤器名称（去重、排序）"""
        names = await self.store.list_files(self.paths.filter_d)
        if names is None:
            return []
        filters = set()
        for filename in names:
            if filename.startswith('.'):
                continue
            for suffix in ('.local', '.conf'):
                if filename.endswith(suffix) and len(filename) > len(suffix):
                    filters.add(filename[:-len(suffix)])
        return sorted(filters)

    async def test_filter(
        self,
        filter_name: str,
        log_lines: Sequence[str],
        run_regex: RegexRunner,
        filter_content: Optional[str] = None
    ) -> Tuple[str, str]:
        """用 fail2ban-regex 测试过滤器

        提供 filter_content 时测试的是未保存的内容：它被写入 filter.d 下的隐藏临时文件，
        这样 before/after 引用的公共文件仍能按相对路径找到。

        Args:
            filter_name: 过滤器名称
            log_lines: 样例日志行
            run_regex: 执行 fail2ban-regex 的回调
            filter_content: 可选的未保存过滤器内容

        Returns:
            (fail2ban-regex 输出, 过滤器文件路径)
        """
        filter_name = validate_filter_name(filter_name)
        if not log_lines:
            raise ValidationError("至少需要一行日志")

        temp_dir = await self.store.make_temp_dir()
        temp_filter = None
        try:
            if filter_content is not None:
                temp_filter = posixpath.join(
                    self.paths.filter_d, f"{TEST_FILTER_PREFIX}{secrets.token_hex(4)}.conf"
                )
                await self.store.write_text(temp_filter, filter_content)
                filter_path = temp_filter
                reported_path = self.paths.filter_file(filter_name, '.local')
            else:
                _, filter_path = await self.get_filter_config(filter_name)
                reported_path = filter_path

            log_path = posixpath.join(temp_dir, 'sample.log')
            await self.store.write_text(log_path, '\n'.join(log_lines) + '\n')

            self.logger.debug(f"测试过滤器 {filter_name}: {len(log_lines)} 行日志")
            output = await run_regex(log_path, filter_path)
        finally:
            if temp_filter is not None:
                await self.store.remove(temp_filter)
            await self.store.remove_tree(temp_dir)

        return output, reported_path
