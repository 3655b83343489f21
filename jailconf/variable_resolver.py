#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - logpath变量解析

logpath 中经常引用 ``%(sshd_log)s`` 这类变量，它们定义在 paths-*.conf 等文件中。
解析时先在所有 .local 文件中查找定义，再查找 .conf 文件，第一个非空定义生效。
"""

import posixpath
import re
from typing import Dict, List, Optional, Set, Tuple

from jailconf.jail_config import is_comment
from jailconf.storage import FileStore
from utils.errors import NotFoundError, ValidationError
from utils.logger import get_logger


VARIABLE_PATTERN = re.compile(r'%\(([^)]+)\)s')
MAX_ITERATIONS = 10
_WILDCARD_CHARS = frozenset('*?[')


def extract_variables(text: str) -> List[str]:
    return VARIABLE_PATTERN.findall(text)


def search_variable_in_text(content: str, var_name: str) -> str:
    """在配置文本中查找变量定义（键名不区分大小写）

    定义可以跨多行：缩进的行，或者不含等号的行，都视为续行。
    空行、注释、节头以及顶格的 ``key = value`` 行结束续写。

    Returns:
        变量值；未找到或值为空时返回空字符串
    """
    lines = content.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        i += 1
        if not line or is_comment(line) or line.startswith('['):
            continue
        key, sep, value = line.partition('=')
        if not sep or key.strip().lower() != var_name.lower():
            continue

        parts = [value.strip()]
        while i < len(lines):
            original = lines[i]
            stripped = original.strip()
            if not stripped or is_comment(stripped) or stripped.startswith('['):
                break
            indented = original[:1] in (' ', '\t')
            if '=' in stripped and not indented:
                break
            parts.append(stripped)
            i += 1
        return ' '.join(p for p in parts if p).strip()
    return ''


class VariableResolver:
    """在fail2ban配置目录中解析变量，单次解析内缓存文件内容"""

    def __init__(self, store: FileStore, config_dir: str) -> None:
        self.store = store
        self.config_dir = config_dir
        self.logger = get_logger('jailconf.resolver')
        self._files: Optional[Tuple[List[str], List[str]]] = None
        self._contents: Dict[str, Optional[str]] = {}

    async def _config_files(self) -> Tuple[List[str], List[str]]:
        if self._files is None:
            local_files = await self.store.find_files(self.config_dir, '.local')
            conf_files = await self.store.find_files(self.config_dir, '.conf')
            self._files = (local_files, conf_files)
        return self._files

    async def _read(self, path: str) -> Optional[str]:
        if path not in self._contents:
            self._contents[path] = await self.store.read_text(path)
        return self._contents[path]

    async def find_variable_definition(self, var_name: str) -> str:
        """查找变量的第一个非空定义（.local 优先于 .conf）

        Raises:
            NotFoundError: 配置目录不存在或变量未定义
        """
        if not await self.store.is_dir(self.config_dir):
            raise NotFoundError(f"变量 '{var_name}' 未找到: {self.config_dir} 不存在")

        local_files, conf_files = await self._config_files()
        for path in local_files + conf_files:
            content = await self._read(path)
            if not content:
                continue
            value = search_variable_in_text(content, var_name)
            if value:
                self.logger.debug(f"变量 {var_name} = '{value}' ({path})")
                return value

        raise NotFoundError(f"变量 '{var_name}' 未在fail2ban配置文件中定义")

    async def resolve_variable(self, var_name: str, visited: Optional[Set[str]] = None) -> str:
        """递归解析单个变量

        Raises:
            ValidationError: 循环引用或超过最大迭代次数
            NotFoundError: 变量未定义
        """
        visited = set() if visited is None else visited
        if var_name in visited:
            raise ValidationError(f"变量 '{var_name}' 存在循环引用")

        visited.add(var_name)
        try:
            resolved = await self.find_variable_definition(var_name)
            for _ in range(MAX_ITERATIONS):
                nested_vars = extract_variables(resolved)
                if not nested_vars:
                    return resolved
                for nested in dict.fromkeys(nested_vars):
                    if nested in visited:
                        raise ValidationError(f"检测到循环引用: '{var_name}' -> '{nested}'")
                    nested_value = await self.resolve_variable(nested, visited)
                    resolved = resolved.replace(f"%({nested})s", nested_value)
            if extract_variables(resolved):
                raise ValidationError(f"变量 '{var_name}' 解析超过最大迭代次数: '{resolved}'")
            return resolved
        finally:
            visited.discard(var_name)

    async def resolve_logpath(self, logpath: str) -> str:
        """展开 logpath 中的全部变量"""
        resolved = (logpath or '').strip()
        for _ in range(MAX_ITERATIONS):
            variables = extract_variables(resolved)
            if not variables:
                return resolved
            for var_name in dict.fromkeys(variables):
                value = await self.resolve_variable(var_name)
                resolved = resolved.replace(f"%({var_name})s", value)

        if extract_variables(resolved):
            raise ValidationError(f"logpath '{logpath}' 解析超过最大迭代次数，可能存在循环引用")
        return resolved


async def resolve_logpath_variables(store: FileStore, config_dir: str, logpath: str) -> str:
    """展开 logpath 中的全部 %(var)s 变量"""
    return await VariableResolver(store, config_dir).resolve_logpath(logpath)


async def test_logpath(store: FileStore, logpath: str) -> List[str]:
    """列出 logpath 匹配到的文件

    每个路径：含通配符时按glob展开；是目录时列出其中的文件；是文件时返回自身；
    不存在时忽略。
    """
    matches: List[str] = []
    for candidate in (logpath or '').split():
        if _WILDCARD_CHARS.intersection(candidate):
            matches.extend(await store.glob(candidate))
        elif await store.is_dir(candidate):
            names = await store.list_files(candidate) or []
            matches.extend(posixpath.join(candidate, name) for name in names)
        elif await store.exists(candidate):
            matches.append(candidate)
    return list(dict.fromkeys(matches))


async def test_logpath_with_resolution(
    store: FileStore,
    config_dir: str,
    logpath: str
) -> Tuple[str, str, List[str]]:
    """解析变量后测试 logpath

    Returns:
        (原始路径, 解析后路径, 匹配文件列表)
    """
    original = (logpath or '').strip()
    if not original:
        return original, '', []

    resolved = await resolve_logpath_variables(store, config_dir, original)
    resolved = resolved or original
    files = await test_logpath(store, resolved)
    return original, resolved, files
