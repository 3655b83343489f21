#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - jail.local 迁移

早期部署把所有jail都写在 jail.local 里。迁移把每个jail节拆到 jail.d/<name>.local，
并强制 enabled = false，jail.local 只保留开头的注释、DEFAULT 节和被注释掉的节。
迁移前总是先做逐字节备份。
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from jailconf.jail_config import (
    is_section_header, section_name, set_enabled_in_section, validate_jail_name
)
from jailconf.storage import FileStore
from utils.config import Fail2banPaths
from utils.errors import ValidationError
from utils.logger import get_logger


_COMMENTED_HEADER = re.compile(r'^\s*[#;]+\s*\[([^\]]+)\]\s*$')


@dataclass
class LegacyJailLayout:
    """拆分后的 jail.local"""

    retained_blocks: List[List[str]] = field(default_factory=list)
    jail_sections: Dict[str, str] = field(default_factory=dict)

    def render_retained(self) -> str:
        blocks = []
        for block in self.retained_blocks:
            lines = list(block)
            while lines and not lines[-1].strip():
                lines.pop()
            if lines:
                blocks.append('\n'.join(lines))
        return '\n\n'.join(blocks) + '\n' if blocks else ''


@dataclass
class MigrationResult:
    backup_path: Optional[str] = None
    migrated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def split_legacy_jail_file(content: str) -> LegacyJailLayout:
    """把 jail.local 按节拆分

    开头注释、DEFAULT 节和被注释掉的节（如 ``# [sshd]``）进入 retained_blocks；
    INCLUDES 节丢弃；其他节按jail名称收集，同名节的正文合并。
    """
    layout = LegacyJailLayout()
    blocks = []  # (类型, 名称, 行)
    current = ('preamble', None, [])

    for line in content.split('\n'):
        if is_section_header(line):
            blocks.append(current)
            name = section_name(line)
            upper = name.upper()
            if upper == 'DEFAULT':
                kind = 'default'
            elif upper == 'INCLUDES':
                kind = 'includes'
            else:
                kind = 'jail'
            current = (kind, name, [line])
        elif _COMMENTED_HEADER.match(line):
            blocks.append(current)
            current = ('commented', None, [line])
        else:
            current[2].append(line)
    blocks.append(current)

    for kind, name, lines in blocks:
        if kind in ('preamble', 'default', 'commented'):
            if kind != 'preamble' or any(l.strip() for l in lines):
                layout.retained_blocks.append(lines)
        elif kind == 'jail':
            body = list(lines)
            while body and not body[-1].strip():
                body.pop()
            if name in layout.jail_sections:
                layout.jail_sections[name] += '\n'.join(body[1:]) + '\n'
            else:
                layout.jail_sections[name] = '\n'.join(body) + '\n'

    return layout


async def migrate_legacy_jail_file(
    store: FileStore,
    paths: Fail2banPaths,
    now: Optional[float] = None
) -> MigrationResult:
    """执行一次迁移

    已经存在 jail.d/<name>.local 的jail不会被覆盖；没有任何jail被迁移时 jail.local 不变。
    """
    logger = get_logger('jailconf.migration')
    result = MigrationResult()

    content = await store.read_text(paths.jail_local)
    if content is None:
        logger.debug(f"{paths.jail_local} 不存在，无需迁移")
        return result

    layout = split_legacy_jail_file(content)
    if not layout.jail_sections:
        logger.debug("jail.local 中没有jail节，无需迁移")
        return result

    timestamp = int(now if now is not None else time.time())
    result.backup_path = f"{paths.jail_local}.backup.{timestamp}"
    await store.copy_file(paths.jail_local, result.backup_path)
    logger.info(f"已备份 jail.local: {result.backup_path}")

    for jail_name, section in layout.jail_sections.items():
        try:
            validate_jail_name(jail_name)
        except ValidationError as e:
            logger.warning(f"跳过无法迁移的jail节 [{jail_name}]: {e}")
            result.skipped.append(jail_name)
            continue

        target = paths.jail_file(jail_name, '.local')
        if await store.exists(target):
            logger.info(f"{target} 已存在，跳过jail {jail_name}")
            result.skipped.append(jail_name)
            continue

        await store.write_text(target, set_enabled_in_section(section, jail_name, False))
        result.migrated.append(jail_name)
        logger.info(f"已迁移jail {jail_name} -> {target}（已禁用）")

    if result.migrated:
        await store.write_text(paths.jail_local, layout.render_retained())
        logger.info(f"jail.local 迁移完成: 迁移 {len(result.migrated)} 个jail，跳过 {len(result.skipped)} 个")

    return result


class JailMigrator:
    """按作用域（服务器ID）只执行一次的迁移服务

    由连接器管理器创建并注入所有引擎，连接器重建后不会重复迁移。
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._completed: Set[str] = set()
        self._lock = asyncio.Lock()
        self._clock = clock
        self.logger = get_logger('jailconf.migration')

    def has_run(self, scope: str) -> bool:
        return scope in self._completed

    async def run_once(self, scope: str, store: FileStore, paths: Fail2banPaths) -> Optional[MigrationResult]:
        """对 scope 执行迁移；已经执行过（无论成功与否）时返回None"""
        async with self._lock:
            if scope in self._completed:
                return None
            self._completed.add(scope)
            self.logger.info(f"开始检查 {scope} 的 jail.local 迁移")
            return await migrate_legacy_jail_file(store, paths, self._clock())
