#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - Jail配置引擎

负责 jail.d/<name>.local / <name>.conf 的读取、修改和发现。
所有修改都遵循同一原则：只改动属于自己的那一节，其余行原样保留。
"""

import posixpath
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from jailconf.locks import JailLockRegistry
from jailconf.storage import FileStore
from utils.config import Fail2banPaths
from utils.errors import NotFoundError, TransportError, ValidationError
from utils.logger import get_logger

if TYPE_CHECKING:
    from jailconf.migration import JailMigrator


JAIL_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,128}$')
RESERVED_SECTIONS = frozenset({'DEFAULT', 'INCLUDES'})

_ENABLED_LINE = re.compile(r'^\s*enabled\s*=', re.IGNORECASE)
_KEY_VALUE = re.compile(r'^([A-Za-z0-9_.\-]+)\s*=(.*)$')
_FILTER_LINE = re.compile(r'^filter\s*=(.*)$', re.IGNORECASE)
_LOGPATH_LINE = re.compile(r'^logpath\s*=(.*)$', re.IGNORECASE)
_TRUE_VALUES = frozenset({'true', 'yes', '1', 'on'})


@dataclass
class JailInfo:
    """jail摘要，总是从后端实时得到"""

    jail_name: str
    enabled: bool = True
    total_banned: int = 0
    new_in_last_hour: int = 0
    banned_ips: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'jailName': self.jail_name,
            'enabled': self.enabled,
            'totalBanned': self.total_banned,
            'newInLastHour': self.new_in_last_hour,
            'bannedIPs': list(self.banned_ips),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'JailInfo':
        return cls(
            jail_name=data.get('jailName', data.get('jail_name', '')),
            enabled=bool(data.get('enabled', True)),
            total_banned=int(data.get('totalBanned', data.get('total_banned', 0)) or 0),
            new_in_last_hour=int(data.get('newInLastHour', data.get('new_in_last_hour', 0)) or 0),
            banned_ips=list(data.get('bannedIPs', data.get('banned_ips')) or []),
        )


# =========================================================================
#  校验与文本处理（纯函数）
# =========================================================================

def validate_jail_name(name: Any) -> str:
    """校验jail名称

    只允许字母、数字、下划线和连字符，长度1-128，且不能是 DEFAULT / INCLUDES（不区分大小写）。

    Raises:
        ValidationError: 名称不合法
    """
    if not isinstance(name, str) or not name:
        raise ValidationError("jail名称不能为空")
    if name.upper() in RESERVED_SECTIONS:
        raise ValidationError(f"jail名称 '{name}' 是保留名称，不能使用")
    if not JAIL_NAME_PATTERN.match(name):
        raise ValidationError(
            f"jail名称 '{name}' 包含非法字符，只允许字母、数字、连字符和下划线（最长128个字符）"
        )
    return name


def is_section_header(line: str) -> bool:
    stripped = line.strip()
    return len(stripped) >= 2 and stripped[0] == '[' and stripped[-1] == ']'


def section_name(line: str) -> str:
    return line.strip()[1:-1].strip()


def is_comment(line: str) -> bool:
    return line.lstrip().startswith(('#', ';'))


def parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def normalize_jail_sections(jail_name: str, content: str) -> str:
    """保证内容中只有一个规范的 [jail_name] 节头

    已有匹配的节头时保留第一个匹配的节头；没有时把第一个节头替换为 [jail_name]。
    其余节头行全部删除，节头下面的正文行保留。没有任何节头时在开头补上 [jail_name]。
    非节头行的内容和顺序保持不变，因此同样的输入总是得到同样的输出。

    Args:
        jail_name: jail名称
        content: 用户提交的内容

    Returns:
        规范化后的内容
    """
    expected = f"[{jail_name}]"
    if not content.strip():
        return expected + "\n"

    lines = content.split('\n')
    header_indices = [i for i, line in enumerate(lines) if is_section_header(line)]
    if not header_indices:
        return expected + "\n" + content

    kept = next((i for i in header_indices if section_name(lines[i]) == jail_name), header_indices[0])
    normalized = []
    for i, line in enumerate(lines):
        if i == kept:
            normalized.append(expected)
        elif i not in header_indices:
            normalized.append(line)
    return '\n'.join(normalized)


def set_enabled_in_section(content: str, jail_name: str, enabled: bool) -> str:
    """只在 [jail_name] 节内设置 enabled

    节内已有 enabled 行时只替换这些行；没有时在节头下一行插入；
    连节头都没有时在文件末尾追加节头和 enabled 行。其他节和其他行保持不变。
    """
    new_line = f"enabled = {'true' if enabled else 'false'}"
    lines = content.split('\n') if content else []

    output: List[str] = []
    current: Optional[str] = None
    found = False
    for line in lines:
        if is_section_header(line):
            current = section_name(line)
            output.append(line)
        elif current == jail_name and _ENABLED_LINE.match(line):
            output.append(new_line)
            found = True
        else:
            output.append(line)

    if not found:
        header_index = next(
            (i for i, line in enumerate(output) if is_section_header(line) and section_name(line) == jail_name),
            None
        )
        if header_index is not None:
            output.insert(header_index + 1, new_line)
        else:
            while output and output[-1] == '':
                output.pop()
            output.extend([f"[{jail_name}]", new_line])

    result = '\n'.join(output)
    if not result.endswith('\n'):
        result += '\n'
    return result


def extract_filter_from_jail_config(jail_content: str) -> str:
    """提取 filter 名称，去掉 name[opt=val] 形式的内联参数"""
    for raw in jail_content.splitlines():
        line = raw.strip()
        if not line or is_comment(line):
            continue
        match = _FILTER_LINE.match(line)
        if match:
            value = match.group(1).strip()
            bracket = value.find('[')
            if bracket >= 0:
                value = value[:bracket]
            return value.strip()
    return ''


def extract_logpath_from_jail_config(jail_content: str) -> str:
    """提取 logpath，支持多行续写

    ``logpath =`` 之后的非空、无等号的行视为续行，遇到空行、注释、节头或下一个
    ``key = value`` 行时结束。所有路径按空白拆分后用换行符连接。
    """
    paths: List[str] = []
    current: Optional[str] = None

    for raw in jail_content.splitlines():
        line = raw.strip()
        if current is not None:
            if line and not is_comment(line) and '=' not in line and not is_section_header(line):
                current += ' ' + line
                continue
            paths.extend(current.split())
            current = None

        if not line or is_comment(line):
            continue
        match = _LOGPATH_LINE.match(line)
        if match:
            current = match.group(1).strip()

    if current is not None:
        paths.extend(current.split())

    return '\n'.join(paths)


def parse_jail_sections(content: str) -> List[JailInfo]:
    """解析文件中的jail节及其 enabled 状态（未声明时视为启用）"""
    jails: List[JailInfo] = []
    current: Optional[str] = None
    enabled = True

    def flush() -> None:
        if current and current.upper() not in RESERVED_SECTIONS:
            jails.append(JailInfo(jail_name=current, enabled=enabled))

    for raw in content.splitlines():
        line = raw.strip()
        if is_section_header(line):
            flush()
            current = section_name(line) or None
            enabled = True
            continue
        if current is None or not line or is_comment(line):
            continue
        match = _KEY_VALUE.match(line)
        if match and match.group(1).lower() == 'enabled':
            enabled = parse_bool(match.group(2))

    flush()
    return jails


# =========================================================================
#  配置引擎
# =========================================================================

class JailConfigEngine:
    """基于 FileStore 的jail配置引擎

    同一个引擎既用于本地实例也用于SSH实例，区别只在于注入的存储。
    """

    def __init__(
        self,
        store: FileStore,
        paths: Fail2banPaths,
        locks: Optional[JailLockRegistry] = None,
        scope: str = 'local',
        migrator: Optional['JailMigrator'] = None,
        auto_migrate: bool = False
    ) -> None:
        """初始化配置引擎

        Args:
            store: 文件存储
            paths: fail2ban目录布局
            locks: 按jail加锁的注册表
            scope: 锁和迁移使用的作用域（服务器ID）
            migrator: 一次性迁移服务
            auto_migrate: 是否启用自动迁移
        """
        self.store = store
        self.paths = paths
        self.locks = locks or JailLockRegistry()
        self.scope = scope
        self.migrator = migrator
        self.auto_migrate = auto_migrate
        self.logger = get_logger('jailconf.jails')

    def _lock(self, jail_name: str):
        return self.locks.lock_for(self.scope, jail_name)

    async def read_jail_config_with_fallback(self, jail_name: str) -> Tuple[str, str]:
        """按 .local -> .conf 顺序读取，都不存在时返回空节"""
        local_path = self.paths.jail_file(jail_name, '.local')
        conf_path = self.paths.jail_file(jail_name, '.conf')

        content = await self.store.read_text(local_path)
        if content is not None:
            self.logger.debug(f"从 .local 读取jail配置: {local_path}")
            return content, local_path

        content = await self.store.read_text(conf_path)
        if content is not None:
            self.logger.debug(f"从 .conf 读取jail配置: {conf_path}")
            return content, conf_path

        self.logger.debug(f"jail {jail_name} 没有配置文件，返回空节")
        return f"[{jail_name}]\n", local_path

    async def get_jail_config(self, jail_name: str) -> Tuple[str, str]:
        """返回 (内容, 文件路径)"""
        jail_name = validate_jail_name(jail_name)
        return await self.read_jail_config_with_fallback(jail_name)

    async def ensure_jail_local_file(self, jail_name: str) -> str:
        """保证 <jail>.local 存在：从 .conf 复制，或写入最小节头"""
        local_path = self.paths.jail_file(jail_name, '.local')
        conf_path = self.paths.jail_file(jail_name, '.conf')

        if await self.store.exists(local_path):
            return local_path

        if await self.store.exists(conf_path):
            self.logger.debug(f"复制jail配置: {conf_path} -> {local_path}")
            await self.store.copy_file(conf_path, local_path)
        else:
            self.logger.debug(f"创建最小jail配置: {local_path}")
            await self.store.write_text(local_path, f"[{jail_name}]\n")
        return local_path

    async def set_jail_config(self, jail_name: str, content: str) -> str:
        """写入完整的jail配置，返回写入的路径"""
        jail_name = validate_jail_name(jail_name)
        async with self._lock(jail_name):
            local_path = await self.ensure_jail_local_file(jail_name)
            normalized = normalize_jail_sections(jail_name, content)
            await self.store.write_text(local_path, normalized)
        self.logger.debug(f"jail配置已写入: {local_path} ({len(normalized)} 字节)")
        return local_path

    async def update_jail_enabled_states(self, updates: Mapping[str, bool]) -> None:
        """批量更新 enabled 状态

        先校验全部名称和取值（必须是布尔值），再逐个jail修改；任何一个失败都会中止剩余的更新。
        """
        validated = {}
        for name, enabled in updates.items():
            if not isinstance(enabled, bool):
                raise ValidationError(f"jail {name} 的 enabled 必须是布尔值: {enabled!r}")
            validated[validate_jail_name(name)] = enabled

        for jail_name in sorted(validated):
            enabled = validated[jail_name]
            async with self._lock(jail_name):
                local_path = await self.ensure_jail_local_file(jail_name)
                content = await self.store.read_text(local_path) or ''
                updated = set_enabled_in_section(content, jail_name, enabled)
                if updated != content:
                    await self.store.write_text(local_path, updated)
            self.logger.debug(f"jail {jail_name}: enabled = {enabled} ({local_path})")

    async def create_jail(self, jail_name: str, content: str) -> str:
        """创建 jail.d/<jail>.local"""
        jail_name = validate_jail_name(jail_name)
        local_path = self.paths.jail_file(jail_name, '.local')
        async with self._lock(jail_name):
            await self.store.write_text(local_path, normalize_jail_sections(jail_name, content))
        self.logger.info(f"已创建jail配置文件: {local_path}")
        return local_path

    async def delete_jail(self, jail_name: str) -> List[str]:
        """删除jail的 .local 和 .conf 文件

        Raises:
            NotFoundError: 两个文件都不存在
        """
        jail_name = validate_jail_name(jail_name)
        deleted = []
        async with self._lock(jail_name):
            for suffix in ('.local', '.conf'):
                path = self.paths.jail_file(jail_name, suffix)
                if await self.store.remove(path):
                    deleted.append(path)
                    self.logger.debug(f"已删除jail配置文件: {path}")

        if not deleted:
            raise NotFoundError(
                f"jail配置文件不存在: {self.paths.jail_file(jail_name, '.local')} / "
                f"{self.paths.jail_file(jail_name, '.conf')}"
            )
        return deleted

    async def discover_jails_from_files(self) -> List[JailInfo]:
        """从 jail.d 发现所有jail

        同名文件以 .local 为准；同名jail只保留第一次出现（.local 优先）。
        """
        names = await self.store.list_files(self.paths.jail_d)
        if names is None:
            return []

        jails: List[JailInfo] = []
        processed_files = set()
        processed_jails = set()

        for suffix in ('.local', '.conf'):
            for filename in names:
                if filename.startswith('.') or not filename.endswith(suffix):
                    continue
                base_name = filename[:-len(suffix)]
                if not base_name or base_name in processed_files:
                    continue
                processed_files.add(base_name)

                file_path = posixpath.join(self.paths.jail_d, filename)
                try:
                    content = await self.store.read_text(file_path)
                except TransportError as e:
                    self.logger.debug(f"跳过无法读取的jail文件 {file_path}: {e}")
                    continue
                if content is None:
                    self.logger.debug(f"jail文件在读取前被删除: {file_path}")
                    continue

                for jail in parse_jail_sections(content):
                    if jail.jail_name not in processed_jails:
                        processed_jails.add(jail.jail_name)
                        jails.append(jail)

        return jails

    async def get_all_jails(self) -> List[JailInfo]:
        """返回所有jail（启用自动迁移时先执行一次迁移）"""
        if self.auto_migrate and self.migrator is not None:
            await self.migrator.run_once(self.scope, self.store, self.paths)
        return await self.discover_jails_from_files()
