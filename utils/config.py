#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 配置管理工具

提供统一的配置加载、验证、保存功能，以及服务器列表的管理（新增/修改/删除/设为默认）。
配置文件为YAML（也接受JSON），结构如下::

    system:   {node_id}
    logging:  {level, file, max_size, backup_count, console}
    fail2ban: {config_dir, client_command, regex_command, log_path,
               command_timeout, jail_auto_migration}
    callback: {url, secret}
    defaults: {bantime, findtime, maxretry, ignoreips, banaction, ...}
    aggregation: {max_workers, timeout}
    ssh:      {connect_timeout, known_hosts, strict_host_key_checking, use_sudo}
    servers:  [{id, name, type, host, port, ...}]
"""

import copy
import json
import os
import posixpath
import re
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

import yaml

from utils.errors import NotFoundError, ValidationError
from utils.security import generate_callback_secret, generate_server_id


SERVER_TYPES = ('local', 'ssh', 'agent')
DEFAULT_SOCKET_PATH = '/var/run/fail2ban/fail2ban.sock'
SERVER_ID_PATTERN = re.compile(r'^[A-Za-z0-9_.-]{1,64}$')
ACTION_NAME = 'fleet-callback'


class ConfigError(Exception):
    """配置相关错误基类"""
    pass


class ConfigValidationError(ConfigError):
    """配置验证错误"""
    pass


class ConfigLoadError(ConfigError):
    """配置加载错误"""
    pass


class ConfigSaveError(ConfigError):
    """配置保存错误"""
    pass


def _env_flag(value: Optional[str]) -> bool:
    return (value or '').strip().lower() == 'true'


@dataclass
class Server:
    """一个被管理的fail2ban实例"""

    id: str = ''
    name: str = ''
    type: str = 'local'
    host: str = ''
    port: int = 0
    ssh_user: str = ''
    ssh_key_path: str = ''
    agent_url: str = ''
    agent_secret: str = ''
    socket_path: str = ''
    hostname: str = ''
    tags: List[str] = field(default_factory=list)
    # None 表示配置中未出现，由 normalize_servers 按类型决定默认值
    enabled: Optional[bool] = None
    is_default: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Server':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if values.get('tags') is None:
            values['tags'] = []
        server = cls(**values)
        server.type = (server.type or '').strip().lower()
        return server

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def is_remote(self) -> bool:
        return self.type in ('ssh', 'agent')


@dataclass(frozen=True)
class Fail2banPaths:
    """fail2ban配置目录布局（远程路径同样按POSIX拼接）"""

    config_dir: str = '/etc/fail2ban'

    @property
    def jail_d(self) -> str:
        return posixpath.join(self.config_dir, 'jail.d')

    @property
    def filter_d(self) -> str:
        return posixpath.join(self.config_dir, 'filter.d')

    @property
    def action_d(self) -> str:
        return posixpath.join(self.config_dir, 'action.d')

    @property
    def jail_local(self) -> str:
        return posixpath.join(self.config_dir, 'jail.local')

    @property
    def action_file(self) -> str:
        return posixpath.join(self.action_d, f'{ACTION_NAME}.conf')

    def jail_file(self, name: str, suffix: str = '.local') -> str:
        return posixpath.join(self.jail_d, name + suffix)

    def filter_file(self, name: str, suffix: str = '.local') -> str:
        return posixpath.join(self.filter_d, name + suffix)


@dataclass
class DefaultJailSettings:
    """写入受管 jail.local 的 [DEFAULT] 节取值"""

    bantime: str = '48h'
    findtime: str = '30m'
    maxretry: int = 3
    ignoreips: List[str] = field(default_factory=lambda: ['127.0.0.1/8', '::1'])
    banaction: str = 'nftables-multiport'
    banaction_allports: str = 'nftables-allports'
    chain: str = 'INPUT'
    bantime_increment: bool = True
    bantime_rndtime: str = ''
    default_jail_enable: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'DefaultJailSettings':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in (data or {}).items() if k in known and v is not None}
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AppSettings:
    """运行时使用的应用配置快照"""

    paths: Fail2banPaths = field(default_factory=Fail2banPaths)
    client_command: str = 'fail2ban-client'
    regex_command: str = 'fail2ban-regex'
    log_path: str = '/var/log/fail2ban.log'
    command_timeout: float = 30.0
    jail_auto_migration: bool = False
    callback_url: str = 'http://127.0.0.1:8080'
    callback_secret: str = ''
    defaults: DefaultJailSettings = field(default_factory=DefaultJailSettings)
    aggregation_workers: int = 8
    aggregation_timeout: Optional[float] = 15.0
    ssh_connect_timeout: float = 10.0
    ssh_known_hosts: Optional[str] = None
    ssh_strict_host_key_checking: bool = True
    ssh_use_sudo: bool = False
    servers: List[Server] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> 'AppSettings':
        """从配置字典构建设置

        环境变量 JAIL_AUTOMIGRATION、CALLBACK_URL、CALLBACK_SECRET 优先于配置文件。
        """
        environ = os.environ if environ is None else environ
        f2b = config.get('fail2ban') or {}
        callback = config.get('callback') or {}
        aggregation = config.get('aggregation') or {}
        ssh = config.get('ssh') or {}

        callback_url = environ.get('CALLBACK_URL') or callback.get('url') or cls.callback_url
        callback_secret = environ.get('CALLBACK_SECRET') or callback.get('secret') or ''

        return cls(
            paths=Fail2banPaths(f2b.get('config_dir', '/etc/fail2ban')),
            client_command=f2b.get('client_command', cls.client_command),
            regex_command=f2b.get('regex_command', cls.regex_command),
            log_path=f2b.get('log_path', cls.log_path),
            command_timeout=float(f2b.get('command_timeout', cls.command_timeout)),
            jail_auto_migration=(
                bool(f2b.get('jail_auto_migration', False))
                or _env_flag(environ.get('JAIL_AUTOMIGRATION'))
            ),
            callback_url=callback_url.strip().rstrip('/'),
            callback_secret=callback_secret.strip(),
            defaults=DefaultJailSettings.from_dict(config.get('defaults')),
            aggregation_workers=int(aggregation.get('max_workers', cls.aggregation_workers)),
            aggregation_timeout=aggregation.get('timeout', cls.aggregation_timeout),
            ssh_connect_timeout=float(ssh.get('connect_timeout', cls.ssh_connect_timeout)),
            ssh_known_hosts=ssh.get('known_hosts'),
            ssh_strict_host_key_checking=bool(ssh.get('strict_host_key_checking', True)),
            ssh_use_sudo=bool(ssh.get('use_sudo', False)),
            servers=normalize_servers(Server.from_dict(s) for s in (config.get('servers') or [])),
        )

    def server_by_id(self, server_id: str) -> Optional[Server]:
        for server in self.servers:
            if server.id == server_id:
                return server
        return None

    def default_server(self) -> Optional[Server]:
        for server in self.servers:
            if server.enabled and server.is_default:
                return server
        return None


def normalize_servers(servers) -> List[Server]:
    """规范化服务器列表

    - 缺少ID时生成 srv-<16位十六进制>
    - 缺少名称时使用 "Fail2ban Server <id>"
    - 未声明 enabled 时，本地实例默认禁用，远程实例默认启用
    - 被禁用的服务器不能是默认服务器；若没有默认服务器，第一个启用的成为默认
    - 只保留第一个默认标记

    Args:
        servers: Server 可迭代对象

    Returns:
        新的服务器列表（输入不会被修改）
    """
    result: List[Server] = []
    for original in servers:
        server = copy.deepcopy(original)
        if not server.id:
            server.id = generate_server_id()
        if not server.type:
            server.type = 'local'
        if not server.name:
            server.name = f"Fail2ban Server {server.id}"
        if server.type == 'local' and not server.socket_path:
            server.socket_path = DEFAULT_SOCKET_PATH
        if server.type == 'ssh' and not server.port:
            server.port = 22
        if server.enabled is None:
            server.enabled = server.type != 'local'
        if not server.enabled:
            server.is_default = False
        result.append(server)

    has_default = False
    for server in result:
        if server.is_default:
            if has_default:
                server.is_default = False
            has_default = True

    if not has_default:
        for server in result:
            if server.enabled:
                server.is_default = True
                break

    return result


class ConfigManager:
    """配置管理器

    提供配置文件的加载、验证、保存和服务器管理功能
    """

    def __init__(self, config_path: str) -> None:
        """初始化配置管理器

        Args:
            config_path: 配置文件路径

        Raises:
            ConfigLoadError: 配置文件加载失败
            ConfigValidationError: 配置验证失败
        """
        self.config_path = Path(config_path)
        self.config: Dict[str, Any] = {}

        self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """加载配置文件

        Returns:
            配置字典

        Raises:
            ConfigLoadError: 配置文件加载失败
            ConfigValidationError: 配置验证失败
        """
        if not self.config_path.is_file():
            raise ConfigLoadError(f"配置文件不存在: {self.config_path}")

        if not os.access(self.config_path, os.R_OK):
            raise ConfigLoadError(f"配置文件无读取权限: {self.config_path}")

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                if self.config_path.suffix.lower() in ('.yaml', '.yml'):
                    config = yaml.safe_load(f)
                elif self.config_path.suffix.lower() == '.json':
                    config = json.load(f)
                else:
                    raise ConfigLoadError(f"不支持的配置文件格式: {self.config_path.suffix}")
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigLoadError(f"配置文件格式错误: {e}")
        except OSError as e:
            raise ConfigLoadError(f"加载配置文件失败: {e}")

        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ConfigLoadError("配置文件根节点必须是字典")

        self.config = config
        self.validate_config()
        return self.config

    def save_config(self, backup: bool = True) -> None:
        """保存配置文件

        Args:
            backup: 是否创建带时间戳的备份

        Raises:
            ConfigSaveError: 保存失败
        """
        self.validate_config()

        try:
            if backup and self.config_path.exists():
                backup_path = self.config_path.with_suffix(
                    f"{self.config_path.suffix}.backup.{datetime.now().strftime('%Y%m%d_%H%M%S')}"
                )
                backup_path.write_bytes(self.config_path.read_bytes())

            self.config_path.parent.mkdir(parents=True, exist_ok=True)

            tmp_path = self.config_path.with_name(self.config_path.name + '.tmp')
            with open(tmp_path, 'w', encoding='utf-8') as f:
                if self.config_path.suffix.lower() == '.json':
                    json.dump(self.config, f, ensure_ascii=False, indent=2)
                else:
                    yaml.dump(
                        self.config,
                        f,
                        default_flow_style=False,
                        allow_unicode=True,
                        indent=2,
                        sort_keys=False
                    )
            os.replace(tmp_path, self.config_path)
        except OSError as e:
            raise ConfigSaveError(f"保存配置文件失败: {e}")

    def validate_config(self) -> None:
        """验证配置

        Raises:
            ConfigValidationError: 配置验证失败
        """
        self._validate_logging_config()
        self._validate_fail2ban_config()
        self._validate_servers_config()

    def _validate_logging_config(self) -> None:
        logging_config = self.config.get('logging') or {}
        if not isinstance(logging_config, dict):
            raise ConfigValidationError("logging配置必须是字典")

        level = logging_config.get('level', 'INFO')
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if not isinstance(level, str) or level.upper() not in valid_levels:
            raise ConfigValidationError(f"无效的日志级别: {level}，有效值: {valid_levels}")

    def _validate_fail2ban_config(self) -> None:
        f2b_config = self.config.get('fail2ban') or {}
        if not isinstance(f2b_config, dict):
            raise ConfigValidationError("fail2ban配置必须是字典")

        config_dir = f2b_config.get('config_dir', '/etc/fail2ban')
        if not isinstance(config_dir, str) or not config_dir.startswith('/'):
            raise ConfigValidationError(f"fail2ban配置目录必须是绝对路径: {config_dir}")

        timeout = f2b_config.get('command_timeout', 30)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigValidationError(f"无效的命令超时时间: {timeout}")

        callback = self.config.get('callback') or {}
        url = callback.get('url')
        if url and urlparse(url).scheme not in ('http', 'https'):
            raise ConfigValidationError(f"无效的回调地址: {url}")

    def _validate_servers_config(self) -> None:
        servers = self.config.get('servers') or []
        if not isinstance(servers, list):
            raise ConfigValidationError("servers配置必须是列表")

        seen_ids = set()
        for entry in servers:
            if not isinstance(entry, dict):
                raise ConfigValidationError("servers中的每一项必须是字典")
            validate_server(Server.from_dict(entry))

            server_id = entry.get('id')
            if server_id:
                if server_id in seen_ids:
                    raise ConfigValidationError(f"重复的服务器ID: {server_id}")
                seen_ids.add(server_id)

    def get(self, key: str, default: Any = None) -> Any:
        """获取配置值

        Args:
            key: 配置键，支持点分隔的嵌套键（如 'fail2ban.config_dir'）
            default: 默认值

        Returns:
            配置值
        """
        value: Any = self.config
        try:
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """设置配置值

        Args:
            key: 配置键，支持点分隔的嵌套键
            value: 配置值
        """
        keys = key.split('.')
        config = self.config
        for k in keys[:-1]:
            if not isinstance(config.get(k), dict):
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def load_settings(self, environ: Optional[Mapping[str, str]] = None) -> AppSettings:
        """生成设置快照，必要时生成并保存回调密钥

        Returns:
            AppSettings
        """
        settings = AppSettings.from_config(self.config, environ)
        if not settings.callback_secret:
            settings.callback_secret = generate_callback_secret()
            self.set('callback.secret', settings.callback_secret)
            self.save_config(backup=False)
        return settings

    # =========================================================================
    #  服务器管理
    # =========================================================================

    def list_servers(self) -> List[Server]:
        return normalize_servers(Server.from_dict(s) for s in (self.config.get('servers') or []))

    def _store_servers(self, servers: List[Server]) -> List[Server]:
        normalized = normalize_servers(servers)
        self.config['servers'] = [s.to_dict() for s in normalized]
        self.save_config()
        return normalized

    def upsert_server(self, server: Server) -> Server:
        """新增或更新服务器

        Args:
            server: 服务器配置；ID为空时视为新增

        Returns:
            规范化后的服务器

        Raises:
            ValidationError: 服务器配置不合法
        """
        server = copy.deepcopy(server)
        server.type = (server.type or 'local').strip().lower()
        if not server.id:
            server.id = generate_server_id()
        validate_server(server, error_cls=ValidationError)

        servers = self.list_servers()
        replaced = False
        for idx, existing in enumerate(servers):
            if existing.id == server.id:
                if server.enabled is None:
                    server.enabled = existing.enabled
                servers[idx] = server
                replaced = True
                break

        if not replaced:
            if not servers and server.enabled is not False:
                server.is_default = True
            servers.append(server)

        if server.is_default and server.enabled is not False:
            for other in servers:
                if other.id != server.id:
                    other.is_default = False

        stored = self._store_servers(servers)
        return next(s for s in stored if s.id == server.id)

    def delete_server(self, server_id: str) -> None:
        """删除服务器

        Raises:
            NotFoundError: 服务器不存在
        """
        servers = self.list_servers()
        remaining = [s for s in servers if s.id != server_id]
        if len(remaining) == len(servers):
            raise NotFoundError(f"服务器不存在: {server_id}")
        self._store_servers(remaining)

    def set_default_server(self, server_id: str) -> Server:
        """设为默认服务器（同时启用它）

        Raises:
            NotFoundError: 服务器不存在
        """
        servers = self.list_servers()
        found = False
        for server in servers:
            if server.id == server_id:
                server.is_default = True
                server.enabled = True
                found = True
            else:
                server.is_default = False
        if not found:
            raise NotFoundError(f"服务器不存在: {server_id}")
        stored = self._store_servers(servers)
        return next(s for s in stored if s.id == server_id)


def validate_server(server: Server, error_cls: type = ConfigValidationError) -> None:
    """验证单个服务器配置

    Args:
        server: 服务器
        error_cls: 抛出的异常类型

    Raises:
        error_cls: 验证失败
    """
    if server.type not in SERVER_TYPES:
        raise error_cls(f"无效的服务器类型: {server.type}，有效值: {SERVER_TYPES}")

    if server.id and not SERVER_ID_PATTERN.match(server.id):
        raise error_cls(f"无效的服务器ID: {server.id}")

    if server.port and not (isinstance(server.port, int) and 1 <= server.port <= 65535):
        raise error_cls(f"无效的端口号: {server.port}")

    if server.type == 'ssh':
        if not server.host:
            raise error_cls(f"SSH服务器必须配置host: {server.id or server.name}")
    elif server.type == 'agent':
        parsed = urlparse(server.agent_url or '')
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise error_cls(f"代理服务器必须配置有效的agent_url: {server.agent_url}")
        if not server.agent_secret:
            raise error_cls(f"代理服务器必须配置agent_secret: {server.id or server.name}")


def create_default_config(config_path: str) -> Dict[str, Any]:
    """创建默认配置文件

    Args:
        config_path: 配置文件路径

    Returns:
        默认配置字典

    Raises:
        ConfigSaveError: 保存失败
    """
    default_config = {
        'system': {
            'node_id': f'control-{datetime.now().strftime("%Y%m%d%H%M%S")}',
        },
        'logging': {
            'level': 'INFO',
            'file': 'logs/fail2ban-fleet.log',
            'max_size': '10MB',
            'backup_count': 5,
            'console': True
        },
        'fail2ban': {
            'config_dir': '/etc/fail2ban',
            'client_command': 'fail2ban-client',
            'regex_command': 'fail2ban-regex',
            'log_path': '/var/log/fail2ban.log',
            'command_timeout': 30,
            'jail_auto_migration': False
        },
        'callback': {
            'url': 'http://127.0.0.1:8080',
            'secret': generate_callback_secret()
        },
        'defaults': DefaultJailSettings().to_dict(),
        'aggregation': {
            'max_workers': 8,
            'timeout': 15
        },
        'ssh': {
            'connect_timeout': 10,
            'strict_host_key_checking': True,
            'use_sudo': False
        },
        'agent': {
            'host': '0.0.0.0',
            'port': 9700,
            'server_id': 'local',
            'socket_path': DEFAULT_SOCKET_PATH,
            'secret': ''
        },
        'servers': [
            {
                'id': 'local',
                'name': 'Fail2ban',
                'type': 'local',
                'socket_path': DEFAULT_SOCKET_PATH,
                'enabled': True,
                'is_default': True
            }
        ]
    }

    manager = ConfigManager.__new__(ConfigManager)
    manager.config_path = Path(config_path)
    manager.config = default_config
    manager.save_config(backup=False)
    return default_config
