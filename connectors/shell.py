#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 基于命令行的连接器

本地连接器和SSH连接器都通过 fail2ban-client / fail2ban-regex / systemctl 控制fail2ban，
区别只在命令执行器和文件存储。公共逻辑都在 ShellConnector 中。
"""

import asyncio
from typing import List, Mapping, Optional, Sequence, Tuple

from connectors.aggregator import collect_jail_infos
from connectors.banlog import count_recent_bans, parse_ban_log
from connectors.base import (
    RESTART_MODE_RELOAD, RESTART_MODE_RESTART, Connector, validate_ip_address
)
from connectors.client_output import (
    check_reload_output, failed_jails, is_pong, parse_banned_ips, parse_jail_list
)
from connectors.runners import CommandRunner, combined_output, format_command
from jailconf import managed
from jailconf.filter_config import FilterConfigEngine
from jailconf.jail_config import JailConfigEngine, JailInfo, validate_jail_name
from jailconf.locks import JailLockRegistry
from jailconf.migration import JailMigrator
from jailconf.storage import FileStore
from jailconf.variable_resolver import test_logpath_with_resolution
from utils.config import AppSettings, DefaultJailSettings, Server
from utils.errors import ReloadFailure, TransportError
from utils.logger import get_logger


HEALTH_CHECK_ATTEMPTS = 5
HEALTH_CHECK_INTERVAL = 1.0


class ShellConnector(Connector):
    """通过命令执行器和文件存储操作fail2ban"""

    def __init__(
        self,
        server: Server,
        settings: AppSettings,
        runner: CommandRunner,
        store: FileStore,
        locks: Optional[JailLockRegistry] = None,
        migrator: Optional[JailMigrator] = None
    ) -> None:
        """初始化连接器

        Args:
            server: 服务器配置
            settings: 应用设置
            runner: 命令执行器
            store: 文件存储
            locks: 共享的jail锁注册表
            migrator: 共享的迁移服务
        """
        super().__init__(server)
        self.settings = settings
        self.paths = settings.paths
        self.runner = runner
        self.store = store
        locks = locks or JailLockRegistry()
        self.jails = JailConfigEngine(
            store, self.paths, locks,
            scope=server.id,
            migrator=migrator,
            auto_migrate=settings.jail_auto_migration
        )
        self.filters = FilterConfigEngine(store, self.paths, locks, scope=server.id)
        self.logger = get_logger(f"connectors.{server.type}")

    # ------------------------------------------------------------------
    # fail2ban-client
    # ------------------------------------------------------------------

    def client_args(self, *args: str) -> List[str]:
        argv = [self.settings.client_command]
        if self.server.socket_path:
            argv += ['-s', self.server.socket_path]
        return argv + list(args)

    async def run_client(self, *args: str) -> str:
        """执行 fail2ban-client，非零退出码抛出 TransportError"""
        argv = self.client_args(*args)
        result = await self.runner.run(argv, timeout=self.settings.command_timeout)
        output = combined_output(result)
        if result.returncode != 0:
            raise TransportError(
                f"fail2ban-client 执行失败（退出码 {result.returncode}）: {output.strip()}",
                target=f"{self.runner.target}: {format_command(argv)}",
                output=output
            )
        return output

    async def get_active_jails(self) -> List[str]:
        return parse_jail_list(await self.run_client('status'))

    async def get_banned_ips(self, jail: str) -> List[str]:
        return parse_banned_ips(await self.run_client('status', jail))

    async def check_healthy(self) -> None:
        """ping fail2ban，重启后给服务几秒的启动时间"""
        last_output = ''
        for attempt in range(HEALTH_CHECK_ATTEMPTS):
            try:
                last_output = await self.run_client('ping')
                if is_pong(last_output):
                    return
            except TransportError as e:
                last_output = e.output or e.message
            if attempt < HEALTH_CHECK_ATTEMPTS - 1:
                await asyncio.sleep(HEALTH_CHECK_INTERVAL)
        raise TransportError(
            f"fail2ban健康检查失败: {last_output.strip()}",
            target=f"{self.runner.target}: {format_command(self.client_args('ping'))}",
            output=last_output
        )

    # ------------------------------------------------------------------
    # 服务控制
    # ------------------------------------------------------------------

    async def reload(self) -> None:
        argv = self.client_args('reload')
        result = await self.runner.run(argv, timeout=self.settings.command_timeout)
        output = combined_output(result)
        if result.returncode != 0:
            self.logger.warning(f"[{self.server.id}] fail2ban重载失败: {output.strip()}")
            raise ReloadFailure(
                f"fail2ban重载失败（退出码 {result.returncode}）: {output.strip()}",
                output=output,
                jails=failed_jails(output)
            )
        check_reload_output(output)
        self.logger.info(f"[{self.server.id}] fail2ban配置已重新加载")

    async def restart_with_mode(self) -> str:
        if await self.runner.command_exists('systemctl'):
            argv = ['systemctl', 'restart', 'fail2ban']
            result = await self.runner.run(argv, timeout=self.settings.command_timeout)
            if result.returncode != 0:
                output = combined_output(result)
                raise TransportError(
                    f"通过systemd重启fail2ban失败: {output.strip()}",
                    target=f"{self.runner.target}: {format_command(argv)}",
                    output=output
                )
            await self.check_healthy()
            self.logger.info(f"[{self.server.id}] fail2ban已通过systemd重启")
            return RESTART_MODE_RESTART

        self.logger.info(f"[{self.server.id}] systemctl不可用，改为重新加载配置")
        await self.reload()
        await self.check_healthy()
        return RESTART_MODE_RELOAD

    async def ban_ip(self, jail: str, ip: str) -> None:
        jail = validate_jail_name(jail)
        ip = validate_ip_address(ip)
        await self.run_client('set', jail, 'banip', ip)
        self.logger.info(f"[{self.server.id}] 已封禁 {ip} ({jail})")

    async def unban_ip(self, jail: str, ip: str) -> None:
        jail = validate_jail_name(jail)
        ip = validate_ip_address(ip)
        await self.run_client('set', jail, 'unbanip', ip)
        self.logger.info(f"[{self.server.id}] 已解封 {ip} ({jail})")

    # ------------------------------------------------------------------
    # jail
    # ------------------------------------------------------------------

    async def get_jail_infos(self) -> List[JailInfo]:
        jails = await self.get_active_jails()
        infos = await collect_jail_infos(
            jails,
            self.get_banned_ips,
            max_workers=self.settings.aggregation_workers,
            timeout=self.settings.aggregation_timeout
        )
        recent = await self._recent_ban_counts()
        for info in infos:
            info.new_in_last_hour = recent.get(info.jail_name, 0)
        return infos

    async def _recent_ban_counts(self):
        if not self.settings.log_path:
            return {}
        try:
            content = await self.store.read_text(self.settings.log_path)
        except TransportError as e:
            self.logger.warning(f"[{self.server.id}] 读取fail2ban日志失败: {e}")
            return {}
        if content is None:
            return {}
        return count_recent_bans(parse_ban_log(content))

    async def get_all_jails(self) -> List[JailInfo]:
        return await self.jails.get_all_jails()

    async def create_jail(self, jail_name: str, content: str) -> None:
        await self.jails.create_jail(jail_name, content)

    async def delete_jail(self, jail_name: str) -> None:
        await self.jails.delete_jail(jail_name)

    async def get_jail_config(self, jail_name: str) -> Tuple[str, str]:
        return await self.jails.get_jail_config(jail_name)

    async def set_jail_config(self, jail_name: str, content: str) -> None:
        await self.jails.set_jail_config(jail_name, content)

    async def update_jail_enabled_states(self, updates: Mapping[str, bool]) -> None:
        await self.jails.update_jail_enabled_states(updates)

    # ------------------------------------------------------------------
    # 过滤器
    # ------------------------------------------------------------------

    async def get_filter_config(self, filter_name: str) -> Tuple[str, str]:
        return await self.filters.get_filter_config(filter_name)

    async def set_filter_config(self, filter_name: str, content: str) -> None:
        await self.filters.set_filter_config(filter_name, content)

    async def create_filter(self, filter_name: str, content: str) -> None:
        await self.filters.create_filter(filter_name, content)

    async def delete_filter(self, filter_name: str) -> None:
        await self.filters.delete_filter(filter_name)

    async def get_filters(self) -> List[str]:
        return await self.filters.get_filters()

    async def _run_regex(self, log_path: str, filter_path: str) -> str:
        argv = [self.settings.regex_command, log_path, filter_path]
        result = await self.runner.run(argv, timeout=self.settings.command_timeout)
        output = combined_output(result)
        if result.returncode != 0:
            raise TransportError(
                f"fail2ban-regex 执行失败（退出码 {result.returncode}）: {output.strip()}",
                target=f"{self.runner.target}: {format_command(argv)}",
                output=output
            )
        return output

    async def test_filter(
        self,
        filter_name: str,
        log_lines: Sequence[str],
        filter_content: Optional[str] = None
    ) -> Tuple[str, str]:
        return await self.filters.test_filter(filter_name, log_lines, self._run_regex, filter_content)

    # ------------------------------------------------------------------
    # 托管文件与辅助功能
    # ------------------------------------------------------------------

    async def check_jail_local_integrity(self) -> Tuple[bool, bool]:
        return await managed.check_jail_local_integrity(self.store, self.paths)

    async def ensure_jail_local_structure(self) -> bool:
        return await managed.ensure_jail_local_structure(self.store, self.paths, self.settings.defaults)

    async def update_default_settings(self, defaults: DefaultJailSettings) -> None:
        await managed.ensure_jail_local_structure(self.store, self.paths, defaults)

    async def test_logpath_with_resolution(self, logpath: str) -> Tuple[str, str, List[str]]:
        return await test_logpath_with_resolution(self.store, self.paths.config_dir, logpath)

    async def ensure_action_file(self, callback_url: str, secret: str) -> bool:
        return await managed.ensure_action_file(
            self.store, self.paths, callback_url, self.server.id, secret
        )

    async def close(self) -> None:
        await self.runner.close()
