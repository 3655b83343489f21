#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 控制服务

在连接器之上组合多步操作：重启并报告实际方式，
以及“写配置 -> 重载 -> 失败时自动禁用并重试一次”的修改流程。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from central.manager import ConnectorManager
from connectors.base import Connector
from utils.errors import ReloadFailure
from utils.logger import get_logger


@dataclass
class ApplyResult:
    """一次配置修改的结果"""

    auto_disabled: bool = False
    disabled_jails: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'autoDisabled': self.auto_disabled,
            'disabledJails': list(self.disabled_jails),
            'error': self.error,
        }


class ControlService:
    """面向上层的控制服务"""

    def __init__(self, manager: ConnectorManager) -> None:
        self.manager = manager
        self.logger = get_logger('central.service')

    async def restart(self, server_id: Optional[str] = None) -> str:
        """重启（或在没有systemd时重载）fail2ban

        Returns:
            'restart' 或 'reload'
        """
        connector = self.manager.resolve(server_id)
        mode = await connector.restart_with_mode()
        self.logger.info(f"服务器 {connector.id} 已完成 {mode}")
        return mode

    async def _reload_with_remediation(self, connector: Connector, jails: List[str]) -> ApplyResult:
        """重载；失败时禁用相关jail并重试一次

        Raises:
            ReloadFailure: 禁用后重试仍然失败（auto_disabled=True）
        """
        try:
            await connector.reload()
            return ApplyResult()
        except ReloadFailure as first_failure:
            self.logger.warning(
                f"服务器 {connector.id} 重载失败，自动禁用jail {', '.join(jails)}: {first_failure}"
            )
            await connector.update_jail_enabled_states({jail: False for jail in jails})
            try:
                await connector.reload()
            except ReloadFailure as second_failure:
                self.logger.error(f"服务器 {connector.id} 禁用jail后重载仍然失败: {second_failure}")
                first_failure.auto_disabled = True
                first_failure.jails = list(jails)
                raise first_failure from second_failure

            return ApplyResult(auto_disabled=True, disabled_jails=list(jails), error=first_failure.message)

    async def apply_jail_config(self, jail_name: str, content: str, server_id: Optional[str] = None) -> ApplyResult:
        """写入jail配置并重载"""
        connector = self.manager.resolve(server_id)
        await connector.set_jail_config(jail_name, content)
        return await self._reload_with_remediation(connector, [jail_name])

    async def apply_jail_enabled_states(
        self,
        updates: Mapping[str, bool],
        server_id: Optional[str] = None
    ) -> ApplyResult:
        """批量修改启用状态并重载

        自动禁用只涉及本次被启用的jail。
        """
        connector = self.manager.resolve(server_id)
        await connector.update_jail_enabled_states(updates)
        enabled_jails = sorted(name for name, enabled in updates.items() if enabled)
        if not enabled_jails:
            await connector.reload()
            return ApplyResult()
        return await self._reload_with_remediation(connector, enabled_jails)
