#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 连接器管理器

按服务器ID维护连接器。设置变化时整体重建：新映射构建完成后在锁内一次性替换，
读取方看到的要么全是旧连接器，要么全是新连接器。
"""

import asyncio
import threading
from typing import Dict, Mapping, Optional, Tuple

from connectors import create_connector
from connectors.base import Connector
from jailconf.locks import JailLockRegistry
from jailconf.migration import JailMigrator
from utils.config import AppSettings
from utils.errors import NotFoundError
from utils.logger import get_logger


SERVER_HEADER = 'X-F2B-Server'


class ConnectorManager:
    """连接器注册表"""

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        locks: Optional[JailLockRegistry] = None,
        migrator: Optional[JailMigrator] = None
    ) -> None:
        """初始化管理器

        Args:
            settings: 初始设置，为None时注册表为空
            locks: jail锁注册表（跨重建共享）
            migrator: 迁移服务（跨重建共享）
        """
        self.locks = locks or JailLockRegistry()
        self.migrator = migrator or JailMigrator()
        self.logger = get_logger('central.manager')

        self._guard = threading.Lock()
        self._state: Tuple[Dict[str, Connector], Optional[str]] = ({}, None)
        self.settings = settings or AppSettings()
        if settings is not None:
            self._state = self._build_state(settings)

    def _build_state(self, settings: AppSettings) -> Tuple[Dict[str, Connector], Optional[str]]:
        connectors: Dict[str, Connector] = {}
        default_id = None
        for server in settings.servers:
            if not server.enabled:
                continue
            connectors[server.id] = create_connector(server, settings, self.locks, self.migrator)
            if server.is_default and default_id is None:
                default_id = server.id
        return connectors, default_id

    def _snapshot(self) -> Tuple[Dict[str, Connector], Optional[str]]:
        with self._guard:
            return self._state

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def connector(self, server_id: str) -> Connector:
        """按ID获取连接器

        Raises:
            NotFoundError: 服务器不存在或未启用
        """
        connectors, _ = self._snapshot()
        connector = connectors.get(server_id)
        if connector is None:
            raise NotFoundError(f"服务器 '{server_id}' 不存在或未启用")
        return connector

    def default_connector(self) -> Connector:
        """获取默认服务器的连接器

        Raises:
            NotFoundError: 没有启用的默认服务器
        """
        connectors, default_id = self._snapshot()
        if default_id is None or default_id not in connectors:
            raise NotFoundError("没有配置默认服务器")
        return connectors[default_id]

    def resolve(self, server_id: Optional[str] = None, headers: Optional[Mapping[str, str]] = None) -> Connector:
        """依次按显式ID、X-F2B-Server 请求头、默认服务器查找连接器"""
        if server_id:
            return self.connector(server_id)
        if headers:
            header_value = (headers.get(SERVER_HEADER) or '').strip()
            if header_value:
                return self.connector(header_value)
        return self.default_connector()

    def connectors(self) -> Dict[str, Connector]:
        connectors, _ = self._snapshot()
        return dict(connectors)

    # ------------------------------------------------------------------
    # 重建
    # ------------------------------------------------------------------

    async def reload_from_settings(self, settings: AppSettings) -> None:
        """按新设置重建全部连接器，替换完成后关闭旧连接器"""
        new_state = self._build_state(settings)
        with self._guard:
            old_connectors, _ = self._state
            self._state = new_state
            self.settings = settings

        self.logger.info(f"连接器已重建: {len(new_state[0])} 个启用的服务器，默认 {new_state[1]}")

        for server_id, connector in old_connectors.items():
            try:
                await connector.close()
            except Exception as e:
                self.logger.warning(f"关闭旧连接器 {server_id} 失败: {e}")

    async def close(self) -> None:
        with self._guard:
            connectors, _ = self._state
            self._state = ({}, None)
        for connector in connectors.values():
            await connector.close()

    # ------------------------------------------------------------------
    # 回调动作文件
    # ------------------------------------------------------------------

    async def update_action_file_for_server(self, server_id: str) -> bool:
        """向单台服务器推送回调动作文件（任何类型），返回文件是否被修改"""
        connector = self.connector(server_id)
        changed = await connector.ensure_action_file(self.settings.callback_url, self.settings.callback_secret)
        if changed:
            self.logger.info(f"服务器 {server_id} 的回调动作文件已更新")
        return changed

    async def update_action_files(self) -> Dict[str, bool]:
        """向所有远程服务器（ssh / agent）推送回调动作文件

        每台服务器都会尝试，失败只记录日志，最后重新抛出第一个失败。

        Returns:
            服务器ID -> 文件是否被修改
        """
        connectors, _ = self._snapshot()
        remote_ids = [sid for sid, conn in connectors.items() if conn.server.is_remote]

        results = await asyncio.gather(
            *(self.update_action_file_for_server(sid) for sid in remote_ids),
            return_exceptions=True
        )

        changed: Dict[str, bool] = {}
        first_error: Optional[BaseException] = None
        for server_id, result in zip(remote_ids, results):
            if isinstance(result, BaseException):
                self.logger.error(f"更新服务器 {server_id} 的回调动作文件失败: {result}")
                if first_error is None:
                    first_error = result
            else:
                changed[server_id] = result

        if first_error is not None:
            raise first_error
        return changed
