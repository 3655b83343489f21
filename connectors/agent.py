#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 代理连接器

远程主机上运行 agents.server.AgentServer，本连接器把每个操作翻译成一次HTTP请求。
请求头 X-F2B-Token 携带共享密钥。代理返回的错误JSON按状态码还原为对应的异常类型。
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

import aiohttp

from connectors.base import Connector, validate_ip_address
from jailconf.filter_config import validate_filter_name
from jailconf.jail_config import JailInfo, validate_jail_name
from utils.config import AppSettings, DefaultJailSettings, Server
from utils.errors import (
    NotFoundError, ReloadFailure, TransportError, TransportTimeoutError, ValidationError
)
from utils.logger import get_logger


TOKEN_HEADER = 'X-F2B-Token'


class AgentConnector(Connector):
    """通过HTTP代理控制远程fail2ban"""

    def __init__(self, server: Server, settings: AppSettings) -> None:
        super().__init__(server)
        self.settings = settings
        self.base_url = server.agent_url.rstrip('/')
        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = get_logger('connectors.agent')

    async def init_session(self) -> aiohttp.ClientSession:
        """初始化HTTP会话"""
        if self.session is None or self.session.closed:
            headers = {
                TOKEN_HEADER: self.server.agent_secret,
                'Content-Type': 'application/json'
            }
            # 单个请求的超时在 _request 中设置
            self.session = aiohttp.ClientSession(headers=headers)
        return self.session

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, str]] = None
    ) -> Dict[str, Any]:
        """发送请求并解析JSON

        Raises:
            ValidationError / NotFoundError: 代理返回 400 / 404
            ReloadFailure: 代理返回 409
            TransportTimeoutError: 请求超时或代理返回 504
            TransportError: 连接失败、认证失败或其他错误
        """
        session = await self.init_session()
        url = f"{self.base_url}{path}"
        target = f"{method} {url}"
        timeout = aiohttp.ClientTimeout(total=self.settings.command_timeout)
        self.logger.debug(f"代理请求: {target}")

        try:
            async with session.request(method, url, json=payload, params=params, timeout=timeout) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = {'error': (await response.text()).strip()}
                status = response.status
        except asyncio.TimeoutError as e:
            raise TransportTimeoutError("代理请求超时", target=target, original_error=e)
        except aiohttp.ClientError as e:
            raise TransportError(f"代理请求失败: {e}", target=target, original_error=e)

        if not isinstance(data, dict):
            data = {'result': data}
        if status < 400:
            return data
        raise self._error_from_response(status, data, target)

    @staticmethod
    def _error_from_response(status: int, data: Mapping[str, Any], target: str) -> Exception:
        message = str(data.get('error') or f"HTTP {status}")
        if status == 400:
            return ValidationError(message)
        if status == 404:
            return NotFoundError(message)
        if status == 409:
            return ReloadFailure(message, output=data.get('output', ''), jails=data.get('jails'))
        if status == 401:
            return TransportError(f"代理认证失败: {message}", target=target)
        if status == 504 or data.get('timeout'):
            return TransportTimeoutError(message, target=target, output=data.get('output', ''))
        return TransportError(message, target=target, output=data.get('output', ''))

    @staticmethod
    def _jail_path(jail_name: str) -> str:
        return quote(validate_jail_name(jail_name), safe='')

    @staticmethod
    def _filter_path(filter_name: str) -> str:
        return quote(validate_filter_name(filter_name), safe='')

    # ------------------------------------------------------------------
    # 服务控制
    # ------------------------------------------------------------------

    async def restart_with_mode(self) -> str:
        data = await self._request('POST', '/v1/service/restart')
        return data.get('mode', 'restart')

    async def reload(self) -> None:
        await self._request('POST', '/v1/service/reload')

    async def ban_ip(self, jail: str, ip: str) -> None:
        path = f"/v1/jails/{self._jail_path(jail)}/ban"
        await self._request('POST', path, {'ip': validate_ip_address(ip)})

    async def unban_ip(self, jail: str, ip: str) -> None:
        path = f"/v1/jails/{self._jail_path(jail)}/unban"
        await self._request('POST', path, {'ip': validate_ip_address(ip)})

    # ------------------------------------------------------------------
    # jail
    # ------------------------------------------------------------------

    async def get_jail_infos(self) -> List[JailInfo]:
        data = await self._request('GET', '/v1/jails')
        return [JailInfo.from_dict(item) for item in data.get('jails', [])]

    async def get_all_jails(self) -> List[JailInfo]:
        data = await self._request('GET', '/v1/jails/all')
        return [JailInfo.from_dict(item) for item in data.get('jails', [])]

    async def create_jail(self, jail_name: str, content: str) -> None:
        await self._request('POST', '/v1/jails', {'name': validate_jail_name(jail_name), 'content': content})

    async def delete_jail(self, jail_name: str) -> None:
        await self._request('DELETE', f"/v1/jails/{self._jail_path(jail_name)}")

    async def get_jail_config(self, jail_name: str) -> Tuple[str, str]:
        data = await self._request('GET', f"/v1/jails/{self._jail_path(jail_name)}/config")
        return data.get('config', ''), data.get('filePath', '')

    async def set_jail_config(self, jail_name: str, content: str) -> None:
        await self._request('PUT', f"/v1/jails/{self._jail_path(jail_name)}/config", {'config': content})

    async def update_jail_enabled_states(self, updates: Mapping[str, bool]) -> None:
        payload = {validate_jail_name(name): enabled for name, enabled in updates.items()}
        await self._request('POST', '/v1/jails/enabled', {'updates': payload})

    # ------------------------------------------------------------------
    # 过滤器
    # ------------------------------------------------------------------

    async def get_filter_config(self, filter_name: str) -> Tuple[str, str]:
        data = await self._request('GET', f"/v1/filters/{self._filter_path(filter_name)}")
        return data.get('config', ''), data.get('filePath', '')

    async def set_filter_config(self, filter_name: str, content: str) -> None:
        await self._request('PUT', f"/v1/filters/{self._filter_path(filter_name)}", {'config': content})

    async def create_filter(self, filter_name: str, content: str) -> None:
        await self._request('POST', '/v1/filters', {'name': validate_filter_name(filter_name), 'content': content})

    async def delete_filter(self, filter_name: str) -> None:
        await self._request('DELETE', f"/v1/filters/{self._filter_path(filter_name)}")

    async def get_filters(self) -> List[str]:
        data = await self._request('GET', '/v1/filters')
        return list(data.get('filters', []))

    async def test_filter(
        self,
        filter_name: str,
        log_lines: Sequence[str],
        filter_content: Optional[str] = None
    ) -> Tuple[str, str]:
        payload: Dict[str, Any] = {'logLines': list(log_lines)}
        if filter_content is not None:
            payload['filterContent'] = filter_content
        data = await self._request('POST', f"/v1/filters/{self._filter_path(filter_name)}/test", payload)
        return data.get('output', ''), data.get('filterPath', '')

    # ------------------------------------------------------------------
    # 托管文件与辅助功能
    # ------------------------------------------------------------------

    async def check_jail_local_integrity(self) -> Tuple[bool, bool]:
        data = await self._request('GET', '/v1/jail-local/integrity')
        return bool(data.get('exists')), bool(data.get('managed'))

    async def ensure_jail_local_structure(self) -> bool:
        data = await self._request('POST', '/v1/jail-local/ensure')
        return bool(data.get('changed'))

    async def update_default_settings(self, defaults: DefaultJailSettings) -> None:
        await self._request('PUT', '/v1/settings/defaults', defaults.to_dict())

    async def test_logpath_with_resolution(self, logpath: str) -> Tuple[str, str, List[str]]:
        data = await self._request('POST', '/v1/logpath/test', {'logpath': logpath})
        return data.get('originalPath', ''), data.get('resolvedPath', ''), list(data.get('files', []))

    async def ensure_action_file(self, callback_url: str, secret: str) -> bool:
        payload = {'callbackUrl': callback_url, 'serverId': self.server.id, 'secret': secret}
        data = await self._request('PUT', '/v1/actions/callback', payload)
        return bool(data.get('changed'))

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None
