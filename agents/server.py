#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 代理服务器

在被管理主机上运行，把本地连接器的操作通过HTTP暴露给中心（AgentConnector）。
所有请求都需要携带 X-F2B-Token 请求头；错误以
``{"error": ..., "kind": ..., "timeout": ...}`` 的JSON返回。
"""

import asyncio
from typing import Any, Dict, Optional

from aiohttp import web

from connectors.agent import TOKEN_HEADER
from connectors.shell import ShellConnector
from jailconf import managed
from utils.config import DefaultJailSettings
from utils.errors import Fail2banFleetError, ReloadFailure, TransportError, ValidationError, error_kind
from utils.logger import get_logger
from utils.security import verify_api_key


STATUS_BY_KIND = {
    'validation': 400,
    'not_found': 404,
    'reload': 409,
    'transport': 502,
    'timeout': 504,
    'internal': 500,
}
PUBLIC_PATHS = frozenset({'/v1/health'})


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise ValidationError("请求体不是合法的JSON")
    if not isinstance(data, dict):
        raise ValidationError("请求体必须是JSON对象")
    return data


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ValidationError(f"缺少字段或类型错误: {key}")
    return value


class AgentServer:
    """代理HTTP服务器"""

    def __init__(
        self,
        connector: ShellConnector,
        secret: str,
        host: str = '0.0.0.0',
        port: int = 9700
    ) -> None:
        """初始化代理服务器

        Args:
            connector: 本机连接器
            secret: 共享密钥
            host: 监听地址
            port: 监听端口
        """
        if not secret:
            raise ValueError("代理共享密钥不能为空")
        self.connector = connector
        self.secret = secret
        self.host = host
        self.port = port
        self.logger = get_logger('agents.server')
        self.runner: Optional[web.AppRunner] = None

        self.app = web.Application(middlewares=[self.auth_middleware, self.error_middleware])
        self._setup_routes()

    def _setup_routes(self) -> None:
        """设置路由"""
        router = self.app.router
        router.add_get('/v1/health', self.handle_health)

        router.add_post('/v1/service/restart', self.handle_restart)
        router.add_post('/v1/service/reload', self.handle_reload)

        router.add_get('/v1/jails', self.handle_jail_infos)
        router.add_get('/v1/jails/all', self.handle_all_jails)
        router.add_post('/v1/jails', self.handle_create_jail)
        router.add_post('/v1/jails/enabled', self.handle_enabled_states)
        router.add_delete('/v1/jails/{jail}', self.handle_delete_jail)
        router.add_get('/v1/jails/{jail}/config', self.handle_get_jail_config)
        router.add_put('/v1/jails/{jail}/config', self.handle_set_jail_config)
        router.add_post('/v1/jails/{jail}/ban', self.handle_ban)
        router.add_post('/v1/jails/{jail}/unban', self.handle_unban)

        router.add_get('/v1/filters', self.handle_filters)
        router.add_post('/v1/filters', self.handle_create_filter)
        router.add_get('/v1/filters/{filter}', self.handle_get_filter)
        router.add_put('/v1/filters/{filter}', self.handle_set_filter)
        router.add_delete('/v1/filters/{filter}', self.handle_delete_filter)
        router.add_post('/v1/filters/{filter}/test', self.handle_test_filter)

        router.add_get('/v1/jail-local/integrity', self.handle_integrity)
        router.add_post('/v1/jail-local/ensure', self.handle_ensure_jail_local)
        router.add_put('/v1/settings/defaults', self.handle_update_defaults)
        router.add_post('/v1/logpath/test', self.handle_test_logpath)
        router.add_put('/v1/actions/callback', self.handle_callback_action)

    # ------------------------------------------------------------------
    # 中间件
    # ------------------------------------------------------------------

    @web.middleware
    async def auth_middleware(self, request: web.Request, handler):
        """共享密钥认证中间件"""
        if request.path not in PUBLIC_PATHS:
            if not verify_api_key(request.headers.get(TOKEN_HEADER), self.secret):
                self.logger.warning(f"拒绝未认证的请求: {request.method} {request.path} ({request.remote})")
                return web.json_response(
                    {'error': '无效的代理令牌', 'kind': 'auth', 'timeout': False}, status=401
                )
        return await handler(request)

    @web.middleware
    async def error_middleware(self, request: web.Request, handler):
        """把系统异常转换为JSON错误响应"""
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Fail2banFleetError as e:
            kind = error_kind(e)
            body: Dict[str, Any] = {'error': e.message, 'kind': kind, 'timeout': kind == 'timeout'}
            if isinstance(e, (TransportError, ReloadFailure)) and e.output:
                body['output'] = e.output
            if isinstance(e, ReloadFailure):
                body['jails'] = e.jails
            level = self.logger.info if e.client_error else self.logger.error
            level(f"{request.method} {request.path} 失败 ({kind}): {e.message}")
            return web.json_response(body, status=STATUS_BY_KIND[kind])
        except Exception as e:
            self.logger.exception(f"{request.method} {request.path} 内部错误: {e}")
            return web.json_response({'error': str(e), 'kind': 'internal', 'timeout': False}, status=500)

    # ------------------------------------------------------------------
    # 服务控制
    # ------------------------------------------------------------------

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({'status': 'ok', 'serverId': self.connector.server.id})

    async def handle_restart(self, request: web.Request) -> web.Response:
        mode = await self.connector.restart_with_mode()
        return web.json_response({'mode': mode})

    async def handle_reload(self, request: web.Request) -> web.Response:
        await self.connector.reload()
        return web.json_response({'status': 'ok'})

    async def handle_ban(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        await self.connector.ban_ip(request.match_info['jail'], _require_str(data, 'ip'))
        return web.json_response({'status': 'ok'})

    async def handle_unban(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        await self.connector.unban_ip(request.match_info['jail'], _require_str(data, 'ip'))
        return web.json_response({'status': 'ok'})

    # ------------------------------------------------------------------
    # jail
    # ------------------------------------------------------------------

    async def handle_jail_infos(self, request: web.Request) -> web.Response:
        infos = await self.connector.get_jail_infos()
        return web.json_response({'jails': [info.to_dict() for info in infos]})

    async def handle_all_jails(self, request: web.Request) -> web.Response:
        jails = await self.connector.get_all_jails()
        return web.json_response({'jails': [jail.to_dict() for jail in jails]})

    async def handle_create_jail(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        await self.connector.create_jail(_require_str(data, 'name'), data.get('content') or '')
        return web.json_response({'status': 'ok'}, status=201)

    async def handle_delete_jail(self, request: web.Request) -> web.Response:
        await self.connector.delete_jail(request.match_info['jail'])
        return web.json_response({'status': 'ok'})

    async def handle_get_jail_config(self, request: web.Request) -> web.Response:
        content, path = await self.connector.get_jail_config(request.match_info['jail'])
        return web.json_response({'config': content, 'filePath': path})

    async def handle_set_jail_config(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        await self.connector.set_jail_config(request.match_info['jail'], _require_str(data, 'config'))
        return web.json_response({'status': 'ok'})

    async def handle_enabled_states(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        updates = data.get('updates')
        if not isinstance(updates, dict):
            raise ValidationError("updates 必须是 {jail: bool} 对象")
        await self.connector.update_jail_enabled_states(updates)
        return web.json_response({'status': 'ok'})

    # ------------------------------------------------------------------
    # 过滤器
    # ------------------------------------------------------------------

    async def handle_filters(self, request: web.Request) -> web.Response:
        return web.json_response({'filters': await self.connector.get_filters()})

    async def handle_create_filter(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        await self.connector.create_filter(_require_str(data, 'name'), data.get('content') or '')
        return web.json_response({'status': 'ok'}, status=201)

    async def handle_get_filter(self, request: web.Request) -> web.Response:
        content, path = await self.connector.get_filter_config(request.match_info['filter'])
        return web.json_response({'config': content, 'filePath': path})

    async def handle_set_filter(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        await self.connector.set_filter_config(request.match_info['filter'], _require_str(data, 'config'))
        return web.json_response({'status': 'ok'})

    async def handle_delete_filter(self, request: web.Request) -> web.Response:
        await self.connector.delete_filter(request.match_info['filter'])
        return web.json_response({'status': 'ok'})

    async def handle_test_filter(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        log_lines = data.get('logLines')
        if not isinstance(log_lines, list) or not all(isinstance(line, str) for line in log_lines):
            raise ValidationError("logLines 必须是字符串列表")
        filter_content = data.get('filterContent')
        if filter_content is not None and not isinstance(filter_content, str):
            raise ValidationError("filterContent 必须是字符串")
        output, path = await self.connector.test_filter(request.match_info['filter'], log_lines, filter_content)
        return web.json_response({'output': output, 'filterPath': path})

    # ------------------------------------------------------------------
    # 托管文件与辅助功能
    # ------------------------------------------------------------------

    async def handle_integrity(self, request: web.Request) -> web.Response:
        exists, is_managed = await self.connector.check_jail_local_integrity()
        return web.json_response({'exists': exists, 'managed': is_managed})

    async def handle_ensure_jail_local(self, request: web.Request) -> web.Response:
        changed = await self.connector.ensure_jail_local_structure()
        return web.json_response({'changed': changed})

    async def handle_update_defaults(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        try:
            defaults = DefaultJailSettings.from_dict(data)
        except TypeError as e:
            raise ValidationError(f"默认设置不合法: {e}")
        await self.connector.update_default_settings(defaults)
        return web.json_response({'status': 'ok'})

    async def handle_test_logpath(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        original, resolved, files = await self.connector.test_logpath_with_resolution(
            _require_str(data, 'logpath')
        )
        return web.json_response({'originalPath': original, 'resolvedPath': resolved, 'files': files})

    async def handle_callback_action(self, request: web.Request) -> web.Response:
        data = await _json_body(request)
        # 动作文件中的服务器ID是中心为本代理分配的ID
        changed = await managed.ensure_action_file(
            self.connector.store,
            self.connector.paths,
            _require_str(data, 'callbackUrl'),
            data.get('serverId') or self.connector.server.id,
            _require_str(data, 'secret')
        )
        return web.json_response({'changed': changed})

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """启动HTTP服务"""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        self.logger.info(f"代理服务器启动成功，监听 {self.host}:{self.port}")

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
        await self.connector.close()
        self.logger.info("代理服务器已停止")

    async def serve_forever(self) -> None:
        await self.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await self.stop()
