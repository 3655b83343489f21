#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 命令行入口

管理员通过本脚本查看和控制配置文件中登记的fail2ban实例，也可以在被管理主机上启动代理服务。
"""

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional

from agents.server import AgentServer
from central.manager import ConnectorManager
from central.service import ControlService
from connectors.local import LocalConnector
from connectors.shell import ShellConnector
from jailconf.migration import migrate_legacy_jail_file
from utils.config import (
    ConfigError, ConfigManager, Server, create_default_config, normalize_servers
)
from utils.errors import Fail2banFleetError, ValidationError
from utils.logger import LoggerConfigError, setup_logger_from_config
from utils.security import generate_api_key


VERSION = '1.0.0'


class FleetCLI:
    """命令行管理器

    负责加载配置、初始化日志和连接器，并执行单个命令
    """

    def __init__(self, config_path: str, server_id: Optional[str] = None, as_json: bool = False) -> None:
        """初始化

        Args:
            config_path: 配置文件路径
            server_id: 目标服务器ID，为空时使用默认服务器
            as_json: 以JSON格式输出

        Raises:
            ConfigError: 配置加载或验证失败
            LoggerConfigError: 日志设置失败
        """
        self.config_manager = ConfigManager(config_path)
        self.logger = setup_logger_from_config(self.config_manager.config)
        self.settings = self.config_manager.load_settings()
        self.server_id = server_id
        self.as_json = as_json
        self.manager = ConnectorManager(self.settings)
        self.service = ControlService(self.manager)

    def output(self, data: Any, lines: Optional[List[str]] = None) -> None:
        if self.as_json or lines is None:
            print(json.dumps(data, ensure_ascii=False, indent=2))
        else:
            for line in lines:
                print(line)

    def _shell_connector(self) -> ShellConnector:
        connector = self.manager.resolve(self.server_id)
        if not isinstance(connector, ShellConnector):
            raise ValidationError(f"服务器 {connector.id} 是代理服务器，请在代理主机上执行此命令")
        return connector

    # ------------------------------------------------------------------
    # 命令
    # ------------------------------------------------------------------

    async def cmd_servers(self, args: argparse.Namespace) -> None:
        servers = self.config_manager.list_servers()
        self.output(
            [s.to_dict() for s in servers],
            [
                f"{'*' if s.is_default else ' '} {s.id:<24} {s.type:<6} "
                f"{'启用' if s.enabled else '禁用'}  {s.name}"
                for s in servers
            ]
        )

    async def cmd_jails(self, args: argparse.Namespace) -> None:
        connector = self.manager.resolve(self.server_id)
        if args.all:
            jails = await connector.get_all_jails()
            self.output(
                [j.to_dict() for j in jails],
                [f"{j.jail_name:<32} {'启用' if j.enabled else '禁用'}" for j in jails]
            )
            return
        infos = await connector.get_jail_infos()
        self.output(
            [i.to_dict() for i in infos],
            [
                f"{i.jail_name:<32} 封禁 {i.total_banned:<6} 最近一小时 {i.new_in_last_hour:<6} "
                f"{' '.join(i.banned_ips)}"
                for i in infos
            ]
        )

    async def cmd_summary(self, args: argparse.Namespace) -> None:
        """所有启用服务器的汇总"""
        summary: Dict[str, Any] = {}
        lines = []
        for server_id, connector in self.manager.connectors().items():
            try:
                infos = await connector.get_jail_infos()
            except Fail2banFleetError as e:
                summary[server_id] = {'error': e.message}
                lines.append(f"{server_id:<24} 错误: {e.message}")
                continue
            total = sum(i.total_banned for i in infos)
            summary[server_id] = {'jails': len(infos), 'totalBanned': total}
            lines.append(f"{server_id:<24} jail {len(infos):<4} 封禁 {total}")
        self.output(summary, lines)

    async def cmd_ban(self, args: argparse.Namespace) -> None:
        await self.manager.resolve(self.server_id).ban_ip(args.jail, args.ip)
        self.output({'status': 'ok'}, [f"已封禁 {args.ip} ({args.jail})"])

    async def cmd_unban(self, args: argparse.Namespace) -> None:
        await self.manager.resolve(self.server_id).unban_ip(args.jail, args.ip)
        self.output({'status': 'ok'}, [f"已解封 {args.ip} ({args.jail})"])

    async def cmd_restart(self, args: argparse.Namespace) -> None:
        mode = await self.service.restart(self.server_id)
        self.output({'mode': mode}, [f"fail2ban已{'重启' if mode == 'restart' else '重新加载配置'}"])

    async def cmd_reload(self, args: argparse.Namespace) -> None:
        await self.manager.resolve(self.server_id).reload()
        self.output({'status': 'ok'}, ["fail2ban配置已重新加载"])

    async def cmd_enable(self, args: argparse.Namespace) -> None:
        updates = {jail: not args.disable for jail in args.jails}
        result = await self.service.apply_jail_enabled_states(updates, self.server_id)
        lines = ["jail状态已更新"]
        if result.auto_disabled:
            lines.append(f"重载失败，已自动禁用: {', '.join(result.disabled_jails)} ({result.error})")
        self.output(result.to_dict(), lines)

    async def cmd_config(self, args: argparse.Namespace) -> None:
        content, path = await self.manager.resolve(self.server_id).get_jail_config(args.jail)
        self.output({'config': content, 'filePath': path}, [f"# {path}", content.rstrip('\n')])

    async def cmd_filters(self, args: argparse.Namespace) -> None:
        filters = await self.manager.resolve(self.server_id).get_filters()
        self.output(filters, filters)

    async def cmd_test_logpath(self, args: argparse.Namespace) -> None:
        connector = self.manager.resolve(self.server_id)
        original, resolved, files = await connector.test_logpath_with_resolution(args.logpath)
        self.output(
            {'originalPath': original, 'resolvedPath': resolved, 'files': files},
            [f"原始路径: {original}", f"解析结果: {resolved}"] + [f"  {f}" for f in files]
        )

    async def cmd_ensure_files(self, args: argparse.Namespace) -> None:
        connector = self.manager.resolve(self.server_id)
        jail_local_changed = await connector.ensure_jail_local_structure()
        action_changed = await self.manager.update_action_file_for_server(connector.id)
        self.output(
            {'jailLocal': jail_local_changed, 'actionFile': action_changed},
            [
                f"jail.local: {'已更新' if jail_local_changed else '无变化'}",
                f"回调动作文件: {'已更新' if action_changed else '无变化'}",
            ]
        )

    async def cmd_migrate(self, args: argparse.Namespace) -> None:
        connector = self._shell_connector()
        result = await migrate_legacy_jail_file(connector.store, connector.paths)
        self.output(
            {'backupPath': result.backup_path, 'migrated': result.migrated, 'skipped': result.skipped},
            [
                f"备份: {result.backup_path or '无'}",
                f"已迁移: {', '.join(result.migrated) or '无'}",
                f"已跳过: {', '.join(result.skipped) or '无'}",
            ]
        )

    async def cmd_agent(self, args: argparse.Namespace) -> None:
        """在本机启动代理服务"""
        agent_config = self.config_manager.get('agent', {}) or {}
        secret = agent_config.get('secret')
        if not secret:
            raise ValidationError("缺少 agent.secret 配置（可使用 --generate-secret 生成）")

        server = normalize_servers([Server(
            id=agent_config.get('server_id', 'local'),
            name=agent_config.get('name', ''),
            type='local',
            socket_path=agent_config.get('socket_path', ''),
            enabled=True,
            is_default=True
        )])[0]
        connector = LocalConnector(server, self.settings, self.manager.locks, self.manager.migrator)
        agent = AgentServer(
            connector,
            secret,
            host=args.host or agent_config.get('host', '0.0.0.0'),
            port=args.port or int(agent_config.get('port', 9700))
        )
        await agent.serve_forever()

    async def run(self, args: argparse.Namespace) -> None:
        handler = getattr(self, f"cmd_{args.command.replace('-', '_')}")
        try:
            await handler(args)
        finally:
            await self.manager.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Fail2ban集群管控系统',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  python main.py --init-config -c config.yaml
  python main.py servers
  python main.py -s srv-web01 jails
  python main.py ban sshd 203.0.113.7
  python main.py enable sshd nginx-http-auth
  python main.py agent --port 9700
        """
    )
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径 (默认: config.yaml)')
    parser.add_argument('--server', '-s', help='目标服务器ID (默认: 默认服务器)')
    parser.add_argument('--json', action='store_true', help='以JSON格式输出')
    parser.add_argument('--init-config', action='store_true', help='创建默认配置文件')
    parser.add_argument('--generate-secret', action='store_true', help='生成代理共享密钥')
    parser.add_argument('--version', '-v', action='version', version=f'Fail2ban集群管控系统 v{VERSION}')

    sub = parser.add_subparsers(dest='command')
    sub.add_parser('servers', help='列出服务器')
    jails = sub.add_parser('jails', help='列出jail')
    jails.add_argument('--all', action='store_true', help='列出配置文件中的全部jail（包括未启用的）')
    sub.add_parser('summary', help='所有服务器的封禁汇总')
    for name, help_text in (('ban', '封禁IP'), ('unban', '解封IP')):
        p = sub.add_parser(name, help=help_text)
        p.add_argument('jail')
        p.add_argument('ip')
    sub.add_parser('restart', help='重启fail2ban')
    sub.add_parser('reload', help='重新加载fail2ban配置')
    enable = sub.add_parser('enable', help='启用jail（失败时自动禁用）')
    enable.add_argument('jails', nargs='+')
    enable.add_argument('--disable', action='store_true', help='改为禁用')
    config = sub.add_parser('config', help='显示jail配置')
    config.add_argument('jail')
    sub.add_parser('filters', help='列出过滤器')
    logpath = sub.add_parser('test-logpath', help='解析并测试logpath')
    logpath.add_argument('logpath')
    sub.add_parser('ensure-files', help='写入托管的 jail.local 和回调动作文件')
    sub.add_parser('migrate', help='把 jail.local 中的jail拆分到 jail.d')
    agent = sub.add_parser('agent', help='启动代理服务')
    agent.add_argument('--host', help='监听地址')
    agent.add_argument('--port', type=int, help='监听端口')
    return parser


def main() -> None:
    """主函数"""
    parser = build_parser()
    args = parser.parse_args()

    if args.generate_secret:
        print(generate_api_key())
        sys.exit(0)

    if args.init_config:
        create_default_config(args.config)
        print(f"已创建默认配置文件: {args.config}")
        sys.exit(0)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if not os.path.exists(args.config):
        print(f"配置文件不存在: {args.config}")
        print("请使用 --init-config 创建默认配置文件")
        sys.exit(1)

    try:
        cli = FleetCLI(args.config, server_id=args.server, as_json=args.json)
        asyncio.run(cli.run(args))
    except KeyboardInterrupt:
        print("\n已停止")
    except (ConfigError, LoggerConfigError) as e:
        print(f"配置错误: {e}")
        sys.exit(2)
    except Fail2banFleetError as e:
        print(f"操作失败: {e.message}")
        sys.exit(1)


if __name__ == '__main__':
    main()
