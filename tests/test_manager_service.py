#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
连接器管理器与控制服务测试
"""

import unittest
from unittest.mock import AsyncMock, MagicMock

from central.manager import ConnectorManager
from central.service import ControlService
from connectors.agent import AgentConnector
from connectors.local import LocalConnector
from connectors.ssh import SSHConnector
from utils.config import AppSettings, Server, normalize_servers
from utils.errors import NotFoundError, ReloadFailure, TransportError


def make_settings(*servers):
    return AppSettings(
        callback_url='http://fleet.example',
        callback_secret='secret',
        servers=normalize_servers(servers)
    )


class ConnectorManagerTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.settings = make_settings(
            Server(id='local', type='local', enabled=True),
            Server(id='web', type='ssh', host='10.0.0.2', is_default=True),
            Server(id='db', type='agent', agent_url='http://10.0.0.3:9700', agent_secret='k'),
            Server(id='off', type='ssh', host='10.0.0.4', enabled=False),
        )
        self.manager = ConnectorManager(self.settings)

    async def asyncTearDown(self):
        await self.manager.close()

    def test_connector_types(self):
        connectors = self.manager.connectors()
        self.assertEqual(sorted(connectors), ['db', 'local', 'web'])
        self.assertIsInstance(connectors['local'], LocalConnector)
        self.assertIsInstance(connectors['web'], SSHConnector)
        self.assertIsInstance(connectors['db'], AgentConnector)

    def test_lookup(self):
        self.assertEqual(self.manager.default_connector().id, 'web')
        self.assertEqual(self.manager.resolve().id, 'web')
        self.assertEqual(self.manager.resolve('db').id, 'db')
        self.assertEqual(self.manager.resolve(headers={'X-F2B-Server': 'local'}).id, 'local')
        with self.assertRaises(NotFoundError):
            self.manager.connector('off')
        with self.assertRaises(NotFoundError):
            self.manager.resolve('missing')

    async def test_rebuild_swaps_all_connectors(self):
        old = self.manager.connectors()
        for connector in old.values():
            connector.close = AsyncMock()

        await self.manager.reload_from_settings(make_settings(Server(id='new', type='ssh', host='h')))

        self.assertEqual(list(self.manager.connectors()), ['new'])
        self.assertEqual(self.manager.default_connector().id, 'new')
        for connector in old.values():
            connector.close.assert_awaited_once()

    async def test_empty_registry(self):
        manager = ConnectorManager()
        with self.assertRaises(NotFoundError):
            manager.default_connector()

    async def test_update_action_files_targets_remote_servers(self):
        connectors = self.manager.connectors()
        for connector in connectors.values():
            connector.ensure_action_file = AsyncMock(return_value=True)

        changed = await self.manager.update_action_files()

        self.assertEqual(changed, {'web': True, 'db': True})
        connectors['web'].ensure_action_file.assert_awaited_once_with('http://fleet.example', 'secret')
        connectors['local'].ensure_action_file.assert_not_awaited()

    async def test_update_action_files_reports_first_error(self):
        connectors = self.manager.connectors()
        connectors['web'].ensure_action_file = AsyncMock(side_effect=TransportError('down'))
        connectors['db'].ensure_action_file = AsyncMock(return_value=False)

        with self.assertRaises(TransportError):
            await self.manager.update_action_files()
        connectors['db'].ensure_action_file.assert_awaited_once()


class ControlServiceTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.connector = MagicMock()
        self.connector.id = 'web'
        for name in ('reload', 'set_jail_config', 'update_jail_enabled_states', 'restart_with_mode'):
            setattr(self.connector, name, AsyncMock())
        manager = MagicMock()
        manager.resolve.return_value = self.connector
        self.service = ControlService(manager)

    async def test_restart_reports_mode(self):
        self.connector.restart_with_mode.return_value = 'reload'
        self.assertEqual(await self.service.restart('web'), 'reload')

    async def test_successful_apply(self):
        result = await self.service.apply_jail_config('sshd', "[sshd]\nenabled = true\n")
        self.assertFalse(result.auto_disabled)
        self.connector.set_jail_config.assert_awaited_once_with('sshd', "[sshd]\nenabled = true\n")
        self.connector.update_jail_enabled_states.assert_not_awaited()

    async def test_failed_reload_disables_enabled_jails(self):
        self.connector.reload.side_effect = [ReloadFailure("Errors in jail 'sshd'"), None]

        result = await self.service.apply_jail_enabled_states({'sshd': True, 'nginx': False, 'apache': True})

        self.assertTrue(result.auto_disabled)
        self.assertEqual(result.disabled_jails, ['apache', 'sshd'])
        self.assertEqual(result.error, "Errors in jail 'sshd'")
        self.assertEqual(
            self.connector.update_jail_enabled_states.await_args_list[-1].args[0],
            {'apache': False, 'sshd': False}
        )
        self.assertEqual(result.to_dict()['disabledJails'], ['apache', 'sshd'])

    async def test_second_failure_is_raised(self):
        self.connector.reload.side_effect = [ReloadFailure('first'), ReloadFailure('second')]

        with self.assertRaises(ReloadFailure) as ctx:
            await self.service.apply_jail_config('sshd', '')
        self.assertEqual(ctx.exception.message, 'first')
        self.assertTrue(ctx.exception.auto_disabled)
        self.assertEqual(ctx.exception.jails, ['sshd'])

    async def test_disable_only_does_not_remediate(self):
        self.connector.reload.side_effect = ReloadFailure('broken')
        with self.assertRaises(ReloadFailure):
            await self.service.apply_jail_enabled_states({'sshd': False})
        self.assertEqual(self.connector.update_jail_enabled_states.await_count, 1)


if __name__ == '__main__':
    unittest.main()
