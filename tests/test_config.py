#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
配置管理测试
"""

import os
import shutil
import tempfile
import unittest

import yaml

from utils.config import (
    AppSettings, ConfigLoadError, ConfigManager, ConfigValidationError, Server,
    create_default_config, normalize_servers
)
from utils.errors import NotFoundError, ValidationError


class NormalizeServersTest(unittest.TestCase):

    def test_fills_defaults(self):
        servers = normalize_servers([
            Server(type='local'),
            Server(id='web', type='ssh', host='10.0.0.2'),
        ])
        local, web = servers
        self.assertRegex(local.id, r'^srv-[0-9a-f]{16}$')
        self.assertEqual(local.name, f"Fail2ban Server {local.id}")
        self.assertEqual(local.socket_path, '/var/run/fail2ban/fail2ban.sock')
        self.assertFalse(local.enabled)
        self.assertFalse(local.is_default)
        self.assertTrue(web.enabled)
        self.assertEqual(web.port, 22)
        self.assertTrue(web.is_default)

    def test_single_default(self):
        servers = normalize_servers([
            Server(id='a', type='ssh', host='a', is_default=True),
            Server(id='b', type='ssh', host='b', is_default=True),
            Server(id='c', type='ssh', host='c', enabled=False, is_default=True),
        ])
        self.assertEqual([s.is_default for s in servers], [True, False, False])

    def test_input_is_not_modified(self):
        original = Server(type='local')
        normalize_servers([original])
        self.assertEqual(original.id, '')
        self.assertIsNone(original.enabled)


class AppSettingsTest(unittest.TestCase):

    def test_environment_overrides(self):
        config = {
            'fail2ban': {'config_dir': '/srv/f2b', 'jail_auto_migration': False},
            'callback': {'url': 'http://file.example', 'secret': 'from-file'},
        }
        settings = AppSettings.from_config(config, environ={
            'JAIL_AUTOMIGRATION': 'true',
            'CALLBACK_URL': 'https://env.example/',
        })
        self.assertTrue(settings.jail_auto_migration)
        self.assertEqual(settings.callback_url, 'https://env.example')
        self.assertEqual(settings.callback_secret, 'from-file')
        self.assertEqual(settings.paths.jail_d, '/srv/f2b/jail.d')
        self.assertEqual(settings.paths.action_file, '/srv/f2b/action.d/fleet-callback.conf')

    def test_defaults(self):
        settings = AppSettings.from_config({}, environ={})
        self.assertFalse(settings.jail_auto_migration)
        self.assertEqual(settings.defaults.maxretry, 3)
        self.assertEqual(settings.servers, [])


class ConfigManagerTest(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.config_path = os.path.join(self.tmpdir, 'config.yaml')
        create_default_config(self.config_path)
        self.manager = ConfigManager(self.config_path)

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_default_config_loads(self):
        settings = self.manager.load_settings(environ={})
        self.assertTrue(settings.callback_secret)
        self.assertEqual([s.id for s in settings.servers], ['local'])
        self.assertEqual(settings.default_server().id, 'local')
        self.assertEqual(self.manager.get('agent.port'), 9700)
        self.assertIsNone(self.manager.get('missing.key'))

    def test_missing_secret_is_generated_and_saved(self):
        self.manager.set('callback.secret', '')
        settings = self.manager.load_settings(environ={})
        self.assertTrue(settings.callback_secret)
        with open(self.config_path, encoding='utf-8') as f:
            saved = yaml.safe_load(f)
        self.assertEqual(saved['callback']['secret'], settings.callback_secret)

    def test_upsert_and_default(self):
        server = self.manager.upsert_server(Server(id='web', type='ssh', host='10.0.0.5'))
        self.assertTrue(server.enabled)
        self.assertFalse(server.is_default)

        self.manager.set_default_server('web')
        servers = {s.id: s for s in self.manager.list_servers()}
        self.assertTrue(servers['web'].is_default)
        self.assertFalse(servers['local'].is_default)

        reloaded = ConfigManager(self.config_path)
        self.assertEqual(reloaded.load_settings(environ={}).default_server().id, 'web')

    def test_invalid_server_rejected(self):
        with self.assertRaises(ValidationError):
            self.manager.upsert_server(Server(id='x', type='ssh'))
        with self.assertRaises(ValidationError):
            self.manager.upsert_server(Server(id='y', type='agent', agent_url='ftp://x'))
        with self.assertRaises(ValidationError):
            self.manager.upsert_server(Server(id='z', type='telnet'))

    def test_delete_server(self):
        self.manager.delete_server('local')
        self.assertEqual(self.manager.list_servers(), [])
        with self.assertRaises(NotFoundError):
            self.manager.delete_server('local')

    def test_invalid_files(self):
        path = os.path.join(self.tmpdir, 'bad.yaml')
        with open(path, 'w', encoding='utf-8') as f:
            f.write("servers:\n  - {id: a, type: ssh}\n")
        with self.assertRaises(ConfigValidationError):
            ConfigManager(path)
        with self.assertRaises(ConfigLoadError):
            ConfigManager(os.path.join(self.tmpdir, 'missing.yaml'))


if __name__ == '__main__':
    unittest.main()
