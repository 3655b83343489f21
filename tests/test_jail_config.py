#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Jail配置引擎测试
"""

import asyncio
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from jailconf.jail_config import (
    JailConfigEngine, JailInfo, extract_filter_from_jail_config,
    extract_logpath_from_jail_config, normalize_jail_sections, parse_jail_sections,
    set_enabled_in_section, validate_jail_name
)
from jailconf.locks import JailLockRegistry
from jailconf.migration import JailMigrator
from jailconf.storage import LocalFileStore
from utils.config import Fail2banPaths
from utils.errors import NotFoundError, TransportError, ValidationError


class JailNameValidationTest(unittest.TestCase):

    def test_accepts_valid_names(self):
        for name in ('sshd', 'nginx-http-auth', 'my_jail_2', 'a' * 128):
            self.assertEqual(validate_jail_name(name), name)

    def test_rejects_invalid_names(self):
        for name in ('', 'a' * 129, 'bad name', '../etc', 'jail.conf', ' sshd', None, 42):
            with self.assertRaises(ValidationError):
                validate_jail_name(name)

    def test_rejects_reserved_sections(self):
        for name in ('DEFAULT', 'default', 'Includes'):
            with self.assertRaises(ValidationError):
                validate_jail_name(name)


class SectionTextTest(unittest.TestCase):

    def test_normalize_replaces_first_header_and_drops_others(self):
        content = "[wrong]\nport = 22\n[other]\nmaxretry = 1\n"
        self.assertEqual(
            normalize_jail_sections('sshd', content),
            "[sshd]\nport = 22\nmaxretry = 1\n"
        )

    def test_normalize_keeps_matching_header(self):
        content = "# pasted\n[other]\nport = 22\n[ sshd ]\nmaxretry = 1\n[sshd]\nbantime = 1h\n"
        self.assertEqual(
            normalize_jail_sections('sshd', content),
            "# pasted\nport = 22\n[sshd]\nmaxretry = 1\nbantime = 1h\n"
        )

    def test_normalize_adds_missing_header(self):
        self.assertEqual(normalize_jail_sections('sshd', "port = 22\n"), "[sshd]\nport = 22\n")
        self.assertEqual(normalize_jail_sections('sshd', "   \n"), "[sshd]\n")

    def test_normalize_is_idempotent(self):
        content = "# comment\n[x]\nenabled = true\n[y]\nlogpath = /var/log/auth.log\n"
        once = normalize_jail_sections('sshd', content)
        self.assertEqual(normalize_jail_sections('sshd', once), once)

    def test_set_enabled_inserts_after_header(self):
        self.assertEqual(
            set_enabled_in_section("[sshd]\nport = ssh\n", 'sshd', True),
            "[sshd]\nenabled = true\nport = ssh\n"
        )

    def test_set_enabled_only_touches_own_section(self):
        content = "[DEFAULT]\nenabled = true\n\n[sshd]\nenabled = true\nport = ssh\n"
        updated = set_enabled_in_section(content, 'sshd', False)
        self.assertEqual(updated, "[DEFAULT]\nenabled = true\n\n[sshd]\nenabled = false\nport = ssh\n")

    def test_set_enabled_appends_missing_section(self):
        self.assertEqual(set_enabled_in_section('', 'sshd', False), "[sshd]\nenabled = false\n")
        self.assertEqual(
            set_enabled_in_section("[other]\nport = 1\n\n", 'sshd', True),
            "[other]\nport = 1\n[sshd]\nenabled = true\n"
        )

    def test_extract_filter_strips_options(self):
        content = "[sshd]\n# filter = ignored\nfilter = sshd[mode=aggressive]\n"
        self.assertEqual(extract_filter_from_jail_config(content), 'sshd')
        self.assertEqual(extract_filter_from_jail_config("[sshd]\nport = 22\n"), '')

    def test_extract_logpath_with_continuation(self):
        content = (
            "[nginx]\n"
            "logpath = /var/log/nginx/access.log\n"
            "          /var/log/nginx/error.log /var/log/nginx/other.log\n"
            "maxretry = 3\n"
        )
        self.assertEqual(
            extract_logpath_from_jail_config(content),
            "/var/log/nginx/access.log\n/var/log/nginx/error.log\n/var/log/nginx/other.log"
        )

    def test_parse_sections_defaults_to_enabled(self):
        content = "[DEFAULT]\nenabled = false\n[sshd]\nenabled = false\n[nginx]\nport = 80\n"
        jails = parse_jail_sections(content)
        self.assertEqual(
            [(j.jail_name, j.enabled) for j in jails],
            [('sshd', False), ('nginx', True)]
        )

    def test_jail_info_round_trip_uses_camel_case(self):
        info = JailInfo('sshd', True, 2, 1, ['1.2.3.4', '5.6.7.8'])
        data = info.to_dict()
        self.assertEqual(data['jailName'], 'sshd')
        self.assertEqual(data['bannedIPs'], ['1.2.3.4', '5.6.7.8'])
        self.assertEqual(JailInfo.from_dict(data), info)


class JailConfigEngineTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.paths = Fail2banPaths(self.tmpdir)
        os.makedirs(self.paths.jail_d)
        self.store = LocalFileStore()
        self.engine = JailConfigEngine(self.store, self.paths, JailLockRegistry(), scope='test')

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def write(self, path, content):
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)

    def read(self, path):
        with open(path, encoding='utf-8') as f:
            return f.read()

    async def test_get_config_prefers_local(self):
        self.write(self.paths.jail_file('sshd', '.conf'), "[sshd]\nport = 22\n")
        content, path = await self.engine.get_jail_config('sshd')
        self.assertEqual(path, self.paths.jail_file('sshd', '.conf'))

        self.write(self.paths.jail_file('sshd', '.local'), "[sshd]\nport = 2222\n")
        content, path = await self.engine.get_jail_config('sshd')
        self.assertEqual(content, "[sshd]\nport = 2222\n")
        self.assertEqual(path, self.paths.jail_file('sshd', '.local'))

    async def test_get_config_missing_returns_empty_section(self):
        content, path = await self.engine.get_jail_config('sshd')
        self.assertEqual(content, "[sshd]\n")
        self.assertEqual(path, self.paths.jail_file('sshd', '.local'))

    async def test_set_then_get_returns_normalized_content(self):
        path = await self.engine.set_jail_config('sshd', "[foo]\nport = ssh\n")
        self.assertEqual(path, self.paths.jail_file('sshd', '.local'))
        content, _ = await self.engine.get_jail_config('sshd')
        self.assertEqual(content, "[sshd]\nport = ssh\n")

    async def test_enabled_update_copies_conf_to_local(self):
        conf = "[sshd]\nport = ssh\n"
        self.write(self.paths.jail_file('sshd', '.conf'), conf)
        await self.engine.update_jail_enabled_states({'sshd': True})
        self.assertEqual(self.read(self.paths.jail_file('sshd', '.conf')), conf)
        self.assertEqual(
            self.read(self.paths.jail_file('sshd', '.local')),
            "[sshd]\nenabled = true\nport = ssh\n"
        )

    async def test_enabled_update_validates_all_names_first(self):
        with self.assertRaises(ValidationError):
            await self.engine.update_jail_enabled_states({'sshd': True, 'bad name': False})
        self.assertFalse(os.path.exists(self.paths.jail_file('sshd', '.local')))

    async def test_enabled_update_rejects_non_bool_values(self):
        local = self.paths.jail_file('sshd', '.local')
        self.write(local, "[sshd]\nenabled = true\n")
        for value in ('false', 0, None):
            with self.assertRaises(ValidationError):
                await self.engine.update_jail_enabled_states({'sshd': value})
        self.assertEqual(self.read(local), "[sshd]\nenabled = true\n")

    async def test_enabled_update_stops_at_first_failure(self):
        for name in ('a', 'b', 'c'):
            self.write(self.paths.jail_file(name, '.local'), f"[{name}]\nenabled = false\n")

        write_text = self.store.write_text
        failing = self.paths.jail_file('b', '.local')

        async def write_or_fail(path, content):
            if path == failing:
                raise TransportError("写入文件失败: Permission denied", target=path)
            await write_text(path, content)

        with patch.object(self.store, 'write_text', side_effect=write_or_fail):
            with self.assertRaises(TransportError):
                await self.engine.update_jail_enabled_states({'c': True, 'a': True, 'b': True})

        self.assertEqual(self.read(self.paths.jail_file('a', '.local')), "[a]\nenabled = true\n")
        self.assertEqual(self.read(self.paths.jail_file('b', '.local')), "[b]\nenabled = false\n")
        self.assertEqual(self.read(self.paths.jail_file('c', '.local')), "[c]\nenabled = false\n")

    async def test_delete_jail(self):
        self.write(self.paths.jail_file('sshd', '.local'), "[sshd]\n")
        self.write(self.paths.jail_file('sshd', '.conf'), "[sshd]\n")
        deleted = await self.engine.delete_jail('sshd')
        self.assertEqual(len(deleted), 2)
        with self.assertRaises(NotFoundError):
            await self.engine.delete_jail('sshd')

    async def test_discovery_prefers_local_files(self):
        self.write(self.paths.jail_file('sshd', '.conf'), "[sshd]\nenabled = true\n")
        self.write(self.paths.jail_file('sshd', '.local'), "[sshd]\nenabled = false\n")
        self.write(self.paths.jail_file('nginx', '.conf'), "[nginx]\n[DEFAULT]\nbantime = 1h\n")
        self.write(os.path.join(self.paths.jail_d, '.hidden.local'), "[hidden]\n")
        self.write(os.path.join(self.paths.jail_d, 'README'), "[readme]\n")

        jails = await self.engine.discover_jails_from_files()
        self.assertEqual(
            sorted((j.jail_name, j.enabled) for j in jails),
            [('nginx', True), ('sshd', False)]
        )

    async def test_discovery_skips_unreadable_files(self):
        self.write(self.paths.jail_file('a', '.local'), "[a]\n")
        self.write(self.paths.jail_file('b', '.local'), "[b]\n")

        read_text = self.store.read_text
        unreadable = self.paths.jail_file('b', '.local')

        async def read_or_fail(path):
            if path == unreadable:
                raise TransportError("读取文件失败: Permission denied", target=path)
            return await read_text(path)

        with patch.object(self.store, 'read_text', side_effect=read_or_fail):
            jails = await self.engine.discover_jails_from_files()
        self.assertEqual([j.jail_name for j in jails], ['a'])

    async def test_discovery_without_jail_d(self):
        shutil.rmtree(self.paths.jail_d)
        self.assertEqual(await self.engine.discover_jails_from_files(), [])

    async def test_get_all_jails_runs_migration_once(self):
        self.write(self.paths.jail_local, "[DEFAULT]\nbantime = 1h\n\n[sshd]\nenabled = true\n")
        migrator = JailMigrator(clock=lambda: 1700000000)
        engine = JailConfigEngine(
            self.store, self.paths, JailLockRegistry(), scope='test',
            migrator=migrator, auto_migrate=True
        )

        jails = await engine.get_all_jails()
        self.assertEqual([(j.jail_name, j.enabled) for j in jails], [('sshd', False)])
        self.assertTrue(migrator.has_run('test'))
        self.assertTrue(os.path.exists(self.paths.jail_local + '.backup.1700000000'))

        # 第二次调用不会再次迁移
        self.write(self.paths.jail_local, "[nginx]\nenabled = true\n")
        await engine.get_all_jails()
        self.assertFalse(os.path.exists(self.paths.jail_file('nginx', '.local')))


class LocalFileStoreTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store = LocalFileStore()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    async def test_cancelled_write_leaves_no_temp_file(self):
        path = os.path.join(self.tmpdir, 'sshd.local')
        with patch('aiofiles.os.replace', side_effect=asyncio.CancelledError()):
            with self.assertRaises(asyncio.CancelledError):
                await self.store.write_text(path, "[sshd]\n")
        self.assertEqual(os.listdir(self.tmpdir), [])

    async def test_write_error_becomes_transport_error(self):
        path = os.path.join(self.tmpdir, 'sshd.local')
        with patch('aiofiles.os.replace', side_effect=PermissionError("denied")):
            with self.assertRaises(TransportError):
                await self.store.write_text(path, "[sshd]\n")
        self.assertEqual(os.listdir(self.tmpdir), [])


if __name__ == '__main__':
    unittest.main()
