#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
jail.local 迁移测试
"""

import asyncio
import os
import shutil
import tempfile
import unittest

from jailconf.migration import JailMigrator, migrate_legacy_jail_file, split_legacy_jail_file
from jailconf.storage import LocalFileStore
from utils.config import Fail2banPaths


LEGACY_JAIL_LOCAL = """# 本机的fail2ban设置
# 由管理员维护

[DEFAULT]
bantime = 1h
ignoreip = 127.0.0.1/8

[INCLUDES]
before = paths-debian.conf

[sshd]
enabled = true
port = ssh
logpath = %(sshd_log)s

# [apache-auth]
# enabled = true

[nginx-http-auth]
port = http,https

[bad name]
enabled = true
"""


class SplitLegacyFileTest(unittest.TestCase):

    def test_split_sections(self):
        layout = split_legacy_jail_file(LEGACY_JAIL_LOCAL)
        self.assertEqual(list(layout.jail_sections), ['sshd', 'nginx-http-auth', 'bad name'])
        self.assertEqual(
            layout.jail_sections['sshd'],
            "[sshd]\nenabled = true\nport = ssh\nlogpath = %(sshd_log)s\n"
        )

        retained = layout.render_retained()
        self.assertTrue(retained.startswith("# 本机的fail2ban设置\n# 由管理员维护\n\n[DEFAULT]\n"))
        self.assertIn("# [apache-auth]\n# enabled = true", retained)
        self.assertNotIn('[INCLUDES]', retained)
        self.assertNotIn('[sshd]', retained)

    def test_duplicate_sections_are_merged(self):
        layout = split_legacy_jail_file("[sshd]\nport = ssh\n\n[sshd]\nmaxretry = 3\n")
        self.assertEqual(layout.jail_sections['sshd'], "[sshd]\nport = ssh\nmaxretry = 3\n")


class MigrateLegacyFileTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.paths = Fail2banPaths(self.tmpdir)
        os.makedirs(self.paths.jail_d)
        self.store = LocalFileStore()
        with open(self.paths.jail_local, 'w', encoding='utf-8') as f:
            f.write(LEGACY_JAIL_LOCAL)

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def read(self, path):
        with open(path, encoding='utf-8') as f:
            return f.read()

    async def test_migration_outcome(self):
        with open(self.paths.jail_file('nginx-http-auth', '.local'), 'w', encoding='utf-8') as f:
            f.write("[nginx-http-auth]\nenabled = true\n")

        result = await migrate_legacy_jail_file(self.store, self.paths, now=1700000000)

        self.assertEqual(result.backup_path, self.paths.jail_local + '.backup.1700000000')
        self.assertEqual(self.read(result.backup_path), LEGACY_JAIL_LOCAL)
        self.assertEqual(result.migrated, ['sshd'])
        self.assertEqual(sorted(result.skipped), ['bad name', 'nginx-http-auth'])

        self.assertEqual(
            self.read(self.paths.jail_file('sshd', '.local')),
            "[sshd]\nenabled = false\nport = ssh\nlogpath = %(sshd_log)s\n"
        )
        # 已存在的文件不被覆盖
        self.assertEqual(
            self.read(self.paths.jail_file('nginx-http-auth', '.local')),
            "[nginx-http-auth]\nenabled = true\n"
        )

        remaining = self.read(self.paths.jail_local)
        self.assertIn('[DEFAULT]', remaining)
        self.assertIn('# [apache-auth]', remaining)
        self.assertNotIn('[sshd]', remaining)

    async def test_nothing_to_migrate_leaves_file_untouched(self):
        content = "[DEFAULT]\nbantime = 1h\n"
        with open(self.paths.jail_local, 'w', encoding='utf-8') as f:
            f.write(content)
        result = await migrate_legacy_jail_file(self.store, self.paths, now=1)
        self.assertIsNone(result.backup_path)
        self.assertEqual(self.read(self.paths.jail_local), content)

    async def test_missing_jail_local(self):
        os.unlink(self.paths.jail_local)
        result = await migrate_legacy_jail_file(self.store, self.paths)
        self.assertEqual(result.migrated, [])

    async def test_migrator_runs_once_per_scope(self):
        migrator = JailMigrator(clock=lambda: 42)
        results = await asyncio.gather(
            migrator.run_once('srv-a', self.store, self.paths),
            migrator.run_once('srv-a', self.store, self.paths),
        )
        self.assertEqual(sum(1 for r in results if r is not None), 1)
        self.assertTrue(migrator.has_run('srv-a'))
        self.assertFalse(migrator.has_run('srv-b'))


if __name__ == '__main__':
    unittest.main()
