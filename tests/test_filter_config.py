#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
过滤器配置引擎测试
"""

import os
import shutil
import tempfile
import unittest

from jailconf.filter_config import TEST_FILTER_PREFIX, FilterConfigEngine, validate_filter_name
from jailconf.storage import LocalFileStore
from utils.config import Fail2banPaths
from utils.errors import NotFoundError, ValidationError


class FilterConfigEngineTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.paths = Fail2banPaths(self.tmpdir)
        os.makedirs(self.paths.filter_d)
        self.engine = FilterConfigEngine(LocalFileStore(), self.paths, scope='test')

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def write(self, path, content):
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)

    def test_name_validation(self):
        self.assertEqual(validate_filter_name('nginx-http-auth'), 'nginx-http-auth')
        self.assertEqual(validate_filter_name('apache.common'), 'apache.common')
        for name in ('', '.hidden', 'a..b', 'a/b', None):
            with self.assertRaises(ValidationError):
                validate_filter_name(name)

    async def test_get_filters_deduplicates_and_sorts(self):
        self.write(self.paths.filter_file('sshd', '.conf'), '')
        self.write(self.paths.filter_file('sshd', '.local'), '')
        self.write(self.paths.filter_file('apache-auth', '.conf'), '')
        self.write(os.path.join(self.paths.filter_d, f'{TEST_FILTER_PREFIX}abcd.conf'), '')
        self.write(os.path.join(self.paths.filter_d, 'notes.txt'), '')
        self.assertEqual(await self.engine.get_filters(), ['apache-auth', 'sshd'])

    async def test_get_filters_without_directory(self):
        shutil.rmtree(self.paths.filter_d)
        self.assertEqual(await self.engine.get_filters(), [])

    async def test_create_get_delete(self):
        path = await self.engine.create_filter('custom', "[Definition]\nfailregex = ^bad <HOST>$\n")
        self.assertEqual(path, self.paths.filter_file('custom', '.local'))

        with self.assertRaises(ValidationError):
            await self.engine.create_filter('custom', '')

        content, read_path = await self.engine.get_filter_config('custom')
        self.assertIn('failregex', content)
        self.assertEqual(read_path, path)

        await self.engine.delete_filter('custom')
        with self.assertRaises(NotFoundError):
            await self.engine.get_filter_config('custom')
        with self.assertRaises(NotFoundError):
            await self.engine.delete_filter('custom')

    async def test_set_writes_local_over_conf(self):
        self.write(self.paths.filter_file('sshd', '.conf'), "[Definition]\nfailregex = a\n")
        await self.engine.set_filter_config('sshd', "[Definition]\nfailregex = b\n")
        content, path = await self.engine.get_filter_config('sshd')
        self.assertEqual(content, "[Definition]\nfailregex = b\n")
        self.assertTrue(path.endswith('sshd.local'))

    async def test_test_filter_with_saved_filter(self):
        self.write(self.paths.filter_file('sshd', '.conf'), "[Definition]\nfailregex = x\n")
        calls = []

        async def run_regex(log_path, filter_path):
            with open(log_path, encoding='utf-8') as f:
                calls.append((f.read(), filter_path))
            return 'Lines: 2 lines, 0 ignored, 1 matched'

        output, path = await self.engine.test_filter('sshd', ['line one', 'line two'], run_regex)
        self.assertIn('1 matched', output)
        self.assertEqual(path, self.paths.filter_file('sshd', '.conf'))
        self.assertEqual(calls, [("line one\nline two\n", self.paths.filter_file('sshd', '.conf'))])

    async def test_test_filter_with_unsaved_content_cleans_up(self):
        seen = {}

        async def run_regex(log_path, filter_path):
            seen['log_dir'] = os.path.dirname(log_path)
            seen['filter_path'] = filter_path
            with open(filter_path, encoding='utf-8') as f:
                seen['filter_content'] = f.read()
            return 'ok'

        output, path = await self.engine.test_filter(
            'draft', ['a'], run_regex, filter_content="[Definition]\nfailregex = draft\n"
        )
        self.assertEqual(output, 'ok')
        self.assertEqual(path, self.paths.filter_file('draft', '.local'))
        self.assertEqual(os.path.dirname(seen['filter_path']), self.paths.filter_d)
        self.assertTrue(os.path.basename(seen['filter_path']).startswith(TEST_FILTER_PREFIX))
        self.assertEqual(seen['filter_content'], "[Definition]\nfailregex = draft\n")
        self.assertFalse(os.path.exists(seen['filter_path']))
        self.assertFalse(os.path.exists(seen['log_dir']))

    async def test_test_filter_requires_log_lines(self):
        async def run_regex(log_path, filter_path):
            return ''

        with self.assertRaises(ValidationError):
            await self.engine.test_filter('sshd', [], run_regex)


if __name__ == '__main__':
    unittest.main()
