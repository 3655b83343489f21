#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
日志与密钥工具测试
"""

import logging
import logging.handlers
import os
import re
import shutil
import tempfile
import unittest

from utils.logger import LoggerConfigError, _parse_size, get_logger, setup_logger, setup_logger_from_config
from utils.security import generate_api_key, generate_callback_secret, generate_server_id, verify_api_key


class SecurityTest(unittest.TestCase):

    def test_verify_api_key(self):
        self.assertTrue(verify_api_key('abc', 'abc'))
        self.assertFalse(verify_api_key('abc', 'abd'))
        self.assertFalse(verify_api_key(None, 'abc'))
        self.assertFalse(verify_api_key('abc', ''))

    def test_callback_secret_format(self):
        secret = generate_callback_secret()
        self.assertEqual(len(secret), 42)
        self.assertRegex(secret, r'^[A-Za-z0-9_-]{42}$')
        self.assertNotEqual(secret, generate_callback_secret())

    def test_server_id_format(self):
        self.assertIsNotNone(re.fullmatch(r'srv-[0-9a-f]{16}', generate_server_id()))

    def test_api_key_is_urlsafe(self):
        self.assertRegex(generate_api_key(16), r'^[A-Za-z0-9_-]+$')


class LoggerTest(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.names = []

    def tearDown(self):
        for name in self.names:
            logger = logging.getLogger(name)
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
        shutil.rmtree(self.tmpdir)

    def make_name(self, suffix):
        name = f"fleet_test_{suffix}"
        self.names.append(name)
        return name

    def test_parse_size(self):
        self.assertEqual(_parse_size('10MB'), 10 * 1024 * 1024)
        self.assertEqual(_parse_size('512kb'), 512 * 1024)
        self.assertEqual(_parse_size('1G'), 1024 ** 3)
        self.assertEqual(_parse_size(''), 10 * 1024 * 1024)
        with self.assertRaises(LoggerConfigError):
            _parse_size('ten megabytes')
        with self.assertRaises(LoggerConfigError):
            _parse_size('100B')

    def test_invalid_level(self):
        with self.assertRaises(LoggerConfigError):
            setup_logger(self.make_name('level'), level='LOUD')

    def test_file_handler_and_single_setup(self):
        log_file = os.path.join(self.tmpdir, 'logs', 'fleet.log')
        name = self.make_name('file')
        config = {'logging': {'level': 'DEBUG', 'file': log_file, 'max_size': '1MB', 'console': False}}

        logger = setup_logger_from_config(config, name=name)
        self.assertEqual(logger.level, logging.DEBUG)
        self.assertEqual(len(logger.handlers), 1)
        self.assertIsInstance(logger.handlers[0], logging.handlers.RotatingFileHandler)

        # 重复调用不会叠加处理器
        setup_logger_from_config(config, name=name)
        self.assertEqual(len(logger.handlers), 1)

        logger.info("写入测试")
        logger.handlers[0].flush()
        with open(log_file, encoding='utf-8') as f:
            self.assertIn("写入测试", f.read())

    def test_config_type_errors(self):
        with self.assertRaises(LoggerConfigError):
            setup_logger_from_config([], name=self.make_name('list'))
        with self.assertRaises(LoggerConfigError):
            setup_logger_from_config({'logging': {'console': 'yes'}}, name=self.make_name('console'))

    def test_component_loggers_are_children(self):
        self.assertEqual(get_logger('connectors.ssh').name, 'fail2ban_fleet.connectors.ssh')


if __name__ == '__main__':
    unittest.main()
