#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 安全验证工具
"""

import base64
import hmac
import secrets
from typing import Optional


def verify_api_key(provided_key: Optional[str], expected_key: str) -> bool:
    """验证API密钥

    Args:
        provided_key: 提供的API密钥
        expected_key: 期望的API密钥

    Returns:
        验证结果
    """
    if not provided_key or not expected_key:
        return False

    # 使用常量时间比较防止时序攻击
    return hmac.compare_digest(provided_key, expected_key)


def generate_api_key(length: int = 32) -> str:
    """生成安全的API密钥（用作代理共享密钥）

    Args:
        length: 随机字节数

    Returns:
        生成的API密钥
    """
    return secrets.token_urlsafe(length)


def generate_callback_secret() -> str:
    """生成42个字符的回调密钥

    取32个随机字节的URL安全base64编码的前42位。
    """
    encoded = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode('ascii')
    return encoded[:42]


def generate_server_id() -> str:
    """生成服务器ID，格式 srv-<16位十六进制>"""
    return f"srv-{secrets.token_hex(8)}"
