#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fail2ban集群管控系统 - 托管文件

本系统维护两个文件：
    jail.local                    全局 DEFAULT 设置和回调动作挂载
    action.d/fleet-callback.conf  封禁/解封时回调中心的动作

托管文件的第一段注释中带有 ``# fail2ban-fleet:managed v<N>`` 标记。
不带标记的非空 jail.local 属于管理员，永远不会被覆盖。
"""

import re
from typing import Optional, Tuple

from jailconf.storage import FileStore
from utils.config import ACTION_NAME, DefaultJailSettings, Fail2banPaths
from utils.errors import NotFoundError
from utils.logger import get_logger


MANAGED_MARKER_VERSION = 1
MANAGED_MARKER = f"# fail2ban-fleet:managed v{MANAGED_MARKER_VERSION}"
DEFAULT_CALLBACK_URL = 'http://127.0.0.1:8080'

_MARKER_PATTERN = re.compile(r'^# fail2ban-fleet:managed v(\d+)\s*$', re.MULTILINE)

JAIL_LOCAL_BANNER = f"""################################################################################
{MANAGED_MARKER}
#
# 警告: 本文件由Fail2ban集群管控系统自动维护，手工修改会被覆盖。
#
# 本文件覆盖 /etc/fail2ban/jail.conf 中的设置，
# 单个jail的配置请放在 /etc/fail2ban/jail.d/ 目录下。
################################################################################

"""

ACTION_TEMPLATE = f"""{MANAGED_MARKER}
# 封禁/解封时通知Fail2ban集群管控中心

[Definition]

# 恢复的封禁不触发回调
norestored = 1

actionban = /usr/bin/curl__CURL_INSECURE_FLAG__ -X POST __CALLBACK_URL__/api/ban \\
     -H "Content-Type: application/json" \\
     -H "X-Callback-Secret: __CALLBACK_SECRET__" \\
     -d "$(jq -n --arg serverId '__SERVER_ID__' \\
                 --arg ip '<ip>' \\
                 --arg jail '<name>' \\
                 --arg hostname '<fq-hostname>' \\
                 --arg failures '<failures>' \\
                 --arg logs "$(tac <logpath> | grep <grepopts> -wF <ip>)" \\
                 '{{serverId: $serverId, ip: $ip, jail: $jail, hostname: $hostname, failures: $failures, logs: $logs}}')"

actionunban = /usr/bin/curl__CURL_INSECURE_FLAG__ -X POST __CALLBACK_URL__/api/unban \\
     -H "Content-Type: application/json" \\
     -H "X-Callback-Secret: __CALLBACK_SECRET__" \\
     -d "$(jq -n --arg serverId '__SERVER_ID__' \\
                 --arg ip '<ip>' \\
                 --arg jail '<name>' \\
                 --arg hostname '<fq-hostname>' \\
                 '{{serverId: $serverId, ip: $ip, jail: $jail, hostname: $hostname}}')"

[Init]

name = default

# 包含攻击者IP日志行的文件
logpath = /dev/null

# 回调中附带的日志行数
grepmax = 200
grepopts = -m <grepmax>
"""


def managed_marker_version(content: Optional[str]) -> Optional[int]:
    """返回托管标记的版本号，没有标记时返回None"""
    if not content:
        return None
    match = _MARKER_PATTERN.search(content)
    return int(match.group(1)) if match else None


def is_managed(content: Optional[str]) -> bool:
    return managed_marker_version(content) is not None


def build_jail_local_content(defaults: DefaultJailSettings) -> str:
    """生成托管的 jail.local 内容"""
    ignoreip = ' '.join(defaults.ignoreips) or '127.0.0.1/8 ::1'
    lines = [
        '[DEFAULT]',
        f"enabled = {'true' if defaults.default_jail_enable else 'false'}",
        f"bantime.increment = {'true' if defaults.bantime_increment else 'false'}",
        f"ignoreip = {ignoreip}",
        f"bantime = {defaults.bantime}",
        f"findtime = {defaults.findtime}",
        f"maxretry = {defaults.maxretry}",
        f"banaction = {defaults.banaction or 'nftables-multiport'}",
        f"banaction_allports = {defaults.banaction_allports or 'nftables-allports'}",
        f"chain = {defaults.chain or 'INPUT'}",
    ]
    if defaults.bantime_rndtime:
        lines.append(f"bantime.rndtime = {defaults.bantime_rndtime}")

    default_section = '\n'.join(lines) + '\n\n'
    callback_action = (
        "# 回调动作\n"
        "action_mwlg = %(action_)s\n"
        f"             {ACTION_NAME}[logpath=\"%(logpath)s\", chain=\"%(chain)s\"]\n"
        "\n"
        "# 所有jail默认使用回调动作\n"
        "action = %(action_mwlg)s\n"
    )
    return JAIL_LOCAL_BANNER + default_section + callback_action


def build_action_config(callback_url: str, server_id: str, secret: str) -> str:
    """生成回调动作文件内容

    Args:
        callback_url: 中心回调地址，https 时curl带 -k
        server_id: 服务器ID
        secret: 回调密钥
    """
    url = (callback_url or '').strip().rstrip('/') or DEFAULT_CALLBACK_URL
    insecure_flag = ' -k' if url.lower().startswith('https://') else ''
    return (
        ACTION_TEMPLATE
        .replace('__CALLBACK_URL__', url)
        .replace('__SERVER_ID__', server_id or 'local')
        .replace('__CALLBACK_SECRET__', secret)
        .replace('__CURL_INSECURE_FLAG__', insecure_flag)
    )


async def check_jail_local_integrity(store: FileStore, paths: Fail2banPaths) -> Tuple[bool, bool]:
    """返回 (jail.local 是否存在, 是否为托管文件)"""
    content = await store.read_text(paths.jail_local)
    if content is None:
        return False, False
    return True, is_managed(content)


async def ensure_jail_local_structure(
    store: FileStore,
    paths: Fail2banPaths,
    defaults: DefaultJailSettings
) -> bool:
    """保证托管的 jail.local 存在且为最新内容

    Returns:
        是否写入了文件

    Raises:
        NotFoundError: fail2ban配置目录不存在
    """
    logger = get_logger('jailconf.managed')
    if not await store.is_dir(paths.config_dir):
        raise NotFoundError(f"fail2ban未安装: 配置目录 {paths.config_dir} 不存在")

    existing = await store.read_text(paths.jail_local)
    if existing and existing.strip() and not is_managed(existing):
        logger.info(f"{paths.jail_local} 不是托管文件，保持不变")
        return False

    content = build_jail_local_content(defaults)
    if existing == content:
        return False

    await store.write_text(paths.jail_local, content)
    logger.info(f"已写入托管的 {paths.jail_local}")
    return True


async def ensure_action_file(
    store: FileStore,
    paths: Fail2banPaths,
    callback_url: str,
    server_id: str,
    secret: str
) -> bool:
    """写入回调动作文件，内容未变化时不写

    Returns:
        文件是否被修改

    Raises:
        NotFoundError: action.d 目录不存在
    """
    if not await store.is_dir(paths.action_d):
        raise NotFoundError(f"fail2ban未安装: {paths.action_d} 目录不存在")

    content = build_action_config(callback_url, server_id, secret)
    existing = await store.read_text(paths.action_file)
    if existing == content:
        return False

    await store.write_text(paths.action_file, content)
    get_logger('jailconf.managed').info(f"回调动作文件已更新: {paths.action_file}")
    return True
