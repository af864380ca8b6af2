#!/usr/bin/env python3
"""
toy-socks5 服务端

版本: 1.0.0

协议:
1. 问候 - 总是选择无需认证
2. 请求 - 只支持 CONNECT，地址支持 IPv4、域名、IPv6
3. 应答 - 每个连接一次
4. 转发 - 全双工，直到两端都关闭

用法:
    toy-socks5                       # 监听 127.0.0.1:1081
    toy-socks5 --global              # 监听所有接口
    toy-socks5 -c config.yaml -d     # 使用配置文件并启用调试日志
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from config import ServerConfig, load_config
from logger import LogConfig, LoggerManager
from proxy import Socks5Server

logger = logging.getLogger('toy-socks5-main')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='toy-socks5 SOCKS5 代理服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--host', default=None, help='监听地址（默认: 127.0.0.1）')
    parser.add_argument('--port', '-p', type=int, default=None, help='监听端口（默认: 1081）')
    parser.add_argument('--global', '-g', dest='global_mode', action='store_true',
                        help='监听所有网络接口')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    return parser


def build_config(args: argparse.Namespace, config_data: dict) -> ServerConfig:
    """
    合并配置文件和命令行参数

    命令行参数优先于配置文件。
    """
    server_conf = dict(config_data.get('server') or {})
    if args.host is not None:
        server_conf['host'] = args.host
    if args.port is not None:
        server_conf['port'] = args.port
    if args.global_mode:
        server_conf['global_mode'] = True
    return ServerConfig.from_dict(server_conf)


def main(argv: Optional[List[str]] = None) -> int:
    """
    主函数

    Returns:
        int: 退出码，0 表示正常退出，1 表示配置错误或无法绑定端口
    """
    args = build_parser().parse_args(argv)

    config_data = load_config(args.config)

    manager = LoggerManager()
    manager.initialize(LogConfig.from_sources(config_data.get('logging')))
    if args.debug:
        manager.set_level(logging.DEBUG)
        logger.debug("已启用调试模式")

    try:
        config = build_config(args, config_data)
    except (TypeError, ValueError) as e:
        logger.error(f"配置错误: {e}")
        return 1

    server = Socks5Server(config)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    except OSError as e:
        logger.error(f"无法监听 {config.bind_host}:{config.port}: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
