#!/usr/bin/env python3
"""
socks-puppet - SOCKS5 代理服务端

版本: 1.0.0

协议:
1. 方法协商 - 只支持"无需认证"
2. 连接请求 - 支持 IPv4、域名、IPv6 目标地址
3. 命令:
   - CONNECT: 连接目标并双向中继
   - BIND: 在临时端口上接受一个入站连接并中继
   - UDP ASSOCIATE: 在控制连接存活期间中继 UDP 数据报

用法:
    python3 server.py                       # 监听 0.0.0.0:1080
    python3 server.py -c config.yaml        # 从配置文件加载
    python3 server.py --host 127.0.0.1 -p 1081 -d
"""

import asyncio
import logging
import argparse

from config import ServerConfig, load_config
from logger import log_config_from_dict, setup_logging
from proxy import Socks5Server

logger = logging.getLogger('socks-puppet')


def build_config(args: argparse.Namespace, config_data: dict) -> ServerConfig:
    """合并配置文件和命令行参数，命令行优先"""
    server_conf = dict(config_data.get('server') or {})

    if args.host is not None:
        server_conf['host'] = args.host
    if args.port is not None:
        server_conf['port'] = args.port

    return ServerConfig.from_dict(server_conf)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='SOCKS5 代理服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--host', default=None, help='监听地址（覆盖配置文件）')
    parser.add_argument('--port', '-p', type=int, default=None, help='监听端口（覆盖配置文件）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """主函数"""
    args = parse_args(argv)

    config_data = load_config(args.config)
    log_config = log_config_from_dict(config_data.get('logging'))
    if args.debug:
        log_config.level = 'DEBUG'
    setup_logging(log_config)

    try:
        config = build_config(args, config_data)
    except (TypeError, ValueError) as e:
        logger.error(f"配置错误: {e}")
        return 1

    server = Socks5Server(config)

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    except OSError as e:
        logger.error(f"无法监听 {config.host}:{config.port}: {e}")
        return 1

    return 0


if __name__ == '__main__':
    exit(main())
