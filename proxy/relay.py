"""
双向中继模块

在两条已建立的 TCP 连接之间双向转发字节。每个方向由独立的协程负责，
一个方向结束（EOF 或传输错误）后半关闭对端的写方向，另一个方向继续
运行，直到两个方向都结束 relay() 才返回。

数据原样转发，不做任何分帧；同一方向内保持字节顺序，两个方向之间
没有顺序保证。
"""

import asyncio
import logging
from typing import Tuple

logger = logging.getLogger('socks-puppet-relay')

DEFAULT_BUFFER_SIZE = 32768


async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
               buffer_size: int = DEFAULT_BUFFER_SIZE, label: str = '') -> int:
    """
    把 reader 的数据复制到 writer，直到 EOF 或传输错误

    结束后尝试对 writer 执行 write_eof()，把 EOF 传递给对端。
    传输错误只结束本方向，不向上抛出。

    Args:
        reader: 数据来源
        writer: 数据去向
        buffer_size: 每次读取的最大字节数
        label: 日志中使用的方向名称

    Returns:
        int: 转发的字节数
    """
    total = 0
    try:
        while True:
            data = await reader.read(buffer_size)
            if not data:
                logger.debug(f"{label} 读到 EOF")
                break
            writer.write(data)
            await writer.drain()
            total += len(data)
    except (ConnectionResetError, BrokenPipeError, OSError) as e:
        logger.debug(f"{label} 转发中断: {e}")
    finally:
        # 立即把 EOF 传给对端（半关闭），不等另一个方向结束；连接本身由会话在两个方向都结束后关闭
        if not writer.is_closing() and writer.can_write_eof():
            try:
                writer.write_eof()
            except OSError as e:
                logger.debug(f"{label} 半关闭失败: {e}")
    return total


async def relay(client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter,
                remote_reader: asyncio.StreamReader, remote_writer: asyncio.StreamWriter,
                buffer_size: int = DEFAULT_BUFFER_SIZE, label: str = '') -> Tuple[int, int]:
    """
    全双工中继，两个方向都结束后返回

    Returns:
        (客户端到远端的字节数, 远端到客户端的字节数)
    """
    upstream, downstream = await asyncio.gather(
        pipe(client_reader, remote_writer, buffer_size, f"{label} 客户端->远端"),
        pipe(remote_reader, client_writer, buffer_size, f"{label} 远端->客户端"),
    )
    logger.debug(f"{label} 中继结束: 上行 {upstream} 字节, 下行 {downstream} 字节")
    return upstream, downstream
