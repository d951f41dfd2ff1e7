"""
SOCKS5 服务器模块 - 服务器生命周期管理

此模块包含 Socks5Server 类，负责启动 TCP 监听、为每个接受的连接创建
独立的 Socks5Session 协程，以及在关闭时取消仍在运行的会话。

使用示例:
    >>> config = ServerConfig(host='127.0.0.1', port=1080)
    >>> server = Socks5Server(config)
    >>> asyncio.run(server.serve_forever())
"""

import asyncio
import logging
from typing import Optional, Set, Tuple

from config import ServerConfig
from logger import add_context
from resource_monitor import ResourceMonitor
from .session import Socks5Session

logger = logging.getLogger('socks-puppet-server')


class Socks5Server:
    """
    SOCKS5 服务器类 - 管理监听套接字和会话

    会话之间不共享可变状态，服务器只记录正在运行的会话任务，
    用于统计和关闭时取消。

    Attributes:
        config: 服务端配置
        monitor: 资源监控器，monitor_interval 为 0 时为 None
    """

    def __init__(self, config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig()
        self._server: Optional[asyncio.AbstractServer] = None
        self._sessions: Set[asyncio.Task] = set()
        self._monitor_task: Optional[asyncio.Task] = None
        self.monitor: Optional[ResourceMonitor] = None
        if self.config.monitor_interval > 0:
            self.monitor = ResourceMonitor(
                check_interval=self.config.monitor_interval,
                session_counter=lambda: self.active_sessions,
            )

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """实际监听的 (地址, 端口)，未启动时为 None"""
        if self._server is None or not self._server.sockets:
            return None
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """为一个已接受的连接运行会话"""
        task = asyncio.current_task()
        self._sessions.add(task)
        try:
            session = Socks5Session(reader, writer, self.config)
            await session.run()
        finally:
            self._sessions.discard(task)

    async def start(self):
        """绑定监听地址并开始接受连接"""
        if self._server is not None:
            return
        self._server = await asyncio.start_server(
            self.handle_client,
            self.config.host,
            self.config.port
        )
        host, port = self.address
        add_context(listen=f"{host}:{port}")
        logger.info(f"SOCKS5 代理监听在 {host}:{port}")

        if self.monitor is not None:
            self._monitor_task = asyncio.ensure_future(self.monitor.monitor_loop())

    async def serve_forever(self):
        """启动（如有必要）并持续服务，直到任务被取消"""
        await self.start()
        try:
            await self._server.serve_forever()
        finally:
            await self.close()

    async def close(self):
        """停止接受连接，取消监控和所有会话"""
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()

        if self._monitor_task is not None:
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None

        sessions = list(self._sessions)
        for task in sessions:
            task.cancel()
        if sessions:
            await asyncio.gather(*sessions, return_exceptions=True)

        await server.wait_closed()
        logger.info("SOCKS5 代理已停止")
