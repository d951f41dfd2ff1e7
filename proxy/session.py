"""
SOCKS5 会话模块 - 单个客户端连接的完整生命周期

此模块包含 Socks5Session 类，负责一个已接受的客户端连接从方法协商到关闭的全部处理:

1. 方法协商: 只接受"无需认证"(0x00)
2. 读取连接请求: 命令、地址类型、目标地址和端口
3. 按命令分发: CONNECT / BIND / UDP ASSOCIATE
4. 建立中继并等待其结束
5. 关闭所有套接字

会话状态机:
    AWAIT_HANDSHAKE -> AWAIT_REQUEST -> {CONNECTING | BINDING | UDP_SETUP}
        -> {RELAYING | ACCEPTING | IDLE} -> CLOSED

任何错误都只结束当前会话。只有两种情况会在失败前发送应答:
认证方法不被接受（[5, 0xFF]）和 CONNECT 连接目标失败（状态 0x01）；
其余协议错误直接关闭连接，不写任何字节。
"""

import asyncio
import socket
import logging
from enum import Enum
from typing import Optional

from config import ServerConfig
from socks5 import (
    AUTH_NONE, AUTH_NO_ACCEPTABLE, Command, ConnectionRequest, HandshakeRequest,
    Reply, make_method_selection,
    SocksError, TransportError, UnsupportedAuthMethod, UnsupportedCommand,
)
from .relay import relay
from .udp import UdpRelayProtocol

logger = logging.getLogger('socks-puppet-session')


class SessionState(Enum):
    """会话状态"""
    AWAIT_HANDSHAKE = 'await_handshake'
    AWAIT_REQUEST = 'await_request'
    CONNECTING = 'connecting'
    BINDING = 'binding'
    UDP_SETUP = 'udp_setup'
    RELAYING = 'relaying'
    ACCEPTING = 'accepting'
    IDLE = 'idle'
    CLOSED = 'closed'


class Socks5Session:
    """
    处理单个客户端的 SOCKS5 会话

    会话独占客户端连接以及在处理过程中打开的目标连接、BIND 监听套接字、
    BIND 对端连接和 UDP 套接字，run() 返回前全部关闭。

    Attributes:
        reader: 客户端流读取器
        writer: 客户端流写入器
        config: 服务端配置
        state: 当前会话状态
        request: 解析出的连接请求（读取成功后设置）
        error: 结束会话的错误，正常结束时为 None
        closed: 会话结束时置位的事件
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 config: Optional[ServerConfig] = None):
        self.reader = reader
        self.writer = writer
        self.config = config or ServerConfig()
        self.state = SessionState.AWAIT_HANDSHAKE
        self.request: Optional[ConnectionRequest] = None
        self.error: Optional[BaseException] = None
        self.closed = asyncio.Event()

        # 会话过程中打开的资源，_cleanup() 负责关闭
        self._remote_writer: Optional[asyncio.StreamWriter] = None
        self._bind_listener: Optional[socket.socket] = None
        self._udp_transport: Optional[asyncio.DatagramTransport] = None

        peer = writer.get_extra_info('peername')
        self.client_ip = peer[0] if peer else "unknown"
        self.peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    def _log(self, level: int, msg: str, **kwargs):
        logger.log(level, f"[{self.peer_str}] {msg}", **kwargs)

    async def run(self):
        """主会话处理器，不向调用方抛出会话错误"""
        self._log(logging.INFO, "新连接")
        try:
            await self.handle()
        except SocksError as e:
            self.error = e
            self._log(logging.WARNING, f"客户端错误: {type(e).__name__}: {e}")
        except asyncio.CancelledError:
            self._log(logging.DEBUG, "会话被取消")
            raise
        except Exception as e:
            self.error = e
            self._log(logging.ERROR, f"会话意外错误: {e}", exc_info=True)
        finally:
            self.state = SessionState.CLOSED
            await self._cleanup()
            self.closed.set()
            self._log(logging.DEBUG, "会话结束")

    async def handle(self):
        """
        执行协商、请求解析和命令分发

        Raises:
            SocksError: 会话失败的原因
        """
        self.state = SessionState.AWAIT_HANDSHAKE
        await self._negotiate()

        self.state = SessionState.AWAIT_REQUEST
        self.request = await self._read_request()

        await self._dispatch(self.request)

    # ------------------------------------------------------------------------
    # 读写辅助
    # ------------------------------------------------------------------------

    async def _read_exactly(self, n: int) -> bytes:
        """
        精确读取 n 字节，协商和请求阶段受 handshake_timeout 限制

        Raises:
            TransportError: 连接提前关闭、读取出错或超时
        """
        timeout = self.config.handshake_timeout
        try:
            if timeout is not None:
                return await asyncio.wait_for(self.reader.readexactly(n), timeout=timeout)
            return await self.reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise TransportError(f"连接提前关闭: 需要 {n} 字节，收到 {len(e.partial)} 字节", e) from e
        except asyncio.TimeoutError as e:
            raise TransportError(f"读取超时 ({timeout} 秒)", e) from e
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            raise TransportError(f"读取失败: {e}", e) from e

    async def _write(self, data: bytes):
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            raise TransportError(f"写入失败: {e}", e) from e

    async def _send_reply(self, reply: Reply):
        await self._write(reply.serialize())

    def _success_reply(self, sockname, port: int) -> Reply:
        """
        成功应答

        默认绑定地址为全零、端口为 port；开启 report_bound_address 时使用套接字的真实地址。
        """
        if self.config.report_bound_address and sockname:
            return Reply.from_sockname(sockname)
        return Reply.success(bound_port=port)

    async def _with_connect_timeout(self, awaitable):
        timeout = self.config.connect_timeout
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout)

    # ------------------------------------------------------------------------
    # 协商、请求解析和分发
    # ------------------------------------------------------------------------

    async def _negotiate(self) -> HandshakeRequest:
        """
        方法协商

        版本不是 5 时不写任何字节；没有提供 0x00 方法时回复 [5, 0xFF] 后失败。

        Raises:
            UnsupportedVersion: 版本不是 5
            UnsupportedAuthMethod: 客户端不接受"无需认证"
        """
        handshake = await HandshakeRequest.read(self._read_exactly)

        if not handshake.offers(AUTH_NONE):
            await self._write(make_method_selection(AUTH_NO_ACCEPTABLE))
            raise UnsupportedAuthMethod(handshake.methods)

        await self._write(make_method_selection(AUTH_NONE))
        return handshake

    async def _read_request(self) -> ConnectionRequest:
        request = await ConnectionRequest.read(self._read_exactly)
        self._log(logging.INFO, f"New request: {request.command_name} {request.address}:{request.port}")
        return request

    async def _dispatch(self, request: ConnectionRequest):
        """
        按命令分发，未知命令不发送应答

        Raises:
            UnsupportedCommand: 命令不是 CONNECT、BIND 或 UDP ASSOCIATE
        """
        handlers = {
            Command.CONNECT: self._handle_connect,
            Command.BIND: self._handle_bind,
            Command.UDP_ASSOCIATE: self._handle_udp_associate,
        }
        handler = handlers.get(request.command)
        if handler is None:
            raise UnsupportedCommand(request.command)
        await handler(request)

    # ------------------------------------------------------------------------
    # CONNECT
    # ------------------------------------------------------------------------

    async def _handle_connect(self, request: ConnectionRequest):
        """
        连接目标并中继

        成功时应答的绑定端口回显请求的目标端口；失败时发送状态 0x01 的应答，
        其余字段为零，然后以 TransportError 结束会话。
        """
        self.state = SessionState.CONNECTING
        target = f"{request.address}:{request.port}"
        try:
            remote_reader, remote_writer = await self._with_connect_timeout(
                asyncio.open_connection(request.address.host, request.port)
            )
        except (OSError, UnicodeError, asyncio.TimeoutError) as e:
            self._log(logging.INFO, f"连接 {target} 失败: {e!r}")
            await self._send_reply(Reply.failure())
            raise TransportError(f"连接 {target} 失败: {e!r}", e) from e

        self._remote_writer = remote_writer
        self._log(logging.DEBUG, f"已连接 {target}")

        reply = self._success_reply(remote_writer.get_extra_info('sockname'), request.port)
        await self._send_reply(reply)

        self.state = SessionState.RELAYING
        await relay(self.reader, self.writer, remote_reader, remote_writer,
                    self.config.relay_buffer_size, f"[{self.peer_str}] CONNECT {target}")

    # ------------------------------------------------------------------------
    # BIND
    # ------------------------------------------------------------------------

    async def _handle_bind(self, request: ConnectionRequest):
        """
        在临时端口上被动监听一个入站连接

        1. 第一次应答携带监听端口
        2. 接受一个入站连接后发送第二次应答（默认与第一次字节相同）
        3. bind_relay 开启时在客户端和对端之间中继，否则直接返回
        """
        self.state = SessionState.BINDING
        loop = asyncio.get_running_loop()

        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._bind_listener = listener
        try:
            listener.setblocking(False)
            listener.bind(('0.0.0.0', 0))
            listener.listen(1)
        except OSError as e:
            raise TransportError(f"BIND 监听失败: {e}", e) from e

        listen_name = listener.getsockname()
        first = self._success_reply(listen_name, listen_name[1])
        await self._send_reply(first)
        self._log(logging.INFO, f"BIND 监听端口 {listen_name[1]}")

        self.state = SessionState.ACCEPTING
        try:
            conn, peer = await self._with_connect_timeout(loop.sock_accept(listener))
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"BIND 等待入站连接失败: {e!r}", e) from e
        finally:
            listener.close()
            self._bind_listener = None

        self._log(logging.INFO, f"BIND 收到来自 {peer[0]}:{peer[1]} 的连接")
        peer_reader, peer_writer = await asyncio.open_connection(sock=conn)
        self._remote_writer = peer_writer

        if self.config.report_bound_address:
            second = Reply.from_sockname(peer)
        else:
            second = first
        await self._send_reply(second)

        if not self.config.bind_relay:
            self.state = SessionState.IDLE
            return

        self.state = SessionState.RELAYING
        await relay(self.reader, self.writer, peer_reader, peer_writer,
                    self.config.relay_buffer_size, f"[{self.peer_str}] BIND {peer[0]}:{peer[1]}")

    # ------------------------------------------------------------------------
    # UDP ASSOCIATE
    # ------------------------------------------------------------------------

    async def _handle_udp_associate(self, request: ConnectionRequest):
        """
        打开 UDP 套接字并在控制连接存活期间中继数据报

        udp_relay 关闭时发送应答后直接返回，UDP 套接字随之关闭。
        """
        self.state = SessionState.UDP_SETUP
        loop = asyncio.get_running_loop()
        label = f"[{self.peer_str}] UDP"

        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: UdpRelayProtocol.for_request(self.client_ip, request.address, request.port, label),
                local_addr=('0.0.0.0', 0),
            )
        except OSError as e:
            raise TransportError(f"UDP 套接字创建失败: {e}", e) from e
        self._udp_transport = transport

        udp_name = transport.get_extra_info('sockname')
        await self._send_reply(self._success_reply(udp_name, udp_name[1]))
        self._log(logging.INFO, f"UDP 中继端口 {udp_name[1]}")

        if not self.config.udp_relay:
            self.state = SessionState.IDLE
            return

        self.state = SessionState.RELAYING
        await self._wait_control_closed()
        self._log(
            logging.DEBUG,
            f"UDP 中继结束: 转发 {protocol.forwarded}, 返回 {protocol.returned}, 丢弃 {protocol.dropped}"
        )

    async def _wait_control_closed(self):
        """读取并丢弃控制连接上的数据，直到 EOF 或错误"""
        try:
            while await self.reader.read(4096):
                pass
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            self._log(logging.DEBUG, f"控制连接错误: {e}")

    # ------------------------------------------------------------------------
    # 清理
    # ------------------------------------------------------------------------

    async def _cleanup(self):
        """关闭会话打开的所有资源和客户端连接"""
        if self._udp_transport is not None:
            self._udp_transport.close()
            self._udp_transport = None

        if self._bind_listener is not None:
            self._bind_listener.close()
            self._bind_listener = None

        for writer in (self._remote_writer, self.writer):
            if writer is None:
                continue
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError, OSError):
                pass  # 连接已断开
        self._remote_writer = None
