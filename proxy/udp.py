"""
UDP ASSOCIATE 中继模块

每个 UDP ASSOCIATE 会话拥有一个绑定在临时端口上的 UDP 套接字，
由 UdpRelayProtocol 处理:

1. 来自客户端端点的数据报: 解析 SOCKS5 UDP 头部，把负载发往目标
2. 来自其他端点的数据报: 加上标明发送方的头部后转发给客户端

客户端端点优先使用 UDP ASSOCIATE 请求中给出的地址和端口；请求中为全零时，
从第一个源 IP 与 TCP 控制连接对端 IP 相同、并且带有合法 SOCKS5 UDP 头部的
数据报中学习。
不支持分片，FRAG 不为 0 的数据报直接丢弃。
中继套接字是 IPv4 套接字，发往 IPv6 地址的数据报直接丢弃，域名只解析为 IPv4 地址。
"""

import asyncio
import socket
import logging
from typing import Optional, Set, Tuple

from socks5 import Address, AddressType, SocksError, UdpHeader

logger = logging.getLogger('socks-puppet-udp')


class UdpRelayProtocol(asyncio.DatagramProtocol):
    """
    UDP 数据报中继协议

    Attributes:
        control_ip: TCP 控制连接的对端 IP
        expected_host: 请求中声明的客户端 IP，None 表示未知
        expected_port: 请求中声明的客户端端口，None 表示未知
        client_addr: 已确定的客户端端点
        forwarded: 发往目标的数据报数量
        returned: 返回给客户端的数据报数量
        dropped: 丢弃的数据报数量
        family: 中继套接字的地址族，决定可以发往的目标
    """

    def __init__(self, control_ip: str, expected_host: Optional[str] = None,
                 expected_port: Optional[int] = None, label: str = ''):
        self.control_ip = control_ip
        self.expected_host = expected_host
        self.expected_port = expected_port
        self.label = label
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.client_addr: Optional[Tuple[str, int]] = None
        self.forwarded = 0
        self.returned = 0
        self.dropped = 0
        self.family = socket.AF_INET
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def for_request(cls, control_ip: str, address: Address, port: int, label: str = '') -> 'UdpRelayProtocol':
        """根据 UDP ASSOCIATE 请求中的地址和端口创建协议对象"""
        expected_host = None
        if address.atyp != AddressType.DOMAIN and not address.is_unspecified:
            expected_host = address.host
        return cls(control_ip, expected_host, port or None, label)

    def connection_made(self, transport):
        self.transport = transport
        sock = transport.get_extra_info('socket')
        self.family = sock.family if sock is not None else socket.AF_INET

    def connection_lost(self, exc):
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

    def error_received(self, exc):
        logger.debug(f"{self.label} UDP 错误: {exc}")

    def datagram_received(self, data: bytes, addr):
        addr = (addr[0], addr[1])
        if self._is_client(addr, data):
            self._from_client(data)
        elif self.client_addr is not None:
            self._to_client(data, addr)
        else:
            self.dropped += 1
            logger.debug(f"{self.label} 客户端未知，丢弃来自 {addr[0]}:{addr[1]} 的数据报")

    def _is_client(self, addr: Tuple[str, int], data: bytes) -> bool:
        """
        判断数据报是否来自客户端

        客户端端点未确定时，只有地址匹配且带有合法 SOCKS5 UDP 头部
        （RSV 为零、FRAG 为零）的数据报才会被认定为客户端。
        """
        if self.client_addr is not None:
            return addr == self.client_addr

        host = self.expected_host or self.control_ip
        if addr[0] != host:
            return False
        if self.expected_port is not None and addr[1] != self.expected_port:
            return False
        if not self._looks_like_request(data):
            return False

        self.client_addr = addr
        logger.debug(f"{self.label} UDP 客户端端点: {addr[0]}:{addr[1]}")
        return True

    @staticmethod
    def _looks_like_request(data: bytes) -> bool:
        if data[:2] != b'\x00\x00':
            return False
        try:
            header, _ = UdpHeader.parse(data)
        except (ValueError, SocksError):
            return False
        return header.frag == 0

    def _from_client(self, data: bytes):
        try:
            header, payload = UdpHeader.parse(data)
        except (ValueError, SocksError) as e:
            self.dropped += 1
            logger.debug(f"{self.label} 无效的 UDP 头部: {e}")
            return

        if header.frag != 0:
            self.dropped += 1
            logger.debug(f"{self.label} 不支持 UDP 分片 (frag={header.frag})")
            return

        if header.address.atyp == AddressType.IPV6 and self.family != socket.AF_INET6:
            self.dropped += 1
            logger.debug(f"{self.label} UDP 套接字只支持 IPv4，丢弃发往 {header.address}:{header.port} 的数据报")
            return

        if header.address.atyp == AddressType.DOMAIN:
            task = asyncio.ensure_future(self._resolve_and_send(header.address.host, header.port, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        else:
            self._send(payload, (header.address.host, header.port))

    async def _resolve_and_send(self, host: str, port: int, payload: bytes):
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, port, family=self.family, type=socket.SOCK_DGRAM)
        except (OSError, UnicodeError) as e:
            self.dropped += 1
            logger.debug(f"{self.label} 解析 {host} 失败: {e}")
            return
        if not infos:
            self.dropped += 1
            return
        self._send(payload, infos[0][4][:2])

    def _send(self, payload: bytes, target: Tuple[str, int]):
        if self.transport is None or self.transport.is_closing():
            self.dropped += 1
            return
        try:
            self.transport.sendto(payload, target)
        except OSError as e:
            self.dropped += 1
            logger.debug(f"{self.label} 发往 {target[0]}:{target[1]} 失败: {e}")
            return
        self.forwarded += 1

    def _to_client(self, data: bytes, addr: Tuple[str, int]):
        if self.transport is None or self.transport.is_closing():
            return
        header = UdpHeader(frag=0, address=Address.from_host(addr[0]), port=addr[1])
        self.transport.sendto(header.serialize() + data, self.client_addr)
        self.returned += 1
