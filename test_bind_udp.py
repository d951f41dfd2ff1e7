#!/usr/bin/env python3
"""
测试 BIND 和 UDP ASSOCIATE

测试内容:
1. BIND 两次应答相同，之后在客户端和入站对端之间中继
2. bind_relay 关闭时第二次应答后关闭连接
3. BIND 等待入站连接超时
4. UDP ASSOCIATE 经代理收发数据报（IPv4 和域名目标）
5. 分片数据报和发往 IPv6 地址的数据报被丢弃
6. udp_relay 关闭时应答后关闭连接，TCP 控制连接关闭后 UDP 中继结束
7. UdpRelayProtocol 的客户端端点识别
8. UdpRelayProtocol 的转发计数只统计实际发出的数据报

使用方法:
    python3 test_bind_udp.py
"""

import asyncio
import socket
import struct
import sys
import os

# 添加当前目录到路径
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from proxy import SessionState, UdpRelayProtocol
from socks5 import Address, Reply, TransportError, UdpHeader
from test_session import (
    TIMEOUT, close_server, handshake, read_to_eof, session_finished, start_proxy,
)


# ============================================================================
# 辅助函数
# ============================================================================

class DatagramCollector(asyncio.DatagramProtocol):
    """把收到的数据报放入队列"""

    def __init__(self, echo: bool = False):
        self.echo = echo
        self.transport = None
        self.queue = asyncio.Queue()

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        if self.echo:
            self.transport.sendto(data, addr)
        else:
            self.queue.put_nowait((data, addr))


async def open_udp(echo: bool = False):
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: DatagramCollector(echo), local_addr=('127.0.0.1', 0)
    )
    return transport, protocol, transport.get_extra_info('sockname')[1]


async def request(reader, writer, command: int, atyp_addr: bytes = bytes([1, 0, 0, 0, 0]), port: int = 0) -> Reply:
    """发送请求并读取一个应答"""
    await handshake(reader, writer)
    writer.write(bytes([5, command, 0]) + atyp_addr + struct.pack('>H', port))
    await writer.drain()
    return Reply.parse(await asyncio.wait_for(reader.readexactly(10), TIMEOUT))


class FakeTransport:
    def __init__(self):
        self.sent = []

    def sendto(self, data, addr):
        self.sent.append((data, addr))

    def is_closing(self):
        return False

    def get_extra_info(self, name, default=None):
        return default


# ============================================================================
# BIND
# ============================================================================

def test_bind_relay():
    """测试 BIND 的两次应答和之后的双向中继"""
    print("\n=== 测试1: BIND 中继 ===")

    async def scenario():
        proxy, port, sessions = await start_proxy()
        reader, writer = await asyncio.open_connection('127.0.0.1', port)

        first = await request(reader, writer, 0x02)
        assert first.status == 0
        assert first.bound_address == bytes(4)
        assert first.bound_port != 0

        peer_reader, peer_writer = await asyncio.open_connection('127.0.0.1', first.bound_port)
        second = await asyncio.wait_for(reader.readexactly(10), TIMEOUT)
        assert second == first.serialize(), second

        peer_writer.write(b'from peer')
        await peer_writer.drain()
        assert await asyncio.wait_for(reader.readexactly(9), TIMEOUT) == b'from peer'

        writer.write(b'from client')
        await writer.drain()
        assert await asyncio.wait_for(peer_reader.readexactly(11), TIMEOUT) == b'from client'

        peer_writer.write_eof()
        assert await read_to_eof(reader) == b''
        writer.write_eof()
        assert await read_to_eof(peer_reader) == b''

        session = await session_finished(sessions)
        assert session.error is None, session.error
        assert session.state == SessionState.CLOSED

        writer.close()
        peer_writer.close()
        await close_server(proxy)

    asyncio.run(scenario())
    print("✓ 测试通过")


def test_bind_without_relay():
    """测试 bind_relay 关闭时第二次应答后关闭客户端连接"""
    print("\n=== 测试2: BIND 不中继 ===")

    async def scenario():
        proxy, port, sessions = await start_proxy(bind_relay=False)
        reader, writer = await asyncio.open_connection('127.0.0.1', port)

        first = await request(reader, writer, 0x02)
        peer_reader, peer_writer = await asyncio.open_connection('127.0.0.1', first.bound_port)

        assert await read_to_eof(reader) == first.serialize()
        assert await read_to_eof(peer_reader) == b''

        session = await session_finished(sessions)
        assert session.error is None

        writer.close()
        peer_writer.close()
        await close_server(proxy)

    asyncio.run(scenario())
    print("✓ 测试通过")


def test_bind_accept_timeout():
    """测试 BIND 在 connect_timeout 内没有入站连接时结束会话"""
    print("\n=== 测试3: BIND 等待超时 ===")

    async def scenario():
        proxy, port, sessions = await start_proxy(connect_timeout=0.3)
        reader, writer = await asyncio.open_connection('127.0.0.1', port)

        first = await request(reader, writer, 0x02)
        assert first.status == 0
        assert await read_to_eof(reader) == b''

        session = await session_finished(sessions)
        assert isinstance(session.error, TransportError)

        # 监听套接字已关闭
        try:
            _, late_writer = await asyncio.open_connection('127.0.0.1', first.bound_port)
            late_writer.close()
            assert False, "监听端口应已关闭"
        except OSError:
            pass

        writer.close()
        await close_server(proxy)

    asyncio.run(scenario())
    print("✓ 测试通过")


# ============================================================================
# UDP ASSOCIATE
# ============================================================================

def test_udp_associate_relay():
    """测试经代理收发数据报，返回的数据报带有标明发送方的头部"""
    print("\n=== 测试4: UDP 中继 ===")

    async def scenario():
        echo_transport, _, echo_port = await open_udp(echo=True)
        client_transport, client, _ = await open_udp()

        proxy, port, sessions = await start_proxy()
        reader, writer = await asyncio.open_connection('127.0.0.1', port)
        reply = await request(reader, writer, 0x03)
        assert reply.status == 0
        assert reply.bound_address == bytes(4)
        relay_addr = ('127.0.0.1', reply.bound_port)

        # IPv4 目标
        header = UdpHeader(0, Address.from_host('127.0.0.1'), echo_port)
        client_transport.sendto(header.serialize() + b'ping', relay_addr)
        data, addr = await asyncio.wait_for(client.queue.get(), TIMEOUT)
        assert addr[1] == reply.bound_port
        back, payload = UdpHeader.parse(data)
        assert payload == b'ping'
        assert back.address.text == '127.0.0.1'
        assert back.port == echo_port

        # 分片数据报被丢弃，之后的数据报正常转发
        fragment = UdpHeader(1, Address.from_host('127.0.0.1'), echo_port)
        client_transport.sendto(fragment.serialize() + b'fragment', relay_addr)

        # IPv6 目标被丢弃
        ipv6 = UdpHeader(0, Address.from_host('::1'), echo_port)
        client_transport.sendto(ipv6.serialize() + b'over ipv6', relay_addr)

        # 域名目标
        header = UdpHeader(0, Address.domain('localhost'), echo_port)
        client_transport.sendto(header.serialize() + b'by name', relay_addr)
        data, _ = await asyncio.wait_for(client.queue.get(), TIMEOUT)
        back, payload = UdpHeader.parse(data)
        assert payload == b'by name', payload
        assert back.address.text == '127.0.0.1'

        # 关闭控制连接后 UDP 中继结束
        writer.close()
        session = await session_finished(sessions)
        assert session.error is None, session.error
        assert client.queue.empty()

        client_transport.close()
        echo_transport.close()
        await close_server(proxy)

    asyncio.run(scenario())
    print("✓ 测试通过")


def test_udp_associate_without_relay():
    """测试 udp_relay 关闭时应答后关闭连接"""
    print("\n=== 测试5: UDP 不中继 ===")

    async def scenario():
        proxy, port, sessions = await start_proxy(udp_relay=False)
        reader, writer = await asyncio.open_connection('127.0.0.1', port)

        reply = await request(reader, writer, 0x03)
        assert reply.status == 0
        assert reply.bound_port != 0
        assert await read_to_eof(reader) == b''

        session = await session_finished(sessions)
        assert session.error is None
        writer.close()
        await close_server(proxy)

    asyncio.run(scenario())
    print("✓ 测试通过")


def test_udp_protocol_endpoints():
    """测试 UdpRelayProtocol 识别客户端端点"""
    print("\n=== 测试6: UDP 客户端端点 ===")

    query = UdpHeader(0, Address.from_host('8.8.8.8'), 53).serialize() + b'query'

    # 请求中地址为全零，从控制连接 IP 学习客户端端点
    protocol = UdpRelayProtocol.for_request('10.0.0.5', Address.ipv4(bytes(4)), 0)
    assert protocol.expected_host is None
    assert protocol.expected_port is None
    transport = FakeTransport()
    protocol.connection_made(transport)

    protocol.datagram_received(b'stray', ('10.0.0.9', 1000))
    assert protocol.dropped == 1
    assert not transport.sent

    protocol.datagram_received(query, ('10.0.0.5', 4000))
    assert protocol.client_addr == ('10.0.0.5', 4000)
    assert transport.sent == [(b'query', ('8.8.8.8', 53))]
    assert protocol.forwarded == 1

    protocol.datagram_received(b'answer', ('8.8.8.8', 53))
    data, addr = transport.sent[-1]
    assert addr == ('10.0.0.5', 4000)
    assert data == UdpHeader(0, Address.from_host('8.8.8.8'), 53).serialize() + b'answer'
    assert protocol.returned == 1

    protocol.datagram_received(b'\x00\x00', ('10.0.0.5', 4000))
    assert protocol.dropped == 2

    # 客户端端点确定之前，来自同一 IP 的非 SOCKS 数据报（例如本机目标的回复）不会被当作客户端
    protocol = UdpRelayProtocol('127.0.0.1')
    transport = FakeTransport()
    protocol.connection_made(transport)
    protocol.datagram_received(b'target-reply', ('127.0.0.1', 53))
    assert protocol.client_addr is None
    assert protocol.dropped == 1
    fragment = UdpHeader(1, Address.from_host('8.8.8.8'), 53).serialize() + b'part'
    protocol.datagram_received(fragment, ('127.0.0.1', 4000))
    assert protocol.client_addr is None
    protocol.datagram_received(query, ('127.0.0.1', 4000))
    assert protocol.client_addr == ('127.0.0.1', 4000)
    assert transport.sent == [(b'query', ('8.8.8.8', 53))]

    # 请求中给出了客户端地址和端口
    protocol = UdpRelayProtocol.for_request('10.0.0.5', Address.ipv4(bytes([10, 0, 0, 7])), 5000)
    assert protocol.expected_host == '10.0.0.7'
    assert protocol.expected_port == 5000
    transport = FakeTransport()
    protocol.connection_made(transport)

    protocol.datagram_received(query, ('10.0.0.5', 4000))
    assert protocol.client_addr is None
    assert protocol.dropped == 1

    protocol.datagram_received(query, ('10.0.0.7', 5000))
    assert protocol.client_addr == ('10.0.0.7', 5000)
    assert protocol.forwarded == 1

    # 域名形式的客户端地址无法比较，退回使用控制连接 IP
    protocol = UdpRelayProtocol.for_request('10.0.0.5', Address.domain('client.example'), 0)
    assert protocol.expected_host is None
    print("✓ 测试通过")


def test_udp_forward_counters():
    """测试 IPv4 中继套接字丢弃 IPv6 目标，forwarded 只统计实际发出的数据报"""
    print("\n=== 测试7: UDP 转发计数 ===")

    async def scenario():
        loop = asyncio.get_running_loop()
        echo_transport, _, echo_port = await open_udp(echo=True)
        client_transport, client, _ = await open_udp()

        relay_transport, relay = await loop.create_datagram_endpoint(
            lambda: UdpRelayProtocol('127.0.0.1'), local_addr=('127.0.0.1', 0)
        )
        assert relay.family == socket.AF_INET
        relay_addr = relay_transport.get_extra_info('sockname')

        ipv6 = UdpHeader(0, Address.from_host('::1'), 9999)
        client_transport.sendto(ipv6.serialize() + b'x', relay_addr)

        ipv4 = UdpHeader(0, Address.from_host('127.0.0.1'), echo_port)
        client_transport.sendto(ipv4.serialize() + b'y', relay_addr)
        data, _ = await asyncio.wait_for(client.queue.get(), TIMEOUT)
        assert UdpHeader.parse(data)[1] == b'y'

        assert relay.forwarded == 1, relay.forwarded
        assert relay.dropped == 1, relay.dropped
        assert relay.returned == 1

        relay_transport.close()
        client_transport.close()
        echo_transport.close()

    asyncio.run(scenario())
    print("✓ 测试通过")



def main():
    tests = [
        test_bind_relay,
        test_bind_without_relay,
        test_bind_accept_timeout,
        test_udp_associate_relay,
        test_udp_associate_without_relay,
        test_udp_protocol_endpoints,
        test_udp_forward_counters,
    ]
    for test in tests:
        test()
    print("\n所有测试通过")


if __name__ == '__main__':
    main()
