"""
SOCKS5 代理 - 核心协议模块
定义 SOCKS5 协议的常量、地址编解码和消息格式。

版本: 1.0.0

功能概述:
本模块提供了 SOCKS5 (RFC 1928) 服务端需要的全部线路格式处理，
包括方法协商消息、连接请求、固定 10 字节的应答以及 UDP 数据报头部。
所有多字节字段使用大端序（网络字节序）。

读取函数不直接依赖 asyncio.StreamReader，而是接收一个
read_exactly(n) 协程函数，这样会话可以在外面统一处理超时和传输错误。

连接请求格式:
┌────────┬────────┬────────┬──────────┬────────────┬──────────┐
│ 版本   │ 命令   │ 保留   │ 地址类型 │ 目标地址   │ 目标端口 │
│ 1 字节 │ 1 字节 │ 1 字节 │ 1 字节   │ 可变长度   │ 2 字节   │
└────────┴────────┴────────┴──────────┴────────────┴──────────┘

应答格式（本服务端固定使用 IPv4 地址类型）:
┌────────┬────────┬────────┬──────────┬────────────┬──────────┐
│ 版本   │ 状态   │ 保留   │ 地址类型 │ 绑定地址   │ 绑定端口 │
│ 1 字节 │ 1 字节 │ 1 字节 │ 0x01     │ 4 字节     │ 2 字节   │
└────────┴────────┴────────┴──────────┴────────────┴──────────┘
"""

import socket
import struct
from enum import IntEnum
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Union

from .errors import UnsupportedAddressType, UnsupportedVersion

ReadExactly = Callable[[int], Awaitable[bytes]]


# ============================================================================
# 协议常量
# ============================================================================

SOCKS_VERSION = 0x05
AUTH_NONE = 0x00
AUTH_NO_ACCEPTABLE = 0xFF
RESERVED = 0x00
REPLY_SIZE = 10

REP_SUCCESS = 0x00
REP_FAILURE = 0x01


class Command(IntEnum):
    """
    SOCKS5 请求命令

    - CONNECT: 建立到目标的 TCP 隧道
    - BIND: 代理监听一个入站连接（用于需要回连的协议，如 FTP 主动模式）
    - UDP_ASSOCIATE: 在 TCP 控制连接存活期间中继 UDP 数据报
    """
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


COMMAND_NAMES = {
    Command.CONNECT: 'CONNECT',
    Command.BIND: 'BIND',
    Command.UDP_ASSOCIATE: 'UDP',
}


class AddressType(IntEnum):
    """地址类型，决定线路上目标地址占用的字节数"""
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


# ============================================================================
# 地址编解码
# ============================================================================

@dataclass(frozen=True)
class Address:
    """
    SOCKS5 地址

    保存原始字节，按地址类型渲染为文本。

    Attributes:
        atyp: 地址类型
        raw: 原始地址字节（IPv4 为 4 字节，IPv6 为 16 字节，域名为不含长度前缀的名字）
    """
    atyp: AddressType
    raw: bytes

    @classmethod
    def ipv4(cls, raw: bytes) -> 'Address':
        return cls(AddressType.IPV4, bytes(raw))

    @classmethod
    def ipv6(cls, raw: bytes) -> 'Address':
        return cls(AddressType.IPV6, bytes(raw))

    @classmethod
    def domain(cls, name: Union[str, bytes]) -> 'Address':
        if isinstance(name, str):
            name = name.encode('utf-8')
        if len(name) > 255:
            raise ValueError(f"域名过长: {len(name)} 字节")
        return cls(AddressType.DOMAIN, bytes(name))

    @classmethod
    def from_host(cls, host: str) -> 'Address':
        """
        根据主机文本选择地址类型

        IPv4/IPv6 字面量编码为对应的地址类型，其余按域名处理。
        """
        try:
            return cls.ipv4(socket.inet_pton(socket.AF_INET, host))
        except OSError:
            pass
        try:
            return cls.ipv6(socket.inet_pton(socket.AF_INET6, host.strip('[]')))
        except OSError:
            pass
        return cls.domain(host)

    @property
    def text(self) -> str:
        """
        人类可读的地址文本

        - IPv4: 点分十进制，例如 127.0.0.1
        - 域名: UTF-8 解码，非法字节替换为 U+FFFD，解码永不失败
        - IPv6: 方括号包围的 8 组 4 位十六进制数，不做零压缩
        """
        if self.atyp == AddressType.IPV4:
            return '.'.join(str(b) for b in self.raw)
        if self.atyp == AddressType.IPV6:
            groups = [f"{self.raw[i]:02x}{self.raw[i + 1]:02x}" for i in range(0, 16, 2)]
            return '[' + ':'.join(groups) + ']'
        return self.raw.decode('utf-8', errors='replace')

    @property
    def host(self) -> str:
        """用于建立连接的主机名（IPv6 去掉方括号）"""
        return self.text.strip('[]') if self.atyp == AddressType.IPV6 else self.text

    @property
    def is_unspecified(self) -> bool:
        """全零的 IP 地址，客户端用它表示地址未知"""
        return self.atyp != AddressType.DOMAIN and not any(self.raw)

    def serialize(self) -> bytes:
        """编码为 地址类型 + 地址 的线路格式"""
        if self.atyp == AddressType.DOMAIN:
            return bytes([self.atyp, len(self.raw)]) + self.raw
        return bytes([self.atyp]) + self.raw

    def __str__(self) -> str:
        return self.text


ADDRESS_LENGTHS = {
    AddressType.IPV4: 4,
    AddressType.IPV6: 16,
}


async def read_address(read_exactly: ReadExactly, atyp: int) -> Address:
    """
    按地址类型从流中读取目标地址

    Args:
        read_exactly: 精确读取 n 字节的协程函数
        atyp: 地址类型字节

    Returns:
        Address: 解析后的地址

    Raises:
        UnsupportedAddressType: 地址类型未知，此时流中已消费的字节无法恢复
    """
    if atyp == AddressType.IPV4:
        return Address.ipv4(await read_exactly(4))
    if atyp == AddressType.DOMAIN:
        length = (await read_exactly(1))[0]
        return Address.domain(await read_exactly(length))
    if atyp == AddressType.IPV6:
        return Address.ipv6(await read_exactly(16))
    raise UnsupportedAddressType(atyp)


def parse_address(data: bytes, offset: int = 0) -> Tuple[Address, int]:
    """
    从缓冲区解析 地址类型 + 地址

    Returns:
        (地址, 地址之后的偏移量)

    Raises:
        UnsupportedAddressType: 地址类型未知
        ValueError: 数据不足
    """
    if len(data) <= offset:
        raise ValueError("数据不足，无法解析地址类型")
    atyp = data[offset]
    offset += 1

    if atyp == AddressType.DOMAIN:
        if len(data) <= offset:
            raise ValueError("数据不足，无法解析域名长度")
        length = data[offset]
        offset += 1
        if len(data) < offset + length:
            raise ValueError("数据不足，无法解析域名")
        return Address.domain(data[offset:offset + length]), offset + length

    if atyp not in ADDRESS_LENGTHS:
        raise UnsupportedAddressType(atyp)

    length = ADDRESS_LENGTHS[AddressType(atyp)]
    if len(data) < offset + length:
        raise ValueError("数据不足，无法解析地址")
    return Address(AddressType(atyp), data[offset:offset + length]), offset + length


# ============================================================================
# 协议消息
# ============================================================================

@dataclass
class HandshakeRequest:
    """
    方法协商请求: 版本(1) + 方法数量(1) + 方法列表(n)
    """
    version: int
    methods: bytes

    @classmethod
    async def read(cls, read_exactly: ReadExactly) -> 'HandshakeRequest':
        """
        读取方法协商请求

        先读取 2 字节头部并校验版本，版本不对时不再读取方法列表。

        Raises:
            UnsupportedVersion: 版本不是 5
        """
        version, nmethods = await read_exactly(2)
        if version != SOCKS_VERSION:
            raise UnsupportedVersion(version)
        methods = await read_exactly(nmethods) if nmethods else b''
        return cls(version, methods)

    def offers(self, method: int) -> bool:
        return method in self.methods


def make_method_selection(method: int) -> bytes:
    """方法选择应答: 版本(1) + 选中的方法(1)"""
    return bytes([SOCKS_VERSION, method])


@dataclass
class ConnectionRequest:
    """
    连接请求

    Attributes:
        command: 命令，未知命令保留原始整数值，由分发器拒绝
        address: 目标地址
        port: 目标端口
    """
    command: Union[Command, int]
    address: Address
    port: int

    @classmethod
    async def read(cls, read_exactly: ReadExactly) -> 'ConnectionRequest':
        """
        读取连接请求

        头部中的版本和保留字节不做校验。

        Raises:
            UnsupportedAddressType: 地址类型未知
        """
        _, cmd, _, atyp = await read_exactly(4)
        address = await read_address(read_exactly, atyp)
        port = struct.unpack('>H', await read_exactly(2))[0]
        try:
            command = Command(cmd)
        except ValueError:
            command = cmd
        return cls(command, address, port)

    @property
    def command_name(self) -> str:
        return COMMAND_NAMES.get(self.command, 'UNKNOWN')


@dataclass
class Reply:
    """
    固定 10 字节的应答消息

    地址类型总是 IPv4，绑定地址默认为全零。
    """
    status: int
    bound_address: bytes = b'\x00\x00\x00\x00'
    bound_port: int = 0

    @classmethod
    def success(cls, bound_port: int = 0, bound_address: bytes = b'\x00\x00\x00\x00') -> 'Reply':
        return cls(REP_SUCCESS, bound_address, bound_port)

    @classmethod
    def failure(cls) -> 'Reply':
        return cls(REP_FAILURE)

    @classmethod
    def from_sockname(cls, sockname) -> 'Reply':
        """
        使用套接字的真实本地地址构造成功应答

        非 IPv4 地址无法放进 IPv4 应答，地址部分保持全零，端口照常填写。
        """
        host, port = sockname[0], sockname[1]
        try:
            raw = socket.inet_pton(socket.AF_INET, host)
        except OSError:
            raw = b'\x00\x00\x00\x00'
        return cls.success(port, raw)

    def serialize(self) -> bytes:
        if len(self.bound_address) != 4:
            raise ValueError(f"绑定地址必须是 4 字节: {len(self.bound_address)}")
        return struct.pack(
            '>BBBB4sH',
            SOCKS_VERSION,
            self.status,
            RESERVED,
            AddressType.IPV4,
            self.bound_address,
            self.bound_port,
        )

    @classmethod
    def parse(cls, data: bytes) -> 'Reply':
        """解析应答（客户端和测试使用）"""
        if len(data) != REPLY_SIZE:
            raise ValueError(f"应答长度必须是 {REPLY_SIZE} 字节: {len(data)}")
        _, status, _, _, address, port = struct.unpack('>BBBB4sH', data)
        return cls(status, address, port)


# ============================================================================
# UDP 数据报头部
# ============================================================================

@dataclass
class UdpHeader:
    """
    UDP ASSOCIATE 中继使用的数据报头部

    ┌────────┬────────┬──────────┬────────────┬──────────┬──────────┐
    │ 保留   │ 分片   │ 地址类型 │ 目标地址   │ 目标端口 │ 数据     │
    │ 2 字节 │ 1 字节 │ 1 字节   │ 可变长度   │ 2 字节   │ 可变长度 │
    └────────┴────────┴──────────┴────────────┴──────────┴──────────┘
    """
    frag: int
    address: Address
    port: int

    def serialize(self) -> bytes:
        return (struct.pack('>HB', 0, self.frag)
                + self.address.serialize() + struct.pack('>H', self.port))

    @classmethod
    def parse(cls, data: bytes) -> Tuple['UdpHeader', bytes]:
        """
        解析数据报

        Returns:
            (头部, 负载数据)

        Raises:
            ValueError: 数据报过短
            UnsupportedAddressType: 地址类型未知
        """
        if len(data) < 4:
            raise ValueError("数据报过短，无法解析头部")
        frag = data[2]
        address, offset = parse_address(data, 3)
        if len(data) < offset + 2:
            raise ValueError("数据报过短，无法解析端口")
        port = struct.unpack('>H', data[offset:offset + 2])[0]
        return cls(frag, address, port), data[offset + 2:]
