"""
SOCKS5 协议包

本包提供了 SOCKS5 (RFC 1928) 服务端的线路格式定义和错误类型，包括：
- 协议常量、命令和地址类型枚举
- 地址编解码（IPv4、域名、IPv6）
- 方法协商、连接请求、应答和 UDP 头部消息
- 会话错误类型

使用示例：
    from socks5 import Address, Reply

    addr = Address.ipv4(bytes([127, 0, 0, 1]))
    print(addr.text)  # 127.0.0.1

    data = Reply.success(bound_port=80).serialize()
"""

from .core import (
    # 协议常量
    SOCKS_VERSION,
    AUTH_NONE,
    AUTH_NO_ACCEPTABLE,
    REP_SUCCESS,
    REP_FAILURE,
    REPLY_SIZE,

    # 枚举
    Command,
    AddressType,

    # 地址编解码
    Address,
    read_address,
    parse_address,

    # 协议消息
    HandshakeRequest,
    ConnectionRequest,
    Reply,
    UdpHeader,
    make_method_selection,
)
from .errors import (
    SocksError,
    TransportError,
    UnsupportedVersion,
    UnsupportedAuthMethod,
    UnsupportedCommand,
    UnsupportedAddressType,
)
