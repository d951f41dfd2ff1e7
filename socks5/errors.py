"""
SOCKS5 代理 - 错误类型

所有协议和传输错误的基类都是 SocksError。会话驱动器捕获 SocksError，
记录日志后关闭该会话，错误不会影响其他会话或接受循环。
"""

from typing import Optional


class SocksError(Exception):
    """SOCKS5 会话错误基类"""


class TransportError(SocksError):
    """
    客户端或目标套接字上的 I/O 错误

    Attributes:
        cause: 原始异常（OSError、IncompleteReadError 或超时），可能为 None
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class UnsupportedVersion(SocksError):
    """协议版本不是 5"""

    def __init__(self, version: int):
        super().__init__(f"不支持的 SOCKS 版本: {version}")
        self.version = version


class UnsupportedAuthMethod(SocksError):
    """客户端没有提供"无需认证"方法"""

    def __init__(self, methods: bytes):
        super().__init__(f"没有可接受的认证方法: {list(methods)}")
        self.methods = methods


class UnsupportedCommand(SocksError):
    """命令字节不是 CONNECT、BIND 或 UDP ASSOCIATE"""

    def __init__(self, command: int):
        super().__init__(f"不支持的命令: 0x{command:02x}")
        self.command = command


class UnsupportedAddressType(SocksError):
    """地址类型不是 IPv4、域名或 IPv6"""

    def __init__(self, address_type: int):
        super().__init__(f"不支持的地址类型: 0x{address_type:02x}")
        self.address_type = address_type
