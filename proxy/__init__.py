"""
SOCKS5 代理运行时模块

本模块整合了 SOCKS5 代理服务端的运行时组件:
- Socks5Server: 监听并为每个连接创建会话
- Socks5Session: 单个连接的协商、请求解析、分发和中继
- relay / pipe: TCP 双向中继
- UdpRelayProtocol: UDP ASSOCIATE 数据报中继

使用示例：
    from proxy import Socks5Server
    server = Socks5Server(config)
    await server.serve_forever()
"""

from .relay import pipe, relay
from .udp import UdpRelayProtocol
from .session import Socks5Session, SessionState
from .server import Socks5Server

__all__ = [
    'pipe',
    'relay',
    'UdpRelayProtocol',
    'Socks5Session',
    'SessionState',
    'Socks5Server',
]
