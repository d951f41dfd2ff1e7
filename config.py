"""
SOCKS5 代理 - 配置管理模块
加载和保存配置文件，管理服务端配置。

版本: 1.0.0

功能概述:
本模块提供了配置管理功能，包括：
1. 服务端配置数据类
2. YAML 配置文件的加载和保存
3. 配置项校验

配置文件格式（config.yaml）:
    server:
      host: 0.0.0.0
      port: 1080
      handshake_timeout: null
      connect_timeout: null
      report_bound_address: false
      bind_relay: true
      udp_relay: true
      relay_buffer_size: 32768
      monitor_interval: 0
    logging:
      level: INFO
      enable_file: false
      logger_levels:
        socks-puppet-relay: WARNING
"""

import logging
from dataclasses import dataclass, fields, asdict
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class ServerConfig:
    """
    服务端配置数据类

    Attributes:
        host: 监听地址（默认: "0.0.0.0"）
        port: 监听端口（默认: 1080）
        handshake_timeout: 方法协商和请求读取的超时（秒），None 表示不限时
        connect_timeout: 连接目标和 BIND 等待入站连接的超时（秒），None 表示不限时
        report_bound_address: 应答中是否填写真实的本地绑定地址（默认全零）
        bind_relay: BIND 收到入站连接后是否在客户端和对端之间中继数据
        udp_relay: UDP ASSOCIATE 是否中继数据报
        relay_buffer_size: 中继每次读取的最大字节数
        monitor_interval: 资源监控间隔（秒），0 表示关闭
    """
    host: str = "0.0.0.0"
    port: int = 1080
    handshake_timeout: Optional[float] = None
    connect_timeout: Optional[float] = None
    report_bound_address: bool = False
    bind_relay: bool = True
    udp_relay: bool = True
    relay_buffer_size: int = 32768
    monitor_interval: float = 0

    def __post_init__(self):
        if not 0 <= int(self.port) <= 65535:
            raise ValueError(f"无效的端口号: {self.port}")
        if self.relay_buffer_size <= 0:
            raise ValueError(f"无效的中继缓冲区大小: {self.relay_buffer_size}")
        for name in ('handshake_timeout', 'connect_timeout'):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} 必须大于 0: {value}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ServerConfig':
        """
        从字典创建配置，忽略未知字段

        Args:
            data: 配置文件中 server 段的内容，None 表示全部使用默认值

        Raises:
            ValueError: 配置项取值非法
        """
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"忽略未知配置项: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}


def save_config(config_file: str, config_data: Dict[str, Any]) -> bool:
    """
    保存配置文件

    Args:
        config_file: 配置文件路径
        config_data: 要保存的配置数据字典

    Returns:
        bool: 保存成功返回 True，失败返回 False
    """
    try:
        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f, default_flow_style=False, allow_unicode=True)
        return True
    except OSError as e:
        logger.error(f"保存配置文件失败: {e}")
        return False
