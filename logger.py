"""
SOCKS5 代理 - 日志管理模块

版本: 1.0.0

功能概述:
本模块提供了日志管理功能，包括：
1. 多级别日志记录，可以按组件单独设置级别（例如只让 socks-puppet-relay 输出警告）
2. 日志轮转（按日期/大小）
3. 带监听地址上下文的日志格式
4. 配置文件和环境变量支持

配置来源（优先级从高到低）:
1. 环境变量 LOG_LEVEL、LOG_DIR、LOG_FILE 等
2. 配置文件的 logging 段
3. LogConfig 默认值

组件日志记录器:
    socks-puppet            入口和配置
    socks-puppet-server     监听和关闭
    socks-puppet-session    每个客户端会话
    socks-puppet-relay      TCP 中继
    socks-puppet-udp        UDP 中继
    socks-puppet-monitor    资源监控
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 根日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 按大小轮转时单个文件的最大字节数
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        enable_journal: 是否输出到 systemd 日志（需要 systemd-python）
        context_fields: 附加到每条日志的上下文字段
        logger_levels: 组件日志记录器的单独级别，例如 {"socks-puppet-relay": "WARNING"}
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "socks-puppet.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: List[str] = field(default_factory=lambda: ["listen"])
    logger_levels: Dict[str, str] = field(default_factory=dict)


def _env_bool(value: str) -> bool:
    return value.lower() == 'true'


# 字段名 -> (环境变量, 转换函数)
_ENV_OVERRIDES: Dict[str, tuple] = {
    'level': ('LOG_LEVEL', str),
    'log_dir': ('LOG_DIR', str),
    'log_file': ('LOG_FILE', str),
    'max_bytes': ('LOG_MAX_BYTES', int),
    'backup_count': ('LOG_BACKUP_COUNT', int),
    'rotation_type': ('LOG_ROTATION_TYPE', str),
    'format_string': ('LOG_FORMAT', str),
    'enable_console': ('LOG_ENABLE_CONSOLE', _env_bool),
    'enable_file': ('LOG_ENABLE_FILE', _env_bool),
    'enable_journal': ('LOG_ENABLE_JOURNAL', _env_bool),
}


def log_config_from_dict(data: Optional[Dict[str, Any]]) -> LogConfig:
    """
    从配置文件的 logging 段创建日志配置，环境变量优先

    Args:
        data: logging 段的内容，None 表示只使用环境变量和默认值

    Returns:
        LogConfig: 日志配置对象
    """
    data = data or {}
    known = {f.name for f in fields(LogConfig)}
    values = {k: v for k, v in data.items() if k in known}

    for name, (env_name, convert) in _ENV_OVERRIDES.items():
        env_value = os.getenv(env_name)
        if env_value is not None:
            values[name] = convert(env_value)

    return LogConfig(**values)


def _parse_level(name: str) -> int:
    return getattr(logging, str(name).upper(), logging.INFO)


class ContextFilter(logging.Filter):
    """为每条记录加上 record.context，例如 "listen=0.0.0.0:1080" """

    def __init__(self, context_fields: Optional[List[str]] = None):
        super().__init__()
        self.context_fields = list(context_fields or [])
        self.values: Dict[str, Any] = {}

    def filter(self, record):
        parts = [f"{name}={self.values.get(name, '-')}" for name in self.context_fields]
        record.context = " | ".join(parts) or "-"
        return True


class LogFormatter(logging.Formatter):
    """控制台和文件共用的格式化器，控制台为终端时按级别着色"""

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt: str = DEFAULT_FORMAT, use_color: bool = False):
        super().__init__(fmt, DATE_FORMAT)
        self.use_color = use_color

    def format(self, record):
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        color = self.COLORS.get(levelname) if self.use_color else None
        if color:
            record.levelname = f"{color}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def _rotating_file_handler(config: LogConfig, path: Path) -> logging.Handler:
    return logging.handlers.RotatingFileHandler(
        path, maxBytes=config.max_bytes, backupCount=config.backup_count, encoding='utf-8'
    )


def _timed_file_handler(config: LogConfig, path: Path) -> logging.Handler:
    return logging.handlers.TimedRotatingFileHandler(
        path, when='midnight', backupCount=config.backup_count, encoding='utf-8'
    )


def _plain_file_handler(config: LogConfig, path: Path) -> logging.Handler:
    return logging.FileHandler(path, encoding='utf-8')


FILE_HANDLERS: Dict[str, Callable[[LogConfig, Path], logging.Handler]] = {
    'size': _rotating_file_handler,
    'date': _timed_file_handler,
    'none': _plain_file_handler,
}


class LoggerManager:
    """
    日志管理器（单例）

    持有当前配置和上下文过滤器。initialize() 可以重复调用，
    每次都会替换根记录器上的全部处理器。
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            instance = super().__new__(cls)
            instance.config = None
            instance.context_filter = ContextFilter()
            cls._instance = instance
        return cls._instance

    def initialize(self, config: Optional[LogConfig] = None):
        """
        按配置重建根记录器的处理器

        Args:
            config: 日志配置对象，None 时从环境变量加载
        """
        self.config = config or log_config_from_dict(None)
        self.context_filter.context_fields = list(self.config.context_fields)

        root = logging.getLogger()
        root.setLevel(_parse_level(self.config.level))
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        for handler in self._build_handlers():
            # 挂在处理器上，子记录器传播上来的记录也会经过过滤器
            handler.addFilter(self.context_filter)
            root.addHandler(handler)

        for name, level in self.config.logger_levels.items():
            logging.getLogger(name).setLevel(_parse_level(level))

    def _build_handlers(self) -> List[logging.Handler]:
        config = self.config
        handlers = []

        if config.enable_console:
            console = logging.StreamHandler(sys.stdout)
            console.setFormatter(LogFormatter(config.format_string, use_color=sys.stdout.isatty()))
            handlers.append(console)

        if config.enable_file:
            log_dir = Path(config.log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)
            factory = FILE_HANDLERS.get(config.rotation_type, _plain_file_handler)
            file_handler = factory(config, log_dir / config.log_file)
            file_handler.setFormatter(LogFormatter(config.format_string))
            handlers.append(file_handler)

        if config.enable_journal:
            if HAS_JOURNAL:
                handlers.append(JournalHandler(SYSLOG_IDENTIFIER='socks-puppet'))
            else:
                print("警告: 未安装 systemd-python，忽略 enable_journal", file=sys.stderr)

        return handlers

    def add_context(self, **kwargs):
        self.context_filter.values.update(kwargs)

    def clear_context(self):
        self.context_filter.values.clear()


def setup_logging(config: Optional[LogConfig] = None) -> LoggerManager:
    """初始化日志系统（便捷函数）"""
    manager = LoggerManager()
    manager.initialize(config)
    return manager


def add_context(**kwargs):
    """
    添加上下文信息（便捷函数）

    Args:
        **kwargs: 上下文键值对，例如 listen="0.0.0.0:1080"
    """
    LoggerManager().add_context(**kwargs)


def clear_context():
    """清除上下文信息（便捷函数）"""
    LoggerManager().clear_context()
