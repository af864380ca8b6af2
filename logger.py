"""
toy-socks5 - 日志管理模块

版本: 1.0.0

功能概述:
本模块提供了代理服务器的日志管理功能，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、会话上下文）
4. 配置文件和环境变量支持
5. 可选的 systemd journal 输出

会话上下文（客户端地址、会话 ID）保存在 contextvars 中，
每个 asyncio 会话任务看到的都是自己的上下文。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from config import load_config

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"
DEFAULT_CONTEXT_FIELDS = ["peer", "session_id"]

_context: contextvars.ContextVar = contextvars.ContextVar('toy_socks5_log_context', default={})


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ('1', 'true', 'yes', 'on')


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        enable_journal: 是否输出到系统日志
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "toy-socks5.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"  # size, date, none
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: List[str] = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = list(DEFAULT_CONTEXT_FIELDS)

    @classmethod
    def from_sources(cls, section: Optional[Dict] = None) -> 'LogConfig':
        """
        从配置文件的 logging 部分和 LOG_* 环境变量构建日志配置

        环境变量优先于配置文件。

        Args:
            section: 配置文件中 logging 部分的字典

        Returns:
            LogConfig: 日志配置对象
        """
        section = section or {}
        defaults = cls()
        return cls(
            level=os.getenv('LOG_LEVEL', section.get('level', defaults.level)),
            log_dir=os.getenv('LOG_DIR', section.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', section.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', section.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', section.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', section.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', section.get('format_string', defaults.format_string)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', section.get('enable_console', defaults.enable_console)),
            enable_file=_env_bool('LOG_ENABLE_FILE', section.get('enable_file', defaults.enable_file)),
            enable_journal=_env_bool('LOG_ENABLE_JOURNAL', section.get('enable_journal', defaults.enable_journal)),
            context_fields=section.get('context_fields', list(DEFAULT_CONTEXT_FIELDS))
        )


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加 record.context 字段，格式如 "peer=127.0.0.1:50000 | session_id=3"
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []

    def filter(self, record):
        context_data = _context.get()
        context_parts = []
        for field in self.context_fields:
            value = context_data.get(field, "-")
            context_parts.append(f"{field}={value}")

        record.context = " | ".join(context_parts) or "-"
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 过滤器未安装时 context 字段可能不存在
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"

        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和配置（单例）
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self.handlers = []
            self._initialized = True

    def initialize(self, config: Optional[LogConfig] = None, config_file: Optional[str] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选）
            config_file: 配置文件路径（可选），读取其中的 logging 部分
        """
        if config:
            self.config = config
        elif config_file:
            self.config = LogConfig.from_sources(load_config(config_file).get('logging'))
        else:
            self.config = LogConfig.from_sources()

        self._setup_root_logger()

    @property
    def level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def set_level(self, level: int):
        """调整根日志记录器和所有处理器的级别（用于 --debug）"""
        logging.getLogger().setLevel(level)
        for handler in self.handlers:
            handler.setLevel(level)

    def _setup_root_logger(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self.level)

        for handler in self.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self.handlers = []

        self.context_filter = ContextFilter(self.config.context_fields)

        if self.config.enable_console:
            self._add_handler(root_logger, logging.StreamHandler(sys.stdout),
                              use_color=sys.stdout.isatty())

        if self.config.enable_file:
            self._add_handler(root_logger, self._create_file_handler(), use_color=False)

        if self.config.enable_journal and HAS_JOURNAL:
            self._add_handler(root_logger, JournalHandler(), formatter=False)

    def _create_file_handler(self) -> logging.Handler:
        """创建文件处理器（支持轮转）"""
        log_dir = Path(self.config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / self.config.log_file

        if self.config.rotation_type == 'size':
            return logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        if self.config.rotation_type == 'date':
            return logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        return logging.FileHandler(filename=log_file_path, encoding='utf-8')

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler,
                     use_color: bool = False, formatter: bool = True):
        handler.setLevel(self.level)
        # 过滤器挂在处理器上，子记录器传播上来的记录也会带上上下文
        handler.addFilter(self.context_filter)
        if formatter:
            handler.setFormatter(LogFormatter(
                fmt=self.config.format_string,
                datefmt='%Y-%m-%d %H:%M:%S',
                use_color=use_color
            ))
        logger.addHandler(handler)
        self.handlers.append(handler)


def get_logger(name: str) -> logging.Logger:
    """获取日志记录器（便捷函数）"""
    return logging.getLogger(name)


def add_context(**kwargs):
    """
    添加当前任务的上下文信息

    Args:
        **kwargs: 上下文键值对
    """
    data = dict(_context.get())
    data.update(kwargs)
    _context.set(data)


def clear_context():
    """清除当前任务的上下文信息"""
    _context.set({})


def get_context() -> Dict:
    """返回当前任务的上下文信息副本"""
    return dict(_context.get())
