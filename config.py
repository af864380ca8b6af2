"""
toy-socks5 - 配置管理模块
加载和保存配置文件，管理服务器配置。

版本: 1.0.0

功能概述:
本模块提供了配置管理功能，包括：
1. 服务器配置数据类
2. 从配置字典构建并校验服务器配置
3. YAML 配置文件的加载和保存

配置文件格式（config.yaml）:
    server:
      host: 127.0.0.1
      port: 1081
      global_mode: false
      buffer_size: 32768
      connect_timeout: null
    logging:
      level: INFO
"""

import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

from protocol import DEFAULT_PORT, SOCKS_VERSION

logger = logging.getLogger('toy-socks5-config')

GLOBAL_HOST = "0.0.0.0"


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class ServerConfig:
    """
    服务器配置数据类

    Attributes:
        host: 服务器监听地址（默认: "127.0.0.1"）
        port: 服务器监听端口（默认: 1081）
        global_mode: 是否监听所有网络接口（默认: False）
        socks_version: 协议版本号，传给编解码器（默认: 5）
        buffer_size: 转发时每次读取的最大字节数（默认: 32768）
        connect_timeout: 连接目标主机的超时时间（秒，默认: None 表示不限制）
        backlog: 监听队列长度（默认: 100）
    """
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    global_mode: bool = False
    socks_version: int = SOCKS_VERSION
    buffer_size: int = 32768
    connect_timeout: Optional[float] = None
    backlog: int = 100

    def __post_init__(self):
        if not 0 <= int(self.port) <= 65535:
            raise ValueError(f"端口超出范围: {self.port}")
        if int(self.buffer_size) <= 0:
            raise ValueError(f"缓冲区大小必须大于 0: {self.buffer_size}")
        if self.connect_timeout is not None and float(self.connect_timeout) <= 0:
            raise ValueError(f"连接超时必须大于 0: {self.connect_timeout}")
        self.port = int(self.port)
        self.buffer_size = int(self.buffer_size)
        self.backlog = int(self.backlog)
        self.socks_version = int(self.socks_version)
        if self.connect_timeout is not None:
            self.connect_timeout = float(self.connect_timeout)

    @property
    def bind_host(self) -> str:
        """实际监听地址，全局模式下监听所有接口"""
        return GLOBAL_HOST if self.global_mode else self.host

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ServerConfig':
        """
        从配置字典构建服务器配置

        未知的配置项会被忽略并记录警告。

        Args:
            data: 配置文件中 server 部分的字典

        Returns:
            ServerConfig: 服务器配置对象

        Raises:
            ValueError: 配置值不合法
        """
        data = data or {}
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                logger.warning(f"忽略未知的配置项: server.{key}")
        return cls(**{k: v for k, v in data.items() if k in known})


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

    将配置数据保存到 YAML 格式的配置文件中

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
