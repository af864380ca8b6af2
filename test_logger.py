#!/usr/bin/env python3
"""
日志管理测试

测试内容:
1. 会话上下文在并发任务之间相互隔离
2. 上下文过滤器和格式化器
3. 环境变量覆盖配置文件
4. LoggerManager 初始化和调整级别
"""

import asyncio
import logging

import pytest

from logger import (
    ContextFilter,
    LogConfig,
    LogFormatter,
    LoggerManager,
    add_context,
    clear_context,
    get_context,
)


def _record(message='hello'):
    return logging.LogRecord('toy-socks5-test', logging.INFO, __file__, 1, message, None, None)


def test_context_is_isolated_between_tasks():
    async def session(peer, session_id):
        add_context(peer=peer, session_id=session_id)
        await asyncio.sleep(0.01)
        return get_context()

    async def main():
        return await asyncio.gather(
            session('127.0.0.1:1000', 1),
            session('127.0.0.1:2000', 2),
        )

    first, second = asyncio.run(main())
    assert first == {'peer': '127.0.0.1:1000', 'session_id': 1}
    assert second == {'peer': '127.0.0.1:2000', 'session_id': 2}


def test_clear_context():
    add_context(peer='x')
    clear_context()
    assert get_context() == {}


def test_context_filter_fills_missing_fields():
    clear_context()
    add_context(peer='10.0.0.1:5000')
    record = _record()

    assert ContextFilter(['peer', 'session_id']).filter(record)
    assert record.context == 'peer=10.0.0.1:5000 | session_id=-'
    clear_context()


def test_formatter_without_filter():
    formatter = LogFormatter(fmt='[%(context)s] %(levelname)s %(message)s')
    assert formatter.format(_record()) == '[-] INFO hello'


def test_colored_formatter_restores_levelname():
    record = _record()
    text = LogFormatter(fmt='%(levelname)s', use_color=True).format(record)
    assert '\033[32m' in text
    assert record.levelname == 'INFO'


def test_environment_overrides_config_section(monkeypatch):
    monkeypatch.setenv('LOG_LEVEL', 'WARNING')
    monkeypatch.setenv('LOG_ENABLE_FILE', 'true')
    config = LogConfig.from_sources({'level': 'DEBUG', 'log_file': 'proxy.log'})

    assert config.level == 'WARNING'
    assert config.enable_file is True
    assert config.log_file == 'proxy.log'
    assert config.context_fields == ['peer', 'session_id']


def test_config_section_used_without_environment(monkeypatch):
    for name in ('LOG_LEVEL', 'LOG_ENABLE_CONSOLE'):
        monkeypatch.delenv(name, raising=False)
    config = LogConfig.from_sources({'level': 'ERROR', 'enable_console': False})
    assert config.level == 'ERROR'
    assert config.enable_console is False


@pytest.fixture
def manager():
    manager = LoggerManager()
    yield manager
    root = logging.getLogger()
    for handler in manager.handlers:
        root.removeHandler(handler)
        handler.close()
    manager.handlers = []


def test_manager_is_singleton():
    assert LoggerManager() is LoggerManager()


def test_manager_writes_file_with_context(manager, tmp_path):
    manager.initialize(LogConfig(
        log_dir=str(tmp_path), log_file='proxy.log',
        enable_console=False, enable_file=True, rotation_type='none'
    ))

    clear_context()
    add_context(peer='127.0.0.1:1234', session_id=7)
    logging.getLogger('toy-socks5-session').info("接受连接")
    clear_context()
    for handler in manager.handlers:
        handler.flush()

    content = (tmp_path / 'proxy.log').read_text(encoding='utf-8')
    assert 'peer=127.0.0.1:1234 | session_id=7' in content
    assert '接受连接' in content


def test_manager_set_level(manager):
    manager.initialize(LogConfig(level='INFO', enable_console=True))
    assert manager.level == logging.INFO

    manager.set_level(logging.DEBUG)
    assert logging.getLogger().level == logging.DEBUG
    assert all(handler.level == logging.DEBUG for handler in manager.handlers)


def test_reinitialize_replaces_handlers(manager):
    manager.initialize(LogConfig(enable_console=True))
    manager.initialize(LogConfig(enable_console=True))
    assert len(manager.handlers) == 1
    assert sum(h in logging.getLogger().handlers for h in manager.handlers) == 1
