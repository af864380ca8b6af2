#!/usr/bin/env python3
"""
配置管理测试

测试内容:
1. ServerConfig 默认值与校验
2. 从配置字典构建（未知配置项被忽略）
3. YAML 配置文件的加载和保存
4. 命令行参数覆盖配置文件
"""

import pytest

from config import GLOBAL_HOST, ServerConfig, load_config, save_config
from server import build_config, build_parser


def test_defaults():
    config = ServerConfig()
    assert config.host == '127.0.0.1'
    assert config.port == 1081
    assert config.socks_version == 5
    assert config.connect_timeout is None
    assert config.bind_host == '127.0.0.1'


def test_global_mode_listens_on_all_interfaces():
    config = ServerConfig(host='127.0.0.1', global_mode=True)
    assert config.bind_host == GLOBAL_HOST == '0.0.0.0'


def test_values_are_coerced():
    config = ServerConfig(port='2080', buffer_size='1024', connect_timeout='2.5')
    assert config.port == 2080
    assert config.buffer_size == 1024
    assert config.connect_timeout == 2.5


@pytest.mark.parametrize("kwargs", [
    {'port': 70000},
    {'port': -1},
    {'buffer_size': 0},
    {'connect_timeout': 0},
    {'port': 'abc'},
])
def test_invalid_values_are_rejected(kwargs):
    with pytest.raises(ValueError):
        ServerConfig(**kwargs)


def test_from_dict_ignores_unknown_keys(caplog):
    config = ServerConfig.from_dict({'port': 9050, 'password': 'secret'})
    assert config.port == 9050
    assert 'server.password' in caplog.text


def test_from_dict_accepts_none():
    assert ServerConfig.from_dict(None) == ServerConfig()


def test_load_and_save_yaml(tmp_path):
    path = tmp_path / 'config.yaml'
    data = {'server': {'host': '0.0.0.0', 'port': 1090}, 'logging': {'level': 'DEBUG'}}

    assert save_config(str(path), data)
    assert load_config(str(path)) == data


def test_load_missing_file_returns_empty_dict(tmp_path):
    assert load_config(str(tmp_path / 'missing.yaml')) == {}


def test_load_malformed_yaml_returns_empty_dict(tmp_path):
    path = tmp_path / 'broken.yaml'
    path.write_text('server: [port: 1\n', encoding='utf-8')
    assert load_config(str(path)) == {}


def test_save_to_missing_directory_fails(tmp_path):
    assert not save_config(str(tmp_path / 'no' / 'such' / 'dir.yaml'), {'server': {}})


def test_command_line_overrides_config_file():
    args = build_parser().parse_args(['--port', '2000', '--global'])
    config = build_config(args, {'server': {'host': '10.0.0.1', 'port': 1500, 'buffer_size': 4096}})

    assert config.port == 2000
    assert config.host == '10.0.0.1'
    assert config.buffer_size == 4096
    assert config.bind_host == '0.0.0.0'


def test_command_line_defaults_leave_config_file_values():
    args = build_parser().parse_args([])
    assert args.config == 'config.yaml'
    assert not args.global_mode and not args.debug

    config = build_config(args, {'server': {'port': 1500}})
    assert config.port == 1500
    assert not config.global_mode
