import os
from typing import Any

import yaml

# 项目根目录：相对路径的配置文件都以此为基准
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def load_config(section=None, file_path=None, optional: bool = False) -> Any:
    """
    加载 YAML 配置文件，并返回指定部分配置
    :param section: 配置块名称，例如 'prototap'
    :param file_path: 配置文件路径（相对项目根目录，或绝对路径）
    :param optional: 为 True 时文件/配置块缺失返回 {}，否则抛异常
    """
    config_file = file_path if os.path.isabs(file_path) else os.path.join(PROJECT_ROOT, file_path)
    if optional and not os.path.exists(config_file):
        return {}
    with open(config_file, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}
    if not section:
        return config
    if optional:
        return config.get(section) or {}
    return config[section]
