""" 参数管理：命令行只读取配置文件路径（--config），配置文件为JSON，分为sys_args / world_args / scene_args；
world_args与默认值合并后得到结构化的World_args，直接用于构造World。 """
from argparse import ArgumentParser, Namespace
from typing import NamedTuple, Optional, Tuple
import argparse
import json


def config_parser():
    '''
    顶层命令行参数解析器（只有--config）
    '''
    parser = argparse.ArgumentParser(formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument('--config', required=True, help='config file path (JSON)')
    return parser


def load_config(config_path):
    """读取JSON配置，缺失的部分补为空字典"""
    with open(config_path, 'r') as config_file:
        config = json.load(config_file)
    for key in ("sys_args", "world_args", "scene_args"):
        config.setdefault(key, {})
    return config


def get_combined_args(args1, args2):
    '''
    用args2中已存在于args1的字段覆盖args1
    Args:
        args1: 基础参数（Namespace）
        args2: 覆盖参数（Namespace或dict）
    Returns:
        Namespace
    '''
    args1_dict = dict(vars(args1))
    args2_dict = args2 if isinstance(args2, dict) else vars(args2)
    for k, v in args2_dict.items():
        if k in args1_dict:
            args1_dict[k] = v
    return Namespace(**args1_dict)


class World_args(NamedTuple):
    '''
    World的构造参数
    '''
    dtime: float = 1e-3
    gravity: Tuple[float, float, float] = (0.0, 0.0, -9.81)
    contact_margin: float = 1e-3
    lcp_max_iterations: int = 1000
    lcp_tolerance: float = 1e-8
    device: Optional[str] = None


def get_world_args(world_args=None):
    '''
    把配置文件中的world_args与默认值合并
    Args:
        world_args: dict或Namespace，未知字段被忽略
    Returns:
        World_args
    '''
    parser = ArgumentParser(description="world parameters")
    defaults = World_args()
    for field in World_args._fields:
        parser.add_argument(f"--{field}", default=getattr(defaults, field))
    args = parser.parse_args([])
    if world_args is not None:
        args = get_combined_args(args, world_args)
    return World_args(
        dtime=float(args.dtime),
        gravity=tuple(float(g) for g in args.gravity),
        contact_margin=float(args.contact_margin),
        lcp_max_iterations=int(args.lcp_max_iterations),
        lcp_tolerance=float(args.lcp_tolerance),
        device=args.device,
    )
