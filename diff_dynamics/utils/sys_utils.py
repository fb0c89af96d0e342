# 实验输出与日志：创建输出目录、保存参数，按模块（simulation / backprop）配置多格式日志器，
# 记录每步的仿真状态、约束数量以及雅可比组装耗时（record_mean），支持终端表格、文本文件与TensorBoard
import os
import uuid
import sys
import warnings
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, TextIO, Tuple, Union
import datetime
import numpy as np
import torch
from matplotlib import pyplot as plt

try:
    from torch.utils.tensorboard import SummaryWriter
except ImportError:
    SummaryWriter = None

DEBUG = 10
INFO = 20
WARN = 30
ERROR = 40
DISABLED = 50


def prepare_output_and_logger(all_args, need_logger=False, format_strings=None):
    """
    创建输出目录并保存全部参数；need_logger为True时为每个模块建立独立日志器
    Args:
        all_args: 全部参数（字典，含sys_args / world_args / scene_args）
        need_logger: 是否创建日志器
        format_strings: 日志格式，默认 ["stdout", "tensorboard"]
    Returns:
        all_args: 补充了output_path的参数
        loggers: {模块名: Logger}
    """
    if not all_args['sys_args']['output_path']:
        unique_str = os.getenv('OAR_JOB_ID') or str(uuid.uuid4())
        all_args['sys_args']['output_path'] = os.path.join("./output", unique_str[0:10])

    print("Output folder: {}".format(all_args['sys_args']['output_path']))
    os.makedirs(all_args['sys_args']['output_path'], exist_ok=True)
    with open(os.path.join(all_args['sys_args']['output_path'], "all_args"), 'w') as args_log_f:
        args_log_f.write(str(all_args))

    loggers = {}
    if need_logger:
        if format_strings is None:
            format_strings = ["stdout", "tensorboard"]
        formatted_time = datetime.datetime.fromtimestamp(time.time()).strftime("%Y-%m-%d_%H-%M-%S")
        logs_dir = os.path.join(all_args['sys_args']['output_path'], "logs", formatted_time)
        os.makedirs(logs_dir, exist_ok=True)
        print("log_dir:", logs_dir)
        for module_name in ["simulation", "backprop"]:
            loggers[module_name] = configure_logger(os.path.join(logs_dir, module_name), format_strings)

    return all_args, loggers


class Figure(object):
    """matplotlib图表，记录后可选择关闭"""

    def __init__(self, figure: plt.figure, close: bool):
        self.figure = figure
        self.close = close


class KVWriter(object):
    """键值对写入器接口"""

    def write(
        self,
        key_values: Dict[str, Any],
        key_excluded: Dict[str, Union[str, Tuple[str, ...]]],
        step: int = 0,
    ) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class HumanOutputFormat(KVWriter):
    """
    终端/文本文件的表格输出（图表只写入TensorBoard，这里跳过），debug/info/warn等文本日志逐行追加：
    ---------------------------------
    | backprop_snapshot/           |        |
    |    pos_vel                   | 0.0021 |
    ---------------------------------
    """

    def __init__(self, filename_or_file: Union[str, TextIO], max_length: int = 36):
        self.max_length = max_length
        if isinstance(filename_or_file, str):
            self.file = open(filename_or_file, "wt")
            self.own_file = True
        else:
            assert hasattr(filename_or_file, "write"), f"Expected file or str, got {filename_or_file}"
            self.file = filename_or_file
            self.own_file = False

    def write(self, key_values: Dict, key_excluded: Dict, step: int = 0) -> None:
        key2str = []
        tag = None
        tags = set()
        for (key, value), (_, excluded) in zip(sorted(key_values.items()), sorted(key_excluded.items())):
            if excluded is not None and ("stdout" in excluded or "log" in excluded):
                continue
            if isinstance(value, Figure):
                continue
            if isinstance(value, float):
                value_str = f"{value:<8.3g}"
            elif isinstance(value, torch.Tensor) and value.numel() == 1:
                value_str = f"{value.item():<8.3g}"
            else:
                value_str = str(value)

            # "a/b"按前缀分组显示
            if key.find("/") > 0:
                tag = key[: key.find("/") + 1]
                if tag not in tags:
                    tags.add(tag)
                    key2str.append((self._truncate(tag), ""))
            if tag is not None and tag in key:
                key = str("   " + key[len(tag):])
            key2str.append((self._truncate(key), self._truncate(value_str)))

        if len(key2str) == 0:
            warnings.warn("Tried to write empty key-value dict")
            return
        keys, vals = list(zip(*key2str))
        key_width = max(map(len, keys))
        val_width = max(map(len, vals))

        dashes = "-" * (key_width + val_width + 7)
        lines = [dashes]
        for key, value in key2str:
            key_space = " " * (key_width - len(key))
            val_space = " " * (val_width - len(value))
            lines.append(f"| {key}{key_space} | {value}{val_space} |")
        lines.append(dashes)
        self.file.write("\n".join(lines) + "\n")
        self.file.flush()

    def _truncate(self, string: str) -> str:
        if len(string) > self.max_length:
            string = string[: self.max_length - 3] + "..."
        return string

    def write_text(self, words: List[str]) -> None:
        self.file.write(" ".join(words) + "\n")
        self.file.flush()

    def close(self) -> None:
        if self.own_file:
            self.file.close()


class TensorBoardOutputFormat(KVWriter):
    """标量、文本与matplotlib图表写入TensorBoard"""

    def __init__(self, folder: str):
        assert SummaryWriter is not None, (
            "tensorboard is not installed, you can use "
            "pip install tensorboard to do so"
        )
        self.writer = SummaryWriter(log_dir=folder)

    def write(
        self,
        key_values: Dict[str, Any],
        key_excluded: Dict[str, Union[str, Tuple[str, ...]]],
        step: int = 0,
    ) -> None:
        for (key, value), (_, excluded) in zip(sorted(key_values.items()), sorted(key_excluded.items())):
            if excluded is not None and "tensorboard" in excluded:
                continue
            if isinstance(value, str):
                self.writer.add_text(key, value, step)
            elif isinstance(value, (np.ScalarType, torch.Tensor)):
                self.writer.add_scalar(key, value, step)
            elif isinstance(value, Figure):
                self.writer.add_figure(key, value.figure, step, close=value.close)
        self.writer.flush()

    def close(self) -> None:
        if self.writer:
            self.writer.close()
            self.writer = None


def make_output_format(_format: str, log_dir: str, log_suffix: str = "") -> KVWriter:
    os.makedirs(log_dir, exist_ok=True)
    if _format == "stdout":
        return HumanOutputFormat(sys.stdout)
    elif _format == "log":
        return HumanOutputFormat(os.path.join(log_dir, f"log{log_suffix}.txt"))
    elif _format == "tensorboard":
        return TensorBoardOutputFormat(log_dir)
    else:
        raise ValueError(f"Unknown format specified: {_format}")


class Logger(object):
    """
    多格式日志器：
    record 覆盖式记录，record_mean 累计平均（用于雅可比组装耗时），dump 写出并清空；
    debug/info/warn/error 按级别输出文本（约束求解器回退时调用warn）
    """

    def __init__(self, folder: Optional[str], output_formats: List[KVWriter]):
        self.name_to_value = defaultdict(float)
        self.name_to_count = defaultdict(int)
        self.name_to_excluded = defaultdict(str)
        self.level = INFO
        self.dir = folder
        self.output_formats = output_formats

    def record(
        self,
        key: str,
        value: Any,
        exclude: Optional[Union[str, Tuple[str, ...]]] = None,
    ) -> None:
        self.name_to_value[key] = value
        self.name_to_excluded[key] = exclude

    def record_mean(
        self,
        key: str,
        value: Any,
        exclude: Optional[Union[str, Tuple[str, ...]]] = None,
    ) -> None:
        if value is None:
            self.name_to_value[key] = None
            return
        old_val, count = self.name_to_value[key], self.name_to_count[key]
        self.name_to_value[key] = old_val * count / (count + 1) + value / (count + 1)
        self.name_to_count[key] = count + 1
        self.name_to_excluded[key] = exclude

    def get_value(self, key: str) -> Any:
        return self.name_to_value.get(key)

    def dump(self, step: int = 0) -> None:
        if self.level == DISABLED:
            return
        for _format in self.output_formats:
            if isinstance(_format, KVWriter):
                _format.write(self.name_to_value, self.name_to_excluded, step)
        self.name_to_value.clear()
        self.name_to_count.clear()
        self.name_to_excluded.clear()

    def log(self, *args, level: int = INFO) -> None:
        if self.level <= level:
            self._do_log(args)

    def debug(self, *args) -> None:
        self.log(*args, level=DEBUG)

    def info(self, *args) -> None:
        self.log(*args, level=INFO)

    def warn(self, *args) -> None:
        self.log(*args, level=WARN)

    def error(self, *args) -> None:
        self.log(*args, level=ERROR)

    def set_level(self, level: int) -> None:
        self.level = level

    def get_dir(self) -> str:
        return self.dir

    def close(self) -> None:
        for _format in self.output_formats:
            _format.close()

    def _do_log(self, args) -> None:
        for _format in self.output_formats:
            if isinstance(_format, HumanOutputFormat):
                _format.write_text([str(arg) for arg in args])


def configure_logger(folder: str, format_strings: List[str] = None) -> Logger:
    """
    Args:
        folder: 日志目录
        format_strings: 如 ["stdout", "log", "tensorboard"]
    """
    assert isinstance(folder, str)
    os.makedirs(folder, exist_ok=True)
    format_strings = list(filter(None, format_strings or ["stdout"]))
    output_formats = [make_output_format(f, folder) for f in format_strings]

    logger = Logger(folder=folder, output_formats=output_formats)
    if len(format_strings) > 0 and format_strings != ["stdout"]:
        logger.log(f"Logging to {folder}")
    return logger


def plot_trajectory(times, values, labels, title=""):
    """把若干自由度随时间的曲线画成一张图，返回可记录的Figure"""
    figure = plt.figure()
    values = np.asarray(values)
    for column, label in enumerate(labels):
        plt.plot(times, values[:, column], label=label)
    plt.xlabel("time (s)")
    plt.title(title)
    plt.legend()
    return Figure(figure, close=True)
