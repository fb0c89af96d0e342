# 外力抽象基类：定义作用在刚体上的外力（推力、恒力等）的通用结构与接口，重力由World统一处理，不经过这里
from abc import ABCMeta, abstractmethod
import torch

from diff_dynamics.utils.geometry_utils import DTYPE


class Force(metaclass=ABCMeta):
    """
    力的抽象基类：统一管理力的方向、大小、作用时间窗口
    作用在刚体上的力最终被转换成世界坐标系下的空间力旋量（[p × f; f]），再经刚体雅可比映射成广义力
    """

    def __init__(self, direction, magnitude=10.0, starttime=0.0, endtime=1e5):
        """
        Args:
            direction: 力的方向向量（世界坐标系，形状[3]）
            magnitude: 力的大小（标量）
            starttime: 开始作用时间
            endtime: 结束作用时间
        """
        self.direction = torch.as_tensor(direction, dtype=DTYPE)
        self.magnitude = magnitude
        self.starttime = starttime
        self.endtime = endtime

    def apply(self, cur_time):
        """
        根据当前仿真时间返回力向量：时间窗口外返回零向量
        Args:
            cur_time: 当前仿真时间
        Returns:
            力向量（形状[3]）
        """
        if cur_time < self.starttime or cur_time > self.endtime:
            return self.direction * 0
        else:
            return self.force_function()

    def get_wrench(self, cur_time, point):
        """
        作用在世界坐标点point上的空间力旋量 [point × f; f]
        Args:
            cur_time: 当前仿真时间
            point: 力的作用点（世界坐标，形状[3]，可带梯度）
        Returns:
            力旋量（形状[6]）
        """
        force = self.apply(cur_time).to(point.dtype)
        return torch.cat([torch.cross(point, force, dim=0), force])

    @abstractmethod
    def force_function(self, *args, **kwargs):
        """
        计算具体的力向量（由子类实现）
        """
        raise NotImplementedError
