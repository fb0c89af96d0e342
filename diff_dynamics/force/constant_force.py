# 恒力（大小和方向不随时间变化的力）的具体实现
from .base import Force


class Constant_Force(Force):
    """
    恒定力：在[starttime, endtime]内保持“方向×大小”不变，例如机器人末端的恒定推力
    """

    def __init__(self, direction, magnitude, starttime=0.0, endtime=1e5):
        super().__init__(direction, magnitude, starttime, endtime)

    def force_function(self):
        return self.direction * self.magnitude
