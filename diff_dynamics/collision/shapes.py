""" 碰撞形状：刚体的碰撞几何均定义在刚体坐标系下（原点即质心）
BoxShape：长方体，顶点与质量属性来自trimesh；
PlaneShape：无限大平面（半空间），由局部法向与沿法向的偏移确定；
SegmentShape：细杆，碰撞时只使用中心线段（两端点既是顶点，也构成一条棱）。 """
from abc import ABCMeta, abstractmethod
import numpy as np
import torch
import trimesh

from diff_dynamics.utils.geometry_utils import DTYPE


class Shape(metaclass=ABCMeta):
    """形状抽象基类"""

    @abstractmethod
    def get_local_vertices(self):
        """刚体坐标系下参与顶点-面检测的顶点（Tensor，形状[k, 3]）"""
        raise NotImplementedError

    def get_unit_inertia(self):
        """单位质量转动惯量（对角元素，形状[3]），None表示形状无法给出"""
        return None


class BoxShape(Shape):
    def __init__(self, size):
        """
        Args:
            size: 长方体三个方向的边长（长度3）
        """
        self.size = np.asarray(size, dtype=np.float64)
        if np.any(self.size <= 0):
            raise ValueError(f"Box size must be positive, got {size}")
        self.mesh = trimesh.creation.box(extents=self.size)
        self._vertices = torch.tensor(np.asarray(self.mesh.vertices), dtype=DTYPE)

    def get_local_vertices(self):
        return self._vertices

    def get_unit_inertia(self):
        # trimesh按密度1计算，除以体积即为单位质量惯量
        inertia = np.asarray(self.mesh.moment_inertia) / self.mesh.volume
        return torch.tensor(np.diag(inertia).copy(), dtype=DTYPE)

    def __repr__(self):
        return f"BoxShape(size={self.size.tolist()})"


class PlaneShape(Shape):
    def __init__(self, normal=(0.0, 0.0, 1.0), offset=0.0):
        """
        Args:
            normal: 刚体坐标系下的平面法向（指向平面外侧）
            offset: 平面沿法向距刚体原点的距离
        """
        normal = torch.as_tensor(normal, dtype=DTYPE)
        self.normal = normal / torch.linalg.norm(normal)
        self.offset = float(offset)

    def get_local_vertices(self):
        return torch.zeros((0, 3), dtype=DTYPE)

    def get_world_plane(self, world_transform):
        """
        Returns:
            (世界坐标系法向, 平面上一点)
        """
        R = world_transform[:3, :3]
        normal = R @ self.normal
        point = world_transform[:3, 3] + normal * self.offset
        return normal, point

    def __repr__(self):
        return f"PlaneShape(normal={self.normal.tolist()}, offset={self.offset})"


class SegmentShape(Shape):
    def __init__(self, length, radius=0.01):
        """
        Args:
            length: 杆长（沿刚体坐标系x轴，关于原点对称）
            radius: 仅用于计算转动惯量的杆半径，碰撞时按中心线处理
        """
        if length <= 0:
            raise ValueError(f"Segment length must be positive, got {length}")
        self.length = float(length)
        self.radius = float(radius)
        half = 0.5 * self.length
        self._vertices = torch.tensor([[-half, 0.0, 0.0], [half, 0.0, 0.0]], dtype=DTYPE)

    def get_local_vertices(self):
        return self._vertices

    def get_local_segment(self):
        """Returns: (起点, 终点)，刚体坐标系"""
        return self._vertices[0], self._vertices[1]

    def get_unit_inertia(self):
        axial = 0.5 * self.radius ** 2
        transverse = self.length ** 2 / 12.0 + 0.25 * self.radius ** 2
        return torch.tensor([axial, transverse, transverse], dtype=DTYPE)

    def __repr__(self):
        return f"SegmentShape(length={self.length})"
