# 接触记录：碰撞检测每个时间步为每个接触生成一条Contact，被可微接触约束按值拷贝保存（扰动世界状态后仍保持原值）
from enum import Enum
import torch

from diff_dynamics.utils.geometry_utils import DTYPE


class ContactType(Enum):
    """
    接触类型：约定法向从刚体B指向刚体A
    """
    # A提供平面，B提供顶点
    FACE_VERTEX = 0
    # A提供顶点，B提供平面
    VERTEX_FACE = 1
    # 棱-棱接触：edgeA/edgeB字段有效
    EDGE_EDGE = 2
    # 其它几何（或非接触约束），不计算几何梯度
    UNSUPPORTED = 3


class DofContactType(Enum):
    """
    某个自由度与某个接触之间的因果关系（由该自由度是A、B、两者还是都不是的运动学祖先推出）
    """
    NONE = 0
    VERTEX = 1
    FACE = 2
    EDGE_A = 3
    EDGE_B = 4
    VERTEX_FACE_SELF_COLLISION = 5
    EDGE_EDGE_SELF_COLLISION = 6
    UNSUPPORTED = 7


class Contact(object):
    def __init__(self, point, normal, contact_type, body_node_a, body_node_b, penetration_depth=0.0,
                 edge_a_fixed_point=None, edge_a_dir=None, edge_b_fixed_point=None, edge_b_dir=None):
        """
        Args:
            point: 世界坐标接触点（形状[3]）
            normal: 单位法向（形状[3]，从B指向A）
            contact_type (ContactType): 接触类型
            body_node_a, body_node_b (BodyNode): 接触的两个刚体
            penetration_depth (float): 穿透深度（>0表示穿透）
            edge_*: 仅EDGE_EDGE时有效的两条棱的固定点与方向（世界坐标）
        """
        if body_node_a is None or body_node_b is None:
            raise ValueError("A contact needs two body nodes")
        self.point = torch.as_tensor(point, dtype=DTYPE).detach().clone()
        self.normal = torch.as_tensor(normal, dtype=DTYPE).detach().clone()
        self.type = contact_type
        self.body_node_a = body_node_a
        self.body_node_b = body_node_b
        self.penetration_depth = float(penetration_depth)

        zero = torch.zeros(3, dtype=DTYPE)
        has_edges = contact_type == ContactType.EDGE_EDGE
        if has_edges and any(v is None for v in (edge_a_fixed_point, edge_a_dir, edge_b_fixed_point, edge_b_dir)):
            raise ValueError("EDGE_EDGE contacts need both edges")
        self.edge_a_fixed_point = torch.as_tensor(edge_a_fixed_point, dtype=DTYPE).clone() if has_edges else zero
        self.edge_a_dir = torch.as_tensor(edge_a_dir, dtype=DTYPE).clone() if has_edges else zero.clone()
        self.edge_b_fixed_point = torch.as_tensor(edge_b_fixed_point, dtype=DTYPE).clone() if has_edges else zero.clone()
        self.edge_b_dir = torch.as_tensor(edge_b_dir, dtype=DTYPE).clone() if has_edges else zero.clone()

    def copy(self):
        return Contact(
            self.point, self.normal, self.type, self.body_node_a, self.body_node_b, self.penetration_depth,
            self.edge_a_fixed_point, self.edge_a_dir, self.edge_b_fixed_point, self.edge_b_dir,
        )

    def __repr__(self):
        return (f"Contact(type={self.type.name}, A={self.body_node_a.name}, B={self.body_node_b.name}, "
                f"point={self.point.tolist()}, normal={self.normal.tolist()})")
