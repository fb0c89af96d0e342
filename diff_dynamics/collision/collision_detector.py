""" 碰撞检测：遍历世界中所有刚体对（按世界顺序 i < j，A=第i个刚体，B=第j个刚体），生成Contact记录：
1. 顶点-平面：长方体/细杆的顶点落在平面外侧contact_margin以内即为接触，接触点为顶点世界坐标；
   A提供顶点 → VERTEX_FACE（法向=平面法向）；A提供平面 → FACE_VERTEX（法向=-平面法向），法向总是从B指向A；
2. 棱-棱：两根细杆中心线的最近距离在contact_margin以内即为接触，
   A的棱存入edgeB槽位、B的棱存入edgeA槽位，法向=edgeADir × edgeBDir（必要时翻转edgeBDir使其从B指向A），
   接触点为两条直线最近点的中点。
不同骨架的刚体两两检测；同一骨架仅在开启自碰撞时检测非相邻刚体。 """
import warnings
import torch

from diff_dynamics.collision.contact import Contact, ContactType
from diff_dynamics.collision.shapes import PlaneShape, SegmentShape
from diff_dynamics.utils.geometry_utils import get_contact_point, transform_point


def closest_points_between_segments(p1, q1, p2, q2):
    """
    两条线段 [p1, q1]、[p2, q2] 上的最近点
    Returns:
        (线段1上的最近点, 线段2上的最近点)
    """
    d1 = q1 - p1
    d2 = q2 - p2
    r = p1 - p2
    a = float(torch.dot(d1, d1))
    e = float(torch.dot(d2, d2))
    f = float(torch.dot(d2, r))
    c = float(torch.dot(d1, r))
    b = float(torch.dot(d1, d2))
    denom = a * e - b * b

    s = min(max((b * f - c * e) / denom, 0.0), 1.0) if denom > 1e-15 else 0.0
    t = (b * s + f) / e
    if t < 0.0:
        t = 0.0
        s = min(max(-c / a, 0.0), 1.0)
    elif t > 1.0:
        t = 1.0
        s = min(max((b - c) / a, 0.0), 1.0)
    return p1 + d1 * s, p2 + d2 * t


class CollisionDetector(object):
    def __init__(self, contact_margin=1e-3):
        """
        Args:
            contact_margin (float): 接触距离阈值（大于0，保证微小扰动下接触集合不变）
        """
        self.contact_margin = contact_margin

    def should_collide(self, body_a, body_b):
        if body_a.shape is None or body_b.shape is None:
            return False
        # 两个都不能动的刚体（如两块焊接的地面）不需要接触约束
        if not body_a.ancestor_dof_indices and not body_b.ancestor_dof_indices:
            return False
        if body_a.skeleton is body_b.skeleton:
            return body_a.skeleton.enable_self_collision and not body_a.is_adjacent(body_b)
        return True

    def detect(self, world):
        """
        Args:
            world (World): 世界
        Returns:
            list[Contact]: 按刚体对顺序排列的接触列表
        """
        bodies = world.get_body_nodes()
        contacts = []
        for i, body_a in enumerate(bodies):
            for body_b in bodies[i + 1:]:
                if self.should_collide(body_a, body_b):
                    contacts += self.collide(body_a, body_b)
        return contacts

    def collide(self, body_a, body_b):
        shape_a, shape_b = body_a.shape, body_b.shape
        if isinstance(shape_a, PlaneShape) and isinstance(shape_b, PlaneShape):
            return []
        if isinstance(shape_b, PlaneShape):
            return self.collide_vertices_plane(body_a, body_b, vertex_owner_is_a=True)
        if isinstance(shape_a, PlaneShape):
            return self.collide_vertices_plane(body_b, body_a, vertex_owner_is_a=False)
        if isinstance(shape_a, SegmentShape) and isinstance(shape_b, SegmentShape):
            return self.collide_segments(body_a, body_b)
        warnings.warn(f"Unsupported shape pair {shape_a} / {shape_b}, no contacts generated")
        return []

    def collide_vertices_plane(self, vertex_body, plane_body, vertex_owner_is_a):
        """
        顶点-平面检测
        Args:
            vertex_body: 提供顶点的刚体
            plane_body: 提供平面的刚体
            vertex_owner_is_a (bool): 顶点刚体是否为接触的A侧
        """
        plane_normal, plane_point = plane_body.shape.get_world_plane(plane_body.get_world_transform())
        T = vertex_body.get_world_transform()
        contacts = []
        for local_vertex in vertex_body.shape.get_local_vertices():
            vertex = transform_point(T, local_vertex)
            distance = float(torch.dot(plane_normal, vertex - plane_point))
            if distance > self.contact_margin:
                continue
            if vertex_owner_is_a:
                contacts.append(Contact(vertex, plane_normal, ContactType.VERTEX_FACE,
                                        vertex_body, plane_body, penetration_depth=-distance))
            else:
                contacts.append(Contact(vertex, -plane_normal, ContactType.FACE_VERTEX,
                                        plane_body, vertex_body, penetration_depth=-distance))
        return contacts

    def collide_segments(self, body_a, body_b):
        """棱-棱检测（A的棱存入edgeB槽位，B的棱存入edgeA槽位）"""
        T_a, T_b = body_a.get_world_transform(), body_b.get_world_transform()
        a0, a1 = [transform_point(T_a, p) for p in body_a.shape.get_local_segment()]
        b0, b1 = [transform_point(T_b, p) for p in body_b.shape.get_local_segment()]
        closest_a, closest_b = closest_points_between_segments(a0, a1, b0, b1)
        gap = closest_a - closest_b
        distance = float(torch.linalg.norm(gap))
        if distance > self.contact_margin:
            return []

        edge_a_dir = (b1 - b0) / torch.linalg.norm(b1 - b0)
        edge_b_dir = (a1 - a0) / torch.linalg.norm(a1 - a0)
        normal = torch.cross(edge_a_dir, edge_b_dir, dim=0)
        normal_norm = float(torch.linalg.norm(normal))
        if normal_norm < 1e-9:
            warnings.warn(f"Parallel edges between {body_a.name} and {body_b.name}, edge-edge contact skipped")
            return []
        normal = normal / normal_norm

        direction = gap if distance > 1e-9 else T_a[:3, 3] - T_b[:3, 3]
        if float(torch.dot(normal, direction)) < 0.0:
            edge_b_dir = -edge_b_dir
            normal = -normal

        point = get_contact_point(b0, edge_a_dir, a0, edge_b_dir)
        return [Contact(point, normal, ContactType.EDGE_EDGE, body_a, body_b, penetration_depth=-distance,
                        edge_a_fixed_point=b0, edge_a_dir=edge_a_dir,
                        edge_b_fixed_point=a0, edge_b_dir=edge_b_dir)]
