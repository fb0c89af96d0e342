# 自由度（DegreeOfFreedom）：关节中的一个标量广义坐标，状态本身存放在所属骨架的位置/速度/力向量中
import math


class DegreeOfFreedom(object):
    """
    单个自由度：记录它在关节内的序号、在骨架内的序号，以及位置上下限
    位置/速度/力都通过所属骨架读写（骨架持有连续存储的状态向量）
    """

    def __init__(self, joint, index_in_joint):
        """
        Args:
            joint (Joint): 所属关节
            index_in_joint (int): 在关节内的序号
        """
        self.joint = joint
        self.index_in_joint = index_in_joint
        self.index_in_skeleton = None
        self.position_lower_limit = -math.inf
        self.position_upper_limit = math.inf

    @property
    def name(self):
        return f"{self.joint.name}_{self.index_in_joint}"

    def get_joint(self):
        return self.joint

    def get_skeleton(self):
        return self.joint.skeleton

    def get_child_body_node(self):
        return self.joint.child_body_node

    def get_index_in_joint(self):
        return self.index_in_joint

    def get_index_in_skeleton(self):
        return self.index_in_skeleton

    def get_index_in_tree(self):
        return self.joint.index_in_tree

    def get_tree_index(self):
        return self.joint.tree_index

    def get_position(self):
        return self.get_skeleton().get_positions()[self.index_in_skeleton]

    def set_position(self, value):
        self.get_skeleton().set_position(self.index_in_skeleton, value)

    def get_velocity(self):
        return self.get_skeleton().get_velocities()[self.index_in_skeleton]

    def set_velocity(self, value):
        self.get_skeleton().set_velocity(self.index_in_skeleton, value)

    def set_position_limits(self, lower, upper):
        """
        设置位置上下限（由JointLimitConstraint在越限时生成约束）
        Args:
            lower (float): 下限
            upper (float): 上限
        """
        if lower > upper:
            raise ValueError(f"Lower limit {lower} is above upper limit {upper} for {self.name}")
        self.position_lower_limit = float(lower)
        self.position_upper_limit = float(upper)

    def has_position_limits(self):
        return math.isfinite(self.position_lower_limit) or math.isfinite(self.position_upper_limit)

    def __repr__(self):
        return f"DegreeOfFreedom({self.name})"
