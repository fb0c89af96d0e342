import torch

from diff_dynamics.utils.geometry_utils import DTYPE


class Physical_Materials:
    """
    物理材料参数管理类：封装刚体的物理属性（恢复系数、摩擦系数、质量、单位质量转动惯量）
    所有参数存为torch.nn.Parameter（支持参数辨识时的自动微分），读取时经过取值范围映射
    """
    def __init__(self, requires_grad=False, device=None, mass=1.0, friction_coefficient=0.0,
                 restitution=0.0, inertia=None):
        """
        Args:
            requires_grad (bool): 是否对参数启用自动微分
            device (torch.device): 参数存储的设备
            mass (float): 质量
            friction_coefficient (float): 摩擦系数（>=0，0表示无摩擦、不生成切向约束）
            restitution (float): 恢复系数（[0,1]，仅记录，当前求解器不施加弹性碰撞）
            inertia: 单位质量转动惯量（3x3对角阵或长度3的对角元素），None则由刚体形状计算
        """
        self.requires_grad = requires_grad
        self.body_name = None
        self.device = device
        self.all = {}

        # 恢复系数：存logit值，读取时sigmoid映射到[0,1]
        self.all["restitution"] = torch.nn.Parameter(
            torch.tensor(0.0, dtype=DTYPE, device=self.device), requires_grad=self.requires_grad
        )
        # 摩擦系数：直接存储，读取时clip到>=0
        self.all["friction_coefficient"] = torch.nn.Parameter(
            torch.tensor(0.0, dtype=DTYPE, device=self.device), requires_grad=self.requires_grad
        )
        # 质量：读取时clip限制最小值
        self.all["mass"] = torch.nn.Parameter(
            torch.tensor(1.0, dtype=DTYPE, device=self.device), requires_grad=self.requires_grad
        )
        # 单位质量转动惯量：对角元素
        self.all["inertia"] = torch.nn.Parameter(
            0.1 * torch.ones((3), dtype=DTYPE, device=self.device), requires_grad=self.requires_grad
        )
        self.inertia_from_shape = inertia is None

        self.set_material("mass", mass)
        self.set_material("friction_coefficient", friction_coefficient)
        self.set_material("restitution", restitution)
        if inertia is not None:
            self.set_material("inertia", inertia)

    def set_material(self, material_name, value):
        """
        设置物理参数（反向应用取值映射，得到优化用的原始值）
        Args:
            material_name (str): "restitution"、"friction_coefficient"、"mass"、"inertia"
            value: 物理意义上的参数值
        """
        if material_name not in self.all:
            raise KeyError(f"Unknown material: {material_name}")
        if material_name == "restitution":
            value = min(max(float(value), 1e-9), 1.0 - 1e-9)
            self.all[material_name].data = torch.logit(torch.tensor(value, dtype=DTYPE, device=self.device))
        elif material_name == "friction_coefficient":
            if value < 0:
                raise ValueError(f"Friction coefficient must be non-negative, got {value}")
            self.all[material_name].data = torch.tensor(float(value), dtype=DTYPE, device=self.device)
        elif material_name == "mass":
            if value <= 0:
                raise ValueError(f"Mass must be positive, got {value}")
            self.all[material_name].data = torch.tensor(float(value), dtype=DTYPE, device=self.device)
        elif material_name == "inertia":
            value = torch.as_tensor(value, dtype=DTYPE, device=self.device)
            if value.dim() == 2:
                # 取3x3对角阵的对角元素
                value = torch.diagonal(value)
            self.all[material_name].data = value.clone()
            self.inertia_from_shape = False

    def get_material(self, material_name):
        """
        获取物理意义上的参数值
        Args:
            material_name (str): 参数名称
        Returns:
            torch.Tensor: 映射后的参数值（inertia返回3x3对角阵）
        """
        if material_name == "restitution":
            return torch.sigmoid(self.all[material_name])
        elif material_name == "friction_coefficient":
            return torch.clip(self.all[material_name], 0.0)
        elif material_name == "mass":
            return torch.clip(self.all[material_name], 1e-3)
        elif material_name == "inertia":
            return torch.diag(torch.clip(self.all[material_name], 1e-6))
        raise KeyError(f"Unknown material: {material_name}")

    def get_material_num(self):
        return len(self.all)

    def get_material_names(self):
        return self.all.keys()

    def get_original_json_dict(self):
        """导出原始参数（未映射）"""
        json_dict = {"body_name": self.body_name}
        for key in self.all.keys():
            json_dict[key] = self.all[key].tolist()
        return json_dict

    def get_activate_json_dict(self):
        """导出映射后的参数（可直接被load_all_physical_materials加载）"""
        json_dict = {"body_name": self.body_name}
        for key in self.all.keys():
            json_dict[key] = self.get_material(key).tolist()
        return json_dict

    def no_optimize(self, material_name):
        """关闭指定参数的自动微分"""
        self.all[material_name].requires_grad = False
