""" 刚体运动学的李群/李代数工具库：所有函数围绕 “齐次变换矩阵（4x4）” 与 “旋量（twist，6维，[角速度; 线速度]）” 展开，
为关节的指数积（product of exponentials）正运动学、世界坐标系旋量轴、接触几何的解析梯度提供底层运算：
1. 基本构造：skew / make_transform / inverse_transform / revolute_transform / prismatic_transform / euler_xyz_to_rotmat；
2. 伴随作用：AdT / AdT_matrix / ad / exp_map（旋量在坐标系间的变换、李括号、指数映射）；
3. 接触几何求导：gradient_wrt_theta / gradient_wrt_theta_pure_rotation（点、方向随旋量转动的一阶导数），
   get_contact_point / get_contact_point_gradient（两条棱最近点中点及其解析导数）。
全部基于torch（float64），不做原地写入，可直接被torch.autograd求导。 """
import math
import torch

DTYPE = torch.float64


def skew(w):
    """
    反对称矩阵：skew(w) @ x = w × x
    Args:
        w: 3维向量（Tensor，形状[3]）
    Returns:
        3x3反对称矩阵
    """
    zero = torch.zeros((), dtype=w.dtype, device=w.device)
    return torch.stack([
        torch.stack([zero, -w[2], w[1]]),
        torch.stack([w[2], zero, -w[0]]),
        torch.stack([-w[1], w[0], zero]),
    ])


def make_transform(rotation, translation):
    """由旋转矩阵与平移向量拼出4x4齐次变换矩阵"""
    top = torch.cat([rotation, translation.reshape(3, 1)], dim=1)
    bottom = torch.tensor([[0.0, 0.0, 0.0, 1.0]], dtype=rotation.dtype, device=rotation.device)
    return torch.cat([top, bottom], dim=0)


def identity_transform(device=None):
    return torch.eye(4, dtype=DTYPE, device=device)


def inverse_transform(T):
    """刚体变换求逆：[R p; 0 1]^-1 = [R^T -R^T p; 0 1]"""
    R = T[:3, :3]
    p = T[:3, 3]
    return make_transform(R.transpose(0, 1), -R.transpose(0, 1) @ p)


def revolute_transform(axis, q):
    """
    绕单位轴axis旋转角度q的齐次变换（Rodrigues公式闭式解，q=0处可导，不会出现0/0）
    Args:
        axis: 单位旋转轴（Tensor，形状[3]）
        q: 关节角（标量Tensor）
    Returns:
        4x4齐次变换矩阵（平移为0）
    """
    K = skew(axis)
    eye = torch.eye(3, dtype=axis.dtype, device=axis.device)
    R = eye + torch.sin(q) * K + (1.0 - torch.cos(q)) * (K @ K)
    return make_transform(R, torch.zeros(3, dtype=axis.dtype, device=axis.device))


def prismatic_transform(axis, q):
    """沿单位轴axis平移q的齐次变换"""
    eye = torch.eye(3, dtype=axis.dtype, device=axis.device)
    return make_transform(eye, axis * q)


def rotation_x(angle):
    c, s = math.cos(angle), math.sin(angle)
    return torch.tensor([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]], dtype=DTYPE)


def rotation_y(angle):
    c, s = math.cos(angle), math.sin(angle)
    return torch.tensor([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]], dtype=DTYPE)


def rotation_z(angle):
    c, s = math.cos(angle), math.sin(angle)
    return torch.tensor([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]], dtype=DTYPE)


def euler_xyz_to_rotmat(angles):
    """XYZ欧拉角 → 旋转矩阵（R = Rx @ Ry @ Rz，与FREE关节的转动顺序一致）"""
    return rotation_x(angles[0]) @ rotation_y(angles[1]) @ rotation_z(angles[2])


def AdT(T, V):
    """
    旋量的伴随变换：把旋量V从T的子坐标系表示变换到父坐标系
    公式：w' = R w；v' = p × (R w) + R v
    Args:
        T: 4x4齐次变换
        V: 旋量（Tensor，形状[6]，[角速度; 线速度]）
    Returns:
        变换后的旋量（形状[6]）
    """
    R = T[:3, :3]
    p = T[:3, 3]
    w = R @ V[:3]
    v = torch.cross(p, w, dim=0) + R @ V[3:]
    return torch.cat([w, v])


def AdT_matrix(T):
    """伴随变换的6x6矩阵形式：[[R, 0], [skew(p) R, R]]"""
    R = T[:3, :3]
    p = T[:3, 3]
    zeros = torch.zeros((3, 3), dtype=T.dtype, device=T.device)
    top = torch.cat([R, zeros], dim=1)
    bottom = torch.cat([skew(p) @ R, R], dim=1)
    return torch.cat([top, bottom], dim=0)


def ad(V1, V2):
    """
    李括号（adjoint action）：ad(V1, V2) = [w1 × w2; w1 × v2 + v1 × w2]
    用途：祖先自由度沿旋量V1扰动时，后代自由度的世界旋量轴V2的一阶变化量
    """
    w1, v1 = V1[:3], V1[3:]
    w2, v2 = V2[:3], V2[3:]
    return torch.cat([
        torch.cross(w1, w2, dim=0),
        torch.cross(w1, v2, dim=0) + torch.cross(v1, w2, dim=0),
    ])


def exp_map(V):
    """
    旋量的指数映射：exp([V]) → 4x4齐次变换（仅用于解析估计扰动后的几何，测试辅助）
    Args:
        V: 旋量（形状[6]）
    Returns:
        4x4齐次变换
    """
    w, v = V[:3], V[3:]
    theta = torch.linalg.norm(w)
    eye = torch.eye(3, dtype=V.dtype, device=V.device)
    if theta < 1e-12:
        return make_transform(eye, v)
    W = skew(w)
    W2 = W @ W
    A = torch.sin(theta) / theta
    B = (1.0 - torch.cos(theta)) / theta ** 2
    C = (theta - torch.sin(theta)) / theta ** 3
    R = eye + A * W + B * W2
    p = (eye + B * W + C * W2) @ v
    return make_transform(R, p)


def transform_point(T, point):
    return T[:3, :3] @ point + T[:3, 3]


def rotate_vector(T, direction):
    return T[:3, :3] @ direction


def gradient_wrt_theta(twist, point):
    """
    世界坐标系下固连在运动刚体上的点，在旋量twist方向转动θ时，d(exp([twist]θ)·point)/dθ 在θ=0处的值
    公式：w × p + v
    """
    return torch.cross(twist[:3], point, dim=0) + twist[3:]


def gradient_wrt_theta_pure_rotation(w, direction):
    """方向向量（不受平移影响）随角速度w转动的一阶导数：w × dir"""
    return torch.cross(w, direction, dim=0)


def _closest_line_params(pA, dA, pB, dB):
    """两条直线 pA + s·dA 与 pB + t·dB 最近点的参数(s, t)及中间量"""
    a = torch.dot(dA, dA)
    b = torch.dot(dA, dB)
    c = torch.dot(dB, dB)
    r = pA - pB
    d = torch.dot(dA, r)
    e = torch.dot(dB, r)
    den = a * c - b * b
    if torch.abs(den) < 1e-12 * max(float(a * c), 1e-300):
        raise ValueError("Edges are parallel, the edge-edge contact point is undefined")
    s = (b * e - c * d) / den
    t = (a * e - b * d) / den
    return s, t, (a, b, c, d, e, den, r)


def get_contact_point(pA, dA, pB, dB):
    """
    棱-棱接触点：两条（无限延长）棱的最近点连线的中点
    Args:
        pA, dA: 棱A上的固定点与方向
        pB, dB: 棱B上的固定点与方向
    Returns:
        接触点（形状[3]）
    Raises:
        ValueError: 两条棱平行时最近点不唯一
    """
    s, t, _ = _closest_line_params(pA, dA, pB, dB)
    return 0.5 * (pA + s * dA + pB + t * dB)


def get_contact_point_gradient(pA, dpA, dA, ddA, pB, dpB, dB, ddB):
    """
    get_contact_point 的解析方向导数（乘积法则 + 商法则）
    Args:
        pA, dpA: 棱A固定点及其导数
        dA, ddA: 棱A方向及其导数
        pB, dpB: 棱B固定点及其导数
        dB, ddB: 棱B方向及其导数
    Returns:
        接触点的导数（形状[3]）
    """
    s, t, (a, b, c, d, e, den, r) = _closest_line_params(pA, dA, pB, dB)
    da = 2.0 * torch.dot(dA, ddA)
    db = torch.dot(ddA, dB) + torch.dot(dA, ddB)
    dc = 2.0 * torch.dot(dB, ddB)
    dr = dpA - dpB
    dd = torch.dot(ddA, r) + torch.dot(dA, dr)
    de = torch.dot(ddB, r) + torch.dot(dB, dr)
    dden = da * c + a * dc - 2.0 * b * db

    s_num = b * e - c * d
    t_num = a * e - b * d
    ds = ((db * e + b * de - dc * d - c * dd) * den - s_num * dden) / (den * den)
    dt = ((da * e + a * de - db * d - b * dd) * den - t_num * dden) / (den * den)
    return 0.5 * (dpA + ds * dA + s * ddA + dpB + dt * dB + t * ddB)


def normalize_gradient(vector, gradient):
    """
    d(x/|x|) = (dx - x̂ (x̂·dx)) / |x|
    Args:
        vector: 未归一化向量x
        gradient: dx
    """
    norm = torch.linalg.norm(vector)
    unit = vector / norm
    return (gradient - unit * torch.dot(unit, gradient)) / norm
