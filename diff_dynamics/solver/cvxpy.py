#
# Copyright 2024 Max-Planck-Gesellschaft
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# ========================================================================
# 基于CVXPY的盒约束二次规划求解，作为PGS求解失败时的备用求解器
#

import cvxpy as cp
import numpy as np


def forward_single_np(Q, p, lower, upper):
    """
    求解单样本的盒约束二次规划：
        最小化：(1/2) * z^T * Q * z - p^T * z
        约束条件：lower ≤ z ≤ upper（无穷边界对应的约束省略）
    Q对称半正定时，其KKT条件即盒约束LCP：w = Q z - p 与 z 在盒边界上互补

    Args:
        Q (np.ndarray): 二次项系数矩阵（形状[nz, nz]，对称半正定）
        p (np.ndarray): 一次项系数向量（形状[nz,]）
        lower (np.ndarray): 下界（可含-inf）
        upper (np.ndarray): 上界（可含inf）

    Returns:
        tuple: (目标函数最优值, 最优解zhat)
    """
    nz = p.shape[0]
    z_ = cp.Variable(nz)
    Q = 0.5 * (Q + Q.T)
    obj = cp.Minimize(0.5 * cp.quad_form(z_, cp.psd_wrap(Q)) - p @ z_)

    cons = []
    finite_lower = np.isfinite(lower)
    finite_upper = np.isfinite(upper)
    if np.any(finite_lower):
        cons.append(z_[np.flatnonzero(finite_lower)] >= lower[finite_lower])
    if np.any(finite_upper):
        cons.append(z_[np.flatnonzero(finite_upper)] <= upper[finite_upper])

    prob = cp.Problem(obj, cons)
    prob.solve()
    if prob.status not in (cp.OPTIMAL, cp.OPTIMAL_INACCURATE):
        raise RuntimeError(f"QP求解失败，状态：{prob.status}")

    zhat = np.array(z_.value).ravel()
    return prob.value, zhat
