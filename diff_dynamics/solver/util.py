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
# 盒约束LCP求解的工具函数：张量/数组转换、边界展开、互补条件校验
#
import numpy as np


def print_header(msg):
    print('===>', msg)


def to_np(t):
    """
    张量转float64 numpy数组（None/空张量/普通张量）
    """
    if t is None:
        return None
    if isinstance(t, np.ndarray):
        return t.astype(np.float64)
    if t.nelement() == 0:
        return np.zeros(tuple(t.shape), dtype=np.float64)
    return t.detach().cpu().numpy().astype(np.float64)


def effective_bounds(x, lo, hi, findex):
    """
    摩擦行（findex ≥ 0）的实际上下界为 lo·|x[findex]|、hi·|x[findex]|，其余行直接使用lo/hi
    Args:
        x: 当前解
        lo, hi: 名义上下界
        findex: 摩擦行对应的法向行序号（-1表示普通行）
    Returns:
        (lower, upper)
    """
    lower = np.array(lo, dtype=np.float64)
    upper = np.array(hi, dtype=np.float64)
    findex = np.asarray(findex, dtype=np.int64)
    friction = findex >= 0
    if np.any(friction):
        scale = np.abs(x[findex[friction]])
        lower[friction] = lower[friction] * scale
        upper[friction] = upper[friction] * scale
    return lower, upper


def check_lcp_solution(A, b, x, lo, hi, findex, tol):
    """
    校验盒约束LCP的解：w = A x - b，
    x在下界 → w ≥ 0；x在上界 → w ≤ 0；x严格在区间内 → w = 0
    Args:
        tol: 绝对容差（内部按 1 + max|b| 放大）
    Returns:
        bool: 是否满足全部互补条件
    """
    if x is None or not np.all(np.isfinite(x)):
        return False
    scaled_tol = tol * (1.0 + (np.max(np.abs(b)) if b.size else 0.0))
    w = A @ x - b
    lower, upper = effective_bounds(x, lo, hi, findex)
    for i in range(x.shape[0]):
        if x[i] < lower[i] - scaled_tol or x[i] > upper[i] + scaled_tol:
            return False
        at_lower = x[i] <= lower[i] + scaled_tol
        at_upper = x[i] >= upper[i] - scaled_tol
        if at_lower and at_upper:
            continue
        if at_lower and w[i] < -scaled_tol:
            return False
        if at_upper and w[i] > scaled_tol:
            return False
        if not at_lower and not at_upper and abs(w[i]) > scaled_tol:
            return False
    return True
