"""
标签兼容性

Potts 形式，但采用 -[a == b] 而非常见的 +[a != b]：
相同标签的站点对获得负的代价（奖励），不同标签的站点对代价为 0。
能量值依赖此符号约定，修改会改变所有求解器报告的能量。
"""
import numpy as np
import torch


class PottsCompatibility:
    """μ(a, b) = -weight * [a == b]"""

    def __init__(self, weight: float = 1.0):
        if weight < 0:
            raise ValueError(f"Potts weight 必须 >= 0，当前: {weight}")
        self.weight = float(weight)

    def apply(self, filtered: torch.Tensor) -> torch.Tensor:
        """
        将兼容性作用于滤波后的分布

        Args:
            filtered: (N, K) 每个站点、每个标签的滤波结果 Σ_j k(i, j) Q_j(l)

        Returns:
            message: (N, K) Σ_j k(i, j) Σ_l' μ(l, l') Q_j(l')
        """
        return -self.weight * filtered

    def pair_cost(self, label_a, label_b):
        """逐元素计算 μ(a, b)"""
        same = np.asarray(label_a) == np.asarray(label_b)
        return np.where(same, -self.weight, 0.0)

    def matrix(self, num_labels: int) -> np.ndarray:
        """(K, K) 兼容性矩阵"""
        return -self.weight * np.eye(num_labels)
