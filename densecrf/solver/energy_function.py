"""
能量函数

E(l) = Σ_i unary[i, l_i] + Σ_{i<j} Σ_k w_k exp(-|f_i^k - f_j^k|^2 / 2) μ(l_i, l_j)
μ(a, b) = -[a == b]

两种计算方式：
- 近似：通过 lattice 滤波（与均场相同的路径），继承其近似误差
- 精确：对所有无序站点对逐一求和，O(N^2)，仅用于验证和小规模输入

只有一个标签时不存在任何标签选择，成对项定义为 0，能量即 unary 之和。
"""
import numpy as np
import torch
from typing import Dict, Optional, Sequence

from ..pairwise import (
    KernelSpec,
    NormalizationType,
    PairwisePotential,
    build_kernels,
    kernel_affinity_block,
)
from .config import DenseCRFConfig
from .validation import check_image, check_labeling, check_unary


def _flatten(unary: np.ndarray, labeling) -> tuple:
    unary = check_unary(unary)
    num_labels = unary.shape[-1]
    labels = check_labeling(labeling, unary.shape[:-1], num_labels)
    return unary.reshape(-1, num_labels), labels.reshape(-1)


def one_hot(labels: np.ndarray, num_labels: int, device: str = "cpu") -> torch.Tensor:
    """(N,) 标签 -> (N, K) one-hot 分布"""
    Q = torch.zeros(len(labels), num_labels, dtype=torch.float64, device=device)
    Q[torch.arange(len(labels), device=device), torch.from_numpy(labels).to(device)] = 1.0
    return Q


def unary_energy(unary: np.ndarray, labeling) -> float:
    """Σ_i unary[i, l_i]"""
    unary, labels = _flatten(unary, labeling)
    return float(unary[np.arange(len(labels)), labels].sum())


def approximate_pairwise_energy(
    labels: np.ndarray,
    pairwise: PairwisePotential,
    num_labels: int,
) -> float:
    """
    通过滤波计算成对能量：0.5 * Σ_i message_i(l_i)

    使用未归一化、排除自身对的滤波；有序对被计数两次，因此乘 0.5。
    """
    if num_labels == 1 or pairwise.is_empty or len(labels) == 0:
        return 0.0
    Q = one_hot(labels, num_labels, device=pairwise.device)
    message = pairwise.apply(Q, normalize=False)
    index = torch.from_numpy(labels).to(pairwise.device)
    picked = message.gather(1, index.unsqueeze(1))
    return 0.5 * float(picked.sum().item())


def approximate_energy(
    unary: np.ndarray,
    labeling,
    kernels: Optional[Sequence[KernelSpec]] = None,
    pairwise: Optional[PairwisePotential] = None,
    device: str = "cpu",
    resolution: int = 1,
) -> float:
    """
    近似能量（与均场一致的滤波路径）

    误差界（成对项部分，相对于 exact_energy）：
    - resolution = 1：经典 lattice 的核总质量偏低一个与 D 有关的常数因子，
      D=2 时成对能量约低 12%，D=5 时约低 30%（见 densecrf.lattice.permutohedral），
      缩小带宽或加密采样不会减小该误差。
    - resolution = m > 1：核的相对误差为 O(1/m)，m -> ∞ 时近似能量收敛到精确能量；
      稠密网格上 m = 21 时成对能量的相对误差在 3% 以内。

    Args:
        unary: (H, W, K) 或 (N, K)
        labeling: (H, W) 或 (N,)
        kernels: 核列表（未提供 pairwise 时用于构建 lattice）
        pairwise: 可复用的成对算子（避免重复构建 lattice）
        resolution: 构建 lattice 时使用的分辨率（提供 pairwise 时忽略）
    """
    unary, labels = _flatten(unary, labeling)
    num_labels = unary.shape[1]
    energy = float(unary[np.arange(len(labels)), labels].sum())

    if pairwise is None:
        if kernels is None:
            raise ValueError("approximate_energy 需要 kernels 或 pairwise")
        if num_labels == 1:
            return energy
        pairwise = PairwisePotential(
            kernels,
            NormalizationType.NO_NORMALIZATION,
            device=device,
            resolution=resolution,
        )

    return energy + approximate_pairwise_energy(labels, pairwise, num_labels)


def exact_pairwise_energy(
    labels: np.ndarray,
    kernels: Sequence[KernelSpec],
    num_labels: int,
    chunk_size: int = 1024,
    device: str = "cpu",
) -> float:
    """
    逐对求和的精确成对能量：Σ_{i<j} Σ_k w_k k_k(i, j) μ(l_i, l_j)
    """
    num_sites = len(labels)
    if num_labels == 1 or num_sites == 0 or all(k.weight == 0 for k in kernels):
        return 0.0

    labels_t = torch.from_numpy(labels).to(device)
    columns = torch.arange(num_sites, device=device)
    total = 0.0
    for start in range(0, num_sites, chunk_size):
        stop = min(start + chunk_size, num_sites)
        block = kernel_affinity_block(kernels, start, stop, device=device)
        rows = columns[start:stop].unsqueeze(1)
        # 只统计无序对 (i < j)，μ 仅在同标签时非零
        mask = (columns.unsqueeze(0) > rows) & (labels_t[start:stop].unsqueeze(1) == labels_t.unsqueeze(0))
        total -= float(block[mask].sum().item())
    return total


def exact_energy(
    unary: np.ndarray,
    labeling,
    kernels: Sequence[KernelSpec],
    chunk_size: int = 1024,
    device: str = "cpu",
) -> float:
    """精确能量，O(N^2)"""
    unary, labels = _flatten(unary, labeling)
    energy = float(unary[np.arange(len(labels)), labels].sum())
    return energy + exact_pairwise_energy(labels, kernels, unary.shape[1], chunk_size, device)


def graph_energy(unary: np.ndarray, labeling, graph) -> float:
    """显式（可能截断的）成对图上的能量"""
    unary, labels = _flatten(unary, labeling)
    energy = float(unary[np.arange(len(labels)), labels].sum())
    if unary.shape[1] == 1:
        return energy
    return energy + graph.pairwise_energy(labels)


class EnergyFunction:
    """
    能量函数

    组合：
    1. unary 项
    2. smoothness 核成对项
    3. appearance 核成对项
    """

    def __init__(
        self,
        unary: np.ndarray,
        image: np.ndarray,
        config: Optional[DenseCRFConfig] = None,
    ):
        """
        Args:
            unary: (H, W, K) 代价表
            image: (H, W, C) 特征网格
            config: 配置（核带宽与权重）
        """
        self.config = (config or DenseCRFConfig()).validate()
        self.unary = check_unary(unary)
        if self.unary.ndim != 3:
            raise ValueError(f"unary 应为 (H, W, K)，当前形状: {self.unary.shape}")
        height, width, self.num_labels = self.unary.shape
        self.image = check_image(image, height, width, debug=self.config.debug)
        self.kernels = build_kernels(self.image, self.config)
        self._pairwise = None

    @property
    def pairwise(self) -> PairwisePotential:
        """未归一化的成对算子（懒构建，lattice 只构建一次）"""
        if self._pairwise is None:
            self._pairwise = PairwisePotential(
                self.kernels,
                NormalizationType.NO_NORMALIZATION,
                device=self.config.device,
                debug=self.config.debug,
                resolution=self.config.lattice_resolution,
            )
        return self._pairwise

    def approximate(self, labeling) -> float:
        if self.num_labels == 1:
            return unary_energy(self.unary, labeling)
        return approximate_energy(self.unary, labeling, pairwise=self.pairwise)

    def exact(self, labeling) -> float:
        return exact_energy(
            self.unary,
            labeling,
            self.kernels,
            chunk_size=self.config.chunk_size,
            device=self.config.device,
        )

    def compute(self, labeling, with_exact: bool = False) -> Dict[str, float]:
        """
        Returns:
            energy_dict: 'unary', 'approximate'，以及可选的 'exact'
        """
        result = {
            'unary': unary_energy(self.unary, labeling),
            'approximate': self.approximate(labeling),
        }
        if with_exact:
            result['exact'] = self.exact(labeling)
        return result
