"""
成对项：将若干 (核, 滤波器) 组合成一个作用于分布 Q 的算子

message_i(l) = Σ_k μ_k( Σ_{j≠i} k_k(i, j) Q_j )(l)

自身对 (i, i) 总是被排除。
"""
import torch
from enum import Enum
from typing import List, Sequence

from ..lattice import PermutohedralLattice
from .compatibility import PottsCompatibility
from .kernels import KernelSpec, exact_affinity


class NormalizationType(Enum):
    """
    滤波结果的归一化方式（仅影响均场求解）

    NO_NORMALIZATION:    不归一化（默认，近似误差较大）
    NORMALIZE_BEFORE:    滤波前归一化（仅为完整性保留）
    NORMALIZE_AFTER:     滤波后归一化（NIPS 2011 原始方式）
    NORMALIZE_SYMMETRIC: 前后各归一化一次（ICML 2013，近似误差低且保持 CRF 的对称性）

    注意：归一化方式会改变均场不动点所最小化的能量，
    不同方式的结果之间能量不可直接比较。
    """

    NO_NORMALIZATION = "NO_NORMALIZATION"
    NORMALIZE_BEFORE = "NORMALIZE_BEFORE"
    NORMALIZE_AFTER = "NORMALIZE_AFTER"
    NORMALIZE_SYMMETRIC = "NORMALIZE_SYMMETRIC"

    @classmethod
    def parse(cls, value) -> "NormalizationType":
        """接受枚举成员或其名称，其他值一律拒绝"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value in cls.__members__:
            return cls[value]
        allowed = ", ".join(cls.__members__)
        raise ValueError(f"Allowed values: NormalizationType={{{allowed}}}, got {value!r}")

    @property
    def normalizes_before(self) -> bool:
        return self in (NormalizationType.NORMALIZE_BEFORE, NormalizationType.NORMALIZE_SYMMETRIC)

    @property
    def normalizes_after(self) -> bool:
        return self in (NormalizationType.NORMALIZE_AFTER, NormalizationType.NORMALIZE_SYMMETRIC)


class _KernelBase:
    """单个核的滤波：前归一化 -> Σ_j k(i, j) v_j -> 减去自身 -> 后归一化"""

    def __init__(
        self,
        spec: KernelSpec,
        normalization: NormalizationType,
        device: str = "cpu",
    ):
        self.spec = spec
        self.normalization = NormalizationType.parse(normalization)
        self.device = device
        self.compatibility = PottsCompatibility(spec.weight)
        self.norm = None

    def _init_norm(self):
        ones = torch.ones(self.spec.num_sites, dtype=torch.float64, device=self.device)
        if self.normalization is NormalizationType.NO_NORMALIZATION:
            self.norm = ones
            return
        # 归一化因子包含自身对
        total = self._convolve(ones)
        if self.normalization is NormalizationType.NORMALIZE_SYMMETRIC:
            self.norm = 1.0 / torch.sqrt(total + 1e-20)
        else:
            self.norm = 1.0 / (total + 1e-20)

    def _convolve(self, values: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def filter(self, Q: torch.Tensor, normalize: bool = True) -> torch.Tensor:
        """
        Args:
            Q: (N, K) 分布
            normalize: False 时跳过归一化（用于能量计算）

        Returns:
            filtered: (N, K) Σ_{j≠i} k(i, j) Q_j（按归一化方式缩放）
        """
        norm = self.norm.unsqueeze(1)
        values = Q * norm if normalize and self.normalization.normalizes_before else Q
        out = self._convolve(values) - values
        if normalize and self.normalization.normalizes_after:
            out = out * norm
        return out

    def apply(self, Q: torch.Tensor, normalize: bool = True) -> torch.Tensor:
        """滤波后经过标签兼容性，得到 (N, K) 消息"""
        return self.compatibility.apply(self.filter(Q, normalize=normalize))


class DenseKernel(_KernelBase):
    """基于 permutohedral lattice 的近似核"""

    def __init__(
        self,
        spec: KernelSpec,
        normalization: NormalizationType = NormalizationType.NO_NORMALIZATION,
        device: str = "cpu",
        debug: bool = False,
        resolution: int = 1,
    ):
        super().__init__(spec, normalization, device)
        self.lattice = PermutohedralLattice(
            spec.features, device=device, debug=debug, resolution=resolution
        )
        self._init_norm()

    def _convolve(self, values: torch.Tensor) -> torch.Tensor:
        return self.lattice.compute(values)


class ExactKernel(_KernelBase):
    """逐对求和的精确核，O(N^2)，仅用于验证和小规模输入"""

    def __init__(
        self,
        spec: KernelSpec,
        normalization: NormalizationType = NormalizationType.NO_NORMALIZATION,
        device: str = "cpu",
        chunk_size: int = 1024,
    ):
        super().__init__(spec, normalization, device)
        self.chunk_size = chunk_size
        self.features = torch.from_numpy(spec.features).to(device)
        self._init_norm()

    def _convolve(self, values: torch.Tensor) -> torch.Tensor:
        is_vector = values.dim() == 1
        flat = values.reshape(values.shape[0], -1)
        out = torch.empty_like(flat)
        n = self.features.shape[0]
        for start in range(0, n, self.chunk_size):
            stop = min(start + self.chunk_size, n)
            block = exact_affinity(self.features[start:stop], self.features)
            out[start:stop] = block @ flat
        return out.reshape(-1) if is_vector else out


class PairwisePotential:
    """
    成对项算子 apply(Q) -> message

    权重为 0 的核被跳过；若所有核权重为 0，则消息恒为 0（退化为仅 unary 的优化）。
    """

    def __init__(
        self,
        kernels: Sequence[KernelSpec],
        normalization: NormalizationType = NormalizationType.NO_NORMALIZATION,
        device: str = "cpu",
        exact: bool = False,
        chunk_size: int = 1024,
        debug: bool = False,
        resolution: int = 1,
    ):
        """
        Args:
            kernels: 核列表
            normalization: 归一化方式
            device: 计算设备
            exact: True 时使用逐对求和的精确核（不使用 lattice）
            chunk_size: 精确核的分块大小
            debug: 是否打印 lattice 信息
            resolution: lattice 分辨率（见 PermutohedralLattice）
        """
        self.normalization = NormalizationType.parse(normalization)
        self.device = device
        self.exact = exact
        self.resolution = resolution
        self.kernels: List[_KernelBase] = []
        for spec in kernels:
            if spec.weight == 0:
                continue
            if exact:
                kernel = ExactKernel(spec, self.normalization, device, chunk_size)
            else:
                kernel = DenseKernel(
                    spec, self.normalization, device, debug=debug, resolution=resolution
                )
            self.kernels.append(kernel)

    @property
    def is_empty(self) -> bool:
        return len(self.kernels) == 0

    def apply(self, Q: torch.Tensor, normalize: bool = True) -> torch.Tensor:
        """
        Args:
            Q: (N, K) 分布
            normalize: False 时使用未归一化的滤波（即能量本身对应的消息）

        Returns:
            message: (N, K)
        """
        message = torch.zeros_like(Q)
        for kernel in self.kernels:
            message = message + kernel.apply(Q, normalize=normalize)
        return message
