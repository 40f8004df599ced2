"""
求解器配置
"""
import numbers
from typing import Any, Dict, List

from ..pairwise import NormalizationType
from ..utils.config import settings_from_yaml


class DenseCRFConfig:
    """
    Dense CRF 求解配置

    非法配置在求解开始前被拒绝（ValueError），从不静默截断。
    """

    def __init__(
        self,
        # smoothness 核（仅位置）
        gaussian_x_stddev: float = 3.0,
        gaussian_y_stddev: float = 3.0,
        gaussian_weight: float = 1.0,
        # appearance 核（位置 + 颜色）
        bilateral_x_stddev: float = 60.0,
        bilateral_y_stddev: float = 60.0,
        bilateral_r_stddev: float = 10.0,
        bilateral_g_stddev: float = 10.0,
        bilateral_b_stddev: float = 10.0,
        bilateral_weight: float = 1.0,
        # 迭代
        iterations: int = 100,
        # TRW-S：成对代价低于此阈值的边不加入图（限制内存，能量不再精确）
        min_pairwise_cost: float = 0.0,
        # 仅均场使用
        normalization: NormalizationType | str = NormalizationType.NO_NORMALIZATION,
        # 其他参数
        debug: bool = False,
        device: str = "cpu",
        chunk_size: int = 1024,
        print_interval: int = 10,
        # lattice 分辨率（1 为经典滤波器，增大时近似收敛到精确高斯）
        lattice_resolution: int = 1,
    ):
        self.gaussian_x_stddev = gaussian_x_stddev
        self.gaussian_y_stddev = gaussian_y_stddev
        self.gaussian_weight = gaussian_weight
        self.bilateral_x_stddev = bilateral_x_stddev
        self.bilateral_y_stddev = bilateral_y_stddev
        self.bilateral_r_stddev = bilateral_r_stddev
        self.bilateral_g_stddev = bilateral_g_stddev
        self.bilateral_b_stddev = bilateral_b_stddev
        self.bilateral_weight = bilateral_weight
        self.iterations = iterations
        self.min_pairwise_cost = min_pairwise_cost
        self.normalization = normalization
        self.debug = bool(debug)
        self.device = device
        self.chunk_size = chunk_size
        self.print_interval = print_interval
        self.lattice_resolution = lattice_resolution

    @property
    def normalization(self) -> NormalizationType:
        return self._normalization

    @normalization.setter
    def normalization(self, value):
        """接受枚举成员或其名称，非法值立即抛出 ValueError"""
        self._normalization = NormalizationType.parse(value)

    BANDWIDTH_FIELDS = (
        'gaussian_x_stddev',
        'gaussian_y_stddev',
        'bilateral_x_stddev',
        'bilateral_y_stddev',
        'bilateral_r_stddev',
        'bilateral_g_stddev',
        'bilateral_b_stddev',
    )
    WEIGHT_FIELDS = ('gaussian_weight', 'bilateral_weight')

    def errors(self) -> List[str]:
        """收集所有配置错误"""
        errors = []
        for name in self.BANDWIDTH_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, numbers.Real) or not value > 0:
                errors.append(f"{name} 必须 > 0，当前值: {value}")
        for name in self.WEIGHT_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, numbers.Real) or not value >= 0:
                errors.append(f"{name} 必须 >= 0，当前值: {value}")
        if not isinstance(self.iterations, numbers.Integral) or self.iterations < 0:
            errors.append(f"iterations 必须为非负整数，当前值: {self.iterations}")
        if not isinstance(self.min_pairwise_cost, numbers.Real) or not self.min_pairwise_cost >= 0:
            errors.append(f"min_pairwise_cost 必须 >= 0，当前值: {self.min_pairwise_cost}")
        if not isinstance(self.chunk_size, numbers.Integral) or self.chunk_size < 1:
            errors.append(f"chunk_size 必须为正整数，当前值: {self.chunk_size}")
        if not isinstance(self.print_interval, numbers.Integral) or self.print_interval < 1:
            errors.append(f"print_interval 必须为正整数，当前值: {self.print_interval}")
        resolution = self.lattice_resolution
        if isinstance(resolution, bool) or not isinstance(resolution, numbers.Integral) or resolution < 1:
            errors.append(f"lattice_resolution 必须为正整数，当前值: {resolution}")
        return errors

    def validate(self) -> "DenseCRFConfig":
        """验证配置，非法时抛出 ValueError（列出全部问题）"""
        errors = self.errors()
        if errors:
            raise ValueError("Invalid DenseCRF configuration:\n  " + "\n  ".join(errors))
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'gaussian_x_stddev': self.gaussian_x_stddev,
            'gaussian_y_stddev': self.gaussian_y_stddev,
            'gaussian_weight': self.gaussian_weight,
            'bilateral_x_stddev': self.bilateral_x_stddev,
            'bilateral_y_stddev': self.bilateral_y_stddev,
            'bilateral_r_stddev': self.bilateral_r_stddev,
            'bilateral_g_stddev': self.bilateral_g_stddev,
            'bilateral_b_stddev': self.bilateral_b_stddev,
            'bilateral_weight': self.bilateral_weight,
            'iterations': self.iterations,
            'min_pairwise_cost': self.min_pairwise_cost,
            'normalization': self.normalization.name,
            'debug': self.debug,
            'device': self.device,
            'chunk_size': self.chunk_size,
            'print_interval': self.print_interval,
            'lattice_resolution': self.lattice_resolution,
        }

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "DenseCRFConfig":
        """从扁平字典构建（未知字段被拒绝）"""
        known = set(cls().to_dict())
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"未知的配置字段: {unknown}")
        return cls(**values)

    @classmethod
    def from_yaml(cls, config: Dict[str, Any]) -> "DenseCRFConfig":
        """从分节的 YAML 配置（kernels / solver / runtime）构建"""
        return cls.from_dict(settings_from_yaml(config))

    def copy(self, **overrides) -> "DenseCRFConfig":
        values = self.to_dict()
        values.update(overrides)
        return DenseCRFConfig.from_dict(values)

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self.to_dict().items())
        return f"DenseCRFConfig({fields})"
