"""
DenseCRF：持有图像、unary、配置与当前分割结果的入口类

用法：
    crf = DenseCRF(image, unary)
    crf.config.iterations = 10
    labels = crf.meanfield()
    print(crf.energy, crf.solver)
"""
import numpy as np
from typing import Callable, Dict, Optional, Tuple

from .solver import (
    DenseCRFConfig,
    EnergyFunction,
    check_image,
    check_labeling,
    check_unary,
    exact_meanfield_inference,
    meanfield_inference,
    trws_inference,
)
from .utils.layout import color_stack
from .utils.log import log_time


class DenseCRF:
    """
    全连接 CRF

    标签为 0-based。给 segmentation 赋值时会验证形状和取值，
    并在 compute_energy=True 时自动重新计算（近似）能量。
    """

    def __init__(
        self,
        image: np.ndarray,
        unary: np.ndarray,
        config: Optional[DenseCRFConfig] = None,
    ):
        """
        Args:
            image: (H, W, C) 图像
            unary: (H, W, K) 代价表
            config: 配置（缺省使用默认值）
        """
        self.config = config or DenseCRFConfig()
        self.unary = unary
        self.image = image

        self.compute_energy = True
        self.solver = ''
        self.energy = float('nan')
        self.lower_bound = float('nan')
        self.report: Dict = {}
        self._segmentation = None

    # ------------------------------------------------------------------
    # 属性
    # ------------------------------------------------------------------

    @property
    def image(self) -> np.ndarray:
        return self._image

    @image.setter
    def image(self, image: np.ndarray):
        height, width = self.unary.shape[:2]
        self._image = check_image(image, height, width, debug=self.config.debug)
        self.image_stacked = color_stack(self._image)

    @property
    def unary(self) -> np.ndarray:
        return self._unary

    @unary.setter
    def unary(self, unary: np.ndarray):
        unary = check_unary(unary)
        if unary.ndim != 3:
            raise ValueError(f"unary 应为 (H, W, K)，当前形状: {unary.shape}")
        self._unary = unary.astype(np.float32)
        self.unary_stacked = color_stack(self._unary)

    @property
    def image_size(self) -> Tuple[int, int, int]:
        """(H, W, K)"""
        return self._unary.shape

    @property
    def num_labels(self) -> int:
        return self._unary.shape[2]

    @property
    def segmentation(self) -> Optional[np.ndarray]:
        return self._segmentation

    @segmentation.setter
    def segmentation(self, segmentation):
        self._segmentation = check_labeling(segmentation, self.image_size[:2], self.num_labels)

        if self.compute_energy:
            self.calculate_energy()
        else:
            self.energy = float('nan')

        self.lower_bound = float('nan')
        self.solver = ''

    def energy_function(self) -> EnergyFunction:
        return EnergyFunction(self._unary, self._image, self.config)

    # ------------------------------------------------------------------
    # 求解器
    # ------------------------------------------------------------------

    def _store(self, labeling: np.ndarray, report: Dict, solver: str) -> np.ndarray:
        """保存求解结果，能量直接取自求解报告"""
        compute_energy = self.compute_energy
        self.compute_energy = False
        try:
            self.segmentation = labeling
        finally:
            self.compute_energy = compute_energy

        self.energy = report['energy']
        self.lower_bound = report.get('lower_bound', float('nan'))
        self.report = report
        self.solver = solver

        if self.config.debug:
            log_time(f"{solver}: energy={self.energy:.6f}")
        return labeling

    def threshold(self) -> np.ndarray:
        """逐站点 unary 最小值（不考虑成对项）"""
        labeling = np.argmin(self._unary, axis=2).astype(np.int64)
        self.segmentation = labeling
        self.solver = 'threshold'
        return labeling

    def meanfield(self, cancel_check: Optional[Callable[[], bool]] = None) -> np.ndarray:
        labeling, report = meanfield_inference(self._unary, self._image, self.config, cancel_check)
        return self._store(labeling, report, 'meanfield')

    def exact_meanfield(self, cancel_check: Optional[Callable[[], bool]] = None) -> np.ndarray:
        """不使用 lattice 的均场（O(N^2)，很慢）"""
        labeling, report = exact_meanfield_inference(self._unary, self._image, self.config, cancel_check)
        return self._store(labeling, report, 'exact meanfield')

    def trws(self, cancel_check: Optional[Callable[[], bool]] = None) -> Tuple[np.ndarray, float, float]:
        """
        Returns:
            segmentation: (H, W) 标签
            energy: 截断图上的能量
            lower_bound: 下界
        """
        labeling, report = trws_inference(self._unary, self._image, self.config, cancel_check)
        self._store(labeling, report, 'trws')
        return labeling, self.energy, self.lower_bound

    # ------------------------------------------------------------------
    # 能量
    # ------------------------------------------------------------------

    def calculate_energy(self) -> float:
        """当前分割的近似能量（与均场一致的滤波路径）"""
        if self._segmentation is None:
            raise ValueError("尚无分割结果")
        self.energy = self.energy_function().approximate(self._segmentation)
        return self.energy

    def calculate_exact_energy(self) -> Tuple[float, float]:
        """
        逐对求和的精确能量（非常慢）

        Returns:
            exact_energy: 精确能量
            approximate_energy: 近似能量（同时写入 self.energy）
        """
        if self._segmentation is None:
            raise ValueError("尚无分割结果")
        energies = self.energy_function().compute(self._segmentation, with_exact=True)
        self.energy = energies['approximate']
        return energies['exact'], energies['approximate']

    def random_solution(self, seed: Optional[int] = None) -> np.ndarray:
        """随机生成一个分割（每个站点均匀采样标签）"""
        rng = np.random.default_rng(seed)
        labeling = rng.integers(0, self.num_labels, size=self.image_size[:2])
        self.segmentation = labeling
        return self._segmentation

    def __repr__(self) -> str:
        height, width, num_labels = self.image_size
        return (
            f"DenseCRF(size={height}x{width}, labels={num_labels}, "
            f"solver={self.solver!r}, energy={self.energy:.6g})"
        )
