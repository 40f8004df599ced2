"""
输入与输出验证

所有形状 / 范围检查都在求解开始前完成，失败时抛出 ValueError。
"""
import numpy as np
from typing import Dict, Optional, Tuple

from ..utils.log import log_time


def check_unary(unary) -> np.ndarray:
    """
    检查 unary 代价表

    Args:
        unary: (H, W, K) 或 (N, K) 代价

    Returns:
        unary: float64 副本（形状不变）
    """
    unary = np.asarray(unary)
    if unary.ndim not in (2, 3):
        raise ValueError(f"unary 应为 (H, W, K) 或 (N, K)，当前形状: {unary.shape}")
    if unary.shape[-1] < 1:
        raise ValueError("unary 至少需要 1 个标签")
    if not np.issubdtype(unary.dtype, np.number):
        raise ValueError(f"unary 必须为数值类型，当前 dtype: {unary.dtype}")
    unary = unary.astype(np.float64)
    if not np.all(np.isfinite(unary)):
        raise ValueError("unary 包含 NaN 或 inf")
    return unary


def check_image(image, height: int, width: int, debug: bool = False) -> np.ndarray:
    """
    检查特征网格（图像）

    非 uint8 图像会被转换（给出警告而非报错）。

    Args:
        image: (H, W, C) 或 (H, W)
        height, width: unary 的网格尺寸

    Returns:
        image: (H, W, C) uint8
    """
    image = np.asarray(image)
    if image.ndim == 2:
        image = image[:, :, None]
    if image.ndim != 3:
        raise ValueError(f"image 应为 (H, W, C)，当前形状: {image.shape}")
    if image.shape[:2] != (height, width):
        raise ValueError(
            f"image 尺寸 {image.shape[:2]} 与 unary 尺寸 {(height, width)} 不一致"
        )
    if image.dtype != np.uint8:
        if debug:
            log_time(f"⚠️  image 不是 uint8（{image.dtype}），进行转换")
        image = np.clip(np.round(image.astype(np.float64)), 0, 255).astype(np.uint8)
    return image


def check_labeling(
    labeling,
    shape: Tuple[int, ...],
    num_labels: int,
) -> np.ndarray:
    """
    检查标注

    Args:
        labeling: 标签索引数组
        shape: 期望形状（(H, W) 或 (N,)）
        num_labels: 标签数 K

    Returns:
        labeling: int64 数组
    """
    labeling = np.asarray(labeling)
    if labeling.shape != tuple(shape):
        raise ValueError(f"Segmentation must be of same size as image: {labeling.shape} != {tuple(shape)}")
    if labeling.size == 0:
        return labeling.astype(np.int64)
    if not np.issubdtype(labeling.dtype, np.integer):
        if not np.issubdtype(labeling.dtype, np.number) or np.any(np.round(labeling) != labeling):
            raise ValueError("Segmentation entries must be integers.")
    if labeling.min() < 0 or labeling.max() >= num_labels:
        raise ValueError(f"Segmentation entries should be 0,...,{num_labels - 1}.")
    return labeling.astype(np.int64)


def validate_segmentation_result(
    labeling: np.ndarray,
    unary: np.ndarray,
    energy: float,
    lower_bound: Optional[float] = None,
    tolerance: float = 1e-6,
) -> Tuple[bool, Dict]:
    """
    验证求解结果

    检查项：
    1. 标注形状与取值范围
    2. 能量为有限值
    3. 下界（若提供）不超过能量

    Returns:
        is_valid: 是否通过验证
        report: 详细统计信息
    """
    unary = np.asarray(unary)
    report = {
        'labels_valid': True,
        'energy_finite': bool(np.isfinite(energy)),
        'bound_consistent': True,
        'label_counts': {},
    }

    try:
        labels = check_labeling(labeling, unary.shape[:-1], unary.shape[-1])
    except ValueError:
        report['labels_valid'] = False
    else:
        values, counts = np.unique(labels, return_counts=True)
        report['label_counts'] = {int(v): int(c) for v, c in zip(values, counts)}

    if lower_bound is not None and np.isfinite(lower_bound):
        slack = tolerance * max(1.0, abs(energy))
        report['bound_consistent'] = bool(lower_bound <= energy + slack)
        report['gap'] = float(energy - lower_bound)

    is_valid = (
        report['labels_valid'] and
        report['energy_finite'] and
        report['bound_consistent']
    )
    return is_valid, report
