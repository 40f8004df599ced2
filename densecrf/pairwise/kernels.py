"""
高斯核构建

两个固定的核：
- smoothness：特征 = (x/σx, y/σy)
- appearance：特征 = (x/σx, y/σy, r/σr, g/σg, b/σb)

特征除以带宽后，滤波器隐式的单位方差高斯即为所配置的高斯。
"""
import numpy as np
import torch
from typing import List, Sequence

SMOOTHNESS = "smoothness"
APPEARANCE = "appearance"


class KernelSpec:
    """
    一个成对亲和规则：k(i, j) = weight * exp(-|f_i - f_j|^2 / 2)
    """

    def __init__(self, name: str, features: np.ndarray, weight: float):
        """
        Args:
            name: 核名称
            features: (N, D) 已除以带宽的特征
            weight: 非负权重
        """
        features = np.asarray(features, dtype=np.float64)
        if features.ndim != 2:
            raise ValueError(f"{name}: features 应为 (N, D)，当前形状: {features.shape}")
        if weight < 0:
            raise ValueError(f"{name}: weight 必须 >= 0，当前: {weight}")
        self.name = name
        self.features = features
        self.weight = float(weight)

    @property
    def num_sites(self) -> int:
        return self.features.shape[0]

    @property
    def dimension(self) -> int:
        return self.features.shape[1]

    def __repr__(self) -> str:
        return (
            f"KernelSpec(name={self.name!r}, N={self.num_sites}, "
            f"D={self.dimension}, weight={self.weight})"
        )


def position_grid(height: int, width: int) -> np.ndarray:
    """
    站点位置（行优先展平，i = y * W + x）

    Returns:
        positions: (H*W, 2) float64，列为 (x, y)
    """
    ys, xs = np.meshgrid(np.arange(height), np.arange(width), indexing="ij")
    return np.stack([xs.reshape(-1), ys.reshape(-1)], axis=1).astype(np.float64)


def _check_bandwidths(name: str, bandwidths: Sequence[float]):
    for sigma in bandwidths:
        if not sigma > 0:
            raise ValueError(f"{name}: 带宽必须 > 0，当前: {list(bandwidths)}")


def build_smoothness_features(
    height: int,
    width: int,
    x_stddev: float,
    y_stddev: float,
) -> np.ndarray:
    """
    smoothness 核特征：(x/σx, y/σy)

    Returns:
        features: (H*W, 2)
    """
    _check_bandwidths(SMOOTHNESS, (x_stddev, y_stddev))
    return position_grid(height, width) / np.array([x_stddev, y_stddev])


def build_appearance_features(
    image: np.ndarray,
    x_stddev: float,
    y_stddev: float,
    r_stddev: float,
    g_stddev: float,
    b_stddev: float,
) -> np.ndarray:
    """
    appearance 核特征：(x/σx, y/σy, c_0/σr, c_1/σg, c_2/σb, ...)

    单通道图像只使用 σr；超过 3 个通道时，多出的通道使用 σb。

    Args:
        image: (H, W, C) 图像

    Returns:
        features: (H*W, 2+C)
    """
    color_stddevs = (r_stddev, g_stddev, b_stddev)
    _check_bandwidths(APPEARANCE, (x_stddev, y_stddev) + color_stddevs)

    if image.ndim == 2:
        image = image[:, :, None]
    height, width, channels = image.shape

    bandwidths = [x_stddev, y_stddev]
    bandwidths += [color_stddevs[min(c, 2)] for c in range(channels)]

    colors = image.reshape(height * width, channels).astype(np.float64)
    features = np.concatenate([position_grid(height, width), colors], axis=1)
    return features / np.array(bandwidths)


def build_kernels(image: np.ndarray, config) -> List[KernelSpec]:
    """
    按配置构建两个固定核

    Args:
        image: (H, W, C) 特征网格（颜色）
        config: DenseCRFConfig

    Returns:
        kernels: [smoothness, appearance]（权重为 0 的核同样返回，由调用方跳过）
    """
    if image.ndim == 2:
        image = image[:, :, None]
    height, width = image.shape[:2]

    smoothness = KernelSpec(
        SMOOTHNESS,
        build_smoothness_features(
            height, width, config.gaussian_x_stddev, config.gaussian_y_stddev
        ),
        config.gaussian_weight,
    )
    appearance = KernelSpec(
        APPEARANCE,
        build_appearance_features(
            image,
            config.bilateral_x_stddev,
            config.bilateral_y_stddev,
            config.bilateral_r_stddev,
            config.bilateral_g_stddev,
            config.bilateral_b_stddev,
        ),
        config.bilateral_weight,
    )
    return [smoothness, appearance]


def exact_affinity(
    features_a: torch.Tensor,
    features_b: torch.Tensor,
) -> torch.Tensor:
    """
    精确高斯亲和度矩阵 exp(-|fa - fb|^2 / 2)

    Args:
        features_a: (B, D)
        features_b: (N, D)

    Returns:
        affinity: (B, N)
    """
    sq_a = (features_a * features_a).sum(dim=1, keepdim=True)
    sq_b = (features_b * features_b).sum(dim=1, keepdim=True)
    sq_dist = (sq_a + sq_b.T - 2.0 * features_a @ features_b.T).clamp_min(0.0)
    return torch.exp(-0.5 * sq_dist)


def kernel_affinity_block(
    kernels: Sequence[KernelSpec],
    start: int,
    stop: int,
    device: str = "cpu",
) -> torch.Tensor:
    """
    所有核加权亲和度之和的一个行块（含自身对，对角线为 Σ weight）

    Returns:
        block: (stop-start, N) Σ_k w_k exp(-|f_i^k - f_j^k|^2 / 2)
    """
    num_sites = kernels[0].num_sites if kernels else 0
    block = torch.zeros(stop - start, num_sites, dtype=torch.float64, device=device)
    for kernel in kernels:
        if kernel.weight == 0:
            continue
        features = torch.from_numpy(kernel.features).to(device)
        block += kernel.weight * exact_affinity(features[start:stop], features)
    return block
