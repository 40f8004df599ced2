"""
内存布局转换：通道交错（channel-interleaved）堆叠

x0y0c0 x0y0c1 ... x1y0c0 x1y0c1 ...
每个站点的各通道在内存中连续，便于 splat / blur / slice 的内层循环
"""
import numpy as np


def color_stack(array: np.ndarray) -> np.ndarray:
    """
    将 (H, W, C) 数组展平为通道交错的一维向量

    Args:
        array: (H, W, C) 数组

    Returns:
        stacked: (H*W*C,) 一维数组，站点按行优先顺序排列
    """
    if array.ndim != 3:
        raise ValueError(f"color_stack 需要 3D 数组，当前形状: {array.shape}")
    return np.ascontiguousarray(array).reshape(-1)


def inverse_color_stack(stacked: np.ndarray, image_size) -> np.ndarray:
    """
    color_stack 的逆变换

    Args:
        stacked: (H*W*C,) 一维数组
        image_size: (H, W, C)

    Returns:
        array: (H, W, C) 数组
    """
    image_size = tuple(int(s) for s in image_size)
    if stacked.ndim != 1:
        raise ValueError(f"inverse_color_stack 需要一维向量，当前形状: {stacked.shape}")
    if len(image_size) != 3:
        raise ValueError(f"image_size 应为 (H, W, C)，当前: {image_size}")
    if stacked.size != int(np.prod(image_size)):
        raise ValueError(
            f"元素数量 {stacked.size} 与 image_size {image_size} 不匹配"
        )
    return stacked.reshape(image_size)


def sites_to_grid(values: np.ndarray, height: int, width: int) -> np.ndarray:
    """(N, ...) 站点数组 -> (H, W, ...) 网格"""
    return values.reshape(height, width, *values.shape[1:])


def grid_to_sites(grid: np.ndarray) -> np.ndarray:
    """(H, W, ...) 网格 -> (N, ...) 站点数组"""
    return grid.reshape(grid.shape[0] * grid.shape[1], *grid.shape[2:])
