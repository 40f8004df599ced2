"""
I/O 工具函数：图像、unary 代价表、标注结果
"""
import numpy as np
from pathlib import Path
from PIL import Image


def load_image(image_path: Path | str) -> np.ndarray:
    """
    加载 RGB 图像（特征网格）

    Args:
        image_path: 图像路径

    Returns:
        rgb: (H, W, 3) uint8 RGB 图像
    """
    image_path = Path(image_path)
    if not image_path.exists():
        raise FileNotFoundError(f"图像文件不存在: {image_path}")

    with Image.open(image_path) as img:
        rgb = np.array(img.convert("RGB") if img.mode not in ("L", "RGB", "RGBA") else img)

    # 灰度图 -> RGB, RGBA -> RGB
    if rgb.ndim == 2:
        rgb = np.stack([rgb, rgb, rgb], axis=-1)
    elif rgb.ndim == 3 and rgb.shape[2] == 4:
        rgb = rgb[:, :, :3]

    return rgb.astype(np.uint8, copy=False)


def load_unary_npy(unary_path: Path | str) -> np.ndarray:
    """
    加载 unary 代价表（.npy 格式）

    Args:
        unary_path: 代价表路径

    Returns:
        unary: (H, W, K) float32 代价表
    """
    unary_path = Path(unary_path)
    if not unary_path.exists():
        raise FileNotFoundError(f"unary 文件不存在: {unary_path}")

    unary = np.load(unary_path).astype(np.float32)

    if unary.ndim != 3:
        raise ValueError(f"unary 代价表应为 3D (H, W, K)，当前形状: {unary.shape}")

    return unary


def save_labeling_npy(labeling: np.ndarray, output_path: Path | str):
    """
    保存标注结果（.npy 格式）

    Args:
        labeling: (H, W) 标签索引
        output_path: 输出路径
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    np.save(output_path, labeling.astype(np.int64))


def save_image(image: np.ndarray, output_path: Path | str):
    """
    保存图像

    Args:
        image: (H, W, 3) uint8 图像或 (H, W) 灰度图
        output_path: 输出路径
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if image.dtype != np.uint8:
        if image.max() <= 1.0:
            image = (image * 255).astype(np.uint8)
        else:
            image = np.clip(image, 0, 255).astype(np.uint8)

    Image.fromarray(image).save(output_path)
