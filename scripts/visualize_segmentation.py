#!/usr/bin/env python3
"""
可视化分割结果
标签图着色、与原图叠加，以及求解过程中能量 / 下界曲线
"""
import sys
from pathlib import Path
import json
import numpy as np
import argparse
import matplotlib
import matplotlib.pyplot as plt
import cv2

# 添加项目路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from densecrf.utils.io import load_image


def colorize_labels(labeling: np.ndarray, num_labels: int = None, cmap: str = "tab20") -> np.ndarray:
    """
    将标签图转换为彩色图像

    Args:
        labeling: (H, W) int 标签
        num_labels: 标签数（缺省时取 max + 1）
        cmap: colormap 名称

    Returns:
        colored: (H, W, 3) uint8 RGB 图像
    """
    if num_labels is None:
        num_labels = int(labeling.max()) + 1 if labeling.size else 1
    colormap = matplotlib.colormaps[cmap]
    # 离散 colormap 按索引取色，连续 colormap 均匀采样
    if getattr(colormap, 'N', 256) >= num_labels and colormap.N < 256:
        colors = colormap(np.arange(num_labels))[:, :3]
    else:
        colors = colormap(np.linspace(0.0, 1.0, max(num_labels, 2)))[:num_labels, :3]
    colored = (colors[labeling] * 255).astype(np.uint8)
    return np.ascontiguousarray(colored)


def overlay_labels(image: np.ndarray, colored: np.ndarray, alpha: float = 0.5) -> np.ndarray:
    """标签颜色与原图按 alpha 混合"""
    blended = (1.0 - alpha) * image.astype(np.float32) + alpha * colored.astype(np.float32)
    return np.clip(blended, 0, 255).astype(np.uint8)


def plot_solver_history(report: dict, output_path: Path):
    """
    绘制求解曲线

    均场：期望能量 E_Q（仅 NO_NORMALIZATION 时有）
    TRW-S：下界
    """
    curves = {}
    if report.get('history'):
        curves['E_Q'] = report['history']
    if report.get('lower_bound_history'):
        curves['lower bound'] = report['lower_bound_history']
    if not curves:
        return False

    fig, ax = plt.subplots(figsize=(8, 5))
    for name, values in curves.items():
        ax.plot(np.arange(1, len(values) + 1), values, label=name, linewidth=2)
    if np.isfinite(report.get('energy', np.nan)):
        ax.axhline(report['energy'], color='k', linestyle='--', label='energy')
    ax.set_xlabel('Iteration')
    ax.set_ylabel('Energy')
    ax.set_title(f"Solver: {report.get('solver', '')}")
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    return True


def main():
    parser = argparse.ArgumentParser(
        description="可视化 DenseCRF 分割结果",
    )
    parser.add_argument(
        "--labels",
        type=str,
        required=True,
        help="标签文件（.npy，(H, W)）",
    )
    parser.add_argument(
        "--image",
        type=str,
        default=None,
        help="原图（提供时额外输出叠加图）",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        help="run_densecrf.py 输出的 JSON 报告（提供时绘制求解曲线）",
    )
    parser.add_argument(
        "--output_dir",
        type=str,
        default=None,
        help="输出目录（默认与标签文件同目录）",
    )
    parser.add_argument(
        "--cmap",
        type=str,
        default="tab20",
        help="colormap 名称",
    )
    parser.add_argument(
        "--alpha",
        type=float,
        default=0.5,
        help="叠加图中标签颜色的不透明度",
    )

    args = parser.parse_args()

    labels_path = Path(args.labels)
    if not labels_path.exists():
        print(f"❌ 标签文件不存在: {labels_path}")
        return

    output_dir = Path(args.output_dir) if args.output_dir else labels_path.parent
    output_dir.mkdir(parents=True, exist_ok=True)
    name = labels_path.stem

    labeling = np.load(labels_path)
    colored = colorize_labels(labeling, cmap=args.cmap)

    color_path = output_dir / f"{name}_color.png"
    cv2.imwrite(str(color_path), cv2.cvtColor(colored, cv2.COLOR_RGB2BGR))
    print(f"  ✅ 标签图: {color_path}")

    if args.image is not None:
        image = load_image(args.image)
        if image.shape[:2] != labeling.shape:
            print(f"  ⚠️  图像尺寸 {image.shape[:2]} 与标签尺寸 {labeling.shape} 不一致，跳过叠加图")
        else:
            overlay = overlay_labels(image, colored, alpha=args.alpha)
            overlay_path = output_dir / f"{name}_overlay.png"
            cv2.imwrite(str(overlay_path), cv2.cvtColor(overlay, cv2.COLOR_RGB2BGR))
            print(f"  ✅ 叠加图: {overlay_path}")

    if args.report is not None:
        with open(args.report, 'r') as f:
            report = json.load(f)
        curve_path = output_dir / f"{name}_history.png"
        if plot_solver_history(report, curve_path):
            print(f"  ✅ 求解曲线: {curve_path}")
        else:
            print(f"  ⚠️  报告中没有迭代历史")

    print(f"\n✅ 全部完成！")


if __name__ == "__main__":
    main()
