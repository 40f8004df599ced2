#!/usr/bin/env python3
"""
DenseCRF 推断脚本
读取 YAML 配置、图像与 unary 代价表，运行指定求解器并保存结果
"""
import sys
from pathlib import Path
import numpy as np
import argparse
import time
import json
import cv2

# 添加项目路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from densecrf import DenseCRF, DenseCRFConfig
from densecrf.utils.config import load_config, validate_config, get_data_paths
from densecrf.utils.io import load_image, load_unary_npy, save_labeling_npy
from densecrf.utils.log import log_time
from densecrf.solver import validate_segmentation_result
from scripts.visualize_segmentation import colorize_labels, plot_solver_history


def run_solver(crf: DenseCRF, solver_name: str) -> np.ndarray:
    """按名称运行求解器"""
    if solver_name == 'threshold':
        return crf.threshold()
    if solver_name == 'meanfield':
        return crf.meanfield()
    if solver_name == 'exact_meanfield':
        return crf.exact_meanfield()
    if solver_name == 'trws':
        labeling, _, _ = crf.trws()
        return labeling
    raise ValueError(f"未知的求解器: {solver_name}")


def to_json_report(crf: DenseCRF, config: DenseCRFConfig) -> dict:
    """求解报告中可序列化的部分"""
    report = {
        'solver': crf.solver,
        'energy': float(crf.energy),
        'lower_bound': float(crf.lower_bound),
        'config': config.to_dict(),
    }
    for key in ('iterations', 'cancelled', 'num_edges', 'num_omitted_edges', 'truncated'):
        if key in crf.report:
            report[key] = crf.report[key]
    for key in ('history', 'lower_bound_history'):
        if key in crf.report:
            report[key] = [float(v) for v in crf.report[key]]
    if 'bound' in crf.report:
        report['bound'] = float(crf.report['bound'])
    return report


def main():
    parser = argparse.ArgumentParser(
        description="全连接 CRF 推断（均场 / TRW-S）",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=str(project_root / "configs" / "densecrf.yaml"),
        help="YAML 配置文件",
    )
    parser.add_argument(
        "--solver",
        type=str,
        default=None,
        choices=['threshold', 'meanfield', 'exact_meanfield', 'trws'],
        help="覆盖配置中的求解器",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="覆盖配置中的迭代次数",
    )
    parser.add_argument(
        "--exact_energy",
        action="store_true",
        help="额外计算逐对求和的精确能量（O(N^2)，很慢）",
    )

    args = parser.parse_args()

    # 加载配置
    log_time(f"📄 加载配置: {args.config}")
    cfg = load_config(args.config)
    if args.solver is not None:
        cfg['solver']['name'] = args.solver
    if args.iterations is not None:
        cfg['solver']['iterations'] = args.iterations

    is_valid, errors = validate_config(cfg)
    if not is_valid:
        print(f"❌ 配置无效:")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)

    config = DenseCRFConfig.from_yaml(cfg)
    solver_name = cfg['solver'].get('name', 'meanfield')
    paths = get_data_paths(cfg)
    print(f"  求解器: {solver_name}")
    print(f"  {config}")

    # 加载数据
    t0 = time.time()
    image = load_image(paths['image'])
    unary = load_unary_npy(paths['unary'])
    log_time(f"✅ 数据加载完成: image={image.shape}, unary={unary.shape} ({time.time() - t0:.2f}s)")

    crf = DenseCRF(image, unary, config)
    crf.compute_energy = False

    # 运行求解器
    print(f"\n🚀 开始求解...")
    t0 = time.time()
    try:
        labeling = run_solver(crf, solver_name)
    except RuntimeError as e:
        if "out of memory" in str(e).lower() and config.device != "cpu":
            print(f"\n❌ GPU 内存不足！")
            print(f"  尝试使用 CPU 模式...")
            config.device = "cpu"
            labeling = run_solver(crf, solver_name)
        else:
            raise
    if solver_name == 'threshold':
        crf.calculate_energy()
    log_time(f"✅ 求解完成 ({time.time() - t0:.2f}s)")

    print(f"  能量: {crf.energy:.6f}")
    if np.isfinite(crf.lower_bound):
        print(f"  下界: {crf.lower_bound:.6f}")
    if crf.report.get('truncated'):
        print(f"  ⚠️  成对图已截断（省略 {crf.report['num_omitted_edges']} 条边），下界仅对截断后的图成立")

    if args.exact_energy:
        log_time(f"计算精确能量...")
        exact, approximate = crf.calculate_exact_energy()
        print(f"  精确能量: {exact:.6f}, 近似能量: {approximate:.6f}")

    # 验证结果
    print(f"\n🔍 验证结果...")
    is_valid, validation_report = validate_segmentation_result(
        labeling=labeling,
        unary=crf.unary,
        energy=crf.energy,
        lower_bound=crf.lower_bound,
    )
    print(f"  验证结果: {'✅通过' if is_valid else '⚠️未通过'}")
    if not is_valid:
        print(f"  警告: {validation_report}")

    # 保存结果
    print(f"\n💾 保存结果...")
    save_labeling_npy(labeling, paths['labeling'])
    print(f"  ✅ 标签: {paths['labeling']}")

    colored = colorize_labels(labeling, num_labels=crf.num_labels)
    cv2.imwrite(str(paths['visualization']), cv2.cvtColor(colored, cv2.COLOR_RGB2BGR))
    print(f"  ✅ 标签图: {paths['visualization']}")

    report = to_json_report(crf, config)
    with open(paths['report'], 'w') as f:
        json.dump(report, f, indent=2)
    print(f"  ✅ 报告: {paths['report']}")

    history_path = paths['output_dir'] / f"{paths['labeling'].stem}_history.png"
    if plot_solver_history(report, history_path):
        print(f"  ✅ 求解曲线: {history_path}")

    print(f"\n🎉 全部完成！")


if __name__ == "__main__":
    main()
