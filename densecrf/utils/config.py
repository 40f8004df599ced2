"""
配置加载和验证工具
"""
import yaml
from pathlib import Path
from typing import Dict, Any, Tuple, List

SOLVER_NAMES = ('threshold', 'meanfield', 'exact_meanfield', 'trws')
NORMALIZATION_NAMES = (
    'NO_NORMALIZATION',
    'NORMALIZE_BEFORE',
    'NORMALIZE_AFTER',
    'NORMALIZE_SYMMETRIC',
)


def load_config(config_path: Path | str) -> Dict[str, Any]:
    """
    加载 YAML 配置文件

    Args:
        config_path: 配置文件路径

    Returns:
        config: 配置字典
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"配置文件不存在: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    return config or {}


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(config: Dict[str, Any], check_paths: bool = True) -> Tuple[bool, List[str]]:
    """
    验证配置文件的合理性

    Args:
        config: 配置字典
        check_paths: 是否检查输入文件存在

    Returns:
        is_valid: 是否有效
        errors: 错误信息列表
    """
    errors = []

    # 检查必需字段
    required_fields = ['paths', 'kernels', 'solver']
    for field in required_fields:
        if field not in config:
            errors.append(f"缺少必需字段: {field}")

    if errors:
        return False, errors

    # 检查路径存在性
    paths = config['paths'] or {}
    for key in ('image', 'unary'):
        if key not in paths:
            errors.append(f"paths 缺少字段: {key}")
        elif check_paths and not Path(paths[key]).exists():
            errors.append(f"输入文件不存在: {paths[key]}")

    # 检查核带宽与权重
    kernels = config['kernels'] or {}
    for kernel_name, axes in (('gaussian', 'xy'), ('bilateral', 'xyrgb')):
        section = kernels.get(kernel_name, {}) or {}
        for axis in axes:
            key = f'{axis}_stddev'
            if key in section and (not _is_number(section[key]) or section[key] <= 0):
                errors.append(f"kernels.{kernel_name}.{key} 必须 > 0，当前值: {section[key]}")
        if 'weight' in section and (not _is_number(section['weight']) or section['weight'] < 0):
            errors.append(f"kernels.{kernel_name}.weight 必须 >= 0，当前值: {section['weight']}")

    # 检查求解器
    solver = config['solver'] or {}
    name = solver.get('name', 'meanfield')
    if name not in SOLVER_NAMES:
        errors.append(f"未知的求解器: {name}（可选: {', '.join(SOLVER_NAMES)}）")

    iterations = solver.get('iterations', 0)
    if not isinstance(iterations, int) or isinstance(iterations, bool) or iterations < 0:
        errors.append(f"solver.iterations 必须为非负整数，当前值: {iterations}")

    threshold = solver.get('min_pairwise_cost', 0)
    if not _is_number(threshold) or threshold < 0:
        errors.append(f"solver.min_pairwise_cost 必须 >= 0，当前值: {threshold}")

    normalization = solver.get('normalization', 'NO_NORMALIZATION')
    if normalization not in NORMALIZATION_NAMES:
        errors.append(
            f"未知的 normalization: {normalization}"
            f"（可选: {', '.join(NORMALIZATION_NAMES)}）"
        )

    # 检查运行参数
    runtime = config.get('runtime', {}) or {}
    chunk_size = runtime.get('chunk_size', 1)
    if not isinstance(chunk_size, int) or chunk_size < 1:
        errors.append(f"runtime.chunk_size 必须为正整数，当前值: {chunk_size}")
    resolution = runtime.get('lattice_resolution', 1)
    if isinstance(resolution, bool) or not isinstance(resolution, int) or resolution < 1:
        errors.append(f"runtime.lattice_resolution 必须为正整数，当前值: {resolution}")

    return len(errors) == 0, errors


def settings_from_yaml(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    将分节的 YAML 配置展平为 DenseCRFConfig 的字段

    缺省的字段不出现在结果中（由 DenseCRFConfig 的默认值补全）

    Args:
        config: load_config 返回的配置字典

    Returns:
        settings: 扁平字段字典
    """
    settings = {}

    kernels = config.get('kernels', {}) or {}
    for kernel_name, axes in (('gaussian', 'xy'), ('bilateral', 'xyrgb')):
        section = kernels.get(kernel_name, {}) or {}
        for axis in axes:
            if f'{axis}_stddev' in section:
                settings[f'{kernel_name}_{axis}_stddev'] = section[f'{axis}_stddev']
        if 'weight' in section:
            settings[f'{kernel_name}_weight'] = section['weight']

    solver = config.get('solver', {}) or {}
    for key in ('iterations', 'min_pairwise_cost', 'normalization', 'print_interval'):
        if key in solver:
            settings[key] = solver[key]

    runtime = config.get('runtime', {}) or {}
    for key in ('device', 'debug', 'chunk_size', 'lattice_resolution'):
        if key in runtime:
            settings[key] = runtime[key]

    return settings


def get_data_paths(config: Dict[str, Any], name: str | None = None) -> Dict[str, Path]:
    """
    根据配置获取数据路径

    Args:
        config: 配置字典
        name: 输出文件名前缀（缺省时使用图像文件名）

    Returns:
        paths: 包含输入与输出路径的字典
    """
    paths_config = config['paths']
    image_path = Path(paths_config['image'])
    output_dir = Path(paths_config.get('output_dir', 'output'))
    name = name or image_path.stem

    paths = {
        'image': image_path,
        'unary': Path(paths_config['unary']),
        'output_dir': output_dir,
        'labeling': output_dir / f'{name}_labels.npy',
        'visualization': output_dir / f'{name}_labels.png',
        'report': output_dir / f'{name}_report.json',
    }

    return paths
