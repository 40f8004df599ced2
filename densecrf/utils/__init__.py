"""
工具函数模块
"""
from .config import load_config, validate_config, settings_from_yaml, get_data_paths
from .io import load_image, load_unary_npy, save_labeling_npy, save_image
from .layout import color_stack, inverse_color_stack, sites_to_grid, grid_to_sites
from .log import log_time

__all__ = [
    'load_config',
    'validate_config',
    'settings_from_yaml',
    'get_data_paths',
    'load_image',
    'load_unary_npy',
    'save_labeling_npy',
    'save_image',
    'color_stack',
    'inverse_color_stack',
    'sites_to_grid',
    'grid_to_sites',
    'log_time',
]
