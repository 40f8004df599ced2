"""
成对项模块：核构建、标签兼容性、成对算子
"""
from .kernels import (
    SMOOTHNESS,
    APPEARANCE,
    KernelSpec,
    position_grid,
    build_smoothness_features,
    build_appearance_features,
    build_kernels,
    exact_affinity,
    kernel_affinity_block,
)
from .compatibility import PottsCompatibility
from .pairwise_term import (
    NormalizationType,
    DenseKernel,
    ExactKernel,
    PairwisePotential,
)

__all__ = [
    'SMOOTHNESS',
    'APPEARANCE',
    'KernelSpec',
    'position_grid',
    'build_smoothness_features',
    'build_appearance_features',
    'build_kernels',
    'exact_affinity',
    'kernel_affinity_block',
    'PottsCompatibility',
    'NormalizationType',
    'DenseKernel',
    'ExactKernel',
    'PairwisePotential',
]
