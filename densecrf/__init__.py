"""
densecrf：全连接 CRF 推断（均场 + TRW-S）
"""
from .densecrf import DenseCRF
from .pairwise import NormalizationType
from .solver import DenseCRFConfig

__all__ = [
    'DenseCRF',
    'DenseCRFConfig',
    'NormalizationType',
]
