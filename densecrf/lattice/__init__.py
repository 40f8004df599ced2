"""
Permutohedral lattice 滤波模块
"""
from .permutohedral import LatticeHashTable, PermutohedralLattice, filter_values

__all__ = [
    'LatticeHashTable',
    'PermutohedralLattice',
    'filter_values',
]
