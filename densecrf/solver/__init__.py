"""
推断求解器模块
"""
from .config import DenseCRFConfig
from .energy_function import (
    EnergyFunction,
    unary_energy,
    approximate_energy,
    exact_energy,
    exact_pairwise_energy,
    graph_energy,
)
from .meanfield import MeanFieldSolver, softmin, meanfield_inference, exact_meanfield_inference
from .trws import PairwiseGraph, TRWSSolver, build_pairwise_graph, trws_inference
from .validation import check_unary, check_image, check_labeling, validate_segmentation_result

__all__ = [
    'DenseCRFConfig',
    'EnergyFunction',
    'unary_energy',
    'approximate_energy',
    'exact_energy',
    'exact_pairwise_energy',
    'graph_energy',
    'MeanFieldSolver',
    'softmin',
    'meanfield_inference',
    'exact_meanfield_inference',
    'PairwiseGraph',
    'TRWSSolver',
    'build_pairwise_graph',
    'trws_inference',
    'check_unary',
    'check_image',
    'check_labeling',
    'validate_segmentation_result',
]
