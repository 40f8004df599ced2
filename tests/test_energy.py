"""
能量函数单元测试
"""
import numpy as np
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from densecrf.pairwise import KernelSpec, build_kernels
from densecrf.solver import (
    DenseCRFConfig,
    EnergyFunction,
    unary_energy,
    approximate_energy,
    exact_energy,
    exact_pairwise_energy,
    graph_energy,
    build_pairwise_graph,
)


def two_site_problem():
    """1x2 网格，只有 smoothness 核"""
    unary = np.array([[[0.0, 1.0], [1.0, 0.0]]])
    image = np.zeros((1, 2, 3), dtype=np.uint8)
    config = DenseCRFConfig(bilateral_weight=0.0)
    return unary, image, config


class TestUnaryEnergy:
    """测试 unary 能量"""

    def test_sum(self):
        unary = np.arange(12, dtype=np.float64).reshape(2, 2, 3)
        labeling = np.array([[0, 2], [1, 0]])
        assert unary_energy(unary, labeling) == pytest.approx(0 + 5 + 7 + 9)

    def test_invalid_labeling(self):
        unary = np.zeros((2, 2, 3))
        with pytest.raises(ValueError):
            unary_energy(unary, np.zeros((2, 3), dtype=int))
        with pytest.raises(ValueError):
            unary_energy(unary, np.full((2, 2), 3))
        with pytest.raises(ValueError):
            unary_energy(unary, np.full((2, 2), 0.5))

    def test_non_finite_unary(self):
        unary = np.zeros((1, 2, 2))
        unary[0, 0, 1] = np.nan
        with pytest.raises(ValueError):
            unary_energy(unary, np.zeros((1, 2), dtype=int))


class TestExactEnergy:
    """测试逐对求和的精确能量"""

    def test_two_sites(self):
        """同标签的站点对获得 -w k(i, j) 的奖励"""
        unary, image, config = two_site_problem()
        kernels = build_kernels(image, config)
        k = np.exp(-0.5 * (1.0 / 3.0) ** 2)

        assert exact_energy(unary, np.array([[0, 1]]), kernels) == pytest.approx(0.0)
        assert exact_energy(unary, np.array([[0, 0]]), kernels) == pytest.approx(1.0 - k)
        assert exact_energy(unary, np.array([[1, 0]]), kernels) == pytest.approx(2.0)

    def test_order_invariance(self):
        """精确能量与站点的枚举顺序无关"""
        rng = np.random.default_rng(0)
        num_sites, num_labels = 40, 3
        features = rng.uniform(0, 3, size=(num_sites, 2))
        colors = rng.uniform(0, 3, size=(num_sites, 5))
        unary = rng.uniform(size=(num_sites, num_labels))
        labels = rng.integers(0, num_labels, size=num_sites)
        kernels = [KernelSpec("a", features, 1.0), KernelSpec("b", colors, 0.7)]

        perm = rng.permutation(num_sites)
        permuted = [KernelSpec(k.name, k.features[perm], k.weight) for k in kernels]

        e1 = exact_energy(unary, labels, kernels, chunk_size=7)
        e2 = exact_energy(unary[perm], labels[perm], permuted, chunk_size=13)
        assert e1 == pytest.approx(e2, rel=1e-10)

    def test_chunk_size_independent(self):
        rng = np.random.default_rng(1)
        features = rng.uniform(0, 2, size=(30, 2))
        labels = rng.integers(0, 2, size=30)
        kernels = [KernelSpec("a", features, 1.0)]

        e1 = exact_pairwise_energy(labels, kernels, 2, chunk_size=1)
        e2 = exact_pairwise_energy(labels, kernels, 2, chunk_size=1024)
        assert e1 == pytest.approx(e2, rel=1e-12)
        assert e1 < 0

    def test_single_label(self):
        """只有一个标签时能量即 unary 之和"""
        rng = np.random.default_rng(2)
        unary = rng.uniform(size=(4, 5, 1))
        image = rng.integers(0, 255, size=(4, 5, 3)).astype(np.uint8)
        kernels = build_kernels(image, DenseCRFConfig())
        labeling = np.zeros((4, 5), dtype=int)

        assert exact_energy(unary, labeling, kernels) == pytest.approx(unary.sum())
        assert approximate_energy(unary, labeling, kernels=kernels) == pytest.approx(unary.sum())


class TestApproximateEnergy:
    """测试基于 lattice 的近似能量"""

    @staticmethod
    def half_half_problem(size=16, stddev=3.0):
        """左右两半不同标签，只有 smoothness 核（D = 2）"""
        image = np.zeros((size, size, 3), dtype=np.uint8)
        config = DenseCRFConfig(
            gaussian_x_stddev=stddev,
            gaussian_y_stddev=stddev,
            bilateral_weight=0.0,
        )
        kernels = build_kernels(image, config)
        unary = np.zeros((size, size, 2))
        labeling = np.zeros((size, size), dtype=int)
        labeling[:, size // 2:] = 1
        return unary, labeling, kernels

    def test_close_to_exact(self):
        """经典 lattice（resolution = 1）在 D = 2 时误差在文档给出的界内（约 12%）"""
        unary, labeling, kernels = self.half_half_problem()

        exact = exact_energy(unary, labeling, kernels)
        approx = approximate_energy(unary, labeling, kernels=kernels)

        assert exact < 0
        assert approx < 0
        assert abs(approx - exact) / abs(exact) < 0.2

    def test_converges_with_resolution(self):
        """提高 lattice 分辨率时近似能量收敛到精确能量"""
        unary, labeling, kernels = self.half_half_problem(stddev=2.0)
        exact = exact_energy(unary, labeling, kernels)

        errors = []
        for resolution in (1, 5, 21):
            approx = approximate_energy(unary, labeling, kernels=kernels, resolution=resolution)
            errors.append(abs(approx - exact) / abs(exact))

        assert errors[1] < errors[0]
        assert errors[2] < 0.25 * errors[0]
        assert errors[2] < 0.03

    def test_energy_function_uses_resolution(self):
        """EnergyFunction 按配置的分辨率构建 lattice"""
        unary, labeling, kernels = self.half_half_problem(size=8)
        image = np.zeros((8, 8, 3), dtype=np.uint8)
        config = DenseCRFConfig(bilateral_weight=0.0, lattice_resolution=5)
        energy_function = EnergyFunction(unary, image, config)

        assert len(energy_function.pairwise.kernels) == 1
        assert energy_function.pairwise.kernels[0].lattice.resolution == 5
        assert energy_function.approximate(labeling) == pytest.approx(
            approximate_energy(unary, labeling, kernels=kernels, resolution=5)
        )

    def test_requires_kernels_or_pairwise(self):
        with pytest.raises(ValueError):
            approximate_energy(np.zeros((1, 2, 2)), np.zeros((1, 2), dtype=int))

    def test_weight_zero(self):
        """所有权重为 0 时近似能量即 unary 能量"""
        unary, image, _ = two_site_problem()
        config = DenseCRFConfig(gaussian_weight=0.0, bilateral_weight=0.0)
        kernels = build_kernels(image, config)
        labeling = np.array([[1, 1]])
        assert approximate_energy(unary, labeling, kernels=kernels) == pytest.approx(1.0)


class TestGraphEnergy:
    """测试显式成对图上的能量"""

    def test_matches_exact_without_truncation(self):
        rng = np.random.default_rng(3)
        unary = rng.uniform(size=(4, 4, 3))
        image = rng.integers(0, 255, size=(4, 4, 3)).astype(np.uint8)
        config = DenseCRFConfig(bilateral_x_stddev=2.0, bilateral_y_stddev=2.0)
        kernels = build_kernels(image, config)
        labeling = rng.integers(0, 3, size=(4, 4))

        graph = build_pairwise_graph(kernels)
        assert graph_energy(unary, labeling, graph) == pytest.approx(
            exact_energy(unary, labeling, kernels), rel=1e-10
        )

    def test_truncated_graph_drops_pairs(self):
        """截断后能量只包含保留的边"""
        unary, image, config = two_site_problem()
        kernels = build_kernels(image, config)
        graph = build_pairwise_graph(kernels, min_pairwise_cost=2.0)

        assert graph.num_edges == 0
        assert graph_energy(unary, np.array([[0, 0]]), graph) == pytest.approx(1.0)


class TestEnergyFunction:
    """测试能量函数类"""

    def test_compute(self):
        unary, image, config = two_site_problem()
        energy_fn = EnergyFunction(unary, image, config)
        result = energy_fn.compute(np.array([[0, 0]]), with_exact=True)

        assert set(result) == {'unary', 'approximate', 'exact'}
        assert result['unary'] == pytest.approx(1.0)
        assert result['exact'] == pytest.approx(1.0 - np.exp(-0.5 / 9.0))
        assert result['approximate'] < result['unary']

    def test_lattice_reused(self):
        unary, image, config = two_site_problem()
        energy_fn = EnergyFunction(unary, image, config)
        energy_fn.approximate(np.array([[0, 1]]))
        pairwise = energy_fn.pairwise
        energy_fn.approximate(np.array([[1, 1]]))
        assert energy_fn.pairwise is pairwise

    def test_size_mismatch(self):
        with pytest.raises(ValueError):
            EnergyFunction(np.zeros((2, 2, 2)), np.zeros((2, 3, 3), dtype=np.uint8))
        with pytest.raises(ValueError):
            EnergyFunction(np.zeros((4, 2)), np.zeros((2, 2, 3), dtype=np.uint8))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
