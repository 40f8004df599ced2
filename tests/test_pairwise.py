"""
成对项单元测试
测试核构建、Potts 兼容性、归一化方式与成对算子
"""
import numpy as np
import torch
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from densecrf.pairwise import (
    SMOOTHNESS,
    APPEARANCE,
    KernelSpec,
    position_grid,
    build_smoothness_features,
    build_appearance_features,
    build_kernels,
    exact_affinity,
    kernel_affinity_block,
    PottsCompatibility,
    NormalizationType,
    DenseKernel,
    ExactKernel,
    PairwisePotential,
)
from densecrf.solver import DenseCRFConfig


class TestKernelBuilder:
    """测试核特征构建"""

    def test_position_grid_row_major(self):
        """站点 i = y * W + x"""
        positions = position_grid(3, 4)
        assert positions.shape == (12, 2)
        assert positions[0].tolist() == [0.0, 0.0]
        assert positions[4 + 2].tolist() == [2.0, 1.0]
        assert positions[11].tolist() == [3.0, 2.0]

    def test_smoothness_features_scaled(self):
        features = build_smoothness_features(2, 3, 2.0, 4.0)
        assert features.shape == (6, 2)
        assert np.allclose(features[5], [2.0 / 2.0, 1.0 / 4.0])

    def test_appearance_features(self):
        """颜色按各自带宽缩放"""
        image = np.zeros((2, 2, 3), dtype=np.uint8)
        image[1, 0] = [10, 20, 30]
        features = build_appearance_features(image, 1.0, 1.0, 10.0, 20.0, 30.0)

        assert features.shape == (4, 5)
        assert np.allclose(features[2], [0.0, 1.0, 1.0, 1.0, 1.0])

    def test_appearance_channel_counts(self):
        """单通道使用 σr，多于 3 个通道时多余通道使用 σb"""
        gray = np.full((1, 2), 20, dtype=np.uint8)
        features = build_appearance_features(gray, 1.0, 1.0, 10.0, 5.0, 4.0)
        assert features.shape == (2, 3)
        assert np.allclose(features[:, 2], 2.0)

        rgba = np.full((1, 1, 4), 20, dtype=np.uint8)
        features = build_appearance_features(rgba, 1.0, 1.0, 10.0, 5.0, 4.0)
        assert np.allclose(features[0, 2:], [2.0, 4.0, 5.0, 5.0])

    def test_invalid_bandwidth(self):
        with pytest.raises(ValueError):
            build_smoothness_features(2, 2, 0.0, 1.0)
        with pytest.raises(ValueError):
            build_appearance_features(np.zeros((2, 2, 3)), 1.0, 1.0, 1.0, -1.0, 1.0)

    def test_build_kernels(self):
        """两个固定核，权重为 0 的核同样返回"""
        config = DenseCRFConfig(gaussian_weight=2.0, bilateral_weight=0.0)
        kernels = build_kernels(np.zeros((3, 4, 3), dtype=np.uint8), config)

        assert [k.name for k in kernels] == [SMOOTHNESS, APPEARANCE]
        assert kernels[0].dimension == 2
        assert kernels[1].dimension == 5
        assert kernels[0].weight == 2.0
        assert kernels[1].weight == 0.0
        assert kernels[0].num_sites == 12

    def test_kernel_spec_validation(self):
        with pytest.raises(ValueError):
            KernelSpec("bad", np.zeros(4), 1.0)
        with pytest.raises(ValueError):
            KernelSpec("bad", np.zeros((4, 2)), -1.0)


class TestExactAffinity:
    """测试精确亲和度"""

    def test_values(self):
        f = torch.tensor([[0.0, 0.0], [1.0, 0.0], [0.0, 2.0]], dtype=torch.float64)
        affinity = exact_affinity(f, f)

        assert torch.allclose(torch.diagonal(affinity), torch.ones(3, dtype=torch.float64))
        assert torch.allclose(affinity, affinity.T)
        assert affinity[0, 1].item() == pytest.approx(np.exp(-0.5))
        assert affinity[1, 2].item() == pytest.approx(np.exp(-2.5))

    def test_affinity_block(self):
        """行块包含所有核的加权和，对角线为权重之和"""
        features = np.array([[0.0], [1.0], [3.0]])
        kernels = [KernelSpec("a", features, 2.0), KernelSpec("b", features * 0.5, 0.5)]
        block = kernel_affinity_block(kernels, 1, 3)

        assert block.shape == (2, 3)
        assert block[0, 1].item() == pytest.approx(2.5)
        expected = 2.0 * np.exp(-0.5 * 4.0) + 0.5 * np.exp(-0.5 * 1.0)
        assert block[0, 2].item() == pytest.approx(expected)

    def test_zero_weight_kernel_skipped(self):
        features = np.array([[0.0], [1.0]])
        block = kernel_affinity_block([KernelSpec("a", features, 0.0)], 0, 2)
        assert torch.all(block == 0)


class TestPotts:
    """测试 Potts 兼容性（-[a == b] 约定）"""

    def test_matrix(self):
        potts = PottsCompatibility(1.5)
        assert np.allclose(potts.matrix(3), -1.5 * np.eye(3))

    def test_pair_cost(self):
        potts = PottsCompatibility(2.0)
        costs = potts.pair_cost([0, 1, 2], [0, 2, 2])
        assert costs.tolist() == [-2.0, 0.0, -2.0]

    def test_apply(self):
        potts = PottsCompatibility(0.5)
        filtered = torch.tensor([[1.0, 2.0]], dtype=torch.float64)
        assert torch.allclose(potts.apply(filtered), torch.tensor([[-0.5, -1.0]], dtype=torch.float64))

    def test_negative_weight(self):
        with pytest.raises(ValueError):
            PottsCompatibility(-1.0)


class TestNormalizationType:
    """测试归一化方式解析"""

    def test_parse(self):
        assert NormalizationType.parse("NORMALIZE_AFTER") is NormalizationType.NORMALIZE_AFTER
        assert NormalizationType.parse(NormalizationType.NORMALIZE_SYMMETRIC) is NormalizationType.NORMALIZE_SYMMETRIC

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError, match="Allowed values"):
            NormalizationType.parse("normalize_after")
        with pytest.raises(ValueError):
            NormalizationType.parse(2)

    def test_flags(self):
        assert not NormalizationType.NO_NORMALIZATION.normalizes_before
        assert not NormalizationType.NO_NORMALIZATION.normalizes_after
        assert NormalizationType.NORMALIZE_BEFORE.normalizes_before
        assert NormalizationType.NORMALIZE_AFTER.normalizes_after
        assert NormalizationType.NORMALIZE_SYMMETRIC.normalizes_before
        assert NormalizationType.NORMALIZE_SYMMETRIC.normalizes_after


def two_site_kernel(distance: float = 1.0, weight: float = 1.0) -> KernelSpec:
    return KernelSpec("pair", np.array([[0.0], [distance]]), weight)


class TestExactKernel:
    """测试逐对求和的核滤波（自身对被排除）"""

    def test_self_pair_excluded(self):
        kernel = ExactKernel(two_site_kernel(1.0))
        Q = torch.tensor([[1.0, 0.0], [0.0, 1.0]], dtype=torch.float64)
        filtered = kernel.filter(Q)

        a = np.exp(-0.5)
        expected = torch.tensor([[0.0, a], [a, 0.0]], dtype=torch.float64)
        assert torch.allclose(filtered, expected)

    def test_normalize_after(self):
        """归一化因子包含自身对：n_i = 1 + a"""
        kernel = ExactKernel(two_site_kernel(1.0), NormalizationType.NORMALIZE_AFTER)
        Q = torch.tensor([[1.0, 0.0], [0.0, 1.0]], dtype=torch.float64)
        filtered = kernel.filter(Q)

        a = np.exp(-0.5)
        assert filtered[0, 1].item() == pytest.approx(a / (1.0 + a))
        assert filtered[0, 0].item() == pytest.approx(0.0)

    def test_normalize_before_and_symmetric(self):
        """两站点对称时三种归一化方式结果一致"""
        Q = torch.tensor([[0.7, 0.3], [0.2, 0.8]], dtype=torch.float64)
        results = [
            ExactKernel(two_site_kernel(0.5), mode).filter(Q)
            for mode in (
                NormalizationType.NORMALIZE_BEFORE,
                NormalizationType.NORMALIZE_AFTER,
                NormalizationType.NORMALIZE_SYMMETRIC,
            )
        ]
        assert torch.allclose(results[0], results[1])
        assert torch.allclose(results[0], results[2])

    def test_unnormalized_filter(self):
        """normalize=False 时忽略归一化方式"""
        Q = torch.tensor([[0.7, 0.3], [0.2, 0.8]], dtype=torch.float64)
        plain = ExactKernel(two_site_kernel(0.5)).filter(Q)
        skipped = ExactKernel(two_site_kernel(0.5), NormalizationType.NORMALIZE_AFTER).filter(Q, normalize=False)
        assert torch.allclose(plain, skipped)

    def test_apply_uses_weight(self):
        kernel = ExactKernel(two_site_kernel(1.0, weight=3.0))
        Q = torch.tensor([[1.0, 0.0], [1.0, 0.0]], dtype=torch.float64)
        message = kernel.apply(Q)
        assert message[0, 0].item() == pytest.approx(-3.0 * np.exp(-0.5))
        assert message[0, 1].item() == pytest.approx(0.0)


class TestDenseKernel:
    """测试基于 lattice 的核滤波"""

    def test_close_to_exact_on_dense_grid(self):
        """稠密网格上，近似与精确的成对消息方向一致、量级相当"""
        features = build_smoothness_features(16, 16, 3.0, 3.0)
        spec = KernelSpec(SMOOTHNESS, features, 1.0)
        Q = np.zeros((256, 2))
        Q[:, 0] = (features[:, 0] < features[:, 0].mean())
        Q[:, 1] = 1.0 - Q[:, 0]
        Q = torch.from_numpy(Q)

        dense = DenseKernel(spec).filter(Q).numpy()
        exact = ExactKernel(spec).filter(Q).numpy()

        correlation = np.corrcoef(dense.reshape(-1), exact.reshape(-1))[0, 1]
        assert correlation > 0.9
        assert 0.5 < dense.sum() / exact.sum() < 1.5

    def test_normalization_bounded(self):
        """NORMALIZE_AFTER 下滤波值不超过 1（归一化后为加权平均减去自身份额）"""
        features = build_smoothness_features(10, 10, 2.0, 2.0)
        spec = KernelSpec(SMOOTHNESS, features, 1.0)
        kernel = DenseKernel(spec, NormalizationType.NORMALIZE_AFTER)
        Q = torch.full((100, 3), 1.0 / 3.0, dtype=torch.float64)
        filtered = kernel.filter(Q)

        assert torch.all(filtered <= 1.0 / 3.0 + 1e-9)


class TestPairwisePotential:
    """测试成对算子"""

    def test_zero_weights_skipped(self):
        """所有核权重为 0 时消息恒为 0"""
        features = build_smoothness_features(4, 4, 1.0, 1.0)
        potential = PairwisePotential([KernelSpec(SMOOTHNESS, features, 0.0)])
        Q = torch.full((16, 2), 0.5, dtype=torch.float64)

        assert potential.is_empty
        assert torch.all(potential.apply(Q) == 0)

    def test_sum_over_kernels(self):
        """消息为各核消息之和"""
        k1 = two_site_kernel(1.0, weight=1.0)
        k2 = two_site_kernel(2.0, weight=0.5)
        potential = PairwisePotential([k1, k2], exact=True)
        Q = torch.tensor([[1.0, 0.0], [1.0, 0.0]], dtype=torch.float64)
        message = potential.apply(Q)

        expected = -(np.exp(-0.5) + 0.5 * np.exp(-2.0))
        assert message[0, 0].item() == pytest.approx(expected)
        assert len(potential.kernels) == 2

    def test_parses_normalization(self):
        potential = PairwisePotential([two_site_kernel()], "NORMALIZE_SYMMETRIC", exact=True)
        assert potential.normalization is NormalizationType.NORMALIZE_SYMMETRIC


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
