"""
DenseCRF 入口类单元测试
"""
import numpy as np
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from densecrf import DenseCRF, DenseCRFConfig


def make_crf(height=6, width=7, num_labels=3, seed=0, **config_overrides):
    rng = np.random.default_rng(seed)
    unary = rng.uniform(0, 2, size=(height, width, num_labels)).astype(np.float32)
    image = rng.integers(0, 255, size=(height, width, 3)).astype(np.uint8)
    config = DenseCRFConfig(iterations=5, **config_overrides)
    return DenseCRF(image, unary, config)


class TestConstruction:
    """测试输入校验"""

    def test_sizes(self):
        crf = make_crf()
        assert crf.image_size == (6, 7, 3)
        assert crf.num_labels == 3
        assert crf.segmentation is None
        assert np.isnan(crf.energy)
        assert crf.image_stacked.shape == (6 * 7 * 3,)

    def test_image_size_mismatch(self):
        with pytest.raises(ValueError):
            DenseCRF(np.zeros((4, 5, 3), dtype=np.uint8), np.zeros((4, 4, 2)))

    def test_unary_must_be_3d(self):
        with pytest.raises(ValueError):
            DenseCRF(np.zeros((4, 4, 3), dtype=np.uint8), np.zeros((16, 2)))

    def test_non_uint8_image_converted(self):
        image = np.full((2, 2, 3), 100.4)
        crf = DenseCRF(image, np.zeros((2, 2, 2)))
        assert crf.image.dtype == np.uint8
        assert np.all(crf.image == 100)


class TestSegmentation:
    """测试分割赋值的校验与能量重算"""

    def test_assignment_recomputes_energy(self):
        crf = make_crf()
        crf.segmentation = np.zeros((6, 7), dtype=int)
        assert np.isfinite(crf.energy)
        assert crf.solver == ''

    def test_assignment_without_energy(self):
        crf = make_crf()
        crf.compute_energy = False
        crf.segmentation = np.ones((6, 7), dtype=int)
        assert np.isnan(crf.energy)

    def test_integral_floats_accepted(self):
        crf = make_crf()
        crf.segmentation = np.full((6, 7), 2.0)
        assert crf.segmentation.dtype == np.int64

    def test_rejects_invalid(self):
        crf = make_crf()
        with pytest.raises(ValueError, match="same size"):
            crf.segmentation = np.zeros((7, 6), dtype=int)
        with pytest.raises(ValueError, match="should be"):
            crf.segmentation = np.full((6, 7), 3)
        with pytest.raises(ValueError, match="should be"):
            crf.segmentation = np.full((6, 7), -1)
        with pytest.raises(ValueError, match="integers"):
            crf.segmentation = np.full((6, 7), 0.5)

    def test_random_solution(self):
        crf = make_crf()
        first = crf.random_solution(seed=3).copy()
        second = crf.random_solution(seed=3)

        assert np.array_equal(first, second)
        assert first.min() >= 0 and first.max() < 3


class TestSolvers:
    """测试各求解器入口"""

    def test_threshold(self):
        crf = make_crf()
        labeling = crf.threshold()

        assert np.array_equal(labeling, np.argmin(crf.unary, axis=2))
        assert crf.solver == 'threshold'
        assert np.isfinite(crf.energy)

    def test_meanfield(self):
        crf = make_crf()
        labeling = crf.meanfield()

        assert labeling.shape == (6, 7)
        assert crf.solver == 'meanfield'
        assert crf.energy == pytest.approx(crf.report['energy'])
        assert np.isnan(crf.lower_bound)

    def test_meanfield_after_normalization_by_name(self):
        """构造后按名称修改 crf.config.normalization，均场照常运行"""
        crf = make_crf()
        crf.config.normalization = "NORMALIZE_SYMMETRIC"
        crf.meanfield()

        assert crf.report['normalization'] == "NORMALIZE_SYMMETRIC"
        assert np.isnan(crf.lower_bound)

    def test_exact_meanfield(self):
        crf = make_crf(height=4, width=4)
        crf.exact_meanfield()
        assert crf.solver == 'exact meanfield'
        assert np.isfinite(crf.energy)

    def test_trws(self):
        crf = make_crf(height=4, width=4)
        labeling, energy, lower_bound = crf.trws()

        assert crf.solver == 'trws'
        assert np.array_equal(crf.segmentation, labeling)
        assert lower_bound <= energy + 1e-9
        assert crf.lower_bound == lower_bound

    def test_exact_energy(self):
        crf = make_crf(height=4, width=5)
        crf.threshold()
        exact, approximate = crf.calculate_exact_energy()

        assert np.isfinite(exact)
        assert crf.energy == approximate
        assert exact <= crf.energy_function().compute(crf.segmentation)['unary']

    def test_no_segmentation(self):
        crf = make_crf()
        with pytest.raises(ValueError):
            crf.calculate_energy()

    def test_single_label_all_solvers(self):
        """只有一个标签时所有求解器给出唯一标注，能量为 unary 之和"""
        unary = np.full((3, 4, 1), 0.25, dtype=np.float32)
        image = np.zeros((3, 4, 3), dtype=np.uint8)
        crf = DenseCRF(image, unary, DenseCRFConfig(iterations=3))

        for solve in (crf.threshold, crf.meanfield, crf.exact_meanfield):
            solve()
            assert np.all(crf.segmentation == 0)
            assert crf.energy == pytest.approx(3.0)

        labeling, energy, lower_bound = crf.trws()
        assert np.all(labeling == 0)
        assert energy == pytest.approx(3.0)
        assert lower_bound == pytest.approx(3.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
