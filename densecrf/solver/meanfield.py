"""
均场（mean-field）求解器

Q_i ← softmin( unary_i + Σ_k μ_k( Σ_{j≠i} k_k(i, j) Q_j ) )

固定迭代次数，无自适应收敛判断。成对项通过 permutohedral lattice 近似计算；
exact=True 时改为逐对精确求和（O(N^2)，用于验证）。
"""
import time
import numpy as np
import torch
from typing import Callable, Dict, Optional, Sequence, Tuple

from ..pairwise import KernelSpec, NormalizationType, PairwisePotential, build_kernels
from ..utils.log import log_time
from .config import DenseCRFConfig
from .energy_function import approximate_pairwise_energy
from .validation import check_image, check_unary


def softmin(costs: torch.Tensor, dim: int = -1) -> torch.Tensor:
    """softmin(c) = softmax(-c)，沿标签维归一化"""
    return torch.softmax(-costs, dim=dim)


class MeanFieldSolver:
    """
    均场迭代

    一个实例只服务于一次求解，Q 由该实例独占。
    """

    def __init__(
        self,
        unary: np.ndarray,
        kernels: Sequence[KernelSpec],
        config: DenseCRFConfig,
        exact: bool = False,
    ):
        """
        Args:
            unary: (N, K) 代价
            kernels: 核列表
            config: 配置（迭代次数、归一化方式、设备）
            exact: 是否使用逐对精确求和
        """
        self.config = config.validate()
        self.device = config.device
        self.unary = torch.from_numpy(np.ascontiguousarray(unary, dtype=np.float64)).to(self.device)
        self.num_sites, self.num_labels = self.unary.shape
        self.exact = exact

        t0 = time.time()
        self.pairwise = PairwisePotential(
            kernels,
            normalization=config.normalization,
            device=self.device,
            exact=exact,
            chunk_size=config.chunk_size,
            debug=config.debug,
            resolution=config.lattice_resolution,
        )
        if config.debug:
            log_time(
                f"  成对项构建完成: {len(self.pairwise.kernels)} 个核, "
                f"exact={exact} ({time.time() - t0:.2f}s)"
            )

        self.Q = softmin(self.unary)
        self.iteration = 0

    @property
    def tracks_expected_energy(self) -> bool:
        """只有不归一化时，迭代中的消息才对应能量本身"""
        return self.config.normalization is NormalizationType.NO_NORMALIZATION

    def step(self) -> torch.Tensor:
        """
        一次均场更新

        Returns:
            pairwise_message: (N, K) 本次更新所用的成对消息（基于更新前的 Q）
        """
        pairwise_message = self.pairwise.apply(self.Q)
        self.Q = softmin(self.unary + pairwise_message)
        self.iteration += 1
        return pairwise_message

    def expected_energy(
        self,
        Q: Optional[torch.Tensor] = None,
        pairwise_message: Optional[torch.Tensor] = None,
    ) -> float:
        """
        因子化分布下的期望能量 E_Q[E]

        它不小于最优能量（在滤波精确时是最优能量的上界），
        只有 NO_NORMALIZATION 下才是均场实际最小化的目标。
        """
        Q = self.Q if Q is None else Q
        if pairwise_message is None:
            pairwise_message = self.pairwise.apply(Q, normalize=False)
        return float((Q * (self.unary + 0.5 * pairwise_message)).sum().item())

    def labeling(self) -> np.ndarray:
        """(N,) 逐站点 arg-max"""
        return torch.argmax(self.Q, dim=1).cpu().numpy().astype(np.int64)

    def run(self, cancel_check: Optional[Callable[[], bool]] = None) -> Dict:
        """
        运行固定次数的迭代

        Args:
            cancel_check: 可选，每次迭代前调用，返回 True 时提前停止

        Returns:
            report: 'iterations', 'cancelled', 'history'
        """
        history = []
        cancelled = False
        total = self.config.iterations

        for step in range(total):
            if cancel_check is not None and cancel_check():
                cancelled = True
                if self.config.debug:
                    log_time(f"  均场在迭代 {step}/{total} 前被取消")
                break

            iter_start_time = time.time()
            Q_before = self.Q
            pairwise_message = self.step()

            if self.tracks_expected_energy:
                history.append(self.expected_energy(Q_before, pairwise_message))

            if self.config.debug and ((step + 1) % self.config.print_interval == 0 or step == 0):
                log_msg = f"  Iter {step + 1}/{total}"
                if history:
                    log_msg += f": E_Q={history[-1]:.6f}"
                log_msg += f" ({time.time() - iter_start_time:.2f}s)"
                log_time(log_msg)

        return {
            'iterations': self.iteration,
            'cancelled': cancelled,
            'history': history,
        }


def meanfield_inference(
    unary: np.ndarray,
    image: np.ndarray,
    config: Optional[DenseCRFConfig] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
    exact: bool = False,
) -> Tuple[np.ndarray, Dict]:
    """
    均场推断

    Args:
        unary: (H, W, K) 代价表
        image: (H, W, C) 特征网格
        config: 配置
        cancel_check: 可选的协作式取消检查（迭代之间调用）
        exact: True 时使用逐对精确求和（非常慢）

    Returns:
        labeling: (H, W) 标签
        report: dict 求解报告
            - 'energy': 标注的能量（exact=False 时为近似能量，否则为精确能量）
            - 'bound': E_Q[E]（仅 NO_NORMALIZATION 有意义，其他方式为 NaN）
            - 'Q': (H, W, K) 最终分布
            - 'iterations', 'cancelled', 'history'
    """
    config = (config or DenseCRFConfig()).validate()
    unary = check_unary(unary)
    if unary.ndim != 3:
        raise ValueError(f"unary 应为 (H, W, K)，当前形状: {unary.shape}")
    height, width, num_labels = unary.shape
    image = check_image(image, height, width, debug=config.debug)
    solver_name = 'exact meanfield' if exact else 'meanfield'

    if config.debug:
        log_time(
            f"开始{solver_name}: {height}x{width}, K={num_labels}, "
            f"iterations={config.iterations}, normalization={config.normalization.name}"
        )

    # 只有一个标签：唯一可能的标注
    if num_labels == 1:
        total = float(unary.sum())
        return np.zeros((height, width), dtype=np.int64), {
            'solver': solver_name,
            'energy': total,
            'bound': total,
            'Q': np.ones_like(unary),
            'iterations': 0,
            'cancelled': False,
            'history': [],
            'normalization': config.normalization.name,
        }

    kernels = build_kernels(image, config)
    solver = MeanFieldSolver(unary.reshape(-1, num_labels), kernels, config, exact=exact)
    run_report = solver.run(cancel_check)

    labels = solver.labeling()
    energy = float(unary.reshape(-1, num_labels)[np.arange(len(labels)), labels].sum())
    energy += approximate_pairwise_energy(labels, solver.pairwise, num_labels)

    bound = solver.expected_energy() if solver.tracks_expected_energy else float('nan')

    if config.debug:
        log_time(f"✅ {solver_name} 完成: energy={energy:.6f}, iterations={run_report['iterations']}")

    report = {
        'solver': solver_name,
        'energy': energy,
        'bound': bound,
        'Q': solver.Q.cpu().numpy().reshape(height, width, num_labels),
        'normalization': config.normalization.name,
    }
    report.update(run_report)
    return labels.reshape(height, width), report


def exact_meanfield_inference(
    unary: np.ndarray,
    image: np.ndarray,
    config: Optional[DenseCRFConfig] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> Tuple[np.ndarray, Dict]:
    """非近似的均场推断（逐对求和，O(N^2) 每次迭代）"""
    return meanfield_inference(unary, image, config, cancel_check, exact=True)
