"""One complete steady-state solve.

Chains the solvers for a single parameter set: HJB on the HJB grid, policies
recomputed on the KFE grid from the interpolated value function, the stationary
distribution, wealth statistics, and optionally MPCs. Calibration loops call
:meth:`SteadyStateSolver.solve` repeatedly and keep their own counters.
"""

from dataclasses import dataclass
import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd
from scipy import sparse

from .config.core import Config
from .config.model import ModelParams
from .config.solver import HJBOptions, KFEOptions, MPCOptions, SimulationOptions
from .feynman_kac import FeynmanKacMPC, MPCResults
from .grids import Grid
from .hjb_solver import HJBResult, HJBSolver
from .income import IncomeProcess
from .kfe_solver import KFESolver, StationaryDistribution
from .mpc_simulator import MPCSimulator, PolicySnapshots
from .policies import PolicyBundle, PolicyEngine
from .transition_matrix import DriftMode, TransitionMatrixBuilder
from .variants import ModelVariant

logger = logging.getLogger(__name__)


@dataclass
class SteadyStateResult:
    """Everything produced by one steady-state solve.

    Attributes:
        hjb: Converged HJB solution on the HJB grid.
        V_kfe: Value function interpolated onto the KFE grid.
        policies: Policies on the KFE grid.
        A: KFE-mode asset generator on the KFE grid.
        distribution: Stationary distribution.
        mpcs: Feynman-Kac MPCs, when requested.
        simulated_mpcs: Monte-Carlo MPCs, when requested.
    """

    hjb: HJBResult
    V_kfe: np.ndarray
    policies: PolicyBundle
    A: sparse.csr_matrix
    distribution: StationaryDistribution
    mpcs: Optional[MPCResults] = None
    simulated_mpcs: Optional[MPCResults] = None

    @property
    def expected_liquid_wealth(self) -> float:
        return self.distribution.expected_liquid_wealth()

    @property
    def expected_illiquid_wealth(self) -> float:
        return self.distribution.expected_illiquid_wealth()

    @property
    def expected_total_wealth(self) -> float:
        return self.distribution.expected_total_wealth()

    def mean_consumption(self) -> float:
        """Consumption averaged over the stationary distribution."""
        return float(np.sum(self.distribution.mass * self.policies.c))

    def summary(self) -> Dict[str, float]:
        """Headline statistics of the steady state."""
        stats = {
            "hjb_iterations": self.hjb.iterations,
            "kfe_iterations": self.distribution.iterations,
            "mean_liquid_wealth": self.expected_liquid_wealth,
            "mean_illiquid_wealth": self.expected_illiquid_wealth,
            "mean_total_wealth": self.expected_total_wealth,
            "mean_consumption": self.mean_consumption(),
        }
        if self.mpcs is not None:
            for shock, result in self.mpcs.items():
                stats[f"mpc_q1_shock_{shock:g}"] = float(result.quarterly[0])
                if result.annual is not None:
                    stats[f"mpc_annual_shock_{shock:g}"] = result.annual
        return stats

    def to_dataframe(self) -> pd.DataFrame:
        """Summary statistics as a one-column frame indexed by statistic."""
        return pd.DataFrame.from_dict(self.summary(), orient="index", columns=["value"])


class SteadyStateSolver:
    """Solves the household problem and its stationary distribution.

    Args:
        params: Model parameters.
        grid: HJB grid.
        grid_kfe: KFE grid; the HJB grid is used when omitted.
        income: Income process.
        hjb_options: HJB settings.
        kfe_options: KFE settings.
        mpc_options: Feynman-Kac settings.
        simulation_options: Monte-Carlo settings.
    """

    def __init__(
        self,
        params: ModelParams,
        grid: Grid,
        income: IncomeProcess,
        grid_kfe: Optional[Grid] = None,
        hjb_options: Optional[HJBOptions] = None,
        kfe_options: Optional[KFEOptions] = None,
        mpc_options: Optional[MPCOptions] = None,
        simulation_options: Optional[SimulationOptions] = None,
    ):
        self.params = params
        self.grid = grid
        self.grid_kfe = grid_kfe or grid
        self.income = income
        self.kfe_options = kfe_options or KFEOptions()
        self.mpc_options = mpc_options or MPCOptions()
        self.simulation_options = simulation_options or SimulationOptions()

        self.hjb_solver = HJBSolver(params, grid, income, hjb_options)
        self.variant_kfe = ModelVariant.resolve(params, self.grid_kfe)

    @classmethod
    def from_config(cls, config: Config) -> "SteadyStateSolver":
        """Build grids, income and solvers described by ``config``."""
        return cls(
            params=config.params,
            grid=Grid.from_config(config.grid),
            income=IncomeProcess.from_config(config.income),
            grid_kfe=Grid.from_config(config.grid, kfe=True),
            hjb_options=config.hjb,
            kfe_options=config.kfe,
            mpc_options=config.mpc,
            simulation_options=config.simulation,
        )

    def kfe_policies(self, V: np.ndarray):
        """Interpolate ``V`` onto the KFE grid and rebuild policies and generator there.

        Returns:
            Tuple of (V on the KFE grid, policies, KFE-mode generator).
        """
        V_kfe = self.grid.interpolate_onto(V, self.grid_kfe)
        engine = PolicyEngine(self.params, self.grid_kfe, self.income, self.variant_kfe)
        policies = engine.compute(V_kfe)
        builder = TransitionMatrixBuilder(
            self.params, self.grid_kfe, self.income, self.variant_kfe, DriftMode.KFE
        )
        A, _ = builder.build(policies)
        return V_kfe, policies, A

    def solve(
        self,
        V0: Optional[np.ndarray] = None,
        compute_mpcs: bool = False,
        simulate_mpcs: bool = False,
        snapshots: Optional[PolicySnapshots] = None,
    ) -> SteadyStateResult:
        """Solve for the steady state.

        Args:
            V0: Initial value function on the HJB grid.
            compute_mpcs: Compute Feynman-Kac MPCs.
            simulate_mpcs: Compute Monte-Carlo MPCs.
            snapshots: Policy snapshots for MPCs out of news.

        Returns:
            Steady-state result.

        Raises:
            ConvergenceError: If the HJB or KFE iteration budget is exhausted.
            DivergenceError: If either iteration diverges.
        """
        logger.info(f"Solving steady state for rho = {self.params.rho:.7f}")
        hjb = self.hjb_solver.solve(V0)

        V_kfe, policies, A = self.kfe_policies(hjb.V)
        kfe = KFESolver(
            self.params, self.grid_kfe, self.income, self.kfe_options, self.variant_kfe
        )
        distribution = kfe.solve(A)
        logger.info(f"Mean total wealth = {distribution.expected_total_wealth():.6f}")

        result = SteadyStateResult(
            hjb=hjb, V_kfe=V_kfe, policies=policies, A=A, distribution=distribution
        )

        if compute_mpcs:
            fk = FeynmanKacMPC(
                self.params, self.grid_kfe, self.income, self.mpc_options, self.variant_kfe
            )
            result.mpcs = fk.solve(policies.c, distribution.mass, A)

        if simulate_mpcs:
            simulator = MPCSimulator(
                self.params,
                self.grid_kfe,
                self.income,
                policies,
                options=self.simulation_options,
                snapshots=snapshots,
                variant=self.variant_kfe,
            )
            result.simulated_mpcs = simulator.solve(distribution.mass)

        return result
