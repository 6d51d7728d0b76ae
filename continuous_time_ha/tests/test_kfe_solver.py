"""Tests for the stationary distribution solver."""

import numpy as np
import pytest

from continuous_time_ha.config import GridConfig, HJBOptions, KFEOptions, ModelParams
from continuous_time_ha.exceptions import ConvergenceError
from continuous_time_ha.grids import Grid
from continuous_time_ha.hjb_solver import HJBSolver
from continuous_time_ha.income import IncomeProcess
from continuous_time_ha.kfe_solver import KFESolver, StationaryDistribution, death_redistribution
from continuous_time_ha.policies import PolicyEngine
from continuous_time_ha.transition_matrix import DriftMode, TransitionMatrixBuilder
from continuous_time_ha.variants import DeathRegime


@pytest.fixture(scope="module")
def model():
    """Converged two-asset model with its KFE-mode generator."""
    params = ModelParams()
    grid = Grid.from_config(GridConfig(nb=12, na=10, b_max=20.0, a_max=40.0))
    income = IncomeProcess([0.8, 1.2], [[-0.1, 0.1], [0.1, -0.1]])
    hjb = HJBSolver(params, grid, income, HJBOptions(tol=1e-6, maxiter=500)).solve()
    policies = PolicyEngine(params, grid, income).compute(hjb.V)
    A, _ = TransitionMatrixBuilder(params, grid, income, mode=DriftMode.KFE).build(policies)
    return params, grid, income, A


class TestDeathRedistribution:
    """Test suite for the rebirth matrix."""

    @pytest.mark.parametrize("regime", list(DeathRegime))
    def test_column_stochastic(self, grid, income, regime):
        """Test that every dying household is replaced exactly once."""
        R = death_redistribution(grid, income, regime)
        n = grid.states_per_income * income.ny
        assert R.shape == (n, n)
        assert R.min() >= 0
        np.testing.assert_allclose(np.asarray(R.sum(axis=0)).ravel(), 1.0)

    def test_bequests_keep_is_identity(self, grid, income):
        """Test that inherited assets and income leave mass in place."""
        R = death_redistribution(grid, income, DeathRegime.BEQUESTS_KEEP)
        np.testing.assert_array_equal(R.toarray(), np.eye(R.shape[0]))

    def test_newborns_start_at_origin(self, grid, income):
        """Test that newborns without bequests start at the zero-asset cell."""
        R = death_redistribution(grid, income, DeathRegime.NEWBORN_KEEP)
        rows = np.unique(R.nonzero()[0])
        spi = grid.states_per_income
        np.testing.assert_array_equal(rows, [grid.loc_b0, spi + grid.loc_b0])

    def test_bequests_reset_redraws_income(self, grid, income):
        """Test that income is redrawn from the stationary distribution."""
        R = death_redistribution(grid, income, DeathRegime.BEQUESTS_RESET)
        spi = grid.states_per_income
        assert R[0, 0] == pytest.approx(income.ydist[0])
        assert R[spi, 0] == pytest.approx(income.ydist[1])


class TestStationaryDistribution:
    """Test suite for distribution statistics."""

    def test_point_mass_statistics(self, grid):
        """Test wealth statistics of a point mass."""
        g = np.zeros(grid.shape(2))
        g[3, 4, 0, 1] = 1.0 / grid.trapezoidal[3, 4, 0, 0]
        dist = StationaryDistribution(g=g, grid=grid)
        assert dist.total_mass() == pytest.approx(1.0)
        assert dist.expected_liquid_wealth() == pytest.approx(grid.b_grid.nodes[3])
        assert dist.expected_illiquid_wealth() == pytest.approx(grid.a_grid.nodes[4])
        assert dist.expected_total_wealth() == pytest.approx(
            grid.b_grid.nodes[3] + grid.a_grid.nodes[4]
        )
        np.testing.assert_allclose(dist.income_marginal(), [0.0, 1.0])


class TestKFESolver:
    """Test suite for KFESolver."""

    def test_initial_guess_has_unit_mass(self, params, grid, income):
        """Test that the initial density integrates to one."""
        g0 = KFESolver(params, grid, income).initial_guess()
        assert np.sum(g0 * grid.trapezoidal) == pytest.approx(1.0)

    def test_iterative_solution(self, model):
        """Test that the iterative solution is a non-negative unit-mass density."""
        params, grid, income, A = model
        dist = KFESolver(params, grid, income, KFEOptions(maxiter=20000)).solve(A)
        assert dist.iterations > 0
        assert dist.distance < 1e-8
        assert np.all(dist.g >= 0)
        assert dist.total_mass() == pytest.approx(1.0)
        np.testing.assert_allclose(dist.income_marginal(), income.ydist, atol=1e-6)

    def test_direct_solution(self, model):
        """Test that the direct solution is a non-negative unit-mass density."""
        params, grid, income, A = model
        dist = KFESolver(params, grid, income, KFEOptions(iterative=False)).solve(A)
        assert dist.iterations == 0
        assert np.all(dist.g >= 0)
        assert dist.total_mass() == pytest.approx(1.0)
        np.testing.assert_allclose(dist.income_marginal(), income.ydist, atol=1e-8)

    def test_direct_and_iterative_agree(self, model):
        """Test that both solution methods find the same distribution."""
        params, grid, income, A = model
        direct = KFESolver(params, grid, income, KFEOptions(iterative=False)).solve(A)
        iterative = KFESolver(params, grid, income, KFEOptions(maxiter=20000)).solve(A)
        np.testing.assert_allclose(iterative.mass, direct.mass, atol=1e-6)
        assert iterative.expected_total_wealth() == pytest.approx(
            direct.expected_total_wealth(), rel=1e-4
        )

    def test_mass_stays_on_grid(self, model):
        """Test that mean wealth lies inside the grid."""
        params, grid, income, A = model
        dist = KFESolver(params, grid, income, KFEOptions(iterative=False)).solve(A)
        assert grid.b_grid.lower <= dist.expected_liquid_wealth() <= grid.b_grid.upper
        assert grid.a_grid.lower <= dist.expected_illiquid_wealth() <= grid.a_grid.upper

    @pytest.mark.parametrize(
        "bequests, reset", [(False, True), (False, False), (True, False)]
    )
    def test_death_regimes(self, model, bequests, reset):
        """Test both methods under every alternative death regime."""
        _, grid, income, A = model
        params = ModelParams(bequests=bequests, reset_income_upon_death=reset)
        direct = KFESolver(params, grid, income, KFEOptions(iterative=False)).solve(A)
        iterative = KFESolver(params, grid, income, KFEOptions(maxiter=20000)).solve(A)
        assert direct.total_mass() == pytest.approx(1.0)
        np.testing.assert_allclose(iterative.mass, direct.mass, atol=1e-6)

    def test_newborns_raise_mass_at_origin(self, model):
        """Test that rebirth at zero assets adds mass to the origin cell."""
        _, grid, income, A = model
        options = KFEOptions(iterative=False)
        bequests = KFESolver(ModelParams(), grid, income, options).solve(A)
        newborns = KFESolver(ModelParams(bequests=False), grid, income, options).solve(A)
        origin = (grid.loc_b0, grid.loc_a0)
        assert newborns.mass[origin].sum() > bequests.mass[origin].sum()

    def test_no_death(self, model):
        """Test the direct solve without death."""
        _, grid, income, A = model
        params = ModelParams(deathrate=0.0)
        dist = KFESolver(params, grid, income, KFEOptions(iterative=False)).solve(A)
        assert dist.total_mass() == pytest.approx(1.0)
        assert np.all(dist.g >= 0)

    def test_sweep_budget(self, model):
        """Test that exhausting the sweep budget raises ConvergenceError."""
        params, grid, income, A = model
        solver = KFESolver(params, grid, income, KFEOptions(maxiter=1))
        with pytest.raises(ConvergenceError, match="KFE did not converge"):
            solver.solve(A)
