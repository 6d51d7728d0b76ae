"""Tests for Feynman-Kac MPCs."""

import numpy as np
import pytest
from scipy import sparse

from continuous_time_ha.config import MPCOptions, ModelParams
from continuous_time_ha.feynman_kac import FeynmanKacMPC, MPCResult, MPCResults


@pytest.fixture
def static_model(one_asset_grid, income):
    """Feynman-Kac solver on a one-asset grid where assets never move."""
    params = ModelParams(deathrate=0.0, mpc_shocks=[-1.0, 0.5])
    fk = FeynmanKacMPC(params, one_asset_grid, income, MPCOptions(delta=0.05))
    n = one_asset_grid.states_per_income * income.ny
    return fk, sparse.csr_matrix((n, n))


class TestBaselineConsumption:
    """Test suite for the backward consumption recursion."""

    def test_constant_consumption(self, static_model):
        """Test that constant consumption accumulates one unit per quarter."""
        fk, A = static_model
        baseline = fk.baseline_consumption(np.ones(A.shape[0]), A)
        assert baseline.shape == (A.shape[0], 4)
        np.testing.assert_allclose(baseline, 1.0, rtol=1e-10)

    def test_constant_consumption_with_death(self, one_asset_grid, income):
        """Test that rebirth keeps households consuming after death."""
        params = ModelParams(deathrate=0.02)
        fk = FeynmanKacMPC(params, one_asset_grid, income, MPCOptions(delta=0.05))
        n = one_asset_grid.states_per_income * income.ny
        baseline = fk.baseline_consumption(np.ones(n), sparse.csr_matrix((n, n)))
        np.testing.assert_allclose(baseline, 1.0, rtol=1e-2)

    def test_divisor_shape(self, static_model):
        """Test the backward-step operator."""
        fk, A = static_model
        D = fk.divisor(A)
        assert D.shape == A.shape
        np.testing.assert_allclose(D.diagonal()[:3], 1.0 / 0.05 + 0.1)


class TestShockedConsumption:
    """Test suite for MPCs on a static model."""

    def test_constant_consumption_mpcs(self, static_model, one_asset_grid):
        """Test that only the shortfall below the grid moves constant consumption."""
        fk, A = static_model
        n = A.shape[0]
        results = fk.solve(np.ones(n), np.full(n, 1.0 / n), A)

        b = np.tile(one_asset_grid.b_grid.nodes, 2)
        negative = results[-1.0]
        np.testing.assert_allclose(negative.mpcs[:, 0], np.where(b < 1.0, 1.0 - b, 0.0))
        np.testing.assert_allclose(negative.mpcs[:, 1:], 0.0, atol=1e-10)
        np.testing.assert_allclose(results[0.5].mpcs, 0.0, atol=1e-10)

    @pytest.mark.parametrize("method", ["linear", "cubic"])
    def test_linear_consumption_mpcs(self, one_asset_grid, income, method):
        """Test that consumption linear in liquid wealth has an MPC of one each quarter."""
        params = ModelParams(deathrate=0.0, mpc_shocks=[-1.0, 0.5])
        options = MPCOptions(delta=0.05, interp_method=method)
        fk = FeynmanKacMPC(params, one_asset_grid, income, options)
        n = one_asset_grid.states_per_income * income.ny
        A = sparse.csr_matrix((n, n))
        c = np.tile(one_asset_grid.b_grid.nodes, 2)
        results = fk.solve(c, np.full(n, 1.0 / n), A)

        np.testing.assert_allclose(results[0.5].mpcs, 1.0, atol=1e-8)
        np.testing.assert_allclose(results[0.5].quarterly, 1.0, atol=1e-8)
        assert results[0.5].annual == pytest.approx(4.0)
        np.testing.assert_allclose(results[-1.0].mpcs[:, 0], 1.0, atol=1e-8)

    def test_explicit_shocks_override_params(self, static_model):
        """Test that shocks passed to solve replace the configured ones."""
        fk, A = static_model
        n = A.shape[0]
        results = fk.solve(np.ones(n), np.full(n, 1.0 / n), A, shocks=[0.1])
        assert list(results) == [0.1]

    def test_short_horizon_has_no_annual_mpc(self, one_asset_grid, income):
        """Test that fewer than four quarters leaves the annual MPC undefined."""
        params = ModelParams(deathrate=0.0, mpc_shocks=[0.5])
        fk = FeynmanKacMPC(params, one_asset_grid, income, MPCOptions(delta=0.05, quarters=2))
        n = one_asset_grid.states_per_income * income.ny
        results = fk.solve(np.ones(n), np.full(n, 1.0 / n), sparse.csr_matrix((n, n)))
        assert results[0.5].annual is None
        assert np.isnan(results.to_dataframe().loc[0.5, "annual"])


class TestMPCResults:
    """Test suite for the results mapping."""

    def test_mapping_and_dataframe(self):
        """Test mapping behaviour and the tabular view."""
        results = MPCResults(
            {
                0.1: MPCResult(0.1, np.zeros((2, 4)), np.array([0.1, 0.05, 0.03, 0.02]), 0.2),
                -0.1: MPCResult(-0.1, np.zeros((2, 4)), np.array([0.3, 0.1, 0.0, 0.0]), 0.4),
            }
        )
        assert len(results) == 2
        assert 0.1 in results
        frame = results.to_dataframe()
        assert list(frame.columns) == ["quarter_1", "quarter_2", "quarter_3", "quarter_4", "annual"]
        assert frame.loc[-0.1, "quarter_1"] == pytest.approx(0.3)
        assert frame.loc[0.1, "annual"] == pytest.approx(0.2)


@pytest.mark.integration
class TestSteadyStateMPCs:
    """Test suite for MPCs at a solved steady state."""

    def test_mpcs_are_propensities(self, small_steady_state):
        """Test that first-quarter MPCs out of gains lie strictly between zero and one."""
        mpcs = small_steady_state.mpcs
        assert set(mpcs) == set(ModelParams().mpc_shocks)
        for shock in (0.01, 0.1, 1.0):
            assert 0.0 < mpcs[shock].quarterly[0] < 1.0
            assert mpcs[shock].annual is not None

    def test_losses_raise_consumption_response(self, small_steady_state):
        """Test that losses cut consumption by more than gains raise it."""
        mpcs = small_steady_state.mpcs
        assert mpcs[-1.0].quarterly[0] > mpcs[1.0].quarterly[0]
