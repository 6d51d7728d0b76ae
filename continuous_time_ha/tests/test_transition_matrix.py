"""Tests for the sparse asset generator."""

import numpy as np
import pytest
from scipy import sparse

from continuous_time_ha.config import ModelParams
from continuous_time_ha.policies import PolicyEngine
from continuous_time_ha.transition_matrix import DriftMode, TransitionMatrixBuilder


def random_policies(rng, params, grid, income):
    """Policies at a randomly perturbed increasing value function."""
    V = np.log1p(grid.b) + 0.8 * np.log1p(grid.a) + np.zeros(grid.shape(income.ny))
    V = V + rng.normal(0.0, 0.02, size=V.shape)
    return PolicyEngine(params, grid, income).compute(V), V


def assert_generator(A):
    """Non-negative off-diagonals and zero row sums."""
    A = sparse.csr_matrix(A)
    offdiag = A - sparse.diags(A.diagonal())
    assert offdiag.min() >= 0
    np.testing.assert_allclose(np.asarray(A.sum(axis=1)).ravel(), 0.0, atol=1e-10)


def diagonal_offsets(A):
    coo = sparse.coo_matrix(A)
    nonzero = coo.data != 0
    return set(np.unique(coo.col[nonzero] - coo.row[nonzero]).tolist())


class TestTransitionMatrixBuilder:
    """Test suite for TransitionMatrixBuilder."""

    @pytest.mark.parametrize("mode", [DriftMode.HJB, DriftMode.KFE])
    def test_generator_property(self, rng, params, grid, income, mode):
        """Test that random policies give a valid generator in both drift modes."""
        builder = TransitionMatrixBuilder(params, grid, income, mode=mode)
        for _ in range(10):
            policies, _ = random_policies(rng, params, grid, income)
            A, stationary = builder.build(policies)
            assert A.shape == (builder.n_states, builder.n_states)
            assert stationary is None
            assert_generator(A)

    @pytest.mark.parametrize("mode", [DriftMode.HJB, DriftMode.KFE])
    def test_generator_property_with_return_risk(self, rng, grid, income, mode):
        """Test that the diffusion term keeps zero row sums."""
        params = ModelParams(sigma_r=0.1)
        builder = TransitionMatrixBuilder(params, grid, income, mode=mode)
        assert builder.with_diffusion
        policies, _ = random_policies(rng, params, grid, income)
        A, _ = builder.build(policies)
        assert_generator(A)

    def test_band_structure(self, rng, params, grid, income):
        """Test that only the liquid and illiquid neighbours are connected."""
        builder = TransitionMatrixBuilder(params, grid, income)
        policies, _ = random_policies(rng, params, grid, income)
        A, _ = builder.build(policies)
        assert diagonal_offsets(A) <= {0, 1, -1, grid.nb, -grid.nb}

    def test_one_asset_band_structure(self, rng, one_asset_grid, income):
        """Test that a one-asset generator is tridiagonal."""
        params = ModelParams(sigma_r=0.1)
        builder = TransitionMatrixBuilder(params, one_asset_grid, income)
        assert builder.risky_axis == 0
        policies, _ = random_policies(rng, params, one_asset_grid, income)
        A, _ = builder.build(policies)
        assert diagonal_offsets(A) <= {0, 1, -1}
        assert_generator(A)

    def test_kfe_mode_uses_net_drift(self, rng, params, grid, income):
        """Test that KFE-mode coefficients are the net drift over the spacing."""
        builder = TransitionMatrixBuilder(params, grid, income, mode=DriftMode.KFE)
        policies, _ = random_policies(rng, params, grid, income)
        A, _ = builder.build(policies)

        bdot = policies.bdot.ravel(order="F")
        dbF = np.broadcast_to(grid.dbF, builder.shape).ravel(order="F")
        top = np.broadcast_to(np.arange(grid.nb).reshape(-1, 1, 1, 1), builder.shape).ravel(
            order="F"
        ) == grid.nb - 1
        rows = np.flatnonzero((bdot > 0) & ~top)
        assert rows.size > 0
        coefficients = np.asarray(A[rows, rows + 1]).ravel()
        np.testing.assert_allclose(coefficients, bdot[rows] / dbF[rows])

    def test_hjb_mode_splits_components(self, params, grid, income):
        """Test that opposite-signed components both enter the HJB operator."""
        builder = TransitionMatrixBuilder(params, grid, income, mode=DriftMode.HJB)
        policies, _ = random_policies(np.random.default_rng(0), params, grid, income)
        drifts = builder.drifts(policies)
        np.testing.assert_allclose(
            drifts.liquid_backward + drifts.liquid_forward, policies.bdot, atol=1e-12
        )
        np.testing.assert_allclose(
            drifts.illiquid_backward + drifts.illiquid_forward, policies.adot, atol=1e-12
        )
        assert np.all(drifts.liquid_backward <= 0)
        assert np.all(drifts.illiquid_forward >= 0)

    def test_diffusion_requires_return_risk(self, params, grid, income):
        """Test that the diffusion operator needs sigma_r > 0."""
        builder = TransitionMatrixBuilder(params, grid, income)
        with pytest.raises(ValueError, match="sigma_r"):
            builder.diffusion_operator()

    def test_diffusion_row_sums(self, grid, income):
        """Test that the diffusion operator alone is a generator with a reflecting top."""
        params = ModelParams(sigma_r=0.2)
        builder = TransitionMatrixBuilder(params, grid, income)
        D = builder.diffusion_operator()
        assert_generator(D)
        assert diagonal_offsets(D) <= {0, grid.nb, -grid.nb}

    def test_no_diffusion_in_kfe_without_retrisk_kfe(self, grid, income):
        """Test that return risk can be switched off in the forward equation."""
        params = ModelParams(sigma_r=0.1, retrisk_kfe=False)
        assert not TransitionMatrixBuilder(params, grid, income, mode=DriftMode.KFE).with_diffusion
        assert TransitionMatrixBuilder(params, grid, income, mode=DriftMode.HJB).with_diffusion

    def test_sdu_correction_requires_value_function(self, rng, grid, income):
        """Test that the SDU correction needs V."""
        params = ModelParams(sdu=True, sigma_r=0.1, riskaver=2.0, invies=0.5)
        builder = TransitionMatrixBuilder(params, grid, income)
        assert builder.with_sdu_correction
        policies, V = random_policies(rng, params, grid, income)
        with pytest.raises(ValueError, match="value function"):
            builder.build(policies)

    def test_sdu_correction_stationary_mask(self, rng, grid, income):
        """Test that the SDU correction flags states without risky-asset drift."""
        params = ModelParams(sdu=True, sigma_r=0.1, riskaver=2.0, invies=0.5)
        builder = TransitionMatrixBuilder(params, grid, income)
        policies, V = random_policies(rng, params, grid, income)
        A, stationary = builder.build(policies, V - 10.0)
        assert stationary.shape == builder.shape
        assert stationary.dtype == bool
        np.testing.assert_allclose(np.asarray(A.sum(axis=1)).ravel(), 0.0, atol=1e-10)
        assert not TransitionMatrixBuilder(
            params, grid, income, mode=DriftMode.KFE
        ).with_sdu_correction
