"""Tests for flow utility, labor disutility and adjustment costs."""

import numpy as np
import pytest

from continuous_time_ha.config import ModelParams
from continuous_time_ha.utility import (
    AdjustmentCost,
    CRRAUtility,
    LaborDisutility,
    SDUUtility,
    crra,
    make_utility,
)


class TestCRRAUtility:
    """Test suite for CRRA utility."""

    def test_log_case(self):
        """Test that unit risk aversion gives log utility."""
        np.testing.assert_allclose(crra(np.e, 1.0), 1.0)

    def test_normalization(self):
        """Test that u(1) is zero for every risk aversion."""
        for gamma in (0.5, 1.0, 2.0, 5.0):
            assert crra(1.0, gamma) == pytest.approx(0.0)

    @pytest.mark.parametrize("gamma", [1.0, 2.0, 4.5])
    def test_inverse_derivative(self, gamma):
        """Test that the inverse marginal utility undoes the marginal utility."""
        utility = CRRAUtility(gamma)
        c = np.array([0.1, 0.7, 1.0, 3.5])
        np.testing.assert_allclose(utility.inverse_derivative(utility.derivative(c)), c)


class TestSDUUtility:
    """Test suite for the SDU flow term."""

    def test_scaled_by_effective_discount_rate(self):
        """Test that the flow term and its derivative scale with rho + deathrate."""
        utility = SDUUtility(invies=2.0, rho_adj=0.05)
        assert utility.evaluate(2.0) == pytest.approx(0.05 * crra(2.0, 2.0))
        c = np.array([0.5, 1.5])
        np.testing.assert_allclose(utility.inverse_derivative(utility.derivative(c)), c)

    def test_make_utility(self):
        """Test that the preference toggle picks the utility class."""
        assert isinstance(make_utility(ModelParams(), 1), CRRAUtility)
        params = ModelParams(sdu=True, rhos=[0.01, 0.02], deathrate=0.01)
        utility = make_utility(params, 2)
        assert isinstance(utility, SDUUtility)
        np.testing.assert_allclose(utility.rho_adj.ravel(), [0.02, 0.03])


class TestLaborDisutility:
    """Test suite for hours disutility."""

    def test_derivative_and_inverse(self):
        """Test that the inverse marginal disutility recovers hours."""
        labor = LaborDisutility(scale=2.0, frisch=0.5)
        h = np.array([0.1, 0.5, 0.9])
        np.testing.assert_allclose(labor.inverse_derivative(labor.derivative(h)), h)

    def test_inverse_clips_negative_values(self):
        """Test that a negative marginal value implies zero hours."""
        labor = LaborDisutility(scale=1.0, frisch=0.5)
        assert labor.inverse_derivative(-1.0) == 0.0


class TestAdjustmentCost:
    """Test suite for the illiquid adjustment cost."""

    @pytest.fixture
    def cost(self):
        """Adjustment cost with the default parameters."""
        return AdjustmentCost(chi0=0.1, chi1=0.5, chi2=2.0, a_lb=0.25)

    def test_zero_deposit_is_free(self, cost):
        """Test that no adjustment costs nothing."""
        assert cost.cost(0.0, 3.0) == 0.0

    def test_scaling_floor(self, cost):
        """Test that holdings below a_lb are scaled by a_lb."""
        assert cost.cost(0.1, 0.0) == pytest.approx(cost.cost(0.1, 0.25))

    def test_derivative_matches_finite_difference(self, cost):
        """Test the analytic derivative away from the kink."""
        a = 2.0
        for d in (-0.4, -0.05, 0.05, 0.3):
            eps = 1e-6
            numeric = (cost.cost(d + eps, a) - cost.cost(d - eps, a)) / (2 * eps)
            assert cost.derivative(d, a) == pytest.approx(numeric, rel=1e-5)

    def test_inaction_band(self, cost):
        """Test that ratios within chi0 of one imply no adjustment."""
        Vb = np.ones(3)
        Va = np.array([0.95, 1.0, 1.05])
        np.testing.assert_allclose(cost.optimal_deposit(Va, Vb, 1.0), 0.0)

    @pytest.mark.parametrize("ratio", [0.5, 0.8, 1.2, 1.6])
    def test_optimal_deposit_maximizes_objective(self, cost, ratio):
        """Test that the closed form beats a dense grid search."""
        a = 1.5
        Vb = 0.8
        Va = ratio * Vb
        d_star = float(cost.optimal_deposit(Va, Vb, a))
        candidates = np.linspace(-3.0, 3.0, 20001)

        def objective(d):
            return Va * d - Vb * (d + cost.cost(d, a))

        assert objective(d_star) >= np.max(objective(candidates)) - 1e-8
        if ratio > 1.1:
            assert d_star > 0
        if ratio < 0.9:
            assert d_star < 0
