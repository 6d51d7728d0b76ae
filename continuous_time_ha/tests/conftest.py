"""Pytest configuration and shared fixtures."""

import numpy as np
import pytest

from continuous_time_ha.config import (
    Config,
    GridConfig,
    HJBOptions,
    IncomeConfig,
    KFEOptions,
    ModelParams,
    SimulationOptions,
)
from continuous_time_ha.grids import AssetGrid, Grid
from continuous_time_ha.income import IncomeProcess
from continuous_time_ha.steady_state import SteadyStateSolver


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: long-running numerical tests")
    config.addinivalue_line("markers", "integration: tests chaining several solvers")


@pytest.fixture
def rng():
    """Seeded generator for property tests."""
    return np.random.default_rng(20240611)


@pytest.fixture
def params():
    """Two-asset parameters with log utility."""
    return ModelParams(r_b=0.005, r_a=0.015, rho=0.015, chi0=0.1, chi1=0.5, chi2=2.0)


@pytest.fixture
def income():
    """Symmetric two-state income process."""
    return IncomeProcess([0.8, 1.2], [[-0.1, 0.1], [0.1, -0.1]])


@pytest.fixture
def grid():
    """Small two-asset grid."""
    return Grid.from_config(GridConfig(nb=12, na=10, b_max=20.0, a_max=40.0))


@pytest.fixture
def one_asset_grid():
    """Liquid-only grid."""
    return Grid(AssetGrid.curved("b", 15, 0.0, 20.0, 2.0), AssetGrid("a", np.array([0.0])))


@pytest.fixture(scope="session")
def small_config():
    """Configuration for a quick two-asset steady state on distinct HJB and KFE grids."""
    return Config(
        params=ModelParams(r_b=0.005, r_a=0.015, rho=0.015, chi0=0.1, chi1=0.5, chi2=2.0),
        grid=GridConfig(nb=12, na=10, nb_kfe=15, na_kfe=12, b_max=20.0, a_max=40.0),
        income=IncomeConfig(y=[0.8, 1.2], ytrans=[[-0.1, 0.1], [0.1, -0.1]]),
        hjb=HJBOptions(tol=1e-6, maxiter=500),
        kfe=KFEOptions(tol=1e-8, maxiter=20000),
        simulation=SimulationOptions(n_households=2000, subperiods_per_quarter=50),
    )


@pytest.fixture(scope="session")
def small_steady_state(small_config):
    """Solved steady state with Feynman-Kac MPCs."""
    solver = SteadyStateSolver.from_config(small_config)
    return solver.solve(compute_mpcs=True)
