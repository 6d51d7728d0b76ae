"""Tests for asset grids, spacings and interpolation."""

import numpy as np
import pytest

from continuous_time_ha.config import GridConfig
from continuous_time_ha.grids import AssetGrid, Grid


class TestAssetGrid:
    """Test suite for one asset dimension."""

    def test_spacings_at_edges(self):
        """Test that edge spacings copy their only neighbour."""
        grid = AssetGrid("b", np.array([0.0, 1.0, 3.0, 6.0]))
        np.testing.assert_allclose(grid.dF, [1.0, 2.0, 3.0, 3.0])
        np.testing.assert_allclose(grid.dB, [1.0, 1.0, 2.0, 3.0])

    def test_trapezoidal_weights_integrate_length(self):
        """Test that the weights sum to the width of the grid."""
        grid = AssetGrid.curved("a", 25, 0.0, 40.0, 2.0)
        assert grid.weights.sum() == pytest.approx(40.0)

    def test_curved_endpoints_and_clustering(self):
        """Test that curvature keeps endpoints and clusters nodes near the bottom."""
        grid = AssetGrid.curved("b", 11, 0.0, 10.0, 2.0)
        assert grid.lower == 0.0
        assert grid.upper == pytest.approx(10.0)
        diffs = np.diff(grid.nodes)
        assert np.all(np.diff(diffs) > 0)

    def test_with_borrowing(self):
        """Test that borrowing adds evenly spaced negative points."""
        grid = AssetGrid.with_borrowing("b", 10, 3, -3.0, 20.0, 2.0)
        assert grid.n == 10
        np.testing.assert_allclose(grid.nodes[:4], [-3.0, -2.0, -1.0, 0.0])

    def test_non_increasing_nodes_rejected(self):
        """Test that repeated nodes are rejected."""
        with pytest.raises(ValueError, match="strictly increasing"):
            AssetGrid("b", np.array([0.0, 1.0, 1.0]))

    def test_empty_grid_rejected(self):
        """Test that an empty grid is rejected."""
        with pytest.raises(ValueError, match="at least one node"):
            AssetGrid("a", np.array([]))

    def test_interpolation_matrix_exact_at_nodes(self):
        """Test that interpolating onto the nodes is the identity."""
        grid = AssetGrid.curved("b", 8, 0.0, 5.0, 1.5)
        matrix = grid.interpolation_matrix(grid.nodes).toarray()
        np.testing.assert_allclose(matrix, np.eye(8), atol=1e-12)

    def test_interpolation_extrapolates_linearly(self):
        """Test that points past the grid use the edge interval."""
        grid = AssetGrid("b", np.array([0.0, 1.0, 2.0]))
        values = np.array([1.0, 3.0, 5.0])
        points = np.array([-1.0, 0.5, 3.0])
        np.testing.assert_allclose(grid.interpolation_matrix(points) @ values, [-1.0, 2.0, 7.0])


class TestGrid:
    """Test suite for the joint grid."""

    def test_shapes_and_broadcasting(self, grid):
        """Test that grid views broadcast to the full state space."""
        assert grid.shape(2) == (12, 10, 1, 2)
        assert grid.b.shape == (12, 1, 1, 1)
        assert grid.a.shape == (1, 10, 1, 1)
        assert grid.trapezoidal.shape == (12, 10, 1, 1)
        assert grid.states_per_income == 120

    def test_flat_weights(self, grid):
        """Test that flattened weights integrate the asset box per income state."""
        weights = grid.flat_weights(2)
        assert weights.size == 240
        assert weights.sum() == pytest.approx(2 * 20.0 * 40.0)

    def test_liquid_index_varies_fastest(self, grid):
        """Test the Fortran-ordered flattening convention."""
        values = np.broadcast_to(grid.b, grid.shape(1)).ravel(order="F")
        np.testing.assert_allclose(values[: grid.nb], grid.b_grid.nodes)
        assert values[grid.nb] == grid.b_grid.nodes[0]

    def test_loc_b0_with_borrowing(self):
        """Test that the zero liquid node is located on a borrowing grid."""
        config = GridConfig(nb=12, na=5, nb_kfe=12, na_kfe=5, nb_neg=4, b_min=-2.0)
        grid = Grid.from_config(config)
        assert grid.b_grid.nodes[grid.loc_b0] == 0.0
        assert grid.loc_b0 == 4

    def test_kfe_grid_from_config(self):
        """Test that the KFE resolution is taken from the *_kfe fields."""
        config = GridConfig(nb=10, na=8, nb_kfe=14, na_kfe=9)
        grid = Grid.from_config(config, kfe=True)
        assert (grid.nb, grid.na) == (14, 9)

    def test_one_asset(self, one_asset_grid):
        """Test that a single illiquid node makes a one-asset grid."""
        assert one_asset_grid.one_asset
        assert not Grid.from_config(GridConfig(nb=5, na=4)).one_asset

    def test_interpolate_onto_reproduces_bilinear_function(self):
        """Test that a function linear in b and a is interpolated exactly."""
        source = Grid.from_config(GridConfig(nb=10, na=8, nz=2))
        target = Grid.from_config(GridConfig(nb=13, na=6, nz=2))
        ny = 3
        values = 1.0 + 2.0 * source.b - 0.5 * source.a + np.zeros(source.shape(ny))
        mapped = source.interpolate_onto(values, target)
        expected = 1.0 + 2.0 * target.b - 0.5 * target.a + np.zeros(target.shape(ny))
        assert mapped.shape == target.shape(ny)
        np.testing.assert_allclose(mapped, expected, atol=1e-10)

    def test_invalid_nz(self):
        """Test that the heterogeneity dimension needs a point."""
        with pytest.raises(ValueError, match="nz"):
            Grid(AssetGrid("b", np.array([0.0, 1.0])), AssetGrid("a", np.array([0.0])), nz=0)
