"""Asset grids, one-sided spacings and integration weights.

The joint state space is indexed by (liquid b, illiquid a, heterogeneity z,
income y) with shape ``(nb, na, nz, ny)``. Flattening uses Fortran order, so
the liquid index varies fastest: liquid neighbours are one position apart and
illiquid neighbours ``nb`` positions apart.
"""

from dataclasses import dataclass, field
import logging
from typing import Tuple

import numpy as np
from scipy import sparse

from .config.model import GridConfig

logger = logging.getLogger(__name__)


@dataclass
class AssetGrid:
    """One asset dimension: node coordinates and their spacings."""

    name: str
    nodes: np.ndarray
    dB: np.ndarray = field(init=False, repr=False)
    dF: np.ndarray = field(init=False, repr=False)
    weights: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        """Validate nodes and derive spacings and trapezoidal weights."""
        self.nodes = np.asarray(self.nodes, dtype=float).ravel()
        if self.nodes.size == 0:
            raise ValueError(f"Grid {self.name} needs at least one node")
        if self.nodes.size > 1 and np.any(np.diff(self.nodes) <= 0):
            raise ValueError(f"Grid {self.name} must be strictly increasing")

        n = self.nodes.size
        if n == 1:
            self.dB = np.ones(1)
            self.dF = np.ones(1)
            self.weights = np.ones(1)
            return

        diffs = np.diff(self.nodes)
        self.dF = np.append(diffs, diffs[-1])
        self.dB = np.insert(diffs, 0, diffs[0])

        weights = np.empty(n)
        weights[0] = 0.5 * diffs[0]
        weights[-1] = 0.5 * diffs[-1]
        weights[1:-1] = 0.5 * (diffs[:-1] + diffs[1:])
        self.weights = weights

    @classmethod
    def curved(
        cls, name: str, n: int, lower: float, upper: float, curvature: float = 1.0
    ) -> "AssetGrid":
        """Grid with nodes ``lower + (upper - lower) * t ** curvature``.

        Args:
            name: Label used in error messages.
            n: Number of nodes.
            lower: First node.
            upper: Last node.
            curvature: Exponent; values above one cluster nodes near ``lower``.

        Returns:
            New grid.
        """
        if n == 1:
            return cls(name, np.array([lower]))
        t = np.linspace(0.0, 1.0, n)
        return cls(name, lower + (upper - lower) * t**curvature)

    @classmethod
    def with_borrowing(
        cls,
        name: str,
        n: int,
        n_neg: int,
        lower: float,
        upper: float,
        curvature: float = 1.0,
    ) -> "AssetGrid":
        """Curved non-negative grid with ``n_neg`` evenly spaced points below zero."""
        positive = cls.curved(name, n - n_neg, 0.0, upper, curvature).nodes
        if n_neg == 0:
            return cls(name, positive)
        negative = np.linspace(lower, 0.0, n_neg + 1)[:-1]
        return cls(name, np.concatenate([negative, positive]))

    @property
    def n(self) -> int:
        """Number of nodes."""
        return int(self.nodes.size)

    @property
    def lower(self) -> float:
        """First node."""
        return float(self.nodes[0])

    @property
    def upper(self) -> float:
        """Last node."""
        return float(self.nodes[-1])

    def interpolation_matrix(self, points: np.ndarray) -> sparse.csr_matrix:
        """Sparse linear interpolation from grid values to ``points``.

        Points outside the grid are linearly extrapolated from the nearest
        interval.

        Args:
            points: Target coordinates.

        Returns:
            Matrix of shape (len(points), n).
        """
        points = np.asarray(points, dtype=float).ravel()
        m = points.size
        if self.n == 1:
            return sparse.csr_matrix(np.ones((m, 1)))

        idx = np.clip(np.searchsorted(self.nodes, points, side="right") - 1, 0, self.n - 2)
        lo = self.nodes[idx]
        hi = self.nodes[idx + 1]
        w = (points - lo) / (hi - lo)
        rows = np.concatenate([np.arange(m), np.arange(m)])
        cols = np.concatenate([idx, idx + 1])
        vals = np.concatenate([1.0 - w, w])
        return sparse.csr_matrix((vals, (rows, cols)), shape=(m, self.n))


class Grid:
    """Liquid and illiquid grids combined with the heterogeneity dimension.

    Broadcastable views (``b``, ``a``, spacings) have shape ``(nb, 1, 1, 1)`` or
    ``(1, na, 1, 1)`` so that they combine directly with ``(nb, na, nz, ny)``
    arrays.
    """

    def __init__(self, b: AssetGrid, a: AssetGrid, nz: int = 1):
        if nz < 1:
            raise ValueError("Need nz >= 1")
        self.b_grid = b
        self.a_grid = a
        self.nz = nz

        self.nb = b.n
        self.na = a.n
        self.states_per_income = self.nb * self.na * self.nz

        self.b = b.nodes.reshape(-1, 1, 1, 1)
        self.a = a.nodes.reshape(1, -1, 1, 1)
        self.dbB = b.dB.reshape(-1, 1, 1, 1)
        self.dbF = b.dF.reshape(-1, 1, 1, 1)
        self.daB = a.dB.reshape(1, -1, 1, 1)
        self.daF = a.dF.reshape(1, -1, 1, 1)
        self.trapezoidal = (b.weights.reshape(-1, 1) * a.weights.reshape(1, -1)).reshape(
            self.nb, self.na, 1, 1
        )

        # Closest liquid node to zero; the illiquid lower bound is node 0
        self.loc_b0 = int(np.argmin(np.abs(b.nodes)))
        self.loc_a0 = 0

        logger.debug(f"Initialized grid with nb={self.nb}, na={self.na}, nz={self.nz}")

    @classmethod
    def from_config(cls, config: GridConfig, kfe: bool = False) -> "Grid":
        """Build the HJB grid (default) or the KFE grid described by ``config``."""
        nb = config.nb_kfe if kfe else config.nb
        na = config.na_kfe if kfe else config.na
        b = AssetGrid.with_borrowing(
            "b", nb, config.nb_neg, config.b_min, config.b_max, config.b_curvature
        )
        a = AssetGrid.curved("a", na, 0.0, config.a_max, config.a_curvature)
        return cls(b, a, config.nz)

    @property
    def one_asset(self) -> bool:
        """True when the illiquid dimension is a single point."""
        return self.na == 1

    def shape(self, ny: int) -> Tuple[int, int, int, int]:
        """Full state-space shape for ``ny`` income states."""
        return (self.nb, self.na, self.nz, ny)

    def full(self, array: np.ndarray, ny: int) -> np.ndarray:
        """Broadcast a grid-shaped view to the full state space."""
        return np.broadcast_to(array, self.shape(ny))

    def flat_weights(self, ny: int) -> np.ndarray:
        """Trapezoidal integration weights, flattened with liquid fastest."""
        return self.full(self.trapezoidal, ny).ravel(order="F")

    def interpolation_matrix(self, target: "Grid") -> sparse.csr_matrix:
        """Bilinear interpolation in (b, a) from this grid onto ``target``.

        Returns:
            Matrix of shape (target.nb * target.na, nb * na) acting on one
            (z, y) block flattened with liquid fastest.
        """
        pb = self.b_grid.interpolation_matrix(target.b_grid.nodes)
        pa = self.a_grid.interpolation_matrix(target.a_grid.nodes)
        return sparse.kron(pa, pb, format="csr")

    def interpolate_onto(self, values: np.ndarray, target: "Grid") -> np.ndarray:
        """Interpolate a full state-space array onto ``target``'s asset nodes."""
        nb, na, nz, ny = values.shape
        blocks = values.reshape(nb * na, nz * ny, order="F")
        mapped = self.interpolation_matrix(target) @ blocks
        return np.asarray(mapped).reshape(target.nb, target.na, nz, ny, order="F")
