"""Searchlight neighborhood templates.

A voxel belongs to the searchlight if its distance from the center is
*smaller than or equal to* the radius. Distances are measured in physical
space, derived from voxel-index space via a linear transform, so that in
general the template is an ellipsoid in index space.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchlightTemplate:
    """Integer offsets from the center voxel, sorted by distance."""

    offsets: np.ndarray  # (n_voxels, ndim), int; row 0 is the center
    distances: np.ndarray  # (n_voxels,)
    radius: float

    @property
    def size(self) -> int:
        return self.offsets.shape[0]

    @property
    def ndim(self) -> int:
        return self.offsets.shape[1]

    @property
    def is_center(self) -> np.ndarray:
        return np.all(self.offsets == 0, axis=1)


def _linear_part(mat, ndim: int) -> np.ndarray:
    if mat is None:
        return np.eye(ndim)
    mat = np.asarray(mat, dtype=float)
    if mat.shape[0] < ndim or mat.shape[1] < ndim:
        raise ValueError(f"Transform of shape {mat.shape} does not cover {ndim} dimensions")
    return mat[:ndim, :ndim]


def build_searchlight(radius: float, mat=None, ndim: int = 3) -> SearchlightTemplate:
    """Build the template of a searchlight sphere.

    Parameters
    ----------
    radius : float
        Radius in physical units (voxels if ``mat`` is None).
    mat : ndarray, optional
        Voxel-index to physical-space transform; either the linear part
        (ndim x ndim) or an affine matrix whose upper-left block is used.
    ndim : int
        Number of grid dimensions.

    Returns
    -------
    SearchlightTemplate
    """
    if radius < 0:
        raise ValueError(f"Searchlight radius must be non-negative, got {radius}")
    A = _linear_part(mat, ndim)
    if abs(np.linalg.det(A)) == 0:
        raise ValueError("Voxel-to-physical transform is singular")

    if radius == 0:
        bounds = np.zeros(ndim, dtype=int)
    else:
        # bounding box of the ellipsoid {i : |A i| <= radius} in index space
        M = A / radius
        bounds = np.ceil(np.sqrt(np.diag(np.linalg.inv(M.T @ M)))).astype(int)

    grids = np.meshgrid(*[np.arange(-b, b + 1) for b in bounds], indexing="ij")
    offsets = np.stack([g.ravel() for g in grids], axis=1)
    distances = np.sqrt(np.sum((offsets @ A.T) ** 2, axis=1))

    keep = distances <= radius
    offsets = offsets[keep]
    distances = distances[keep]
    order = np.argsort(distances, kind="stable")

    return SearchlightTemplate(
        offsets=offsets[order],
        distances=distances[order],
        radius=float(radius),
    )


def searchlight_size(radius: float) -> int:
    """Number of voxels in a searchlight of ``radius`` voxels.

    This is the size for a searchlight completely inside the mask; at the
    borders the actual number is smaller.
    """
    b = int(np.ceil(radius + 1))
    d = np.linalg.norm(np.indices((2 * b + 1,) * 3) - b, axis=0)
    return int(np.count_nonzero(d <= radius))


def searchlight_size_table(radius_min: float = 0.0, radius_max: float = 5.0) -> pd.DataFrame:
    """Table of all distinct searchlight sizes between two radii.

    Radii are rounded up to the smallest precision that still separates
    them from the next larger distinct radius, so each listed value can be
    used directly as a searchlight radius.

    Returns
    -------
    DataFrame with columns ``radius`` and ``p_max``.
    """
    if radius_min > radius_max:
        radius_min, radius_max = radius_max, radius_min
    b = int(np.ceil(radius_max + 1))
    d = np.linalg.norm(np.indices((2 * b + 1,) * 3) - b, axis=0).ravel()

    radii = np.unique(d)
    radii = radii[radii <= radius_max + 1]
    sizes = np.array([np.count_nonzero(d <= r) for r in radii])

    rounded = radii.copy()
    for i in range(radii.size - 1):
        for digits in range(17):
            prec = 10.0 ** digits
            rr = np.ceil(radii[i] * prec) / prec
            if rr < radii[i + 1]:
                rounded[i] = rr
                break
        else:
            raise RuntimeError(f"Cannot separate radius {radii[i]} from the next one")

    keep = (rounded >= radius_min) & (rounded <= radius_max)
    return pd.DataFrame({"radius": rounded[keep], "p_max": sizes[keep]})
