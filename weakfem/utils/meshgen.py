"""weakfem.utils.meshgen
Structured quadrangle blocks, glued along shared sides.

A :class:`QuadBlock` is a straight-sided quadrangle meshed with a regular
``nx`` by ``ny`` grid.  Its four sides (side ``k`` runs from corner ``k`` to
corner ``k+1``) may carry a physical region, which tags the boundary lines
of that side.  :func:`blocks_to_arrays` merges coincident nodes of all blocks
and returns the raw arrays accepted by :meth:`weakfem.core.mesh.Mesh.set_data`.
"""
from typing import Dict, List, Optional, Sequence, Tuple

import numba
import numpy as np

__all__ = ["QuadBlock", "blocks_to_arrays", "structured_rectangle"]


class QuadBlock:
    """One structured block of the geometry."""

    def __init__(self, region: int, corners, divisions: Tuple[int, int],
                 sides: Optional[Dict[int, int]] = None):
        self.region = int(region)
        self.corners = np.asarray(corners, dtype=np.float64).reshape(4, 2)
        self.nx, self.ny = (int(d) for d in divisions)
        if self.nx < 1 or self.ny < 1:
            raise ValueError("A block needs at least one division per direction.")
        self.sides: Dict[int, int] = {}
        for side, rid in (sides or {}).items():
            self.set_side(side, rid)

    def set_side(self, side: int, region: int) -> "QuadBlock":
        if side not in (0, 1, 2, 3):
            raise ValueError(f"Side index must be 0..3, got {side}")
        self.sides[side] = int(region)
        return self

    def __repr__(self):
        return f"QuadBlock(region={self.region}, divisions=({self.nx}, {self.ny}), sides={self.sides})"


@numba.jit(nopython=True, cache=True)
def _block_points(corners: np.ndarray, nx: int, ny: int) -> np.ndarray:
    """Bilinear (transfinite) grid of a quadrangle, index ``j*(nx+1) + i``."""
    out = np.empty(((nx + 1) * (ny + 1), 2), dtype=np.float64)
    for j in range(ny + 1):
        v = j / ny
        for i in range(nx + 1):
            u = i / nx
            w0 = (1.0 - u) * (1.0 - v)
            w1 = u * (1.0 - v)
            w2 = u * v
            w3 = (1.0 - u) * v
            k = j * (nx + 1) + i
            out[k, 0] = w0 * corners[0, 0] + w1 * corners[1, 0] + w2 * corners[2, 0] + w3 * corners[3, 0]
            out[k, 1] = w0 * corners[0, 1] + w1 * corners[1, 1] + w2 * corners[2, 1] + w3 * corners[3, 1]
    return out


@numba.jit(nopython=True, cache=True)
def _block_cells(nx: int, ny: int) -> np.ndarray:
    """Local quad connectivity (counter-clockwise)."""
    cells = np.empty((nx * ny, 4), dtype=np.int64)
    for j in range(ny):
        for i in range(nx):
            e = j * nx + i
            bl = j * (nx + 1) + i
            cells[e, 0] = bl
            cells[e, 1] = bl + 1
            cells[e, 2] = bl + nx + 2
            cells[e, 3] = bl + nx + 1
    return cells


def _side_indices(nx: int, ny: int, side: int) -> List[int]:
    row = nx + 1
    if side == 0:
        return [i for i in range(nx + 1)]
    if side == 1:
        return [j * row + nx for j in range(ny + 1)]
    if side == 2:
        return [ny * row + i for i in range(nx, -1, -1)]
    return [j * row for j in range(ny, -1, -1)]


def blocks_to_arrays(blocks: Sequence[QuadBlock], triangles: bool = False, decimals: int = 9):
    """
    Mesh every block and glue coincident nodes.

    Returns
    -------
    points : (n, 2) ndarray
    elements : list of (element_type, corner tuple)
    element_regions : list of int
    lines : list of (node, node)
    line_regions : list of int
    """
    if not blocks:
        raise ValueError("No blocks to mesh.")
    span = max(float(np.ptp(np.vstack([b.corners for b in blocks]), axis=0).max()), 1.0)
    index: Dict[Tuple[float, float], int] = {}
    points: List[np.ndarray] = []
    elements, element_regions, lines, line_regions = [], [], [], []

    for block in blocks:
        local = _block_points(block.corners, block.nx, block.ny)
        glob = np.empty(len(local), dtype=np.int64)
        for k, xy in enumerate(local):
            key = tuple(np.round(xy / span, decimals))
            if key not in index:
                index[key] = len(points)
                points.append(xy)
            glob[k] = index[key]

        for cell in _block_cells(block.nx, block.ny):
            a, b, c, d = (int(glob[n]) for n in cell)
            if triangles:
                elements.extend([("tri", (a, b, c)), ("tri", (a, c, d))])
                element_regions.extend([block.region, block.region])
            else:
                elements.append(("quad", (a, b, c, d)))
                element_regions.append(block.region)

        for side, rid in block.sides.items():
            ids = [int(glob[n]) for n in _side_indices(block.nx, block.ny, side)]
            for a, b in zip(ids[:-1], ids[1:]):
                lines.append((a, b))
                line_regions.append(rid)

    return np.array(points, dtype=np.float64), elements, element_regions, lines, line_regions


def structured_rectangle(Lx: float, Ly: float, *, nx: int, ny: int, region: int = 1,
                         sides: Optional[Dict[int, int]] = None,
                         offset: Tuple[float, float] = (0.0, 0.0)) -> QuadBlock:
    """Axis-aligned block ``[x0, x0+Lx] x [y0, y0+Ly]``; sides bottom, right, top, left."""
    x0, y0 = offset
    corners = [[x0, y0], [x0 + Lx, y0], [x0 + Lx, y0 + Ly], [x0, y0 + Ly]]
    return QuadBlock(region, corners, (nx, ny), sides)
