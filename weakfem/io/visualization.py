"""weakfem.io.visualization"""
import logging
import os
from typing import Dict, List, Tuple

import matplotlib.pyplot as plt
import matplotlib.tri as mtri
import numpy as np

from weakfem.fem import transform
from weakfem.fem.reference import get_reference
from weakfem.ufl.compilers import FormCompiler
from weakfem.ufl.expressions import Expression, Field, fields_in

logger = logging.getLogger(__name__)


def _subcells(element_type: str, n: int) -> Tuple[str, np.ndarray]:
    """Split an order-n lattice into linear sub-cells (local lattice indices)."""
    cells = []
    if element_type == "quad":
        for j in range(n):
            for i in range(n):
                k = j * (n + 1) + i
                cells.append((k, k + 1, k + n + 2, k + n + 1))
        return "quad", np.array(cells, dtype=int)
    row = [sum(n + 1 - r for r in range(j)) for j in range(n + 1)]
    for j in range(n):
        for i in range(n - j):
            a, b, c = row[j] + i, row[j] + i + 1, row[j + 1] + i
            cells.append((a, b, c))
            if i + j < n - 1:
                cells.append((b, row[j + 1] + i + 1, c))
    return "tri", np.array(cells, dtype=int)


def sample(expr: Expression, region: int, order: int = 1, mesh=None):
    """
    Evaluate *expr* on a lattice of the given order in every entity of a region.

    Element points are not shared, so discontinuous quantities are kept.
    Returns ``points (N, 2), cells [(kind, conn)], values (N, *value_shape)``.
    """
    if order < 1:
        raise ValueError("Output order must be at least 1.")
    if mesh is None:
        mesh = next(iter(fields_in(expr))).mesh
    compiler = FormCompiler(mesh)
    ent = mesh.entities(region)
    points: List[np.ndarray] = []
    values: List[np.ndarray] = []
    cells: List[Tuple[str, np.ndarray]] = []
    offset = 0

    groups: Dict[tuple, List[int]] = {}
    if ent.elements.any():
        for eid in ent.elements.to_indices():
            groups.setdefault((mesh.elements_list[eid].element_type, None), []).append(int(eid))
    else:
        for gid in ent.edges.to_indices():
            edge = mesh.edges_list[gid]
            groups.setdefault((mesh.elements_list[edge.left].element_type, edge.left_lid), []).append(edge.left)

    for (etype, lid), eids in groups.items():
        if lid is None:
            ref_pts = get_reference(etype, order).nodes
            kind, local = _subcells(etype, order)
        else:
            ref_pts, _ = transform.edge_points(etype, lid, np.linspace(-1.0, 1.0, order + 1))
            kind, local = "line", np.array([(i, i + 1) for i in range(order)], dtype=int)
        X, _, _, _ = transform.geometry(mesh, etype, eids, ref_pts)
        vals = compiler.evaluate_points(expr, etype, eids, ref_pts)
        nq = len(ref_pts)
        for e in range(len(eids)):
            points.append(X[e])
            values.append(vals[e])
            cells.append((kind, local + offset))
            offset += nq

    if not points:
        raise ValueError(f"Region {region} has no elements or edges to sample.")
    merged: Dict[str, List[np.ndarray]] = {}
    for kind, conn in cells:
        merged.setdefault(kind, []).append(conn)
    return (np.vstack(points), [(k, np.vstack(c)) for k, c in merged.items()],
            np.concatenate(values, axis=0))


def _write_png(filename: str, points: np.ndarray, cells, values: np.ndarray, title: str) -> None:
    vals = values.reshape(len(values), -1)
    scalar = vals[:, 0] if vals.shape[1] == 1 else np.linalg.norm(vals, axis=1)
    fig, ax = plt.subplots(figsize=(8, 6))
    triangles = []
    for kind, conn in cells:
        if kind == "tri":
            triangles.extend(conn.tolist())
        elif kind == "quad":
            triangles.extend(conn[:, [0, 1, 2]].tolist())
            triangles.extend(conn[:, [0, 2, 3]].tolist())
    if triangles:
        tri = mtri.Triangulation(points[:, 0], points[:, 1], np.array(triangles))
        cf = ax.tricontourf(tri, scalar, levels=20, cmap="viridis")
    else:
        cf = ax.scatter(points[:, 0], points[:, 1], c=scalar, cmap="viridis", s=8)
    fig.colorbar(cf, ax=ax)
    ax.set_aspect("equal", adjustable="box")
    ax.set_title(title if vals.shape[1] == 1 else f"|{title}|")
    fig.savefig(filename, dpi=150, bbox_inches="tight")
    plt.close(fig)


def write(expr: Expression, region: int, target: str, order: int = 1) -> None:
    """Write *expr* on *region* to a file; the extension picks the writer."""
    ext = os.path.splitext(target)[1].lower()
    if ext not in (".vtk", ".vtu", ".png"):
        raise ValueError(f"No writer for extension '{ext}' (use .vtk, .vtu or .png).")
    name = expr.name if isinstance(expr, Field) else "value"
    points, cells, values = sample(expr, region, order)
    if ext in (".vtk", ".vtu"):
        from weakfem.io.vtk import export_vtk
        export_vtk(target, points, cells, {name: values})
    else:
        _write_png(target, points, cells, values, name)
        logger.info("Plot written to %s", target)
