"""weakfem.postprocess.evaluators
Integration over regions and interpolation at physical points.
"""
from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from weakfem.errors import PointOutsideRegionError
from weakfem.fem import transform
from weakfem.fem.reference import contains
from weakfem.ufl.compilers import FormCompiler
from weakfem.ufl.expressions import Expression, fields_in

logger = logging.getLogger(__name__)

_BBOX_TOL = 1e-12
_REF_TOL = 1e-10


def _mesh_of(expr: Expression, mesh=None):
    if mesh is not None:
        return mesh
    for f in fields_in(expr):
        return f.mesh
    raise ValueError(f"Cannot infer a mesh from {expr!r}; pass mesh= explicitly.")


def integrate(expr: Expression, region: int, degree: Optional[int] = None, mesh=None):
    """Integral of *expr* over a region's elements, or over its edges when it has none."""
    mesh = _mesh_of(expr, mesh)
    value = FormCompiler(mesh).integrate(expr, region, degree)
    logger.debug("integrate(%r, region=%d) = %s", expr, region, value)
    return value


def locate(mesh, region: int, point):
    """(element id, reference coordinates) of the region element containing *point*."""
    xy = np.asarray(point, dtype=float).ravel()[:2]
    elements = mesh.entities(region).elements.to_indices()
    if len(elements) == 0:
        raise PointOutsideRegionError(region, xy)
    bbox = mesh.element_bboxes()[elements]
    span = max(float(np.ptp(mesh.nodes_x_y_pos, axis=0).max()), 1.0)
    tol = _BBOX_TOL * span
    hit = ((bbox[:, 0] - tol <= xy[0]) & (xy[0] <= bbox[:, 2] + tol)
           & (bbox[:, 1] - tol <= xy[1]) & (xy[1] <= bbox[:, 3] + tol))
    for eid in elements[hit]:
        etype = mesh.elements_list[eid].element_type
        try:
            ref = transform.inverse_mapping(mesh, int(eid), xy)
        except (ValueError, np.linalg.LinAlgError):
            continue
        if contains(etype, ref, _REF_TOL):
            return int(eid), ref
    raise PointOutsideRegionError(region, xy)


def interpolate(expr: Expression, region: int, point, mesh=None) -> np.ndarray:
    """Flattened value of *expr* at a physical point inside *region*."""
    mesh = _mesh_of(expr, mesh)
    eid, ref = locate(mesh, region, point)
    etype = mesh.elements_list[eid].element_type
    vals = FormCompiler(mesh).evaluate_points(expr, etype, [eid], ref[None, :])
    return np.asarray(vals[0, 0], dtype=float).ravel()
