"""weakfem.fem.transform
Reference -> physical mapping for straight-sided (affine / bilinear) elements.
"""
import numpy as np

from weakfem.fem.reference import get_reference, REFERENCE_CORNERS, EDGE_TABLE

# lattice index -> corner index for the order-1 geometry basis
_LATTICE_FROM_CORNERS = {"tri": [0, 1, 2], "quad": [0, 1, 3, 2]}


def corner_coords(mesh, element_ids) -> np.ndarray:
    """(ne, n_corners, 2) physical corner coordinates in lattice order."""
    eids = np.atleast_1d(np.asarray(element_ids, dtype=int))
    etype = mesh.elements_list[int(eids[0])].element_type
    conn = np.array([mesh.elements_list[e].corner_nodes for e in eids], dtype=int)
    return mesh.nodes_x_y_pos[conn][:, _LATTICE_FROM_CORNERS[etype], :]


def geometry(mesh, element_type: str, element_ids, ref_points: np.ndarray):
    """
    Batched geometry at reference points.

    Returns
    -------
    X : (ne, nq, 2) physical points
    J : (ne, nq, 2, 2) with ``J[..., i, k] = dx_i / dxi_k``
    detJ : (ne, nq)
    Jinv : (ne, nq, 2, 2)
    """
    ref = get_reference(element_type, 1)
    coords = corner_coords(mesh, element_ids)               # (ne, nc, 2)
    N = ref.shape(ref_points)                               # (nq, nc)
    dN = ref.grad(ref_points)                               # (nq, nc, 2)
    X = np.einsum("qn,eni->eqi", N, coords)
    J = np.einsum("qnk,eni->eqik", dN, coords)
    detJ = np.linalg.det(J)
    if np.any(detJ == 0.0):
        raise ValueError("Degenerate element: zero Jacobian determinant.")
    Jinv = np.linalg.inv(J)
    return X, J, detJ, Jinv


def x_mapping(mesh, elem_id: int, xi_eta) -> np.ndarray:
    etype = mesh.elements_list[elem_id].element_type
    X, _, _, _ = geometry(mesh, etype, [elem_id], np.atleast_2d(xi_eta))
    return X[0, 0]


def inverse_mapping(mesh, elem_id: int, x, tol: float = 1e-12, maxiter: int = 50) -> np.ndarray:
    """Newton solve of x(xi) = x for one element."""
    etype = mesh.elements_list[elem_id].element_type
    xi = np.array([0.0, 0.0]) if etype == "quad" else np.array([1 / 3, 1 / 3])
    x = np.asarray(x, dtype=float)[:2]
    for _ in range(maxiter):
        X, J, _, _ = geometry(mesh, etype, [elem_id], xi[None, :])
        delta = np.linalg.solve(J[0, 0], x - X[0, 0])
        xi = xi + delta
        if np.linalg.norm(delta) < tol:
            break
    else:
        raise ValueError(f"Inverse mapping did not converge for elem {elem_id}, x={x}")
    return xi


def edge_points(element_type: str, local_edge: int, s: np.ndarray):
    """
    Map 1-D parameters s in [-1, 1] onto a local edge.

    Returns the reference points (n, 2) and the half tangent (b - a) / 2,
    which scales 1-D weights once pushed through J.
    """
    a, b = (REFERENCE_CORNERS[element_type][c] for c in EDGE_TABLE[element_type][local_edge])
    half = 0.5 * (b - a)
    pts = 0.5 * (a + b)[None, :] + np.outer(s, half)
    return pts, half


def facet_measure(J: np.ndarray, half_tangent: np.ndarray):
    """Line measure and outward unit normal on a CCW element edge."""
    t = np.einsum("eqik,k->eqi", J, half_tangent)
    length = np.linalg.norm(t, axis=-1)
    normal = np.stack((t[..., 1], -t[..., 0]), axis=-1) / length[..., None]
    return length, normal
