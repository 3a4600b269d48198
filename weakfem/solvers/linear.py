"""Sparse linear and generalised eigenvalue solves (scipy backends)."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from weakfem.config import default_linear_backend
from weakfem.errors import SingularSystemError, SolverDidNotConvergeError

logger = logging.getLogger(__name__)


@dataclass
class LinearSolverParameters:
    """Sparse linear solver settings."""

    backend: str = field(default_factory=default_linear_backend)   # "direct" | "gmres"
    tol: float = 1e-12
    maxit: int = 10_000
    restart: int = 200


def solve_linear(A: sp.spmatrix, b: np.ndarray, params: Optional[LinearSolverParameters] = None) -> np.ndarray:
    params = params or LinearSolverParameters()
    A = sp.csc_matrix(A)
    b = np.asarray(b, dtype=float)
    if A.shape[0] == 0:
        return np.zeros(0)
    if params.backend == "direct":
        try:
            lu = spla.splu(A)
        except RuntimeError as exc:
            raise SingularSystemError(f"Factorisation failed: {exc}") from exc
        x = lu.solve(b)
        if not np.all(np.isfinite(x)):
            raise SingularSystemError("Direct solve produced non-finite values.")
        return x
    if params.backend == "gmres":
        ilu = None
        try:
            ilu = spla.spilu(A)
        except RuntimeError:
            logger.warning("ILU preconditioner failed; running unpreconditioned GMRES.")
        M = spla.LinearOperator(A.shape, ilu.solve) if ilu is not None else None
        x, info = spla.gmres(A, b, rtol=params.tol, atol=0.0, restart=params.restart,
                             maxiter=params.maxit, M=M)
        if info != 0:
            raise SolverDidNotConvergeError(f"GMRES stopped with info={info}")
        return x
    raise ValueError(f"Unknown linear solver backend '{params.backend}'.")


def solve_eigen(A: sp.spmatrix, B: Optional[sp.spmatrix] = None, count: int = 6,
                shift: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
    """
    ``count`` eigenpairs of ``A x = lambda B x`` nearest to ``shift``.

    Eigenvalues are returned sorted by distance to the shift; eigenvectors
    are the columns of the second array.
    """
    A = sp.csc_matrix(A)
    n = A.shape[0]
    if not 0 < count < n - 1:
        raise ValueError(f"count must be in [1, {n - 2}] for a system of size {n}, got {count}")
    try:
        vals, vecs = spla.eigs(A, k=count, M=None if B is None else sp.csc_matrix(B), sigma=shift, which="LM")
    except spla.ArpackNoConvergence as exc:
        raise SolverDidNotConvergeError(f"ARPACK did not converge: {exc}") from exc
    except RuntimeError as exc:
        raise SingularSystemError(f"Shift-invert factorisation failed: {exc}") from exc
    order = np.argsort(np.abs(vals - shift))
    vals, vecs = vals[order], vecs[:, order]
    if np.allclose(vals.imag, 0.0):
        vals, vecs = vals.real, vecs.real
    return vals, vecs
