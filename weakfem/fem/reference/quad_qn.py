from functools import lru_cache
import sympy as sp
import numpy as np


def lattice(n: int) -> np.ndarray:
    """Tensor lattice on [-1,1]^2; eta outer, xi inner: index = j*(n+1) + i."""
    if n == 0:
        return np.array([[0.0, 0.0]])
    t = np.linspace(-1.0, 1.0, n + 1)
    return np.array([[x, y] for y in t for x in t], dtype=float)


@lru_cache(maxsize=None)
def _lagrange_1d(n: int):
    x = sp.symbols("xi")
    nodes = [sp.Rational(2 * k, n) - 1 for k in range(n + 1)]
    out = []
    for i, xi_i in enumerate(nodes):
        num, den = sp.S(1), sp.S(1)
        for j, xj in enumerate(nodes):
            if i != j:
                num *= (x - xj)
                den *= (xi_i - xj)
        out.append(sp.expand(num / den))
    return out


@lru_cache(maxsize=None)
def quad_qn(n: int):
    """Tensor-product Q_n basis on [-1,1]^2 as sympy expressions in (xi, eta)."""
    if n < 0:
        raise ValueError("Polynomial order n must be non-negative.")
    xi, eta = sp.symbols("xi eta")
    if n == 0:
        return [sp.S(1)], [(sp.S(0), sp.S(0))]
    L = _lagrange_1d(n)
    Lx = [l.subs(sp.Symbol("xi"), xi) for l in L]
    Ly = [l.subs(sp.Symbol("xi"), eta) for l in L]
    basis = [sp.expand(Ly[j] * Lx[i]) for j in range(n + 1) for i in range(n + 1)]
    grads = [(sp.diff(phi, xi), sp.diff(phi, eta)) for phi in basis]
    return basis, grads
