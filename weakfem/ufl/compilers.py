# weakfem/ufl/compilers.py
"""
Batched evaluation of expression trees and assembly of weak formulations.

Each visitor returns a mapping ``(test_field, trial_field) -> array`` where
either key entry may be ``None``.  Arrays have the layout::

    (n_elements, n_points, n_test, n_trial, *value_shape)

and any of the leading axes may have length one and broadcast.  The test and
trial axes index the element-local DOFs ``basis * components + component``.
Terms without a test function are only legal in post-processing; terms with
a trial function go to the matrix, the others to the right-hand side.
"""
from __future__ import annotations

import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from weakfem.config import default_assembly_workers
from weakfem.errors import FormulationError, RegionError
from weakfem.fem import transform
from weakfem.fem.reference import get_reference
from weakfem.integration import quadrature
from weakfem.ufl.expressions import (
    Abs, Array, Component, Constant, Div, Divergence, Dot, Expression, Field, Grad, Inner,
    Neg, Norm, Normal, Power, Prod, Sqrt, Sub, Sum, TestFunction, Trace, Transpose, TrialFunction,
    fields_in,
)
from weakfem.ufl.quadrature import PolynomialDegreeEstimator

logger = logging.getLogger(__name__)

_CONST = (None, None)


@dataclass
class AssemblyParameters:
    workers: int = field(default_factory=default_assembly_workers)
    batch_size: int = 256
    quadrature_degree: Optional[int] = None

    def __post_init__(self):
        if self.workers < 1 or self.batch_size < 1:
            raise ValueError("workers and batch_size must be positive.")


# ========================================================================
#  Batches
# ========================================================================
class _Batch:
    """Elements sharing element type, reference points and field orders."""

    def __init__(self, mesh, element_type: str, element_ids, ref_points: np.ndarray,
                 ref_weights: Optional[np.ndarray] = None, half_tangent: Optional[np.ndarray] = None):
        self.mesh = mesh
        self.element_type = element_type
        self.eids = np.asarray(element_ids, dtype=int)
        self.points = np.asarray(ref_points, dtype=float)
        X, J, detJ, Jinv = transform.geometry(mesh, element_type, self.eids, self.points)
        self.X, self.Jinv = X, Jinv
        self.weights = None
        self.normals = None
        if ref_weights is not None:
            if half_tangent is None:
                self.weights = ref_weights[None, :] * np.abs(detJ)
            else:
                length, self.normals = transform.facet_measure(J, half_tangent)
                self.weights = ref_weights[None, :] * length
        self._tables: Dict[int, tuple] = {}

    @property
    def ne(self) -> int:
        return len(self.eids)

    @property
    def nq(self) -> int:
        return len(self.points)

    def prepare(self, fields: Sequence[Field]) -> "_Batch":
        """Tabulate bases and snapshot coefficients, so evaluation only reads."""
        for f in fields:
            self.table(f)
        return self

    def table(self, f: Field):
        """(N (nq, nb), physical gradients (ne, nq, nb, 2), local dofs (ne, nb*c), coefficients)."""
        key = id(f)
        if key not in self._tables:
            dm = f.dofmap
            p = int(dm.element_order[self.eids[0]])
            c = f.components
            if p < 0:
                N = np.zeros((self.nq, 0))
                G = np.zeros((self.ne, self.nq, 0, 2))
                dofs = np.zeros((self.ne, 0), dtype=int)
            else:
                ref = get_reference(self.element_type, p)
                N = ref.shape(self.points)
                G = np.einsum("qbk,eqki->eqbi", ref.grad(self.points), self.Jinv)
                dofs = dm.element_dof_array(self.eids)
            coef = f.values[dofs].reshape(self.ne, -1, c)
            self._tables[key] = (N, G, dofs, coef)
        return self._tables[key]


def _vrank(a: np.ndarray) -> int:
    return a.ndim - 4


def _lift(a: np.ndarray) -> np.ndarray:
    """(ne, nq, *v) -> (ne, nq, 1, 1, *v)"""
    return a.reshape(a.shape[:2] + (1, 1) + a.shape[2:])


def _accumulate(out: Dict, key, arr: np.ndarray) -> None:
    out[key] = out[key] + arr if key in out else arr


def _combine(ka, kb):
    if ka[0] is not None and kb[0] is not None:
        raise FormulationError("A product holds two test functions.")
    if ka[1] is not None and kb[1] is not None:
        raise FormulationError("A product holds two trial functions; the formulation must be linear in the unknowns.")
    return (ka[0] if ka[0] is not None else kb[0], ka[1] if ka[1] is not None else kb[1])


def _const(d: Dict, what: str) -> np.ndarray:
    if any(k != _CONST for k in d):
        raise FormulationError(f"{what} cannot take a test or trial function.")
    return d[_CONST]


def _placeholder(vals: np.ndarray, components: int, trial: bool) -> np.ndarray:
    """Spread basis data (ne, nq, nb, *d) over components, then add the test/trial axes."""
    ne, nq, nb = vals.shape[:3]
    out = np.einsum("eqb...,cd->eqbcd...", vals, np.eye(components))
    out = out.reshape((ne, nq, nb * components, components) + vals.shape[3:])
    if components == 1:
        out = out[:, :, :, 0]
    return out[:, :, None] if trial else out[:, :, :, None]


def _product(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    ra, rb = _vrank(a), _vrank(b)
    if ra == 0:
        return a.reshape(a.shape + (1,) * rb) * b
    if rb == 0:
        return a * b.reshape(b.shape + (1,) * ra)
    if a.shape[-1] != b.shape[4]:
        raise FormulationError(f"Cannot contract value shapes {a.shape[4:]} and {b.shape[4:]}.")
    if ra == 1 and rb == 1:
        return (a * b).sum(axis=-1)
    if ra == 2 and rb == 1:
        return np.matmul(a, b[..., None])[..., 0]
    if ra == 1 and rb == 2:
        return np.matmul(a[..., None, :], b)[..., 0, :]
    if ra == 2 and rb == 2:
        return np.matmul(a, b)
    raise FormulationError(f"Product of ranks {ra} and {rb} is not defined.")


# ========================================================================
#  The Compiler
# ========================================================================
class FormCompiler:
    """Evaluates expressions on element batches and assembles formulations."""

    # node kinds added with register(), shared by every compiler
    _extensions: Dict[type, Callable] = {}

    def __init__(self, mesh, params: Optional[AssemblyParameters] = None):
        self.mesh = mesh
        self.params = params or AssemblyParameters()
        self._dispatch: Dict[type, Callable] = {
            Constant: self._visit_Constant,
            Field: self._visit_Field,
            TestFunction: self._visit_TestFunction,
            TrialFunction: self._visit_TrialFunction,
            Normal: self._visit_Normal,
            Grad: self._visit_Grad,
            Divergence: self._visit_Divergence,
            Sum: self._visit_Sum,
            Sub: self._visit_Sub,
            Neg: self._visit_Neg,
            Prod: self._visit_Prod,
            Dot: self._visit_Dot,
            Inner: self._visit_Inner,
            Div: self._visit_Div,
            Power: self._visit_Power,
            Norm: self._visit_Norm,
            Abs: self._visit_Abs,
            Sqrt: self._visit_Sqrt,
            Transpose: self._visit_Transpose,
            Trace: self._visit_Trace,
            Component: self._visit_Component,
            Array: self._visit_Array,
        }
        for node_type, visitor in self._extensions.items():
            self._dispatch[node_type] = functools.partial(visitor, self)

    @classmethod
    def register(cls, node_type: type, visitor: Callable, degree=None) -> None:
        """
        Teach every compiler a new node kind.

        ``visitor(compiler, node, batch)`` returns the operand dict of the
        node; it may call ``compiler.evaluate(child, batch)``.  *degree* is
        the quadrature rule for the node, an integer or
        ``degree(degree_of, node)``; without it, terms holding the node need
        an explicit quadrature degree.
        """
        cls._extensions[node_type] = visitor
        if degree is not None:
            PolynomialDegreeEstimator.register(node_type, degree)

    def evaluate(self, expr: Expression, batch: _Batch) -> Dict:
        return self._visit(expr, batch)

    def _visit(self, node, b: _Batch) -> Dict:
        for cls in type(node).__mro__:
            fn = self._dispatch.get(cls)
            if fn is not None:
                return fn(node, b)
        raise NotImplementedError(f"No visitor for node type {type(node).__name__}")

    # --------------------- terminals ---------------------
    def _visit_Constant(self, n: Constant, b: _Batch):
        return {_CONST: n.value.reshape((1, 1, 1, 1) + n.shape)}

    def _visit_Field(self, n: Field, b: _Batch):
        if n.is_coordinate:
            axis = n.ftype.coordinate_axis
            val = b.X[..., axis] if axis < 2 else np.zeros((b.ne, b.nq))
            return {_CONST: _lift(val)}
        N, _, _, coef = b.table(n)
        val = np.einsum("qb,ebc->eqc", N, coef)
        if n.components == 1:
            val = val[..., 0]
        return {_CONST: _lift(val)}

    def _visit_TestFunction(self, n: TestFunction, b: _Batch):
        N = b.table(n.field)[0]
        return {(n.field, None): _placeholder(N[None], n.field.components, trial=False)}

    def _visit_TrialFunction(self, n: TrialFunction, b: _Batch):
        N = b.table(n.field)[0]
        return {(None, n.field): _placeholder(N[None], n.field.components, trial=True)}

    def _visit_Normal(self, n: Normal, b: _Batch):
        if b.normals is None:
            raise FormulationError("normal() is only defined on facet (1-D) regions.")
        nrm = b.normals
        if n.region is not None:
            elements = self.mesh.entities(n.region).elements
            if not elements.any():
                raise RegionError(f"normal({n.region}): the region holds no 2-D elements to point out of.")
            inside = elements.mask[b.eids]
            nrm = nrm * np.where(inside, 1.0, -1.0)[:, None, None]
        return {_CONST: _lift(nrm)}

    # --------------------- derivatives ---------------------
    def _visit_Grad(self, n: Grad, b: _Batch):
        op = n.operand
        if isinstance(op, Constant):
            return {_CONST: np.zeros((1, 1, 1, 1) + op.shape + (2,))}
        if isinstance(op, Field) and op.is_coordinate:
            e = np.zeros(2)
            if op.ftype.coordinate_axis < 2:
                e[op.ftype.coordinate_axis] = 1.0
            return {_CONST: e.reshape(1, 1, 1, 1, 2)}
        if isinstance(op, Field):
            _, G, _, coef = b.table(op)
            g = np.einsum("eqbi,ebc->eqci", G, coef)
            if op.components == 1:
                g = g[:, :, 0]
            return {_CONST: _lift(g)}
        if isinstance(op, TestFunction):
            G = b.table(op.field)[1]
            return {(op.field, None): _placeholder(G, op.field.components, trial=False)}
        if isinstance(op, TrialFunction):
            G = b.table(op.field)[1]
            return {(None, op.field): _placeholder(G, op.field.components, trial=True)}
        raise FormulationError(f"grad() applies to fields, test or trial functions, not {op!r}")

    def _visit_Divergence(self, n: Divergence, b: _Batch):
        out = {}
        for k, g in self._visit_Grad(Grad(n.operand), b).items():
            if _vrank(g) != 2 or g.shape[-2] != 2:
                raise FormulationError(f"div() needs a 2-component vector operand, got {n.operand!r}")
            out[k] = np.trace(g, axis1=-2, axis2=-1)
        return out

    # --------------------- algebra ---------------------
    def _visit_Sum(self, n: Sum, b: _Batch, sign: float = 1.0):
        A, B = self._visit(n.a, b), self._visit(n.b, b)
        shapes = {a.shape[4:] for a in A.values()} | {v.shape[4:] for v in B.values()}
        if len(shapes) > 1:
            raise FormulationError(f"Adding values of different shapes {sorted(shapes)} in {n!r}")
        out = dict(A)
        for k, v in B.items():
            _accumulate(out, k, sign * v)
        return out

    def _visit_Sub(self, n: Sub, b: _Batch):
        return self._visit_Sum(n, b, sign=-1.0)

    def _visit_Neg(self, n: Neg, b: _Batch):
        return {k: -v for k, v in self._visit(n.operand, b).items()}

    def _binary(self, n, b: _Batch, op):
        A, B = self._visit(n.a, b), self._visit(n.b, b)
        out = {}
        for ka, va in A.items():
            for kb, vb in B.items():
                _accumulate(out, _combine(ka, kb), op(va, vb))
        return out

    def _visit_Prod(self, n: Prod, b: _Batch):
        return self._binary(n, b, _product)

    def _visit_Dot(self, n: Dot, b: _Batch):
        def dot(va, vb):
            if _vrank(va) == 0 or _vrank(vb) == 0:
                raise FormulationError(f"dot() needs vector or matrix operands in {n!r}")
            return _product(va, vb)
        return self._binary(n, b, dot)

    def _visit_Inner(self, n: Inner, b: _Batch):
        def inner(va, vb):
            if va.shape[4:] != vb.shape[4:]:
                raise FormulationError(f"inner() of shapes {va.shape[4:]} and {vb.shape[4:]}")
            prod = va * vb
            return prod.sum(axis=tuple(range(4, prod.ndim))) if prod.ndim > 4 else prod
        return self._binary(n, b, inner)

    def _visit_Div(self, n: Div, b: _Batch):
        den = _const(self._visit(n.b, b), "A denominator")
        if _vrank(den) != 0:
            raise FormulationError(f"Division by a non-scalar in {n!r}")
        return {k: v / den.reshape(den.shape + (1,) * _vrank(v))
                for k, v in self._visit(n.a, b).items()}

    def _visit_Power(self, n: Power, b: _Batch):
        base = _const(self._visit(n.a, b), "A power")
        exponent = _const(self._visit(n.b, b), "An exponent")
        if _vrank(exponent) != 0:
            raise FormulationError("Exponents are scalars.")
        return {_CONST: np.power(base, exponent.reshape(exponent.shape + (1,) * _vrank(base)))}

    def _visit_Norm(self, n: Norm, b: _Batch):
        v = _const(self._visit(n.operand, b), "norm()")
        r = _vrank(v)
        return {_CONST: np.abs(v) if r == 0 else np.sqrt((v * v).sum(axis=tuple(range(4, 4 + r))))}

    def _visit_Abs(self, n: Abs, b: _Batch):
        return {_CONST: np.abs(_const(self._visit(n.operand, b), "abs()"))}

    def _visit_Sqrt(self, n: Sqrt, b: _Batch):
        return {_CONST: np.sqrt(_const(self._visit(n.operand, b), "sqrt()"))}

    def _visit_Transpose(self, n: Transpose, b: _Batch):
        out = {}
        for k, v in self._visit(n.operand, b).items():
            if _vrank(v) != 2:
                raise FormulationError(f"transpose() needs a matrix, got rank {_vrank(v)}")
            out[k] = np.swapaxes(v, -1, -2)
        return out

    def _visit_Trace(self, n: Trace, b: _Batch):
        out = {}
        for k, v in self._visit(n.operand, b).items():
            if _vrank(v) != 2:
                raise FormulationError(f"trace() needs a matrix, got rank {_vrank(v)}")
            out[k] = np.trace(v, axis1=-2, axis2=-1)
        return out

    def _visit_Component(self, n: Component, b: _Batch):
        out = {}
        for k, v in self._visit(n.operand, b).items():
            if _vrank(v) == 0 or not 0 <= n.index < v.shape[4]:
                raise IndexError(f"Component {n.index} out of range for {n.operand!r}")
            out[k] = v[:, :, :, :, n.index]
        return out

    def _visit_Array(self, n: Array, b: _Batch):
        parts = [self._visit(item, b) for item in n.items]
        keys = []
        for p in parts:
            for k, v in p.items():
                if _vrank(v) != 0:
                    raise FormulationError("array2x1/array3x1 entries must be scalars.")
                if k not in keys:
                    keys.append(k)
        out = {}
        for k in keys:
            shape = np.broadcast_shapes(*(p[k].shape for p in parts if k in p))
            cols = [np.broadcast_to(p[k], shape) if k in p else np.zeros(shape) for p in parts]
            out[k] = np.stack(cols, axis=-1)
        return out

    # ====================================================================
    #  Batching
    # ====================================================================
    def batches(self, expr: Expression, region: int, degree: Optional[int] = None) -> List[_Batch]:
        """Quadrature batches covering a region: its elements, or its edges when it has none."""
        mesh = self.mesh
        ent = mesh.entities(region)
        dof_fields = [f for f in fields_in(expr) if not f.is_coordinate]
        orders = [f.dofmap.element_order for f in dof_fields]
        if degree is None:
            degree = self.params.quadrature_degree
        size = self.params.batch_size
        out: List[_Batch] = []

        if ent.elements.any():
            groups: Dict[tuple, List[int]] = {}
            for eid in ent.elements.to_indices():
                etype = mesh.elements_list[eid].element_type
                groups.setdefault((etype,) + tuple(int(o[eid]) for o in orders), []).append(int(eid))
            for key, eids in groups.items():
                etype = key[0]
                deg = degree if degree is not None else PolynomialDegreeEstimator(etype).estimate_degree(expr)
                pts, wts = quadrature.volume(etype, deg)
                for start in range(0, len(eids), size):
                    out.append(_Batch(mesh, etype, eids[start:start + size], pts, wts).prepare(dof_fields))
            return out

        if ent.edges.any():
            groups = {}
            for gid in ent.edges.to_indices():
                edge = mesh.edges_list[gid]
                parent, lid = edge.left, edge.left_lid
                if edge.right is not None and not all(o[parent] >= 0 for o in orders) \
                        and all(o[edge.right] >= 0 for o in orders):
                    parent, lid = edge.right, edge.right_lid
                etype = mesh.elements_list[parent].element_type
                groups.setdefault((etype, lid) + tuple(int(o[parent]) for o in orders), []).append(parent)
            for key, eids in groups.items():
                etype, lid = key[0], key[1]
                deg = degree if degree is not None else PolynomialDegreeEstimator(etype).estimate_degree(expr)
                pts, wts, half = quadrature.edge(etype, lid, deg)
                for start in range(0, len(eids), size):
                    out.append(_Batch(mesh, etype, eids[start:start + size], pts, wts, half).prepare(dof_fields))
            return out

        raise FormulationError(f"Region {region} has no elements or edges to integrate over.")

    # ====================================================================
    #  Assembly
    # ====================================================================
    def assemble(self, terms: Sequence, numbering) -> Tuple[sp.csr_matrix, np.ndarray]:
        """Matrix and right-hand side of ``sum(terms) = 0`` in the given numbering."""
        t0 = time.perf_counter()
        work = []
        for term in terms:
            if not any(node.is_test for node in term.integrand.walk()):
                raise FormulationError(f"Term {term!r} holds no test function.")
            for node in term.integrand.walk():
                if isinstance(node, Normal) and node.region is not None:
                    self.mesh.entities(node.region)
            for batch in self.batches(term.integrand, term.region, term.degree):
                work.append((term.integrand, batch))

        def run(item):
            return self._local_system(item[0], item[1], numbering)

        workers = min(self.params.workers, max(1, len(work)))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(run, work))
        else:
            results = [run(item) for item in work]

        n = numbering.n_unknowns
        rows = np.concatenate([r[0] for r in results]) if results else np.empty(0, dtype=int)
        cols = np.concatenate([r[1] for r in results]) if results else np.empty(0, dtype=int)
        vals = np.concatenate([r[2] for r in results]) if results else np.empty(0)
        A = sp.coo_matrix((vals, (rows, cols)), shape=(n, n)).tocsr()
        rhs = np.zeros(n)
        for r in results:
            np.add.at(rhs, r[3], r[4])
        logger.info("Assembled %d terms in %d batches: %d unknowns, %d nonzeros (%.3fs, %d workers)",
                    len(terms), len(work), n, A.nnz, time.perf_counter() - t0, workers)
        return A, rhs

    def _local_system(self, expr: Expression, b: _Batch, numbering):
        rows, cols, vals, rrows, rvals = [], [], [], [], []
        for (t, u), arr in self.evaluate(expr, b).items():
            if t is None:
                raise FormulationError(f"Part of {expr!r} holds no test function.")
            if _vrank(arr) != 0:
                raise FormulationError(f"Integrand {expr!r} is not scalar (value shape {arr.shape[4:]}).")
            t_dofs = b.table(t)[2]
            nT = t_dofs.shape[1]
            nU = 1 if u is None else b.table(u)[2].shape[1]
            arr = np.broadcast_to(arr, (b.ne, b.nq, nT, nU))
            local = np.einsum("eqtu,eq->etu", arr, b.weights)
            tg = numbering.global_dofs(t)[t_dofs]
            if u is None:
                keep = tg >= 0
                rrows.append(tg[keep])
                rvals.append(-local[:, :, 0][keep])
                continue
            u_dofs = b.table(u)[2]
            ug = numbering.global_dofs(u)[u_dofs]
            free = (tg[:, :, None] >= 0) & (ug[:, None, :] >= 0)
            rows.append(np.broadcast_to(tg[:, :, None], free.shape)[free])
            cols.append(np.broadcast_to(ug[:, None, :], free.shape)[free])
            vals.append(local[free])
            known = np.where(ug < 0, numbering.known_values(u)[u_dofs], 0.0)
            lifted = np.einsum("etu,eu->et", local, known)
            keep = tg >= 0
            rrows.append(tg[keep])
            rvals.append(-lifted[keep])

        def cat(parts, dtype):
            return np.concatenate(parts).astype(dtype, copy=False) if parts else np.empty(0, dtype=dtype)
        return cat(rows, int), cat(cols, int), cat(vals, float), cat(rrows, int), cat(rvals, float)

    # ====================================================================
    #  Point evaluation and integration
    # ====================================================================
    def evaluate_points(self, expr: Expression, element_type: str, element_ids, ref_points) -> np.ndarray:
        """Values ``(ne, nq, *value_shape)`` at shared reference points of same-type elements."""
        eids = np.asarray(element_ids, dtype=int)
        dof_fields = [f for f in fields_in(expr) if not f.is_coordinate]
        orders = [f.dofmap.element_order for f in dof_fields]
        groups: Dict[tuple, List[int]] = {}
        for i, eid in enumerate(eids):
            groups.setdefault(tuple(int(o[eid]) for o in orders), []).append(i)
        out = None
        for idx in groups.values():
            batch = _Batch(self.mesh, element_type, eids[idx], ref_points).prepare(dof_fields)
            val = _const(self.evaluate(expr, batch), "Point evaluation")
            val = np.broadcast_to(val, (batch.ne, batch.nq, 1, 1) + val.shape[4:])[:, :, 0, 0]
            if out is None:
                out = np.empty((len(eids), batch.nq) + val.shape[2:])
            out[idx] = val
        return out

    def integrate(self, expr: Expression, region: int, degree: Optional[int] = None):
        total = None
        for batch in self.batches(expr, region, degree):
            val = _const(self.evaluate(expr, batch), "Integration")
            val = np.broadcast_to(val, (batch.ne, batch.nq, 1, 1) + val.shape[4:])[:, :, 0, 0]
            part = np.einsum("eq...,eq->...", val, batch.weights)
            total = part if total is None else total + part
        return float(total) if np.ndim(total) == 0 else total


def evaluate_at_lattice(expr: Expression, mesh, dofmap, parents: np.ndarray, lattice: np.ndarray) -> np.ndarray:
    """Values of *expr* at the lattice nodes ``(parent element, lattice index)`` of a field."""
    compiler = FormCompiler(mesh)
    groups: Dict[Tuple[str, int], List[int]] = {}
    for i, eid in enumerate(parents):
        etype = mesh.elements_list[int(eid)].element_type
        groups.setdefault((etype, int(dofmap.element_order[eid])), []).append(i)
    out = None
    for (etype, p), idx in groups.items():
        ueids, inv = np.unique(parents[idx], return_inverse=True)
        vals = compiler.evaluate_points(expr, etype, ueids, get_reference(etype, p).nodes)
        picked = vals[inv.ravel(), lattice[idx]]
        if out is None:
            out = np.empty((len(parents),) + picked.shape[1:])
        out[idx] = picked
    return out
