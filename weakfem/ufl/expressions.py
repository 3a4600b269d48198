"""weakfem.ufl.expressions
Declarative expression tree.

Python operators on :class:`Expression` only build nodes; evaluation lives
in :mod:`weakfem.ufl.compilers`.
"""
from __future__ import annotations

import itertools
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from weakfem.core.dofhandler import DofMap, forced_order
from weakfem.errors import FormulationError, NumberingError, RegionError
from weakfem.fem.shapefunctions import H1, HCURL, parse_field_type

logger = logging.getLogger(__name__)

_MAX_ORDER = 4
_field_ids = itertools.count()


def as_expression(value) -> "Expression":
    if isinstance(value, Expression):
        return value
    return Constant(value)


class Expression:
    """Base class for any object in a symbolic FEM expression."""
    is_test = False
    is_trial = False

    def __repr__(self):
        return f"{self.__class__.__name__}()"

    def __add__(self, other):
        return Sum(self, as_expression(other))

    def __radd__(self, other):
        return Sum(as_expression(other), self)

    def __sub__(self, other):
        return Sub(self, as_expression(other))

    def __rsub__(self, other):
        return Sub(as_expression(other), self)

    def __mul__(self, other):
        """Left multiplication. If *other* is a Measure, create an Integral."""
        from weakfem.ufl.measures import Measure
        if isinstance(other, Measure):
            return other.__rmul__(self)
        return Prod(self, as_expression(other))

    def __rmul__(self, other):
        return Prod(as_expression(other), self)

    def __truediv__(self, other):
        return Div(self, as_expression(other))

    def __rtruediv__(self, other):
        return Div(as_expression(other), self)

    def __pow__(self, other):
        return Power(self, as_expression(other))

    def __rpow__(self, other):
        return Power(as_expression(other), self)

    def __neg__(self):
        return Neg(self)

    def __pos__(self):
        return self

    def __getitem__(self, index):
        return Component(self, int(index))

    def __hash__(self):
        return id(self)

    @property
    def T(self):
        return Transpose(self)

    def children(self) -> Tuple["Expression", ...]:
        return ()

    def walk(self):
        """Depth-first, left-to-right traversal (each node once)."""
        seen = set()
        stack = [self]
        while stack:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            yield node
            stack.extend(reversed(node.children()))

    # ------------------------------------------------------------------
    #  Post-processing
    # ------------------------------------------------------------------
    def integrate(self, region: int, degree: Optional[int] = None):
        from weakfem.postprocess.evaluators import integrate
        return integrate(self, region, degree)

    def interpolate(self, region: int, point) -> np.ndarray:
        from weakfem.postprocess.evaluators import interpolate
        return interpolate(self, region, point)

    def write(self, region: int, target: str, order: int = 1) -> None:
        from weakfem.io.visualization import write
        write(self, region, target, order)


class _Binary(Expression):
    symbol = "?"

    def __init__(self, a, b):
        self.a, self.b = as_expression(a), as_expression(b)

    def children(self):
        return (self.a, self.b)

    def __repr__(self):
        return f"({self.a!r} {self.symbol} {self.b!r})"


class _Unary(Expression):
    def __init__(self, operand):
        self.operand = as_expression(operand)

    def children(self):
        return (self.operand,)

    def __repr__(self):
        return f"{self.__class__.__name__}({self.operand!r})"


# ---------------------------------------------------------------------------
# Terminals
# ---------------------------------------------------------------------------
class Constant(Expression):
    def __init__(self, value):
        self.value = np.asarray(value, dtype=float)
        if self.value.ndim > 2:
            raise ValueError("Constants are scalars, vectors or matrices.")

    @property
    def shape(self):
        return self.value.shape

    def __float__(self):
        return float(self.value)

    def __repr__(self):
        return f"Constant({self.value.tolist()!r})"


class Field(Expression):
    """
    A named quantity on a mesh, defined on a function space such as
    ``"h1"``, ``"h1xy"``, ``"h1d"`` or ``"one"``, or a coordinate ``"x"``,
    ``"y"``, ``"z"``.

    Interpolation orders and constraints are set per region; in both cases
    the latest declaration wins on entities covered more than once.
    """

    def __init__(self, mesh, type_name: str, name: Optional[str] = None):
        self.mesh = mesh
        self.ftype = parse_field_type(type_name)
        if self.ftype.type_index == HCURL:
            raise FormulationError("Curl-conforming fields are not available.")
        self.name = name or f"{type_name}_{next(_field_ids)}"
        self._orders: Dict[int, int] = {}
        self._constraints: Dict[int, Optional[Expression]] = {}
        self._dofmap: Optional[DofMap] = None
        self._stale = True
        self._values = np.zeros(0)

    def __repr__(self):
        return f"Field({self.name!r}, {self.ftype.name!r})"

    @property
    def components(self) -> int:
        return self.ftype.components

    @property
    def is_coordinate(self) -> bool:
        return self.ftype.is_coordinate

    def _require_dofs(self, what: str) -> None:
        if self.is_coordinate:
            raise NumberingError(f"Coordinate field '{self.name}' owns no DOFs ({what}).")

    def _check_region(self, region) -> int:
        region = int(region)
        if self.mesh.revision and not self.mesh.regions.is_known(region):
            raise RegionError(f"Unknown region {region} for field '{self.name}'.")
        return region

    # ------------------------------------------------------------------
    #  Orders
    # ------------------------------------------------------------------
    def set_order(self, region: int, order: int) -> None:
        self._require_dofs("set_order")
        order = forced_order(self.ftype.type_index, int(order))
        low = 1 if self.ftype.type_index == H1 else 0
        if not low <= order <= _MAX_ORDER:
            raise ValueError(f"Order {order} out of range [{low}, {_MAX_ORDER}] for '{self.ftype.name}'.")
        region = self._check_region(region)
        self._orders.pop(region, None)
        self._orders[region] = order
        self._stale = True

    def has_orders(self) -> bool:
        return bool(self._orders)

    def orders(self) -> List[Tuple[int, int]]:
        return list(self._orders.items())

    def max_order(self) -> int:
        if self.is_coordinate:
            return 1
        return max(self._orders.values(), default=0)

    @property
    def dofmap(self) -> DofMap:
        self._require_dofs("dofmap")
        if not self._orders:
            raise NumberingError(f"Field '{self.name}' has no interpolation order on any region.")
        old = self._dofmap
        if old is None or self._stale or old.revision != self.mesh.revision:
            new = DofMap(self.mesh, self.ftype.type_index, self.components, self.orders())
            self._values = new.transfer(old, self._values)
            self._dofmap = new
            self._stale = False
        return self._dofmap

    # ------------------------------------------------------------------
    #  Values
    # ------------------------------------------------------------------
    @property
    def values(self) -> np.ndarray:
        """Field-local DOF values, index ``node * components + component``."""
        n = self.dofmap.n_dofs
        if len(self._values) != n:
            self._values = np.zeros(n)
        return self._values

    @values.setter
    def values(self, v) -> None:
        v = np.asarray(v, dtype=float).ravel()
        if len(v) != self.dofmap.n_dofs:
            raise ValueError(f"Field '{self.name}' has {self.dofmap.n_dofs} DOFs, got {len(v)} values.")
        self._values = v.copy()

    def set_value(self, region: int, value) -> None:
        """Nodal interpolation of *value* on the lattice nodes of *region*."""
        nodes, vals = self._nodal_interpolant(int(region), as_expression(value))
        out = np.array(self.values, copy=True)
        c = self.components
        for comp in range(c):
            out[nodes * c + comp] = vals[:, comp]
        self._values = out

    def _nodal_interpolant(self, region: int, expr: Expression):
        from weakfem.ufl.compilers import evaluate_at_lattice
        dm = self.dofmap
        nodes, parents, lattice = dm.region_nodes(region)
        if len(nodes) == 0:
            return nodes, np.zeros((0, self.components))
        vals = evaluate_at_lattice(expr, self.mesh, dm, parents, lattice)
        expected = () if self.components == 1 else (self.components,)
        if vals.shape[1:] != expected:
            raise FormulationError(
                f"Value for field '{self.name}' has shape {vals.shape[1:]}, expected {expected}.")
        return nodes, vals.reshape(len(nodes), self.components)

    # ------------------------------------------------------------------
    #  Constraints
    # ------------------------------------------------------------------
    def set_constraint(self, region: int, value=None) -> None:
        """Constrain the DOFs on *region*; ``None`` means zero."""
        self._require_dofs("set_constraint")
        region = self._check_region(region)
        self._constraints.pop(region, None)
        self._constraints[region] = None if value is None else as_expression(value)

    def remove_constraint(self, region: int) -> None:
        self._constraints.pop(int(region), None)

    def constraints(self) -> List[Tuple[int, Optional[Expression]]]:
        return list(self._constraints.items())

    def constraint_state(self):
        """(mask, values) over the field DOFs, records applied in declaration order."""
        dm = self.dofmap
        mask = np.zeros(dm.n_dofs, dtype=bool)
        values = np.array(self.values, copy=True)
        c = self.components
        for region, expr in self._constraints.items():
            if expr is None:
                nodes, _, _ = dm.region_nodes(region)
                vals = np.zeros((len(nodes), c))
            else:
                nodes, vals = self._nodal_interpolant(region, expr)
            for comp in range(c):
                values[nodes * c + comp] = vals[:, comp]
                mask[nodes * c + comp] = True
        return mask, values

    def copy(self, name: Optional[str] = None) -> "Field":
        out = Field(self.mesh, self.ftype.name, name or f"{self.name}_copy")
        out._orders = dict(self._orders)
        out._constraints = dict(self._constraints)
        if not self.is_coordinate and self._orders:
            out._values = np.array(self.values, copy=True)
            out._dofmap = self._dofmap
            out._stale = False
        return out


class TestFunction(Expression):
    is_test = True

    def __init__(self, field: Field):
        if not isinstance(field, Field) or field.is_coordinate:
            raise FormulationError(f"Test functions are taken on fields with DOFs, got {field!r}")
        self.field = field

    def __repr__(self):
        return f"tf({self.field.name})"


class TrialFunction(Expression):
    is_trial = True

    def __init__(self, field: Field):
        if not isinstance(field, Field) or field.is_coordinate:
            raise FormulationError(f"Trial functions are taken on fields with DOFs, got {field!r}")
        self.field = field

    def __repr__(self):
        return f"dof({self.field.name})"


class Normal(Expression):
    """Unit normal on a facet, pointing out of the volume region *region*."""

    def __init__(self, region: Optional[int] = None):
        self.region = None if region is None else int(region)

    def __repr__(self):
        return f"normal({self.region})"


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------
class Sum(_Binary):
    symbol = "+"


class Sub(_Binary):
    symbol = "-"


class Prod(_Binary):
    symbol = "*"


class Div(_Binary):
    symbol = "/"


class Power(_Binary):
    symbol = "**"


class Dot(_Binary):
    def __repr__(self):
        return f"dot({self.a!r}, {self.b!r})"


class Inner(_Binary):
    def __repr__(self):
        return f"inner({self.a!r}, {self.b!r})"


class Neg(_Unary):
    pass


class Grad(_Unary):
    pass


class Divergence(_Unary):
    pass


class Transpose(_Unary):
    pass


class Trace(_Unary):
    pass


class Norm(_Unary):
    pass


class Abs(_Unary):
    pass


class Sqrt(_Unary):
    pass


class Component(Expression):
    def __init__(self, operand, index: int):
        self.operand = as_expression(operand)
        self.index = index

    def children(self):
        return (self.operand,)

    def __repr__(self):
        return f"{self.operand!r}[{self.index}]"


class Array(Expression):
    """Column vector assembled from scalar expressions."""

    def __init__(self, items: Sequence):
        self.items = tuple(as_expression(i) for i in items)

    def children(self):
        return self.items

    def __repr__(self):
        return f"array({', '.join(repr(i) for i in self.items)})"


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def tf(field: Field) -> TestFunction:
    return TestFunction(field)


def dof(field: Field) -> TrialFunction:
    return TrialFunction(field)


def normal(region: Optional[int] = None) -> Normal:
    return Normal(region)


def grad(v): return Grad(v)
def div(v): return Divergence(v)
def dot(a, b): return Dot(a, b)
def inner(a, b): return Inner(a, b)
def transpose(a): return Transpose(a)
def trace(a): return Trace(a)
def norm(a): return Norm(a)
def sqrt(a): return Sqrt(a)
def abs_(a): return Abs(a)


def array2x1(a, b) -> Array:
    return Array((a, b))


def array3x1(a, b, c) -> Array:
    return Array((a, b, c))


def fields_in(expr: Expression) -> List[Field]:
    """Fields referenced by *expr*, directly or through placeholders, in order of appearance."""
    out, seen = [], set()
    for node in expr.walk():
        f = node if isinstance(node, Field) else getattr(node, "field", None)
        if isinstance(f, Field) and id(f) not in seen:
            seen.add(id(f))
            out.append(f)
    return out
