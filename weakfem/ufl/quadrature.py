# weakfem/ufl/quadrature.py
from __future__ import annotations

import logging
from typing import Callable, Dict, Union

from weakfem.ufl.expressions import (
    Abs, Array, Component, Constant, Div, Divergence, Dot, Expression, Field, Grad, Inner,
    Neg, Norm, Normal, Power, Prod, Sqrt, Sub, Sum, TestFunction, Trace, Transpose, TrialFunction,
)

logger = logging.getLogger(__name__)

# extra degree assumed for non-polynomial operations (norm, sqrt, division)
_NONPOLY_EXTRA = 2


class PolynomialDegreeEstimator:
    """
    Estimates the polynomial degree of an expression tree.

    Used by the compiler to select a quadrature rule per integral term.  On
    quadrangles the degree is counted per direction (tensor rules), so a
    derivative does not lower it; on triangles it does.
    """

    # degree rules for node kinds added after the fact, see register()
    _rules: Dict[type, Union[int, Callable]] = {}

    @classmethod
    def register(cls, node_type: type, rule: Union[int, Callable]) -> None:
        """
        Degree of a new node kind: a fixed integer, or
        ``rule(degree_of, node) -> int`` where ``degree_of`` estimates the
        node's operands.
        """
        cls._rules[node_type] = rule

    def __init__(self, element_type: str = "tri"):
        self.element_type = element_type
        self._cache: Dict[int, int] = {}

    def estimate_degree(self, expr: Expression) -> int:
        self._cache.clear()
        degree = self._get_degree(expr)
        logger.debug("Estimated polynomial degree for '%r' on %s is %d.", expr, self.element_type, degree)
        return degree

    def _get_degree(self, expr: Expression) -> int:
        key = id(expr)
        if key in self._cache:
            return self._cache[key]

        rule = next((self._rules[c] for c in type(expr).__mro__ if c in self._rules), None)
        if rule is not None:
            result = int(rule(self._get_degree, expr) if callable(rule) else rule)
        elif isinstance(expr, Constant):
            result = 0
        elif isinstance(expr, Field):
            result = expr.max_order()
        elif isinstance(expr, (TestFunction, TrialFunction)):
            result = expr.field.max_order()
        elif isinstance(expr, Normal):
            result = 0
        elif isinstance(expr, (Grad, Divergence)):
            d = self._get_degree(expr.operand)
            result = d if self.element_type == "quad" else max(0, d - 1)
        elif isinstance(expr, (Sum, Sub)):
            result = max(self._get_degree(expr.a), self._get_degree(expr.b))
        elif isinstance(expr, (Prod, Dot, Inner)):
            result = self._get_degree(expr.a) + self._get_degree(expr.b)
        elif isinstance(expr, (Neg, Transpose, Trace, Component, Abs)):
            result = self._get_degree(expr.operand)
        elif isinstance(expr, Array):
            result = max((self._get_degree(i) for i in expr.items), default=0)
        elif isinstance(expr, (Norm, Sqrt)):
            d = self._get_degree(expr.operand)
            result = d + _NONPOLY_EXTRA if d else 0
        elif isinstance(expr, Div):
            deg_a, deg_b = self._get_degree(expr.a), self._get_degree(expr.b)
            if deg_b != 0:
                logger.debug("Division by non-constant '%r'; degree is approximate.", expr.b)
                deg_a += _NONPOLY_EXTRA
            result = deg_a
        elif isinstance(expr, Power):
            base = self._get_degree(expr.a)
            exponent = expr.b.value if isinstance(expr.b, Constant) else None
            if exponent is not None and exponent.ndim == 0 and float(exponent).is_integer() and exponent >= 0:
                result = base * int(exponent)
            else:
                result = base + _NONPOLY_EXTRA if base else 0
        else:
            raise NotImplementedError(f"Polynomial degree estimation not implemented for type {type(expr)}")

        self._cache[key] = result
        return result
