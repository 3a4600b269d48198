"""weakfem.ufl.forms
Weak formulations: an ordered list of integral terms read as ``sum(terms) = 0``.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from weakfem.core.dofhandler import DofNumbering
from weakfem.errors import FormulationError
from weakfem.ufl.compilers import AssemblyParameters, FormCompiler
from weakfem.ufl.expressions import Field, TestFunction, TrialFunction
from weakfem.ufl.measures import Integral

logger = logging.getLogger(__name__)


class Form:
    """Represents the sum of several integrals."""

    def __init__(self, integrals: list):
        self.integrals: List[Integral] = []
        for term in integrals:
            if isinstance(term, Form):
                self.integrals.extend(term.integrals)
            elif isinstance(term, Integral):
                self.integrals.append(term)
            else:
                raise TypeError(f"A Form can only be built from Integral or Form objects, not {type(term)}")

    def __add__(self, other):
        return Form(self.integrals + Form([other]).integrals)

    def __sub__(self, other):
        return self + (-Form([other]))

    def __neg__(self):
        return Form([-term for term in self.integrals])

    def __iter__(self):
        return iter(self.integrals)

    def __len__(self):
        return len(self.integrals)

    def __repr__(self):
        if not self.integrals:
            return "Form()"
        pieces = [f"  [{i}] {integral!r}" for i, integral in enumerate(self.integrals, start=1)]
        return "Form(\n" + ",\n".join(pieces) + "\n)"


class Formulation:
    """
    Ordered collection of integral terms.

    Terms bilinear in (test, trial) build the matrix, terms linear in the
    test function the right-hand side with a minus sign.  Assembly is a pure
    function of the current field values, orders and constraints.
    """

    def __init__(self, name: Optional[str] = None, params: Optional[AssemblyParameters] = None):
        self.name = name or "formulation"
        self.terms: List[Integral] = []
        self.params = params
        self._numbering: Optional[DofNumbering] = None

    def __iadd__(self, term):
        for t in Form([term]):
            self._append(t)
        return self

    def add_term(self, region: int, integrand, degree: Optional[int] = None) -> "Formulation":
        self._append(Integral(integrand, region, degree))
        return self

    def _append(self, term: Integral) -> None:
        if not any(node.is_test for node in term.integrand.walk()):
            raise FormulationError(f"Term {term!r} holds no test function.")
        self.terms.append(term)

    def __len__(self):
        return len(self.terms)

    def __repr__(self):
        return f"Formulation({self.name!r}, terms={len(self.terms)})"

    # ------------------------------------------------------------------
    def unknowns(self) -> List[Field]:
        """Fields appearing as test or trial function, in order of first appearance."""
        out, seen = [], set()
        for term in self.terms:
            for node in term.integrand.walk():
                if isinstance(node, (TestFunction, TrialFunction)) and id(node.field) not in seen:
                    seen.add(id(node.field))
                    out.append(node.field)
        return out

    def mesh(self):
        fields = self.unknowns()
        if not fields:
            raise FormulationError(f"Formulation '{self.name}' has no terms.")
        return fields[0].mesh

    def numbering(self) -> DofNumbering:
        """Fresh numbering from the current orders and constraints."""
        self._numbering = DofNumbering(self.unknowns())
        return self._numbering

    def assemble(self, params: Optional[AssemblyParameters] = None) -> Tuple[sp.csr_matrix, np.ndarray]:
        numbering = self.numbering()
        compiler = FormCompiler(self.mesh(), params or self.params)
        return compiler.assemble(self.terms, numbering)

    def set_solution(self, x: np.ndarray) -> None:
        """Write unknowns and constrained values back into the fields."""
        if self._numbering is None:
            raise FormulationError("set_solution() needs a previous assemble().")
        self._numbering.scatter_solution(x)

    def solve(self, lin_params=None, params: Optional[AssemblyParameters] = None) -> np.ndarray:
        from weakfem.solvers.linear import solve_linear
        A, b = self.assemble(params)
        x = solve_linear(A, b, lin_params)
        self.set_solution(x)
        return x


def solve(formulation: Formulation, lin_params=None, params: Optional[AssemblyParameters] = None) -> np.ndarray:
    """Assemble, solve and write back a linear formulation."""
    return formulation.solve(lin_params, params)
