# weakfem/ufl/measures.py
from __future__ import annotations

from typing import Optional

from weakfem.ufl.expressions import Expression, as_expression


class Integral:
    """One term of a weak formulation: an integrand over a region."""

    def __init__(self, integrand: Expression, region: int, degree: Optional[int] = None):
        self.integrand = as_expression(integrand)
        self.region = int(region)
        self.degree = None if degree is None else int(degree)

    def __repr__(self):
        deg = "" if self.degree is None else f", degree={self.degree}"
        return f"Integral({self.integrand!r}, region={self.region}{deg})"

    def __neg__(self):
        return Integral(-self.integrand, self.region, self.degree)

    def __add__(self, other):
        from weakfem.ufl.forms import Form
        return Form([self]) + other

    def __sub__(self, other):
        from weakfem.ufl.forms import Form
        return Form([self]) - other


class Measure:
    """
    Integration measure bound to a region, as in ``integrand * dx(fluid)``.

    Whether the integral runs over elements or over facets follows from the
    dimension of the region once the mesh is loaded.
    """

    def __init__(self, region: Optional[int] = None, degree: Optional[int] = None):
        self.region = region
        self.degree = degree

    def __call__(self, region: int, degree: Optional[int] = None) -> "Measure":
        return Measure(region, degree if degree is not None else self.degree)

    def __rmul__(self, other) -> Integral:
        if self.region is None:
            raise TypeError("Bind the measure to a region first, e.g. dx(region).")
        return Integral(other, self.region, self.degree)

    def __repr__(self):
        return f"Measure(region={self.region}, degree={self.degree})"


#: Measure over a region's entities; call it with the region id.
dx = Measure()


def integral(region: int, integrand, degree: Optional[int] = None) -> Integral:
    return Integral(integrand, region, degree)
