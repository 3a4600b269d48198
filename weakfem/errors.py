"""weakfem.errors

Two failure classes live here.

* :class:`ProgrammerError` and its subclasses flag a defect in the calling
  code (an unknown function-space name, a malformed region composition, a
  field used before it has an interpolation order).  The library never
  catches them.
* :class:`SolverError`, :class:`PointOutsideRegionError` and
  :class:`NonlinearSolveError` are runtime conditions that callers may
  inspect and recover from.
"""
import logging

logger = logging.getLogger(__name__)


class ProgrammerError(Exception):
    """Unrecoverable invariant violation in the calling formulation code."""

    def __init__(self, message: str):
        super().__init__(message)
        logger.critical(message)


class UnknownTypeName(ProgrammerError):
    pass


class UnknownTypeIndex(ProgrammerError):
    pass


class RegionError(ProgrammerError):
    pass


class NumberingError(ProgrammerError):
    pass


class FormulationError(ProgrammerError):
    pass


class SolverError(RuntimeError):
    """The linear or eigenvalue collaborator failed."""


class SingularSystemError(SolverError):
    pass


class SolverDidNotConvergeError(SolverError):
    pass


class PointOutsideRegionError(LookupError):
    def __init__(self, region: int, point):
        self.region = region
        self.point = tuple(float(c) for c in point)
        super().__init__(f"Point {self.point} is not inside any element of region {region}.")


class NonlinearSolveError(RuntimeError):
    """Raised when the nonlinear loop has to escalate a solver failure."""

    def __init__(self, message: str, report):
        super().__init__(message)
        self.report = report
