r"""
nonlinear_solver.py  -  ramped fixed-point driver
=================================================
Solves a nonlinear problem by repeated relinearised solves.  The
formulation is written in terms of the current field values (a Picard
or Newton linearisation); every iteration re-assembles it, solves, writes
the result back and compares a scalar measure of the solution before and after.

A load parameter (an inlet velocity, a source amplitude) can be ramped from
``initial`` to ``target``; convergence is only declared once the ramp has
reached its target *and* the relative change is below tolerance.
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from weakfem.errors import NonlinearSolveError, SolverError
from weakfem.solvers.linear import LinearSolverParameters, solve_linear
from weakfem.ufl.compilers import AssemblyParameters

logger = logging.getLogger(__name__)


class LoopState(enum.Enum):
    RAMPING = "ramping"
    ASSEMBLING = "assembling"
    SOLVING = "solving"
    CONVERGED = "converged"
    DIVERGED = "diverged"


# ----------------------------------------------------------------------------
#  Parameter dataclasses
# ----------------------------------------------------------------------------
@dataclass
class RampParameters:
    """Moves a scalar parameter from ``initial`` toward ``target`` by ``increment``."""

    initial: float
    target: float
    increment: float = 0.0
    epsilon: float = 1e-12

    def __post_init__(self):
        if self.initial != self.target and self.increment <= 0.0:
            raise ValueError("A ramp with initial != target needs a positive increment.")

    def at_target(self, value: float) -> bool:
        return abs(value - self.target) <= self.epsilon

    def ramp_step(self, value: float) -> float:
        """Next value; clamps to the target when within epsilon or on overshoot."""
        if self.at_target(value):
            return self.target
        direction = 1.0 if self.target > value else -1.0
        nxt = value + direction * self.increment
        if (self.target - nxt) * direction <= self.epsilon:
            return self.target
        return nxt


@dataclass
class NonlinearParameters:
    """Settings that govern the outer loop."""

    tolerance: float = 1e-10            # on the relative change of the measure
    max_iterations: int = 100
    divergence_window: int = 5          # non-decreasing changes tolerated at target
    max_wall_time: Optional[float] = None   # seconds


@dataclass
class SolveState:
    parameter: float = 0.0
    previous_measure: float = 0.0
    current_measure: float = 0.0
    relative_change: float = float("inf")
    iteration: int = 0
    ramp_steps: int = 0


@dataclass
class SolveReport:
    state: LoopState
    reason: str
    iterations: int
    ramp_steps: int
    parameter: float
    history: List[Dict[str, float]] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.state is LoopState.CONVERGED


def relative_change(before: float, after: float) -> float:
    if before == after:
        return 0.0
    if after == 0.0:
        return float("inf")
    return abs(after - before) / abs(after)


class NonlinearSolver:
    """
    Outer loop around a :class:`~weakfem.ufl.forms.Formulation`.

    Parameters
    ----------
    formulation : Formulation
    measure : callable
        Returns a scalar summary of the solution, e.g.
        ``lambda: norm(v).integrate(fluid, 2)``.
    on_parameter : callable, optional
        Called with the ramped value before each assembly (typically to
        update a constraint).
    ramp : RampParameters, optional
        Without a ramp the parameter stays at 0 and counts as at target.
    """

    def __init__(self, formulation, measure: Callable[[], float],
                 on_parameter: Optional[Callable[[float], None]] = None,
                 ramp: Optional[RampParameters] = None,
                 params: Optional[NonlinearParameters] = None,
                 lin_params: Optional[LinearSolverParameters] = None,
                 assembly_params: Optional[AssemblyParameters] = None):
        self.formulation = formulation
        self.measure = measure
        self.on_parameter = on_parameter
        self.ramp = ramp or RampParameters(0.0, 0.0)
        self.params = params or NonlinearParameters()
        self.lin_params = lin_params or LinearSolverParameters()
        self.assembly_params = assembly_params
        self.state = LoopState.RAMPING
        self.solve_state = SolveState()

    def _report(self, reason: str, history) -> SolveReport:
        s = self.solve_state
        return SolveReport(self.state, reason, s.iteration, s.ramp_steps, s.parameter, list(history))

    def run(self) -> SolveReport:
        p = self.params
        self.solve_state = s = SolveState(parameter=self.ramp.initial)
        history: List[Dict[str, float]] = []
        used = set()
        stalls = 0
        last_at_target: Optional[float] = None
        t0 = time.perf_counter()

        while True:
            self.state = LoopState.RAMPING
            s.parameter = self.ramp.ramp_step(s.parameter)
            if s.parameter not in used:
                used.add(s.parameter)
                s.ramp_steps += 1
            if self.on_parameter is not None:
                self.on_parameter(s.parameter)
            s.iteration += 1
            s.previous_measure = float(self.measure())

            self.state = LoopState.ASSEMBLING
            A, b = self.formulation.assemble(self.assembly_params)

            self.state = LoopState.SOLVING
            try:
                x = solve_linear(A, b, self.lin_params)
            except SolverError as exc:
                self.state = LoopState.DIVERGED
                report = self._report("solver_failure", history)
                logger.error("Linear solve failed at iteration %d: %s", s.iteration, exc)
                raise NonlinearSolveError(f"Linear solve failed at iteration {s.iteration}", report) from exc
            self.formulation.set_solution(x)

            s.current_measure = float(self.measure())
            s.relative_change = relative_change(s.previous_measure, s.current_measure)
            history.append({"iteration": s.iteration, "parameter": s.parameter,
                            "measure": s.current_measure, "relative_change": s.relative_change})
            logger.info("Iteration %d: parameter = %g, relative change = %.3e",
                        s.iteration, s.parameter, s.relative_change)

            at_target = self.ramp.at_target(s.parameter)
            if at_target and s.relative_change < p.tolerance:
                self.state = LoopState.CONVERGED
                logger.info("Converged after %d iterations (%d ramp values).", s.iteration, s.ramp_steps)
                return self._report("converged", history)

            if at_target:
                if last_at_target is not None and s.relative_change >= last_at_target:
                    stalls += 1
                else:
                    stalls = 0
                last_at_target = s.relative_change
                if stalls >= p.divergence_window:
                    self.state = LoopState.DIVERGED
                    logger.warning("Relative change stopped decreasing for %d iterations.", stalls)
                    return self._report("not_decreasing", history)

            if s.iteration >= p.max_iterations:
                self.state = LoopState.DIVERGED
                logger.warning("No convergence within %d iterations.", p.max_iterations)
                return self._report("max_iterations", history)
            if p.max_wall_time is not None and time.perf_counter() - t0 > p.max_wall_time:
                self.state = LoopState.DIVERGED
                logger.warning("Wall-clock limit of %gs reached.", p.max_wall_time)
                return self._report("max_wall_time", history)
