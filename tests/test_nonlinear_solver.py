import numpy as np
import pytest
import scipy.sparse as sp

from weakfem.core.mesh import Mesh
from weakfem.errors import NonlinearSolveError, SingularSystemError
from weakfem.solvers.nonlinear_solver import (
    LoopState, NonlinearParameters, NonlinearSolver, RampParameters, relative_change,
)
from weakfem.ufl.expressions import Field, array2x1, div, dof, grad, inner, norm, normal, tf
from weakfem.ufl.forms import Formulation
from weakfem.ufl.measures import dx
from weakfem.utils.meshgen import QuadBlock, structured_rectangle


class ScriptedFormulation:
    """Stands in for a Formulation: 1x1 systems with a prescribed solution sequence."""

    def __init__(self, solutions, matrix=None):
        self.solutions = list(solutions)
        self.matrix = matrix
        self.calls = 0
        self.value = 0.0

    def assemble(self, params=None):
        rhs = self.solutions[min(self.calls, len(self.solutions) - 1)]
        self.calls += 1
        if self.matrix is not None:
            return sp.csr_matrix(self.matrix), np.ones(self.matrix.shape[0])
        return sp.identity(1, format="csr"), np.array([rhs], dtype=float)

    def set_solution(self, x):
        self.value = float(x[0])


def laplace_problem():
    mesh = Mesh().load([structured_rectangle(1.0, 1.0, nx=2, ny=2, region=1, sides={0: 2, 1: 2, 2: 2, 3: 2})])
    u = Field(mesh, "h1", "u")
    u.set_order(1, 1)
    form = Formulation("laplace")
    form += inner(grad(dof(u)), grad(tf(u))) * dx(1)
    return u, form


def test_ramp_step():
    ramp = RampParameters(0.0, 1.0, 0.3)
    assert np.isclose(ramp.ramp_step(0.5), 0.8)
    assert ramp.ramp_step(0.9) == 1.0
    assert ramp.ramp_step(1.0) == 1.0
    down = RampParameters(1.0, 0.0, 0.4)
    assert np.isclose(down.ramp_step(1.0), 0.6)
    assert down.ramp_step(0.2) == 0.0
    assert RampParameters(0.0, 1.0, 0.1, epsilon=0.05).ramp_step(0.86) == 1.0
    with pytest.raises(ValueError):
        RampParameters(0.0, 1.0)


def test_relative_change():
    assert relative_change(0.0, 0.0) == 0.0
    assert relative_change(1.0, 0.0) == float("inf")
    assert np.isclose(relative_change(1.0, 2.0), 0.5)


def test_linear_problem_converges_in_two_iterations():
    u, form = laplace_problem()
    solver = NonlinearSolver(form, lambda: norm(u).integrate(1, 2),
                             on_parameter=lambda value: u.set_constraint(2, value),
                             ramp=RampParameters(1.0, 1.0))
    report = solver.run()
    assert report.converged and report.reason == "converged"
    assert solver.state is LoopState.CONVERGED
    assert report.iterations == 2
    assert report.ramp_steps == 1
    assert np.allclose(u.values, 1.0)


def test_ramped_parameter_reaches_target():
    u, form = laplace_problem()
    seen = []

    def update(value):
        seen.append(value)
        u.set_constraint(2, value)

    solver = NonlinearSolver(form, lambda: norm(u).integrate(1, 2), on_parameter=update,
                             ramp=RampParameters(0.1, 0.3, 0.008))
    report = solver.run()
    assert report.converged
    assert report.parameter == 0.3
    assert report.ramp_steps == 25
    assert report.iterations == 26
    assert np.isclose(seen[0], 0.108)
    assert all(b >= a for a, b in zip(seen, seen[1:]))
    assert [h["iteration"] for h in report.history] == list(range(1, 27))
    assert np.isclose(u.interpolate(1, (0.5, 0.5))[0], 0.3)


def test_iteration_cap():
    u, form = laplace_problem()
    solver = NonlinearSolver(form, lambda: norm(u).integrate(1, 2),
                             on_parameter=lambda value: u.set_constraint(2, value),
                             ramp=RampParameters(0.1, 0.3, 0.008),
                             params=NonlinearParameters(max_iterations=3))
    report = solver.run()
    assert not report.converged
    assert report.state is LoopState.DIVERGED
    assert report.reason == "max_iterations"
    assert report.iterations == 3


def test_stalled_relative_change_is_reported():
    form = ScriptedFormulation([2.0 ** k for k in range(1, 50)])
    solver = NonlinearSolver(form, lambda: form.value, params=NonlinearParameters(divergence_window=3))
    report = solver.run()
    assert report.reason == "not_decreasing"
    assert report.iterations == 5
    assert [h["relative_change"] for h in report.history] == [1.0, 0.5, 0.5, 0.5, 0.5]


def test_wall_clock_limit():
    form = ScriptedFormulation([2.0 ** k for k in range(1, 50)])
    solver = NonlinearSolver(form, lambda: form.value, params=NonlinearParameters(max_wall_time=0.0))
    report = solver.run()
    assert report.reason == "max_wall_time"
    assert report.iterations == 1


def test_linear_solver_failure_escalates():
    form = ScriptedFormulation([1.0], matrix=np.array([[1.0, 1.0], [1.0, 1.0]]))
    solver = NonlinearSolver(form, lambda: form.value)
    with pytest.raises(NonlinearSolveError) as info:
        solver.run()
    assert isinstance(info.value.__cause__, SingularSystemError)
    assert info.value.report.reason == "solver_failure"
    assert info.value.report.state is LoopState.DIVERGED
    assert solver.state is LoopState.DIVERGED


def step_channel(coarsen=5):
    """Water channel widening past a step: 2 mm thin inlet part, 12 mm thick part."""
    fluid, inlet, outlet, skin = 1, 2, 3, 4
    h, lthin, lthick = 1e-3, 2e-3, 12e-3
    nlthin, nlthick, nhthin, nhthick = (n // coarsen for n in (30, 150, 20, 50))
    left = QuadBlock(fluid, [[0, 0], [lthin, 0], [lthin, h], [0, h]], (nlthin, nhthin)).set_side(3, inlet)
    right = QuadBlock(fluid, [[lthin, 0], [lthin + lthick, 0], [lthin + lthick, h], [lthin, h]],
                      (nlthick, nhthin)).set_side(1, outlet)
    thick = QuadBlock(fluid, [[lthin, h], [lthin + lthick, h], [lthin + lthick, 2 * h], [lthin, 2 * h]],
                      (nlthick, nhthick)).set_side(1, outlet)
    mesh = Mesh()
    mesh.regions.skin(fluid, target=skin)
    mesh.load([left, right, thick])
    wall = mesh.regions.exclusion(skin, mesh.regions.union([inlet, outlet]))
    return mesh, fluid, inlet, outlet, wall


def test_step_flow_converges_with_newton_linearisation():
    mesh, fluid, inlet, outlet, wall = step_channel()
    mu, rho, h = 8.9e-4, 1000.0, 1e-3
    v, p, y = Field(mesh, "h1xy", "v"), Field(mesh, "h1", "p"), Field(mesh, "y")
    v.set_constraint(wall)
    p.set_constraint(outlet)
    p.set_order(fluid, 1)
    v.set_order(fluid, 2)

    form = Formulation("laminar flow")
    form += (mu * inner(grad(dof(v)), grad(tf(v)))
             + rho * (grad(dof(v)) * v + grad(v) * dof(v) - grad(v) * v) * tf(v)
             - dof(p) * div(tf(v))
             + div(dof(v)) * tf(p)) * dx(fluid)

    def set_inlet(velocity):
        v.set_constraint(inlet, array2x1(velocity * y * (h - y) / (h * 0.5) ** 2, 0))

    solver = NonlinearSolver(form, lambda: norm(v).integrate(fluid, 2), on_parameter=set_inlet,
                             ramp=RampParameters(0.1, 0.3, 0.008))
    report = solver.run()
    assert report.state is LoopState.CONVERGED
    assert report.parameter == 0.3
    assert report.ramp_steps == 25
    assert report.iterations < 100

    flow_in = -(normal(fluid) * v).integrate(inlet, 4)
    flow_out = (normal(fluid) * v).integrate(outlet, 4)
    assert np.isclose(flow_in, 0.3 * 2.0 / 3.0 * h, rtol=1e-8)
    assert np.isclose(flow_out, flow_in, rtol=1e-2)
