"""
Laminar, incompressible water flow past a step.

A parabolic inlet velocity is ramped from 0.1 m/s to 0.3 m/s and the outlet
pressure is set to zero.  The convective term is linearised around the
current velocity (Newton), and every outer iteration re-assembles and solves
the Taylor-Hood (Q2/Q1) system until the velocity norm stops changing.

    python examples/laminar_flow_step.py --coarsen 5
"""
import argparse
import logging

from weakfem.core.mesh import Mesh
from weakfem.solvers.nonlinear_solver import NonlinearParameters, NonlinearSolver, RampParameters
from weakfem.ufl.expressions import Field, array2x1, div, dof, grad, inner, norm, normal, tf
from weakfem.ufl.forms import Formulation
from weakfem.ufl.measures import dx
from weakfem.utils.meshgen import QuadBlock

parser = argparse.ArgumentParser(description="Laminar flow past a step (Newton iteration with velocity ramp)")
parser.add_argument("--coarsen", type=int, default=1, help="Divide every block division count by this factor.")
parser.add_argument("--output", default=".", help="Directory for channel.msh, v.vtk and p.vtk.")
parser.add_argument("-v", "--verbose", action="store_true")
args = parser.parse_args()
logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, format="%(name)s: %(message)s")

# Region numbers used in this simulation
fluid, inlet, outlet, skin = 1, 2, 3, 4
# Height of the inlet [m]
hthin = 1e-3


def create_mesh(lthin, hthin, lthick, hthick, nlthin, nlthick, nhthin, nhthick):
    c = max(1, args.coarsen)
    nlthin, nlthick, nhthin, nhthick = (max(1, n // c) for n in (nlthin, nlthick, nhthin, nhthick))
    qthinleft = QuadBlock(fluid, [[0, 0], [lthin, 0], [lthin, hthin], [0, hthin]], (nlthin, nhthin))
    qthinright = QuadBlock(fluid, [[lthin, 0], [lthin + lthick, 0], [lthin + lthick, hthin], [lthin, hthin]],
                           (nlthick, nhthin))
    qthick = QuadBlock(fluid, [[lthin, hthin], [lthin + lthick, hthin],
                               [lthin + lthick, hthin + hthick], [lthin, hthin + hthick]], (nlthick, nhthick))
    qthinleft.set_side(3, inlet)
    qthinright.set_side(1, outlet)
    qthick.set_side(1, outlet)

    mesh = Mesh()
    mesh.regions.skin(fluid, target=skin)
    mesh.load([qthinleft, qthinright, qthick])
    mesh.write(f"{args.output}/channel.msh")
    return mesh


mesh = create_mesh(2e-3, hthin, 12e-3, 1e-3, 30, 150, 20, 50)

# The fluid wall (not including the inlet and outlet)
wall = mesh.regions.exclusion(skin, mesh.regions.union([inlet, outlet]))

# Dynamic viscosity of water [Pa.s] and density [kg/m3]
mu, rho = 8.9e-4, 1000.0

v, p = Field(mesh, "h1xy", "v"), Field(mesh, "h1", "p")
y = Field(mesh, "y")

v.set_constraint(wall)
p.set_constraint(outlet)
# Q2 velocity and Q1 pressure satisfy the inf-sup condition
p.set_order(fluid, 1)
v.set_order(fluid, 2)

laminarflow = Formulation("laminar flow")
laminarflow += (mu * inner(grad(dof(v)), grad(tf(v)))
                + rho * (grad(dof(v)) * v + grad(v) * dof(v) - grad(v) * v) * tf(v)
                - dof(p) * div(tf(v))
                + div(dof(v)) * tf(p)) * dx(fluid)


def set_inlet(velocity):
    print(f"Flow velocity: {velocity:g} m/s")
    v.set_constraint(inlet, array2x1(velocity * y * (hthin - y) / (hthin * 0.5) ** 2, 0))


solver = NonlinearSolver(laminarflow, lambda: norm(v).integrate(fluid, 2), on_parameter=set_inlet,
                         ramp=RampParameters(0.1, 0.3, 0.008), params=NonlinearParameters(tolerance=1e-10))
report = solver.run()
for step in report.history:
    print(f"  iteration {step['iteration']:3d}: relative solution change {step['relative_change']:.3e}")
print(f"{report.reason} after {report.iterations} iterations ({report.ramp_steps} inlet velocities)")

p.write(fluid, f"{args.output}/p.vtk")
v.write(fluid, f"{args.output}/v.vtk", 2)

# Velocity norm at (5, 1) mm
vnorm = norm(v).interpolate(fluid, [5e-3, 1e-3])[0]

# Flow rate in and out for a unit width
flowratein = -(normal(fluid) * v).integrate(inlet, 4)
flowrateout = (normal(fluid) * v).integrate(outlet, 4)
print(f"\nFlowrate in/out for a unit width: {flowratein:.6e} / {flowrateout:.6e} m^3/s")

# Regression check on the reference mesh (Q2/Q1, 28 Newton iterations)
if args.coarsen == 1:
    print("validation:", 2.64429e-05 < vnorm * flowrateout < 2.64433e-05)
