import numpy as np
import pytest

from weakfem.core.mesh import Mesh
from weakfem.errors import PointOutsideRegionError, RegionError
from weakfem.postprocess.evaluators import integrate, interpolate, locate
from weakfem.ufl.expressions import Constant, Field, abs_, array2x1, div, dof, grad, inner, norm, normal, tf
from weakfem.ufl.forms import Formulation
from weakfem.ufl.measures import dx
from weakfem.utils.meshgen import structured_rectangle

INLET, OUTLET = 2, 3


def channel(nx=6, ny=3, triangles=False):
    mesh = Mesh()
    mesh.load([structured_rectangle(3.0, 1.0, nx=nx, ny=ny, region=1, sides={3: INLET, 1: OUTLET})],
              triangles=triangles)
    return mesh


@pytest.mark.parametrize("triangles", [False, True])
def test_areas_and_lengths(triangles):
    mesh = channel(triangles=triangles)
    x = Field(mesh, "x")
    assert np.isclose(integrate(Constant(1.0), 1, mesh=mesh), 3.0)
    assert np.isclose(x.integrate(1), 4.5)
    assert np.isclose((x * 0 + 1).integrate(INLET), 1.0)
    assert np.isclose(x.integrate(OUTLET), 3.0)
    assert np.isclose(integrate(Constant(1.0), mesh.region_skin(1), mesh=mesh), 8.0)
    assert np.isclose(abs_(x - 1.5).integrate(1), 2.25)


def test_mesh_must_be_inferable():
    with pytest.raises(ValueError):
        integrate(Constant(1.0), 1)


def test_interpolate_coordinates():
    mesh = channel(triangles=True)
    x, y = Field(mesh, "x"), Field(mesh, "y")
    assert np.allclose(interpolate(array2x1(x, y), 1, (0.3, 0.4)), [0.3, 0.4])
    assert np.allclose(array2x1(x, y).interpolate(1, [2.5, 1.0]), [2.5, 1.0])
    eid, ref = locate(mesh, 1, (0.3, 0.4))
    assert 0 <= eid < mesh.n_elements


def test_point_outside_region():
    mesh = channel()
    x = Field(mesh, "x")
    with pytest.raises(PointOutsideRegionError) as info:
        x.interpolate(1, (5.0, 5.0))
    assert info.value.region == 1
    with pytest.raises(PointOutsideRegionError):
        x.interpolate(INLET, (0.0, 0.5))


def test_uniform_flux():
    mesh = channel()
    v = Field(mesh, "h1xy", "v")
    v.set_order(1, 1)
    v.set_value(1, array2x1(1.0, 0.0))
    assert np.isclose((normal(1) * v).integrate(OUTLET), 1.0)
    assert np.isclose((normal(1) * v).integrate(INLET), -1.0)
    assert np.isclose((normal(1) * v).integrate(mesh.region_skin(1)), 0.0)
    assert np.isclose(norm(v).integrate(1), 3.0)


def test_normal_needs_a_volume_region():
    mesh = channel()
    v = Field(mesh, "h1xy", "v")
    v.set_order(1, 1)
    v.set_value(1, array2x1(1.0, 0.0))
    with pytest.raises(RegionError, match="no 2-D elements"):
        (normal(INLET) * v).integrate(INLET)


def test_stokes_channel_conserves_mass():
    mesh = channel()
    regions = mesh.regions
    skin = regions.skin(1)
    wall = regions.exclusion(skin, regions.union([INLET, OUTLET]))
    y = Field(mesh, "y")
    v = Field(mesh, "h1xy", "v")
    p = Field(mesh, "h1", "p")
    v.set_order(1, 2)
    p.set_order(1, 1)
    v.set_constraint(wall)
    v.set_constraint(INLET, array2x1(4 * y * (1 - y), 0))

    form = Formulation("stokes")
    form += (inner(grad(dof(v)), grad(tf(v))) - dof(p) * div(tf(v)) - div(dof(v)) * tf(p)) * dx(1)
    form.solve()

    flow_in = -(normal(1) * v).integrate(INLET, 4)
    flow_out = (normal(1) * v).integrate(OUTLET, 4)
    assert np.isclose(flow_in, 2.0 / 3.0)
    assert np.isclose(flow_out, flow_in, rtol=1e-8)
    assert np.isclose(v.interpolate(1, (0.0, 0.5))[0], 1.0)
    assert norm(v).interpolate(1, (1.5, 0.5))[0] > 0.5
