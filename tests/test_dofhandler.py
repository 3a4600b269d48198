import numpy as np
import pytest

from weakfem.core.dofhandler import DofNumbering
from weakfem.core.mesh import Mesh
from weakfem.errors import FormulationError, NumberingError, RegionError, UnknownTypeName
from weakfem.ufl.expressions import Field, array2x1, div, dof, grad, inner, tf
from weakfem.ufl.measures import dx
from weakfem.ufl.forms import Formulation
from weakfem.utils.meshgen import structured_rectangle

BOTTOM, LEFT = 2, 5


def square_mesh(n=2, triangles=False):
    return Mesh().load([structured_rectangle(1.0, 1.0, nx=n, ny=n, region=1,
                                             sides={0: BOTTOM, 1: 3, 2: 4, 3: LEFT})],
                       triangles=triangles)


def node_at(field, xy):
    d = np.linalg.norm(field.dofmap.node_coords - np.asarray(xy), axis=1)
    return int(np.argmin(d))


@pytest.mark.parametrize("type_name,order,triangles,expected", [
    ("h1", 1, False, 9),
    ("h1", 2, False, 25),
    ("h1", 2, True, 25),
    ("h1", 3, False, 49),
    ("h1xy", 1, False, 18),
    ("h1d", 1, False, 16),
    ("h1d", 0, False, 4),
    ("one", 0, True, 8),
])
def test_dof_counts(type_name, order, triangles, expected):
    u = Field(square_mesh(triangles=triangles), type_name)
    u.set_order(1, order)
    assert u.dofmap.n_dofs == expected


def test_one_family_forces_order_zero():
    u = Field(square_mesh(), "one")
    u.set_order(1, 3)
    assert u.orders() == [(1, 0)]
    assert u.dofmap.n_dofs == 4


def test_bad_declarations():
    mesh = square_mesh()
    with pytest.raises(UnknownTypeName):
        Field(mesh, "h2")
    with pytest.raises(FormulationError, match="Curl-conforming"):
        Field(mesh, "hcurl")
    u = Field(mesh, "h1")
    with pytest.raises(ValueError):
        u.set_order(1, 0)
    with pytest.raises(RegionError):
        u.set_order(42, 1)
    with pytest.raises(NumberingError):
        Field(mesh, "x").set_order(1, 1)


def test_numbering_needs_an_order():
    mesh = square_mesh()
    u = Field(mesh, "h1", "u")
    form = Formulation()
    form += inner(grad(dof(u)), grad(tf(u))) * dx(1)
    with pytest.raises(NumberingError):
        form.assemble()


def test_constraints_latest_declaration_wins():
    mesh = square_mesh()
    u = Field(mesh, "h1", "u")
    u.set_order(1, 1)
    u.set_constraint(BOTTOM, 1.0)
    u.set_constraint(LEFT, 2.0)
    mask, values = u.constraint_state()
    corner = node_at(u, (0.0, 0.0))
    assert mask.sum() == 5
    assert values[corner] == 2.0
    assert values[node_at(u, (1.0, 0.0))] == 1.0

    # re-declaring moves the record last
    u.set_constraint(BOTTOM, 3.0)
    _, values = u.constraint_state()
    assert values[corner] == 3.0
    assert values[node_at(u, (0.0, 1.0))] == 2.0

    u.remove_constraint(BOTTOM)
    mask, _ = u.constraint_state()
    assert mask.sum() == 3


def test_constraint_by_expression_and_point_region():
    mesh = square_mesh()
    x, y = Field(mesh, "x"), Field(mesh, "y")
    corners = mesh.region_skin(BOTTOM)
    v = Field(mesh, "h1xy", "v")
    v.set_order(1, 2)
    v.set_constraint(LEFT, array2x1(y * (1 - y), 0.0))
    v.set_constraint(corners)
    mask, values = v.constraint_state()
    n = node_at(v, (0.0, 0.5))
    assert np.allclose(values[2 * n:2 * n + 2], [0.25, 0.0])
    n = node_at(v, (1.0, 0.0))
    assert mask[2 * n] and mask[2 * n + 1]
    # left side: 5 lattice nodes, plus the lower right corner
    assert mask.sum() == 2 * 6
    with pytest.raises(FormulationError):
        v.set_constraint(LEFT, x)
        v.constraint_state()


def test_whole_domain_constraint_leaves_no_unknowns():
    mesh = square_mesh()
    u = Field(mesh, "h1", "u")
    u.set_order(1, 1)
    u.set_constraint(1, 4.0)
    numbering = DofNumbering([u])
    assert numbering.n_unknowns == 0
    assert np.all(numbering.known_values(u) == 4.0)


def test_numbering_order_follows_first_appearance():
    mesh = square_mesh()
    p = Field(mesh, "h1", "p")
    v = Field(mesh, "h1xy", "v")
    p.set_order(1, 1)
    v.set_order(1, 2)
    v.set_constraint(BOTTOM)
    form = Formulation()
    form += (tf(p) * div(dof(v)) + inner(grad(dof(v)), grad(tf(v))) + dof(p) * tf(p)) * dx(1)
    assert form.unknowns() == [p, v]
    numbering = form.numbering()
    gp, gv = numbering.global_dofs(p), numbering.global_dofs(v)
    assert np.array_equal(np.sort(gp), np.arange(9))
    free_v = gv[gv >= 0]
    assert free_v.min() == 9
    assert numbering.n_unknowns == 9 + 50 - 10
    assert np.all(gv[numbering.constrained[id(v)]] == -1)


def test_numbering_is_deterministic():
    mesh = square_mesh(3, triangles=True)
    u = Field(mesh, "h1", "u")
    u.set_order(1, 3)
    u.set_constraint(LEFT)
    a = DofNumbering([u]).global_dofs(u)
    b = DofNumbering([u]).global_dofs(u)
    assert np.array_equal(a, b)


def test_scatter_and_gather_unknowns():
    mesh = square_mesh()
    u = Field(mesh, "h1", "u")
    u.set_order(1, 1)
    u.set_constraint(LEFT, 4.0)
    numbering = DofNumbering([u])
    assert numbering.n_unknowns == 6
    numbering.scatter_solution(np.arange(6.0))
    assert np.allclose(u.values[numbering.constrained[id(u)]], 4.0)
    assert np.array_equal(numbering.gather(), np.arange(6.0))
    with pytest.raises(ValueError):
        numbering.scatter_solution(np.zeros(5))


def test_values_outside_support_are_zero():
    mesh = Mesh().load([structured_rectangle(1.0, 1.0, nx=2, ny=2, region=1),
                        structured_rectangle(1.0, 1.0, nx=2, ny=2, region=2, offset=(1.0, 0.0))])
    u = Field(mesh, "h1", "u")
    u.set_order(1, 1)
    u.set_value(1, 5.0)
    assert np.isclose(u.interpolate(1, (0.3, 0.6))[0], 5.0)
    assert np.isclose(u.interpolate(2, (1.6, 0.4))[0], 0.0)


def test_order_change_keeps_the_function():
    mesh = square_mesh()
    x, y = Field(mesh, "x"), Field(mesh, "y")
    u = Field(mesh, "h1", "u")
    u.set_order(1, 1)
    u.set_value(1, 2 * x + 1)
    assert np.isclose(u.interpolate(1, (0.25, 0.5))[0], 1.5)
    u.set_order(1, 2)
    assert u.dofmap.n_dofs == 25
    assert np.isclose(u.values[node_at(u, (0.5, 0.5))], 2.0)
    assert np.isclose(u.values[node_at(u, (0.25, 0.5))], 1.5)
    assert np.isclose(u.interpolate(1, (0.3, 0.7))[0], 1.6)

    u.set_value(1, x * y)
    u.set_order(1, 1)
    assert u.dofmap.n_dofs == 9
    assert np.isclose(u.values[node_at(u, (0.5, 1.0))], 0.5)


def test_order_change_on_discontinuous_field():
    mesh = square_mesh()
    x = Field(mesh, "x")
    w = Field(mesh, "h1d", "w")
    w.set_order(1, 0)
    w.set_value(1, 1.0)
    w.set_order(1, 2)
    assert w.dofmap.n_dofs == 36
    assert np.allclose(w.values, 1.0)
    w.set_value(1, x)
    w.set_order(1, 1)
    assert np.isclose(w.interpolate(1, (0.2, 0.9))[0], 0.2)


def test_reload_rebuilds_dofs():
    mesh = square_mesh(2)
    u = Field(mesh, "h1", "u")
    u.set_order(1, 1)
    assert u.dofmap.n_dofs == 9
    mesh.load([structured_rectangle(1.0, 1.0, nx=3, ny=3, region=1)])
    assert u.dofmap.n_dofs == 16
