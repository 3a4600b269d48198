import numpy as np

from weakfem.core.mesh import Mesh
from weakfem.fem import transform
from weakfem.utils.meshgen import QuadBlock, structured_rectangle


def test_affine_quad():
    mesh = Mesh().load([structured_rectangle(2.0, 1.0, nx=1, ny=1)])
    pts = np.array([[0.0, 0.0], [1.0, 1.0], [-0.5, 0.3]])
    X, J, detJ, Jinv = transform.geometry(mesh, "quad", [0], pts)
    assert np.allclose(detJ, 0.5)
    assert np.allclose(X[0, 1], [2.0, 1.0])
    assert np.allclose(np.einsum("eqij,eqjk->eqik", J, Jinv), np.eye(2))
    assert np.allclose(transform.inverse_mapping(mesh, 0, (1.5, 0.25)), [0.5, -0.5])


def test_triangle_jacobian():
    mesh = Mesh().load([structured_rectangle(2.0, 1.0, nx=1, ny=1)], triangles=True)
    _, _, detJ, _ = transform.geometry(mesh, "tri", [0, 1], np.array([[1 / 3, 1 / 3]]))
    assert np.allclose(detJ, 2.0)


def test_bilinear_inverse_mapping():
    mesh = Mesh().load([QuadBlock(1, [[0.0, 0.0], [2.0, 0.0], [1.5, 1.0], [0.2, 1.3]], (1, 1))])
    xi = np.array([0.3, -0.4])
    x = transform.x_mapping(mesh, 0, xi)
    assert np.allclose(transform.inverse_mapping(mesh, 0, x), xi)


def test_facet_measure():
    mesh = Mesh().load([structured_rectangle(2.0, 1.0, nx=1, ny=1)])
    pts, half = transform.edge_points("quad", 0, np.array([-1.0, 1.0]))
    _, J, _, _ = transform.geometry(mesh, "quad", [0], pts)
    length, normal = transform.facet_measure(J, half)
    # bottom edge: half length and outward normal -y
    assert np.allclose(length, 1.0)
    assert np.allclose(normal, [0.0, -1.0])
