import numpy as np
import pytest

from weakfem.fem.reference import contains, get_reference


@pytest.mark.parametrize("etype", ["tri", "quad"])
@pytest.mark.parametrize("order", [1, 2, 3, 4])
def test_lagrange_basis(etype, order):
    ref = get_reference(etype, order)
    # nodal basis
    assert np.allclose(ref.shape(ref.nodes), np.eye(ref.n_basis), atol=1e-12)
    # partition of unity and zero-sum gradients
    rng = np.random.default_rng(0)
    pts = rng.uniform(0.0, 0.5, size=(7, 2)) if etype == "tri" else rng.uniform(-1.0, 1.0, size=(7, 2))
    assert np.allclose(ref.shape(pts).sum(axis=1), 1.0)
    assert np.allclose(ref.grad(pts).sum(axis=1), 0.0)


def test_basis_sizes():
    assert [get_reference("tri", p).n_basis for p in (0, 1, 2, 3)] == [1, 3, 6, 10]
    assert [get_reference("quad", p).n_basis for p in (0, 1, 2, 3)] == [1, 4, 9, 16]


@pytest.mark.parametrize("etype,n_edges", [("tri", 3), ("quad", 4)])
def test_nodes_on_edge(etype, n_edges):
    ref = get_reference(etype, 3)
    for lid in range(n_edges):
        assert len(ref.nodes_on_edge(lid)) == 4


def test_contains():
    assert contains("tri", (0.2, 0.2))
    assert not contains("tri", (0.6, 0.6))
    assert contains("quad", (1.0, -1.0))
    assert not contains("quad", (1.1, 0.0))
