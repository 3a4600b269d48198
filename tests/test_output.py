import os

import meshio
import numpy as np
import pytest

from weakfem.core.mesh import Mesh
from weakfem.io.visualization import sample
from weakfem.ufl.expressions import Field, array2x1
from weakfem.utils.meshgen import structured_rectangle


@pytest.fixture
def mesh():
    return Mesh().load([structured_rectangle(2.0, 1.0, nx=4, ny=2, region=1, sides={3: 2})])


def test_sample_is_discontinuous_per_element(mesh):
    x = Field(mesh, "x")
    points, cells, values = sample(x, 1, order=2)
    assert len(points) == mesh.n_elements * 9
    assert np.allclose(values, points[:, 0])
    kinds = dict(cells)
    assert kinds["quad"].shape == (mesh.n_elements * 4, 4)


def test_sample_triangles_and_edges():
    tri = Mesh().load([structured_rectangle(1.0, 1.0, nx=2, ny=2, region=1, sides={0: 2})], triangles=True)
    y = Field(tri, "y")
    points, cells, values = sample(y, 1, order=3)
    assert dict(cells)["tri"].shape == (tri.n_elements * 9, 3)
    points, cells, values = sample(y, 2, order=2)
    assert dict(cells)["line"].shape == (4, 2)
    assert np.allclose(values, 0.0)


@pytest.mark.parametrize("ext", [".vtu", ".vtk"])
def test_write_vtk(mesh, tmp_path, ext):
    v = Field(mesh, "h1xy", "v")
    v.set_order(1, 2)
    x, y = Field(mesh, "x"), Field(mesh, "y")
    v.set_value(1, array2x1(x, y))
    target = str(tmp_path / f"v{ext}")
    v.write(1, target, 2)
    back = meshio.read(target)
    assert back.point_data["v"].shape[1] == 3
    assert np.allclose(back.point_data["v"][:, :2], back.points[:, :2])


def test_write_png_and_edge_output(mesh, tmp_path):
    x, y = Field(mesh, "x"), Field(mesh, "y")
    (x * y).write(1, str(tmp_path / "xy.png"))
    x.write(2, str(tmp_path / "inlet.vtu"))
    assert os.path.getsize(tmp_path / "xy.png") > 0
    assert os.path.exists(tmp_path / "inlet.vtu")


def test_unsupported_extension(mesh, tmp_path):
    with pytest.raises(ValueError):
        Field(mesh, "x").write(1, str(tmp_path / "x.csv"))
