import logging
from typing import Dict, List, Sequence, Tuple

import meshio
import numpy as np

logger = logging.getLogger(__name__)

_MESHIO_TYPES = {"tri": "triangle", "quad": "quad", "line": "line"}


def _points_3d(points: np.ndarray) -> np.ndarray:
    return np.pad(np.asarray(points, dtype=float)[:, :2], ((0, 0), (0, 1)), constant_values=0)


def _vtk_values(values: np.ndarray) -> np.ndarray:
    """Scalars stay 1-D, vectors are padded to 3 components, tensors flattened."""
    arr = np.asarray(values, dtype=float)
    arr = arr.reshape(len(arr), -1)
    if arr.shape[1] == 1:
        return arr[:, 0]
    if arr.shape[1] == 2:
        return np.pad(arr, ((0, 0), (0, 1)))
    return arr


def export_vtk(filename: str, points: np.ndarray, cells: Sequence[Tuple[str, np.ndarray]],
               point_data: Dict[str, np.ndarray]) -> None:
    """
    Write sampled data to any meshio format chosen by the extension (.vtk, .vtu, ...).

    *cells* is a sequence of ``(kind, connectivity)`` with kind in
    ``tri``, ``quad`` or ``line``.
    """
    blocks = [meshio.CellBlock(_MESHIO_TYPES[kind], np.asarray(conn, dtype=int))
              for kind, conn in cells if len(conn)]
    data = {name: _vtk_values(v) for name, v in point_data.items()}
    meshio.Mesh(_points_3d(points), blocks, point_data=data).write(filename)
    logger.info("Solution exported to %s", filename)


def write_mesh(mesh, filename: str) -> None:
    """Mesh with ``gmsh:physical`` cell data (elements and tagged edges)."""
    by_type: Dict[str, List[int]] = {}
    for e in mesh.elements_list:
        by_type.setdefault(e.element_type, []).append(e.id)

    tag_of_element = np.zeros(mesh.n_elements, dtype=int)
    tag_of_edge = np.zeros(mesh.n_edges, dtype=int)
    for rid in mesh.physical_region_ids():
        ent = mesh.physical_entities(rid)
        tag_of_element[ent.elements.mask] = rid
        tag_of_edge[ent.edges.mask] = rid

    blocks, tags = [], []
    for etype, eids in by_type.items():
        conn = np.array([mesh.elements_list[e].corner_nodes for e in eids], dtype=int)
        blocks.append(meshio.CellBlock(_MESHIO_TYPES[etype], conn))
        tags.append(tag_of_element[eids])
    tagged_edges = np.flatnonzero(tag_of_edge)
    if len(tagged_edges):
        blocks.append(meshio.CellBlock("line", mesh.edge_nodes[tagged_edges]))
        tags.append(tag_of_edge[tagged_edges])

    out = meshio.Mesh(_points_3d(mesh.nodes_x_y_pos), blocks,
                      cell_data={"gmsh:physical": tags, "gmsh:geometrical": tags})
    if filename.lower().endswith(".msh"):
        out.write(filename, file_format="gmsh22", binary=False)
    else:
        out.write(filename)
    logger.info("Mesh written to %s", filename)
