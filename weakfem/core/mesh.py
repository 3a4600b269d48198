import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from weakfem.core.regions import RegionEntities, RegionModel
from weakfem.core.topology import Edge, Element, Node
from weakfem.fem.reference import EDGE_TABLE
from weakfem.utils.bitset import BitSet

logger = logging.getLogger(__name__)

_CORNERS = {"tri": 3, "quad": 4}


class Mesh:
    """
    Manages mesh topology, physical regions and the region algebra.

    Elements are straight-sided triangles and quadrangles (mixed meshes are
    allowed).  Edges are built from element connectivity; every edge knows
    its left element (the one whose CCW boundary runs along it), its right
    neighbour if any, and its outward normal with respect to the left side.

    Physical regions are integer tags carried by elements, edges and nodes.
    Composite regions live in :attr:`regions` and can be declared before
    :meth:`load`.
    """

    def __init__(self):
        self.nodes_x_y_pos = np.empty((0, 2), dtype=float)
        self.nodes_list: List[Node] = []
        self.elements_list: List[Element] = []
        self.edges_list: List[Edge] = []
        self._edge_dict: Dict[Tuple[int, int], Edge] = {}
        self._physical: Dict[int, RegionEntities] = {}
        self.revision = 0
        self.regions = RegionModel(self)
        self._bbox: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    #  Ingestion
    # ------------------------------------------------------------------
    def load(self, shapes, triangles: bool = False) -> "Mesh":
        """Mesh a list of :class:`weakfem.utils.meshgen.QuadBlock` shapes."""
        from weakfem.utils.meshgen import blocks_to_arrays
        points, elements, element_regions, lines, line_regions = blocks_to_arrays(shapes, triangles=triangles)
        self.set_data(points, elements, element_regions, lines, line_regions)
        return self

    @classmethod
    def from_meshio(cls, m) -> "Mesh":
        points = np.asarray(m.points, dtype=float)[:, :2]
        phys = m.cell_data.get("gmsh:physical")
        elements, element_regions, lines, line_regions = [], [], [], []
        point_regions: Dict[int, List[int]] = {}
        for ib, block in enumerate(m.cells):
            tags = np.asarray(phys[ib], dtype=int) if phys is not None else np.zeros(len(block.data), dtype=int)
            kind = block.type
            if kind.startswith("triangle") or kind.startswith("quad"):
                etype = "tri" if kind.startswith("triangle") else "quad"
                if kind not in ("triangle", "quad"):
                    logger.warning("Cell block '%s' reduced to its corner nodes.", kind)
                for conn, tag in zip(block.data, tags):
                    elements.append((etype, tuple(int(c) for c in conn[:_CORNERS[etype]])))
                    element_regions.append(int(tag))
            elif kind.startswith("line"):
                for conn, tag in zip(block.data, tags):
                    lines.append((int(conn[0]), int(conn[1])))
                    line_regions.append(int(tag))
            elif kind == "vertex":
                for conn, tag in zip(block.data, tags):
                    point_regions.setdefault(int(tag), []).append(int(conn[0]))
            else:
                logger.warning("Ignoring unsupported cell block '%s'.", kind)
        mesh = cls()
        mesh.set_data(points, elements, element_regions, lines, line_regions, point_regions)
        return mesh

    def set_data(self,
                 points: np.ndarray,
                 elements: Sequence[Tuple[str, Tuple[int, ...]]],
                 element_regions: Sequence[int],
                 lines: Sequence[Tuple[int, int]] = (),
                 line_regions: Sequence[int] = (),
                 point_regions: Optional[Dict[int, Iterable[int]]] = None) -> None:
        """Replace the mesh content; composite region definitions are kept."""
        self.nodes_x_y_pos = np.asarray(points, dtype=float)[:, :2].copy()
        self.nodes_list = [Node(i, float(x), float(y)) for i, (x, y) in enumerate(self.nodes_x_y_pos)]
        self.elements_list = []
        for eid, (etype, corners) in enumerate(elements):
            if etype not in _CORNERS or len(corners) != _CORNERS[etype]:
                raise ValueError(f"Element {eid}: bad element type/corner count ({etype}, {corners}).")
            corners = tuple(int(c) for c in corners)
            if self._signed_area(corners) < 0.0:
                corners = corners[::-1]
            self.elements_list.append(Element(eid, etype, corners))
        self._build_topology()
        self._build_physical(element_regions, lines, line_regions, point_regions or {})
        self._bbox = None
        self.revision += 1
        for rid in self.regions.composed_ids():
            if rid in self._physical:
                logger.warning("Physical region %d shadows a composed region with the same id.", rid)
        logger.info("Mesh loaded: %d nodes, %d elements, %d edges, physical regions %s",
                    self.n_nodes, self.n_elements, self.n_edges, sorted(self._physical))

    def _signed_area(self, corners) -> float:
        xy = self.nodes_x_y_pos[list(corners)]
        x, y = xy[:, 0], xy[:, 1]
        return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))

    def _build_topology(self) -> None:
        """Builds edges, left/right owners and element edge lists."""
        incidences: Dict[Tuple[int, int], List[Tuple[int, int, Tuple[int, int]]]] = {}
        for elem in self.elements_list:
            for lid, (c1, c2) in enumerate(EDGE_TABLE[elem.element_type]):
                a, b = elem.corner_nodes[c1], elem.corner_nodes[c2]
                incidences.setdefault(tuple(sorted((a, b))), []).append((elem.id, lid, (a, b)))

        self.edges_list = []
        self._edge_dict = {}
        elem_edges = [[0] * len(EDGE_TABLE[e.element_type]) for e in self.elements_list]
        for gid, (key, owners) in enumerate(incidences.items()):
            if len(owners) > 2:
                raise ValueError(f"Non-manifold edge {key} shared by {len(owners)} elements.")
            left, left_lid, directed = owners[0]
            right, right_lid = (owners[1][0], owners[1][1]) if len(owners) > 1 else (None, None)
            edge = Edge(gid=gid, nodes=directed, left=left, right=right, left_lid=left_lid,
                        right_lid=right_lid, normal=self._compute_normal(directed))
            self.edges_list.append(edge)
            self._edge_dict[key] = edge
            for eid, lid, _ in owners:
                elem_edges[eid][lid] = gid
        for elem, edges in zip(self.elements_list, elem_edges):
            elem.edges = tuple(edges)

        self.edge_nodes = np.array([e.nodes for e in self.edges_list], dtype=int).reshape(-1, 2)
        self.edge_left = np.array([e.left for e in self.edges_list], dtype=int)
        self.edge_right = np.array([-1 if e.right is None else e.right for e in self.edges_list], dtype=int)

    def _compute_normal(self, directed_edge_nodes: Tuple[int, int]) -> np.ndarray:
        """Outward unit normal of a directed (CCW) edge."""
        v_start, v_end = self.nodes_x_y_pos[directed_edge_nodes[0]], self.nodes_x_y_pos[directed_edge_nodes[1]]
        d = v_end - v_start
        raw = np.array([d[1], -d[0]], dtype=float)
        length = np.linalg.norm(raw)
        return raw / length if length > 1e-14 else np.array([0.0, 0.0])

    def _build_physical(self, element_regions, lines, line_regions, point_regions) -> None:
        elems: Dict[int, List[int]] = {}
        for eid, tag in enumerate(element_regions):
            if tag:
                elems.setdefault(int(tag), []).append(eid)
        edges: Dict[int, List[int]] = {}
        for (a, b), tag in zip(lines, line_regions):
            edge = self._edge_dict.get(tuple(sorted((int(a), int(b)))))
            if edge is None:
                raise ValueError(f"Line ({a}, {b}) of region {tag} is not an element edge.")
            if tag:
                edges.setdefault(int(tag), []).append(edge.gid)
        nodes = {int(t): list(ids) for t, ids in point_regions.items() if t}

        self._physical = {}
        for rid in set(elems) | set(edges) | set(nodes):
            self._physical[rid] = RegionEntities(
                BitSet.from_indices(self.n_elements, elems.get(rid, [])),
                BitSet.from_indices(self.n_edges, edges.get(rid, [])),
                BitSet.from_indices(self.n_nodes, nodes.get(rid, [])),
            )

    # ------------------------------------------------------------------
    #  Queries
    # ------------------------------------------------------------------
    @property
    def n_nodes(self) -> int:
        return len(self.nodes_x_y_pos)

    @property
    def n_elements(self) -> int:
        return len(self.elements_list)

    @property
    def n_edges(self) -> int:
        return len(self.edges_list)

    def physical_region_ids(self) -> Tuple[int, ...]:
        return tuple(self._physical)

    def physical_entities(self, rid: int) -> Optional[RegionEntities]:
        return self._physical.get(int(rid))

    def entities(self, rid: int) -> RegionEntities:
        return self.regions.entities(rid)

    def edge(self, gid: int) -> Edge:
        return self.edges_list[gid]

    def edge_between(self, a: int, b: int) -> Optional[Edge]:
        return self._edge_dict.get(tuple(sorted((int(a), int(b)))))

    def element_bboxes(self) -> np.ndarray:
        """(ne, 4) array of xmin, ymin, xmax, ymax."""
        if self._bbox is None:
            out = np.empty((self.n_elements, 4))
            for e in self.elements_list:
                xy = self.nodes_x_y_pos[list(e.corner_nodes)]
                out[e.id, :2] = xy.min(axis=0)
                out[e.id, 2:] = xy.max(axis=0)
            self._bbox = out
        return self._bbox

    # ------------------------------------------------------------------
    #  Region algebra shortcuts
    # ------------------------------------------------------------------
    def region_union(self, regions: Iterable[int]) -> int:
        return self.regions.union(regions)

    def region_exclusion(self, base: int, subtrahend: int) -> int:
        return self.regions.exclusion(base, subtrahend)

    def region_skin(self, region: int, target: Optional[int] = None) -> int:
        return self.regions.skin(region, target)

    # ------------------------------------------------------------------
    #  Output
    # ------------------------------------------------------------------
    def write(self, filename: str) -> None:
        from weakfem.io.vtk import write_mesh
        write_mesh(self, filename)

    def __repr__(self):
        return f"Mesh(nodes={self.n_nodes}, elements={self.n_elements}, edges={self.n_edges})"


def read_mesh(filename: str) -> Mesh:
    """Read any meshio-supported file, using its ``gmsh:physical`` tags as regions."""
    import meshio
    return Mesh.from_meshio(meshio.read(filename))
