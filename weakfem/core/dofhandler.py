# dofhandler.py
"""
Per-field DOF maps and the numbering of formulation unknowns.

A :class:`DofMap` places the reference lattice of each element (family and
order given by the field's order regions) in physical space.  Continuous
fields (``h1``) share lattice points by rounded coordinates; discontinuous
ones (``h1d``, ``one``) keep them element-local.  A field-local DOF is
``node * components + component``.

A :class:`DofNumbering` walks the unknown fields of one formulation and
assigns a global slot to every unconstrained DOF, in a fixed order: fields in
first-appearance order, then each field's order regions in declaration
order, then elements.  Constrained DOFs get ``-1`` and carry known values.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from weakfem.errors import NumberingError
from weakfem.fem import transform
from weakfem.fem.reference import get_reference
from weakfem.fem.shapefunctions import H1, ONE

logger = logging.getLogger(__name__)

_KEY_DECIMALS = 10


def _coord_scale(mesh) -> float:
    if mesh.n_nodes == 0:
        return 1.0
    return max(float(np.ptp(mesh.nodes_x_y_pos, axis=0).max()), 1e-300)


class DofMap:
    """
    Lattice nodes of one field on one mesh revision.

    Attributes
    ----------
    element_order : (n_elements,) int
        Interpolation order per element, ``-1`` outside the field's support.
    element_nodes : list
        Per element, the lattice node ids in reference lattice order, or None.
    node_coords : (n_nodes, 2)
    node_owner : (n_nodes, 2) int
        ``(element, lattice index)`` of the first element that created a node.
    order_elements : list of (region, element ids)
        Order regions in declaration order.
    """

    def __init__(self, mesh, type_index: int, components: int, orders: Sequence[Tuple[int, int]]):
        self.mesh = mesh
        self.revision = mesh.revision
        self.type_index = type_index
        self.components = components
        self.element_order = np.full(mesh.n_elements, -1, dtype=int)
        self.order_elements: List[Tuple[int, np.ndarray]] = []
        for rid, p in orders:
            eids = mesh.entities(rid).elements.to_indices()
            if len(eids) == 0:
                logger.warning("Order region %d holds no 2-D elements; the order is ignored there.", rid)
            self.element_order[eids] = p
            self.order_elements.append((rid, eids))
        self._build_nodes()

    def _build_nodes(self) -> None:
        mesh = self.mesh
        scale = _coord_scale(mesh)
        shared = self.type_index == H1

        # physical lattice coordinates, grouped by (element type, order)
        lattice_xy: Dict[int, np.ndarray] = {}
        groups: Dict[Tuple[str, int], List[int]] = {}
        for eid in np.flatnonzero(self.element_order >= 0):
            etype = mesh.elements_list[eid].element_type
            groups.setdefault((etype, int(self.element_order[eid])), []).append(int(eid))
        for (etype, p), eids in groups.items():
            X, _, _, _ = transform.geometry(mesh, etype, eids, get_reference(etype, p).nodes)
            for eid, xy in zip(eids, X):
                lattice_xy[eid] = xy

        self.element_nodes: List[Optional[np.ndarray]] = [None] * mesh.n_elements
        self.node_keys: List[tuple] = []
        coords: List[np.ndarray] = []
        owners: List[Tuple[int, int]] = []
        index: Dict[tuple, int] = {}
        self._coord_nodes: Dict[tuple, List[int]] = {}
        for eid in sorted(lattice_xy):
            ids = np.empty(len(lattice_xy[eid]), dtype=int)
            for k, xy in enumerate(lattice_xy[eid]):
                ckey = tuple(np.round(xy / scale, _KEY_DECIMALS))
                key = ckey if shared else (eid, ckey)
                nid = index.get(key)
                if nid is None:
                    nid = len(coords)
                    index[key] = nid
                    coords.append(xy)
                    owners.append((eid, k))
                    self.node_keys.append(key)
                    self._coord_nodes.setdefault(ckey, []).append(nid)
                ids[k] = nid
            self.element_nodes[eid] = ids
        self._scale = scale
        self.node_coords = np.array(coords, dtype=float).reshape(-1, 2)
        self.node_owner = np.array(owners, dtype=int).reshape(-1, 2)
        logger.debug("DofMap: %d lattice nodes x %d components on %d elements",
                     len(coords), self.components, len(lattice_xy))

    # ------------------------------------------------------------------
    @property
    def n_nodes(self) -> int:
        return len(self.node_coords)

    @property
    def n_dofs(self) -> int:
        return self.n_nodes * self.components

    def local_dofs(self, eid: int) -> np.ndarray:
        nodes = self.element_nodes[eid]
        if nodes is None:
            return np.empty(0, dtype=int)
        return (nodes[:, None] * self.components + np.arange(self.components)).ravel()

    def element_dof_array(self, eids) -> np.ndarray:
        """(ne, n_local) field DOFs of elements sharing one order."""
        rows = [self.local_dofs(int(e)) for e in eids]
        if not rows:
            return np.empty((0, 0), dtype=int)
        return np.vstack(rows)

    def parent_of_edge(self, gid: int) -> Optional[Tuple[int, int]]:
        """Neighbour of an edge carrying this field (left first), with its local edge id."""
        edge = self.mesh.edges_list[gid]
        if self.element_order[edge.left] >= 0:
            return edge.left, edge.left_lid
        if edge.right is not None and self.element_order[edge.right] >= 0:
            return edge.right, edge.right_lid
        return None

    def region_nodes(self, rid: int):
        """
        Lattice nodes lying on the entities of a region.

        Returns node ids with the ``(element, lattice index)`` used to
        evaluate values there; a node may appear more than once.
        """
        ent = self.mesh.entities(rid)
        nodes, parents, lattice = [], [], []
        for eid in ent.elements.to_indices():
            ids = self.element_nodes[eid]
            if ids is None:
                continue
            nodes.extend(ids)
            parents.extend([eid] * len(ids))
            lattice.extend(range(len(ids)))
        for gid in ent.edges.to_indices():
            owner = self.parent_of_edge(int(gid))
            if owner is None:
                continue
            eid, lid = owner
            etype = self.mesh.elements_list[eid].element_type
            ks = get_reference(etype, int(self.element_order[eid])).nodes_on_edge(lid)
            nodes.extend(self.element_nodes[eid][ks])
            parents.extend([eid] * len(ks))
            lattice.extend(ks)
        for n in ent.nodes.to_indices():
            ckey = tuple(np.round(self.mesh.nodes_x_y_pos[n] / self._scale, _KEY_DECIMALS))
            for nid in self._coord_nodes.get(ckey, ()):
                nodes.append(nid)
                parents.append(self.node_owner[nid, 0])
                lattice.append(self.node_owner[nid, 1])
        return (np.asarray(nodes, dtype=int), np.asarray(parents, dtype=int), np.asarray(lattice, dtype=int))

    def transfer(self, old: "DofMap", old_values: np.ndarray) -> np.ndarray:
        """
        Values on this map for the function held by *old*.

        On the same mesh revision, a node whose owner element carried the
        field before gets the old element interpolant at its lattice point,
        so raising the order leaves the function unchanged.  Other nodes keep
        the old value when their key survives, and start at zero otherwise.
        """
        out = np.zeros(self.n_dofs)
        if old is None or old.components != self.components \
                or old.n_nodes == 0 or len(old_values) != old.n_dofs:
            return out
        c = self.components
        old_nodal = np.asarray(old_values, dtype=float).reshape(-1, c)
        new_nodal = out.reshape(-1, c)
        lookup = {key: i for i, key in enumerate(old.node_keys)}
        same_mesh = old.revision == self.revision
        tables: Dict[Tuple[str, int, int], np.ndarray] = {}
        for new_id, (eid, k) in enumerate(self.node_owner):
            if same_mesh and old.element_order[eid] >= 0:
                etype = self.mesh.elements_list[eid].element_type
                key = (etype, int(old.element_order[eid]), int(self.element_order[eid]))
                phi = tables.get(key)
                if phi is None:
                    phi = get_reference(etype, key[1]).shape(get_reference(etype, key[2]).nodes)
                    tables[key] = phi
                new_nodal[new_id] = phi[k] @ old_nodal[old.element_nodes[eid]]
                continue
            old_id = lookup.get(self.node_keys[new_id])
            if old_id is not None:
                new_nodal[new_id] = old_nodal[old_id]
        return out


class DofNumbering:
    """Global numbering of the unconstrained DOFs of a set of fields."""

    def __init__(self, fields: Sequence):
        self.fields = list(fields)
        self.index: Dict[int, np.ndarray] = {}
        self.known: Dict[int, np.ndarray] = {}
        self.constrained: Dict[int, np.ndarray] = {}
        counter = 0
        for field in self.fields:
            if not field.has_orders():
                raise NumberingError(f"Field '{field.name}' has no interpolation order on any region.")
            dm = field.dofmap
            mask, values = field.constraint_state()
            glob = np.full(dm.n_dofs, -1, dtype=int)
            for _, eids in dm.order_elements:
                for eid in eids:
                    if dm.element_order[eid] < 0:
                        continue
                    for d in dm.local_dofs(int(eid)):
                        if not mask[d] and glob[d] < 0:
                            glob[d] = counter
                            counter += 1
            key = id(field)
            self.index[key] = glob
            self.known[key] = values
            self.constrained[key] = mask
            logger.debug("field '%s': %d dofs, %d constrained", field.name, dm.n_dofs, int(mask.sum()))
        self.n_unknowns = counter

    def global_dofs(self, field) -> np.ndarray:
        return self.index[id(field)]

    def known_values(self, field) -> np.ndarray:
        return self.known[id(field)]

    def scatter_solution(self, x: np.ndarray) -> None:
        """Write a solution vector (and constrained values) back into the fields."""
        x = np.asarray(x, dtype=float).ravel()
        if len(x) != self.n_unknowns:
            raise ValueError(f"Solution has {len(x)} entries, expected {self.n_unknowns}.")
        for field in self.fields:
            glob = self.index[id(field)]
            values = np.array(self.known[id(field)], copy=True)
            free = glob >= 0
            values[free] = x[glob[free]]
            field.values = values

    def gather(self) -> np.ndarray:
        """Current field values as a vector of unknowns."""
        x = np.zeros(self.n_unknowns)
        for field in self.fields:
            glob = self.index[id(field)]
            free = glob >= 0
            x[glob[free]] = field.values[free]
        return x

    def __repr__(self):
        return f"DofNumbering(fields={[f.name for f in self.fields]}, unknowns={self.n_unknowns})"


def forced_order(type_index: int, order: int) -> int:
    """Order stored for a family; ``one`` always carries a single centroid node."""
    if type_index == ONE:
        if order != 0:
            logger.warning("Family 'one' has a single constant per element; order %d stored as 0.", order)
        return 0
    return order
