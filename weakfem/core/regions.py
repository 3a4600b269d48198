"""weakfem.core.regions
Named subsets of mesh entities and their composition.

Composite regions are stored as definitions (union, exclusion, skin) over
other region ids and resolved on demand against the mesh's current
physical regions.  Resolutions are memoised per mesh revision only, so a
reload always recomputes them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple, Union

import numpy as np

from weakfem.errors import RegionError
from weakfem.utils.bitset import BitSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegionEntities:
    elements: BitSet
    edges: BitSet
    nodes: BitSet

    @classmethod
    def empty(cls, mesh) -> "RegionEntities":
        return cls(BitSet.empty(mesh.n_elements), BitSet.empty(mesh.n_edges), BitSet.empty(mesh.n_nodes))

    def union(self, other: "RegionEntities") -> "RegionEntities":
        return RegionEntities(self.elements | other.elements, self.edges | other.edges, self.nodes | other.nodes)

    def diff(self, other: "RegionEntities") -> "RegionEntities":
        return RegionEntities(self.elements - other.elements, self.edges - other.edges, self.nodes - other.nodes)

    @property
    def dimension(self) -> int:
        """Highest dimension holding entities, -1 when empty."""
        if self.elements.any():
            return 2
        if self.edges.any():
            return 1
        if self.nodes.any():
            return 0
        return -1

    def is_empty(self) -> bool:
        return self.dimension < 0

    def __repr__(self):
        return (f"RegionEntities(elements={self.elements.cardinality()}, "
                f"edges={self.edges.cardinality()}, nodes={self.nodes.cardinality()})")


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RegionUnion:
    operands: Tuple[int, ...]


@dataclass(frozen=True)
class RegionExclusion:
    base: int
    subtrahend: int


@dataclass(frozen=True)
class RegionSkin:
    operand: int


RegionDefinition = Union[RegionUnion, RegionExclusion, RegionSkin]


class RegionModel:
    """Region algebra bound to one :class:`~weakfem.core.mesh.Mesh`."""

    def __init__(self, mesh):
        self.mesh = mesh
        self._definitions: Dict[int, RegionDefinition] = {}
        self._memo: Dict[int, RegionEntities] = {}
        self._memo_revision = -1

    # ------------------------------------------------------------------
    #  Declaration
    # ------------------------------------------------------------------
    def _fresh_id(self) -> int:
        used = set(self._definitions) | set(self.mesh.physical_region_ids())
        return max(used, default=0) + 1

    def _check_known(self, rid: int) -> None:
        if not self.is_known(rid):
            raise RegionError(f"Unknown region {rid}: it is neither a physical region nor a composed one.")

    def is_known(self, rid: int) -> bool:
        return rid in self._definitions or rid in self.mesh.physical_region_ids()

    def union(self, regions: Iterable[int]) -> int:
        operands = tuple(int(r) for r in regions)
        if not operands:
            raise RegionError("A region union needs at least one operand.")
        for r in operands:
            self._check_known(r)
        rid = self._fresh_id()
        self._definitions[rid] = RegionUnion(operands)
        logger.debug("region %d = union%s", rid, operands)
        return rid

    def exclusion(self, base: int, subtrahend: int) -> int:
        self._check_known(base)
        self._check_known(subtrahend)
        rid = self._fresh_id()
        self._definitions[rid] = RegionExclusion(int(base), int(subtrahend))
        logger.debug("region %d = %d \\ %d", rid, base, subtrahend)
        return rid

    def skin(self, region: int, target: Optional[int] = None) -> int:
        """
        Boundary of *region*, one dimension lower.

        With *target* the skin gets that id; this may be declared before the
        mesh is loaded, as long as *target* is not a physical region.
        """
        if target is None:
            self._check_known(region)
            rid = self._fresh_id()
        else:
            rid = int(target)
            if rid == int(region):
                raise RegionError(f"Region {rid} cannot be the skin of itself.")
            if rid in self._definitions or rid in self.mesh.physical_region_ids():
                raise RegionError(f"Region id {rid} is already in use.")
        self._definitions[rid] = RegionSkin(int(region))
        logger.debug("region %d = skin(%d)", rid, region)
        return rid

    def definition(self, rid: int) -> Optional[RegionDefinition]:
        return self._definitions.get(rid)

    def composed_ids(self) -> Tuple[int, ...]:
        return tuple(self._definitions)

    # ------------------------------------------------------------------
    #  Resolution
    # ------------------------------------------------------------------
    def entities(self, rid: int) -> RegionEntities:
        rid = int(rid)
        if self._memo_revision != self.mesh.revision:
            self._memo.clear()
            self._memo_revision = self.mesh.revision
        if rid not in self._memo:
            self._memo[rid] = self._resolve(rid, ())
        return self._memo[rid]

    def _resolve(self, rid: int, stack: Tuple[int, ...]) -> RegionEntities:
        if rid in stack:
            raise RegionError(f"Region {rid} is defined in terms of itself: {stack + (rid,)}")
        physical = self.mesh.physical_entities(rid)
        definition = self._definitions.get(rid)
        if definition is None:
            if physical is None:
                self._check_known(rid)
            return physical
        if physical is not None:
            raise RegionError(f"Region id {rid} is both physical and composed.")

        stack = stack + (rid,)
        if isinstance(definition, RegionUnion):
            out = RegionEntities.empty(self.mesh)
            for r in definition.operands:
                out = out.union(self._resolve(r, stack))
            return out
        if isinstance(definition, RegionExclusion):
            return self._resolve(definition.base, stack).diff(self._resolve(definition.subtrahend, stack))
        if isinstance(definition, RegionSkin):
            return self._skin_of(self._resolve(definition.operand, stack))
        raise RegionError(f"Malformed definition for region {rid}: {definition!r}")

    def _skin_of(self, ent: RegionEntities) -> RegionEntities:
        mesh = self.mesh
        out = RegionEntities.empty(mesh)
        if ent.dimension == 2:
            inside = ent.elements.mask
            left_in = inside[mesh.edge_left]
            right_in = np.zeros(mesh.n_edges, dtype=bool)
            has_right = mesh.edge_right >= 0
            right_in[has_right] = inside[mesh.edge_right[has_right]]
            return RegionEntities(out.elements, BitSet(left_in ^ right_in), out.nodes)
        if ent.dimension == 1:
            ends = mesh.edge_nodes[ent.edges.mask].ravel()
            counts = np.bincount(ends, minlength=mesh.n_nodes)
            return RegionEntities(out.elements, out.edges, BitSet(counts == 1))
        return out
