import numpy as np
from dataclasses import dataclass, field
from typing import Tuple, Optional


@dataclass(slots=True)
class Node:
    id: int
    x: float
    y: float

    def __iter__(self):
        yield self.x
        yield self.y


@dataclass(slots=True)
class Edge:
    gid: int
    nodes: Tuple[int, int]      # endpoints, CCW with respect to the left element
    left: int                   # element on the left of the directed edge
    right: Optional[int]        # neighbour across the edge, None on the boundary
    left_lid: int               # local edge index inside the left element
    right_lid: Optional[int] = None
    normal: np.ndarray = field(default=None)   # unit normal, outward from left

    @property
    def is_boundary(self) -> bool:
        return self.right is None


@dataclass(slots=True)
class Element:
    id: int
    element_type: str
    corner_nodes: Tuple[int, ...]           # CCW
    edges: Tuple[int, ...] = field(default_factory=tuple)
