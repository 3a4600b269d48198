"""weakfem.utils.bitset"""
from __future__ import annotations

import numpy as np


class BitSet:
    """Boolean membership mask over a fixed entity range (elements, edges or nodes)."""

    def __init__(self, mask):
        self.mask = np.asarray(mask, dtype=bool)

    @classmethod
    def empty(cls, size: int) -> "BitSet":
        return cls(np.zeros(size, dtype=bool))

    @classmethod
    def from_indices(cls, size: int, indices) -> "BitSet":
        mask = np.zeros(size, dtype=bool)
        mask[np.asarray(list(indices), dtype=int)] = True
        return cls(mask)

    def union(self, other): return BitSet(self.mask | other.mask)
    def intersect(self, other): return BitSet(self.mask & other.mask)
    def diff(self, other): return BitSet(self.mask & ~other.mask)
    __or__ = union
    __and__ = intersect
    __sub__ = diff

    def cardinality(self): return int(self.mask.sum())
    def to_indices(self): return np.flatnonzero(self.mask)
    def any(self): return bool(self.mask.any())
    def __len__(self): return len(self.mask)
    def __repr__(self): return f'<BitSet {self.cardinality()}/{len(self)}>'

    def __eq__(self, other):
        if not isinstance(other, BitSet):
            return NotImplemented
        return self.mask.shape == other.mask.shape and bool(np.array_equal(self.mask, other.mask))

    __hash__ = None

    def __getitem__(self, idx):
        return self.mask[idx]

    def __contains__(self, idx):
        return bool(self.mask[idx])
