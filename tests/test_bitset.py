import numpy as np
import pytest

from weakfem.utils.bitset import BitSet


def test_set_algebra():
    a = BitSet.from_indices(6, [0, 1, 2])
    b = BitSet.from_indices(6, [2, 3])
    assert np.array_equal((a | b).to_indices(), [0, 1, 2, 3])
    assert np.array_equal((a & b).to_indices(), [2])
    assert a.intersect(b) == (b & a)
    assert np.array_equal((a - b).to_indices(), [0, 1])
    assert (b - a).cardinality() == 1


def test_equality_and_membership():
    a = BitSet.from_indices(4, [1, 3])
    assert a == BitSet(np.array([False, True, False, True]))
    assert a != BitSet.from_indices(5, [1, 3])
    assert 3 in a and 0 not in a
    assert not BitSet.empty(4).any()


def test_bitset_is_not_hashable():
    with pytest.raises(TypeError):
        hash(BitSet.empty(3))
