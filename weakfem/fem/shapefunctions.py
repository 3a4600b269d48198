"""weakfem.fem.shapefunctions
Catalog of shape-function families and parsing of field type names.

Every layer above refers to a basis family by its catalog index; human
readable names are only accepted here, at the declaration boundary.
"""
import operator
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from weakfem.errors import UnknownTypeName, UnknownTypeIndex

# Fixed at import, read-only afterwards. Indices are the tuple positions.
_TYPE_NAMES: Tuple[str, ...] = ("h1", "hcurl", "h1d", "one")

H1 = 0
HCURL = 1
H1D = 2
ONE = 3

_COMPONENT_SUFFIXES = {"xyz": 3, "xy": 2}
_COORDINATE_NAMES = ("x", "y", "z")


def type_number(name: str) -> int:
    """Catalog index of the basis family *name*."""
    for index, candidate in enumerate(_TYPE_NAMES):
        if candidate == name:
            return index
    raise UnknownTypeName(f"Error in shape function registry: unknown type name '{name}'")


def type_name(index: int) -> str:
    """Inverse of :func:`type_number`; accepts any integer type except bool."""
    try:
        position = operator.index(index)
    except TypeError:
        position = None
    if isinstance(index, (bool, np.bool_)) or position is None or not 0 <= position < len(_TYPE_NAMES):
        raise UnknownTypeIndex(f"Error in shape function registry: unknown type number {index!r}")
    return _TYPE_NAMES[position]


def catalog() -> Tuple[str, ...]:
    return _TYPE_NAMES


@dataclass(frozen=True)
class FieldType:
    """Parsed form of a field declaration such as ``"h1xy"`` or ``"x"``."""
    name: str
    family: Optional[str]
    type_index: Optional[int]
    components: int
    coordinate_axis: Optional[int] = None

    @property
    def is_coordinate(self) -> bool:
        return self.coordinate_axis is not None

    @property
    def has_dofs(self) -> bool:
        return not self.is_coordinate


def parse_field_type(name: str) -> FieldType:
    if name in _COORDINATE_NAMES:
        return FieldType(name, None, None, 1, coordinate_axis=_COORDINATE_NAMES.index(name))
    family, components = name, 1
    for suffix, count in _COMPONENT_SUFFIXES.items():
        if name.endswith(suffix) and len(name) > len(suffix):
            family, components = name[: -len(suffix)], count
            break
    return FieldType(name, family, type_number(family), components)
