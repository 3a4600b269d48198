import logging

import numpy as np
import pytest

from weakfem.errors import ProgrammerError, UnknownTypeIndex, UnknownTypeName
from weakfem.fem.shapefunctions import (
    H1, H1D, HCURL, ONE, catalog, parse_field_type, type_name, type_number,
)


def test_catalog_indices():
    assert catalog() == ("h1", "hcurl", "h1d", "one")
    assert (type_number("h1"), type_number("hcurl"), type_number("h1d"), type_number("one")) == (H1, HCURL, H1D, ONE)


def test_name_index_roundtrip():
    for name in catalog():
        assert type_name(type_number(name)) == name
    for index in range(len(catalog())):
        assert type_number(type_name(index)) == index


def test_numpy_integer_indices():
    assert type_name(np.int64(0)) == "h1"
    assert type_name(np.uint8(H1D)) == "h1d"
    assert [type_name(i) for i in np.arange(len(catalog()))] == list(catalog())


def test_unknown_name_is_fatal(caplog):
    with caplog.at_level(logging.CRITICAL):
        with pytest.raises(UnknownTypeName, match="unknown type name 'h2'"):
            type_number("h2")
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)


@pytest.mark.parametrize("index", [-1, 4, 99, True, False, 1.0, "0"])
def test_unknown_index_is_fatal(index):
    with pytest.raises(UnknownTypeIndex):
        type_name(index)


def test_programmer_errors_share_a_base():
    assert issubclass(UnknownTypeName, ProgrammerError)
    assert issubclass(UnknownTypeIndex, ProgrammerError)


def test_parse_field_type():
    t = parse_field_type("h1xy")
    assert (t.family, t.type_index, t.components) == ("h1", H1, 2)
    assert parse_field_type("h1xyz").components == 3
    assert parse_field_type("h1d").type_index == H1D
    assert parse_field_type("one").components == 1

    y = parse_field_type("y")
    assert y.is_coordinate and not y.has_dofs and y.coordinate_axis == 1

    with pytest.raises(UnknownTypeName):
        parse_field_type("p2xy")
