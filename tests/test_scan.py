import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import pytest

from chnative.block import Block
from chnative.scan import OpError, StructMap, scan, struct_index


@dataclass
class Embed2:
    Col6: int = 0


@dataclass
class Embed:
    Col4: str = field(default="", metadata={"ch": "named"})
    inner: Embed2 = field(default_factory=Embed2, metadata={"embed": True})


@dataclass
class Example:
    Col1: str = ""
    Col2: datetime = field(default_factory=lambda: datetime(1970, 1, 1))
    ColPtr: Optional[str] = None
    base: Embed = field(default_factory=Embed, metadata={"embed": True})
    extra: Optional[Embed2] = field(default=None, metadata={"embed": True})


@dataclass
class Skipping:
    shown: int = 0
    hidden: int = field(default=0, metadata={"ch": "-"})
    _private: int = 0


def test_struct_index():
    assert struct_index(Example) == {
        "Col1": (0,),
        "Col2": (1,),
        "ColPtr": (2,),
        "named": (3, 0),
        "Col6": (3, 1, 0),
    }


def test_struct_index_skips_dash_and_private():
    assert struct_index(Skipping) == {"shown": (0,)}


def test_struct_index_rejects_non_dataclass():
    with pytest.raises(TypeError):
        struct_index(int)


def test_mapper():
    mapper = StructMap()
    values = mapper.map(
        "", ["Col1", "named"], Example(Col1="X", base=Embed(Col4="Named value"))
    )
    assert values == ["X", "Named value"]
    assert Example in mapper.cache


def test_mapper_uses_cache_consistently():
    mapper = StructMap()
    obj = Example(Col1="X", base=Embed(Col4="Named value", inner=Embed2(Col6=3)))
    first = mapper.map("", ["Col6", "Col1"], obj)
    second = mapper.map("", ["Col6", "Col1"], obj)
    assert first == second == [3, "X"]


def test_mapper_missing_name():
    with pytest.raises(OpError) as info:
        StructMap().map("ScanStruct", ["Nope"], Example())
    assert info.value.op == "ScanStruct"
    assert "missing destination name 'Nope'" in str(info.value)


def test_mapper_none_destination():
    with pytest.raises(OpError) as info:
        StructMap().map("Select", ["Col1"], None)
    assert "nil pointer passed to Select destination" in str(info.value)


def test_mapper_requires_dataclass_instance():
    with pytest.raises(OpError) as info:
        StructMap().map("ScanStruct", ["Col1"], {"Col1": 1})
    assert "ScanStruct expects a struct dest" in str(info.value)
    with pytest.raises(OpError):
        StructMap().map("ScanStruct", ["Col1"], Example)


def test_assign_sets_nested_fields():
    obj = Example()
    StructMap().assign("ScanStruct", ["Col1", "Col6", "named"], obj, ["Y", 7, "n"])
    assert obj.Col1 == "Y"
    assert obj.base.inner.Col6 == 7
    assert obj.base.Col4 == "n"
    assert dataclasses.asdict(obj)["extra"] is None


def test_assign_value_count_mismatch():
    with pytest.raises(OpError):
        StructMap().assign("ScanStruct", ["Col1"], Example(), ["a", "b"])


def _block() -> Block:
    block = Block()
    block.add_column("a", "String")
    block.add_column("b", "Nullable(String)")
    block.append("x", None)
    block.append("y", "z")
    return block


def test_scan_returns_row_values():
    block = _block()
    assert scan(block, 1, 2) == ["x", None]
    assert scan(block, 2, 2) == ["y", "z"]


def test_scan_count_mismatch():
    with pytest.raises(OpError) as info:
        scan(_block(), 1, 3)
    assert "expected 2 destination arguments in Scan, not 3" in str(info.value)


def test_scan_row_out_of_range_names_column():
    with pytest.raises(OpError) as info:
        scan(_block(), 5, 2)
    assert info.value.column_name == "a"