"""Dataclass to column name mapping.

Columns are derived from dataclass fields. A field's column name comes from
its metadata under the mapper's tag (``db`` by default); untagged fields use
``name_func(field.name)``, lower-casing by default.

    @dataclass
    class User:
        id: int = field(default=0, metadata={"db": "id"})
        user_name: str = field(default="", metadata={"db": "name"})
        CreateTime: datetime = None          # column "createtime"
        cache: dict = field(default=None, metadata={"db": "-"})  # skipped

Fields inherited from dataclass base classes are included.
"""

import dataclasses
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple, Type, TypeVar

SKIP_COLUMN = "-"

T = TypeVar("T")


class ColumnMapper:
    """Maps dataclass fields to database columns."""

    def __init__(self, tag: str = "db", name_func: Callable[[str], str] = str.lower):
        self.tag = tag
        self.name_func = name_func

    def __repr__(self) -> str:
        return f"ColumnMapper(tag={self.tag!r})"

    def field_map(self, model: Any) -> "OrderedDict[str, str]":
        """
        Column name -> attribute name for a dataclass type or instance.

        Raises:
            TypeError: If ``model`` is not a dataclass
        """
        if not dataclasses.is_dataclass(model):
            raise TypeError(f"Expected a dataclass type or instance, got {type(model).__name__}")

        mapping = OrderedDict()
        for f in dataclasses.fields(model):
            column = f.metadata.get(self.tag)
            if column == SKIP_COLUMN:
                continue
            if not column:
                column = self.name_func(f.name)
            mapping.setdefault(column, f.name)
        return mapping

    def columns(self, model: Any, ignore: Iterable[str] = ()) -> List[str]:
        """Column names in field order, minus ``ignore``."""
        ignored = set(ignore)
        return [column for column in self.field_map(model) if column not in ignored]

    def values(self, model: Any, ignore: Iterable[str] = ()) -> "OrderedDict[str, Any]":
        """Column -> value for a dataclass instance, minus ``ignore``."""
        if isinstance(model, type):
            raise TypeError("values() needs a dataclass instance, not a type")
        ignored = set(ignore)
        return OrderedDict(
            (column, getattr(model, attr))
            for column, attr in self.field_map(model).items()
            if column not in ignored
        )

    def from_row(self, cls: Type[T], row: Mapping[str, Any]) -> T:
        """
        Build a dataclass instance from a result row.

        Columns without a matching field are ignored; fields without a column
        keep their defaults.
        """
        kwargs: Dict[str, Any] = {}
        init_fields = {f.name for f in dataclasses.fields(cls) if f.init}
        for column, attr in self.field_map(cls).items():
            if column in row and attr in init_fields:
                kwargs[attr] = row[column]
        return cls(**kwargs)


DEFAULT_MAPPER = ColumnMapper()


def split_columns(values: Mapping[str, Any]) -> Tuple[Tuple[str, ...], Tuple[Any, ...]]:
    """Split a column -> value mapping into parallel column and value tuples."""
    return tuple(values.keys()), tuple(values.values())
