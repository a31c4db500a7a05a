"""Check that model declarations match tables in the live database.

A model is a dataclass, a pydantic model, or a plain annotated class (the
class itself or an instance). Its table name comes from a `table_name()`
accessor when the model has one, otherwise from its snake-cased class name.
Column names come from the `db` field metadata when present (`"-"` skips the
field), otherwise from the snake-cased field name.
"""

from __future__ import annotations

import dataclasses
import inspect
import re
from dataclasses import dataclass
import typing
from typing import Any, ClassVar, Protocol, Sequence, runtime_checkable

from pydantic import BaseModel

from .errors import ColumnNotFoundError, ConfigurationError, TableNotFoundError

DEFAULT_SCHEMA = "public"
IGNORE_TAG = "-"
TAG_KEY = "db"

_WORD_BOUNDARY = re.compile(r"(.)([A-Z][a-z]+)")
_LOWER_UPPER = re.compile(r"([a-z0-9])([A-Z])")
_CLASS_VAR = re.compile(r"^\s*(?:[\w.]+\.)?ClassVar\b")


@runtime_checkable
class TableNamed(Protocol):
    """Models that know their own table name (optionally `schema.table`)."""

    def table_name(self) -> str: ...


class CatalogReader(Protocol):
    """Read path into the live catalog used by the validator."""

    async def table_exists(self, database: str, schema: str, table: str) -> bool: ...

    async def table_columns(self, database: str, schema: str, table: str) -> Sequence[str]: ...


@dataclass(frozen=True, slots=True)
class TableExpectation:
    """Table and columns a model expects to find."""

    schema: str
    table: str
    columns: tuple[str, ...]
    model: str = ""

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"


def to_snake(name: str) -> str:
    """`AddressId` -> `address_id`, `HTTPServer` -> `http_server`."""

    name = _WORD_BOUNDARY.sub(r"\1_\2", name)
    name = _LOWER_UPPER.sub(r"\1_\2", name)
    return name.replace("-", "_").replace(" ", "_").lower()


def model_name(model: Any) -> str:
    return _model_class(model).__name__


def split_table_name(name: str) -> tuple[str, str]:
    """Split an optionally quoted, optionally schema-qualified table name."""

    name = name.strip('"')
    if "." in name:
        schema, table = name.split(".", 1)
        return schema.strip('"'), table.strip('"')
    return DEFAULT_SCHEMA, name


def columns(model: Any) -> tuple[str, ...]:
    """Expected column names for a model, in declaration order."""

    names: list[str] = []
    for field_name, tag in _fields(model):
        if tag == IGNORE_TAG:
            continue
        names.append(tag or to_snake(field_name))
    return tuple(names)


def table_expectation(model: Any) -> TableExpectation:
    if isinstance(model, TableExpectation):
        return model
    name = _declared_table_name(model)
    schema, table = split_table_name(name if name is not None else to_snake(model_name(model)))
    return TableExpectation(schema=schema, table=table, columns=columns(model), model=model_name(model))


async def validate_model(catalog: CatalogReader, database: str, model: Any) -> None:
    """Raise unless the model's table exists and holds every expected column.

    Only membership is checked: column order and extra columns are ignored.
    """

    expectation = table_expectation(model)
    schema, table = expectation.schema, expectation.table
    if not await catalog.table_exists(database, schema, table):
        raise TableNotFoundError(f"table {schema}.{table} does not exist", schema=schema, table=table)
    observed = tuple(await catalog.table_columns(database, schema, table))
    present = set(observed)
    for column in expectation.columns:
        if column not in present:
            raise ColumnNotFoundError(
                f"model {expectation.model} contains field {column} which does not exist in table "
                f"{schema}.{table} {{{', '.join(observed)}}}",
                schema=schema,
                table=table,
                model=expectation.model,
                field=column,
                columns=observed,
            )


async def validate_models(catalog: CatalogReader, database: str, *models: Any) -> None:
    """Validate each model in turn, stopping at the first failure."""

    for model in models:
        await validate_model(catalog, database, model)


def _declared_table_name(model: Any) -> str | None:
    if not isinstance(model, type):
        return model.table_name() if isinstance(model, TableNamed) else None
    accessor = inspect.getattr_static(model, "table_name", None)
    if accessor is None:
        return None
    if isinstance(accessor, (staticmethod, classmethod)):
        return model.table_name()
    if not callable(accessor):
        return None
    # Instance accessors are called on a bare instance; __init__ is skipped.
    try:
        instance = object.__new__(model)
    except TypeError as exc:
        raise ConfigurationError(
            f"model {model.__name__} defines table_name() as an instance method; pass an instance instead"
        ) from exc
    return accessor(instance)


def _model_class(model: Any) -> type:
    return model if isinstance(model, type) else type(model)


def _fields(model: Any) -> list[tuple[str, str | None]]:
    cls = _model_class(model)
    if dataclasses.is_dataclass(cls):
        return [(field.name, field.metadata.get(TAG_KEY)) for field in dataclasses.fields(cls)]
    if issubclass(cls, BaseModel):
        return [(name, _pydantic_tag(info.json_schema_extra)) for name, info in cls.model_fields.items()]
    return [(name, None) for name, hint in _annotations(cls).items() if not _is_class_var(hint)]


def _annotations(cls: type) -> dict[str, Any]:
    try:
        return typing.get_type_hints(cls)
    except (NameError, AttributeError, TypeError, SyntaxError):
        annotations: dict[str, Any] = {}
        for base in reversed(cls.__mro__):
            if base is not object:
                annotations.update(inspect.get_annotations(base))
        return annotations


def _pydantic_tag(extra: Any) -> str | None:
    if isinstance(extra, dict):
        tag = extra.get(TAG_KEY)
        if isinstance(tag, str):
            return tag
    return None


def _is_class_var(hint: Any) -> bool:
    if isinstance(hint, str):
        return _CLASS_VAR.match(hint) is not None
    return hint is ClassVar or typing.get_origin(hint) is ClassVar


__all__ = [
    "CatalogReader",
    "DEFAULT_SCHEMA",
    "TableExpectation",
    "TableNamed",
    "columns",
    "model_name",
    "split_table_name",
    "table_expectation",
    "to_snake",
    "validate_model",
    "validate_models",
]
