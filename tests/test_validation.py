"""Tests for the schema validator."""

from __future__ import annotations

from dataclasses import dataclass, field
import typing as t
from typing import ClassVar, Sequence

import pytest
from pydantic import BaseModel, Field

from pgtest.errors import ColumnNotFoundError, SchemaValidationError, TableNotFoundError
from pgtest.validation import (
    TableExpectation,
    columns,
    split_table_name,
    table_expectation,
    to_snake,
    validate_model,
    validate_models,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeCatalog:
    def __init__(self, tables: dict[tuple[str, str], Sequence[str]]) -> None:
        self.tables = tables
        self.lookups: list[tuple[str, str, str]] = []

    async def table_exists(self, database: str, schema: str, table: str) -> bool:
        self.lookups.append((database, schema, table))
        return (schema, table) in self.tables

    async def table_columns(self, database: str, schema: str, table: str) -> Sequence[str]:
        return list(self.tables.get((schema, table), ()))


@dataclass
class Person:
    id: int
    first_name: str
    last_name: str
    address_id: int
    nickname: str = field(default="", metadata={"db": "-"})


@dataclass
class Address:
    id: int
    street: str = field(metadata={"db": "street_line"})


class People:
    id: int
    FirstName: str
    kind: ClassVar[str] = "person"

    def table_name(self) -> str:
        return '"app"."people"'


@dataclass
class Customer:
    id: int
    email: str

    def table_name(self) -> str:
        return "crm.customers"


class Archive:
    @staticmethod
    def table_name() -> str:
        return "archive.events"

    id: int


class Invoice:
    id: int
    total: float
    currency: t.ClassVar[str] = "EUR"


class Ledger:
    id: int
    entry: UndefinedType  # noqa: F821
    precision: t.ClassVar[int] = 2


class Order(BaseModel):
    id: int
    customer: str = Field(json_schema_extra={"db": "customer_name"})
    notes: str = Field(default="", json_schema_extra={"db": "-"})


PERSON_COLUMNS = ("id", "first_name", "last_name", "address_id")


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Person", "person"),
        ("AddressId", "address_id"),
        ("FirstName", "first_name"),
        ("HTTPServer", "http_server"),
        ("already_snake", "already_snake"),
    ],
)
def test_to_snake(name: str, expected: str) -> None:
    assert to_snake(name) == expected


def test_split_table_name() -> None:
    assert split_table_name("person") == ("public", "person")
    assert split_table_name("app.people") == ("app", "people")
    assert split_table_name('"app"."people"') == ("app", "people")


def test_dataclass_expectation_uses_class_name_and_tags() -> None:
    expectation = table_expectation(Person)

    assert expectation == TableExpectation("public", "person", PERSON_COLUMNS, "Person")
    assert columns(Address) == ("id", "street_line")


def test_accessor_overrides_table_name() -> None:
    expectation = table_expectation(People())

    assert (expectation.schema, expectation.table) == ("app", "people")
    assert expectation.columns == ("id", "first_name")
    assert expectation.qualified_name == "app.people"


def test_accessor_on_class_is_used_for_instance_methods() -> None:
    expectation = table_expectation(Customer)

    assert (expectation.schema, expectation.table) == ("crm", "customers")
    assert expectation.columns == ("id", "email")
    assert table_expectation(People).qualified_name == "app.people"


def test_accessor_on_class_as_static_method() -> None:
    assert table_expectation(Archive).qualified_name == "archive.events"


def test_aliased_class_vars_are_not_columns() -> None:
    assert columns(Invoice) == ("id", "total")
    assert columns(Ledger) == ("id", "entry")


def test_pydantic_model_tags() -> None:
    assert columns(Order) == ("id", "customer_name")
    assert table_expectation(Order(id=1, customer="x")).table == "order"


@pytest.mark.anyio
async def test_matching_model_passes_in_any_column_order() -> None:
    catalog = FakeCatalog({("public", "person"): ["address_id", "last_name", "extra", "first_name", "id"]})

    await validate_model(catalog, "app", Person)

    assert catalog.lookups == [("app", "public", "person")]


@pytest.mark.anyio
async def test_missing_column_names_field_and_observed_columns() -> None:
    catalog = FakeCatalog({("public", "person"): ["id", "first_name", "last_name"]})

    with pytest.raises(ColumnNotFoundError) as excinfo:
        await validate_model(catalog, "app", Person)

    error = excinfo.value
    assert error.field == "address_id"
    assert error.model == "Person"
    assert error.columns == ("id", "first_name", "last_name")
    assert "address_id" in str(error)
    assert "public.person" in str(error)


@pytest.mark.anyio
async def test_class_with_accessor_validates() -> None:
    catalog = FakeCatalog({("app", "people"): ["id", "first_name"]})

    await validate_model(catalog, "app", People)

    assert catalog.lookups == [("app", "app", "people")]


@pytest.mark.anyio
async def test_missing_table() -> None:
    catalog = FakeCatalog({})

    with pytest.raises(TableNotFoundError) as excinfo:
        await validate_model(catalog, "app", People())

    assert (excinfo.value.schema, excinfo.value.table) == ("app", "people")
    assert isinstance(excinfo.value, SchemaValidationError)


@pytest.mark.anyio
async def test_explicit_expectation_is_used_as_is() -> None:
    catalog = FakeCatalog({("audit", "events"): ["id", "payload"]})

    await validate_model(catalog, "app", TableExpectation("audit", "events", ("payload",), "Event"))


@pytest.mark.anyio
async def test_validate_models_stops_at_first_failure() -> None:
    catalog = FakeCatalog({("public", "person"): PERSON_COLUMNS})

    with pytest.raises(TableNotFoundError):
        await validate_models(catalog, "app", Person, Address, Order)

    assert [lookup[2] for lookup in catalog.lookups] == ["person", "address"]
