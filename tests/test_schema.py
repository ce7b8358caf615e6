"""
Tests for per-table column tracking.
"""

import pytest

from conftest import MemorySink
from scanner.schema import ColumnSchema


class TestEnsureColumns:

    def test_first_row_defines_header(self):
        sink = MemorySink()
        schema = ColumnSchema(sink)

        columns = schema.ensure_columns("ExampleBank", {"Amount": "1", "RefNo": "A"})

        assert columns == ["Amount", "RefNo"]
        assert sink.get_header_row("ExampleBank") == ["Amount", "RefNo"]

    def test_only_grows_at_the_end(self):
        schema = ColumnSchema(MemorySink())
        schema.ensure_columns("T", {"A": 1, "B": 2})
        schema.ensure_columns("T", {"C": 3, "A": 4})
        columns = schema.ensure_columns("T", {"B": 5})

        assert columns == ["A", "B", "C"]

    def test_monotonic_across_varied_rows(self):
        schema = ColumnSchema(MemorySink())
        seen = []
        for row in [{"X": 1}, {"Y": 1, "X": 1}, {}, {"Z": 1, "Y": 1}, {"X": 1}]:
            columns = schema.ensure_columns("T", row)
            assert columns[:len(seen)] == seen
            seen = columns
        assert seen == ["X", "Y", "Z"]

    def test_seeds_from_existing_header(self):
        sink = MemorySink()
        sink.get_or_create("T")
        sink.append_header_column("T", "Old")
        schema = ColumnSchema(sink)

        columns = schema.ensure_columns("T", {"New": 1})

        assert columns == ["Old", "New"]

    def test_tables_tracked_separately(self):
        schema = ColumnSchema(MemorySink())
        schema.ensure_columns("One", {"A": 1})
        schema.ensure_columns("Two", {"B": 1})
        assert schema.columns("One") == ["A"]
        assert schema.columns("Two") == ["B"]

    def test_rejects_empty_field_name(self):
        schema = ColumnSchema(MemorySink())
        with pytest.raises(ValueError):
            schema.ensure_columns("T", {"": 1})

    def test_header_extended_once_per_new_column(self):
        sink = MemorySink()
        schema = ColumnSchema(sink)
        schema.ensure_columns("T", {"A": 1})
        schema.ensure_columns("T", {"A": 2})
        assert sink.get_header_row("T") == ["A"]


class TestToPositionalRow:

    def test_aligned_to_full_header(self):
        schema = ColumnSchema(MemorySink())
        schema.ensure_columns("T", {"A": 1, "B": 2, "C": 3})

        assert schema.to_positional_row("T", {"C": "c", "A": "a"}) == ["a", "", "c"]

    def test_always_as_wide_as_schema(self):
        schema = ColumnSchema(MemorySink())
        schema.ensure_columns("T", {"A": 1, "B": 2})
        assert len(schema.to_positional_row("T", {})) == 2
