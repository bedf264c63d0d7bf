"""Tests for tablelog.catalog: pointer CAS and schema history."""

import threading

import pytest

from tablelog.catalog import CatalogEntry, MetadataCatalog, validate_table_name
from tablelog.errors import NotFoundError, TableExistsError
from tablelog.schema import AddColumn, SchemaVersion
from tablelog.storage import (
    InMemoryStorageProvider,
    ReadOnlyStorageProvider,
    UnsupportedOperationError,
)


SCHEMA = SchemaVersion.initial([("id", "long", False)])


@pytest.fixture
def catalog():
    cat = MetadataCatalog(InMemoryStorageProvider())
    cat.create_table("events", SCHEMA)
    return cat


class TestLifecycle:

    def test_create_and_resolve(self, catalog):
        assert catalog.resolve("events") == CatalogEntry("events", 0, 0)
        assert catalog.exists("events")
        assert not catalog.exists("other")

    def test_create_twice(self, catalog):
        with pytest.raises(TableExistsError):
            catalog.create_table("events", SCHEMA)

    def test_resolve_unknown(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.resolve("other")

    def test_list_tables(self, catalog):
        catalog.create_table("a_table", SCHEMA)
        assert catalog.list_tables() == ["a_table", "events"]

    @pytest.mark.parametrize("name", ["", "../x", "a/b", "1abc", "has space"])
    def test_invalid_names(self, name):
        with pytest.raises(ValueError):
            validate_table_name(name)

    def test_read_only_storage(self):
        storage = InMemoryStorageProvider()
        MetadataCatalog(storage).create_table("events", SCHEMA)
        ro = MetadataCatalog(ReadOnlyStorageProvider(storage))
        assert ro.resolve("events").current_version == 0
        with pytest.raises(UnsupportedOperationError):
            ro.advance("events", 0, 1)


class TestAdvance:

    def test_advance_by_one(self, catalog):
        result = catalog.advance("events", 0, 1)
        assert result.success
        assert result.entry.current_version == 1
        assert catalog.resolve("events").current_version == 1

    def test_stale_expected_version(self, catalog):
        catalog.advance("events", 0, 1)
        result = catalog.advance("events", 0, 1)
        assert not result.success
        assert result.entry.current_version == 1

    def test_must_advance_by_exactly_one(self, catalog):
        with pytest.raises(ValueError):
            catalog.advance("events", 0, 2)
        with pytest.raises(ValueError):
            catalog.advance("events", 0, 0)

    def test_concurrent_advance_single_winner(self, catalog):
        results = []

        def attempt():
            results.append(catalog.advance("events", 0, 1).success)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1
        assert catalog.resolve("events").current_version == 1

    def test_retries_generation_race(self):
        storage = RacingStorage()
        catalog = MetadataCatalog(storage)
        catalog.create_table("events", SCHEMA)
        storage.race = True
        assert catalog.advance("events", 0, 1).success
        assert storage.cas_calls == 2
        assert catalog.resolve("events").current_version == 1


class RacingStorage(InMemoryStorageProvider):
    """Rewrites the pointer with identical content just before the first cas.

    The generation moves but the version does not, so advance() must
    re-read and succeed on its second attempt.
    """

    def __init__(self):
        super().__init__()
        self.race = False
        self.cas_calls = 0

    def cas(self, key, expected_generation, data):
        if self.race:
            self.cas_calls += 1
            if self.cas_calls == 1:
                self.put(key, self.get(key).data)
        return super().cas(key, expected_generation, data)


class TestSchemas:

    def test_new_schema_appended(self, catalog):
        s1 = SCHEMA.evolve([AddColumn("x", "int")])
        catalog.advance("events", 0, 1, s1)
        assert catalog.resolve("events").schema_id == 1
        assert catalog.schemas("events") == (SCHEMA, s1)
        assert catalog.schema("events", 0) == SCHEMA
        assert catalog.current_schema("events") == s1

    def test_schema_id_not_reused(self, catalog):
        with pytest.raises(ValueError, match="already used"):
            catalog.advance("events", 0, 1, SCHEMA)

    def test_unknown_schema(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.schema("events", 7)
