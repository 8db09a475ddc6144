"""
Unit tests for the element mappers (byte array and SQL backends).
"""
import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from src.index.database import ELEMENT_TABLE_NAME, element_table, namespace_for
from src.index.envelope import Envelope
from src.index.exceptions import StoreIndexError
from src.index.mappers import (
    MAPPER_FILE_NAME,
    NOT_FOUND,
    ByteArrayElementMapper,
    IndexedElement,
    SQLElementMapper,
    deserialize_records,
    serialize_records,
)
from src.index.rtree import StarRTree
from src.index.tree_access import MemoryTreeAccess


ROAD = IndexedElement("road-7", Envelope(1.0, 2.0, 3.0, 4.0), nbenv=2)
RIVER = IndexedElement("river-3", Envelope(-5.0, -5.0, 5.0, 5.0))


@pytest.fixture
def sqlite_engine():
    """In-memory SQLite shared by every connection of the test."""
    return create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)


@pytest.fixture(params=["bytes", "sql"])
def mapper(request, sqlite_engine):
    """Each mapper backend, freshly opened."""
    if request.param == "bytes":
        m = ByteArrayElementMapper()
    else:
        m = SQLElementMapper(sqlite_engine, "/data/roads")
    yield m
    m.close()


@pytest.mark.unit
class TestMapperContract:
    """Behavior shared by both backends."""

    def test_unknown_identifier(self, mapper):
        """Test lookups on an empty mapper miss."""
        assert mapper.get_tree_identifier(ROAD) == NOT_FOUND
        assert mapper.get_object_from_tree_identifier(1) is None
        assert mapper.get_full_map() == {}

    def test_set_and_get(self, mapper):
        """Test a stored record is found both ways."""
        mapper.set_tree_identifier(ROAD, 1)

        assert mapper.get_tree_identifier(ROAD) == 1
        assert mapper.get_object_from_tree_identifier(1) == ROAD

    def test_lookup_is_by_identifier(self, mapper):
        """Test the envelope does not matter for identifier lookups."""
        mapper.set_tree_identifier(ROAD, 1)
        moved = IndexedElement(ROAD.identifier, Envelope(100, 100, 101, 101))

        assert mapper.get_tree_identifier(moved) == 1

    def test_upsert(self, mapper):
        """Test setting an existing id replaces its record."""
        mapper.set_tree_identifier(ROAD, 1)
        mapper.set_tree_identifier(RIVER, 1)

        assert mapper.get_object_from_tree_identifier(1) == RIVER
        assert mapper.get_tree_identifier(ROAD) == NOT_FOUND
        assert len(mapper.get_full_map()) == 1

    def test_none_deletes(self, mapper):
        """Test setting None removes the record for the id."""
        mapper.set_tree_identifier(ROAD, 1)
        mapper.set_tree_identifier(RIVER, 2)
        mapper.set_tree_identifier(None, 1)

        assert mapper.get_object_from_tree_identifier(1) is None
        assert mapper.get_tree_identifier(ROAD) == NOT_FOUND
        assert mapper.get_full_map() == {2: RIVER}

    def test_delete_missing_id(self, mapper):
        """Test deleting an unknown id is a no-op."""
        mapper.set_tree_identifier(None, 42)

        assert mapper.get_full_map() == {}

    def test_full_map(self, mapper):
        """Test get_full_map returns every record by id."""
        mapper.set_tree_identifier(ROAD, 1)
        mapper.set_tree_identifier(RIVER, 2)

        assert mapper.get_full_map() == {1: ROAD, 2: RIVER}

    def test_duplicate_identifier_resolves_to_highest_id(self, mapper):
        """Test an identifier stored under two ids resolves to the higher one on every backend."""
        mapper.set_tree_identifier(ROAD, 2)
        mapper.set_tree_identifier(ROAD, 1)

        assert mapper.get_tree_identifier(ROAD) == 2
        mapper.set_tree_identifier(None, 2)
        assert mapper.get_tree_identifier(ROAD) == 1

    def test_clear(self, mapper):
        """Test clear empties the mapper."""
        mapper.set_tree_identifier(ROAD, 1)
        mapper.clear()

        assert mapper.get_full_map() == {}

    def test_get_envelope(self, mapper):
        """Test the envelope comes from the element."""
        assert mapper.get_envelope(ROAD) == ROAD.envelope

    def test_closed_mapper_rejects_use(self, mapper):
        """Test a closed mapper raises StoreIndexError."""
        mapper.close()

        assert mapper.is_closed()
        with pytest.raises(StoreIndexError):
            mapper.get_tree_identifier(ROAD)

    def test_drives_a_tree(self, mapper):
        """Test the mapper works as a tree's element store."""
        tree = StarRTree(MemoryTreeAccess(), mapper, max_elements=4)
        for i in range(25):
            tree.insert(IndexedElement(f"e{i}", Envelope(i, i, i + 1, i + 1)))
        tree.remove(IndexedElement("e3", Envelope(3, 3, 4, 4)))

        assert len(mapper.get_full_map()) == 24
        found = sorted(e.identifier for e in tree.search_elements(Envelope(2, 2, 4.5, 4.5)))
        assert found == ["e1", "e2", "e4"]


@pytest.mark.unit
class TestByteArrayElementMapper:
    """Test suite for the byte array backend."""

    def test_records_codec(self):
        """Test records survive encoding, envelope included."""
        records = {1: ROAD, 7: RIVER}

        assert deserialize_records(serialize_records(records)) == records

    def test_corrupted_records(self):
        """Test garbage raises StoreIndexError."""
        with pytest.raises(StoreIndexError):
            deserialize_records(b"\x00\x01\x02")

    def test_flush_and_reload(self, tmp_path):
        """Test flushed records are loaded by a new mapper on the same directory."""
        mapper = ByteArrayElementMapper(tmp_path)
        mapper.set_tree_identifier(ROAD, 3)
        mapper.flush()

        assert (tmp_path / MAPPER_FILE_NAME).exists()
        reloaded = ByteArrayElementMapper(tmp_path)
        assert reloaded.get_tree_identifier(ROAD) == 3
        assert reloaded.get_object_from_tree_identifier(3) == ROAD

    def test_close_flushes(self, tmp_path):
        """Test close writes pending changes."""
        mapper = ByteArrayElementMapper(tmp_path)
        mapper.set_tree_identifier(ROAD, 1)
        mapper.close()

        assert ByteArrayElementMapper(tmp_path).get_full_map() == {1: ROAD}

    def test_discard_drops_changes(self, tmp_path):
        """Test discard closes without writing."""
        mapper = ByteArrayElementMapper(tmp_path)
        mapper.set_tree_identifier(ROAD, 1)
        mapper.discard()

        assert mapper.is_closed()
        assert not (tmp_path / MAPPER_FILE_NAME).exists()

    def test_in_memory_to_bytes(self):
        """Test a directory-less mapper still serializes."""
        mapper = ByteArrayElementMapper()
        mapper.set_tree_identifier(RIVER, 5)

        assert deserialize_records(mapper.to_bytes()) == {5: RIVER}


@pytest.mark.unit
class TestSQLElementMapper:
    """Test suite for the SQL backend."""

    def test_namespace_is_sha1_of_path(self):
        """Test the namespace is "index" plus the SHA1 hex of the storage path."""
        namespace = namespace_for("/data/roads")

        assert namespace.startswith("index")
        assert len(namespace) == len("index") + 40
        assert namespace == namespace_for("/data/roads")
        assert namespace != namespace_for("/data/rivers")

    def test_sqlite_table_is_prefixed(self, sqlite_engine):
        """Test SQLite gets the namespace as a table prefix."""
        table, schema = element_table(sqlite_engine, "/data/roads")

        assert schema is None
        assert table.name == f"{namespace_for('/data/roads')}_{ELEMENT_TABLE_NAME}"
        assert [c.name for c in table.columns] == ["id", "identifier", "nbenv", "minx", "maxx", "miny", "maxy"]

    def test_table_created(self, sqlite_engine):
        """Test opening a mapper creates its table."""
        mapper = SQLElementMapper(sqlite_engine, "/data/roads")

        assert inspect(sqlite_engine).has_table(mapper.table.name)
        mapper.close()

    def test_trees_do_not_share_records(self, sqlite_engine):
        """Test two storage paths keep separate records."""
        roads = SQLElementMapper(sqlite_engine, "/data/roads")
        rivers = SQLElementMapper(sqlite_engine, "/data/rivers")
        roads.set_tree_identifier(ROAD, 1)

        assert rivers.get_full_map() == {}
        assert rivers.get_tree_identifier(ROAD) == NOT_FOUND
        roads.close()
        rivers.close()

    def test_records_persist_across_mappers(self, sqlite_engine):
        """Test records written by one mapper are read by the next one on the same path."""
        first = SQLElementMapper(sqlite_engine, "/data/roads")
        first.set_tree_identifier(ROAD, 9)
        first.close()

        second = SQLElementMapper(sqlite_engine, "/data/roads")
        assert second.get_object_from_tree_identifier(9) == ROAD
        second.close()

    def test_database_errors_are_wrapped(self, sqlite_engine):
        """Test SQLAlchemy failures surface as StoreIndexError."""
        mapper = SQLElementMapper(sqlite_engine, "/data/roads")
        mapper.table.drop(sqlite_engine)

        with pytest.raises(StoreIndexError) as exc_info:
            mapper.get_full_map()
        assert exc_info.value.original_exception is not None
        mapper.close()

    def test_connection_closed_when_table_creation_fails(self, sqlite_engine, monkeypatch):
        """Test a mapper that cannot create its table releases its connection."""
        opened = []
        connect = sqlite_engine.connect

        def tracking_connect():
            connection = connect()
            opened.append(connection)
            return connection

        def failing_create_table(self):
            raise SQLAlchemyError("permission denied for schema")

        monkeypatch.setattr(sqlite_engine, "connect", tracking_connect)
        monkeypatch.setattr(SQLElementMapper, "_create_table", failing_create_table)

        with pytest.raises(StoreIndexError):
            SQLElementMapper(sqlite_engine, "/data/roads")
        assert len(opened) == 1
        assert opened[0].closed
