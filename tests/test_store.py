"""Tests for the owner-scoped EntityStore."""

from convostack.store import EntityStore

from conftest import OWNER, make_folder, make_item


class TestUpsert:
    def test_upsert_is_idempotent_by_id(self):
        store = EntityStore(OWNER)
        a = make_folder("a", "A")
        store.upsert_many([a, make_folder("b", "B")])
        version = store.version

        assert store.upsert_many([a]) == 0
        assert store.version == version
        assert [f.id for f in store.all()] == ["a", "b"]

    def test_upsert_replaces_in_place(self):
        store = EntityStore(OWNER)
        store.upsert_many([make_folder("a", "A"), make_folder("b", "B")])
        store.upsert_many([make_folder("a", "Renamed")])

        assert [f.name for f in store.all()] == ["Renamed", "B"]

    def test_foreign_records_are_refused(self):
        store = EntityStore(OWNER)
        store.upsert_many([make_folder("a", "A", owner_id="someone-else")])
        assert len(store) == 0
        assert not store.insert(make_item("i1", owner_id="someone-else"))
        assert store.get("a") is None


class TestPositions:
    def test_insert_at_top(self):
        store = EntityStore(OWNER)
        store.upsert_many([make_item("1"), make_item("2")])
        store.insert(make_item("0"), 0)

        assert [i.id for i in store.all()] == ["0", "1", "2"]

    def test_replace_keeps_position(self):
        store = EntityStore(OWNER)
        store.upsert_many([make_item("1"), make_item("temp-x"), make_item("2")])
        assert store.replace("temp-x", make_item("srv-1"))

        assert [i.id for i in store.all()] == ["1", "srv-1", "2"]
        assert "temp-x" not in store

    def test_replace_drops_duplicate_delivered_earlier(self):
        store = EntityStore(OWNER)
        store.upsert_many([make_item("temp-x"), make_item("1"), make_item("srv-1")])
        store.replace("temp-x", make_item("srv-1"))

        assert [i.id for i in store.all()] == ["srv-1", "1"]

    def test_replace_missing_is_noop(self):
        store = EntityStore(OWNER)
        assert not store.replace("nope", make_item("srv-1"))
        assert len(store) == 0

    def test_take_and_restore_round_trip(self):
        store = EntityStore(OWNER)
        records = [make_folder(str(n), f"F{n}") for n in range(5)]
        store.upsert_many(records)

        taken = store.take(["1", "3"])
        assert [f.id for f in store.all()] == ["0", "2", "4"]

        store.restore(taken)
        assert store.all() == records

    def test_remove_and_clear(self):
        store = EntityStore(OWNER)
        store.upsert_many([make_folder("a", "A"), make_folder("b", "B")])

        assert store.remove("a").name == "A"
        assert store.remove("a") is None
        store.clear()
        assert store.all() == []
