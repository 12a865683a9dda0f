"""GraphStore: transactions, merge semantics, undo, legacy files, search."""

from __future__ import annotations

import json
import os

import pytest

from uks.errors import LockError, NotFoundError, ValidationError
from uks.models import FILE_MARKER, Entity, legacy_id
from uks.store import GraphStore


def _entity(store: GraphStore, name: str, context: str = "default") -> Entity:
    entity = store.get_all(context).find_by_name(name)
    assert entity is not None, name
    return entity


def test_redis_caching_walkthrough(store):
    redis_id = store.add_entity("Redis", "Database", ["Cache"])
    assert redis_id.startswith("urn:uks:local:database:")

    assert store.add_entity("Redis", observations=["KV-Store"]) == redis_id
    assert _entity(store, "Redis").observations == ["Cache", "KV-Store"]

    with pytest.raises(NotFoundError) as exc:
        store.add_relation("Redis", "Caching", "supports")
    assert exc.value.details["missing"] == ["Caching"]

    store.add_entity("Caching", "Concept")
    assert store.add_relation("Redis", "Caching", "supports") is True

    result = store.search("Cache")
    assert [e.name for e in result.entities] == ["Redis"]
    assert [(r.from_name, r.relation_type, r.to_name) for r in result.relations] == [
        ("Redis", "supports", "Caching"),
    ]

    # Each undo steps back one write
    store.undo()
    graph = store.get_all()
    assert graph.relations == []
    assert {e.name for e in graph.entities} == {"Redis", "Caching"}

    store.undo()
    assert [e.name for e in store.get_all().entities] == ["Redis"]

    store.undo()
    graph = store.get_all()
    assert [(e.id, e.name, e.observations) for e in graph.entities] == [(redis_id, "Redis", ["Cache"])]

    with pytest.raises(NotFoundError):
        store.undo()


class TestAddEntity:
    def test_defaults_to_concept(self, store):
        store.add_entity("Idea")
        entity = _entity(store, "Idea")
        assert entity.entity_type == "Concept"
        assert entity.id.startswith("urn:uks:local:concept:")

    def test_merge_keeps_id_and_first_seen_order(self, store):
        first = store.add_entity("Queue", "Component", ["b", "a"])
        second = store.add_entity("Queue", "Other", ["a", "c", "b", "d"])
        assert first == second
        entity = _entity(store, "Queue")
        assert entity.observations == ["b", "a", "c", "d"]
        assert entity.entity_type == "Component"

    def test_namespace_in_urn(self, storage):
        store = GraphStore(storage, namespace="team")
        assert store.add_entity("X", "Big Thing!").startswith("urn:uks:team:bigthing:")

    @pytest.mark.parametrize("name", ["", "   ", None, "x" * 501])
    def test_rejects_bad_names(self, store, name):
        with pytest.raises(ValidationError):
            store.add_entity(name)
        assert not store.file_path().exists()

    def test_rejects_non_string_observations(self, store):
        with pytest.raises(ValidationError, match=r"observations\[1\]"):
            store.add_entity("X", observations=["ok", 3])

    def test_rejects_bad_context(self, store):
        with pytest.raises(ValidationError):
            store.add_entity("X", context="../etc")


class TestAddRelation:
    def test_duplicate_is_stored_once(self, store):
        store.add_entity("A")
        store.add_entity("B")
        assert store.add_relation("A", "B", "uses") is True
        assert store.add_relation("A", "B", "uses") is False
        assert store.add_relation("A", "B", "extends") is True
        assert len(store.get_all().relations) == 2

    def test_resolves_endpoints_by_id(self, store):
        a = store.add_entity("A")
        b = store.add_entity("B")
        store.add_relation(a, b, "uses")
        (rel,) = store.get_all().relations
        assert (rel.from_id, rel.to_id, rel.from_name, rel.to_name) == (a, b, "A", "B")

    def test_missing_endpoint_leaves_file_untouched(self, store):
        store.add_entity("A")
        before = store.file_path().read_bytes()
        backups = store.backups.list_backups()
        with pytest.raises(NotFoundError, match="Cannot link"):
            store.add_relation("A", "Nope", "uses")
        assert store.file_path().read_bytes() == before
        assert store.backups.list_backups() == backups

    def test_requires_relation_type(self, store):
        with pytest.raises(ValidationError):
            store.add_relation("A", "B", " ")


class TestUpdateGraph:
    def test_mutator_failure_writes_nothing(self, store):
        store.add_entity("Keep")
        before = store.file_path().read_bytes()

        def _half_done(graph):
            graph.entities.append(Entity(id="urn:x", name="Temp"))
            graph.entities[0].observations.append("changed")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            store.update_graph(_half_done)
        assert store.file_path().read_bytes() == before
        assert not store.lock.path.exists()

    def test_returns_mutator_result(self, store):
        assert store.update_graph(lambda g: len(g.entities)) == 0

    def test_busy_lock_raises(self, store):
        store.lock.path.write_text(str(os.getppid()))
        with pytest.raises(LockError, match="Graph is busy"):
            store.add_entity("X")
        assert not store.file_path().exists()

    def test_validation_runs_before_lock(self, store):
        store.lock.path.write_text(str(os.getppid()))
        with pytest.raises(ValidationError):
            store.add_entity("")

    def test_file_layout(self, store):
        store.add_entity("A", "T", ["o"])
        store.add_entity("B")
        store.add_relation("A", "B", "r")
        lines = store.file_path().read_text().splitlines()
        assert json.loads(lines[0]) == FILE_MARKER
        assert [json.loads(line)["type"] for line in lines[1:]] == ["entity", "entity", "relation"]
        assert set(json.loads(lines[1])) == {"type", "id", "name", "entityType", "observations"}
        assert set(json.loads(lines[3])) == {"type", "fromId", "toId", "fromName", "toName", "relationType"}
        assert not list(store.base_path.glob("*.tmp"))


class TestUndo:
    def test_noop_writes_take_no_snapshot(self, store):
        store.add_entity("A", observations=["x"])
        store.add_entity("B")
        store.add_relation("A", "B", "uses")
        after_link = store.file_path().read_bytes()
        backups = store.backups.list_backups()

        assert store.add_relation("A", "B", "uses") is False
        store.add_entity("A", observations=["x"])
        assert store.backups.list_backups() == backups
        assert store.file_path().read_bytes() == after_link

        # Undo still reverts the last real change
        store.undo()
        assert store.get_all().relations == []

    def test_restores_exact_bytes(self, store):
        store.add_entity("A", observations=["one"])
        snapshot = store.file_path().read_bytes()
        store.add_entity("A", observations=["two"])
        assert store.undo().startswith("graph-default-")
        assert store.file_path().read_bytes() == snapshot

    def test_without_writes(self, store):
        with pytest.raises(NotFoundError):
            store.undo()

    def test_backups_never_exceed_limit(self, storage):
        store = GraphStore(storage, max_backups=2)
        for i in range(6):
            store.add_entity(f"E{i}")
        assert len(store.backups.list_backups()) == 2

    def test_contexts_are_independent(self, store):
        store.add_entity("A", context="one")
        store.add_entity("B", context="one")
        store.add_entity("C", context="two")
        store.undo("one")
        assert [e.name for e in store.get_all("one").entities] == ["A"]
        assert [e.name for e in store.get_all("two").entities] == ["C"]
        assert store.list_contexts() == ["one", "two"]


class TestLoad:
    def test_missing_file_is_empty(self, store):
        graph = store.load_graph("nothing")
        assert graph.entities == []
        assert graph.relations == []

    def test_malformed_lines_are_skipped(self, store):
        store.file_path().write_text(
            "\n".join([
                json.dumps(FILE_MARKER),
                "{not json",
                "[1, 2]",
                json.dumps({"type": "entity", "entityType": "NoName"}),
                json.dumps({"type": "entity", "id": "urn:a", "name": "A"}),
                json.dumps({"type": "relation", "fromId": "urn:a", "toId": "urn:a"}),
                "",
            ])
        )
        graph = store.load_graph()
        assert [e.name for e in graph.entities] == ["A"]
        assert graph.entities[0].entity_type == "Concept"
        assert graph.relations == []

    def test_undecodable_lines_are_skipped(self, store):
        store.add_entity("Good")
        with store.file_path().open("ab") as f:
            f.write(b'{"type":"entity","name":"Bad\xff"}\n')
            f.write(b"\xff\n")
        assert [e.name for e in store.load_graph().entities] == ["Good"]
        assert [e.name for e in store.search("good").entities] == ["Good"]

        store.add_entity("Next")
        assert [e.name for e in store.load_graph().entities] == ["Good", "Next"]

    @pytest.mark.parametrize(
        "line",
        [
            {"type": "entity", "name": 123},
            {"type": "entity", "name": ""},
            {"type": "entity", "name": "Bad", "observations": "abc"},
            {"type": "entity", "name": "Bad", "entityType": ["x"]},
            {"type": "entity", "name": "Bad", "id": 7},
        ],
    )
    def test_mistyped_entities_are_skipped(self, store, line):
        store.file_path().write_text(
            json.dumps({"type": "entity", "id": "urn:a", "name": "Alpha"}) + "\n" + json.dumps(line) + "\n"
        )
        graph = store.load_graph()
        assert [e.name for e in graph.entities] == ["Alpha"]
        assert [e.name for e in store.search("alpha").entities] == ["Alpha"]

    @pytest.mark.parametrize("relation_type", [5, "", None, ["uses"]])
    def test_mistyped_relations_are_skipped(self, store, relation_type):
        store.file_path().write_text("\n".join([
            json.dumps({"type": "entity", "id": "urn:a", "name": "A"}),
            json.dumps({"type": "relation", "fromId": "urn:a", "toId": "urn:a", "relationType": relation_type}),
            json.dumps({"type": "relation", "fromId": "urn:a", "toId": "urn:a", "relationType": "self"}),
        ]))
        assert [r.relation_type for r in store.load_graph().relations] == ["self"]

    def test_legacy_file_gets_stable_ids(self, store):
        store.file_path().write_text(
            "\n".join([
                json.dumps({"type": "_aim", "source": "uks", "version": "1.0.0"}),
                json.dumps({"type": "entity", "name": "Old", "entityType": "Thing", "observations": ["o"]}),
                json.dumps({"type": "entity", "name": "Other", "entityType": "Thing", "observations": []}),
                json.dumps({"type": "relation", "from": "Old", "to": "Other", "relationType": "r"}),
            ])
        )
        first = store.load_graph()
        second = store.load_graph()
        old = first.find_by_name("Old")
        assert old.id == legacy_id("Old", "local") == second.find_by_name("Old").id
        (rel,) = first.relations
        assert (rel.from_id, rel.to_id) == (old.id, first.find_by_name("Other").id)

        # The next write upgrades the file in place
        store.add_entity("Old", observations=["p"])
        lines = store.file_path().read_text().splitlines()
        assert json.loads(lines[0])["version"] == "1.1.0"
        assert json.loads(lines[1])["id"] == old.id


class TestSearch:
    def test_case_insensitive_on_names_and_observations(self, store):
        store.add_entity("PostgreSQL", "Database", ["Relational store"])
        store.add_entity("Memcached", "Cache", ["in-memory STORE"])
        store.add_entity("Python")
        names = [e.name for e in store.search("store").entities]
        assert names == ["PostgreSQL", "Memcached"]
        assert [e.name for e in store.search("POSTGRES").entities] == ["PostgreSQL"]

    def test_includes_relations_touching_hits(self, store):
        store.add_entity("A")
        store.add_entity("B")
        store.add_entity("C")
        store.add_relation("B", "A", "uses")
        store.add_relation("B", "C", "uses")
        result = store.search("a")
        assert [e.name for e in result.entities] == ["A"]
        assert [(r.from_name, r.to_name) for r in result.relations] == [("B", "A")]
        assert result.to_dict()["metadata"] == {"mode": "keyword"}

    def test_no_match(self, store):
        store.add_entity("A")
        result = store.search("zzz")
        assert result.entities == []
        assert result.relations == []

    def test_rejects_empty_query(self, store):
        with pytest.raises(ValidationError):
            store.search("")
