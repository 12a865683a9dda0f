"""Batch ingest: heuristics, dry run, per-file errors, plugins, schema checks."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from uks.errors import ValidationError
from uks.ingest import IngestPipeline, MappedFields, SchemaCheck, extract_relations
from uks.models import hashed_urn
from uks.plugins import IngestPlugin, PluginManager
from uks.store import GraphStore


@pytest.fixture
def docs(tmp_path: Path) -> Path:
    path = tmp_path / "docs"
    path.mkdir()
    return path


@pytest.fixture
def pipeline(store, vectors) -> IngestPipeline:
    return IngestPipeline(store, vectors, PluginManager())


def _write(directory: Path, name: str, data) -> Path:
    path = directory / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(data if isinstance(data, str) else json.dumps(data))
    return path


ARCHITECTURE = {
    "title": "Microservices",
    "archetype": "Architecture",
    "version": "2",
    "observations": ["split by domain"],
    "pillars": [{"name": "Isolation"}, {"name": "Scaling"}, {"label": "no name"}],
    "related_to": ["Monolith"],
    "source": "notes/book.md",
    "description": "redis cache queue",
}


def test_extract_relations():
    assert extract_relations(ARCHITECTURE) == [
        ("Isolation", "includes"),
        ("Scaling", "includes"),
        ("Monolith", "related_to"),
        ("notes/book.md", "derived_from"),
    ]
    assert extract_relations({"source": "https://example.com/paper"}) == []


def test_ingest_creates_entity_stubs_and_relations(pipeline, store, docs):
    _write(docs, "arch.json", ARCHITECTURE)
    report = pipeline.ingest(str(docs / "*.json"))

    assert (report.total_files, report.processed) == (1, 1)
    assert (report.entities_added, report.relations_added) == (1, 4)
    assert report.errors == []

    graph = store.get_all()
    main = graph.find_by_name("Microservices")
    assert main.entity_type == "Architecture"
    assert main.observations == ["v2", "split by domain"]
    stub = graph.find_by_name("Isolation")
    assert stub.entity_type == "Concept"
    assert stub.id.startswith("urn:uks:local:concept:")
    assert {(r.to_name, r.relation_type) for r in graph.relations} == {
        ("Isolation", "includes"),
        ("Scaling", "includes"),
        ("Monolith", "related_to"),
        ("notes/book.md", "derived_from"),
    }


def test_new_entities_get_vectors(pipeline, store, vectors, docs):
    _write(docs, "arch.json", ARCHITECTURE)
    pipeline.ingest(str(docs / "*.json"))
    main = store.get_all().find_by_name("Microservices")
    records = vectors.load()
    assert list(records) == [main.id]
    assert records[main.id].text == "redis cache queue"


def test_reingest_merges(pipeline, store, docs):
    _write(docs, "arch.json", ARCHITECTURE)
    pipeline.ingest(str(docs / "*.json"))
    first = store.get_all().find_by_name("Microservices").id

    report = pipeline.ingest(str(docs / "*.json"))
    assert (report.entities_added, report.relations_added) == (0, 0)
    graph = store.get_all()
    assert graph.find_by_name("Microservices").id == first
    assert len(graph.entities) == 5


def test_dry_run_writes_nothing(pipeline, store, vectors, docs):
    _write(docs, "arch.json", ARCHITECTURE)
    report = pipeline.ingest(str(docs / "*.json"), dry_run=True)
    assert report.processed == 1
    assert report.entities_added == 0
    (item,) = report.preview
    assert item["entity"] == {
        "name": "Microservices",
        "type": "Architecture",
        "observations": ["v2", "split by domain"],
    }
    assert {"to": "Isolation", "type": "includes"} in item["relations"]
    assert not store.file_path().exists()
    assert not vectors.vector_file.exists()


def test_bad_files_are_reported_and_skipped(pipeline, store, docs):
    _write(docs, "a_bad.json", "{oops")
    _write(docs, "b_list.json", "[1, 2]")
    _write(docs, "c_empty.json", "{}")
    _write(docs, "d_good.json", {"title": "Good"})
    _write(docs, "notes.txt", "plain text")

    report = pipeline.ingest(str(docs / "*"))
    assert report.total_files == 5
    assert report.processed == 1
    assert [Path(e["file"]).name for e in report.errors] == ["a_bad.json", "b_list.json"]
    assert "JSON object" in report.errors[1]["error"]
    assert [e.name for e in store.get_all().entities] == ["Good"]


def test_defaults_name_to_file_stem_and_type(store, docs):
    _write(docs, "some-topic.json", {"observations": ["x"]})
    report = IngestPipeline(store, default_entity_type="Note").ingest(str(docs / "*.json"))
    assert report.entities_added == 1
    (entity,) = store.get_all().entities
    assert (entity.name, entity.entity_type) == ("some-topic", "Note")


def test_recursive_pattern(pipeline, store, docs):
    _write(docs, "top.json", {"title": "Top"})
    _write(docs, "nested/deeper/leaf.json", {"title": "Leaf"})
    report = pipeline.ingest(str(docs / "**" / "*.json"))
    assert report.total_files == 2
    assert {e.name for e in store.get_all().entities} == {"Top", "Leaf"}


def test_no_matching_files(pipeline, store, docs):
    report = pipeline.ingest(str(docs / "*.json"))
    assert report.to_dict()["total_files"] == 0
    assert not store.file_path().exists()


def test_one_snapshot_per_batch(pipeline, store, docs):
    store.add_entity("Existing")
    for i in range(3):
        _write(docs, f"f{i}.json", {"title": f"T{i}"})
    pipeline.ingest(str(docs / "*.json"))
    assert len(store.backups.list_backups()) == 1
    store.undo()
    assert [e.name for e in store.get_all().entities] == ["Existing"]


def test_empty_pattern_rejected(pipeline):
    with pytest.raises(ValidationError):
        pipeline.ingest("")


class KeyValuePlugin(IngestPlugin):
    def can_handle(self, path):
        return path.endswith(".kv")

    def ingest(self, path, content):
        pairs = (line.split("=", 1) for line in content.splitlines() if "=" in line)
        return {k.strip(): v.strip() for k, v in pairs}


def test_plugin_handles_other_formats(store, docs):
    plugins = PluginManager()
    plugins.register(KeyValuePlugin())
    _write(docs, "gateway.kv", "title = Gateway\narchetype = Service\nsource = Nginx")
    report = IngestPipeline(store, plugins=plugins).ingest(str(docs / "*"))
    assert report.processed == 1
    graph = store.get_all()
    assert graph.find_by_name("Gateway").entity_type == "Service"
    assert [(r.from_name, r.relation_type, r.to_name) for r in graph.relations] == [
        ("Gateway", "derived_from", "Nginx"),
    ]


BENTO = {"title": "Ramen", "flavor": "Recipe", "nutrition": {"kcal": 500}}


def test_bento_ids_are_deterministic(tmp_path, docs):
    _write(docs, "ramen.json", BENTO)
    ids = []
    for name in ("one", "two"):
        store = GraphStore(tmp_path / name)
        IngestPipeline(store).ingest(str(docs / "*.json"))
        (entity,) = store.get_all().entities
        ids.append(entity.id)
        assert entity.entity_type == "Recipe"
    assert ids[0] == ids[1] == hashed_urn("Recipe", "Ramen", "local")


def test_bento_embeds_nutrition(pipeline, store, vectors, docs):
    _write(docs, "ramen.json", BENTO)
    pipeline.ingest(str(docs / "*.json"))
    (record,) = vectors.load().values()
    assert record.text == '{"kcal": 500}'


def test_schema_failure_is_reported(store, docs):
    seen = []

    def validator(data):
        seen.append(data.get("title"))
        return SchemaCheck(valid=False, errors=["missing dish", "bad flavor"])

    _write(docs, "plain.json", {"title": "Plain"})
    _write(docs, "ramen.json", BENTO)
    report = IngestPipeline(store, validator=validator).ingest(str(docs / "*.json"))

    # Only bento records are checked unless strict
    assert seen == ["Ramen"]
    assert report.errors[0]["error"] == "Schema Validation Failed: missing dish, bad flavor"
    assert [e.name for e in store.get_all().entities] == ["Plain"]

    report = IngestPipeline(store, validator=validator).ingest(str(docs / "*.json"), strict=True)
    assert len(report.errors) == 2
    assert report.processed == 0


def test_mapper_overrides_fields(store, docs):
    def mapper(data):
        return MappedFields(name=data["label"].upper(), relations=[("Target", "custom")])

    _write(docs, "x.json", {"label": "thing", "pillars": [{"name": "Ignored"}]})
    IngestPipeline(store, mapper=mapper).ingest(str(docs / "*.json"))
    graph = store.get_all()
    assert {e.name for e in graph.entities} == {"THING", "Target"}
    assert [(r.from_name, r.relation_type, r.to_name) for r in graph.relations] == [
        ("THING", "custom", "Target"),
    ]
