"""
Test suite for the directory re-index job.
"""

from pathlib import Path

import pytest

import wikirag.ingestion.reindex as reindex
from wikirag.index_manager import IndexManager
from wikirag.pipeline import IngestionPipeline


@pytest.fixture
def pages(tmp_path) -> Path:
    (tmp_path / "Biology").mkdir()
    (tmp_path / "Biology" / "Cell_wall.txt").write_text("Cell walls give plant cells their shape.", encoding="utf-8")
    (tmp_path / "Leaves.html").write_text("<p>Leaves capture sunlight.</p>", encoding="utf-8")
    (tmp_path / "logo.png").write_bytes(b"\x89PNG")
    (tmp_path / "empty.md").write_text("   ", encoding="utf-8")
    return tmp_path


class TestHelpers:

    def test_title_from_relative_path(self, pages) -> None:
        assert reindex.title_for(pages / "Biology" / "Cell_wall.txt", pages) == "Biology/Cell wall"

    def test_iter_files_skips_unsupported(self, pages) -> None:
        found = [(p.name, mime) for p, mime in reindex.iter_files(pages)]
        assert found == [("Cell_wall.txt", "text/plain"), ("Leaves.html", "text/html"), ("empty.md", "text/markdown")]


class TestReindexDirectory:

    def test_indexes_every_supported_file(self, pages, store, cfg) -> None:
        pipeline = IngestionPipeline(store, IndexManager(store, clock=lambda: 42))

        results = reindex.reindex_directory(pages, pipeline, cfg)

        assert [(r.title, r.success) for r in results] == [
            ("Biology/Cell wall", True),
            ("Leaves", True),
            ("empty", False),
        ]
        titles = {d["title"] for d in store.docs("content_42").values()}
        assert titles == {"Biology/Cell wall", "Leaves"}


class TestMain:

    def test_missing_directory(self, tmp_path) -> None:
        assert reindex.main(["--path", str(tmp_path / "nope")]) == 2

    def test_new_index_and_failures(self, pages, store, cfg, monkeypatch, capsys) -> None:
        store.add_index("content_1")
        monkeypatch.setattr(reindex, "SearchStoreClient", lambda *a, **kw: store)
        monkeypatch.setattr(reindex, "default_request_config", lambda: cfg)

        code = reindex.main(["--path", str(pages), "--new-index", "--log-level", "WARNING"])

        assert code == 1
        assert len(store.indices) == 2
        newest = max(store.indices, key=lambda n: int(n.split("_")[1]))
        assert len(store.docs(newest)) == 2
        assert store.docs("content_1") == {}
        assert "2/3 documents" in capsys.readouterr().out

    def test_unreachable_store(self, pages, store, cfg, monkeypatch) -> None:
        store.unreachable = True
        monkeypatch.setattr(reindex, "SearchStoreClient", lambda *a, **kw: store)
        monkeypatch.setattr(reindex, "default_request_config", lambda: cfg)
        assert reindex.main(["--path", str(pages), "--new-index"]) == 1
