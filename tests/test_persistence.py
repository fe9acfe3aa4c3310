"""Tests for on-disk persistence and local path mapping."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from site_mirror import Persister, local_path, page_file_name


class TestPageFileName:
    def test_empty_path_is_index(self) -> None:
        assert page_file_name("") == "index.html"

    def test_trailing_slash_is_index(self) -> None:
        assert page_file_name("/catalogue/") == "index.html"

    def test_last_segment(self) -> None:
        assert page_file_name("/catalogue/page-2.html") == "page-2.html"

    def test_percent_decoded(self) -> None:
        assert page_file_name("/a%20b.html") == "a b.html"


class TestSavePage:
    def test_dedup_true_then_false(self, tmp_path: Path) -> None:
        p = Persister()
        assert p.save_page(tmp_path, "/a.html", "first") is True
        assert p.save_page(tmp_path, "/a.html", "second") is False
        assert (tmp_path / "a.html").read_text(encoding="utf-8") == "first"

    def test_existing_file_counts_as_visited(self, tmp_path: Path) -> None:
        (tmp_path / "index.html").write_text("old", encoding="utf-8")
        assert Persister().save_page(tmp_path, "", "new") is False
        assert (tmp_path / "index.html").read_text(encoding="utf-8") == "old"

    def test_creates_directories(self, tmp_path: Path) -> None:
        target = tmp_path / "x" / "y"
        assert Persister().save_page(target, "/x/y/z.html", "<p>z</p>") is True
        assert (target / "z.html").is_file()

    def test_concurrent_same_path_writes_once(self, tmp_path: Path) -> None:
        p = Persister()
        results = []
        lock = threading.Lock()

        def save(i: int) -> None:
            r = p.save_page(tmp_path, "/same.html", f"content {i}")
            with lock:
                results.append(r)

        threads = [threading.Thread(target=save, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1


class TestSaveResource:
    def test_overwrites(self, tmp_path: Path) -> None:
        p = Persister()
        dest = tmp_path / "css" / "site.css"
        p.save_resource(dest, b"one")
        p.save_resource(dest, b"two")
        assert dest.read_bytes() == b"two"

    def test_existing_directory_is_fine(self, tmp_path: Path) -> None:
        (tmp_path / "img").mkdir()
        path = Persister().save_resource(tmp_path / "img" / "a.png", b"\x89PNG")
        assert path.read_bytes() == b"\x89PNG"


class TestLocalPath:
    def test_relative_to_base(self, tmp_path: Path) -> None:
        base = tmp_path / "catalogue"
        assert local_path(tmp_path, base, "css/a.css") == base / "css" / "a.css"

    def test_root_relative(self, tmp_path: Path) -> None:
        base = tmp_path / "catalogue"
        assert local_path(tmp_path, base, "/static/a.css") == tmp_path / "static" / "a.css"

    def test_parent_segments(self, tmp_path: Path) -> None:
        base = tmp_path / "a" / "b"
        assert local_path(tmp_path, base, "../c.css") == tmp_path / "a" / "c.css"

    def test_never_above_root(self, tmp_path: Path) -> None:
        assert local_path(tmp_path, tmp_path, "../../../etc/passwd") == tmp_path / "etc" / "passwd"

    def test_query_and_fragment_dropped(self, tmp_path: Path) -> None:
        assert local_path(tmp_path, tmp_path, "a.js?v=3#x") == tmp_path / "a.js"

    def test_empty_reference_is_base(self, tmp_path: Path) -> None:
        base = tmp_path / "sub"
        assert local_path(tmp_path, base, "") == base


class TestSavePageFailure:
    def test_failed_write_does_not_mark_visited(self, tmp_path: Path, monkeypatch) -> None:
        p = Persister()
        real_write_text = Path.write_text

        def disk_full(self, *args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(Path, "write_text", disk_full)
        with pytest.raises(OSError):
            p.save_page(tmp_path, "/retry.html", "first")
        monkeypatch.setattr(Path, "write_text", real_write_text)

        assert p.save_page(tmp_path, "/retry.html", "second") is True
        assert (tmp_path / "retry.html").read_text(encoding="utf-8") == "second"
