"""
Tests for the single-blob local store and the import-local command.
"""

import base64
import io
import json
import os

import pytest
from PIL import Image

from local_store import APP_KEY, LocalStore, StorageFullError, from_data_url, to_data_url
from records import ImageReadError, group_by_month


class TestDataUrls:

    def test_decode(self):
        raw, ext = from_data_url("data:image/png;base64," + base64.b64encode(b"abc").decode())
        assert raw == b"abc"
        assert ext == ".png"

    def test_jpeg_by_default(self):
        assert from_data_url(to_data_url(b"xyz"))[1] == ".jpg"

    def test_rejects_plain_urls(self):
        with pytest.raises(ValueError):
            from_data_url("https://example.com/a.jpg")


class TestLocalStore:
    """Test whole-store load/save and photo records."""

    def test_missing_file_is_empty(self, tmp_path):
        store = LocalStore(str(tmp_path / "store.json")).load()
        assert store.records_by_user == {}
        assert store.records("xiaoyuan") == []

    def test_blob_saved_under_one_key(self, tmp_path, make_image):
        path = str(tmp_path / "store.json")
        store = LocalStore(path)
        store.active_user_id = "xiaoman"
        store.add_photos("xiaoman", "2024-03", [make_image(), make_image()])

        with open(path, encoding="utf-8") as f:
            entries = json.load(f)
        assert list(entries) == [APP_KEY]
        blob = json.loads(entries[APP_KEY])
        assert blob["activeUserId"] == "xiaoman"
        assert len(blob["recordsByUser"]["xiaoman"]) == 2

        reloaded = LocalStore(path).load()
        assert reloaded.active_user_id == "xiaoman"
        assert reloaded.records("xiaoman") == store.records("xiaoman")

    def test_other_keys_are_kept(self, tmp_path, make_image):
        path = tmp_path / "store.json"
        path.write_text(json.dumps({"other-app": "keep me"}), encoding="utf-8")

        LocalStore(str(path)).add_photos("xiaoyuan", "2024-01", [make_image()])
        assert json.loads(path.read_text(encoding="utf-8"))["other-app"] == "keep me"

    def test_new_photos_go_first(self, tmp_path, make_image):
        store = LocalStore(str(tmp_path / "store.json"))
        first = store.add_photos("xiaoyuan", "2024-01", [make_image()])
        second = store.add_photos("xiaoyuan", "2024-02", [make_image()])

        assert store.records("xiaoyuan") == second + first
        assert second[0]["date"] == "2024-02-01"
        assert [g["month"] for g in group_by_month(store.records("xiaoyuan"))] == ["2024-02", "2024-01"]

    def test_photos_are_shrunk_to_jpeg(self, tmp_path, make_image):
        store = LocalStore(str(tmp_path / "store.json"), max_width=100)
        record = store.add_photos("xiaoyuan", "2024-01", [make_image(width=400, height=200, fmt="PNG")])[0]

        assert record["photoDataUrl"].startswith("data:image/jpeg;base64,")
        raw, _ = from_data_url(record["photoDataUrl"])
        assert Image.open(io.BytesIO(raw)).size == (100, 50)

    def test_bad_image_adds_nothing(self, tmp_path, make_image):
        path = str(tmp_path / "store.json")
        store = LocalStore(path)
        with pytest.raises(ImageReadError):
            store.add_photos("xiaoyuan", "2024-01", [make_image(), b"garbage"])

        assert store.records("xiaoyuan") == []
        assert not os.path.exists(path)

    def test_full_store_keeps_previous_blob(self, tmp_path, make_image):
        path = str(tmp_path / "store.json")
        store = LocalStore(path, quota_bytes=4000)
        store.add_photos("xiaoyuan", "2024-01", [make_image(width=8, height=8)])
        before = (tmp_path / "store.json").read_text(encoding="utf-8")

        with pytest.raises(StorageFullError):
            store.add_photos("xiaoyuan", "2024-02", [make_image(width=1000, height=1000)] * 3)

        assert len(store.records("xiaoyuan")) == 1
        assert (tmp_path / "store.json").read_text(encoding="utf-8") == before


class TestImportLocal:
    """Test the `flask import-local` command."""

    def _write_store(self, tmp_path, make_image):
        path = str(tmp_path / "store.json")
        store = LocalStore(path)
        store.add_photos("xiaoyuan", "2024-03", [make_image(), make_image()])
        store.records_by_user["xiaoman"] = [
            {"id": "a", "date": "2024-02-14", "name": "Kite", "amount": "8.5", "photoDataUrl": ""},
            {"id": "b", "date": "someday", "photoDataUrl": to_data_url(make_image())},
        ]
        store.records_by_user["stranger"] = [{"id": "c", "date": "2024-01-01"}]
        store.save()
        return path

    def test_import(self, app, client, tmp_path, make_image, upload_dir):
        path = self._write_store(tmp_path, make_image)

        result = app.test_cli_runner().invoke(args=["import-local", path])

        assert result.exit_code == 0, result.output
        assert "Imported 3 records" in result.output
        assert "Skipped 2" in result.output

        photos = client.get("/api/records/xiaoyuan").get_json()
        assert len(photos) == 2
        assert {p["month"] for p in photos} == {"2024-03"}
        assert len(os.listdir(upload_dir)) == 2

        purchases = client.get("/api/records/xiaoman").get_json()
        assert purchases[0]["name"] == "Kite"
        assert purchases[0]["amount"] == 8.5
        assert purchases[0]["imagePath"] is None

    def test_missing_file(self, app, tmp_path):
        result = app.test_cli_runner().invoke(args=["import-local", str(tmp_path / "nope.json")])
        assert result.exit_code != 0

    def test_malformed_entries_are_skipped(self, app, client, tmp_path):
        store = LocalStore(str(tmp_path / "store.json"))
        store.records_by_user["xiaoman"] = [
            {"id": "a", "date": 20240214, "name": "Kite"},
            "not a record",
            {"id": "b", "date": "2024-02-15", "name": "Ball", "amount": "inf"},
            {"id": "c", "date": "2024-02-16", "name": "Bear", "amount": 3},
        ]
        store.save()

        result = app.test_cli_runner().invoke(args=["import-local", store.path])

        assert result.exit_code == 0, result.output
        assert "Imported 1 records" in result.output
        assert "Skipped 3" in result.output
        assert [r["name"] for r in client.get("/api/records/xiaoman").get_json()] == ["Bear"]
