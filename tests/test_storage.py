"""
Tests for answer image uploads.
"""

import threading
from unittest.mock import MagicMock

import pytest

from homework.errors import CancelledError, UploadError
from homework.schema import AnswerImage, PipelineStage
from homework.storage import (
    MemoryObjectStore,
    ObjectUploader,
    SupabaseObjectStore,
    build_storage_key,
)


def _images(*names):
    return [AnswerImage(filename=n, content_type="image/png", data=n.encode()) for n in names]


class TestStorageKey:

    def test_key_layout(self):
        key = build_storage_key("student-1", "hw-9", "page 1.png", uploaded_at_ms=1700000000000, position=2)
        assert key == "student-1/hw-9/1700000000000_2_page_1.png"

    def test_unsafe_filename_is_sanitized(self):
        key = build_storage_key("s", "h", "../../etc/passwd", uploaded_at_ms=1, position=0)
        assert key.startswith("s/h/1_0_")
        assert ".." not in key

    def test_blank_filename_gets_placeholder(self):
        assert build_storage_key("s", "h", "", uploaded_at_ms=1).endswith("_image")

    @pytest.mark.parametrize("submitter,assignment", [("", "hw"), ("s", " "), ("a/b", "hw")])
    def test_malformed_ids_raise(self, submitter, assignment):
        with pytest.raises(UploadError):
            build_storage_key(submitter, assignment, "p.png")


class TestObjectUploader:

    def test_returns_urls_in_input_order(self):
        store = MemoryObjectStore()
        urls = ObjectUploader(store).upload("s1", "hw1", _images("a.png", "b.png", "c.png"))
        assert len(urls) == 3
        assert urls[0].endswith("_0_a.png")
        assert urls[1].endswith("_1_b.png")
        assert urls[2].endswith("_2_c.png")
        assert len(store.objects) == 3

    def test_concurrent_uploads_keep_order(self):
        store = MemoryObjectStore()
        names = [f"p{i}.png" for i in range(8)]
        urls = ObjectUploader(store, max_workers=4).upload("s1", "hw1", _images(*names))
        assert [u.rsplit("_", 1)[-1] for u in urls] == names

    def test_same_filename_twice_does_not_collide(self):
        store = MemoryObjectStore()
        urls = ObjectUploader(store).upload("s1", "hw1", _images("photo.png", "photo.png"))
        assert len(set(urls)) == 2

    def test_failure_names_file_and_returns_nothing(self):
        store = MagicMock()
        store.put.side_effect = ["url-1", RuntimeError("quota exceeded"), "url-3"]
        with pytest.raises(UploadError) as exc_info:
            ObjectUploader(store).upload("s1", "hw1", _images("a.png", "b.png", "c.png"))
        assert exc_info.value.filename == "b.png"
        assert "b.png" in str(exc_info.value)
        assert "quota exceeded" in str(exc_info.value)
        assert exc_info.value.stage == PipelineStage.UPLOADING

    def test_cancelled_before_upload(self):
        cancel = threading.Event()
        cancel.set()
        store = MemoryObjectStore()
        with pytest.raises(CancelledError):
            ObjectUploader(store).upload("s1", "hw1", _images("a.png"), cancel)
        assert store.objects == {}


class TestSupabaseObjectStore:

    def test_put_uploads_and_returns_public_url(self):
        client = MagicMock()
        bucket = client.storage.from_.return_value
        bucket.get_public_url.return_value = "https://x.supabase.co/storage/v1/object/public/submissions/k"

        url = SupabaseObjectStore(client, "submissions").put("k", b"data", "image/jpeg")

        client.storage.from_.assert_called_with("submissions")
        kwargs = bucket.upload.call_args.kwargs
        assert kwargs["path"] == "k"
        assert kwargs["file"] == b"data"
        assert kwargs["file_options"]["content-type"] == "image/jpeg"
        assert url.endswith("/submissions/k")

    def test_storage_error_becomes_upload_error(self):
        client = MagicMock()
        client.storage.from_.return_value.upload.side_effect = Exception("permission denied")
        with pytest.raises(UploadError) as exc_info:
            ObjectUploader(SupabaseObjectStore(client)).upload("s1", "hw1", _images("a.png"))
        assert "permission denied" in str(exc_info.value)
