"""Tests for the local attachment store."""
import io

from fieldsync.storage.local_provider import LocalAttachmentStore


def test_save_and_read(tmp_path):
    store = LocalAttachmentStore(str(tmp_path))
    path = store.save("wo-1/photo.jpg", b"abc")
    assert path.endswith("photo.jpg")
    assert store.exists("wo-1/photo.jpg")
    assert store.read_bytes("wo-1/photo.jpg") == b"abc"
    assert store.read_base64("wo-1/photo.jpg") == "YWJj"


def test_save_file_object(tmp_path):
    store = LocalAttachmentStore(str(tmp_path))
    store.save("sig.png", io.BytesIO(b"png"))
    assert store.read_bytes("sig.png") == b"png"


def test_missing_key(tmp_path):
    store = LocalAttachmentStore(str(tmp_path))
    assert store.read_base64("nope.jpg") is None
    assert not store.exists("nope.jpg")
    store.delete("nope.jpg")


def test_delete(tmp_path):
    store = LocalAttachmentStore(str(tmp_path))
    store.save("a.txt", b"x")
    store.delete("a.txt")
    assert not store.exists("a.txt")


def test_keys_stay_inside_base_dir(tmp_path):
    store = LocalAttachmentStore(str(tmp_path / "store"))
    path = store.save("../escape.txt", b"x")
    assert path.startswith(str((tmp_path / "store").resolve()))
