import pytest

from courier_service.storage import ObjectStorage, document_path


def test_document_path_uses_kind_and_extension():
    assert document_path("u1", "cnh_front", "IMG_001.JPG") == "u1/cnh_front.jpg"
    assert document_path("u1", "avatar", "photo") == "u1/avatar.bin"


def test_unknown_document_kind():
    with pytest.raises(ValueError):
        document_path("u1", "passport", "a.png")


def test_local_upload_and_public_url(tmp_path):
    storage = ObjectStorage(local_dir=str(tmp_path))

    assert storage.upload("u1/crlv.pdf", b"%PDF", content_type="application/pdf")

    assert (tmp_path / "u1" / "crlv.pdf").read_bytes() == b"%PDF"
    assert storage.get_public_url("u1/crlv.pdf").endswith("u1/crlv.pdf")


def test_public_base_url_wins(tmp_path):
    storage = ObjectStorage(local_dir=str(tmp_path), public_base_url="https://cdn.test/docs/")
    assert storage.get_public_url("/u1/avatar.png") == "https://cdn.test/docs/u1/avatar.png"


def test_path_traversal_is_refused(tmp_path):
    storage = ObjectStorage(local_dir=str(tmp_path))
    with pytest.raises(ValueError):
        storage.upload("../escape.txt", b"x")
