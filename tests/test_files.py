from __future__ import annotations

from datetime import timedelta

import pytest

from openclaw.services import files as files_module
from openclaw.services.files import (
    AttachmentError,
    AttachmentTooLarge,
    GcsFileStore,
    UnsupportedAttachmentType,
    is_allowed_mime_type,
    is_owned_storage_key,
    make_storage_key,
)


@pytest.fixture
def store() -> GcsFileStore:
    return GcsFileStore(signed_url_ttl=timedelta(minutes=5), max_size_bytes=10)


def test_storage_key_is_scoped_by_user_and_task():
    assert (
        make_storage_key("u1", "t1", "f1", "Report.Final.PDF")
        == "attachments/u1/t1/f1.PDF"
    )
    assert make_storage_key("u1", "t1", "f1", "README") == "attachments/u1/t1/f1.bin"


@pytest.mark.parametrize(
    ("storage_key", "task_id", "owned"),
    [
        ("attachments/u1/t1/f1.png", None, True),
        ("attachments/u1/t1/f1.png", "t1", True),
        ("attachments/u1/t2/f1.png", "t1", False),
        ("attachments/u2/t1/f1.png", None, False),
        ("attachments/u1/../u2/f1.png", None, False),
        ("/attachments/u1/t1/f1.png", None, False),
        ("uploads/u1/t1/f1.png", None, False),
        ("attachments/u1/f1.png", None, False),
    ],
)
def test_storage_key_ownership(storage_key, task_id, owned):
    assert is_owned_storage_key(storage_key, "u1", task_id) is owned


@pytest.mark.parametrize(
    ("mime_type", "allowed"),
    [
        ("image/png", True),
        ("image/heic", True),
        ("application/pdf", True),
        ("text/markdown", True),
        ("application/zip", False),
        ("", False),
    ],
)
def test_allowed_mime_types(mime_type, allowed):
    assert is_allowed_mime_type(mime_type) is allowed


@pytest.mark.anyio
async def test_upload_stores_blob(monkeypatch, store):
    uploaded: dict = {}

    def fake_upload(blob_name: str, data: bytes, *, content_type: str) -> None:
        uploaded.update(name=blob_name, data=data, content_type=content_type)

    monkeypatch.setattr(files_module.gcs, "upload_bytes", fake_upload)

    key = await store.upload(
        user_id="u1",
        task_id="t1",
        file_name="notes.txt",
        mime_type="text/plain",
        data=b"hello",
    )

    assert key.startswith("attachments/u1/t1/") and key.endswith(".txt")
    assert uploaded == {"name": key, "data": b"hello", "content_type": "text/plain"}


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("mime_type", "data", "error"),
    [
        ("application/zip", b"PK", UnsupportedAttachmentType),
        ("text/plain", b"", AttachmentError),
        ("text/plain", b"x" * 11, AttachmentTooLarge),
    ],
)
async def test_upload_rejects_invalid_files(monkeypatch, store, mime_type, data, error):
    def fail_upload(*args, **kwargs):
        raise AssertionError("should not upload")

    monkeypatch.setattr(files_module.gcs, "upload_bytes", fail_upload)

    with pytest.raises(error):
        await store.upload(
            user_id="u1",
            task_id="t1",
            file_name="f.bin",
            mime_type=mime_type,
            data=data,
        )


@pytest.mark.anyio
async def test_signed_url_uses_configured_ttl(monkeypatch, store):
    seen: dict = {}

    def fake_sign(blob_name: str, *, expires_delta: timedelta) -> str:
        seen.update(name=blob_name, ttl=expires_delta)
        return "https://signed.example/blob"

    monkeypatch.setattr(files_module.gcs, "sign_get_url", fake_sign)

    assert await store.get_signed_url("attachments/u/t/f.png") == "https://signed.example/blob"
    assert seen == {"name": "attachments/u/t/f.png", "ttl": timedelta(minutes=5)}


@pytest.mark.anyio
async def test_delete_many_continues_after_failures(monkeypatch, store):
    deleted: list[str] = []

    def flaky_delete(blob_name: str) -> None:
        if blob_name == "bad":
            raise RuntimeError("boom")
        deleted.append(blob_name)

    monkeypatch.setattr(files_module.gcs, "delete_blob", flaky_delete)

    await store.delete_many(["a", "bad", "b"])

    assert deleted == ["a", "b"]
