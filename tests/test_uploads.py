from __future__ import annotations

import dataclasses
import io
import os
import time
from datetime import timedelta
from types import SimpleNamespace

import pytest

from potluck import crud, maintenance, uploads
from potluck.config import settings
from potluck.uploads import (
    UploadTooLargeError,
    read_file,
    read_upload,
    safe_file_name,
    store_file,
    upload_path,
)


@pytest.fixture()
def disk_settings(monkeypatch, tmp_path):
    patched = dataclasses.replace(
        settings, upload_backend="disk", upload_dir=tmp_path / "uploads"
    )
    monkeypatch.setattr(uploads, "settings", patched)
    monkeypatch.setattr(maintenance, "settings", patched)
    return patched


def _age(path, *, hours: int) -> None:
    stamp = time.time() - hours * 3600
    os.utime(path, (stamp, stamp))


def test_safe_file_name_replaces_unsafe_characters():
    assert safe_file_name("My Recipe (v2).pdf") == "My_Recipe__v2_.pdf"
    assert safe_file_name("../../etc/passwd") == "passwd"


def test_store_file_defaults_to_database_blob():
    stored = store_file(
        record_id="abc",
        file_name="notes.txt",
        data=b"hello",
        content_type=None,
        max_bytes=10,
        backend="database",
    )

    assert stored.file_url is None
    assert stored.file_data == b"hello"
    assert stored.content_type == "text/plain"
    assert stored.file_size == 5


def test_store_file_enforces_limits():
    with pytest.raises(UploadTooLargeError) as excinfo:
        store_file(
            record_id="abc",
            file_name="big.bin",
            data=b"x" * 11,
            content_type=None,
            max_bytes=10,
        )
    assert excinfo.value.limit == 10

    with pytest.raises(ValueError, match="empty"):
        store_file(record_id="abc", file_name="a.txt", data=b"", content_type=None, max_bytes=10)
    with pytest.raises(ValueError, match="A file is required"):
        store_file(record_id="abc", file_name="", data=b"x", content_type=None, max_bytes=10)


def test_disk_backend_writes_prefixed_file(disk_settings):
    stored = store_file(
        record_id="42",
        file_name="Party Flyer.pdf",
        data=b"%PDF",
        content_type="application/pdf",
        max_bytes=100,
        prefix="shared-",
    )

    assert stored.file_url == "/uploads/shared-42-Party_Flyer.pdf"
    assert stored.file_data is None
    path = disk_settings.upload_dir / "shared-42-Party_Flyer.pdf"
    assert path.read_bytes() == b"%PDF"
    assert upload_path(stored.file_url) == path


def test_upload_path_rejects_traversal():
    assert upload_path("/uploads/../secret") is None
    assert upload_path("/elsewhere/file.txt") is None
    assert upload_path("") is None


def test_read_file_from_disk_and_missing_file(disk_settings, session):
    on_disk = crud.create_recipe(
        session, name="Soup", file_name="soup.txt", data=b"broth"
    )
    session.commit()
    assert on_disk.stored_on_disk
    assert read_file(on_disk) == b"broth"

    (disk_settings.upload_dir / on_disk.file_url.rsplit("/", 1)[1]).unlink()
    with pytest.raises(FileNotFoundError):
        read_file(on_disk)


def test_delete_attachment_removes_disk_file(disk_settings, session):
    recipe = crud.create_recipe(session, name="Bread", file_name="bread.txt", data=b"flour")
    session.commit()
    path = upload_path(recipe.file_url)
    assert path.exists()

    crud.delete_attachment(session, recipe)
    session.commit()

    assert not path.exists()


def test_purge_orphaned_uploads_keeps_referenced_files(disk_settings, session):
    recipe = crud.create_recipe(session, name="Kept", file_name="kept.txt", data=b"1")
    session.commit()
    orphan = disk_settings.upload_dir / "stray.txt"
    orphan.write_bytes(b"2")
    _age(orphan, hours=2)
    _age(upload_path(recipe.file_url), hours=2)

    removed = maintenance.purge_orphaned_uploads()

    assert removed == 1
    assert not orphan.exists()
    assert upload_path(recipe.file_url).exists()


def test_purge_orphaned_uploads_without_directory(disk_settings):
    assert maintenance.purge_orphaned_uploads() == 0


def test_purge_orphaned_uploads_skips_recent_files(disk_settings):
    disk_settings.upload_dir.mkdir(parents=True)
    fresh = disk_settings.upload_dir / "in-flight.txt"
    fresh.write_bytes(b"new")

    assert maintenance.purge_orphaned_uploads() == 0
    assert fresh.exists()
    assert maintenance.purge_orphaned_uploads(min_age=timedelta(0)) == 1


def test_rolled_back_delete_keeps_record_and_file(disk_settings, session):
    recipe = crud.create_recipe(session, name="Chili", file_name="chili.txt", data=b"beans")
    session.commit()
    path = upload_path(recipe.file_url)

    crud.delete_attachment(session, recipe)
    session.rollback()

    assert crud.get_recipe(session, recipe.id) is not None
    assert path.exists()


def test_rolled_back_upload_removes_written_file(disk_settings, session):
    item = crud.create_shared_content(
        session, title="Slides", description=None, file_name="talk.pdf", data=b"%PDF"
    )
    path = upload_path(item.file_url)
    assert path.exists()

    session.rollback()

    assert not path.exists()
    assert crud.get_shared_content(session, item.id) is None


def test_committed_upload_survives_later_rollback(disk_settings, session):
    recipe = crud.create_recipe(session, name="Pie", file_name="pie.txt", data=b"crust")
    session.commit()

    session.rollback()

    assert upload_path(recipe.file_url).exists()


def test_read_upload_stops_one_byte_past_the_limit():
    upload = SimpleNamespace(file=io.BytesIO(b"x" * 50))

    assert read_upload(upload, 10) == b"x" * 11
