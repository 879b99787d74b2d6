"""
Tests for the file storage backend.
"""

import json

import pytest

from layered_context.types import ArchivePayload, LayeredContextIndexDocument
from storage.file_storage import FileStorage
from storage.storage_interface import safe_key

SESSION = "telegram:chat/42"


def _payload(node_id="node_1", transcript="USER: hello"):
    return ArchivePayload(
        session_key=SESSION,
        node_id=node_id,
        transcript=transcript,
        messages=[{"role": "user", "content": "hello"}],
        created_at=1700000000.0,
    )


# --- Fixtures ---

@pytest.fixture
def file_storage(tmp_path):
    return FileStorage({'base_dir': str(tmp_path / 'store'), 'pretty_print_json': False})


# --- Test Cases ---

def test_safe_key():
    assert safe_key("telegram:chat/42") == "telegram%3Achat%2F42"
    assert safe_key("node_ab.c-1") == "node_ab.c-1"
    assert safe_key("") == "%"
    assert safe_key("..") == "%2E%2E"


@pytest.mark.parametrize("left,right", [
    ("whatsapp:1@c.us", "whatsapp:1_c.us"),
    ("slack:a/b", "slack:a_b"),
    ("", "_"),
    ("..", "%2E%2E"),
])
def test_safe_key_keeps_keys_apart(left, right):
    assert safe_key(left) != safe_key(right)


def test_archive_path_layout(file_storage):
    assert file_storage.archive_path(SESSION, "node_1") == "telegram%3Achat%2F42/archives/node_1.json"


@pytest.mark.asyncio
async def test_initialize_and_health_check(file_storage):
    assert await file_storage.initialize() is True

    health = await file_storage.health_check()

    assert health['status'] == 'healthy'
    assert health['storage_type'] == 'file'
    assert await file_storage.shutdown() is True


@pytest.mark.asyncio
async def test_missing_index_returns_none(file_storage):
    assert await file_storage.read_index(SESSION) is None


@pytest.mark.asyncio
async def test_index_write_and_read(file_storage):
    document = LayeredContextIndexDocument.empty(SESSION)
    document.archived_message_count = 8

    assert await file_storage.write_index(SESSION, document) is True
    loaded = await file_storage.read_index(SESSION)

    assert loaded.to_dict() == document.to_dict()


@pytest.mark.asyncio
async def test_index_replace_leaves_no_temp_files(file_storage):
    document = LayeredContextIndexDocument.empty(SESSION)
    assert await file_storage.write_index(SESSION, document)
    document.archived_message_count = 16
    assert await file_storage.write_index(SESSION, document)

    session_dir = file_storage.base_dir / safe_key(SESSION)
    assert sorted(p.name for p in session_dir.iterdir()) == ['index.json']
    assert (await file_storage.read_index(SESSION)).archived_message_count == 16


@pytest.mark.asyncio
async def test_failed_index_write_keeps_previous(file_storage, mocker):
    document = LayeredContextIndexDocument.empty(SESSION)
    assert await file_storage.write_index(SESSION, document)

    mocker.patch("storage.file_storage.aiofiles.os.replace", side_effect=OSError("disk full"))
    document.archived_message_count = 99
    assert await file_storage.write_index(SESSION, document) is False

    loaded = await file_storage.read_index(SESSION)
    assert loaded.archived_message_count == 0
    session_dir = file_storage.base_dir / safe_key(SESSION)
    assert sorted(p.name for p in session_dir.iterdir()) == ['index.json']


@pytest.mark.asyncio
async def test_corrupt_index_returns_none(file_storage):
    index_file = file_storage.base_dir / safe_key(SESSION) / 'index.json'
    index_file.parent.mkdir(parents=True)
    index_file.write_text("{not json", encoding='utf-8')

    assert await file_storage.read_index(SESSION) is None

    index_file.write_text(json.dumps({"nodes": []}), encoding='utf-8')
    assert await file_storage.read_index(SESSION) is None


@pytest.mark.asyncio
async def test_archive_write_once(file_storage):
    path = file_storage.archive_path(SESSION, "node_1")

    assert await file_storage.write_archive(path, _payload()) is True
    assert await file_storage.write_archive(path, _payload(transcript="USER: overwritten")) is False

    stored = await file_storage.read_archive(path)
    assert stored == _payload()


@pytest.mark.asyncio
async def test_missing_archive_returns_none(file_storage):
    assert await file_storage.read_archive(file_storage.archive_path(SESSION, "node_missing")) is None


@pytest.mark.asyncio
async def test_archive_path_escape_rejected(file_storage):
    assert await file_storage.write_archive("../outside.json", _payload()) is False
    assert await file_storage.read_archive("../outside.json") is None
    assert not (file_storage.base_dir.parent / "outside.json").exists()


@pytest.mark.asyncio
@pytest.mark.parametrize("stored", [[], "x", 7, {"session_key": SESSION, "root": "text"},
                                    {"session_key": SESSION, "nodes": "node_1"},
                                    {"session_key": SESSION, "nodes": [["node_1"]]}])
async def test_wrong_shape_index_returns_none(file_storage, stored):
    index_file = file_storage.base_dir / safe_key(SESSION) / 'index.json'
    index_file.parent.mkdir(parents=True)
    index_file.write_text(json.dumps(stored), encoding='utf-8')

    assert await file_storage.read_index(SESSION) is None


@pytest.mark.asyncio
async def test_similar_session_keys_do_not_share_an_index(file_storage):
    document = LayeredContextIndexDocument.empty("whatsapp:1@c.us")
    document.archived_message_count = 8
    assert await file_storage.write_index("whatsapp:1@c.us", document)

    assert await file_storage.read_index("whatsapp:1_c.us") is None
    assert (await file_storage.read_index("whatsapp:1@c.us")).archived_message_count == 8


@pytest.mark.asyncio
async def test_index_for_another_session_is_ignored(file_storage):
    index_file = file_storage.base_dir / safe_key(SESSION) / 'index.json'
    index_file.parent.mkdir(parents=True)
    index_file.write_text(json.dumps(LayeredContextIndexDocument.empty("slack:other").to_dict()), encoding='utf-8')

    assert await file_storage.read_index(SESSION) is None
