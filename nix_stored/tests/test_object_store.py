import os

import pytest

from nix_stored.app.errors import InvalidObjectKey, ObjectNotFound, StoreIOError
from nix_stored.app.services.object_store import NarInfoKey, NarKey, ObjectStore


async def body(*chunks):
    for chunk in chunks:
        yield chunk


async def read_all(reader):
    data = b""
    async for chunk in reader.chunks():
        data += chunk
    await reader.aclose()
    return data


def test_path_derivation(tmp_path):
    store = ObjectStore(tmp_path)
    assert store.path_for(NarKey("1abc", "xz")) == tmp_path / "nar" / "1abc.nar.xz"
    assert store.path_for(NarInfoKey("7xyz")) == tmp_path / "7xyz.narinfo"


@pytest.mark.parametrize("value", ["", ".", "..", "a/b", "bad@hash", "sp ace"])
def test_invalid_key_components(value):
    with pytest.raises(InvalidObjectKey):
        NarInfoKey(value)
    with pytest.raises(InvalidObjectKey):
        NarKey(value, "xz")
    with pytest.raises(InvalidObjectKey):
        NarKey("1abc", value)


@pytest.mark.asyncio
async def test_initialize_creates_directories(tmp_path):
    store = ObjectStore(tmp_path / "fresh")
    await store.initialize()
    assert (tmp_path / "fresh" / "nar").is_dir()


@pytest.mark.asyncio
async def test_write_then_read(tmp_path):
    store = ObjectStore(tmp_path)
    await store.initialize()
    key = NarKey("0f3a9c", "zst")
    content = os.urandom(200 * 1024)

    written = await store.write(key, body(content[:1000], content[1000:]))
    assert written == len(content)

    reader = await store.open_read(key)
    assert reader.length == len(content)
    assert await read_all(reader) == content


@pytest.mark.asyncio
async def test_exists_follows_file_presence(tmp_path):
    store = ObjectStore(tmp_path)
    await store.initialize()
    key = NarInfoKey("abc123")

    assert await store.exists(key) is False
    await store.write(key, body(b"StorePath: /nix/store/abc123-hello\n"))
    assert await store.exists(key) is True

    # Externally placed files count too
    (tmp_path / "nar" / "ff.nar.bz2").write_bytes(b"nar")
    assert await store.exists(NarKey("ff", "bz2")) is True
    assert await store.exists(NarKey("ff", "xz")) is False


@pytest.mark.asyncio
async def test_overwrite_replaces_content(tmp_path):
    store = ObjectStore(tmp_path)
    await store.initialize()
    key = NarInfoKey("abc123")

    await store.write(key, body(b"first version, longer"))
    await store.write(key, body(b"second"))

    reader = await store.open_read(key)
    assert reader.length == len(b"second")
    assert await read_all(reader) == b"second"


@pytest.mark.asyncio
async def test_open_missing_object(tmp_path):
    store = ObjectStore(tmp_path)
    await store.initialize()
    with pytest.raises(ObjectNotFound):
        await store.open_read(NarKey("missing", "xz"))


@pytest.mark.asyncio
async def test_open_directory_is_io_error(tmp_path):
    store = ObjectStore(tmp_path)
    await store.initialize()
    (tmp_path / "odd.narinfo").mkdir()
    with pytest.raises(StoreIOError):
        await store.open_read(NarInfoKey("odd"))


@pytest.mark.asyncio
async def test_exists_io_error_is_not_absence(tmp_path):
    root = tmp_path / "not-a-dir"
    root.write_bytes(b"")
    store = ObjectStore(root)
    with pytest.raises(StoreIOError):
        await store.exists(NarInfoKey("abc"))


@pytest.mark.asyncio
async def test_write_without_nar_directory(tmp_path):
    store = ObjectStore(tmp_path / "uninitialized")
    with pytest.raises(StoreIOError) as exc_info:
        await store.write(NarKey("abc", "xz"), body(b"data"))
    assert exc_info.value.path == tmp_path / "uninitialized" / "nar" / "abc.nar.xz"


class UploadAborted(Exception):
    pass


@pytest.mark.asyncio
async def test_body_failing_before_first_chunk_keeps_object(tmp_path):
    store = ObjectStore(tmp_path)
    await store.initialize()
    key = NarInfoKey("abc123")
    await store.write(key, body(b"stored"))

    async def aborted():
        raise UploadAborted()
        yield b""

    with pytest.raises(UploadAborted):
        await store.write(key, aborted())

    reader = await store.open_read(key)
    assert await read_all(reader) == b"stored"


@pytest.mark.asyncio
async def test_write_empty_body_creates_empty_object(tmp_path):
    store = ObjectStore(tmp_path)
    await store.initialize()
    key = NarKey("empty", "xz")

    assert await store.write(key, body()) == 0
    reader = await store.open_read(key)
    assert reader.length == 0
    await reader.aclose()
