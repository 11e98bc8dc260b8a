"""Tests for eStargz conversion."""

import gzip
import io
import json
import tarfile
import zlib

import pytest

from registry_crane import media_types
from registry_crane.image.estargz import (
    FOOTER_SIZE,
    NO_PREFETCH_LANDMARK,
    PREFETCH_LANDMARK,
    TOC_DIGEST_ANNOTATION,
    TOC_NAME,
    UNCOMPRESSED_SIZE_ANNOTATION,
    build,
    estargz_layer,
    footer,
    parse_footer,
)
from registry_crane.image.layer import compressed_bytes, layer_from_files, tar_bytes, uncompressed_bytes
from registry_crane.utils.digest import Hash

FILES = {"etc/": "", "etc/motd": "hello\n", "bin/app": "#!/bin/sh\necho app\n", "empty": ""}


def read_toc(blob: bytes) -> dict:
    offset = parse_footer(blob[-FOOTER_SIZE:])
    member = zlib.decompressobj(16 + zlib.MAX_WBITS).decompress(blob[offset:])
    with tarfile.open(fileobj=io.BytesIO(member), mode="r:") as tar:
        fileobj = tar.extractfile(TOC_NAME)
        assert fileobj is not None
        return json.loads(fileobj.read())


def test_footer_round_trip():
    """Test the footer records the TOC offset."""
    data = footer(123456)
    assert len(data) == FOOTER_SIZE
    assert parse_footer(data) == 123456
    assert gzip.decompress(data) == b""
    with pytest.raises(ValueError):
        parse_footer(b"\x00" * FOOTER_SIZE)


def test_build_without_prioritized_files():
    """Test the no-prefetch landmark leads and the TOC lists every entry."""
    blob = build(io.BytesIO(tar_bytes(FILES)))
    names = [e["name"] for e in read_toc(blob.data)["entries"]]
    assert names == [NO_PREFETCH_LANDMARK, "etc", "etc/motd", "bin/app", "empty"]
    assert blob.found == set()

    with tarfile.open(fileobj=io.BytesIO(gzip.decompress(blob.data))) as tar:
        assert tar.getnames()[-1] == TOC_NAME
        fileobj = tar.extractfile("etc/motd")
        assert fileobj is not None and fileobj.read() == b"hello\n"
    assert Hash.of(gzip.decompress(blob.data)) == blob.diff_id


def test_build_with_prioritized_files():
    """Test prioritized files come first, followed by the prefetch landmark."""
    blob = build(io.BytesIO(tar_bytes(FILES)), prioritized=["/bin/app", "missing"])
    entries = read_toc(blob.data)["entries"]
    assert [e["name"] for e in entries[:2]] == ["bin/app", PREFETCH_LANDMARK]
    assert blob.found == {"bin/app"}

    app = entries[0]
    assert app["type"] == "reg"
    assert app["digest"] == str(Hash.of(b"#!/bin/sh\necho app\n"))
    chunk = zlib.decompressobj(16 + zlib.MAX_WBITS).decompress(blob.data[app["offset"] :])
    assert chunk[512 : 512 + app["size"]] == b"#!/bin/sh\necho app\n"

    empty = next(e for e in entries if e["name"] == "empty")
    assert "offset" not in empty and "digest" not in empty


@pytest.mark.asyncio
async def test_estargz_layer():
    """Test conversion keeps the filesystem and annotates the TOC digest."""
    source = layer_from_files({"a.txt": "a", "b.txt": "b"})
    layer, annotations, found = await estargz_layer(source, ["b.txt"])

    assert found == {"b.txt"}
    assert await layer.media_type() == media_types.DOCKER_LAYER
    blob = await compressed_bytes(layer)
    assert annotations[TOC_DIGEST_ANNOTATION].startswith("sha256:")
    assert int(annotations[UNCOMPRESSED_SIZE_ANNOTATION]) == len(await uncompressed_bytes(layer))
    assert await layer.diff_id() == Hash.of(gzip.decompress(blob))

    with tarfile.open(fileobj=io.BytesIO(await uncompressed_bytes(layer))) as tar:
        names = tar.getnames()
    assert names[:2] == ["b.txt", PREFETCH_LANDMARK]
    assert "a.txt" in names


@pytest.mark.asyncio
async def test_estargz_layer_oci_type():
    """Test OCI layers stay OCI."""
    source = layer_from_files({"a": "a"}, media_types.OCI_LAYER)
    layer, _, _ = await estargz_layer(source)
    assert await layer.media_type() == media_types.OCI_LAYER
