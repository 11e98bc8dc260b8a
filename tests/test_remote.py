"""Tests for the registry client against a local registry."""

import pytest
from aiohttp import web

from registry_crane import media_types, mutate, remote
from registry_crane.core.types import TransportConfig
from registry_crane.exceptions import RegistryNotFoundError, UnsupportedMediaTypeError
from registry_crane.image.empty import EMPTY_INDEX
from registry_crane.image.layer import StaticLayer, compressed_bytes, layer_from_files
from registry_crane.image.random import random_image
from registry_crane.models import Descriptor, Manifest, Platform
from registry_crane.name import Registry, parse_reference, parse_repository
from registry_crane.remote.listing import next_link
from registry_crane.remote.writer import SUBJECT_HEADER
from registry_crane.server import STATE, create_app
from registry_crane.utils.digest import Hash
from tests.test_e2e import collect, serving


def platform_descriptor(value: str) -> Descriptor:
    return Descriptor("", 0, Hash.of(b""), platform=Platform.parse(value))


def test_next_link():
    """Test Link headers resolve against the registry URL."""
    base = "http://r.example.com/"
    assert next_link('</v2/_catalog?last=b&n=2>; rel="next"', base) == "http://r.example.com/v2/_catalog?last=b&n=2"
    assert next_link("<https://other.example.com/v2/x>; rel=next", base) == "https://other.example.com/v2/x"
    assert next_link('</v2/x>; rel="prev"', base) is None
    assert next_link(None, base) is None


class TestRead:
    """Fetching manifests, images and blobs."""

    @pytest.mark.asyncio
    async def test_head_and_get(self, registry, options):
        """Test HEAD and GET describe the same manifest."""
        img = random_image(128, 1)
        ref = parse_reference(f"{registry}/read:latest")
        digest = await remote.write(ref, img, options)

        desc = await remote.head(ref, options)
        assert desc.digest == digest == await img.digest()
        assert desc.media_type == media_types.DOCKER_MANIFEST_SCHEMA2
        assert desc.size == len(await img.raw_manifest())

        fetched = await remote.get(ref, options)
        assert fetched.manifest == await img.raw_manifest()
        assert not fetched.is_index()
        with pytest.raises(UnsupportedMediaTypeError):
            await fetched.image_index()

    @pytest.mark.asyncio
    async def test_missing_manifest(self, registry, options):
        """Test unknown tags raise not found."""
        with pytest.raises(RegistryNotFoundError):
            await remote.get(parse_reference(f"{registry}/read:absent"), options)

    @pytest.mark.asyncio
    async def test_index_resolves_platform(self, registry, options):
        """Test an index resolves to the child for the requested platform."""
        amd, arm = random_image(64, 1), random_image(64, 1)
        idx = mutate.append_manifests(
            EMPTY_INDEX,
            mutate.IndexAddendum(add=amd, descriptor=platform_descriptor("linux/amd64")),
            mutate.IndexAddendum(add=arm, descriptor=platform_descriptor("linux/arm64/v8")),
        )
        ref = parse_reference(f"{registry}/multi:latest")
        await remote.write_index(ref, idx, options)

        fetched = await remote.get(ref, options)
        assert fetched.is_index()
        assert await (await fetched.image()).digest() == await amd.digest()
        assert await (await fetched.image(Platform.parse("linux/arm64"))).digest() == await arm.digest()

        options.platform = Platform.parse("linux/arm64")
        assert await (await remote.image(ref, options)).digest() == await arm.digest()

        pulled = await remote.index(ref, options)
        assert await pulled.digest() == await idx.digest()

    @pytest.mark.asyncio
    async def test_layer_by_digest(self, registry, options):
        """Test a blob fetched by digest streams its content."""
        layer = layer_from_files({"a.txt": "a"})
        repo = parse_repository(f"{registry}/blobs")
        await remote.write_layer(repo, layer, options)

        digest = await layer.digest()
        fetched = await remote.layer(parse_reference(f"{registry}/blobs@{digest}"), options)
        assert await fetched.size() == await layer.size()
        assert await collect(fetched.compressed()) == await compressed_bytes(layer)


class TestWrite:
    """Pushing, tagging and deleting."""

    @pytest.mark.asyncio
    async def test_chunked_upload(self, registry, registry_app):
        """Test blobs larger than the chunk size are uploaded in pieces."""
        img = random_image(4096, 1)
        async with remote.RemoteOptions(config=TransportConfig(chunk_size=1024)) as opts:
            await remote.write(parse_reference(f"{registry}/chunked:latest"), img, opts)
            pulled = await remote.image(parse_reference(f"{registry}/chunked:latest"), opts)
            (layer,) = await pulled.layers()
            assert await collect(layer.compressed()) == await compressed_bytes((await img.layers())[0])
        assert await img.config_name() in registry_app[STATE].committed

    @pytest.mark.asyncio
    async def test_tag_and_delete(self, registry, options):
        """Test a new tag shares the digest and deletes remove it."""
        ref = parse_reference(f"{registry}/tags:v1")
        digest = await remote.write(ref, random_image(64, 1), options)
        assert await remote.tag(ref, "v2", options) == digest
        assert sorted(await remote.list_tags(ref.context(), options)) == ["v1", "v2"]

        await remote.delete(parse_reference(f"{registry}/tags:v2"), options)
        assert await remote.list_tags(ref.context(), options) == ["v1"]

        await remote.delete(parse_reference(f"{registry}/tags@{digest}"), options)
        with pytest.raises(RegistryNotFoundError):
            await remote.head(ref, options)

    @pytest.mark.asyncio
    async def test_put_raw_manifest(self, registry, options):
        """Test raw manifest bytes are stored verbatim."""
        img = random_image(64, 1)
        ref = parse_reference(f"{registry}/raw:latest")
        await remote.write(ref, img, options)
        raw = (await img.raw_manifest()) + b"\n"
        digest = await remote.put(parse_reference(f"{registry}/raw:spaced"), raw, await img.media_type(), options)
        assert digest == Hash.of(raw)
        assert (await remote.get(parse_reference(f"{registry}/raw:spaced"), options)).manifest == raw

    @pytest.mark.asyncio
    async def test_progress_callback(self, registry):
        """Test progress is reported while uploading."""
        seen = []
        async with remote.RemoteOptions(progress_callback=lambda done, total, msg: seen.append(done)) as opts:
            await remote.write(parse_reference(f"{registry}/progress:latest"), random_image(256, 2), opts)
        assert seen


class TestListing:
    """Catalog and tag listing."""

    @pytest.mark.asyncio
    async def test_catalog(self, registry, options):
        """Test the catalog follows every page."""
        img = random_image(32, 1)
        for name in ("c", "a", "b/nested"):
            await remote.write(parse_reference(f"{registry}/{name}:latest"), img, options)

        assert await remote.catalog(Registry(registry), options, page_size=1) == ["a", "b/nested", "c"]

        page, last = await remote.catalog_page(Registry(registry), options, 2)
        assert (page, last) == (["a", "b/nested"], "b/nested")
        page, last = await remote.catalog_page(Registry(registry), options, 2, last)
        assert (page, last) == (["c"], None)


def without_referrers_api(app: web.Application) -> web.Application:
    """Make ``app`` behave like a registry predating OCI 1.1."""

    @web.middleware
    async def hide(request: web.Request, handler):
        if "/referrers/" in request.path:
            raise web.HTTPNotFound()
        response = await handler(request)
        response.headers.pop(SUBJECT_HEADER, None)
        return response

    app.middlewares.append(hide)
    return app


class TestReferrers:
    """The referrers API and its tag fallback."""

    @staticmethod
    def artifact(subject: Descriptor, artifact_type: str) -> Manifest:
        return Manifest(
            schema_version=2,
            media_type=media_types.OCI_MANIFEST_SCHEMA1,
            artifact_type=artifact_type,
            config=Descriptor(media_types.OCI_EMPTY_JSON, 2, Hash.of(b"{}"), data=b"{}"),
            layers=[],
            subject=subject,
        )

    @pytest.mark.asyncio
    async def test_fallback_tag(self, options):
        """Test referrers are tracked in the fallback tag when the API is missing."""
        async with serving(without_referrers_api(create_app())) as host:
            img = random_image(64, 1)
            await remote.write(parse_reference(f"{host}/subject:latest"), img, options)
            subject = await img.descriptor()
            ref = parse_reference(f"{host}/subject@{subject.digest}")

            writer = await remote.Writer.create(ref.context(), options)
            await writer.write_layer(StaticLayer(b"{}", media_types.OCI_EMPTY_JSON))
            sbom = self.artifact(subject, "application/vnd.example.sbom").to_json()
            sig = self.artifact(subject, "application/vnd.example.sig").to_json()
            for raw in (sbom, sig):
                await remote.put(parse_reference(f"{host}/subject@{Hash.of(raw)}"), raw, media_types.OCI_MANIFEST_SCHEMA1, options)

            fallback = parse_reference(f"{host}/subject:{remote.fallback_tag(subject.digest)}")
            assert (await remote.head(fallback, options)).media_type == media_types.OCI_IMAGE_INDEX

            index = await remote.referrers(ref, options)
            assert [d.digest for d in index.manifests] == [Hash.of(sbom), Hash.of(sig)]
            filtered = await remote.referrers(ref, options, "application/vnd.example.sig")
            assert [d.artifact_type for d in filtered.manifests] == ["application/vnd.example.sig"]

    @pytest.mark.asyncio
    async def test_unknown_subject(self, registry, options):
        """Test a subject nobody refers to has an empty index."""
        ref = parse_reference(f"{registry}/none@{Hash.of(b'nothing')}")
        assert (await remote.referrers(ref, options)).manifests == []

    def test_referrer_descriptor(self):
        """Test the descriptor carries the artifact type and annotations."""
        manifest = self.artifact(Descriptor(media_types.OCI_MANIFEST_SCHEMA1, 1, Hash.of(b"s")), "")
        manifest.annotations = {"org.example": "yes"}
        raw = manifest.to_json()
        desc = remote.referrer_descriptor(raw, media_types.OCI_MANIFEST_SCHEMA1)
        assert desc.digest == Hash.of(raw)
        assert desc.artifact_type == media_types.OCI_EMPTY_JSON
        assert desc.annotations == {"org.example": "yes"}
