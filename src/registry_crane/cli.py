"""Command line entry point: ``registry-crane <verb> ...``."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click

from . import __version__
from .crane import (
    Crane,
    Options,
    insecure,
    with_no_clobber,
    with_nondistributable,
    with_platform,
    with_user_agent,
)
from .exceptions import NotFoundError, RegistryError
from .image.base import ImageIndex
from .server import blob_store, create_app, serve

logger = logging.getLogger(__name__)


def _key_values(pairs: tuple[str, ...], what: str) -> dict[str, str]:
    out = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint=what)
        out[key] = value
    return out


def _run(ctx: click.Context, verb: Callable[[Crane], Awaitable[Any]]) -> Any:
    """Run ``verb`` with a fresh client; failures exit 1 with a message on stderr."""
    options: Options = ctx.obj

    async def main() -> Any:
        async with Crane(options=options) as crane:
            return await verb(crane)

    try:
        return asyncio.run(main())
    except NotFoundError as e:
        click.echo(f"Error: not found: {e}", err=True)
    except (RegistryError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
    except asyncio.TimeoutError:
        click.echo("Error: deadline exceeded", err=True)
    sys.exit(1)


def _echo_bytes(data: bytes) -> None:
    out = click.get_binary_stream("stdout")
    out.write(data)
    out.flush()


@click.group()
@click.version_option(__version__)
@click.option("--platform", default=None, help="Platform of the image to use, e.g. linux/amd64.")
@click.option("--insecure", "use_insecure", is_flag=True, help="Use plain HTTP and skip TLS verification.")
@click.option(
    "--allow-nondistributable-artifacts",
    is_flag=True,
    help="Push foreign layers instead of skipping them.",
)
@click.option("--no-clobber", is_flag=True, help="Refuse to overwrite existing tags.")
@click.option("--user-agent", default=None, help="User-Agent header for registry requests.")
@click.option("-v", "--verbose", is_flag=True, help="Log HTTP traffic and progress.")
@click.pass_context
def main(
    ctx: click.Context,
    platform: Optional[str],
    use_insecure: bool,
    allow_nondistributable_artifacts: bool,
    no_clobber: bool,
    user_agent: Optional[str],
    verbose: bool,
) -> None:
    """Interact with OCI and Docker v2 registries."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    opts = []
    if platform:
        opts.append(with_platform(platform))
    if use_insecure:
        opts.append(insecure())
    if allow_nondistributable_artifacts:
        opts.append(with_nondistributable())
    if no_clobber:
        opts.append(with_no_clobber())
    if user_agent:
        opts.append(with_user_agent(user_agent))
    ctx.obj = Options.make(*opts)


# Reading


@main.command("pull")
@click.argument("images", nargs=-1, required=True)
@click.argument("path", type=click.Path(dir_okay=True))
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["tarball", "legacy", "oci"]),
    default="tarball",
    show_default=True,
    help="Format of the local copy.",
)
@click.pass_context
def pull_command(ctx: click.Context, images: tuple[str, ...], path: str, fmt: str) -> None:
    """Pull remote images into a tarball or an OCI layout."""

    async def verb(crane: Crane) -> None:
        if fmt == "oci":
            await crane.save_oci({src: await crane.pull_artifact(src) for src in images}, path)
            return
        pulled = {src: await crane.pull(src) for src in images}
        if fmt == "legacy":
            await crane.save_legacy(pulled, path)
        else:
            await crane.save(pulled, path)

    _run(ctx, verb)


@main.command("digest")
@click.argument("image", default="")
@click.option("--full-ref", is_flag=True, help="Print the repository@digest reference.")
@click.option("--tarball", type=click.Path(exists=True, dir_okay=False), help="Digest an image in a tarball.")
@click.pass_context
def digest_command(ctx: click.Context, image: str, full_ref: bool, tarball: Optional[str]) -> None:
    """Print the digest of an image."""
    if not image and not tarball:
        raise click.UsageError("IMAGE is required unless --tarball is given")

    async def verb(crane: Crane) -> str:
        if tarball:
            return str(await (await crane.load(tarball, image or None)).digest())
        digest = await crane.digest(image)
        if full_ref:
            return f"{crane.options.reference(image).context()}@{digest}"
        return digest

    click.echo(_run(ctx, verb))


@main.command("manifest")
@click.argument("image")
@click.pass_context
def manifest_command(ctx: click.Context, image: str) -> None:
    """Print the manifest of an image or index."""
    _echo_bytes(_run(ctx, lambda crane: crane.manifest(image)))


@main.command("config")
@click.argument("image")
@click.pass_context
def config_command(ctx: click.Context, image: str) -> None:
    """Print the config file of an image."""
    _echo_bytes(_run(ctx, lambda crane: crane.config(image)))


@main.command("blob")
@click.argument("blob")
@click.pass_context
def blob_command(ctx: click.Context, blob: str) -> None:
    """Write the blob REPO@DIGEST to stdout."""

    async def verb(crane: Crane) -> None:
        layer = await crane.blob(blob)
        out = click.get_binary_stream("stdout")
        async for chunk in layer.compressed():
            out.write(chunk)
        out.flush()

    _run(ctx, verb)


@main.command("ls")
@click.argument("repo")
@click.option("--full-ref", is_flag=True, help="Print repository:tag for each tag.")
@click.option("--omit-digest-tags", is_flag=True, help="Skip sha256-<hex> fallback tags.")
@click.pass_context
def ls_command(ctx: click.Context, repo: str, full_ref: bool, omit_digest_tags: bool) -> None:
    """List the tags of a repository."""
    tags = _run(ctx, lambda crane: crane.list_tags(repo))
    for tag in tags:
        if omit_digest_tags and tag.startswith("sha256-"):
            continue
        click.echo(f"{ctx.obj.repository(repo)}:{tag}" if full_ref else tag)


@main.command("catalog")
@click.argument("registry")
@click.option("--full-ref", is_flag=True, help="Print registry/repository.")
@click.pass_context
def catalog_command(ctx: click.Context, registry: str, full_ref: bool) -> None:
    """List the repositories of a registry."""
    for repo in _run(ctx, lambda crane: crane.catalog(registry)):
        click.echo(f"{registry}/{repo}" if full_ref else repo)


@main.command("validate")
@click.option("--remote", "remote_ref", default=None, help="Reference of a remote image or index.")
@click.option("--tarball", type=click.Path(exists=True, dir_okay=False), default=None, help="Docker tarball.")
@click.option("--fast", is_flag=True, help="Skip downloading and hashing layers.")
@click.pass_context
def validate_command(ctx: click.Context, remote_ref: Optional[str], tarball: Optional[str], fast: bool) -> None:
    """Check that an image or index is well formed."""
    if bool(remote_ref) == bool(tarball):
        raise click.UsageError("exactly one of --remote and --tarball is required")

    async def verb(crane: Crane) -> str:
        artifact = await crane.load(tarball) if tarball else await crane.pull_artifact(remote_ref)
        await crane.validate(artifact, fast)
        return f"PASS: {tarball or remote_ref}"

    click.echo(_run(ctx, verb))


@main.command("export")
@click.argument("image")
@click.argument("output", default="-")
@click.pass_context
def export_command(ctx: click.Context, image: str, output: str) -> None:
    """Write the flattened filesystem of IMAGE as a tarball ("-" for stdout)."""

    async def verb(crane: Crane) -> None:
        img = await crane.pull(image)
        if output == "-":
            out = click.get_binary_stream("stdout")
            await crane.export(img, out)
            out.flush()
            return
        with open(output, "wb") as f:
            await crane.export(img, f)

    _run(ctx, verb)


# Writing


@main.command("push")
@click.argument("path", type=click.Path(exists=True))
@click.argument("image")
@click.option("--index", "as_index", is_flag=True, help="Push an OCI layout as an index even with one image.")
@click.pass_context
def push_command(ctx: click.Context, path: str, image: str, as_index: bool) -> None:
    """Push a Docker tarball or an OCI layout to IMAGE."""

    async def verb(crane: Crane) -> str:
        if Path(path).is_dir():
            idx: ImageIndex = await crane.load_oci(path)
            manifests = (await idx.index_manifest()).manifests
            artifact = idx if as_index or len(manifests) != 1 else await idx.image(manifests[0].digest)
        else:
            artifact = await crane.load(path)
        digest = await crane.push(artifact, image)
        return f"{crane.options.reference(image).context()}@{digest}"

    click.echo(_run(ctx, verb))


@main.command("copy")
@click.argument("src")
@click.argument("dst")
@click.option("-a", "--all-tags", is_flag=True, help="Copy every tag of the SRC repository.")
@click.pass_context
def copy_command(ctx: click.Context, src: str, dst: str, all_tags: bool) -> None:
    """Copy an image (or index) from SRC to DST."""
    if all_tags:
        for tag in _run(ctx, lambda crane: crane.copy_repository(src, dst)):
            click.echo(tag)
        return
    click.echo(_run(ctx, lambda crane: crane.copy(src, dst)))


main.add_command(copy_command, "cp")


@main.command("tag")
@click.argument("image")
@click.argument("tag")
@click.pass_context
def tag_command(ctx: click.Context, image: str, tag: str) -> None:
    """Add TAG to the manifest IMAGE points at."""
    _run(ctx, lambda crane: crane.tag(image, tag))


@main.command("delete")
@click.argument("image")
@click.pass_context
def delete_command(ctx: click.Context, image: str) -> None:
    """Delete a tag or a manifest by digest."""
    _run(ctx, lambda crane: crane.delete(image))


@main.command("bump")
@click.argument("image")
@click.argument("tag")
@click.pass_context
def bump_command(ctx: click.Context, image: str, tag: str) -> None:
    """Tag IMAGE as release TAG and move the major, minor and latest aliases."""
    for written in _run(ctx, lambda crane: crane.bump(image, tag)):
        click.echo(written)


# Mutating


@main.command("append")
@click.option("-b", "--base", default=None, help="Image to append to (empty image when omitted).")
@click.option(
    "-f",
    "--new-layer",
    "layers",
    multiple=True,
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Tarball to append as a layer.",
)
@click.option("-t", "--new-tag", default=None, help="Where to push the result.")
@click.option("-o", "--output", default=None, type=click.Path(dir_okay=False), help="Save to a tarball instead.")
@click.pass_context
def append_command(
    ctx: click.Context, base: Optional[str], layers: tuple[str, ...], new_tag: Optional[str], output: Optional[str]
) -> None:
    """Append tarballs as layers to an image."""
    if not new_tag and not output:
        raise click.UsageError("one of --new-tag and --output is required")

    async def verb(crane: Crane) -> str:
        img = await crane.append(await crane.pull(base) if base else None, layers)
        if output:
            await crane.save({new_tag or "image:latest": img}, output)
            return str(await img.digest())
        return str(await crane.push(img, new_tag))

    click.echo(_run(ctx, verb))


@main.command("rebase")
@click.argument("original")
@click.option("--old-base", default="", help="Base the image currently sits on.")
@click.option("--new-base", default="", help="Base to move the image onto.")
@click.option("-t", "--tag", "dst", default="", help="Where to push the result (defaults to ORIGINAL).")
@click.pass_context
def rebase_command(ctx: click.Context, original: str, old_base: str, new_base: str, dst: str) -> None:
    """Move an image from one base image onto another."""
    click.echo(_run(ctx, lambda crane: crane.rebase(original, old_base, new_base, dst)))


@main.command("mutate")
@click.argument("image")
@click.option("-l", "--label", "labels", multiple=True, help="KEY=VALUE label to set.")
@click.option("-a", "--annotation", "annotations", multiple=True, help="KEY=VALUE manifest annotation.")
@click.option("--entrypoint", default=None, help="Entrypoint, comma separated.")
@click.option("--cmd", default=None, help="Command, comma separated.")
@click.option("-e", "--env", multiple=True, help="KEY=VALUE environment variable.")
@click.option("-u", "--user", default=None, help="User to run as.")
@click.option("-w", "--workdir", default=None, help="Working directory.")
@click.option("--append", "append_layers", multiple=True, type=click.Path(exists=True), help="Tarball to append.")
@click.option("-t", "--tag", "dst", default="", help="Where to push the result (defaults to IMAGE).")
@click.pass_context
def mutate_command(
    ctx: click.Context,
    image: str,
    labels: tuple[str, ...],
    annotations: tuple[str, ...],
    entrypoint: Optional[str],
    cmd: Optional[str],
    env: tuple[str, ...],
    user: Optional[str],
    workdir: Optional[str],
    append_layers: tuple[str, ...],
    dst: str,
) -> None:
    """Edit the config of an image and push the result."""
    label_map = _key_values(labels, "--label")
    annotation_map = _key_values(annotations, "--annotation")
    _key_values(env, "--env")

    def verb(crane: Crane) -> Awaitable[Any]:
        return crane.mutate(
            image,
            dst,
            labels=label_map,
            annotations=annotation_map,
            entrypoint=entrypoint.split(",") if entrypoint is not None else None,
            cmd=cmd.split(",") if cmd is not None else None,
            env=list(env),
            user=user,
            workdir=workdir,
            append=append_layers,
        )

    click.echo(_run(ctx, verb))


@main.command("annotate")
@click.argument("image")
@click.option("-a", "--annotation", "annotations", multiple=True, required=True, help="KEY=VALUE annotation.")
@click.option("-t", "--tag", "dst", default="", help="Where to push the result (defaults to IMAGE).")
@click.pass_context
def annotate_command(ctx: click.Context, image: str, annotations: tuple[str, ...], dst: str) -> None:
    """Add annotations to an image or index manifest."""
    annotation_map = _key_values(annotations, "--annotation")
    click.echo(_run(ctx, lambda crane: crane.annotate(image, annotation_map, dst)))


@main.command("flatten")
@click.argument("image")
@click.option("-t", "--tag", "dst", default="", help="Where to push the result (defaults to IMAGE).")
@click.pass_context
def flatten_command(ctx: click.Context, image: str, dst: str) -> None:
    """Squash every layer of an image (or each image of an index) into one."""
    click.echo(_run(ctx, lambda crane: crane.flatten(image, dst)))


@main.command("squash")
@click.argument("image")
@click.option("-t", "--tag", "dst", default="", help="Where to push the result (defaults to IMAGE).")
@click.pass_context
def squash_command(ctx: click.Context, image: str, dst: str) -> None:
    """Squash the layers of one image, keeping its history."""
    click.echo(_run(ctx, lambda crane: crane.squash(image, dst)))


@main.command("optimize")
@click.argument("src")
@click.argument("dst")
@click.option("--prioritize", multiple=True, help="File to place first for lazy pulling.")
@click.pass_context
def optimize_command(ctx: click.Context, src: str, dst: str, prioritize: tuple[str, ...]) -> None:
    """Convert an image to eStargz with prioritized files first."""
    click.echo(_run(ctx, lambda crane: crane.optimize(src, dst, prioritize)))


@main.group("index")
def index_group() -> None:
    """Edit image indexes."""


@index_group.command("filter")
@click.argument("image")
@click.option("--platform", "platforms", multiple=True, required=True, help="Platform to keep.")
@click.option("-t", "--tag", "dst", default="", help="Where to push the result (defaults to IMAGE).")
@click.pass_context
def index_filter_command(ctx: click.Context, image: str, platforms: tuple[str, ...], dst: str) -> None:
    """Keep only the children of an index matching the given platforms."""
    click.echo(_run(ctx, lambda crane: crane.index_filter(image, platforms, dst)))


@index_group.command("append")
@click.argument("image", default="")
@click.option("-m", "--manifest", "manifests", multiple=True, required=True, help="Manifest to add.")
@click.option("-t", "--tag", "dst", default="", help="Where to push the result (defaults to IMAGE).")
@click.pass_context
def index_append_command(ctx: click.Context, image: str, manifests: tuple[str, ...], dst: str) -> None:
    """Add manifests to an index (or to an empty one when IMAGE is omitted)."""
    click.echo(_run(ctx, lambda crane: crane.index_append(image, manifests, dst)))


# Attachments


@main.command("attach")
@click.argument("image")
@click.option(
    "-f",
    "--file",
    "payload",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="File to attach.",
)
@click.option("-m", "--media-type", required=True, help="Media type of the attachment.")
@click.pass_context
def attach_command(ctx: click.Context, image: str, payload: str, media_type: str) -> None:
    """Attach a file to IMAGE as a referrer artifact."""
    data = Path(payload).read_bytes()
    digest = _run(ctx, lambda crane: crane.attach(image, data, media_type))
    click.echo(f"{ctx.obj.reference(image).context()}@{digest}")


@main.command("attachments")
@click.argument("image")
@click.option("--artifact-type", default="", help="Only list referrers of this type.")
@click.pass_context
def attachments_command(ctx: click.Context, image: str, artifact_type: str) -> None:
    """List the digest and artifact type of each referrer of IMAGE."""
    index = _run(ctx, lambda crane: crane.referrers(image, artifact_type))
    for desc in index.manifests:
        click.echo(f"{desc.digest}\t{desc.artifact_type}")


@main.command("referrers")
@click.argument("image")
@click.option("--artifact-type", default="", help="Only list referrers of this type.")
@click.pass_context
def referrers_command(ctx: click.Context, image: str, artifact_type: str) -> None:
    """Print the referrers index of IMAGE."""
    index = _run(ctx, lambda crane: crane.referrers(image, artifact_type))
    click.echo(json.dumps(index.to_dict(), indent=2))


# Registry


@main.group("registry")
def registry_group() -> None:
    """Run a local registry."""


@registry_group.command("serve")
@click.option("--address", default="0.0.0.0", show_default=True, help="Address to listen on.")
@click.option("--port", type=int, default=None, help="Port to listen on (defaults to $PORT or 5000).")
@click.option("--disk", type=click.Path(file_okay=False), default=None, help="Store blobs under this directory.")
@click.option("--split-repositories", is_flag=True, help="Keep blobs of each repository apart.")
@click.option("--no-blob-delete", is_flag=True, help="Answer blob DELETE with 405.")
def serve_command(
    address: str, port: Optional[int], disk: Optional[str], split_repositories: bool, no_blob_delete: bool
) -> None:
    """Serve a v2 registry until interrupted."""
    policy = "split" if split_repositories else ("disk" if disk else "memory")
    app = create_app(blob_store(policy, disk), allow_blob_delete=not no_blob_delete)
    try:
        asyncio.run(serve(app, address, port))
    except KeyboardInterrupt:
        logger.info("registry stopped")


if __name__ == "__main__":
    main()
