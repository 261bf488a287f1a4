import asyncio
from datetime import timedelta

import pytest

from archpipe.core.ci_scripts import make_manifest_script, make_script
from archpipe.core.models import ImageReference
from archpipe.core.services.registry import DockerCliRegistry, RegistryError
from archpipe.utils import utcnow


@pytest.mark.asyncio
async def test_concurrent_pushes_of_distinct_tags(registry):
    await asyncio.gather(
        registry.push("v1-amd64", b"a", platform="linux/amd64"),
        registry.push("v1-arm64", b"b", platform="linux/arm64"),
    )

    assert await registry.exists("v1-amd64")
    assert await registry.exists("v1-arm64")


@pytest.mark.asyncio
async def test_manifest_list_requires_present_sources(registry):
    await registry.push("v1-amd64", b"a", platform="linux/amd64")

    with pytest.raises(RegistryError):
        await registry.put_manifest_list("v1", {"linux/amd64": "v1-amd64", "linux/arm64": "v1-arm64"})
    assert not await registry.exists("v1")


@pytest.mark.asyncio
async def test_notifications_stream_pushes(registry):
    stream = registry.notifications()
    first = asyncio.create_task(stream.__anext__())
    await asyncio.sleep(0)

    await registry.push("v1", b"image")
    event = await asyncio.wait_for(first, timeout=1.0)
    await stream.aclose()

    assert event.image_uri == "registry.example/app:v1"
    assert event.tag == "v1"
    assert event.digest.startswith("sha256:")


@pytest.mark.asyncio
async def test_prune_untagged_images_after_max_age(registry):
    await registry.push("latest", b"one")
    await registry.push("latest", b"two")
    await registry.push("latest", b"three")

    assert len(registry.untagged) == 2
    assert registry.prune_untagged(now=utcnow()) == 0
    assert registry.prune_untagged(now=utcnow() + timedelta(days=3)) == 2
    assert registry.untagged == []
    assert await registry.pull("latest") == b"three"


@pytest.mark.asyncio
async def test_docker_registry_resolves_platform_to_digest_reference(monkeypatch):
    docker = DockerCliRegistry("registry.example/app")
    manifest = {
        "manifests": [
            {"digest": "sha256:aaa", "platform": {"os": "linux", "architecture": "amd64"}},
            {"digest": "sha256:bbb", "platform": {"os": "linux", "architecture": "arm64"}},
        ]
    }

    async def inspect(tag):
        return manifest

    monkeypatch.setattr(docker, "_inspect", inspect)

    resolved = await docker.resolve("v1", "linux/arm64")

    assert resolved == "@sha256:bbb"
    assert ImageReference(registry_uri=docker.registry_uri, tag=resolved).uri == (
        "registry.example/app@sha256:bbb"
    )
    assert await docker.resolve("v1", "linux/s390x") is None


@pytest.mark.parametrize(
    "uri, registry_uri, tag",
    [
        ("registry.example/app:v3", "registry.example/app", "v3"),
        ("registry:5000/app", "registry:5000/app", "latest"),
        ("registry:5000/app:v1", "registry:5000/app", "v1"),
        ("registry.example/app@sha256:abc", "registry.example/app", "@sha256:abc"),
    ],
)
def test_image_reference_parse(uri, registry_uri, tag):
    ref = ImageReference.parse(uri)

    assert (ref.registry_uri, ref.tag) == (registry_uri, tag)
    assert ref.uri == uri or tag == "latest"


def test_manifest_script_annotates_each_arch():
    cmds = make_manifest_script("registry.example/app", "v1", {"amd64": "v1-amd64", "arm64": "v1-arm64"})

    assert cmds[2] == (
        "docker manifest create --amend registry.example/app:v1 "
        "registry.example/app:v1-amd64 registry.example/app:v1-arm64"
    )
    assert any("--arch arm64" in cmd for cmd in cmds)
    assert cmds[-1] == "docker manifest push registry.example/app:v1"


def test_build_script_uses_runner_environment():
    script = make_script("build")

    assert '--platform "$PLATFORM"' in script
    assert '-f "$PATH_TO_DOCKERFILE"' in script
    assert '"$REPOSITORY_URI:$IMAGE_TAG"' in script
    with pytest.raises(ValueError):
        make_script("deploy")
