import json

import pytest

from archpipe.core.config import ReleaseSettings
from archpipe.core.models import DeploymentDescriptor, RegistryPushEvent
from archpipe.core.services.descriptor import ReleaseDescriptorBuilder
from archpipe.exception import DescriptorBuildFailed


@pytest.fixture
def descriptor_builder():
    return ReleaseDescriptorBuilder(ReleaseSettings(container_name="app-container"))


def test_builds_single_entry_with_configured_container_name(descriptor_builder):
    descriptor = descriptor_builder.build({"imageUri": "registry.example/app:v3"})

    assert descriptor.to_wire() == [
        {"name": "app-container", "imageUri": "registry.example/app:v3"}
    ]


def test_wire_format_is_compact_json(descriptor_builder):
    descriptor = descriptor_builder.build(RegistryPushEvent(image_uri="registry.example/app:v3"))

    assert descriptor.dumps() == '[{"name":"app-container","imageUri":"registry.example/app:v3"}]'
    assert DeploymentDescriptor.loads(descriptor.dumps()) == descriptor


def test_container_name_comes_from_settings_not_event(descriptor_builder):
    descriptor = descriptor_builder.build(
        {"imageUri": "registry.example/app:v3", "name": "other", "containerName": "other"}
    )

    assert descriptor.container_name == "app-container"


@pytest.mark.parametrize(
    "event",
    [
        {},
        {"imageUri": ""},
        {"imageUri": "   "},
        {"imageUri": None},
        {"tag": "v3"},
        {"imageUri": 42},
        {"imageUri": "not a uri"},
    ],
)
def test_missing_or_unresolvable_image_uri_fails_closed(descriptor_builder, event):
    with pytest.raises(DescriptorBuildFailed):
        descriptor_builder.build(event)


def test_default_container_name():
    descriptor = ReleaseDescriptorBuilder(ReleaseSettings()).build(
        {"imageUri": "registry.example/app@sha256:abc"}
    )

    assert json.loads(descriptor.dumps())[0]["name"] == "mattermost-server"
