from archpipe.core.config import PipelineSettings, ReleaseSettings
from archpipe.core.controller import validate_definition
from archpipe.core.services.builders.pipeline import (
    build_container_pipeline,
    build_release_pipeline,
    summarize_pipeline,
)

from conftest import REGISTRY_URI


def test_container_pipeline_fans_out_and_merges():
    definition, logs = build_container_pipeline(PipelineSettings(registry_uri=REGISTRY_URI, image_tag="v1"))

    validate_definition(definition)
    build, merge = definition.stages
    assert [a.name for a in build.actions] == ["build_amd64", "build_arm64"]
    assert {a.environment.image_tag for a in build.actions} == {"v1-amd64", "v1-arm64"}
    assert merge.actions[0].inputs == ["image_amd64", "image_arm64"]
    assert merge.actions[0].base_tag == "v1"
    assert len(logs) == 3


def test_release_pipeline_is_descriptor_then_deploy():
    definition, _ = build_release_pipeline(ReleaseSettings())

    validate_definition(definition)
    assert definition.action_names() == ["build_descriptor", "deploy_service"]


def test_summary_describes_layout():
    definition, _ = build_container_pipeline(PipelineSettings(registry_uri=REGISTRY_URI))

    summary = summarize_pipeline(definition)

    assert summary.stages == ["build", "merge"]
    assert summary.actions_count == 3
    assert "build[build_amd64 || build_arm64] -> merge[merge_manifest]" in summary.description
