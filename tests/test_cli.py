import json

import pytest
from click.testing import CliRunner

from archpipe.cli import main


@pytest.fixture
def runner(monkeypatch):
    for name in ("ARCHPIPE_CONTAINER_NAME", "ARCHPIPE_TAG_PATTERN", "ARCHPIPE_REGISTRY_URI"):
        monkeypatch.delenv(name, raising=False)
    return CliRunner()


def test_descriptor_writes_imagedefinitions(runner, tmp_path):
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"imageUri": "registry.example/app:latest", "tag": "latest"}))

    result = runner.invoke(main, ["descriptor", str(event), "-o", str(tmp_path)])

    assert result.exit_code == 0, result.output
    written = (tmp_path / "imagedefinitions.json").read_text(encoding="utf-8")
    assert written == '[{"name":"mattermost-server","imageUri":"registry.example/app:latest"}]'


def test_descriptor_uses_container_name_option(runner, tmp_path):
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"imageUri": "registry.example/app:v2"}))

    result = runner.invoke(
        main, ["descriptor", str(event), "--container-name", "web", "-o", str(tmp_path)]
    )

    assert result.exit_code == 0, result.output
    data = json.loads((tmp_path / "imagedefinitions.json").read_text(encoding="utf-8"))
    assert data == [{"name": "web", "imageUri": "registry.example/app:v2"}]


def test_descriptor_without_image_uri_fails(runner, tmp_path):
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"tag": "latest"}))

    result = runner.invoke(main, ["descriptor", str(event), "-o", str(tmp_path)])

    assert result.exit_code != 0
    assert "DescriptorBuildFailed" in result.output
    assert not (tmp_path / "imagedefinitions.json").exists()


def test_descriptor_with_broken_json_fails(runner, tmp_path):
    event = tmp_path / "event.json"
    event.write_text("{not json")

    result = runner.invoke(main, ["descriptor", str(event), "-o", str(tmp_path)])

    assert result.exit_code != 0


def test_summary_lists_build_stages(runner):
    result = runner.invoke(main, ["summary", "--registry", "registry.example/app"])

    assert result.exit_code == 0, result.output
    assert "build_amd64" in result.output
    assert "build_arm64" in result.output
    assert "merge_manifest" in result.output


def test_summary_lists_release_stages(runner):
    result = runner.invoke(main, ["summary", "--pipeline", "release"])

    assert result.exit_code == 0, result.output
    assert "build_descriptor" in result.output
    assert "deploy_service" in result.output
