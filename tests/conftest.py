import asyncio
import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from archpipe.core.models import SourcePushEvent
from archpipe.core.services.process import ProcessResult
from archpipe.core.services.registry import InMemoryRegistry, RegistryError


REGISTRY_URI = "registry.example/app"


class FakeRunner:
    """
    Build runner без docker: "собирает" образ и пушит его в InMemoryRegistry.
    """

    def __init__(
        self,
        registry: InMemoryRegistry,
        fail_platforms: Optional[Set[str]] = None,
        delay: float = 0.01,
    ) -> None:
        self.registry = registry
        self.fail_platforms = set(fail_platforms or ())
        self.delay = delay
        self.calls: List[Dict[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def run(self, env: Dict[str, str], cwd: Path) -> ProcessResult:
        self.calls.append(dict(env))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            platform = env["PLATFORM"]
            if platform in self.fail_platforms:
                return ProcessResult(exit_code=1, output=["ERROR: failed to solve: process did not complete"])
            image = f"{platform}:{(cwd / env['PATH_TO_DOCKERFILE']).read_text()}".encode()
            try:
                await self.registry.push(env["IMAGE_TAG"], image, platform=platform)
            except RegistryError:
                return ProcessResult(
                    exit_code=1,
                    output=["denied: requested access to the resource is denied"],
                )
            return ProcessResult(
                exit_code=0,
                output=[f"pushed {env['REPOSITORY_URI']}:{env['IMAGE_TAG']}"],
            )
        finally:
            self.active -= 1


class FakeClock:
    """Виртуальное время для DeploymentDriver: sleep двигает часы мгновенно."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry(REGISTRY_URI)


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    src = tmp_path / "src"
    src.mkdir()
    (src / "Dockerfile").write_text("FROM alpine:3.19\n", encoding="utf-8")
    return src


@pytest.fixture
def push_event() -> SourcePushEvent:
    return SourcePushEvent(branch="prod", commit_ref="0f1e2d3c")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeping_script(tmp_path):
    if shutil.which("sh") is None or shutil.which("sleep") is None:
        pytest.skip("sh/sleep are not available")
    script = tmp_path / "build.sh"
    script.write_text('echo $$ > "$PID_DIR/$IMAGE_TAG"\nexec sleep 30\n', encoding="utf-8")
    pid_dir = tmp_path / "pids"
    pid_dir.mkdir()
    return script, pid_dir


async def wait_for_pids(pid_dir, count):
    for _ in range(200):
        files = list(pid_dir.iterdir())
        if len(files) >= count and all(f.read_text().strip() for f in files):
            return [int(f.read_text()) for f in files]
        await asyncio.sleep(0.05)
    raise AssertionError(f"runner did not start: {list(pid_dir.iterdir())}")


def assert_reaped(pid):
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


