from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from archpipe.core.ci_scripts import ScriptKind, make_script


@dataclass
class ProcessResult:
    exit_code: int
    output: List[str] = field(default_factory=list)
    raw: bytes = b""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


async def run_process(
    args: Sequence[str],
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[Path] = None,
    stdin: Optional[bytes] = None,
) -> ProcessResult:
    """
    Запускает внешний процесс и собирает stdout+stderr построчно.

    Отмена корутины (CancelledError) убивает процесс и пробрасывается дальше —
    так контроллер останавливает незавершённые сборки.
    """
    full_env = dict(os.environ)
    if env:
        full_env.update(env)

    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=full_env,
        cwd=str(cwd) if cwd is not None else None,
    )
    try:
        out, _ = await proc.communicate(stdin)
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    output = out.decode("utf-8", errors="replace").splitlines() if out else []
    return ProcessResult(exit_code=proc.returncode or 0, output=output, raw=out or b"")


async def run_script(
    kind: ScriptKind,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[Path] = None,
    shell: str = "sh",
    **params,
) -> ProcessResult:
    """Запускает сгенерированный ci-скрипт через `sh -c`."""
    return await run_process([shell, "-c", make_script(kind, **params)], env=env, cwd=cwd)
