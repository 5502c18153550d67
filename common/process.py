from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

logger = logging.getLogger("common.process")


class CommandError(RuntimeError):
    def __init__(self, result: "CommandResult"):
        self.result = result
        super().__init__(
            f"command {' '.join(result.args)} failed with exit code {result.returncode}: {result.output.strip()}"
        )


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    args: Sequence[str],
    *,
    input: str | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = False,
) -> CommandResult:
    argv = tuple(str(a) for a in args)
    logger.debug("run %s", " ".join(argv))
    try:
        proc = subprocess.run(
            argv,
            input=input,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            env=dict(env) if env is not None else None,
        )
        result = CommandResult(argv, proc.returncode, proc.stdout or "")
    except OSError as exc:
        # missing binary, permission denied on exec
        result = CommandResult(argv, 127, str(exc))
    if check and not result.ok:
        raise CommandError(result)
    return result
