import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import pytest

# Repository root holds the top-level packages (common, entrypoint, certs).
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from common.process import CommandError, CommandResult  # noqa: E402
from entrypoint.identity import ServiceAccount  # noqa: E402
from entrypoint.layout import SystemLayout  # noqa: E402


@dataclass
class Call:
    args: tuple
    input: str | None
    env: dict | None

    @property
    def name(self) -> str:
        return Path(self.args[0]).name


class FakeCommands:
    """Stand-in for common.process.run_command keyed by executable name."""

    def __init__(self):
        self.calls: list[Call] = []
        self.handlers: dict[str, Callable] = {}

    def on(self, name: str, handler: Callable) -> None:
        self.handlers[name] = handler

    def names(self) -> list[str]:
        return [c.name for c in self.calls]

    def find(self, name: str) -> list[Call]:
        return [c for c in self.calls if c.name == name]

    def __call__(self, args, *, input=None, env=None, check=False):
        argv = tuple(str(a) for a in args)
        call = Call(argv, input, dict(env) if env is not None else None)
        self.calls.append(call)
        handler = self.handlers.get(call.name)
        result = handler(call) if handler else None
        if result is None:
            result = CommandResult(argv, 0, "")
        elif isinstance(result, int):
            result = CommandResult(argv, result, "")
        if check and not result.ok:
            raise CommandError(result)
        return result


@pytest.fixture
def layout(tmp_path):
    lay = SystemLayout().rooted(tmp_path / "root")
    lay.ssh_dir.mkdir(parents=True)
    lay.home_root.mkdir(parents=True)
    return lay


@pytest.fixture
def alpine_layout(tmp_path):
    lay = SystemLayout(sftp_server="/usr/lib/ssh/sftp-server", is_alpine=True).rooted(tmp_path / "alpine")
    lay.ssh_dir.mkdir(parents=True)
    lay.home_root.mkdir(parents=True)
    return lay


@pytest.fixture
def commands(monkeypatch):
    fake = FakeCommands()
    for module in (
        "entrypoint.identity",
        "entrypoint.hostkeys",
        "entrypoint.keyagent",
        "entrypoint.sshd_config",
    ):
        monkeypatch.setattr(f"{module}.run_command", fake)
    return fake


@pytest.fixture
def account(layout):
    home = layout.home_dir("testuser")
    home.mkdir(parents=True, exist_ok=True)
    # Owned by whoever runs the tests so chown succeeds without root.
    return ServiceAccount(name="testuser", uid=os.getuid(), gid=os.getgid(), home=home)
