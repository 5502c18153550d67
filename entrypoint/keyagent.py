from __future__ import annotations

import enum
import logging
import os
import re
import shutil
import signal
import tempfile
import time
from pathlib import Path

from common.crypto import KeyMaterialError, b64d
from common.process import run_command
from entrypoint.identity import ServiceAccount, ensure_ssh_dir
from entrypoint.layout import SystemLayout

AGENT_ENV_FILE = "agent_env"
PROFILE_MARKER = "# SSH Agent Environment (added by SSH test server)"
PROFILE_SOURCE_LINE = "[ -f ~/.ssh/agent_env ] && source ~/.ssh/agent_env"

_PID_RE = re.compile(r"SSH_AGENT_PID=(\d+)")
_SOURCED_RE = re.compile(r"source.*agent_env")


class AgentState(enum.Enum):
    DISABLED = "disabled"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class KeyAgentSupervisor:
    def __init__(
        self,
        layout: SystemLayout,
        socket_path: str,
        socket_wait: float = 2.0,
    ):
        self.logger = logging.getLogger("entrypoint.keyagent")
        self.layout = layout
        self.socket_path = Path(socket_path)
        self.socket_wait = socket_wait
        self.state = AgentState.DISABLED
        self.pid: int | None = None
        self.loaded_keys = 0

    @property
    def running(self) -> bool:
        return self.state is AgentState.RUNNING

    def _agent_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["SSH_AUTH_SOCK"] = str(self.socket_path)
        return env

    def _wait_for_socket(self) -> bool:
        deadline = time.monotonic() + self.socket_wait
        while not self.socket_path.exists():
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.05)
        return True

    def start(self, account: ServiceAccount, keys: tuple[str, ...] = ()) -> bool:
        self.logger.info("Starting SSH agent...")
        self.state = AgentState.STARTING

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        self.socket_path.unlink(missing_ok=True)

        result = run_command([self.layout.ssh_agent_bin, "-a", str(self.socket_path)])
        match = _PID_RE.search(result.output)
        if match:
            self.pid = int(match.group(1))
        if not result.ok or not self._wait_for_socket():
            self.logger.error("Failed to start SSH agent")
            for line in result.output.splitlines():
                self.logger.error("  %s", line)
            self._terminate()
            self.state = AgentState.STOPPED
            return False

        os.environ["SSH_AUTH_SOCK"] = str(self.socket_path)
        self.state = AgentState.RUNNING
        self.logger.debug("SSH agent pid=%s", self.pid)
        self.logger.info("SSH agent started with socket: %s", self.socket_path)

        if keys:
            self.load_keys(keys)

        # Key loading runs as root; only afterwards hand the socket to the account.
        os.chmod(self.socket_path, 0o600)
        account.chown(self.socket_path)
        return True

    def load_keys(self, keys: tuple[str, ...]) -> int:
        self.logger.info("Loading SSH keys into agent...")
        env = self._agent_env()
        try:
            temp_dir = tempfile.mkdtemp(prefix="ssh-agent-keys-")
        except OSError as exc:
            self.logger.error("Cannot create staging directory for agent keys, skipping %s keys: %s", len(keys), exc)
            self.logger.info("SSH agent key loading completed (0 of %s keys loaded)", len(keys))
            return self.loaded_keys
        try:
            for index, line in enumerate(keys, start=1):
                try:
                    raw = b64d(line)
                except KeyMaterialError:
                    self.logger.warning("Failed to decode key %s (invalid base64)", index)
                    continue
                key_file = Path(temp_dir) / f"key_{index}"
                try:
                    fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                    with os.fdopen(fd, "wb") as f:
                        f.write(raw)
                    result = run_command([self.layout.ssh_add_bin, str(key_file)], env=env)
                except OSError as exc:
                    self.logger.warning("Failed to stage key %s: %s", index, exc)
                    continue
                finally:
                    key_file.unlink(missing_ok=True)
                if result.ok:
                    self.loaded_keys += 1
                    self.logger.debug("Successfully added key %s to agent", index)
                else:
                    self.logger.warning("Failed to add key %s to agent", index)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        if self.logger.isEnabledFor(logging.DEBUG):
            listing = run_command([self.layout.ssh_add_bin, "-l"], env=env)
            self.logger.debug("Keys loaded in SSH agent:")
            for entry in listing.output.splitlines():
                self.logger.debug("  %s", entry)

        self.logger.info("SSH agent key loading completed (%s of %s keys loaded)", self.loaded_keys, len(keys))
        return self.loaded_keys

    def setup_forwarding(self, account: ServiceAccount) -> Path | None:
        if not self.running or not self.socket_path.exists():
            return None
        self.logger.debug("Setting SSH_AUTH_SOCK for user %s", account.name)

        ssh_dir = account.ssh_dir
        if not ssh_dir.is_dir():
            ensure_ssh_dir(account)

        env_file = ssh_dir / AGENT_ENV_FILE
        env_file.write_text(
            f"# SSH Agent Environment Variables\nexport SSH_AUTH_SOCK={self.socket_path}\n",
            encoding="utf-8",
        )
        os.chmod(env_file, 0o644)
        account.chown(env_file)

        for profile in (".bashrc", ".profile"):
            profile_path = account.home / profile
            if not profile_path.exists():
                if profile != ".bashrc":
                    continue
                profile_path.touch()
                account.chown(profile_path)
            text = profile_path.read_text(encoding="utf-8", errors="replace")
            if _SOURCED_RE.search(text):
                continue
            with profile_path.open("a", encoding="utf-8") as f:
                f.write(f"\n{PROFILE_MARKER}\n{PROFILE_SOURCE_LINE}\n")
            self.logger.debug("Added agent environment to %s", profile)

        self.logger.debug("Agent forwarding setup completed")
        return env_file

    def _terminate(self) -> bool:
        if self.pid is None:
            return False
        try:
            os.kill(self.pid, signal.SIGTERM)
        except ProcessLookupError:
            self.logger.debug("SSH agent pid=%s already gone", self.pid)
            return False
        except PermissionError as exc:
            self.logger.warning("Cannot signal SSH agent pid=%s: %s", self.pid, exc)
            return False
        finally:
            self.pid = None
        return True

    def stop(self) -> None:
        if self.state is not AgentState.RUNNING:
            return
        self.logger.debug("Stopping SSH agent...")
        self._terminate()
        self.socket_path.unlink(missing_ok=True)
        os.environ.pop("SSH_AUTH_SOCK", None)
        self.state = AgentState.STOPPED
        self.logger.info("SSH agent stopped")
