from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path

ALPINE_RELEASE = "/etc/alpine-release"


@dataclass(frozen=True)
class SystemLayout:
    ssh_dir: Path = Path("/etc/ssh")
    home_root: Path = Path("/home")
    sshd_bin: str = "/usr/sbin/sshd"
    ssh_keygen_bin: str = "ssh-keygen"
    ssh_agent_bin: str = "ssh-agent"
    ssh_add_bin: str = "ssh-add"
    sftp_server: str = "/usr/lib/openssh/sftp-server"
    motd_template: Path = Path("/usr/local/share/motd.debian")
    motd_path: Path = Path("/etc/motd")
    login_shell: str = "/bin/bash"
    is_alpine: bool = False

    @property
    def sshd_config(self) -> Path:
        return self.ssh_dir / "sshd_config"

    def host_key_path(self, key_type: str) -> Path:
        return self.ssh_dir / f"ssh_host_{key_type}_key"

    def home_dir(self, user: str) -> Path:
        return self.home_root / user

    def rooted(self, root: Path) -> "SystemLayout":
        # Re-anchor every filesystem path under root; binaries stay as they are.
        return replace(
            self,
            ssh_dir=root / self.ssh_dir.relative_to("/"),
            home_root=root / self.home_root.relative_to("/"),
            motd_template=root / self.motd_template.relative_to("/"),
            motd_path=root / self.motd_path.relative_to("/"),
        )


def detect_layout(release_file: str = ALPINE_RELEASE) -> SystemLayout:
    if Path(release_file).exists():
        return SystemLayout(
            sftp_server="/usr/lib/ssh/sftp-server",
            motd_template=Path("/usr/local/share/motd.alpine"),
            is_alpine=True,
        )
    return SystemLayout()
