from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Iterable

from common.process import run_command
from entrypoint.hostkeys import HostKey
from entrypoint.layout import SystemLayout
from entrypoint.settings import Settings, yes_no

logger = logging.getLogger("entrypoint.sshd_config")

LOG_LEVELS = ("INFO", "VERBOSE", "DEBUG", "DEBUG3")


class SshdConfigError(RuntimeError):
    pass


def _section(title: str, lines: Iterable[str]) -> list[str]:
    return [f"# {title}", *lines, ""]


def render_sshd_config(settings: Settings, host_keys: list[HostKey], layout: SystemLayout) -> str:
    out = [
        "# SSH Test Server Configuration",
        "# Generated automatically by entrypoint",
        "",
    ]
    out += _section(
        "Network",
        [
            f"Port {settings.port}",
            "AddressFamily any",
            "ListenAddress 0.0.0.0",
            "ListenAddress ::",
        ],
    )
    out += _section("Host keys", [f"HostKey {key.path}" for key in sorted(host_keys, key=lambda k: str(k.path))])
    # With -e sshd logs to stderr whatever the facility says.
    out += _section(
        "Logging",
        [
            "SyslogFacility AUTH",
            f"LogLevel {LOG_LEVELS[settings.debug_level]}",
        ],
    )
    out += _section(
        "Authentication",
        [
            f"LoginGraceTime {settings.login_grace_time}",
            f"PermitRootLogin {settings.permit_root_login}",
            "StrictModes yes",
            f"MaxAuthTries {settings.max_auth_tries}",
            "MaxSessions 10",
        ],
    )
    methods = [
        f"PubkeyAuthentication {yes_no(settings.pubkey_auth)}",
        f"PasswordAuthentication {yes_no(settings.password_auth)}",
        f"KbdInteractiveAuthentication {yes_no(settings.challenge_response_auth)}",
    ]
    # Alpine's openssh is built without PAM and rejects the directive.
    if not layout.is_alpine:
        methods.append(f"UsePAM {yes_no(settings.use_pam)}")
    methods.append(f"PermitEmptyPasswords {yes_no(settings.permit_empty_passwords)}")
    out += _section("Authentication methods", methods)
    if settings.restricts_auth_methods:
        out += _section("Required authentication methods", [f"AuthenticationMethods {settings.auth_methods}"])
    out += _section(
        "Network settings",
        [
            f"UseDNS {yes_no(settings.use_dns)}",
            "TCPKeepAlive yes",
            "ClientAliveInterval 60",
            "ClientAliveCountMax 3",
        ],
    )
    out += _section(
        "Forwarding",
        [
            f"X11Forwarding {yes_no(settings.x11_forwarding)}",
            f"AllowAgentForwarding {yes_no(settings.agent_forwarding)}",
            f"AllowTcpForwarding {yes_no(settings.tcp_forwarding)}",
            "GatewayPorts no",
        ],
    )
    out += _section(
        "Security",
        [
            "IgnoreUserKnownHosts yes",
            "IgnoreRhosts yes",
            "HostbasedAuthentication no",
            "PermitUserEnvironment no",
            "PrintMotd yes",
        ],
    )
    out += _section("Subsystem", [f"Subsystem sftp {layout.sftp_server}"])

    text = "\n".join(out)
    custom = settings.custom_config.strip("\n")
    if custom:
        text += "# Custom configuration\n" + custom + "\n"
    return text


def write_sshd_config(text: str, layout: SystemLayout) -> Path:
    path = layout.sshd_config
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        shutil.copy2(path, path.with_name(path.name + ".orig"))
    path.write_text(text, encoding="utf-8")
    return path


def validate_sshd_config(layout: SystemLayout) -> None:
    path = layout.sshd_config
    result = run_command([layout.sshd_bin, "-t", "-f", str(path)])
    if result.ok:
        return
    logger.error("SSH configuration validation failed")
    for line in result.output.splitlines():
        logger.error("  %s", line)
    logger.error("Configuration:")
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        logger.error("  %s", line)
    raise SshdConfigError(f"sshd rejected {path}")


def configure_sshd(settings: Settings, host_keys: list[HostKey], layout: SystemLayout) -> Path:
    logger.info("Configuring SSH daemon...")
    path = write_sshd_config(render_sshd_config(settings, host_keys, layout), layout)
    validate_sshd_config(layout)
    logger.info("SSH daemon configuration completed")
    if settings.debug_level > 1:
        logger.debug("SSH configuration:")
        for line in path.read_text(encoding="utf-8").splitlines():
            logger.debug("  %s", line)
    return path
