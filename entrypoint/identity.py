from __future__ import annotations

import logging
import os
import pwd
from dataclasses import dataclass
from pathlib import Path

from common.process import CommandError, run_command
from entrypoint.layout import SystemLayout
from entrypoint.settings import Settings

logger = logging.getLogger("entrypoint.identity")

# A crypt field no password can hash to. Unlike "!" or an empty field it does
# not mark the account locked, so key-based logins are still accepted.
UNLOCK_SENTINEL = "*"


class ProvisioningError(RuntimeError):
    pass


@dataclass(frozen=True)
class ServiceAccount:
    name: str
    uid: int
    gid: int
    home: Path

    @property
    def ssh_dir(self) -> Path:
        return self.home / ".ssh"

    @classmethod
    def lookup(cls, name: str) -> "ServiceAccount | None":
        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            return None
        return cls(name=name, uid=entry.pw_uid, gid=entry.pw_gid, home=Path(entry.pw_dir))

    def chown(self, path: Path) -> None:
        os.chown(path, self.uid, self.gid)


def _create_command(settings: Settings, layout: SystemLayout) -> list[str]:
    if layout.is_alpine:
        return [
            "adduser",
            "-h",
            str(layout.home_dir(settings.user)),
            "-s",
            layout.login_shell,
            "-D",
            settings.user,
        ]
    return ["useradd", "-m", "-s", layout.login_shell, settings.user]


def _set_credential(settings: Settings, layout: SystemLayout) -> None:
    if settings.has_password:
        run_command(["chpasswd"], input=f"{settings.user}:{settings.password}\n", check=True)
        logger.info("Password set for user '%s'", settings.user)
        return
    if layout.is_alpine:
        run_command(["chpasswd", "-e"], input=f"{settings.user}:{UNLOCK_SENTINEL}\n", check=True)
    else:
        run_command(["usermod", "-p", UNLOCK_SENTINEL, settings.user], check=True)
    logger.warning("No password set for user '%s' - account unlocked for key-only authentication", settings.user)


def install_authorized_keys(account: ServiceAccount, keys: tuple[str, ...]) -> Path:
    path = account.ssh_dir / "authorized_keys"
    path.write_text("".join(f"{key}\n" for key in keys), encoding="utf-8")
    os.chmod(path, 0o600)
    account.chown(path)
    logger.info("Authorized keys added (%s keys)", len(keys))
    return path


def ensure_ssh_dir(account: ServiceAccount) -> Path:
    ssh_dir = account.ssh_dir
    ssh_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(ssh_dir, 0o700)
    account.chown(ssh_dir)
    return ssh_dir


def provision_account(settings: Settings, layout: SystemLayout) -> ServiceAccount:
    logger.info("Creating SSH user '%s'...", settings.user)

    existing = ServiceAccount.lookup(settings.user)
    if existing is not None:
        logger.warning("User '%s' already exists, skipping creation", settings.user)
        return existing

    try:
        run_command(_create_command(settings, layout), check=True)
        _set_credential(settings, layout)
    except CommandError as exc:
        raise ProvisioningError(f"failed to create user '{settings.user}': {exc}") from exc

    account = ServiceAccount.lookup(settings.user)
    if account is None:
        raise ProvisioningError(f"user '{settings.user}' missing after creation")

    try:
        ensure_ssh_dir(account)
        if settings.authorized_keys:
            logger.info("Adding authorized keys for user '%s'", settings.user)
            install_authorized_keys(account, settings.authorized_keys)
    except OSError as exc:
        raise ProvisioningError(f"failed to prepare {account.ssh_dir}: {exc}") from exc

    logger.info("User '%s' created successfully", settings.user)
    return account
