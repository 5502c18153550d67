from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from common.crypto import HOST_KEY_TYPES, KeyMaterialError, b64d, derive_public_key
from common.process import run_command
from entrypoint.layout import SystemLayout

logger = logging.getLogger("entrypoint.hostkeys")

GENERATED_TYPES = ("rsa", "ecdsa", "ed25519")


class HostKeyError(RuntimeError):
    pass


@dataclass(frozen=True)
class HostKey:
    key_type: str
    path: Path

    @property
    def public_path(self) -> Path:
        return self.path.with_name(self.path.name + ".pub")


def _parse_entry(line: str) -> tuple[str, bytes]:
    key_type, sep, data = line.partition(":")
    key_type = key_type.strip().lower()
    if not sep or not key_type or not data.strip():
        raise KeyMaterialError("expected TYPE:BASE64")
    if key_type not in HOST_KEY_TYPES:
        raise KeyMaterialError(f"unknown host key type '{key_type}'")
    return key_type, b64d(data)


def install_host_key(layout: SystemLayout, key_type: str, raw: bytes) -> HostKey:
    public_line = derive_public_key(raw)
    key = HostKey(key_type, layout.host_key_path(key_type))
    key.path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(key.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(raw)
    os.chmod(key.path, 0o600)
    key.public_path.write_text(public_line, encoding="ascii")
    os.chmod(key.public_path, 0o644)
    return key


def install_supplied_keys(layout: SystemLayout, entries: tuple[str, ...]) -> list[HostKey]:
    logger.info("Installing provided host keys...")
    installed: list[HostKey] = []
    for index, line in enumerate(entries, start=1):
        try:
            key_type, raw = _parse_entry(line)
            installed.append(install_host_key(layout, key_type, raw))
        except (KeyMaterialError, OSError) as exc:
            logger.error("Skipping host key entry %s: %s", index, exc)
            continue
        logger.debug("Installed %s host key", key_type)
    logger.info("Host keys installation completed (%s of %s installed)", len(installed), len(entries))
    return installed


def generate_host_keys(layout: SystemLayout) -> None:
    logger.info("Generating new host keys...")
    layout.ssh_dir.mkdir(parents=True, exist_ok=True)
    for key_type in GENERATED_TYPES:
        path = layout.host_key_path(key_type)
        if path.exists():
            continue
        result = run_command([layout.ssh_keygen_bin, "-q", "-t", key_type, "-N", "", "-f", str(path)])
        if not result.ok:
            logger.error("ssh-keygen failed for %s host key: %s", key_type, result.output.strip())
    logger.info("Host keys generation completed")


def list_host_keys(layout: SystemLayout) -> list[HostKey]:
    keys = []
    for path in sorted(layout.ssh_dir.glob("ssh_host_*_key")):
        if not path.is_file():
            continue
        key_type = path.name[len("ssh_host_") : -len("_key")]
        keys.append(HostKey(key_type, path))
    return keys


def setup_host_keys(layout: SystemLayout, supplied: tuple[str, ...]) -> list[HostKey]:
    logger.info("Setting up SSH host keys...")
    if supplied:
        if not install_supplied_keys(layout, supplied):
            logger.warning("None of the supplied host keys could be installed, generating fresh ones")
            generate_host_keys(layout)
    else:
        generate_host_keys(layout)

    keys = [k for k in list_host_keys(layout) if k.public_path.exists()]
    if not keys:
        raise HostKeyError(f"no usable host key pair in {layout.ssh_dir}")
    for key in keys:
        logger.debug("  host key %s: %s", key.key_type, key.path)
    return keys
