from __future__ import annotations

import argparse
import os
from pathlib import Path

from common.crypto import (
    b64e,
    derive_public_key,
    generate_private_key,
    private_key_to_openssh,
    public_key_fingerprint,
)

DEFAULT_TYPES = ("ed25519", "ecdsa", "rsa")


def generate_keys(key_types: tuple[str, ...] = DEFAULT_TYPES) -> list[tuple[str, bytes]]:
    out = []
    for key_type in key_types:
        raw = private_key_to_openssh(generate_private_key(key_type))
        out.append((key_type, raw))
    return out


def format_env_lines(keys: list[tuple[str, bytes]], agent: bool = False) -> str:
    if agent:
        return "\n".join(b64e(raw) for _, raw in keys)
    return "\n".join(f"{key_type}:{b64e(raw)}" for key_type, raw in keys)


def write_key_files(keys: list[tuple[str, bytes]], output_dir: str, agent: bool = False) -> list[Path]:
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    written = []
    for key_type, raw in keys:
        name = f"id_{key_type}" if agent else f"ssh_host_{key_type}_key"
        priv_path = out / name
        pub_path = out / f"{name}.pub"
        fd = os.open(priv_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(raw)
        pub_path.write_text(derive_public_key(raw), encoding="ascii")
        written.append(priv_path)
    return written


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate OpenSSH keys as SSH_HOST_KEYS / SSH_AGENT_KEYS values")
    parser.add_argument("--type", action="append", choices=DEFAULT_TYPES, help="key type (repeatable)")
    parser.add_argument("--agent", action="store_true", help="emit SSH_AGENT_KEYS lines instead of host keys")
    parser.add_argument("--output", help="also write key files to this directory")
    args = parser.parse_args()
    keys = generate_keys(tuple(args.type or DEFAULT_TYPES))
    if args.output:
        for path in write_key_files(keys, args.output, agent=args.agent):
            public_line = path.with_name(path.name + ".pub").read_text(encoding="ascii")
            print(f"# {path.name} fingerprint: {public_key_fingerprint(public_line)}")
    print(format_env_lines(keys, agent=args.agent))


if __name__ == "__main__":
    main()
