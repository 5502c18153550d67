from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping

from common.config import ConfigError

logger = logging.getLogger("entrypoint.settings")

AUTH_METHODS_ANY = "any"
DEFAULT_AGENT_SOCKET = "/tmp/ssh-agent.sock"
ROOT_LOGIN_VALUES = ("yes", "no", "prohibit-password", "without-password", "forced-commands-only")

_TRUE = {"yes", "true", "on", "1"}
_FALSE = {"no", "false", "off", "0"}
_DIGITS = re.compile(r"[0-9]+")

DEFAULTS: dict[str, str] = {
    "SSH_USER": "testuser",
    "SSH_PASSWORD": "",
    "SSH_PORT": "22",
    "SSH_DEBUG_LEVEL": "0",
    "SSH_PERMIT_PASSWORD_AUTH": "yes",
    "SSH_PERMIT_PUBKEY_AUTH": "yes",
    "SSH_CHALLENGE_RESPONSE_AUTH": "no",
    "SSH_AUTHORIZED_KEYS": "",
    "SSH_AUTH_METHODS": AUTH_METHODS_ANY,
    "SSH_PERMIT_ROOT_LOGIN": "no",
    "SSH_PERMIT_EMPTY_PASSWORDS": "no",
    "SSH_MAX_AUTH_TRIES": "6",
    "SSH_LOGIN_GRACE_TIME": "120",
    "SSH_USE_DNS": "no",
    "SSH_X11_FORWARDING": "no",
    "SSH_AGENT_FORWARDING": "yes",
    "SSH_TCP_FORWARDING": "yes",
    "SSH_HOST_KEYS": "",
    "SSH_CUSTOM_CONFIG": "",
    "SSH_USE_PAM": "yes",
    "SSH_AGENT_START": "no",
    "SSH_AGENT_SOCKET_PATH": DEFAULT_AGENT_SOCKET,
    "SSH_AGENT_KEYS": "",
}


@dataclass(frozen=True)
class Settings:
    user: str
    password: str = ""
    port: int = 22
    debug_level: int = 0
    max_auth_tries: int = 6
    login_grace_time: int = 120
    password_auth: bool = True
    pubkey_auth: bool = True
    challenge_response_auth: bool = False
    use_pam: bool = True
    permit_root_login: str = "no"
    permit_empty_passwords: bool = False
    use_dns: bool = False
    x11_forwarding: bool = False
    agent_forwarding: bool = True
    tcp_forwarding: bool = True
    auth_methods: str = AUTH_METHODS_ANY
    authorized_keys: tuple[str, ...] = ()
    host_keys: tuple[str, ...] = ()
    custom_config: str = ""
    agent_start: bool = False
    agent_socket_path: str = DEFAULT_AGENT_SOCKET
    agent_keys: tuple[str, ...] = ()

    @property
    def has_password(self) -> bool:
        return bool(self.password)

    @property
    def restricts_auth_methods(self) -> bool:
        return self.auth_methods != AUTH_METHODS_ANY

    def template_vars(self) -> dict[str, str]:
        return {
            "SSH_PORT": str(self.port),
            "SSH_USER": self.user,
            "SSH_DEBUG_LEVEL": str(self.debug_level),
            "SSH_PERMIT_PASSWORD_AUTH": yes_no(self.password_auth),
            "SSH_PERMIT_PUBKEY_AUTH": yes_no(self.pubkey_auth),
            "SSH_CHALLENGE_RESPONSE_AUTH": yes_no(self.challenge_response_auth),
        }


def yes_no(value: bool) -> str:
    return "yes" if value else "no"


def _lines(raw: str) -> tuple[str, ...]:
    return tuple(line.strip() for line in raw.splitlines() if line.strip())


def _int_field(env: Mapping[str, str], name: str, lo: int, hi: int | None) -> int:
    raw = env[name].strip()
    default = int(DEFAULTS[name])
    if not _DIGITS.fullmatch(raw):
        logger.warning("Invalid %s '%s', using default %s", name, raw, default)
        return default
    value = int(raw)
    if value < lo or (hi is not None and value > hi):
        logger.warning("Invalid %s '%s', using default %s", name, raw, default)
        return default
    return value


def _bool_field(env: Mapping[str, str], name: str) -> bool:
    raw = env[name].strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    default = DEFAULTS[name]
    logger.warning("Invalid %s '%s', using default %s", name, env[name], default)
    return default in _TRUE


def _root_login(env: Mapping[str, str]) -> str:
    raw = env["SSH_PERMIT_ROOT_LOGIN"].strip().lower()
    if raw in _TRUE:
        return "yes"
    if raw in _FALSE:
        return "no"
    if raw in ROOT_LOGIN_VALUES:
        return raw
    logger.warning("Invalid SSH_PERMIT_ROOT_LOGIN '%s', using default no", env["SSH_PERMIT_ROOT_LOGIN"])
    return "no"


def load_settings(
    environ: Mapping[str, str],
    defaults: Mapping[str, str] | None = None,
) -> Settings:
    env: dict[str, str] = dict(DEFAULTS)
    if defaults:
        env.update({k: v for k, v in defaults.items() if k in DEFAULTS})
    env.update({k: v for k, v in environ.items() if k in DEFAULTS})

    logger.info("Validating environment variables...")

    port = _int_field(env, "SSH_PORT", 1, 65535)
    debug_level = _int_field(env, "SSH_DEBUG_LEVEL", 0, 3)
    max_auth_tries = _int_field(env, "SSH_MAX_AUTH_TRIES", 1, None)
    login_grace_time = _int_field(env, "SSH_LOGIN_GRACE_TIME", 0, None)

    user = env["SSH_USER"].strip()
    if not user:
        raise ConfigError("SSH_USER cannot be empty")

    password_auth = _bool_field(env, "SSH_PERMIT_PASSWORD_AUTH")
    pubkey_auth = _bool_field(env, "SSH_PERMIT_PUBKEY_AUTH")
    challenge_response_auth = _bool_field(env, "SSH_CHALLENGE_RESPONSE_AUTH")
    authorized_keys = _lines(env["SSH_AUTHORIZED_KEYS"])
    if not (password_auth or pubkey_auth or challenge_response_auth or authorized_keys):
        raise ConfigError("No authentication method enabled and no authorized keys provided")

    password = env["SSH_PASSWORD"]
    # chpasswd reads user:password lines; a line break would address another account.
    if "\n" in password or "\r" in password:
        raise ConfigError("SSH_PASSWORD must not contain line breaks")

    auth_methods = env["SSH_AUTH_METHODS"].strip() or AUTH_METHODS_ANY

    settings = Settings(
        user=user,
        password=password,
        port=port,
        debug_level=debug_level,
        max_auth_tries=max_auth_tries,
        login_grace_time=login_grace_time,
        password_auth=password_auth,
        pubkey_auth=pubkey_auth,
        challenge_response_auth=challenge_response_auth,
        use_pam=_bool_field(env, "SSH_USE_PAM"),
        permit_root_login=_root_login(env),
        permit_empty_passwords=_bool_field(env, "SSH_PERMIT_EMPTY_PASSWORDS"),
        use_dns=_bool_field(env, "SSH_USE_DNS"),
        x11_forwarding=_bool_field(env, "SSH_X11_FORWARDING"),
        agent_forwarding=_bool_field(env, "SSH_AGENT_FORWARDING"),
        tcp_forwarding=_bool_field(env, "SSH_TCP_FORWARDING"),
        auth_methods=auth_methods,
        authorized_keys=authorized_keys,
        host_keys=_lines(env["SSH_HOST_KEYS"]),
        custom_config=env["SSH_CUSTOM_CONFIG"],
        agent_start=_bool_field(env, "SSH_AGENT_START"),
        agent_socket_path=env["SSH_AGENT_SOCKET_PATH"].strip() or DEFAULT_AGENT_SOCKET,
        agent_keys=_lines(env["SSH_AGENT_KEYS"]),
    )
    logger.info("Environment validation completed")
    return settings
