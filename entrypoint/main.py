from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Mapping

from common.config import ConfigError, load_yaml, stringify_values
from common.log import setup_logging
from entrypoint.hostkeys import HostKey, HostKeyError, setup_host_keys
from entrypoint.identity import ProvisioningError, ServiceAccount, provision_account
from entrypoint.keyagent import KeyAgentSupervisor
from entrypoint.layout import SystemLayout, detect_layout
from entrypoint.motd import setup_motd
from entrypoint.settings import Settings, load_settings, yes_no
from entrypoint.sshd_config import SshdConfigError, configure_sshd, validate_sshd_config
from entrypoint.supervisor import SshdSupervisor, build_sshd_command

logger = logging.getLogger("entrypoint.main")

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class StartupInterrupted(Exception):
    pass


class ShutdownFlag:
    def __init__(self):
        self.signum: int | None = None

    def __call__(self, signum: int, _frame: Any) -> None:
        self.signum = signum

    @property
    def requested(self) -> bool:
        return self.signum is not None

    def checkpoint(self) -> None:
        if self.signum is not None:
            raise StartupInterrupted(signal.Signals(self.signum).name)


class EntrypointApp:
    def __init__(self, settings: Settings, layout: SystemLayout, stop_flag: ShutdownFlag | None = None):
        self.settings = settings
        self.layout = layout
        self.stop_flag = stop_flag or ShutdownFlag()
        self.account: ServiceAccount | None = None
        self.host_keys: list[HostKey] = []
        self.agent: KeyAgentSupervisor | None = None

    def prepare(self) -> None:
        check = self.stop_flag.checkpoint
        check()
        self.account = provision_account(self.settings, self.layout)
        check()
        self.host_keys = setup_host_keys(self.layout, self.settings.host_keys)
        check()
        try:
            setup_motd(self.settings, self.layout)
        except OSError as exc:
            logger.warning("MOTD setup failed: %s", exc)

        if self.settings.agent_start:
            self._start_agent(self.account)
        else:
            logger.debug("SSH agent startup disabled")
        check()

        configure_sshd(self.settings, self.host_keys, self.layout)
        check()

    def _start_agent(self, account: ServiceAccount) -> None:
        agent = KeyAgentSupervisor(self.layout, self.settings.agent_socket_path)
        self.agent = agent
        try:
            if not agent.start(account, self.settings.agent_keys):
                return
        except OSError as exc:
            # The daemon still starts without an agent.
            logger.error("SSH agent setup failed: %s", exc)
            agent.stop()
            return
        if self.settings.agent_forwarding:
            logger.debug("Setting up SSH agent forwarding environment...")
            try:
                agent.setup_forwarding(account)
            except OSError as exc:
                logger.error("SSH agent forwarding setup failed: %s", exc)

    def print_startup_info(self) -> None:
        s = self.settings
        logger.info("SSH Test Server Starting...")
        logger.info("==========================")
        logger.info("Port: %s", s.port)
        logger.info("User: %s", s.user)
        logger.info("Password Auth: %s", yes_no(s.password_auth))
        logger.info("Pubkey Auth: %s", yes_no(s.pubkey_auth))
        logger.info("Challenge-Response Auth: %s", yes_no(s.challenge_response_auth))
        logger.info("Agent Forwarding: %s", yes_no(s.agent_forwarding))
        logger.info("Debug Level: %s", s.debug_level)
        if s.restricts_auth_methods:
            logger.info("Auth Methods: %s", s.auth_methods)
        if s.authorized_keys:
            logger.info("Authorized Keys: %s keys configured", len(s.authorized_keys))
        if self.agent is not None and self.agent.running:
            logger.info("SSH Agent: Started (socket: %s)", self.agent.socket_path)
            if s.agent_keys:
                logger.info("SSH Agent Keys: %s keys loaded", self.agent.loaded_keys)
        else:
            logger.info("SSH Agent: Disabled")
        logger.info("==========================")

        if self.layout.motd_path.is_file():
            sys.stdout.write("\n" + self.layout.motd_path.read_text(encoding="utf-8") + "\n")
            sys.stdout.flush()

    def supervisor(self) -> SshdSupervisor:
        return SshdSupervisor(
            build_sshd_command(self.settings, self.layout),
            agent=self.agent,
            revalidate=lambda: validate_sshd_config(self.layout),
            stop_requested=lambda: self.stop_flag.requested,
        )

    async def serve(self) -> int:
        logger.debug("SSH debug level %s configured via LogLevel in sshd_config", self.settings.debug_level)
        return await self.supervisor().run()


def _read_defaults(path: str | None) -> dict[str, str]:
    if not path:
        return {}
    return stringify_values(load_yaml(path), where=f"defaults file {path}")


def _install_startup_signal_handlers(flag: ShutdownFlag) -> dict[int, Any]:
    # Covers the window before the supervisor loop owns SIGINT/SIGTERM.
    return {sig: signal.signal(sig, flag) for sig in STOP_SIGNALS}


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def run(environ: Mapping[str, str], layout: SystemLayout, defaults_path: str | None = None) -> int:
    stop_flag = ShutdownFlag()
    previous = _install_startup_signal_handlers(stop_flag)
    try:
        return _run(environ, layout, defaults_path, stop_flag)
    finally:
        _restore_signal_handlers(previous)


def _run(
    environ: Mapping[str, str],
    layout: SystemLayout,
    defaults_path: str | None,
    stop_flag: ShutdownFlag,
) -> int:
    logger.info("SSH Test Server Entrypoint Starting...")
    try:
        settings = load_settings(environ, _read_defaults(defaults_path or environ.get("SSH_DEFAULTS_FILE")))
    except ConfigError as exc:
        logger.error("Fatal configuration error: %s", exc)
        return 1
    if settings.debug_level > 0:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Detected %s layout", "Alpine" if layout.is_alpine else "Debian")

    app = EntrypointApp(settings, layout, stop_flag=stop_flag)
    try:
        app.prepare()
        app.print_startup_info()
        stop_flag.checkpoint()
    except StartupInterrupted as exc:
        logger.info("Received termination signal (%s) during startup, shutting down...", exc)
        if app.agent is not None:
            app.agent.stop()
        return 0
    except (ProvisioningError, HostKeyError, SshdConfigError, OSError) as exc:
        logger.error("Startup failed: %s", exc)
        if app.agent is not None:
            app.agent.stop()
        return 1

    try:
        return asyncio.run(app.serve())
    except (SshdConfigError, OSError) as exc:
        logger.error("SSH daemon failed to start: %s", exc)
        if app.agent is not None:
            app.agent.stop()
        return 1


def main() -> None:
    parser = argparse.ArgumentParser(description="SSH test server container entrypoint")
    parser.add_argument("--defaults", help="yaml file with SSH_* defaults (environment wins)")
    parser.add_argument("--root", help="re-anchor /etc/ssh, /home and MOTD paths under this directory")
    args = parser.parse_args()
    setup_logging("info")
    layout = detect_layout()
    if args.root:
        layout = layout.rooted(Path(args.root))
    sys.exit(run(os.environ, layout, defaults_path=args.defaults))


if __name__ == "__main__":
    main()
