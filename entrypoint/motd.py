from __future__ import annotations

import logging
from pathlib import Path
from string import Template

from entrypoint.layout import SystemLayout
from entrypoint.settings import Settings

logger = logging.getLogger("entrypoint.motd")


def render_motd(template: str, settings: Settings) -> str:
    return Template(template).safe_substitute(settings.template_vars())


def setup_motd(settings: Settings, layout: SystemLayout) -> Path | None:
    logger.info("Setting up MOTD...")
    if not layout.motd_template.is_file():
        logger.warning("MOTD file not found at %s", layout.motd_template)
        return None
    text = render_motd(layout.motd_template.read_text(encoding="utf-8"), settings)
    layout.motd_path.parent.mkdir(parents=True, exist_ok=True)
    layout.motd_path.write_text(text, encoding="utf-8")
    logger.info("MOTD configured")
    return layout.motd_path
