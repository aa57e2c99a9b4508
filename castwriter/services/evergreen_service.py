"""Shared reference content ("evergreen") used by every run.

Evergreen content describes the show rather than an episode: podcast info,
the host's profile and voice guidelines. It lives in a YAML file so it can be
edited without touching the database.
"""

import logging
from pathlib import Path

import yaml

from castwriter.errors import AnalyzerValidationError

logger = logging.getLogger(__name__)

EVERGREEN_SECTIONS = ("podcast_info", "host_profile", "voice_guidelines")


def load_evergreen(path: str | Path) -> dict:
    """Load evergreen content, returning empty sections when the file is absent."""
    path = Path(path)
    content: dict = {section: {} for section in EVERGREEN_SECTIONS}

    if not path.exists():
        logger.debug("No evergreen file at %s, using empty reference content", path)
        return content

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise AnalyzerValidationError(str(path), f"invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise AnalyzerValidationError(str(path), "evergreen file must contain a mapping")

    content.update(data)
    logger.debug(
        "Evergreen loaded from %s (sections: %s)",
        path,
        ", ".join(k for k, v in content.items() if v),
    )
    return content
