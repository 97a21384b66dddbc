"""Runtime settings for the wwk agent and CLI."""

from __future__ import annotations

import getpass
import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from wwk.models import EditClient
from wwk.state import CLOCK_CHANGE_THRESHOLD_S

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "wwk" / "wwk.db"

# The tracker's own UI must never be attributed as work.
DEFAULT_EXCLUDED_BUNDLE_IDS = frozenset({"com.wwk.agent", "com.wwk.ui"})

AGENT_VERSION = "0.1.0"


def _current_username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _current_uid() -> int:
    return os.getuid() if hasattr(os, "getuid") else 0


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    db_path: Path = DEFAULT_DB_PATH
    clock_change_threshold_s: int = Field(default=CLOCK_CHANGE_THRESHOLD_S, gt=0)
    excluded_bundle_ids: frozenset[str] = DEFAULT_EXCLUDED_BUNDLE_IDS
    author_username: str = Field(default_factory=_current_username)
    author_uid: int = Field(default_factory=_current_uid)
    client: EditClient = EditClient.CLI
    client_version: str = AGENT_VERSION


def load_settings(environ: Mapping[str, str] | None = None, **overrides: object) -> Settings:
    """Build settings from defaults, environment variables and explicit overrides.

    Recognized variables: ``WWK_DB`` (database path) and
    ``WWK_CLOCK_THRESHOLD_S`` (clock drift threshold in seconds). Explicit
    keyword overrides win over the environment.

    Raises:
        ValueError: If an environment value is invalid.
    """
    if environ is None:
        environ = os.environ

    values: dict[str, object] = {}
    if environ.get("WWK_DB"):
        values["db_path"] = Path(environ["WWK_DB"]).expanduser()
    if environ.get("WWK_CLOCK_THRESHOLD_S"):
        values["clock_change_threshold_s"] = environ["WWK_CLOCK_THRESHOLD_S"]
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        settings = Settings(**values)
    except ValidationError as e:
        raise ValueError(f"Invalid settings: {e}") from e
    logger.debug("Loaded settings: db_path=%s", settings.db_path)
    return settings
