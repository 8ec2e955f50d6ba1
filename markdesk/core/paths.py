from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from markdesk.config import PROJECT_ROOT, STATE_DIR_ENV, STATE_DIR_NAME

logger = logging.getLogger(__name__)


def get_app_state_dir(app_folder_name: str = STATE_DIR_NAME) -> Path:
    """Return a writable directory for storing engine state (store, logs).

    Preference order:
    1) $MARKDESK_STATE_DIR if set
    2) <PROJECT_ROOT>/.markdesk_state if writable (good for dev / tests)
    3) OS user data dir (~/.local/share/markdesk, %APPDATA%\\markdesk, etc)
    """
    override = os.environ.get(STATE_DIR_ENV)
    if override:
        path = Path(override).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    proj_dir = PROJECT_ROOT / app_folder_name
    try:
        proj_dir.mkdir(parents=True, exist_ok=True)
        test_file = proj_dir / ".write_test"
        test_file.write_text("ok", encoding="utf-8")
        test_file.unlink(missing_ok=True)
        return proj_dir
    except OSError:
        logger.debug("Project dir is not writable; falling back to user data dir", exc_info=True)

    if sys.platform.startswith("win"):
        base = Path(os.environ.get("APPDATA") or Path.home() / "AppData" / "Roaming")
        return (base / "markdesk").resolve()
    if sys.platform == "darwin":
        return (Path.home() / "Library" / "Application Support" / "markdesk").resolve()
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else (Path.home() / ".local" / "share")
    return (base / "markdesk").resolve()
