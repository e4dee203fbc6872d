from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_data_dir

APP_NAME = "zerocal"
APP_AUTHOR = "ZeroCalendar"
DATA_DIR = Path(os.getenv("ZEROCAL_DATA_DIR") or user_data_dir(APP_NAME, APP_AUTHOR))
STATE_FILE = DATA_DIR / "state.json"


def ensure_data_dir() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
