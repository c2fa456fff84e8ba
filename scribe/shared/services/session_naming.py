"""Session history names.

A session name doubles as the file stem of the project's history file,
so it must be filesystem safe and sort chronologically.
"""
from __future__ import annotations

import random
import re
import string
from datetime import datetime, timezone

_NAME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}Z-[a-z0-9]{3}$")


def generate_session_name(now: datetime | None = None) -> str:
    """Return a name like ``2026-10-19T08-15-02Z-k3x``.

    The three character suffix avoids collisions between sessions created
    within the same second.
    """
    now = now or datetime.now(timezone.utc)
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=3))
    return f"{stamp}Z-{suffix}"


def is_session_name(name: str | None) -> bool:
    return bool(name) and _NAME_RE.match(name) is not None
