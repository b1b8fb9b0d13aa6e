from __future__ import annotations

import os
from pathlib import Path


def sanitize_ssl_keylogfile() -> bool:
    """Drop SSLKEYLOGFILE from the environment when httpx could not write it.

    A stale TLS key-log path (common on developer machines) makes SSL context
    creation fail inside every outbound client. Returns True when the
    variable was removed.
    """
    keylog_path = os.getenv("SSLKEYLOGFILE", "").strip()
    if not keylog_path:
        return False

    path = Path(keylog_path)
    try:
        if not path.parent.exists():
            raise FileNotFoundError(path.parent)
        # Append mode so an existing log is never truncated.
        with open(path, "a", encoding="utf-8"):
            pass
    except OSError:
        os.environ.pop("SSLKEYLOGFILE", None)
        return True
    return False
