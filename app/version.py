"""
Build and version metadata.

The version comes from the installed distribution (pyproject.toml); source
checkouts that were never installed report the fallback.
"""

import os
import subprocess
import sys
from datetime import datetime, timezone
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Dict, Optional

DISTRIBUTION_NAME = "storefront-ops-backend"
_FALLBACK_VERSION = "0.1.0"

try:
    VERSION = version(DISTRIBUTION_NAME)
except PackageNotFoundError:
    VERSION = _FALLBACK_VERSION


def _git(*args: str) -> Optional[str]:
    try:
        output = subprocess.check_output(["git", *args], stderr=subprocess.DEVNULL, text=True, timeout=5)
    except (OSError, subprocess.SubprocessError):
        return None
    return output.strip() or None


@lru_cache(maxsize=1)
def get_git_info() -> Dict[str, Optional[str]]:
    """
    Commit and branch of the running build.

    GIT_COMMIT / GIT_BRANCH (set at deploy time) win over the local checkout.
    """
    commit = os.environ.get("GIT_COMMIT")
    if commit:
        return {"commit": commit[:8], "branch": os.environ.get("GIT_BRANCH"), "source": "env"}

    commit = _git("rev-parse", "--short", "HEAD")
    if not commit:
        return {"commit": None, "branch": None, "source": None}
    return {"commit": commit, "branch": _git("rev-parse", "--abbrev-ref", "HEAD"), "source": "git"}


def version_info() -> Dict[str, Any]:
    """Version block served by /info."""
    git = get_git_info()
    return {
        "version": VERSION,
        "python_version": ".".join(str(part) for part in sys.version_info[:3]),
        "git_commit": git["commit"],
        "git_branch": git["branch"],
        "build_date": os.environ.get("BUILD_DATE") or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
