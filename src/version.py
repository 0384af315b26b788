"""Build and version information."""

import os
import platform
from importlib.metadata import PackageNotFoundError, version
from typing import Dict

DISTRIBUTION = "sops-secret-operator"


def app_version() -> str:
    try:
        return version(DISTRIBUTION)
    except PackageNotFoundError:
        return "dev"


def version_info() -> Dict[str, str]:
    """Version details printed at start-up and by ``sopsctl version``."""
    return {
        "version": app_version(),
        "python_version": platform.python_version(),
        "platform": f"{platform.system().lower()}/{platform.machine()}",
        "git_commit": os.getenv("GIT_COMMIT", "unknown"),
        "build_date": os.getenv("BUILD_DATE", "unknown"),
    }
