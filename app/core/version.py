# app/core/version.py
"""Gateway version from the VERSION file or the installed distribution."""
from functools import lru_cache
from importlib import metadata
from pathlib import Path


VERSION_FILE = Path(__file__).parent.parent.parent / "VERSION"
DISTRIBUTION_NAME = "ntmpi-402-gateway"


@lru_cache()
def get_version() -> str:
    """Resolve the version reported by /health.

    Priority:
    1. VERSION file (for Docker/production)
    2. Installed package metadata
    3. Fallback to 0.0.0-unknown
    """
    if VERSION_FILE.exists():
        version = VERSION_FILE.read_text().strip()
        if version:
            return version

    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return "0.0.0-unknown"


VERSION = get_version()
