"""Version information for gworkspace-credentials."""

from importlib.metadata import PackageNotFoundError, version

DISTRIBUTION_NAME = "gworkspace-credentials"


def _get_version() -> str:
    """Get the installed distribution version, as declared in pyproject.toml."""
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        # Running from a source checkout without an install
        return "0.0.0+unknown"


__version__ = _get_version()
