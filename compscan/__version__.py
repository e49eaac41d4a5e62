"""Version information for compscan."""
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version


def get_version() -> str:
    """Version of the installed package; '0.0.0-dev' when running from a checkout."""
    try:
        return version('compscan')
    except PackageNotFoundError:
        return '0.0.0-dev'


__version__ = get_version()
