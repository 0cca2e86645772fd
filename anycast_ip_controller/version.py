from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as distribution_version
from pathlib import Path

import click

PACKAGE_NAME = "anycast-ip-controller"


def get_version() -> str:
    """Return the version of the package."""
    pyproject_path = Path(__file__).parents[1] / "pyproject.toml"
    if pyproject_path.exists():
        import tomllib

        with open(pyproject_path, "rb") as f:
            pyproject = tomllib.load(f)

        return pyproject["project"]["version"]

    try:
        return distribution_version(PACKAGE_NAME)
    except PackageNotFoundError:
        return "unknown"


@click.command(
    short_help=f"Show `{PACKAGE_NAME}` version.",
)
def version():
    print(f"{PACKAGE_NAME} {get_version()}")
