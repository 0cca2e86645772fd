import click

from anycast_ip_controller.controller.main import main as run
from anycast_ip_controller.version import get_version, version


@click.group()
@click.version_option(get_version(), "--version", "-V")
def cli():
    pass


cli.add_command(run)
cli.add_command(version)


def main():
    cli()


if __name__ == "__main__":
    main()
