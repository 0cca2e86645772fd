from pathlib import Path

import click


def with_config_path(cli_func):
    from anycast_ip_controller.controller.settings import DEFAULT_CONFIG_PATH

    return click.option(
        "-c",
        "--config",
        "--aia-conf-path",
        "config_path",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Controller's yaml config file.",
    )(cli_func)
