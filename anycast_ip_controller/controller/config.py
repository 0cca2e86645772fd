import logging
import os
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import ValidationError

from anycast_ip_controller.controller import settings
from anycast_ip_controller.controller.models import ConfigData
from anycast_ip_controller.exceptions import ConfigError

logger = logging.getLogger(__name__)

CREDENTIAL_ENV_OVERRIDES = {
    "clusterId": (settings.ENV_CLUSTER_ID, settings.AIA_ENV_CLUSTER_ID),
    "appId": (settings.ENV_APP_ID, settings.AIA_ENV_APP_ID),
    "secretId": (settings.ENV_SECRET_ID, settings.AIA_ENV_SECRET_ID),
    "secretKey": (settings.ENV_SECRET_KEY, settings.AIA_ENV_SECRET_KEY),
}


def load_config(path: Path, environ: Optional[Mapping[str, str]] = None) -> ConfigData:
    """Read the yaml config file, apply credential environment overrides and validate it."""

    if environ is None:
        environ = os.environ

    try:
        with open(path) as f:
            raw_config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Can't read config file `{path}`: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigError(f"Config file `{path}` must contain a mapping")

    return parse_config(raw_config, environ)


def parse_config(raw_config: dict, environ: Mapping[str, str]) -> ConfigData:
    credential = dict(raw_config.get("credential") or {})
    for key, env_names in CREDENTIAL_ENV_OVERRIDES.items():
        env_name = next((name for name in env_names if environ.get(name)), None)
        if env_name is None:
            continue

        logger.debug("Overriding `credential.%s` with `%s` environment variable", key, env_name)

        # drops `clusterID` style spellings of the key too
        for existing_key in list(credential):
            if str(existing_key).replace("_", "").lower() == key.lower():
                del credential[existing_key]

        credential[key] = environ[env_name]

    raw_config = {**raw_config, "credential": credential}

    try:
        return ConfigData.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid config: {e}") from e
