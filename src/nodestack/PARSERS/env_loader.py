"""
Environment-sourced settings: the default sync tip, the working directory,
the log level and the integration test toggle.
"""
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

TRUTHY = {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class EnvironmentSettings:
    """
    Values read from the process environment and an optional .env file.
    """
    block_tip: Optional[str] = None
    working_dir: Optional[str] = None
    log_level: Optional[str] = None
    integration_tests: bool = False


def _merged(env_file: Optional[str], environ: Optional[Mapping[str, str]]) -> Dict[str, str]:
    merged: Dict[str, str] = {}
    # Process environment wins over the file.
    if env_file and os.path.isfile(env_file):
        merged.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    merged.update(os.environ if environ is None else environ)
    return merged


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


def load_environment(
    env_file: Optional[str] = ".env",
    environ: Optional[Mapping[str, str]] = None,
) -> EnvironmentSettings:
    """
    Loads settings from the environment.

    :param env_file: Optional .env file merged underneath the environment.
    :param environ: Environment mapping to read instead of os.environ.
    :return: The settings; values are not validated here.
    """
    env = _merged(env_file, environ)
    return EnvironmentSettings(
        block_tip=_blank_to_none(env.get("RETH_TIP")),
        working_dir=_blank_to_none(env.get("NODESTACK_WORKDIR")),
        log_level=_blank_to_none(env.get("NODESTACK_LOG_LEVEL")),
        integration_tests=env.get("NODESTACK_INTEGRATION_TESTS", "").strip().lower() in TRUTHY,
    )
