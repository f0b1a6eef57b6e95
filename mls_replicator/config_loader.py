"""
User configuration loading and startup validation.

Loads the user's Python config module, validates it into a
ReplicatorConfig and checks everything that must fail fast before any run
is scheduled: adapter type tags, index definitions and cron expressions.
"""

import importlib.util
import logging
from pathlib import Path
from typing import Any

from apscheduler.triggers.cron import CronTrigger
from pydantic import ValidationError

from mls_replicator.config import settings
from mls_replicator.destinations import DESTINATION_TYPES
from mls_replicator.errors import ConfigurationError, ReplicatorError
from mls_replicator.platforms import PLATFORM_ADAPTERS
from mls_replicator.sources import USER_CONFIG_VERSION, MlsSource, ReplicatorConfig

logger = logging.getLogger(__name__)

OPERATIONS = ("sync", "purge", "reconcile")


def load_user_config_module(path: str | Path) -> dict[str, Any]:
    """Import the config module at ``path`` and call its get_config()."""
    path = Path(path).resolve()
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    spec = importlib.util.spec_from_file_location("mls_replicator_user_config", path)
    if spec is None or spec.loader is None:
        raise ConfigurationError(f"Cannot import config file: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    get_config = getattr(module, "get_config", None)
    if not callable(get_config):
        raise ConfigurationError(f"{path} does not define get_config()")
    return get_config()


def build_config(raw: dict[str, Any]) -> ReplicatorConfig:
    """Validate a raw config dict into models."""
    try:
        config = ReplicatorConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration:\n{e}") from e

    if config.user_config_version != USER_CONFIG_VERSION:
        raise ConfigurationError(
            f"Config version {config.user_config_version!r} is not supported "
            f"(expected {USER_CONFIG_VERSION!r})"
        )

    names = [source.name for source in config.sources]
    duplicates = {name for name in names if names.count(name) > 1}
    if duplicates:
        raise ConfigurationError(f"Duplicate source names: {', '.join(sorted(duplicates))}")

    return config


def validate_source(source: MlsSource) -> None:
    """
    Check a source for configuration errors.

    Raises:
        ConfigurationError: On the first problem found.
    """
    if source.platform_adapter_name not in PLATFORM_ADAPTERS:
        raise ConfigurationError(
            f"{source.name}: unknown platform adapter '{source.platform_adapter_name}'"
        )

    platform = PLATFORM_ADAPTERS[source.platform_adapter_name]
    if platform.requires_access_token and not source.access_token:
        raise ConfigurationError(
            f"{source.name}: access_token is required for the {platform.name} platform"
        )

    if not source.metadata_endpoint and not source.metadata_path:
        raise ConfigurationError(f"{source.name}: metadata_endpoint or metadata_path is required")

    destination_names = [destination.name for destination in source.destinations]
    if len(set(destination_names)) != len(destination_names):
        raise ConfigurationError(f"{source.name}: destination names must be unique")
    for destination in source.destinations:
        if destination.type not in DESTINATION_TYPES:
            raise ConfigurationError(
                f"{source.name}: unknown destination type '{destination.type}' "
                f"(destination '{destination.name}')"
            )

    for resource in source.all_resources():
        try:
            resource.primary_key
        except ConfigurationError as e:
            raise ConfigurationError(f"{source.name}: {e}") from e

    for resource in source.mls_resources:
        for sub_resource in resource.expand:
            if not sub_resource.field_name:
                raise ConfigurationError(
                    f"{source.name}: expanded resource '{sub_resource.name}' "
                    f"of '{resource.name}' needs a field_name"
                )

    for operation in OPERATIONS:
        schedule = source.cron.for_operation(operation)
        for cron_string in schedule.cron_strings:
            try:
                CronTrigger.from_crontab(cron_string)
            except ValueError as e:
                raise ConfigurationError(
                    f"{source.name}: invalid {operation} cron '{cron_string}': {e}"
                ) from e


def load_config(path: str | Path | None = None) -> tuple[ReplicatorConfig, dict[str, str]]:
    """
    Load and validate the user configuration.

    Returns:
        The config and a mapping of source name -> error message for sources
        that failed validation. Invalid sources must not be scheduled.
    """
    raw = load_user_config_module(path or settings.config_path)
    config = build_config(raw)

    invalid: dict[str, str] = {}
    for source in config.sources:
        try:
            validate_source(source)
        except ReplicatorError as e:
            logger.error("Source %s disabled: %s", source.name, e)
            invalid[source.name] = str(e)
    return config, invalid
