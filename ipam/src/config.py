from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ipam.src.policy import DEFAULT_RESOURCE_NAME


class ConfigError(RuntimeError):
    """Raised when the IPAM configuration is invalid."""


@dataclass(frozen=True)
class IPAMConfig:
    """Immutable reconciler configuration loaded at startup.

    Attributes:
        resource_name:          Extended resource a pod requests to get a floating IP.
        second_resource_name:   Extended resource requesting a second IP, if enabled.
        resync_interval_seconds: Seconds between reconciliation passes.
        cloud_provider_url:     Base URL of the cloud provider API; unassign calls
                                are skipped when empty.
        cloud_provider_timeout_seconds: Per-request timeout for the cloud provider.
        floatingip_store_name:  Name (``ipType`` label) of the primary store.
        second_ip_store_name:   Name of the secondary store.
    """

    resource_name: str = DEFAULT_RESOURCE_NAME
    second_resource_name: str = ""
    resync_interval_seconds: int = 60
    cloud_provider_url: str = ""
    cloud_provider_timeout_seconds: float = 10.0
    floatingip_store_name: str = "floatingip"
    second_ip_store_name: str = "secondip"

    @property
    def second_ip_enabled(self) -> bool:
        return bool(self.second_resource_name)


# env var -> (config file key, config field)
_FIELDS: tuple[tuple[str, str, str], ...] = (
    ("RESOURCE_NAME", "resourceName", "resource_name"),
    ("SECOND_RESOURCE_NAME", "secondResourceName", "second_resource_name"),
    ("RESYNC_INTERVAL_SECONDS", "resyncIntervalSeconds", "resync_interval_seconds"),
    ("CLOUD_PROVIDER_URL", "cloudProviderURL", "cloud_provider_url"),
    (
        "CLOUD_PROVIDER_TIMEOUT_SECONDS",
        "cloudProviderTimeoutSeconds",
        "cloud_provider_timeout_seconds",
    ),
    ("FLOATINGIP_STORE_NAME", "floatingIPStoreName", "floatingip_store_name"),
    ("SECOND_IP_STORE_NAME", "secondIPStoreName", "second_ip_store_name"),
)


def _load_config_file(path: str) -> dict[str, Any]:
    try:
        payload = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"cannot read IPAM config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"IPAM config file {path} is not valid YAML: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"IPAM config file {path} must contain a mapping")
    return payload


def _coerce(field_name: str, raw: Any, source: str) -> Any:
    default = getattr(IPAMConfig, field_name)
    if isinstance(default, int):
        try:
            value = int(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{source} must be an integer, got: {raw!r}") from exc
        if value < 1:
            raise ConfigError(f"{source} must be >= 1, got: {value}")
        return value
    if isinstance(default, float):
        try:
            value = float(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{source} must be a number, got: {raw!r}") from exc
        if value <= 0:
            raise ConfigError(f"{source} must be > 0, got: {value}")
        return value
    return str(raw).strip()


def load_config(env: Mapping[str, str] | None = None) -> IPAMConfig:
    """Load reconciler config.

    Resolution order, later entries winning:
    1. Field defaults of :class:`IPAMConfig`.
    2. YAML (or JSON) mapping in the file named by ``IPAM_CONFIG_PATH`` (camelCase keys);
       keys with an empty (null) value are treated as unset.
    3. Environment variables.
    """
    values = env if env is not None else os.environ

    file_values: dict[str, Any] = {}
    config_path = values.get("IPAM_CONFIG_PATH")
    if config_path:
        file_values = _load_config_file(config_path)

    kwargs: dict[str, Any] = {}
    for env_name, file_key, field_name in _FIELDS:
        if env_name in values:
            kwargs[field_name] = _coerce(field_name, values[env_name], env_name)
        elif file_values.get(file_key) is not None:
            kwargs[field_name] = _coerce(field_name, file_values[file_key], file_key)

    config = IPAMConfig(**kwargs)
    if not config.resource_name:
        raise ConfigError("RESOURCE_NAME must be a non-empty string")
    if config.second_resource_name and config.second_resource_name == config.resource_name:
        raise ConfigError("SECOND_RESOURCE_NAME must differ from RESOURCE_NAME")
    if config.floatingip_store_name == config.second_ip_store_name:
        raise ConfigError("FLOATINGIP_STORE_NAME and SECOND_IP_STORE_NAME must differ")
    return config
