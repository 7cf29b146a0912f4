from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from typing import Any

import yaml

from prometheus_config_controller.src import key
from prometheus_config_controller.src.errors import ControllerError, ErrorKind
from prometheus_config_controller.src.scrapeconfig import ScrapeConfig

SCRAPE_CONFIGS_FIELD = "scrape_configs"


def is_managed(scrape_config: Mapping[str, Any]) -> bool:
    """Return True if the job belongs to this controller (``guest-cluster-`` prefix)."""
    job_name = scrape_config.get("job_name")
    return isinstance(job_name, str) and job_name.startswith(key.JOB_NAME_PREFIX)


def load_prometheus_config(text: str) -> dict[str, Any]:
    """Parse a Prometheus YAML document into a plain mapping.

    An empty document yields an empty mapping. Anything that is not valid YAML
    or not a mapping at the top level fails with ``invalidConfig``.
    """
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ControllerError(
            ErrorKind.INVALID_CONFIG, f"prometheus config is not valid YAML: {exc}"
        ) from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ControllerError(
            ErrorKind.INVALID_CONFIG,
            f"prometheus config must be a mapping, got {type(loaded).__name__}",
        )
    scrape_configs = loaded.get(SCRAPE_CONFIGS_FIELD)
    if scrape_configs is not None and not isinstance(scrape_configs, list):
        raise ControllerError(
            ErrorKind.INVALID_CONFIG,
            f"{SCRAPE_CONFIGS_FIELD} must be a list, got {type(scrape_configs).__name__}",
        )
    return loaded


def dump_prometheus_config(config: Mapping[str, Any]) -> str:
    return yaml.safe_dump(dict(config), default_flow_style=False, sort_keys=False)


def update_config(
    config: Mapping[str, Any], scrape_configs: Iterable[ScrapeConfig]
) -> dict[str, Any]:
    """Replace every managed scrape job in *config* with *scrape_configs*.

    Unmanaged jobs keep their relative order and come first; the generated jobs
    follow in the order given. Every other top-level field is carried over
    untouched. *config* itself is not modified.
    """
    updated = copy.deepcopy(dict(config))
    existing = updated.get(SCRAPE_CONFIGS_FIELD) or []
    unmanaged = [
        entry for entry in existing if not (isinstance(entry, Mapping) and is_managed(entry))
    ]
    merged = unmanaged + [sc.to_dict() for sc in scrape_configs]
    if merged or updated.get(SCRAPE_CONFIGS_FIELD) is not None:
        updated[SCRAPE_CONFIGS_FIELD] = merged
    return updated
