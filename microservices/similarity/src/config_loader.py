"""
Configuration loader for the similarity microservice.

Provides a single entry point for reading and validating the YAML config,
with sensible defaults for every section.  Settings that only matter to a
collaborator (``similarity``, ``data_model``, ``spark``) are passed through
to it untouched apart from their defaults.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_PATH = "microservices/similarity/config/similarity_config.yaml"

TARGETS = ("users", "items")


def load_config(
    path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Read ``similarity_config.yaml`` and return the parsed dict.

    Parameters
    ----------
    path : str | None
        Explicit path.  Falls back to *_DEFAULT_CONFIG_PATH*.
    overrides : dict[str, Any] | None
        Top-level keys (e.g. from the command line) that replace the
        file values before defaults are applied.

    Returns
    -------
    dict[str, Any]
        The full configuration dictionary with defaults applied.

    Raises
    ------
    FileNotFoundError
        If the YAML file does not exist.
    yaml.YAMLError
        If the file is not valid YAML.
    ValueError
        If a setting has an unusable value (e.g. an unknown ``target``).
    """
    config_path = path or _DEFAULT_CONFIG_PATH
    p = Path(config_path)

    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(p, "r", encoding="utf-8") as fh:
        cfg = yaml.safe_load(fh) or {}

    cfg.update({k: v for k, v in (overrides or {}).items() if v is not None})

    logger.info("[config] Loaded configuration from %s", config_path)
    return apply_defaults(cfg)


def apply_defaults(cfg: dict[str, Any]) -> dict[str, Any]:
    """Merge user config with sensible defaults and validate it."""
    cfg.setdefault("target", "users")
    if cfg["target"] not in TARGETS:
        raise ValueError(
            f"Invalid target '{cfg['target']}'. Must be one of {TARGETS}."
        )
    cfg.setdefault("target_ids", None)
    cfg.setdefault("candidate_item_ids", None)

    # Scheduling
    cfg.setdefault("num_of_neighbors", 10)
    cfg.setdefault("max_duration", 0)
    cfg.setdefault("grace_period", 5.0)
    cfg.setdefault("num_of_threads", os.cpu_count() or 1)

    for key in ("num_of_neighbors", "num_of_threads"):
        if int(cfg[key]) < 1:
            raise ValueError(f"'{key}' must be >= 1, got {cfg[key]!r}.")
    if float(cfg["max_duration"]) < 0:
        raise ValueError(
            f"'max_duration' must be >= 0, got {cfg['max_duration']!r}."
        )

    # Metric settings, forwarded to the recommender builder
    sim = cfg.setdefault("similarity", {})
    sim.setdefault("name", "tanimoto")

    # Preference snapshot, forwarded to the data model loader
    dm = cfg.setdefault("data_model", {})
    dm.setdefault("format", "parquet")
    dm.setdefault("user_id_field", "user_id")
    dm.setdefault("item_id_field", "item_id")

    # Result writer
    wr = cfg.setdefault("writer", {})
    wr.setdefault("verbose", False)
    wr.setdefault("cache_size", 1000)
    wr.setdefault("max_num_of_writers", 4)
    wr.setdefault("bulk_size", 1)
    wr.setdefault("close_timeout", 30.0)

    for key in ("cache_size", "max_num_of_writers", "bulk_size"):
        if int(wr[key]) < 1:
            raise ValueError(f"'writer.{key}' must be >= 1, got {wr[key]!r}.")
    if float(wr["close_timeout"]) < 0:
        raise ValueError(
            f"'writer.close_timeout' must be >= 0, got {wr['close_timeout']!r}."
        )

    # Sink
    pg = cfg.setdefault("postgres", {})
    pg.setdefault(
        "table",
        "user_similarities" if cfg["target"] == "users" else "item_similarities",
    )

    spark = cfg.setdefault("spark", {})
    spark.setdefault("app_name", "similarity-batch")
    spark.setdefault("config", {})

    return cfg
