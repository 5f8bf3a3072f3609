"""
Preference snapshot loader.

Reads the raw preference dataset (one row per user/item preference) with
PySpark, keeps only the two ID columns, and streams the distinct pairs to
the driver to build an :class:`InMemoryDataModel`.

Expected ``data_model`` config section::

    data_model:
      path: hdfs://namenode:9000/data/curated/preferences
      format: parquet
      user_id_field: user_id
      item_id_field: item_id
"""

from __future__ import annotations

import logging
from typing import Any

from pyspark.sql import DataFrame, SparkSession
from pyspark.sql.functions import col

from microservices.similarity.src.data_model import DataModelError, InMemoryDataModel
from microservices.similarity.src.retry import retry

logger = logging.getLogger(__name__)


@retry(max_retries=3, backoff_sec=2.0, backoff_factor=2.0)
def _read_source(spark: SparkSession, path: str, fmt: str) -> DataFrame:
    """Read the snapshot with retry on transient HDFS failures."""
    return spark.read.format(fmt).load(path)


def select_preference_pairs(
    df: DataFrame,
    user_id_field: str,
    item_id_field: str,
) -> DataFrame:
    """Project, clean and de-duplicate the ``(user_id, item_id)`` pairs.

    Raises
    ------
    DataModelError
        If either ID column is missing from *df*.
    """
    missing = [c for c in (user_id_field, item_id_field) if c not in df.columns]
    if missing:
        raise DataModelError(
            f"[data_model] Preference source is missing column(s) {missing}; "
            f"available: {df.columns}"
        )

    return (
        df.select(
            col(user_id_field).cast("long").alias("user_id"),
            col(item_id_field).cast("long").alias("item_id"),
        )
        .dropna()
        .distinct()
    )


def load_data_model(spark: SparkSession, dm_cfg: dict[str, Any]) -> InMemoryDataModel:
    """Build the run's data model from the ``data_model`` config section.

    Parameters
    ----------
    spark : SparkSession
        Active session used for reading.
    dm_cfg : dict
        The ``data_model`` config section (``path`` is required).

    Returns
    -------
    InMemoryDataModel
        Immutable snapshot of the preference data.

    Raises
    ------
    DataModelError
        If the section is incomplete or the source cannot be read.
    """
    path = dm_cfg.get("path")
    if not path:
        raise DataModelError("[data_model] 'data_model.path' is not configured.")

    fmt = dm_cfg.get("format", "parquet")
    try:
        raw = _read_source(spark, path, fmt)
        pairs = select_preference_pairs(
            raw,
            dm_cfg.get("user_id_field", "user_id"),
            dm_cfg.get("item_id_field", "item_id"),
        )
        model = InMemoryDataModel.from_pairs(
            (row["user_id"], row["item_id"]) for row in pairs.toLocalIterator()
        )
    except DataModelError:
        raise
    except Exception as exc:
        logger.error("[data_model] FAILED to load preferences from %s: %s", path, exc)
        raise DataModelError(
            f"[data_model] Cannot load preferences from '{path}': {exc}"
        ) from exc

    logger.info("[data_model] Loaded %r from %s (%s).", model, path, fmt)
    return model
