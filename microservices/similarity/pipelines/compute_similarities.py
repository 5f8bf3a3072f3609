"""
Similar-entities batch - Pipeline Orchestrator.

Materialises the top-N neighbourhood of every user (or item):
  1. Config            → YAML + defaults
  2. Data model        → preference snapshot read with Spark
  3. Sink + writer     → PostgreSQL table ensured, buffered/deduplicating writer
  4. Compute           → recommender built, worker pool run within the budget

Steps 2 and 3 and the recommender build are fatal: any failure aborts the
run before a single worker starts.  Failures on individual IDs or writes are
logged and skipped.

Usage
-----
    spark-submit \\
        microservices/similarity/pipelines/compute_similarities.py \\
        --config microservices/similarity/config/similarity_config.yaml \\
        [--target users | items]
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

_project_root = str(Path(__file__).resolve().parents[3])
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from microservices.similarity.src.config_loader import TARGETS, load_config
from microservices.similarity.src.logging_config import configure_logging
from microservices.similarity.src.recommender import (
    ItemBasedRecommenderBuilder,
    RecommenderBuilder,
    UserBasedRecommenderBuilder,
)
from microservices.similarity.src.scheduler import RunSummary, compute
from microservices.similarity.src.schemas import FieldNames
from microservices.similarity.src.sink import PostgresSimilaritySink, SimilaritySink
from microservices.similarity.src.spark_loader import load_data_model
from microservices.similarity.src.spark_session import get_spark_session
from microservices.similarity.src.writer import ResultWriter

logger = logging.getLogger(__name__)


def build_recommender_builder(cfg: dict) -> RecommenderBuilder:
    """Pick the user- or item-based builder for ``cfg['target']``."""
    if cfg["target"] == "items":
        return ItemBasedRecommenderBuilder(
            cfg["similarity"],
            candidate_item_ids=cfg.get("candidate_item_ids"),
        )
    return UserBasedRecommenderBuilder(cfg["similarity"])


def create_writer(cfg: dict, sink: SimilaritySink) -> ResultWriter:
    """Prepare the sink schema and wrap the sink in a :class:`ResultWriter`.

    The sink is closed again if schema setup or the writer itself fails.
    """
    wr_cfg = cfg["writer"]
    try:
        sink.ensure_schema()
        return ResultWriter(
            sink,
            verbose=bool(wr_cfg["verbose"]),
            cache_size=int(wr_cfg["cache_size"]),
            max_num_of_writers=int(wr_cfg["max_num_of_writers"]),
            bulk_size=int(wr_cfg["bulk_size"]),
            close_timeout=float(wr_cfg["close_timeout"]),
        )
    except Exception:
        sink.close()
        raise


def create_sink(cfg: dict) -> SimilaritySink:
    return PostgresSimilaritySink(
        table=cfg["postgres"]["table"],
        fields=FieldNames.for_target(cfg["target"]),
        max_connections=int(cfg["writer"]["max_num_of_writers"]),
    )


def main(config_path: str | None = None, target: str | None = None) -> RunSummary:
    """Execute one full similar-entities run.

    Parameters
    ----------
    config_path : str | None
        Path to ``similarity_config.yaml``.
    target : str | None
        Overrides ``target`` from the config file.

    Returns
    -------
    RunSummary
        Processed/skipped counts, whether the budget ran out, writer stats.
    """
    configure_logging()
    cfg = load_config(config_path, overrides={"target": target})
    logger.info("=== Similar %s batch - START ===", cfg["target"])

    spark = get_spark_session(
        app_name=cfg["spark"]["app_name"],
        master=cfg["spark"].get("master"),
        extra_config=cfg["spark"].get("config"),
    )
    try:
        data_model = load_data_model(spark, cfg["data_model"])
    except Exception:
        logger.exception("[pipeline] Could not build the data model. Aborting.")
        raise
    finally:
        spark.stop()

    try:
        writer = create_writer(cfg, create_sink(cfg))
    except Exception:
        logger.exception("[pipeline] Could not prepare the result sink. Aborting.")
        raise

    try:
        summary = compute(
            cfg.get("target_ids"),
            data_model,
            build_recommender_builder(cfg),
            writer,
            target=cfg["target"],
            num_of_neighbors=int(cfg["num_of_neighbors"]),
            num_of_threads=int(cfg["num_of_threads"]),
            max_duration=float(cfg["max_duration"]),
            grace_period=float(cfg["grace_period"]),
        )
    except Exception:
        logger.exception("[pipeline] Similar %s batch FAILED.", cfg["target"])
        raise

    logger.info(
        "=== Similar %s batch - DONE (processed=%d, skipped=%d, timed_out=%s, complete=%s) ===",
        cfg["target"], summary.processed, summary.skipped, summary.timed_out, summary.complete,
    )
    return summary


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Similar users/items batch.")
    parser.add_argument(
        "--config",
        type=str,
        default=os.environ.get(
            "SIMILARITY_CONFIG",
            "microservices/similarity/config/similarity_config.yaml",
        ),
        help="Path to similarity_config.yaml.",
    )
    parser.add_argument(
        "--target",
        type=str,
        choices=list(TARGETS),
        default=None,
        help="Entities to compute neighbourhoods for (default from config).",
    )
    return parser.parse_args()


def cli() -> None:
    args = _parse_args()
    main(config_path=args.config, target=args.target)


if __name__ == "__main__":
    cli()
