"""
Tests for the Spark preference loader.

Spark objects are mocked; the tests check the column handling, the
data-model contents and that every failure surfaces as DataModelError.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from microservices.similarity.src.data_model import DataModelError
from microservices.similarity.src.spark_loader import load_data_model, select_preference_pairs

_MODULE = "microservices.similarity.src.spark_loader"


def _mock_spark(rows, columns=("user_id", "item_id")):
    """SparkSession whose reader returns a DataFrame yielding *rows*."""
    df = MagicMock()
    df.columns = list(columns)
    pairs = df.select.return_value.dropna.return_value.distinct.return_value
    pairs.toLocalIterator.return_value = iter(rows)

    spark = MagicMock()
    spark.read.format.return_value.load.return_value = df
    return spark, df


class TestSelectPreferencePairs:

    def test_missing_column_raises(self):
        df = MagicMock()
        df.columns = ["user_id", "rating"]
        with pytest.raises(DataModelError, match="item_id"):
            select_preference_pairs(df, "user_id", "item_id")

    def test_projects_and_deduplicates(self):
        df = MagicMock()
        df.columns = ["uid", "iid", "rating"]
        with patch(f"{_MODULE}.col") as mock_col:
            result = select_preference_pairs(df, "uid", "iid")

        assert [c.args[0] for c in mock_col.call_args_list] == ["uid", "iid"]
        df.select.return_value.dropna.return_value.distinct.assert_called_once()
        assert result is df.select.return_value.dropna.return_value.distinct.return_value


class TestLoadDataModel:

    def test_builds_model_from_rows(self):
        rows = [
            {"user_id": 1, "item_id": 10},
            {"user_id": 1, "item_id": 11},
            {"user_id": 2, "item_id": 10},
        ]
        spark, _ = _mock_spark(rows)

        with patch(f"{_MODULE}.col"):
            model = load_data_model(spark, {"path": "/data/prefs", "format": "parquet"})

        spark.read.format.assert_called_once_with("parquet")
        spark.read.format.return_value.load.assert_called_once_with("/data/prefs")
        assert model.item_ids_from_user(1) == {10, 11}
        assert model.num_users_with_preference_for(10) == 2

    def test_missing_path_is_fatal(self):
        with pytest.raises(DataModelError, match="path"):
            load_data_model(MagicMock(), {})

    def test_read_failure_is_wrapped(self):
        spark = MagicMock()
        spark.read.format.return_value.load.side_effect = RuntimeError("Path does not exist")

        with pytest.raises(DataModelError, match="Path does not exist"):
            load_data_model(spark, {"path": "/missing"})

    def test_missing_column_is_fatal(self):
        spark, _ = _mock_spark([], columns=("customer", "item_id"))
        with pytest.raises(DataModelError, match="user_id"):
            load_data_model(spark, {"path": "/data/prefs"})
