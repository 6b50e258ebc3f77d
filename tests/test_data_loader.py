"""Tests for count matrix and GEO sample table loading."""

import pytest
import pandas as pd
import numpy as np
from data_loader import (
    MissingFileError,
    SchemaMismatchError,
    align_metadata,
    extract_characteristics,
    load_cohort,
    load_count_matrix,
    load_sample_metadata,
    normalize_field_name,
)


def _write_counts(tmp_path, df, name="counts.csv.gz"):
    path = tmp_path / name
    df.to_csv(path, compression="gzip")
    return path


def _write_samples(tmp_path, df, name="samples.tsv"):
    path = tmp_path / name
    df.to_csv(path, sep="\t", index=False)
    return path


@pytest.fixture
def counts_df():
    return pd.DataFrame(
        {"S1": [10, 0, 5], "S2": [20, 3, 7], "S3": [15, 1, 0]},
        index=["ENSG01", "ENSG02", "ENSG03"],
    )


@pytest.fixture
def samples_df():
    return pd.DataFrame({
        "title": ["S3", "S1", "S2"],
        "geo_accession": ["GSM3", "GSM1", "GSM2"],
        "characteristics_ch1": ["tissue: kidney"] * 3,
        "characteristics_ch1.1": [
            "graft function: delayed graft function",
            "graft function: immediate graft function",
            "graft function: immediate graft function",
        ],
    })


class TestLoadCountMatrix:
    def test_loads_gzip_csv(self, tmp_path, counts_df):
        result = load_count_matrix(_write_counts(tmp_path, counts_df))
        assert result.shape == (3, 3)
        assert list(result.columns) == ["S1", "S2", "S3"]
        assert result.loc["ENSG01", "S2"] == 20
        assert all(pd.api.types.is_integer_dtype(result[c]) for c in result.columns)

    def test_missing_file(self, tmp_path):
        with pytest.raises(MissingFileError):
            load_count_matrix(tmp_path / "nope.csv.gz")

    def test_missing_file_is_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_count_matrix(tmp_path / "nope.csv.gz")

    def test_negative_counts_rejected(self, tmp_path, counts_df):
        counts_df.loc["ENSG02", "S1"] = -1
        with pytest.raises(SchemaMismatchError, match="negative"):
            load_count_matrix(_write_counts(tmp_path, counts_df))

    def test_non_integer_counts_rejected(self, tmp_path, counts_df):
        counts_df = counts_df.astype(float)
        counts_df.loc["ENSG02", "S1"] = 2.5
        with pytest.raises(SchemaMismatchError, match="integer"):
            load_count_matrix(_write_counts(tmp_path, counts_df))

    def test_integer_like_floats_accepted(self, tmp_path, counts_df):
        result = load_count_matrix(_write_counts(tmp_path, counts_df.astype(float)))
        assert result.loc["ENSG03", "S2"] == 7

    def test_duplicate_gene_ids_rejected(self, tmp_path, counts_df):
        counts_df.index = ["ENSG01", "ENSG01", "ENSG03"]
        with pytest.raises(SchemaMismatchError, match="duplicate gene ids"):
            load_count_matrix(_write_counts(tmp_path, counts_df))

    def test_missing_values_filled_with_zero(self, tmp_path, counts_df):
        counts_df = counts_df.astype(float)
        counts_df.loc["ENSG01", "S3"] = np.nan
        result = load_count_matrix(_write_counts(tmp_path, counts_df))
        assert result.loc["ENSG01", "S3"] == 0

    def test_non_numeric_columns_dropped(self, tmp_path, counts_df):
        counts_df.insert(0, "Description", ["a", "b", "c"])
        result = load_count_matrix(_write_counts(tmp_path, counts_df))
        assert "Description" not in result.columns
        assert result.shape == (3, 3)


class TestCharacteristics:
    def test_normalize_field_name(self):
        assert normalize_field_name("Graft Function") == "graft_function"
        assert normalize_field_name(" rejection-status ") == "rejection_status"

    def test_key_value_columns_split_by_name(self, samples_df):
        result = extract_characteristics(samples_df)
        assert set(result.columns) == {"tissue", "graft_function"}
        assert result.loc[0, "graft_function"] == "delayed graft function"

    def test_key_order_does_not_matter(self, samples_df):
        swapped = samples_df.rename(columns={
            "characteristics_ch1": "characteristics_ch1.1",
            "characteristics_ch1.1": "characteristics_ch1",
        })
        result = extract_characteristics(swapped)
        assert result.loc[1, "graft_function"] == "immediate graft function"

    def test_pre_split_columns(self):
        df = pd.DataFrame({"title": ["A"], "rejection status:ch1": ["rejection"]})
        result = extract_characteristics(df)
        assert result.loc[0, "rejection_status"] == "rejection"


class TestLoadSampleMetadata:
    def test_indexed_by_sample_id(self, tmp_path, samples_df):
        result = load_sample_metadata(
            _write_samples(tmp_path, samples_df), required_fields=["graft function"]
        )
        assert list(result.index) == ["S3", "S1", "S2"]
        assert result.loc["S1", "geo_accession"] == "GSM1"
        assert result.columns[0] == "geo_accession"

    def test_missing_required_field(self, tmp_path, samples_df):
        with pytest.raises(SchemaMismatchError, match="required characteristic"):
            load_sample_metadata(
                _write_samples(tmp_path, samples_df), required_fields=["rejection status"]
            )

    def test_missing_sample_id_column(self, tmp_path, samples_df):
        with pytest.raises(SchemaMismatchError, match="sample id column"):
            load_sample_metadata(
                _write_samples(tmp_path, samples_df),
                required_fields=["graft function"],
                sample_id_column="description",
            )

    def test_missing_file(self, tmp_path):
        with pytest.raises(MissingFileError):
            load_sample_metadata(tmp_path / "absent.tsv", required_fields=[])


class TestAlignMetadata:
    def test_reorders_to_count_columns(self, counts_df):
        meta = pd.DataFrame({"condition": ["c", "a", "b"]}, index=["S3", "S1", "S2"])
        result = align_metadata(counts_df, meta)
        assert list(result.index) == ["S1", "S2", "S3"]
        assert list(result["condition"]) == ["a", "b", "c"]

    def test_row_count_mismatch(self, counts_df):
        meta = pd.DataFrame({"condition": ["a", "b"]}, index=["S1", "S2"])
        with pytest.raises(SchemaMismatchError, match="2 samples"):
            align_metadata(counts_df, meta)

    def test_key_mismatch(self, counts_df):
        meta = pd.DataFrame({"condition": ["a", "b", "c"]}, index=["S1", "S2", "S9"])
        with pytest.raises(SchemaMismatchError) as exc_info:
            align_metadata(counts_df, meta)
        assert exc_info.value.details["only_in_counts"] == ["S3"]
        assert exc_info.value.details["only_in_metadata"] == ["S9"]


class TestLoadCohort:
    def test_condition_field_renamed(self, tmp_path, counts_df, samples_df):
        cohort = load_cohort(
            _write_counts(tmp_path, counts_df),
            _write_samples(tmp_path, samples_df),
            label="Pre",
            condition_field="graft function",
        )
        assert cohort.label == "Pre"
        assert list(cohort.metadata.index) == list(cohort.counts.columns)
        assert cohort.metadata.loc["S3", "condition"] == "delayed graft function"
        assert "graft_function" not in cohort.metadata.columns

    def test_demo_files_load(self, demo_files):
        cohort = load_cohort(
            demo_files["post_counts"], demo_files["post_samples"],
            label="Post", condition_field="rejection status",
        )
        assert cohort.counts.shape[1] == 6
        assert set(cohort.metadata["condition"]) == {"rejection", "no rejection"}
