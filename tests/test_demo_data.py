"""Tests for demo dataset module."""
import pytest
import pandas as pd
import yaml
from demo_data import (
    DEMO_GENE_SETS,
    DUPLICATE_SYMBOL_ID,
    MULTI_SYMBOL_ID,
    UNMAPPED_ID,
    UPREGULATED_GENES,
    DemoLookup,
    demo_gene_symbols,
    demo_symbol_table,
    get_demo_description,
    load_demo_cohorts,
    write_demo_dataset,
)


def test_load_demo_cohorts_shapes():
    pre_counts, pre_table, post_counts, post_table = load_demo_cohorts()
    assert pre_counts.shape == (len(demo_gene_symbols()) + 3, 6)
    assert post_counts.shape == pre_counts.shape
    assert len(pre_table) == 6
    assert len(post_table) == 6


def test_load_demo_cohorts_same_genes():
    pre_counts, _, post_counts, _ = load_demo_cohorts()
    assert list(pre_counts.index) == list(post_counts.index)
    assert f"{UNMAPPED_ID}.1" in pre_counts.index


def test_load_demo_cohorts_integer_counts():
    pre_counts, _, post_counts, _ = load_demo_cohorts()
    for df in (pre_counts, post_counts):
        assert all(pd.api.types.is_integer_dtype(df[col]) for col in df.columns)
        assert (df >= 0).all().all()


def test_load_demo_cohorts_reproducible():
    a = load_demo_cohorts(seed=3)[0]
    b = load_demo_cohorts(seed=3)[0]
    assert a.equals(b)


def test_sample_tables_match_counts():
    pre_counts, pre_table, post_counts, post_table = load_demo_cohorts()
    assert list(pre_table["title"]) == list(pre_counts.columns)
    assert list(post_table["title"]) == list(post_counts.columns)
    assert post_table["characteristics_ch1.1"].str.startswith("rejection status: ").all()


def test_upregulated_genes_higher_after_transplant():
    pre_counts, _, post_counts, _ = load_demo_cohorts()
    symbols = demo_gene_symbols()
    ids = [i for i, s in zip(pre_counts.index, symbols) if s in UPREGULATED_GENES]
    assert (post_counts.loc[ids].mean(axis=1) > pre_counts.loc[ids].mean(axis=1)).mean() > 0.8


def test_demo_symbol_table_edge_cases():
    table = demo_symbol_table()
    assert table["ENSG00000000001"] == ["CXCL9"]
    assert table[UNMAPPED_ID] == []
    assert len(table[MULTI_SYMBOL_ID]) == 2
    assert table[DUPLICATE_SYMBOL_ID] == ["GAPDH"]


def test_demo_lookup_records_queries():
    lookup = DemoLookup({"ENSG1": ["A"]})
    batches = list(lookup.query_batches(["ENSG1", "ENSG2"]))
    assert batches == [{"ENSG1": ["A"], "ENSG2": []}]
    assert lookup.queried == ["ENSG1", "ENSG2"]


def test_write_demo_dataset(tmp_path):
    paths = write_demo_dataset(str(tmp_path))
    assert all(p.exists() for p in paths.values())

    with open(paths["config"]) as f:
        config = yaml.safe_load(f)
    assert config["cohorts"]["pre"]["condition_field"] == "graft function"
    assert config["enrichment"]["gmt_path"] == str(paths["gene_sets"])

    lines = paths["gene_sets"].read_text().splitlines()
    assert len(lines) == len(DEMO_GENE_SETS)
    assert lines[0].split("\t")[0] in DEMO_GENE_SETS


@pytest.mark.parametrize("keyword", ["graft function", "rejection"])
def test_get_demo_description(keyword):
    desc = get_demo_description()
    assert isinstance(desc, str)
    assert keyword in desc.lower()
