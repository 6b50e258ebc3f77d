"""
Pytest configuration and fixtures for the transplant RNA-seq report tests.
"""

from unittest.mock import MagicMock
import gseapy
import pytest
import pandas as pd
import numpy as np

from data_loader import Cohort
from demo_data import demo_symbol_table, write_demo_dataset


# ============================================================================
# Environment
# ============================================================================


@pytest.fixture(autouse=True)
def isolate_symbol_cache(monkeypatch):
    """Keep a developer's TRANSPLANT_RNASEQ_CACHE out of the tests."""
    monkeypatch.delenv("TRANSPLANT_RNASEQ_CACHE", raising=False)


# ============================================================================
# Cohort Fixtures
# ============================================================================


def _cohort(label, samples, conditions, genes, seed):
    rng = np.random.RandomState(seed)
    counts = pd.DataFrame(
        rng.negative_binomial(n=10, p=0.1, size=(len(genes), len(samples))),
        index=genes,
        columns=samples,
    )
    metadata = pd.DataFrame(
        {
            "geo_accession": [f"GSM{seed}{i}" for i in range(len(samples))],
            "condition": conditions,
        },
        index=pd.Index(samples, name="sample_id"),
    )
    return Cohort(counts=counts, metadata=metadata, label=label)


@pytest.fixture
def toy_genes():
    return [f"GENE{i}" for i in range(1, 21)]


@pytest.fixture
def pre_cohort(toy_genes):
    """Symbol-indexed pre-transplant cohort: 20 genes × 4 samples."""
    return _cohort(
        "Pre",
        ["S1", "S2", "S3", "S4"],
        ["immediate graft function", "immediate graft function",
         "delayed graft function", "delayed graft function"],
        toy_genes,
        seed=1,
    )


@pytest.fixture
def post_cohort(toy_genes):
    """Symbol-indexed post-transplant cohort: 20 genes × 3 samples."""
    return _cohort(
        "Post",
        ["S1", "S2", "S3"],
        ["rejection", "no rejection", "No_Rejection"],
        toy_genes,
        seed=2,
    )


@pytest.fixture
def demo_files(tmp_path):
    """Demo cohorts, gene sets and config written to a temp directory."""
    return write_demo_dataset(str(tmp_path / "demo"))


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def sample_de_results_df():
    """
    Sample differential expression results for testing.
    Contains typical PyDESeq2 output columns plus a few NaN (filtered) genes.
    """
    np.random.seed(42)
    n_genes = 100
    genes = [f"GENE{i + 1}" for i in range(n_genes)]

    df = pd.DataFrame(
        {
            "gene": genes,
            "baseMean": np.random.uniform(10, 1000, n_genes),
            "log2FoldChange": np.random.normal(0, 0.5, n_genes),
            "lfcSE": np.random.uniform(0.1, 0.5, n_genes),
            "stat": np.random.normal(0, 3, n_genes),
            "pvalue": np.random.uniform(0.1, 1, n_genes),
            "padj": np.random.uniform(0.2, 1, n_genes),
        }
    )

    # 10 upregulated, 5 downregulated, 5 significant with a small fold change
    df.loc[0:9, "padj"] = np.random.uniform(0.0001, 0.01, 10)
    df.loc[0:9, "log2FoldChange"] = np.random.uniform(1.5, 3, 10)
    df.loc[10:14, "padj"] = np.random.uniform(0.0001, 0.01, 5)
    df.loc[10:14, "log2FoldChange"] = np.random.uniform(-3, -1.5, 5)
    df.loc[15:19, "padj"] = np.random.uniform(0.0001, 0.01, 5)
    df.loc[15:19, "log2FoldChange"] = np.random.uniform(-0.5, 0.5, 5)
    df.loc[95:99, ["pvalue", "padj"]] = np.nan

    return df


@pytest.fixture
def classified_de_results_df(sample_de_results_df):
    from gene_classifier import classify_results

    return classify_results(sample_de_results_df)


@pytest.fixture
def sample_log_normalized_df():
    """
    Sample log-normalized expression data for testing.
    Shape: (8 samples, 100 genes)
    """
    np.random.seed(42)
    data = np.random.uniform(0, 15, size=(8, 100))
    samples = [f"Pre_S{i}" for i in range(1, 5)] + [f"Post_S{i}" for i in range(1, 5)]
    genes = [f"GENE{i + 1}" for i in range(100)]
    df = pd.DataFrame(data, index=samples, columns=genes)
    df.index.name = "sample_id"
    return df


@pytest.fixture
def sample_metadata_df(sample_log_normalized_df):
    samples = list(sample_log_normalized_df.index)
    return pd.DataFrame(
        {
            "geo_accession": [f"GSM{i}" for i in range(len(samples))],
            "condition": ["Immediate", "Immediate", "Delayed", "Delayed",
                          "Rejection", "Rejection", "No_Rejection", "No_Rejection"],
            "treatment": ["Pre_transplant"] * 4 + ["Post_transplant"] * 4,
        },
        index=pd.Index(samples, name="sample_id"),
    )


@pytest.fixture
def toy_gene_sets():
    """Hallmark-style gene sets over GENE1..GENE100."""
    return {
        "HALLMARK_UP_SET": [f"GENE{i}" for i in range(1, 9)] + ["GENE50", "GENE51"],
        "HALLMARK_DOWN_SET": [f"GENE{i}" for i in range(11, 16)] + ["GENE60"],
        "HALLMARK_BACKGROUND": [f"GENE{i}" for i in range(30, 45)],
        "HALLMARK_TINY": ["GENE1", "GENE2"],
    }


# ============================================================================
# External API Mocking Fixtures
# ============================================================================


@pytest.fixture
def mock_mygene_client():
    """MagicMock mygene.MyGeneInfo whose querymany answers from the demo symbol table."""
    table = demo_symbol_table()

    def querymany(ids, scopes=None, fields=None, species=None, verbose=True):
        hits = []
        for query in ids:
            symbols = table.get(query, [])
            if not symbols:
                hits.append({"query": query, "notfound": True})
            for symbol in symbols:
                hits.append({"query": query, "_id": query, "symbol": symbol})
        return hits

    client = MagicMock()
    client.querymany = MagicMock(side_effect=querymany)
    return client


@pytest.fixture
def mock_gseapy(monkeypatch):
    """Mock gseapy module for enrichment analysis testing."""
    mock_gp = MagicMock()

    mock_gsea_result = MagicMock()
    mock_gsea_result.res2d = pd.DataFrame(
        {
            "Name": ["prerank", "prerank", "prerank"],
            "Term": ["HALLMARK_UP_SET", "HALLMARK_DOWN_SET", "HALLMARK_BACKGROUND"],
            "ES": [0.8, -0.7, 0.2],
            "NES": [2.1, -1.9, 0.6],
            "NOM p-val": [0.001, 0.001, 0.6],
            "FDR q-val": [0.004, 0.004, 0.7],
            "FWER p-val": [0.003, 0.004, 0.9],
            "Tag %": ["8/10", "5/6", "3/15"],
            "Gene %": ["8%", "5%", "20%"],
            "Lead_genes": ["GENE1;GENE2", "GENE11;GENE12", "GENE30"],
        }
    )
    mock_gp.prerank = MagicMock(return_value=mock_gsea_result)
    mock_gp.read_gmt = MagicMock(side_effect=gseapy.read_gmt)

    monkeypatch.setattr("pathway_enrichment.gp", mock_gp)
    return mock_gp
