"""Tests for gene-set loading, ORA, GSEA prerank wrapping and result ordering."""

from unittest.mock import MagicMock
import pytest
import pandas as pd
import numpy as np
from scipy.special import comb
from data_loader import MissingFileError
from pathway_enrichment import (
    GSEA_COLUMNS,
    ORA_COLUMNS,
    PathwayEnrichment,
    load_gene_sets,
    sort_enrichment_results,
)


def test_ora_matches_closed_form_hypergeometric():
    universe = [f"G{i}" for i in range(100)]
    pathway = universe[:10]
    selected = universe[:3] + universe[50:52]  # 5 genes, 3 in the pathway

    engine = PathwayEnrichment({"P": pathway}, min_size=5, max_size=500)
    result = engine.run_ora(selected, universe)

    expected = sum(
        comb(10, k) * comb(90, 5 - k) for k in range(3, 6)
    ) / comb(100, 5)
    row = result.iloc[0]
    assert row["overlap"] == 3
    assert row["pathway_size"] == 10
    assert row["n_selected"] == 5
    assert row["universe_size"] == 100
    assert row["pvalue"] == pytest.approx(expected, rel=1e-9)
    assert row["genes"] == "G0;G1;G2"


def test_ora_size_bounds_use_universe_members():
    universe = [f"G{i}" for i in range(50)]
    gene_sets = {
        "IN_BOUNDS": universe[:6],
        "TOO_SMALL": universe[:4],
        "SMALL_AFTER_UNIVERSE": universe[:3] + ["X1", "X2", "X3", "X4"],
        "TOO_BIG": universe[:40],
    }
    engine = PathwayEnrichment(gene_sets, min_size=5, max_size=30)
    result = engine.run_ora(universe[:5], universe)
    assert list(result["pathway"]) == ["IN_BOUNDS"]


def test_ora_bh_correction_and_columns():
    universe = [f"G{i}" for i in range(200)]
    gene_sets = {f"SET{i}": universe[i * 10:(i + 1) * 10] for i in range(5)}
    engine = PathwayEnrichment(gene_sets)
    result = engine.run_ora(universe[:8], universe)
    assert list(result.columns) == ORA_COLUMNS
    assert (result["padj"] >= result["pvalue"]).all()
    assert result.iloc[0]["pathway"] == "SET0"
    assert (result.loc[result["overlap"] == 0, "pvalue"] == 1.0).all()


def test_ora_no_testable_sets():
    engine = PathwayEnrichment({"TINY": ["A"]})
    result = engine.run_ora(["A"], ["A", "B"])
    assert result.empty
    assert list(result.columns) == ORA_COLUMNS


class TestSortEnrichmentResults:
    def test_total_order(self):
        df = pd.DataFrame({
            "pathway": ["B", "A", "C", "D", "E"],
            "nes": [1.0, 1.0, 2.0, -1.5, 0.5],
            "pvalue": [0.01, 0.01, 0.01, 0.001, 0.5],
        })
        result = sort_enrichment_results(df)
        assert list(result["pathway"]) == ["D", "C", "A", "B", "E"]

    def test_without_nes_breaks_ties_by_name(self):
        df = pd.DataFrame({"pathway": ["Z", "M", "A"], "pvalue": [0.2, 0.1, 0.2]})
        assert list(sort_enrichment_results(df)["pathway"]) == ["M", "A", "Z"]

    def test_order_independent_of_input_order(self):
        rng = np.random.RandomState(0)
        df = pd.DataFrame({
            "pathway": [f"P{i}" for i in range(30)],
            "nes": rng.choice([-1.0, 0.5, 1.0], 30),
            "pvalue": rng.choice([0.01, 0.05, 0.2], 30),
        })
        a = sort_enrichment_results(df)
        b = sort_enrichment_results(df.sample(frac=1, random_state=3))
        assert list(a["pathway"]) == list(b["pathway"])

    def test_empty(self):
        assert sort_enrichment_results(pd.DataFrame(columns=GSEA_COLUMNS)).empty


def test_select_genes_for_enrichment(sample_de_results_df):
    engine = PathwayEnrichment({})
    selected = engine.select_genes_for_enrichment(sample_de_results_df)
    assert len(selected) == 15
    assert set(selected) == {f"GENE{i}" for i in range(1, 16)}


def test_rank_genes_stable_for_ties():
    df = pd.DataFrame({
        "gene": ["A", "B", "C", "D", "E"],
        "log2FoldChange": [1.0, 2.0, 1.0, np.nan, -1.0],
    })
    ranking = PathwayEnrichment.rank_genes(df)
    assert list(ranking.index) == ["B", "A", "C", "E"]


def test_run_gsea_renames_and_sorts(mock_gseapy, toy_gene_sets):
    engine = PathwayEnrichment(toy_gene_sets, permutations=100, seed=7)
    ranking = pd.Series([3.0, 1.0, -2.0], index=["GENE1", "GENE2", "GENE11"])
    result = engine.run_gsea(ranking)

    assert list(result.columns) == GSEA_COLUMNS
    assert list(result["pathway"]) == ["HALLMARK_UP_SET", "HALLMARK_DOWN_SET", "HALLMARK_BACKGROUND"]
    kwargs = mock_gseapy.prerank.call_args.kwargs
    assert kwargs["permutation_num"] == 100
    assert kwargs["seed"] == 7
    assert kwargs["min_size"] == 5
    assert kwargs["max_size"] == 500


def test_run_combines_both_analyses(mock_gseapy, sample_de_results_df, toy_gene_sets):
    result = PathwayEnrichment(toy_gene_sets).run(sample_de_results_df)
    assert result.error is None
    assert len(result.genes_used) == 15
    assert "15 genes" in result.selection_note
    assert result.ora_results.iloc[0]["pathway"] == "HALLMARK_UP_SET"
    assert "HALLMARK_TINY" not in set(result.ora_results["pathway"])
    assert len(result.gsea_results) == 3


def test_gsea_failure_recorded_not_raised(monkeypatch, sample_de_results_df, toy_gene_sets):
    mock_gp = MagicMock()
    mock_gp.prerank.side_effect = ValueError("No gene sets passed through filtering")
    monkeypatch.setattr("pathway_enrichment.gp", mock_gp)

    result = PathwayEnrichment(toy_gene_sets).run(sample_de_results_df)
    assert "No gene sets passed" in result.error
    assert result.gsea_results.empty
    assert not result.ora_results.empty


class TestLoadGeneSets:
    def test_local_gmt(self, tmp_path):
        gmt = tmp_path / "sets.gmt"
        gmt.write_text("HALLMARK_A\tdesc\tG1\tG2\tG3\nHALLMARK_B\tdesc\tG4\tG5\n")
        gene_sets = load_gene_sets(gmt_path=str(gmt))
        assert gene_sets["HALLMARK_A"] == ["G1", "G2", "G3"]
        assert set(gene_sets) == {"HALLMARK_A", "HALLMARK_B"}

    def test_missing_gmt(self, tmp_path):
        with pytest.raises(MissingFileError):
            load_gene_sets(gmt_path=str(tmp_path / "absent.gmt"))

    def test_msigdb_download_cached(self, monkeypatch, tmp_path):
        mock_gp = MagicMock()
        mock_gp.Msigdb.return_value.get_gmt.return_value = {"HALLMARK_X": ["A", "B"]}
        mock_gp.read_gmt.return_value = {"HALLMARK_X": ["A", "B"]}
        monkeypatch.setattr("pathway_enrichment.gp", mock_gp)

        first = load_gene_sets(collection="h.all", dbver="2023.2.Hs", cache_dir=str(tmp_path))
        assert first == {"HALLMARK_X": ["A", "B"]}
        cached = tmp_path / "msigdb_h.all.v2023.2.Hs.gmt"
        assert cached.read_text() == "HALLMARK_X\tNA\tA\tB\n"

        load_gene_sets(collection="h.all", dbver="2023.2.Hs", cache_dir=str(tmp_path))
        assert mock_gp.Msigdb.return_value.get_gmt.call_count == 1
        mock_gp.read_gmt.assert_called_once_with(str(cached))

    def test_empty_download_rejected(self, monkeypatch):
        mock_gp = MagicMock()
        mock_gp.Msigdb.return_value.get_gmt.return_value = None
        monkeypatch.setattr("pathway_enrichment.gp", mock_gp)
        with pytest.raises(ValueError, match="no gene sets"):
            load_gene_sets()
