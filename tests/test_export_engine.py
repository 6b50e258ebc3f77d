"""Tests for the CSV / Excel / HTML / PDF export."""

import pytest
import pandas as pd
import numpy as np
import plotly.graph_objects as go
from de_analysis import DEResult
from export_engine import DE_OUTPUT_COLUMNS, ExportData, ExportEngine
from pathway_enrichment import EnrichmentResult


@pytest.fixture
def export_data(classified_de_results_df, sample_log_normalized_df):
    de_result = DEResult(
        results_df=classified_de_results_df,
        normalized_counts=2 ** sample_log_normalized_df - 1,
        log_normalized_counts=sample_log_normalized_df,
        size_factors=pd.Series(np.ones(8), index=sample_log_normalized_df.index),
        comparison=("Post_transplant", "Pre_transplant"),
        n_significant=20,
    )
    enrichment = EnrichmentResult(
        ora_results=pd.DataFrame({
            "pathway": ["HALLMARK_UP_SET"], "overlap": [8], "pathway_size": [10],
            "n_selected": [15], "universe_size": [100], "pvalue": [1e-9],
            "padj": [4e-9], "genes": ["GENE1;GENE2"],
        }),
        gsea_results=pd.DataFrame({
            "pathway": ["HALLMARK_UP_SET"], "es": [0.8], "nes": [2.1], "pvalue": [0.001],
            "padj": [0.004], "fwer": [0.003], "lead_genes": ["GENE1;GENE2"],
        }),
        genes_used=["GENE1", "GENE2"],
        selection_note="15 genes (padj<0.05, |log2FC|>1.0)",
    )
    return ExportData(
        de_result=de_result,
        enrichment=enrichment,
        mapping_reports={
            "Pre": pd.DataFrame({"gene_id": ["ENSG9"], "reason": ["unmapped"]}),
            "Post": pd.DataFrame(columns=["gene_id", "reason"]),
        },
        figures={"volcano": go.Figure(go.Scatter(x=[1, 2], y=[3, 4]))},
        settings={"padj_threshold": 0.05, "lfc_threshold": 1.0,
                  "contrast": "Post_transplant vs Pre_transplant"},
        sample_conditions={"Pre_S1": "Immediate", "Post_S1": "Rejection"},
    )


def test_sanitize_sheet_name():
    engine = ExportEngine()
    assert engine.sanitize_sheet_name("a/b:c*d?") == "a_b_c_d_"
    assert len(engine.sanitize_sheet_name("x" * 40)) == 31
    assert engine.sanitize_sheet_name("'quoted'") == "quoted"


def test_export_tables(tmp_path, export_data):
    written = ExportEngine().export_tables(str(tmp_path), export_data)
    assert set(written) == {"differential_results", "ora_results", "gsea_results", "mapping_report"}

    de = pd.read_csv(written["differential_results"])
    assert list(de.columns) == DE_OUTPUT_COLUMNS
    assert len(de) == 100

    mapping = pd.read_csv(written["mapping_report"])
    assert list(mapping.columns) == ["gene_id", "reason", "cohort"]
    assert mapping.iloc[0].tolist() == ["ENSG9", "unmapped", "Pre"]

    gsea = pd.read_csv(written["gsea_results"])
    assert gsea.loc[0, "nes"] == pytest.approx(2.1)


def test_export_tables_without_enrichment(tmp_path, export_data):
    export_data.enrichment = None
    export_data.mapping_reports = {}
    written = ExportEngine().export_tables(str(tmp_path), export_data)
    assert set(written) == {"differential_results", "mapping_report"}
    assert pd.read_csv(written["mapping_report"]).empty


def test_export_excel(tmp_path, export_data):
    path = tmp_path / "report.xlsx"
    ExportEngine().export_excel(str(path), export_data)

    sheets = pd.read_excel(path, sheet_name=None)
    assert set(sheets) == {
        "DE Results", "Significant Genes", "ORA", "GSEA", "Mapping_Pre", "Mapping_Post", "Settings",
    }
    assert len(sheets["Significant Genes"]) == 15

    settings = pd.read_excel(path, sheet_name="Settings", header=None)
    params = dict(zip(settings[0], settings[1]))
    assert str(params["padj_threshold"]) == "0.05"
    assert str(params["upregulated"]) == "10"
    assert params["Pre_S1"] == "Immediate"
    assert str(params["GSEA"]).startswith("SUCCESS")


def test_export_figures_html(tmp_path, export_data):
    paths = ExportEngine().export_figures_html(str(tmp_path / "figs"), export_data.figures)
    assert [p.name for p in paths] == ["volcano.html"]
    assert "plotly" in paths[0].read_text().lower()


def test_export_pdf_report(tmp_path, export_data):
    path = tmp_path / "report.pdf"
    ExportEngine().export_pdf_report(str(path), export_data)
    assert path.read_bytes()[:4] == b"%PDF"


def test_export_pdf_report_records_gsea_failure(tmp_path, export_data):
    export_data.enrichment.errors = ["GSEA failed: boom"]
    export_data.enrichment.gsea_results = export_data.enrichment.gsea_results.iloc[0:0]
    path = tmp_path / "report.pdf"
    ExportEngine().export_pdf_report(str(path), export_data)
    assert path.stat().st_size > 0
