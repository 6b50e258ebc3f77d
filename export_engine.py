"""
Export module for the transplant RNA-seq report.

Writes the per-gene differential results, enrichment tables and mapping
diagnostics as CSV, a multi-sheet Excel workbook with a Settings sheet,
interactive HTML figures and a PDF summary.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import io
import logging
import re
import sys
import pandas as pd
import plotly.graph_objects as go
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table

from de_analysis import DEResult
from gene_classifier import count_classes
from pathway_enrichment import EnrichmentResult

logger = logging.getLogger(__name__)

DE_OUTPUT_COLUMNS = ["gene", "log2FoldChange", "pvalue", "padj", "classification"]


@dataclass
class ExportData:
    """Complete export data bundle, assembled by the pipeline before export."""

    de_result: DEResult
    enrichment: Optional[EnrichmentResult]
    mapping_reports: Dict[str, pd.DataFrame]  # cohort label → dropped identifiers
    figures: Dict[str, go.Figure]  # Keys: "volcano", "heatmap", "pca", "pathways", ...
    settings: Dict[str, Any]  # padj_threshold, lfc_threshold, contrast, ...
    sample_conditions: Dict[str, str]  # sample → condition
    warnings: List[str] = field(default_factory=list)


class ExportEngine:
    """Writes report tables and figures to an output directory."""

    def sanitize_sheet_name(self, name: str, max_length: int = 31) -> str:
        """
        Sanitize sheet name for Excel compatibility.

        Excel sheet name rules:
        - Max 31 characters
        - Cannot contain: [ ] : * ? / \\
        - Cannot start or end with '
        """
        name = re.sub(r"[\[\]:*?/\\]", "_", name)
        name = name.strip("'")
        return name[:max_length]

    def export_tables(self, output_dir: str, export_data: ExportData) -> Dict[str, Path]:
        """
        Write the report tables as CSV.

        Files:
        - differential_results.csv: gene, log2FoldChange, pvalue, padj, classification
        - ora_results.csv / gsea_results.csv (when enrichment ran)
        - mapping_report.csv: identifiers dropped during symbol mapping, per cohort

        Returns:
            Dict mapping table name → written path
        """
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        written = {}

        de_path = out / "differential_results.csv"
        export_data.de_result.results_df[DE_OUTPUT_COLUMNS].to_csv(de_path, index=False)
        written["differential_results"] = de_path

        if export_data.enrichment is not None:
            for name, df in (
                ("ora_results", export_data.enrichment.ora_results),
                ("gsea_results", export_data.enrichment.gsea_results),
            ):
                path = out / f"{name}.csv"
                df.to_csv(path, index=False)
                written[name] = path

        frames = [
            df.assign(cohort=label) for label, df in export_data.mapping_reports.items()
        ]
        mapping = (
            pd.concat(frames, ignore_index=True)
            if frames
            else pd.DataFrame(columns=["gene_id", "reason", "cohort"])
        )
        mapping_path = out / "mapping_report.csv"
        mapping.to_csv(mapping_path, index=False)
        written["mapping_report"] = mapping_path

        logger.info(f"Wrote {len(written)} tables to {out}")
        return written

    def export_excel(self, filepath: str, export_data: ExportData) -> None:
        """
        Export results to a multi-sheet Excel workbook.

        Sheets: DE Results, Significant Genes, ORA, GSEA, Mapping, Settings
        """
        results = export_data.de_result.results_df
        with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
            results.to_excel(writer, sheet_name="DE Results", index=False)
            sig = results[results["classification"].isin(["upregulated", "downregulated"])]
            sig.to_excel(writer, sheet_name="Significant Genes", index=False)

            if export_data.enrichment is not None:
                export_data.enrichment.ora_results.to_excel(writer, sheet_name="ORA", index=False)
                export_data.enrichment.gsea_results.to_excel(writer, sheet_name="GSEA", index=False)

            for label, df in export_data.mapping_reports.items():
                df.to_excel(
                    writer, sheet_name=self.sanitize_sheet_name(f"Mapping_{label}"), index=False
                )

            self._write_settings_sheet(writer, export_data)

    def _write_settings_sheet(self, writer: pd.ExcelWriter, export_data: ExportData) -> None:
        """
        Write Settings sheet with analysis metadata.

        Key-value rows: run date, versions, thresholds and options, class counts,
        enrichment status, sample conditions.
        """
        settings_data = [
            ["Parameter", "Value"],
            ["Analysis Date", datetime.now().strftime("%Y-%m-%d %H:%M:%S")],
            [
                "Python Version",
                f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            ],
        ]

        try:
            import pydeseq2

            settings_data.append(["PyDESeq2 Version", pydeseq2.__version__])
        except (ImportError, AttributeError):
            settings_data.append(["PyDESeq2 Version", "N/A"])

        if export_data.settings:
            settings_data.append(["---", "---"])
            settings_data.append(["Settings", ""])
            for key, value in export_data.settings.items():
                settings_data.append([key, str(value)])

        settings_data.append(["---", "---"])
        settings_data.append(["Gene Classes", ""])
        for cls, n in count_classes(export_data.de_result.results_df).items():
            settings_data.append([cls, str(n)])

        if export_data.enrichment is not None:
            settings_data.append(["---", "---"])
            settings_data.append(["Enrichment Status", ""])
            enrichment = export_data.enrichment
            settings_data.append(["Genes used (ORA)", enrichment.selection_note])
            settings_data.append(["ORA pathways tested", str(len(enrichment.ora_results))])
            settings_data.append([
                "GSEA",
                f"FAILED ({enrichment.error})"
                if enrichment.error
                else f"SUCCESS ({len(enrichment.gsea_results)} pathways)",
            ])

        if export_data.sample_conditions:
            settings_data.append(["---", "---"])
            settings_data.append(["Sample Conditions", ""])
            for sample, condition in sorted(export_data.sample_conditions.items()):
                settings_data.append([sample, condition])

        settings_df = pd.DataFrame(settings_data)
        settings_df.to_excel(writer, sheet_name="Settings", index=False, header=False)

    def export_figures_html(self, output_dir: str, figures: Dict[str, go.Figure]) -> List[Path]:
        """Write each figure as a standalone interactive HTML file."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        paths = []
        for name, fig in figures.items():
            path = out / f"{name}.html"
            fig.write_html(str(path), include_plotlyjs="cdn")
            paths.append(path)
        return paths

    def export_pdf_report(
        self, filepath: str, export_data: ExportData, embed_figures: bool = False
    ) -> None:
        """
        Generate a PDF summary from the ExportData bundle.

        Sections: methods, gene class counts, top DE genes, top ORA and GSEA
        pathways. With embed_figures=True the figures are rendered to PNG in
        memory (requires kaleido) and appended.
        """
        doc = SimpleDocTemplate(filepath, pagesize=letter)
        styles = getSampleStyleSheet()
        story = []

        story.append(Paragraph("Kidney Transplant Biopsy RNA-seq Report", styles["Title"]))
        story.append(Spacer(1, 12))
        story.append(
            Paragraph(
                f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
                styles["Normal"],
            )
        )
        story.append(Spacer(1, 24))

        settings = export_data.settings
        story.append(Paragraph("Methods", styles["Heading1"]))
        story.append(
            Paragraph(
                "Counts were normalised with median-of-ratios size factors and tested with a "
                "negative-binomial Wald test (PyDESeq2) for "
                f"{settings.get('contrast', 'Post_transplant vs Pre_transplant')}. "
                "P-values were adjusted with Benjamini-Hochberg.",
                styles["Normal"],
            )
        )
        story.append(Spacer(1, 6))
        story.append(
            Paragraph(
                f"Thresholds: padj &lt; {settings.get('padj_threshold', 0.05)}, "
                f"|log2FC| &gt;= {settings.get('lfc_threshold', 1.0)}",
                styles["Normal"],
            )
        )
        story.append(Spacer(1, 24))

        results = export_data.de_result.results_df
        story.append(Paragraph("Gene Classes", styles["Heading1"]))
        class_table = [["Class", "Genes"]] + [
            [cls, str(n)] for cls, n in count_classes(results).items()
        ]
        story.append(Table(class_table))
        story.append(Spacer(1, 24))

        story.append(Paragraph("Top Differentially Expressed Genes", styles["Heading1"]))
        top_genes = results.dropna(subset=["padj"]).nsmallest(20, "padj")[
            ["gene", "log2FoldChange", "padj", "classification"]
        ].values.tolist()
        table_data = [["Gene", "log2FC", "padj", "Class"]] + [
            [str(g), f"{fc:.2f}", f"{p:.2e}", c] for g, fc, p, c in top_genes
        ]
        story.append(Table(table_data))
        story.append(Spacer(1, 24))

        enrichment = export_data.enrichment
        if enrichment is not None:
            story.append(Paragraph("Pathway Enrichment", styles["Heading1"]))
            story.append(Paragraph(f"ORA input: {enrichment.selection_note}", styles["Normal"]))
            story.append(Spacer(1, 6))
            if not enrichment.ora_results.empty:
                story.append(Paragraph("Over-representation (Top 10)", styles["Heading2"]))
                ora_top = enrichment.ora_results.head(10)[["pathway", "overlap", "padj"]].values.tolist()
                story.append(Table(
                    [["Pathway", "Overlap", "Adj. P-value"]]
                    + [[name, str(k), f"{p:.2e}"] for name, k, p in ora_top]
                ))
                story.append(Spacer(1, 12))
            if enrichment.error:
                story.append(Paragraph(f"GSEA failed: {enrichment.error}", styles["Normal"]))
            elif not enrichment.gsea_results.empty:
                story.append(Paragraph("GSEA (Top 10)", styles["Heading2"]))
                gsea_top = enrichment.gsea_results.head(10)[["pathway", "nes", "padj"]].values.tolist()
                story.append(Table(
                    [["Pathway", "NES", "FDR"]]
                    + [[name, f"{nes:.2f}", f"{p:.2e}"] for name, nes, p in gsea_top]
                ))
            story.append(Spacer(1, 24))

        if embed_figures:
            for name, fig in export_data.figures.items():
                story.append(Paragraph(name.replace("_", " ").title(), styles["Heading1"]))
                story.append(Spacer(1, 6))
                png_bytes = fig.to_image(format="png", scale=2, width=800, height=600)
                story.append(Image(ImageReader(io.BytesIO(png_bytes)), width=400, height=300))
                story.append(Spacer(1, 24))

        doc.build(story)
