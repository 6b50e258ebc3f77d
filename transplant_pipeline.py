"""
Kidney transplant biopsy RNA-seq report: pipeline orchestrator.

Loads both cohorts, maps identifiers to symbols, merges, runs the DESeq2
contrast Post_transplant vs Pre_transplant, classifies genes, runs hallmark
enrichment and writes tables, figures and the PDF/Excel report.

Usage:
    python transplant_pipeline.py [config/analysis.yaml]
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional
import logging
import sys
import pandas as pd
import plotly.graph_objects as go
import requests

from analysis_config import AnalysisConfig, load_config
from cohort_merger import MergedDataset, merge_cohorts
from data_loader import Cohort, load_cohort
from de_analysis import DEAnalysisEngine, DEResult
from export_engine import ExportData, ExportEngine
from gene_mapper import GeneMapper, MappingReport, MyGeneLookup, map_cohort_matrices
from pathway_enrichment import (
    GSEA_COLUMNS,
    ORA_COLUMNS,
    EnrichmentResult,
    PathwayEnrichment,
    load_gene_sets,
)
from qc_plots import (
    create_count_distribution_histogram,
    create_library_size_histogram,
    create_sample_distance_heatmap,
)
from visualizations import (
    compute_de_summary,
    create_clustered_heatmap,
    create_pathway_barplot,
    create_pca_plot,
    create_upset_plot,
    create_volcano_plot,
    pathway_gene_sets_for_upset,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything one report run produced."""

    merged: MergedDataset
    de_result: DEResult
    enrichment: EnrichmentResult
    mapping_reports: Dict[str, MappingReport]
    figures: Dict[str, go.Figure] = field(default_factory=dict)
    outputs: List[Path] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class TransplantPipeline:
    """
    Main pipeline orchestrator.

    Collaborators can be injected (an offline GeneMapper, a pre-built
    DEAnalysisEngine, an in-memory gene-set library); otherwise they are
    built from the config.
    """

    def __init__(
        self,
        config: AnalysisConfig,
        gene_mapper: Optional[GeneMapper] = None,
        de_engine: Optional[DEAnalysisEngine] = None,
        gene_sets: Optional[Dict[str, List[str]]] = None,
    ):
        self.config = config
        self.gene_mapper = gene_mapper or self._default_mapper(config)
        self.de_engine = de_engine or DEAnalysisEngine(
            n_cpus=config.deseq.n_cpus,
            refit_cooks=config.deseq.refit_cooks,
            cache_dir=config.cache_dir,
        )
        self.gene_sets = gene_sets
        self.output_dir = Path(config.output_dir)

    @staticmethod
    def _default_mapper(config: AnalysisConfig) -> GeneMapper:
        mapping = config.mapping
        lookup = MyGeneLookup(
            species=mapping.species,
            scopes=mapping.scopes,
            batch_size=mapping.batch_size,
            max_retries=mapping.max_retries,
            retry_backoff=mapping.retry_backoff,
        )
        return GeneMapper(
            lookup=lookup,
            cache_dir=config.cache_dir,
            species=mapping.species,
            multi_symbol_policy=mapping.multi_symbol_policy,
        )

    def load_cohorts(self) -> Dict[str, Cohort]:
        """[1/7] Load both cohorts. Missing files and schema problems are fatal here."""
        cohorts = {}
        for cohort_config in (self.config.pre, self.config.post):
            cohorts[cohort_config.label] = load_cohort(
                cohort_config.counts_path,
                cohort_config.metadata_path,
                label=cohort_config.label,
                condition_field=cohort_config.condition_field,
                sample_id_column=cohort_config.sample_id_column,
            )
        return cohorts

    def map_identifiers(self, cohorts: Dict[str, Cohort]):
        """[2/7] Re-index every cohort by gene symbol, keeping the same source id per symbol."""
        counts, reports = map_cohort_matrices(
            {label: cohort.counts for label, cohort in cohorts.items()},
            self.gene_mapper,
            self.config.mapping.duplicate_policy,
        )
        mapped = {}
        for label, cohort in cohorts.items():
            report = reports[label]
            logger.info(
                f"{label}: {report.n_mapped} of {report.n_input} identifiers mapped, "
                f"{counts[label].shape[0]} genes kept"
            )
            mapped[label] = replace(cohort, counts=counts[label])
        return mapped, reports

    def load_enrichment_library(self) -> Optional[Dict[str, List[str]]]:
        if self.gene_sets is not None:
            return self.gene_sets
        enrichment = self.config.enrichment
        return load_gene_sets(
            gmt_path=enrichment.gmt_path,
            collection=enrichment.collection,
            dbver=enrichment.dbver,
            cache_dir=self.config.cache_dir,
        )

    def run_enrichment(self, de_result: DEResult) -> EnrichmentResult:
        """[5/7] ORA and GSEA; a library download failure is recorded, not raised."""
        thresholds = self.config.thresholds
        try:
            gene_sets = self.load_enrichment_library()
        except (ValueError, requests.exceptions.RequestException) as e:
            logger.error(f"Could not load gene sets: {e}", exc_info=True)
            return EnrichmentResult(
                ora_results=pd.DataFrame(columns=ORA_COLUMNS),
                gsea_results=pd.DataFrame(columns=GSEA_COLUMNS),
                genes_used=[],
                selection_note="gene set library unavailable",
                errors=[f"Gene set loading failed: {e}"],
            )
        self.gene_sets = gene_sets

        enrichment = self.config.enrichment
        engine = PathwayEnrichment(
            gene_sets,
            min_size=enrichment.min_size,
            max_size=enrichment.max_size,
            permutations=enrichment.permutations,
            seed=enrichment.seed,
            threads=self.config.deseq.n_cpus or 1,
        )
        return engine.run(de_result.results_df, thresholds.padj, thresholds.lfc)

    def run_full_analysis(self) -> PipelineResult:
        """
        Run the complete report.

        Returns:
            PipelineResult with merged data, DE and enrichment results and
            the per-cohort mapping reports
        """
        config = self.config
        logger.info("[1/7] Loading cohorts")
        cohorts = self.load_cohorts()

        logger.info("[2/7] Mapping gene identifiers to symbols")
        cohorts, reports = self.map_identifiers(cohorts)

        logger.info("[3/7] Merging cohorts")
        merged = merge_cohorts(
            cohorts[config.pre.label], cohorts[config.post.label], config.condition_recode
        )

        logger.info("[4/7] Running differential expression")
        de_result = self.de_engine.run(
            merged.counts,
            merged.metadata,
            design_factor=config.deseq.design_factor,
            test_level=config.deseq.test_level,
            reference_level=config.deseq.reference_level,
            padj_threshold=config.thresholds.padj,
            lfc_threshold=config.thresholds.lfc,
        )

        logger.info("[5/7] Running pathway enrichment")
        enrichment = self.run_enrichment(de_result)

        warnings = list(merged.warnings) + list(de_result.warnings) + list(enrichment.errors)
        return PipelineResult(
            merged=merged,
            de_result=de_result,
            enrichment=enrichment,
            mapping_reports=reports,
            warnings=warnings,
        )

    def generate_visualizations(self, result: PipelineResult) -> Dict[str, go.Figure]:
        """
        [6/7] Build the report figures.

        A figure whose input is too small or empty (e.g. PCA on fewer than
        three samples) is skipped with a warning.
        """
        report = self.config.report
        thresholds = self.config.thresholds
        merged, de_result, enrichment = result.merged, result.de_result, result.enrichment
        conditions = merged.sample_conditions
        treatments = merged.sample_treatments

        builders = {
            "library_sizes": lambda: create_library_size_histogram(merged.counts, treatments),
            "count_distribution": lambda: create_count_distribution_histogram(merged.counts),
            "sample_distances": lambda: create_sample_distance_heatmap(
                de_result.log_normalized_counts, treatments
            ),
            "pca": lambda: create_pca_plot(de_result.log_normalized_counts, merged.metadata),
            "heatmap": lambda: create_clustered_heatmap(
                de_result.log_normalized_counts.T,
                conditions,
                de_result.results_df,
                top_n_genes=report.top_n_genes,
            ),
            "volcano": lambda: create_volcano_plot(
                de_result.results_df, thresholds.lfc, thresholds.padj
            ),
            "pathways": lambda: create_pathway_barplot(
                enrichment.gsea_results, report.top_n_pathways, thresholds.padj
            ),
            "pathway_overlap": lambda: create_upset_plot(
                pathway_gene_sets_for_upset(
                    enrichment.ora_results,
                    self.gene_sets or {},
                    enrichment.genes_used,
                    report.intersection_pathways,
                )
            ),
        }

        figures = {}
        for name, build in builders.items():
            try:
                figures[name] = build()
            except ValueError as e:
                logger.warning(f"Skipping {name} figure: {e}")
                result.warnings.append(f"Figure '{name}' skipped: {e}")
        result.figures = figures
        return figures

    def save_results(self, result: PipelineResult) -> List[Path]:
        """[7/7] Write CSV tables, HTML figures, the Excel workbook and the PDF summary."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        export_data = ExportData(
            de_result=result.de_result,
            enrichment=result.enrichment,
            mapping_reports={
                label: report.to_frame() for label, report in result.mapping_reports.items()
            },
            figures=result.figures,
            settings=self.config.as_settings(),
            sample_conditions=result.merged.sample_conditions,
            warnings=result.warnings,
        )

        exporter = ExportEngine()
        outputs = list(exporter.export_tables(str(self.output_dir), export_data).values())
        outputs += exporter.export_figures_html(str(self.output_dir / "figures"), result.figures)

        excel_path = self.output_dir / "transplant_rnaseq_report.xlsx"
        exporter.export_excel(str(excel_path), export_data)
        outputs.append(excel_path)

        pdf_path = self.output_dir / "transplant_rnaseq_report.pdf"
        exporter.export_pdf_report(
            str(pdf_path), export_data, embed_figures=self.config.report.embed_figures
        )
        outputs.append(pdf_path)

        result.outputs = outputs
        logger.info(f"Results saved to {self.output_dir}")
        return outputs


def run_pipeline(
    config: AnalysisConfig,
    gene_mapper: Optional[GeneMapper] = None,
    de_engine: Optional[DEAnalysisEngine] = None,
    gene_sets: Optional[Dict[str, List[str]]] = None,
    write_outputs: bool = True,
) -> PipelineResult:
    """Run analysis, figures and (optionally) export in one call."""
    pipeline = TransplantPipeline(config, gene_mapper, de_engine, gene_sets)
    result = pipeline.run_full_analysis()
    logger.info("[6/7] Building figures")
    pipeline.generate_visualizations(result)
    if write_outputs:
        logger.info("[7/7] Writing report")
        pipeline.save_results(result)
    else:
        logger.info("[7/7] Writing report skipped (write_outputs=False)")
    for message in result.warnings:
        logger.warning(message)
    return result


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    config = load_config(argv[0] if argv else "config/analysis.yaml")
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    result = run_pipeline(config)
    summary = compute_de_summary(result.de_result.results_df, top_n=5)
    logger.info(
        f"{summary['upregulated']} upregulated, {summary['downregulated']} downregulated "
        f"of {summary['tested_genes']} tested genes; "
        f"{len(result.enrichment.gsea_results)} pathways tested by GSEA"
    )
    if summary["top_up_genes"]:
        logger.info(f"Top upregulated: {', '.join(g for g, _, _ in summary['top_up_genes'])}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
