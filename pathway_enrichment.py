"""
Pathway Enrichment Analysis Module

Tests a curated gene-set library (MSigDB hallmark by default) against the
differential expression results in two ways:
- over-representation (hypergeometric test of significant genes vs the gene universe)
- rank-based GSEA (GSEApy prerank on genes ranked by log2 fold change)

Classes:
    EnrichmentResult: ORA and GSEA tables for one contrast
    PathwayEnrichment: Main class for pathway enrichment analysis
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import logging
import gseapy as gp
import numpy as np
import pandas as pd
from scipy.stats import hypergeom
from statsmodels.stats.multitest import multipletests

from data_loader import MissingFileError

logger = logging.getLogger(__name__)

ORA_COLUMNS = [
    "pathway", "overlap", "pathway_size", "n_selected", "universe_size",
    "pvalue", "padj", "genes",
]
GSEA_COLUMNS = ["pathway", "es", "nes", "pvalue", "padj", "fwer", "lead_genes"]


@dataclass
class EnrichmentResult:
    """Pathway enrichment results for one contrast."""

    ora_results: pd.DataFrame  # Columns: ORA_COLUMNS
    gsea_results: pd.DataFrame  # Columns: GSEA_COLUMNS
    genes_used: List[str]  # Genes submitted to the over-representation test
    selection_note: str  # E.g., "172 genes (padj<0.05, |log2FC|>1)"
    errors: List[str] = field(default_factory=list)

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None


def _write_gmt(gene_sets: Dict[str, List[str]], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for name, genes in gene_sets.items():
            f.write("\t".join([name, "NA"] + list(genes)) + "\n")


def load_gene_sets(
    gmt_path: Optional[str] = None,
    collection: str = "h.all",
    dbver: str = "2023.2.Hs",
    cache_dir: Optional[str] = None,
) -> Dict[str, List[str]]:
    """
    Load a gene-set library.

    A local GMT file wins when given. Otherwise the MSigDB collection is
    downloaded with GSEApy and saved as GMT under cache_dir for later runs.

    Returns:
        Dict mapping pathway name → list of gene symbols
    """
    if gmt_path:
        if not Path(gmt_path).is_file():
            raise MissingFileError(f"Gene set file not found: {gmt_path}")
        gene_sets = gp.read_gmt(gmt_path)
        logger.info(f"Loaded {len(gene_sets)} gene sets from {gmt_path}")
        return gene_sets

    cached = Path(cache_dir) / f"msigdb_{collection}.v{dbver}.gmt" if cache_dir else None
    if cached is not None and cached.is_file():
        logger.info(f"Loading gene sets from cache: {cached}")
        return gp.read_gmt(str(cached))

    logger.info(f"Downloading MSigDB collection {collection} (v{dbver})")
    gene_sets = gp.Msigdb().get_gmt(category=collection, dbver=dbver)
    if not gene_sets:
        raise ValueError(f"MSigDB returned no gene sets for {collection} v{dbver}")
    if cached is not None:
        _write_gmt(gene_sets, cached)
    return gene_sets


def sort_enrichment_results(df: pd.DataFrame) -> pd.DataFrame:
    """
    Deterministic report order: p-value ascending, then NES descending (when
    present), then pathway name ascending.
    """
    if df.empty:
        return df.reset_index(drop=True)
    keys, ascending = ["pvalue"], [True]
    if "nes" in df.columns:
        keys.append("nes")
        ascending.append(False)
    keys.append("pathway")
    ascending.append(True)
    return df.sort_values(keys, ascending=ascending, kind="mergesort", na_position="last").reset_index(drop=True)


class PathwayEnrichment:
    """
    Pathway enrichment analysis over a fixed gene-set library.

    Supports:
    - Gene selection from DE results (padj and |log2FC| thresholds)
    - Hypergeometric over-representation test with BH correction
    - GSEApy prerank GSEA on the log2 fold-change ranking
    - Size bounds on tested gene sets
    """

    def __init__(
        self,
        gene_sets: Dict[str, List[str]],
        min_size: int = 5,
        max_size: int = 500,
        permutations: int = 1000,
        seed: int = 42,
        threads: int = 1,
    ):
        self.gene_sets = {name: list(dict.fromkeys(genes)) for name, genes in gene_sets.items()}
        self.min_size = min_size
        self.max_size = max_size
        self.permutations = permutations
        self.seed = seed
        self.threads = threads

    def select_genes_for_enrichment(
        self,
        de_results: pd.DataFrame,
        padj_threshold: float = 0.05,
        lfc_threshold: float = 1.0,
    ) -> List[str]:
        """
        Select genes for the over-representation test.

        Keeps genes with padj < padj_threshold and |log2FoldChange| > lfc_threshold,
        sorted by padj ascending. NaN rows (filtered genes) are dropped.
        """
        df = de_results.dropna(subset=["padj", "log2FoldChange"])
        sig = df[(df["padj"] < padj_threshold) & (df["log2FoldChange"].abs() > lfc_threshold)]
        return sig.sort_values("padj", kind="mergesort")["gene"].tolist()

    def run_ora(self, selected: Iterable[str], universe: Iterable[str]) -> pd.DataFrame:
        """
        Hypergeometric over-representation test for every gene set.

        For each set: N = universe size, K = set members in the universe,
        n = selected genes in the universe, k = overlap.
        p = P(X >= k) for X ~ Hypergeometric(N, K, n). Sets whose K falls outside
        [min_size, max_size] are not tested. BH correction across tested sets.

        Returns:
            DataFrame with ORA_COLUMNS, sorted by sort_enrichment_results
        """
        universe_set = set(universe)
        selected_set = set(selected) & universe_set
        big_n = len(universe_set)
        n = len(selected_set)

        rows = []
        for name, genes in self.gene_sets.items():
            members = set(genes) & universe_set
            big_k = len(members)
            if big_k < self.min_size or big_k > self.max_size:
                continue
            hits = sorted(members & selected_set)
            k = len(hits)
            pvalue = float(hypergeom.sf(k - 1, big_n, big_k, n)) if k > 0 else 1.0
            rows.append([name, k, big_k, n, big_n, pvalue, np.nan, ";".join(hits)])

        result = pd.DataFrame(rows, columns=ORA_COLUMNS)
        if result.empty:
            logger.warning("No gene sets within size bounds for over-representation test")
            return result
        result["padj"] = multipletests(result["pvalue"].values, method="fdr_bh")[1]
        return sort_enrichment_results(result)

    @staticmethod
    def rank_genes(de_results: pd.DataFrame) -> pd.Series:
        """Genes ranked by log2FoldChange descending; ties keep their original order."""
        ranking = de_results.dropna(subset=["log2FoldChange"]).set_index("gene")["log2FoldChange"]
        ranking = ranking[~ranking.index.duplicated(keep="first")]
        return ranking.sort_values(ascending=False, kind="mergesort").astype(float)

    def run_gsea(self, ranking: pd.Series) -> pd.DataFrame:
        """
        Run GSEApy prerank on a ranked gene list.

        Args:
            ranking: gene → log2 fold change, sorted descending

        Returns:
            DataFrame with GSEA_COLUMNS, sorted by sort_enrichment_results
        """
        pre_res = gp.prerank(
            rnk=ranking,
            gene_sets=self.gene_sets,
            min_size=self.min_size,
            max_size=self.max_size,
            permutation_num=self.permutations,
            seed=self.seed,
            threads=self.threads,
            outdir=None,
            no_plot=True,
            verbose=False,
        )

        results = pre_res.res2d.copy()
        results = results.rename(columns={
            "Term": "pathway",
            "ES": "es",
            "NES": "nes",
            "NOM p-val": "pvalue",
            "FDR q-val": "padj",
            "FWER p-val": "fwer",
            "Lead_genes": "lead_genes",
        })
        for col in ("es", "nes", "pvalue", "padj", "fwer"):
            results[col] = pd.to_numeric(results[col], errors="coerce")
        return sort_enrichment_results(results[GSEA_COLUMNS])

    def run(
        self,
        de_results: pd.DataFrame,
        padj_threshold: float = 0.05,
        lfc_threshold: float = 1.0,
    ) -> EnrichmentResult:
        """
        Run both enrichment analyses on one DE result table.

        A GSEA failure is recorded in EnrichmentResult.errors and logged; the
        ORA table is still returned.
        """
        errors = []
        universe = de_results["gene"].dropna().tolist()
        selected = self.select_genes_for_enrichment(de_results, padj_threshold, lfc_threshold)
        note = f"{len(selected)} genes (padj<{padj_threshold}, |log2FC|>{lfc_threshold})"
        logger.info(f"Over-representation test on {note} against {len(universe)} genes")

        ora = self.run_ora(selected, universe)

        try:
            gsea = self.run_gsea(self.rank_genes(de_results))
        except (ValueError, LookupError, RuntimeError) as e:
            logger.error(f"GSEA prerank failed: {e}", exc_info=True)
            errors.append(f"GSEA failed: {e}")
            gsea = pd.DataFrame(columns=GSEA_COLUMNS)

        return EnrichmentResult(
            ora_results=ora,
            gsea_results=gsea,
            genes_used=selected,
            selection_note=note,
            errors=errors,
        )
