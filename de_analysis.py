"""
Differential expression analysis using PyDESeq2.

Fits the negative-binomial model once for the merged cohorts (median-of-ratios
size factors, gene-wise dispersions shrunk toward the fitted trend) and runs the
Post_transplant vs Pre_transplant Wald test with Benjamini-Hochberg correction.
Fitted results are memoised in a content-addressed cache keyed by the exact
count matrix and design.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple
import hashlib
import logging
import pickle
import pandas as pd
import numpy as np
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats
from pydeseq2.default_inference import DefaultInference
from pydeseq2.preprocessing import deseq2_norm

from data_loader import SchemaMismatchError
from gene_classifier import classify_results

logger = logging.getLogger(__name__)


def design_level(level: str) -> str:
    """PyDESeq2 reserves '_' in factor levels; use '-' in the design instead."""
    return str(level).replace("_", "-")


@dataclass
class DEResult:
    """Result from differential expression analysis."""

    results_df: pd.DataFrame  # gene, baseMean, log2FoldChange, lfcSE, stat, pvalue, padj, classification
    normalized_counts: pd.DataFrame  # samples × genes (raw normalized)
    log_normalized_counts: pd.DataFrame  # samples × genes (log2(norm+1))
    size_factors: pd.Series  # one per sample
    comparison: Tuple[str, str]  # (test_level, reference_level)
    n_significant: int  # genes with padj < padj_threshold
    dds: Optional[DeseqDataSet] = None  # fitted model, None when loaded without it
    cache_key: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def compute_size_factors(counts: pd.DataFrame) -> pd.Series:
    """
    Median-of-ratios size factors for a genes × samples count matrix.

    Genes with a zero count in any sample are left out of the reference, as in DESeq2.
    """
    _, size_factors = deseq2_norm(counts.T.to_numpy(dtype=float))
    return pd.Series(np.asarray(size_factors, dtype=float), index=counts.columns, name="size_factor")


def dataset_cache_key(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    design_factor: str,
    comparison: Tuple[str, str],
    alpha: float = 0.05,
) -> str:
    """SHA-256 over the count matrix (values, genes, samples), the design column, the contrast and alpha."""
    digest = hashlib.sha256()
    digest.update(np.ascontiguousarray(counts.to_numpy(dtype=np.int64)).tobytes())
    digest.update("\x1f".join(map(str, counts.index)).encode())
    digest.update("\x1e".join(map(str, counts.columns)).encode())
    design = metadata.loc[counts.columns, design_factor].astype(str)
    digest.update("\x1d".join(design).encode())
    digest.update(f"~{design_factor}|{comparison[0]}|{comparison[1]}|{alpha}".encode())
    return digest.hexdigest()


class FittedModelCache:
    """Pickle store of DEResult objects addressed by dataset_cache_key."""

    def __init__(self, cache_dir: Optional[Path]):
        self.cache_dir = Path(cache_dir) / "deseq" if cache_dir is not None else None

    def _path(self, key: str) -> Optional[Path]:
        return self.cache_dir / f"{key}.pkl" if self.cache_dir is not None else None

    def get(self, key: str) -> Optional[DEResult]:
        path = self._path(key)
        if path is None or not path.exists():
            return None
        try:
            with open(path, "rb") as f:
                result = pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable model cache entry {path}: {e}")
            return None
        logger.info(f"Reusing fitted DESeq2 model from cache ({key[:12]})")
        return result

    def put(self, key: str, result: DEResult) -> None:
        path = self._path(key)
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                pickle.dump(result, f)
        except (OSError, pickle.PicklingError, TypeError, AttributeError) as e:
            logger.warning(f"Could not write model cache entry {path}: {e}")


class DEAnalysisEngine:
    """Differential expression analysis using PyDESeq2."""

    def __init__(
        self,
        n_cpus: Optional[int] = None,
        refit_cooks: bool = True,
        cache_dir: Optional[Path] = None,
    ):
        self.inference = DefaultInference(n_cpus=n_cpus)
        self.refit_cooks = refit_cooks
        self.cache = FittedModelCache(cache_dir)

    def fit_model(
        self,
        counts_df: pd.DataFrame,
        metadata_df: pd.DataFrame,
        design_factor: str = "treatment",
    ) -> Tuple[DeseqDataSet, pd.DataFrame, pd.DataFrame]:
        """
        Fit the DESeq2 model.

        Args:
            counts_df: samples × genes DataFrame with integer counts
            metadata_df: samples × covariates DataFrame (index must match counts_df.index)
            design_factor: Column name in metadata_df (default: "treatment")

        Returns:
            dds: Fitted DeseqDataSet
            normalized_df: samples × genes (raw normalized)
            log_normalized_df: samples × genes (log2(norm+1))
        """
        metadata = metadata_df.loc[counts_df.index, [design_factor]].astype(str)
        metadata[design_factor] = metadata[design_factor].map(design_level)

        dds = DeseqDataSet(
            counts=counts_df,
            metadata=metadata,
            design=f"~{design_factor}",
            refit_cooks=self.refit_cooks,
            inference=self.inference,
            quiet=True,
        )

        # size factors, dispersions (gene-wise, trend, MAP), LFCs, Cook's distances
        dds.deseq2()

        normalized_df = pd.DataFrame(
            dds.layers["normed_counts"],
            index=dds.obs_names,
            columns=dds.var_names,
        )
        log_normalized_df = np.log2(normalized_df + 1)

        return dds, normalized_df, log_normalized_df

    def get_comparison(
        self,
        dds: DeseqDataSet,
        design_factor: str,
        test_level: str,
        reference_level: str,
        alpha: float = 0.05,
    ) -> pd.DataFrame:
        """
        Wald test for one contrast on a fitted model.

        Returns:
            DataFrame with columns: gene, baseMean, log2FoldChange, lfcSE, stat, pvalue, padj.
            Genes that are all-zero or flagged as Cook's outliers carry NaN p-values.
        """
        stat_res = DeseqStats(
            dds,
            contrast=[design_factor, design_level(test_level), design_level(reference_level)],
            alpha=alpha,
            cooks_filter=True,
            independent_filter=True,
            inference=self.inference,
            quiet=True,
        )
        stat_res.summary()

        results_df = stat_res.results_df.copy()
        results_df.index.name = None
        results_df = results_df.reset_index()
        results_df.columns = ["gene"] + list(results_df.columns[1:])
        return results_df

    def run(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        design_factor: str = "treatment",
        test_level: str = "Post_transplant",
        reference_level: str = "Pre_transplant",
        padj_threshold: float = 0.05,
        lfc_threshold: float = 1.0,
    ) -> DEResult:
        """
        Main entry point: normalise, fit, test and classify.

        Args:
            counts: genes × samples integer counts (merged cohorts)
            metadata: index = sample id, must contain design_factor
            design_factor: Two-level grouping column (default: "treatment")
            test_level: Numerator level of the fold change
            reference_level: Denominator level of the fold change
            padj_threshold: Significance cut-off for classification
            lfc_threshold: Fold-change cut-off for classification

        Returns:
            DEResult (served from the model cache when this exact dataset was fitted before)

        Raises:
            SchemaMismatchError: If the design column or one of its levels is missing
        """
        if design_factor not in metadata.columns:
            raise SchemaMismatchError(f"Design factor '{design_factor}' not in metadata columns")
        levels = set(metadata[design_factor].astype(str))
        missing = [lvl for lvl in (test_level, reference_level) if lvl not in levels]
        if missing:
            raise SchemaMismatchError(
                f"Design factor '{design_factor}' has no samples for {missing}",
                details={"levels": sorted(levels)},
            )

        comparison = (test_level, reference_level)
        key = dataset_cache_key(counts, metadata, design_factor, comparison, padj_threshold)
        cached = self.cache.get(key)
        if cached is None:
            logger.info(
                f"Fitting DESeq2 model on {counts.shape[0]} genes × {counts.shape[1]} samples"
            )
            dds, normalized_df, log_normalized_df = self.fit_model(
                counts.T, metadata, design_factor
            )
            results_df = self.get_comparison(
                dds, design_factor, test_level, reference_level, alpha=padj_threshold
            )
            size_factors = pd.Series(
                dds.obs["size_factors"].to_numpy(dtype=float),
                index=dds.obs_names,
                name="size_factor",
            )
            cached = DEResult(
                results_df=results_df,
                normalized_counts=normalized_df,
                log_normalized_counts=log_normalized_df,
                size_factors=size_factors,
                comparison=comparison,
                n_significant=0,
                dds=dds,
                cache_key=key,
            )
            self.cache.put(key, cached)

        # Classification depends on thresholds only, so it is redone on every run
        results_df = classify_results(cached.results_df, padj_threshold, lfc_threshold)
        n_sig = int((results_df["padj"] < padj_threshold).sum())
        n_undefined = int(results_df["padj"].isna().sum())

        warnings = list(cached.warnings)
        if n_undefined:
            warnings.append(
                f"{n_undefined} genes have undefined adjusted p-values "
                "(all-zero counts, Cook's outliers or independent filtering)"
            )
        logger.info(f"{n_sig} genes with padj < {padj_threshold} ({test_level} vs {reference_level})")

        return DEResult(
            results_df=results_df,
            normalized_counts=cached.normalized_counts,
            log_normalized_counts=cached.log_normalized_counts,
            size_factors=cached.size_factors,
            comparison=comparison,
            n_significant=n_sig,
            dds=cached.dds,
            cache_key=key,
            warnings=warnings,
        )

    @staticmethod
    def filter_results(
        results_df: pd.DataFrame,
        padj_threshold: float = 0.05,
        lfc_threshold: float = 1.0,
    ) -> pd.DataFrame:
        """
        Filter DE results to significant genes.

        Args:
            results_df: DE results DataFrame
            padj_threshold: Adjusted p-value threshold (default: 0.05)
            lfc_threshold: Absolute log2 fold change threshold (default: 1.0)

        Returns:
            Filtered DataFrame with significant genes only
        """
        return results_df[
            (results_df["padj"] < padj_threshold)
            & (abs(results_df["log2FoldChange"]) > lfc_threshold)
        ].copy()
