"""
Analysis configuration for the transplant RNA-seq report.

Settings live in a YAML file (default: config/analysis.yaml) and are loaded
into nested dataclasses so every step reads typed values instead of raw dicts.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional
import logging
import yaml

from data_loader import MissingFileError

logger = logging.getLogger(__name__)


DEFAULT_CONDITION_RECODE = {
    "immediate graft function": "Immediate",
    "immediate": "Immediate",
    "delayed graft function": "Delayed",
    "delayed": "Delayed",
    "no rejection": "No_Rejection",
    "no_rejection": "No_Rejection",
    "non-rejection": "No_Rejection",
    "rejection": "Rejection",
}


@dataclass
class CohortConfig:
    """Input files and labelling for one cohort (pre or post transplant)."""

    counts_path: str
    metadata_path: str
    label: str  # "Pre" or "Post"
    condition_field: str = "condition"
    sample_id_column: str = "title"


@dataclass
class MappingConfig:
    species: str = "human"
    scopes: str = "ensembl.gene"
    batch_size: int = 1000
    max_retries: int = 3
    retry_backoff: float = 2.0  # seconds, multiplied by the attempt number
    multi_symbol_policy: str = "first"
    duplicate_policy: str = "first"  # "first" or "highest_count"


@dataclass
class ThresholdConfig:
    padj: float = 0.05
    lfc: float = 1.0


@dataclass
class DeseqConfig:
    design_factor: str = "treatment"
    test_level: str = "Post_transplant"
    reference_level: str = "Pre_transplant"
    n_cpus: Optional[int] = None
    refit_cooks: bool = True


@dataclass
class EnrichmentConfig:
    collection: str = "h.all"
    dbver: str = "2023.2.Hs"
    gmt_path: Optional[str] = None
    min_size: int = 5
    max_size: int = 500
    permutations: int = 1000
    seed: int = 42


@dataclass
class ReportConfig:
    embed_figures: bool = False  # PDF figure embedding needs kaleido
    top_n_genes: int = 50
    top_n_pathways: int = 20
    intersection_pathways: int = 5


@dataclass
class AnalysisConfig:
    """Top-level configuration bundle passed through the pipeline."""

    pre: CohortConfig
    post: CohortConfig
    condition_recode: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_CONDITION_RECODE)
    )
    mapping: MappingConfig = field(default_factory=MappingConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    deseq: DeseqConfig = field(default_factory=DeseqConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    cache_dir: Optional[str] = ".cache"
    output_dir: str = "output"
    log_level: str = "INFO"

    def as_settings(self) -> Dict[str, Any]:
        """Flat key-value view used by the export Settings sheet."""
        return {
            "padj_threshold": self.thresholds.padj,
            "lfc_threshold": self.thresholds.lfc,
            "design_factor": self.deseq.design_factor,
            "contrast": f"{self.deseq.test_level} vs {self.deseq.reference_level}",
            "duplicate_policy": self.mapping.duplicate_policy,
            "multi_symbol_policy": self.mapping.multi_symbol_policy,
            "gene_set_collection": self.enrichment.gmt_path or self.enrichment.collection,
            "gene_set_size_bounds": f"{self.enrichment.min_size}-{self.enrichment.max_size}",
            "gsea_permutations": self.enrichment.permutations,
            "seed": self.enrichment.seed,
        }


def _build(cls, section: Optional[Dict[str, Any]], name: str):
    """Instantiate a config dataclass, warning on keys it does not know."""
    section = dict(section or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(section) - known)
    if unknown:
        logger.warning(f"Ignoring unknown keys in '{name}' config: {unknown}")
    return cls(**{k: v for k, v in section.items() if k in known})


def config_from_dict(raw: Dict[str, Any]) -> AnalysisConfig:
    """
    Build an AnalysisConfig from a parsed YAML mapping.

    Args:
        raw: Mapping with a required "cohorts" section ({pre: ..., post: ...})
             and optional mapping/thresholds/deseq/enrichment/report sections

    Returns:
        AnalysisConfig

    Raises:
        ValueError: If the cohorts section is missing or incomplete
    """
    cohorts = raw.get("cohorts") or {}
    if "pre" not in cohorts or "post" not in cohorts:
        raise ValueError(
            "Config must define cohorts.pre and cohorts.post "
            "(counts_path, metadata_path, label)."
        )

    pre_section = {"label": "Pre", **cohorts["pre"]}
    post_section = {"label": "Post", **cohorts["post"]}

    recode = dict(DEFAULT_CONDITION_RECODE)
    recode.update({str(k).lower(): v for k, v in (raw.get("condition_recode") or {}).items()})

    top_level = {"cache_dir", "output_dir", "log_level"}
    extra = {k: raw[k] for k in top_level if k in raw}

    return AnalysisConfig(
        pre=_build(CohortConfig, pre_section, "cohorts.pre"),
        post=_build(CohortConfig, post_section, "cohorts.post"),
        condition_recode=recode,
        mapping=_build(MappingConfig, raw.get("mapping"), "mapping"),
        thresholds=_build(ThresholdConfig, raw.get("thresholds"), "thresholds"),
        deseq=_build(DeseqConfig, raw.get("deseq"), "deseq"),
        enrichment=_build(EnrichmentConfig, raw.get("enrichment"), "enrichment"),
        report=_build(ReportConfig, raw.get("report"), "report"),
        **extra,
    )


def load_config(config_path: str = "config/analysis.yaml") -> AnalysisConfig:
    """
    Load analysis settings from a YAML file.

    Relative paths (cohort inputs, gmt_path, cache_dir, output_dir) are
    resolved against the directory holding the config file.
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise MissingFileError(f"Analysis config not found: {config_path}")

    with open(config_file, "r") as f:
        raw = yaml.safe_load(f) or {}

    base = config_file.parent

    def resolve(section: Dict[str, Any], key: str) -> None:
        value = section.get(key)
        if value and not Path(value).is_absolute():
            section[key] = str(base / value)

    for cohort in (raw.get("cohorts") or {}).values():
        resolve(cohort, "counts_path")
        resolve(cohort, "metadata_path")
    if raw.get("enrichment"):
        resolve(raw["enrichment"], "gmt_path")
    resolve(raw, "cache_dir")
    resolve(raw, "output_dir")

    return config_from_dict(raw)
