"""Stable gene identifier (Ensembl) to gene symbol mapping with local caching.

Symbols are fetched from mygene.info in batches. Successful lookups are cached
as a JSON file so repeated runs do not hit the network again; the cache is a
best-effort side channel and never changes which genes survive mapping.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
import json
import logging
import os
import time
import mygene
import pandas as pd
import requests

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path.home() / ".transplant_rnaseq"

DUPLICATE_POLICIES = ("first", "highest_count")
MULTI_SYMBOL_POLICIES = ("first",)


class UnmappableIdentifierError(Exception):
    """Raised when a batch of identifiers cannot be resolved after all retries."""

    def __init__(self, message: str, identifiers: Optional[List[str]] = None):
        self.message: str = message
        self.identifiers: List[str] = list(identifiers or [])
        super().__init__(self.message)


@dataclass
class MappingReport:
    """Diagnostics for one identifier-mapping pass."""

    n_input: int = 0
    n_mapped: int = 0
    unmapped_ids: List[str] = field(default_factory=list)  # zero symbols returned
    failed_ids: List[str] = field(default_factory=list)  # lookup failed after retries
    duplicate_ids: List[str] = field(default_factory=list)  # lost to symbol de-duplication

    @property
    def n_dropped(self) -> int:
        return len(self.unmapped_ids) + len(self.failed_ids) + len(self.duplicate_ids)

    def to_frame(self) -> pd.DataFrame:
        rows = (
            [(i, "unmapped") for i in self.unmapped_ids]
            + [(i, "lookup_failed") for i in self.failed_ids]
            + [(i, "duplicate_symbol") for i in self.duplicate_ids]
        )
        return pd.DataFrame(rows, columns=["gene_id", "reason"])


def strip_version(identifier: str) -> str:
    """ENSG00000141510.12 -> ENSG00000141510."""
    identifier = str(identifier).strip()
    if identifier.startswith("ENS") and "." in identifier:
        return identifier.split(".")[0]
    return identifier


class MyGeneLookup:
    """Batch identifier -> symbols lookup against mygene.info.

    Args:
        species: mygene species filter (default "human")
        scopes: mygene query scope (default "ensembl.gene")
        batch_size: Identifiers per request
        max_retries: Extra attempts per batch on transient network errors
        retry_backoff: Seconds to wait, multiplied by the attempt number
    """

    # requests covers the HTTP layer, OSError covers socket-level failures
    transient_errors: Tuple[type, ...] = (requests.exceptions.RequestException, OSError)

    def __init__(
        self,
        species: str = "human",
        scopes: str = "ensembl.gene",
        batch_size: int = 1000,
        max_retries: int = 3,
        retry_backoff: float = 2.0,
        client=None,
    ) -> None:
        self.species = species
        self.scopes = scopes
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = mygene.MyGeneInfo()
        return self._client

    def query_batches(self, identifiers: List[str]):
        """Yield identifier -> symbols per resolved batch, or an UnmappableIdentifierError per failed batch.

        Symbols keep the order mygene returned them in.
        """
        for start in range(0, len(identifiers), self.batch_size):
            batch = identifiers[start:start + self.batch_size]
            try:
                yield self._query_with_retries(batch)
            except UnmappableIdentifierError as exc:
                yield exc

    def _query_with_retries(self, batch: List[str]) -> Dict[str, List[str]]:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                hits = self.client.querymany(
                    batch,
                    scopes=self.scopes,
                    fields="symbol",
                    species=self.species,
                    verbose=False,
                )
                return self._collect(batch, hits)
            except self.transient_errors as exc:
                last_error = exc
                if attempt < self.max_retries:
                    wait = self.retry_backoff * (attempt + 1)
                    logger.warning(
                        f"mygene query failed (attempt {attempt + 1}/{self.max_retries + 1}): "
                        f"{exc}. Retrying in {wait:.1f}s"
                    )
                    time.sleep(wait)
        raise UnmappableIdentifierError(
            f"Lookup failed for {len(batch)} identifiers after "
            f"{self.max_retries + 1} attempts: {last_error}",
            identifiers=batch,
        )

    @staticmethod
    def _collect(batch: List[str], hits) -> Dict[str, List[str]]:
        result: Dict[str, List[str]] = {query: [] for query in batch}
        for hit in hits or []:
            query = str(hit.get("query"))
            if hit.get("notfound") or "symbol" not in hit:
                continue
            result.setdefault(query, [])
            if hit["symbol"] not in result[query]:
                result[query].append(hit["symbol"])
        return result


class GeneMapper:
    """Maps stable gene identifiers to symbols through a lookup plus JSON cache.

    Args:
        lookup: Object with a ``query_batches(ids)`` method (default: MyGeneLookup)
        cache_dir: Directory for the symbol cache; ``None`` disables caching.
            Overridable via the ``TRANSPLANT_RNASEQ_CACHE`` environment variable.
        multi_symbol_policy: How to pick one symbol when several are returned
    """

    def __init__(
        self,
        lookup: Optional[MyGeneLookup] = None,
        cache_dir: Optional[Path] = DEFAULT_CACHE_DIR,
        species: str = "human",
        multi_symbol_policy: str = "first",
    ) -> None:
        if multi_symbol_policy not in MULTI_SYMBOL_POLICIES:
            raise ValueError(
                f"Unknown multi_symbol_policy '{multi_symbol_policy}'. "
                f"Choose from {MULTI_SYMBOL_POLICIES}."
            )
        self.lookup = lookup or MyGeneLookup(species=species)
        self.multi_symbol_policy = multi_symbol_policy

        env_dir = os.environ.get("TRANSPLANT_RNASEQ_CACHE")
        if env_dir and cache_dir is not None:
            cache_dir = Path(env_dir)
        self._cache_path = (
            Path(cache_dir) / f"gene_symbols_{species}.json" if cache_dir is not None else None
        )

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def build_map(self, identifiers: Iterable[str]) -> Tuple[pd.Series, MappingReport]:
        """Resolve identifiers to one symbol each.

        Args:
            identifiers: Stable ids in table order (version suffixes allowed)

        Returns:
            (id_map, report) where id_map is a Series indexed by the original
            identifier holding the chosen symbol; unmapped and failed ids are
            absent from the Series and listed in the report.
        """
        identifiers = [str(i) for i in identifiers]
        stripped = {i: strip_version(i) for i in identifiers}
        cache = self._read_cache()

        to_query = sorted({s for s in stripped.values() if s not in cache})
        failed: set = set()
        fetched: Dict[str, List[str]] = {}

        if to_query:
            logger.info(f"Querying symbols for {len(to_query)} identifiers")
            for batch_result in self.lookup.query_batches(to_query):
                if isinstance(batch_result, UnmappableIdentifierError):
                    logger.warning(
                        f"{batch_result.message}. Dropping {len(batch_result.identifiers)} identifiers."
                    )
                    failed.update(batch_result.identifiers)
                    continue
                fetched.update(batch_result)
            if fetched:
                cache.update(fetched)
                self._write_cache(cache)

        report = MappingReport(n_input=len(identifiers))
        mapped: Dict[str, str] = {}
        for original in identifiers:
            key = stripped[original]
            if key in failed:
                report.failed_ids.append(original)
                continue
            symbols = cache.get(key, [])
            if not symbols:
                report.unmapped_ids.append(original)
                continue
            mapped[original] = self._choose_symbol(symbols)

        report.n_mapped = len(mapped)
        id_map = pd.Series(mapped, dtype=object, name="symbol")
        id_map.index.name = "gene_id"
        return id_map, report

    def _choose_symbol(self, symbols: List[str]) -> str:
        # "first" is the only policy today: keep the first pairing mygene returned
        return symbols[0]

    # -----------------------------------------------------------------
    # Cache
    # -----------------------------------------------------------------

    def _read_cache(self) -> Dict[str, List[str]]:
        if self._cache_path is None or not self._cache_path.exists():
            return {}
        try:
            with open(self._cache_path, "r") as f:
                logger.info(f"Loading gene symbol cache: {self._cache_path}")
                return json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning(f"Ignoring unreadable gene symbol cache {self._cache_path}: {exc}")
            return {}

    def _write_cache(self, cache: Dict[str, List[str]]) -> None:
        if self._cache_path is None:
            return
        try:
            self._cache_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._cache_path, "w") as f:
                json.dump(cache, f)
        except OSError as exc:
            logger.warning(f"Could not write gene symbol cache {self._cache_path}: {exc}")


def select_duplicate_keepers(
    symbols: pd.Series,
    totals: Optional[pd.Series] = None,
    duplicate_policy: str = "first",
) -> set:
    """
    Pick one identifier per symbol.

    Args:
        symbols: identifier -> symbol, in table order
        totals: identifier -> total count (needed for "highest_count")
        duplicate_policy: "first" or "highest_count"

    Returns:
        Set of identifiers that survive de-duplication
    """
    if duplicate_policy not in DUPLICATE_POLICIES:
        raise ValueError(
            f"Unknown duplicate_policy '{duplicate_policy}'. Choose from {DUPLICATE_POLICIES}."
        )
    if duplicate_policy == "highest_count":
        totals = totals.reindex(symbols.index).fillna(0)
        # stable sort keeps table order among equal totals
        order = totals.sort_values(ascending=False, kind="mergesort").index
        keep_mask = ~symbols.loc[order].duplicated(keep="first")
        return set(order[keep_mask.values])
    return set(symbols.index[~symbols.duplicated(keep="first").values])


def apply_identifier_map(
    counts: pd.DataFrame,
    id_map: pd.Series,
    duplicate_policy: str = "first",
    report: Optional[MappingReport] = None,
    keep_keys: Optional[set] = None,
) -> Tuple[pd.DataFrame, MappingReport]:
    """
    Re-index a genes × samples count matrix by gene symbol.

    Rows whose identifier is absent from id_map are dropped. When several
    identifiers share a symbol, one row survives:
    - "first": the first row in table order
    - "highest_count": the row with the largest total count (ties keep table order)

    Args:
        counts: genes × samples, indexed by stable identifier
        id_map: identifier -> symbol (from GeneMapper.build_map)
        duplicate_policy: "first" or "highest_count"
        report: Report to extend; a fresh one is created if omitted
        keep_keys: Version-stripped identifiers already chosen across several
            matrices (see map_cohort_matrices); overrides duplicate_policy

    Returns:
        (symbol-indexed counts, report)
    """
    if duplicate_policy not in DUPLICATE_POLICIES:
        raise ValueError(
            f"Unknown duplicate_policy '{duplicate_policy}'. Choose from {DUPLICATE_POLICIES}."
        )
    if report is None:
        report = MappingReport(n_input=len(counts))
        report.unmapped_ids = [g for g in counts.index if g not in id_map.index]

    mapped = counts.loc[counts.index.isin(id_map.index)].copy()
    symbols = id_map.reindex(mapped.index)

    if keep_keys is None:
        keep_ids = select_duplicate_keepers(symbols, mapped.sum(axis=1), duplicate_policy)
    else:
        candidates = symbols[[strip_version(g) in keep_keys for g in symbols.index]]
        keep_ids = set(candidates.index[~candidates.duplicated(keep="first").values])

    report.duplicate_ids = [g for g in mapped.index if g not in keep_ids]
    result = mapped.loc[[g for g in mapped.index if g in keep_ids]]
    result.index = symbols.loc[result.index].values
    result.index.name = "gene"

    if report.n_dropped > 0:
        logger.warning(
            f"Identifier mapping dropped {report.n_dropped} of {report.n_input} genes "
            f"({len(report.unmapped_ids)} unmapped, {len(report.failed_ids)} lookup failures, "
            f"{len(report.duplicate_ids)} duplicate symbols)"
        )
    return result, report


def map_count_matrix(
    counts: pd.DataFrame,
    mapper: GeneMapper,
    duplicate_policy: str = "first",
) -> Tuple[pd.DataFrame, MappingReport]:
    """Look up symbols for every row of counts and re-index by symbol."""
    id_map, report = mapper.build_map(counts.index)
    return apply_identifier_map(counts, id_map, duplicate_policy, report=report)


def map_cohort_matrices(
    count_matrices: Dict[str, pd.DataFrame],
    mapper: GeneMapper,
    duplicate_policy: str = "first",
) -> Tuple[Dict[str, pd.DataFrame], Dict[str, MappingReport]]:
    """
    Map several count matrices that will be merged, resolving duplicate symbols once.

    The surviving identifier for a shared symbol is chosen on all matrices
    together (table order of the first matrix, or the summed totals for
    "highest_count"), so every matrix keeps the same source gene for it.
    Identifiers are compared without their version suffix.

    Returns:
        (label -> symbol-indexed counts, label -> MappingReport)
    """
    id_maps: Dict[str, pd.Series] = {}
    reports: Dict[str, MappingReport] = {}
    keyed_symbols, keyed_totals = [], []
    for label, counts in count_matrices.items():
        id_map, report = mapper.build_map(counts.index)
        id_maps[label], reports[label] = id_map, report
        mapped = counts.loc[counts.index.isin(id_map.index)]
        keys = [strip_version(g) for g in mapped.index]
        keyed_symbols.append(pd.Series(id_map.reindex(mapped.index).values, index=keys, dtype=object))
        keyed_totals.append(pd.Series(mapped.sum(axis=1).values, index=keys, dtype=float))

    if keyed_symbols:
        symbols = pd.concat(keyed_symbols)
        symbols = symbols[~symbols.index.duplicated(keep="first")]
        totals = pd.concat(keyed_totals).groupby(level=0, sort=False).sum()
    else:
        symbols, totals = pd.Series(dtype=object), pd.Series(dtype=float)
    keep_keys = select_duplicate_keepers(symbols, totals, duplicate_policy)

    mapped_counts = {}
    for label, counts in count_matrices.items():
        mapped_counts[label], _ = apply_identifier_map(
            counts, id_maps[label], duplicate_policy, report=reports[label], keep_keys=keep_keys
        )
    return mapped_counts, reports
