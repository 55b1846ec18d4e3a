"""
Reference annotation provider: transcript -> gene maps keyed by genome build.

A map is read from an explicit table, from a per-build cache, or built once
from the transcript records of a GTF file and cached under the build id.
"""

import gzip
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from errors import MissingInputError

logger = logging.getLogger(__name__)

CACHE_DIR = Path.home() / ".saliva_de" / "annotation"

TX2GENE_COLUMNS = ["transcript_id", "gene_id"]

GTF_COLUMNS = [
    "seqname", "source", "feature", "start", "end",
    "score", "strand", "frame", "attribute",
]


def strip_version(ids: pd.Series) -> pd.Series:
    """Drop Ensembl-style version suffixes (ENST00000456328.2 -> ENST00000456328)."""
    return ids.astype(str).str.replace(r"\.\d+$", "", regex=True)


def _finalize(df: pd.DataFrame, ignore_version: bool) -> pd.DataFrame:
    df = df[TX2GENE_COLUMNS].dropna().astype(str)
    if ignore_version:
        df = df.assign(transcript_id=strip_version(df["transcript_id"]))
    df = df.drop_duplicates(subset="transcript_id").reset_index(drop=True)
    return df


def read_tx2gene(path: Union[str, Path], ignore_version: bool = False) -> pd.DataFrame:
    """
    Read a transcript -> gene table.

    Tab-separated unless the suffix is .csv. Columns named transcript_id and
    gene_id are used when present, otherwise the first two columns.

    Args:
        path: Table path
        ignore_version: Strip version suffixes from transcript ids

    Returns:
        DataFrame with columns transcript_id, gene_id

    Raises:
        MissingInputError: If the file is absent or has fewer than two columns
    """
    path = Path(path)
    if not path.exists():
        raise MissingInputError(
            f"Transcript-to-gene table not found: {path}", {"path": str(path)}
        )

    sep = "," if path.suffix.lower() == ".csv" else "\t"
    df = pd.read_csv(path, sep=sep, dtype=str)

    if not set(TX2GENE_COLUMNS).issubset(df.columns):
        if df.shape[1] < 2:
            raise MissingInputError(
                f"Transcript-to-gene table needs two columns: {path}",
                {"path": str(path), "columns": list(df.columns)},
            )
        df = df.iloc[:, :2]
        df.columns = TX2GENE_COLUMNS

    return _finalize(df, ignore_version)


def parse_gtf_attributes(attribute_series: pd.Series, target_keys: List[str]) -> pd.DataFrame:
    """
    Parse the GTF attribute field into a DataFrame with the requested keys.

    Attribute strings look like: gene_id "ENSG..."; transcript_id "ENST...";
    """
    rows: List[Dict[str, Optional[str]]] = []
    for raw in attribute_series.fillna("").astype(str):
        row: Dict[str, Optional[str]] = {k: None for k in target_keys}
        for field in raw.strip().split(";"):
            parts = field.strip().split(" ", 1)
            if len(parts) != 2:
                continue
            key, value = parts[0], parts[1].strip().strip('"')
            if key in row:
                row[key] = value
        rows.append(row)
    return pd.DataFrame(rows, columns=target_keys)


def tx2gene_from_gtf(gtf_path: Union[str, Path], ignore_version: bool = False) -> pd.DataFrame:
    """Build a transcript -> gene map from the transcript records of a GTF (.gtf or .gtf.gz)."""
    gtf_path = Path(gtf_path)
    if not gtf_path.exists():
        raise MissingInputError(f"GTF file not found: {gtf_path}", {"path": str(gtf_path)})

    opener = gzip.open if gtf_path.suffix == ".gz" else open
    with opener(gtf_path, "rt") as handle:
        gtf = pd.read_csv(
            handle, sep="\t", comment="#", header=None, names=GTF_COLUMNS, dtype=str
        )

    transcripts = gtf.loc[gtf["feature"] == "transcript", "attribute"]
    attrs = parse_gtf_attributes(transcripts, TX2GENE_COLUMNS)
    tx2gene = _finalize(attrs, ignore_version)
    logger.info(
        f"Parsed {len(tx2gene)} transcripts across {tx2gene['gene_id'].nunique()} genes from {gtf_path.name}"
    )
    return tx2gene


def cache_path(build: str, cache_dir: Union[str, Path] = CACHE_DIR) -> Path:
    """Cache file location for one genome build."""
    safe_build = "".join(c if c.isalnum() or c in "._-" else "_" for c in build)
    return Path(cache_dir) / f"{safe_build}_tx2gene.tsv"


def load_reference_annotation(
    build: str,
    tx2gene_path: Optional[Union[str, Path]] = None,
    gtf_path: Optional[Union[str, Path]] = None,
    cache_dir: Union[str, Path] = CACHE_DIR,
    ignore_version: bool = False,
) -> pd.DataFrame:
    """
    Resolve the transcript -> gene map for a genome build.

    Resolution order: explicit table, cached table for the build, GTF
    (cached for the next run).

    Args:
        build: Organism build identifier, e.g. "GRCh38.ensembl105"
        tx2gene_path: Optional explicit transcript -> gene table
        gtf_path: Optional GTF used when no table or cache exists
        cache_dir: Directory holding per-build cached tables
        ignore_version: Strip version suffixes from transcript ids

    Returns:
        DataFrame with columns transcript_id, gene_id

    Raises:
        MissingInputError: If no source resolves for the build
    """
    if tx2gene_path is not None:
        logger.info(f"Loading transcript-to-gene map from {tx2gene_path}")
        return read_tx2gene(tx2gene_path, ignore_version=ignore_version)

    cached = cache_path(build, cache_dir)
    if cached.exists():
        logger.info(f"Using cached transcript-to-gene map for {build}: {cached}")
        return read_tx2gene(cached, ignore_version=ignore_version)

    if gtf_path is None:
        raise MissingInputError(
            f"No transcript-to-gene source for build '{build}': "
            "provide a tx2gene table or a GTF file",
            {"build": build, "cache": str(cached)},
        )

    tx2gene = tx2gene_from_gtf(gtf_path, ignore_version=ignore_version)
    cached.parent.mkdir(parents=True, exist_ok=True)
    tx2gene.to_csv(cached, sep="\t", index=False)
    logger.debug(f"Cached transcript-to-gene map at {cached}")
    return tx2gene
