"""
Import of per-sample Salmon quantifications and aggregation to gene level.

Aggregation follows tximport: gene counts and abundances are per-gene sums,
gene lengths are abundance-weighted averages of transcript effective lengths,
and counts may be regenerated from abundance so that a gene's count does not
shift with isoform usage between samples.

Matrices are features × samples, columns keyed by composite sample code.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Union

import numpy as np
import pandas as pd

from annotation import strip_version
from errors import MissingInputError, SchemaMismatchError

logger = logging.getLogger(__name__)

QUANT_COLUMNS = ["Name", "Length", "EffectiveLength", "TPM", "NumReads"]

COUNTS_FROM_ABUNDANCE = ("no", "scaledTPM", "lengthScaledTPM")


@dataclass
class QuantImport:
    """Abundance estimates for one set of samples."""

    counts: pd.DataFrame  # features × samples, estimated (or regenerated) counts
    abundance: pd.DataFrame  # features × samples, TPM
    length: pd.DataFrame  # features × samples, effective length
    counts_from_abundance: str  # one of COUNTS_FROM_ABUNDANCE
    level: str  # "gene" or "transcript"
    warnings: List[str] = field(default_factory=list)


def check_quant_files(file_map: Dict[str, Union[str, Path]]) -> None:
    """
    Verify every quantification file exists before anything is read.

    Raises:
        MissingInputError: Naming every missing path
    """
    missing = {code: str(path) for code, path in file_map.items() if not Path(path).is_file()}
    if missing:
        paths = list(missing.values())
        raise MissingInputError(
            f"{len(missing)} quantification file(s) not found: {', '.join(paths)}",
            {"missing_files": missing},
        )


def read_quant_file(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read one quant.sf file.

    Returns:
        DataFrame indexed by transcript id with Length, EffectiveLength, TPM, NumReads
    """
    df = pd.read_csv(path, sep="\t")
    missing = [c for c in QUANT_COLUMNS if c not in df.columns]
    if missing:
        raise MissingInputError(
            f"Quantification file {path} is missing columns: {missing}",
            {"path": str(path), "missing_columns": missing},
        )
    df["Name"] = df["Name"].astype(str)
    return df.set_index("Name")[QUANT_COLUMNS[1:]]


def import_transcript_quant(file_map: Dict[str, Union[str, Path]]) -> QuantImport:
    """Load every sample's transcript-level estimates into aligned matrices."""
    counts, abundance, length = {}, {}, {}
    for code, path in file_map.items():
        quant = read_quant_file(path)
        counts[code] = quant["NumReads"]
        abundance[code] = quant["TPM"]
        length[code] = quant["EffectiveLength"]
        logger.debug(f"Read {len(quant)} transcripts for {code} from {path}")

    counts_df = pd.concat(counts, axis=1)
    if counts_df.isna().any().any():
        raise SchemaMismatchError(
            "Quantification files do not list the same transcripts",
            {"samples": list(file_map)},
        )
    counts_df.index.name = "transcript_id"

    return QuantImport(
        counts=counts_df,
        abundance=pd.concat(abundance, axis=1).loc[counts_df.index],
        length=pd.concat(length, axis=1).loc[counts_df.index],
        counts_from_abundance="no",
        level="transcript",
    )


def make_counts_from_abundance(
    counts: pd.DataFrame,
    abundance: pd.DataFrame,
    length: pd.DataFrame,
    method: str = "lengthScaledTPM",
) -> pd.DataFrame:
    """
    Regenerate counts from abundance.

    "scaledTPM" scales TPM up to each sample's library size; "lengthScaledTPM"
    first multiplies TPM by the feature's average length across samples.
    """
    if method not in COUNTS_FROM_ABUNDANCE:
        raise ValueError(
            f"counts_from_abundance must be one of {COUNTS_FROM_ABUNDANCE}, got '{method}'"
        )
    if method == "no":
        return counts

    if method == "lengthScaledTPM":
        new_counts = abundance.mul(length.mean(axis=1), axis=0)
    else:
        new_counts = abundance.copy()

    ratio = counts.sum(axis=0) / new_counts.sum(axis=0)
    ratio = ratio.replace([np.inf, -np.inf], np.nan).fillna(0.0)
    return new_counts.mul(ratio, axis=1)


def _replace_missing_length(length: pd.DataFrame, fallback: pd.Series) -> pd.DataFrame:
    # Genes with zero abundance in a sample have no weighted length there
    with np.errstate(divide="ignore"):
        log_length = np.log(length)
    geometric = np.exp(log_length.mean(axis=1, skipna=True)).fillna(fallback)
    return length.where(length.notna(), geometric, axis=0)


def summarize_to_gene(
    tx_quant: QuantImport,
    tx2gene: pd.DataFrame,
    counts_from_abundance: str = "lengthScaledTPM",
    ignore_version: bool = False,
) -> QuantImport:
    """
    Aggregate transcript-level estimates to genes.

    Args:
        tx_quant: Transcript-level import
        tx2gene: DataFrame with transcript_id, gene_id columns
        counts_from_abundance: "no", "scaledTPM" or "lengthScaledTPM"
        ignore_version: Strip version suffixes from quantified transcript ids

    Returns:
        Gene-level QuantImport

    Raises:
        SchemaMismatchError: If no quantified transcript is in the map
    """
    mapping = tx2gene.drop_duplicates("transcript_id").set_index("transcript_id")["gene_id"]

    tx_ids = tx_quant.counts.index.to_series()
    lookup_ids = strip_version(tx_ids) if ignore_version else tx_ids
    gene_of = lookup_ids.map(mapping)

    warnings = list(tx_quant.warnings)
    matched = gene_of.notna()
    if not matched.any():
        raise SchemaMismatchError(
            "None of the quantified transcripts are present in the transcript-to-gene map",
            {"example_transcripts": tx_ids.head(5).tolist()},
        )
    n_unmatched = int((~matched).sum())
    if n_unmatched:
        msg = f"{n_unmatched} transcript(s) missing from the transcript-to-gene map were dropped"
        logger.warning(msg)
        warnings.append(msg)

    gene_of = gene_of[matched]
    keep = gene_of.index
    counts = tx_quant.counts.loc[keep].groupby(gene_of).sum()
    abundance = tx_quant.abundance.loc[keep].groupby(gene_of).sum()
    weighted = (tx_quant.abundance.loc[keep] * tx_quant.length.loc[keep]).groupby(gene_of).sum()
    length = weighted / abundance

    mean_tx_length = tx_quant.length.loc[keep].mean(axis=1).groupby(gene_of).mean()
    length = _replace_missing_length(length, mean_tx_length)

    for frame in (counts, abundance, length):
        frame.index.name = "gene_id"

    counts = make_counts_from_abundance(counts, abundance, length, counts_from_abundance)
    logger.info(
        f"Summarized {len(keep)} transcripts to {len(counts)} genes ({counts_from_abundance})"
    )
    return QuantImport(
        counts=counts,
        abundance=abundance,
        length=length,
        counts_from_abundance=counts_from_abundance,
        level="gene",
        warnings=warnings,
    )


def import_quant(
    file_map: Dict[str, Union[str, Path]],
    tx2gene: pd.DataFrame,
    counts_from_abundance: str = "lengthScaledTPM",
    tx_out: bool = False,
    ignore_version: bool = False,
) -> QuantImport:
    """
    Check, read and aggregate the quantification files of a sample set.

    Args:
        file_map: Composite sample code -> quant.sf path
        tx2gene: Transcript -> gene map
        counts_from_abundance: "no", "scaledTPM" or "lengthScaledTPM"
        tx_out: Return transcript-level values instead of gene-level
        ignore_version: Strip version suffixes before mapping

    Raises:
        MissingInputError: If any file is missing (nothing is read in that case)
    """
    if counts_from_abundance not in COUNTS_FROM_ABUNDANCE:
        raise ValueError(
            f"counts_from_abundance must be one of {COUNTS_FROM_ABUNDANCE}, got '{counts_from_abundance}'"
        )
    check_quant_files(file_map)
    tx_quant = import_transcript_quant(file_map)

    if tx_out:
        return QuantImport(
            counts=make_counts_from_abundance(
                tx_quant.counts, tx_quant.abundance, tx_quant.length, counts_from_abundance
            ),
            abundance=tx_quant.abundance,
            length=tx_quant.length,
            counts_from_abundance=counts_from_abundance,
            level="transcript",
        )

    return summarize_to_gene(
        tx_quant, tx2gene, counts_from_abundance, ignore_version=ignore_version
    )
