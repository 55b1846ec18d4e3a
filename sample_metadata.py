"""
Sample metadata loading for the saliva RNA-seq study.

Each sample record is keyed by a composite code built from its identifying
fields. That code is the join key between metadata rows and count-matrix
columns, so it must be unique.
"""

import logging
from pathlib import Path
from typing import Dict, List, Union

import pandas as pd

from errors import MissingInputError, SchemaMismatchError

logger = logging.getLogger(__name__)

SAMPLE_ID = "SampleID"
PRODUCT = "Product"
TISSUE = "Tissue"
TIMEPOINT = "Timepoint"
FORTIFICATION = "Fortification"

REQUIRED_COLUMNS = [SAMPLE_ID, PRODUCT, TISSUE, TIMEPOINT, FORTIFICATION]

# Fields joined (in this order) into the composite sample code
CODE_FIELDS = [SAMPLE_ID, PRODUCT, TISSUE, TIMEPOINT]

CODE_COLUMN = "sample_code"


def _read_table(path: Path) -> pd.DataFrame:
    sep = "," if path.suffix.lower() == ".csv" else "\t"
    return pd.read_csv(path, sep=sep, dtype=str)


def make_sample_code(metadata: pd.DataFrame, separator: str = "_") -> pd.Series:
    """Join the identifying fields of every record into its composite code."""
    parts = [metadata[col].astype(str).str.strip() for col in CODE_FIELDS]
    code = parts[0]
    for part in parts[1:]:
        code = code + separator + part
    return code


def load_sample_metadata(path: Union[str, Path], separator: str = "_") -> pd.DataFrame:
    """
    Load per-sample metadata and derive composite sample codes.

    Args:
        path: Metadata table (.csv comma-separated, anything else tab-separated)
        separator: String placed between fields of the composite code

    Returns:
        DataFrame indexed by composite code, factor columns as category dtype

    Raises:
        MissingInputError: If the file or any required column is absent
        SchemaMismatchError: If two records produce the same composite code
    """
    path = Path(path)
    if not path.exists():
        raise MissingInputError(f"Sample metadata not found: {path}", {"path": str(path)})

    df = _read_table(path)
    df.columns = [str(c).strip() for c in df.columns]

    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise MissingInputError(
            f"Sample metadata {path.name} is missing required columns: {missing}",
            {"path": str(path), "missing_columns": missing},
        )

    for col in REQUIRED_COLUMNS:
        df[col] = df[col].str.strip().astype("category")

    codes = make_sample_code(df, separator)
    duplicated = sorted(codes[codes.duplicated()].unique())
    if duplicated:
        raise SchemaMismatchError(
            f"Composite sample codes are not unique: {duplicated}",
            {"duplicates": duplicated},
        )

    df.index = pd.Index(codes, name=CODE_COLUMN)
    logger.info(f"Loaded {len(df)} sample records from {path.name}")
    return df


def filter_by_tissue(metadata: pd.DataFrame, tissue: str = "Saliva") -> pd.DataFrame:
    """Keep records of one tissue type; unused factor levels are dropped."""
    subset = metadata[metadata[TISSUE] == tissue].copy()
    for col in subset.select_dtypes(include="category").columns:
        subset[col] = subset[col].cat.remove_unused_categories()
    logger.info(f"{len(subset)} of {len(metadata)} samples are {tissue}")
    return subset


def load_sample_names(path: Union[str, Path]) -> pd.DataFrame:
    """Read the descriptive-name table (one row per sample-subject pair)."""
    path = Path(path)
    if not path.exists():
        raise MissingInputError(f"Sample name table not found: {path}", {"path": str(path)})

    names = _read_table(path)
    names.columns = [str(c).strip() for c in names.columns]
    if SAMPLE_ID not in names.columns:
        raise MissingInputError(
            f"Sample name table {path.name} has no {SAMPLE_ID} column",
            {"path": str(path), "missing_columns": [SAMPLE_ID]},
        )
    return names


def attach_sample_names(metadata: pd.DataFrame, names: pd.DataFrame) -> pd.DataFrame:
    """
    Join descriptive names onto sample records by sample identifier.

    Columns already present in the metadata are not overwritten.

    Raises:
        SchemaMismatchError: If a sample identifier maps to several name rows,
            which would duplicate composite codes
    """
    names = names.copy()
    names[SAMPLE_ID] = names[SAMPLE_ID].astype(str).str.strip()

    repeated = sorted(names.loc[names[SAMPLE_ID].duplicated(), SAMPLE_ID].unique())
    if repeated:
        raise SchemaMismatchError(
            f"Sample names table lists these samples more than once: {repeated}",
            {"duplicates": repeated},
        )

    names = names.set_index(SAMPLE_ID)
    sample_ids = metadata[SAMPLE_ID].astype(str)
    joined = metadata.copy()
    for col in names.columns:
        if col not in joined.columns:
            joined[col] = sample_ids.map(names[col])

    unnamed = sorted(set(sample_ids) - set(names.index))
    if unnamed:
        logger.warning(f"{len(unnamed)} sample(s) have no descriptive name: {unnamed}")
    return joined


def count_samples_per_level(metadata: pd.DataFrame, factor: str) -> Dict[str, int]:
    """Count how many samples carry each level of a factor."""
    counts = metadata[factor].value_counts(sort=False)
    return {str(level): int(n) for level, n in counts.items() if n > 0}


def validate_design_levels(
    metadata: pd.DataFrame, factor: str, min_samples: int = 2
) -> List[str]:
    """
    Check a factor is usable in a design.

    Returns:
        List of problems; empty when the factor has at least two levels and
        every level has at least `min_samples` samples.
    """
    if factor not in metadata.columns:
        return [f"Factor '{factor}' is not a metadata column"]

    errors = []
    counts = count_samples_per_level(metadata, factor)
    if len(counts) < 2:
        errors.append(f"Factor '{factor}' has {len(counts)} level(s), need at least 2")
    for level, n in counts.items():
        if n < min_samples:
            errors.append(
                f"Level '{level}' of '{factor}' has only {n} sample(s), need at least {min_samples}"
            )
    return errors


def build_quant_file_map(
    metadata: pd.DataFrame,
    quant_dir: Union[str, Path],
    subfolder: str = "{SampleID}",
    filename: str = "quant.sf",
) -> Dict[str, Path]:
    """
    Map each composite sample code to its quantification file.

    Args:
        metadata: Sample records indexed by composite code
        quant_dir: Base directory holding one subfolder per sample
        subfolder: Template over metadata columns naming the sample subfolder
        filename: Quantification file name inside the subfolder

    Returns:
        Dict of composite code -> <quant_dir>/<subfolder>/<filename>
    """
    base = Path(quant_dir)
    file_map = {}
    for code, row in metadata.iterrows():
        fields = {str(k): str(v) for k, v in row.items()}
        fields[CODE_COLUMN] = str(code)
        try:
            folder = subfolder.format(**fields)
        except KeyError as e:
            raise MissingInputError(
                f"Quantification subfolder template refers to unknown column {e}",
                {"template": subfolder},
            ) from e
        file_map[str(code)] = base / folder / filename
    return file_map
