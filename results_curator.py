"""
Curation and export of per-contrast result tables.

Significant-gene tables are sorted by adjusted p-value (undefined values
last), filtered strictly below a threshold and written as CSV, one file per
contrast and threshold.
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Sequence, Union

import pandas as pd

from de_analysis import ContrastResult
from errors import ExportError

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = (0.1, 0.05)


def sort_by_padj(results_df: pd.DataFrame) -> pd.DataFrame:
    """Ascending adjusted p-value; genes with undefined padj go last."""
    return results_df.sort_values("padj", ascending=True, na_position="last", kind="mergesort")


def filter_significant(results_df: pd.DataFrame, threshold: float) -> pd.DataFrame:
    """Rows with padj strictly below threshold; undefined padj never passes."""
    padj = results_df["padj"]
    return results_df[padj.notna() & (padj < threshold)]


def significance_flags(
    results_df: pd.DataFrame, thresholds: Sequence[float] = DEFAULT_THRESHOLDS
) -> pd.DataFrame:
    """Copy of the table with one boolean padj_lt_<threshold> column per threshold."""
    flagged = results_df.copy()
    for threshold in thresholds:
        flagged[f"padj_lt_{threshold:g}"] = results_df["padj"].notna() & (
            results_df["padj"] < threshold
        )
    return flagged


def _safe_token(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._+-]+", "-", str(value)).strip("-")


def contrast_stem(analysis: str, numerator: str, denominator: str) -> str:
    return f"{_safe_token(analysis)}_{_safe_token(numerator)}_vs_{_safe_token(denominator)}"


def results_filename(analysis: str, numerator: str, denominator: str, threshold: float) -> str:
    """e.g. timepoint_Final_vs_Initial_padj0.1_results.csv"""
    return f"{contrast_stem(analysis, numerator, denominator)}_padj{threshold:g}_results.csv"


def _write_csv(df: pd.DataFrame, path: Path) -> Path:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, index=True, index_label="gene_id")
    except OSError as e:
        raise ExportError(f"Cannot write results to {path}: {e}", {"path": str(path)}) from e
    return path


def export_significant(
    result: ContrastResult, path: Union[str, Path], threshold: float
) -> Path:
    """
    Write the significant genes of one contrast, most significant first.

    Raises:
        ExportError: If the path cannot be written
    """
    table = filter_significant(sort_by_padj(result.results_df), threshold)
    path = _write_csv(table, Path(path))
    logger.info(f"{result.name}: wrote {len(table)} genes with padj < {threshold:g} to {path}")
    return path


def export_contrast(
    result: ContrastResult,
    output_dir: Union[str, Path],
    analysis: str,
    thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
    write_full_table: bool = False,
) -> List[Path]:
    """
    Export one contrast: a significant-gene file per threshold, optionally the full table.

    Returns:
        Paths written, in threshold order (full table last)
    """
    output_dir = Path(output_dir)
    spec = result.contrast
    written = []
    for threshold in thresholds:
        name = results_filename(analysis, spec.numerator, spec.denominator, threshold)
        written.append(export_significant(result, output_dir / name, threshold))

    if write_full_table:
        full_name = f"{contrast_stem(analysis, spec.numerator, spec.denominator)}_all_results.csv"
        table = significance_flags(sort_by_padj(result.results_df), thresholds)
        written.append(_write_csv(table, output_dir / full_name))
    return written


def sanitize_sheet_name(name: str, max_length: int = 31) -> str:
    """
    Sanitize sheet name for Excel compatibility.

    Excel sheet names are at most 31 characters, cannot contain [ ] : * ? / \\
    and cannot start or end with a quote.
    """
    name = re.sub(r"[\[\]:*?/\\]", "_", name)
    name = name.strip("'")
    return name[:max_length]


def export_workbook(
    results: Dict[str, ContrastResult],
    filepath: Union[str, Path],
    settings: Dict[str, Any],
) -> Path:
    """
    Write every contrast's full table to one Excel workbook.

    Sheets: one per contrast (keyed "<analysis>/<contrast>" in `results`),
    followed by a Settings sheet listing `settings` and each contrast's
    definition.
    """
    path = Path(filepath)
    used = set()
    rows = [["Setting", "Value"]] + [[k, str(v)] for k, v in settings.items()]
    rows.append(["", ""])
    rows.append(["Sheet", "Contrast"])
    try:
        with pd.ExcelWriter(path, engine="openpyxl") as writer:
            for key, result in results.items():
                sheet = sanitize_sheet_name(key.replace("/", "_"))
                suffix = 1
                while sheet in used:
                    suffix += 1
                    sheet = sanitize_sheet_name(key.replace("/", "_"), 28) + f"~{suffix}"
                used.add(sheet)
                sort_by_padj(result.results_df).to_excel(
                    writer, sheet_name=sheet, index=True, index_label="gene_id"
                )
                spec = result.contrast
                shrunk = " (shrunk)" if result.shrunk else ""
                rows.append(
                    [sheet, f"{spec.factor}: {spec.numerator} vs {spec.denominator}{shrunk}"]
                )
            pd.DataFrame(rows).to_excel(writer, sheet_name="Settings", index=False, header=False)
    except OSError as e:
        raise ExportError(f"Cannot write workbook to {path}: {e}", {"path": str(path)}) from e
    logger.info(f"Wrote {len(results)} contrast sheet(s) to {path}")
    return path
