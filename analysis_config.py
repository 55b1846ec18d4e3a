"""
Configuration for a differential expression run.

Settings live in a YAML file (see config/analysis.yaml). Relative paths are
resolved against the directory holding that file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
import yaml

from de_analysis import ContrastSpec, DesignSpec
from errors import ConfigurationError

COUNTS_FROM_ABUNDANCE_OPTIONS = ("no", "scaledTPM", "lengthScaledTPM")


@dataclass
class AnnotationSettings:
    """Where the transcript -> gene map comes from."""

    build: str = "GRCh38"
    tx2gene: Optional[Path] = None
    gtf: Optional[Path] = None
    cache_dir: Optional[Path] = None
    ignore_tx_version: bool = True


@dataclass
class AnalysisSpec:
    """One design, fitted once, with the contrasts derived from it."""

    name: str
    design: DesignSpec
    contrasts: List[ContrastSpec] = field(default_factory=list)
    shrink: List[str] = field(default_factory=list)  # coefficients to test and shrink


@dataclass
class AnalysisConfig:
    """Complete settings for one batch run."""

    metadata: Path
    quant_dir: Path
    output_dir: Path
    annotation: AnnotationSettings
    analyses: List[AnalysisSpec]
    sample_names: Optional[Path] = None
    quant_subfolder: str = "{SampleID}"
    quant_filename: str = "quant.sf"
    tissue: str = "Saliva"
    code_separator: str = "_"
    counts_from_abundance: str = "lengthScaledTPM"
    min_total_count: int = 10
    n_cpus: int = 3
    alpha: float = 0.05
    padj_thresholds: Tuple[float, ...] = (0.1, 0.05)
    write_full_tables: bool = True
    workbook: bool = True
    ma_plot: bool = False
    ma_plot_format: str = "png"
    ma_plot_ylim: Tuple[float, float] = (-2.0, 2.0)


def _resolve(base_dir: Path, value: Optional[str]) -> Optional[Path]:
    if value is None or value == "":
        return None
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_dir / path


def check_padj_thresholds(values: Any) -> Tuple[float, ...]:
    """Thresholds as floats, each in (0, 1]."""
    thresholds = tuple(float(t) for t in values)
    if not thresholds or any(not 0 < t <= 1 for t in thresholds):
        raise ConfigurationError(
            f"padj_thresholds must lie in (0, 1], got {list(thresholds)}",
            {"padj_thresholds": list(thresholds)},
        )
    return thresholds


def _parse_contrast(entry: Any, analysis: str) -> ContrastSpec:
    if isinstance(entry, (list, tuple)) and len(entry) == 3:
        return ContrastSpec(*(str(v) for v in entry))
    if isinstance(entry, dict) and {"factor", "numerator", "denominator"} <= set(entry):
        return ContrastSpec(
            factor=str(entry["factor"]),
            numerator=str(entry["numerator"]),
            denominator=str(entry["denominator"]),
            name=entry.get("name"),
        )
    raise ConfigurationError(
        f"Analysis '{analysis}': contrast must be [factor, numerator, denominator] "
        f"or a mapping with those keys, got {entry!r}",
        {"analysis": analysis},
    )


def _parse_analysis(entry: Dict[str, Any]) -> AnalysisSpec:
    name = entry.get("name")
    if not name:
        raise ConfigurationError("Every analysis needs a name", {"entry": entry})

    references = tuple(
        (str(k), str(v)) for k, v in (entry.get("reference_levels") or {}).items()
    )
    interaction = entry.get("interaction")
    if interaction is not None:
        if len(interaction) != 2:
            raise ConfigurationError(
                f"Analysis '{name}': interaction needs exactly two factors",
                {"analysis": name, "interaction": interaction},
            )
        group = entry.get("group_name", "group")
        design = DesignSpec(
            formula=f"~{group}",
            reference_levels=references,
            interaction=(str(interaction[0]), str(interaction[1])),
            group_name=group,
            group_sep=entry.get("group_sep", "."),
        )
    elif entry.get("design"):
        design = DesignSpec(formula=str(entry["design"]), reference_levels=references)
    else:
        raise ConfigurationError(
            f"Analysis '{name}' needs either a design formula or an interaction pair",
            {"analysis": name},
        )

    contrasts = [_parse_contrast(c, name) for c in entry.get("contrasts") or []]
    labels = [c.label for c in contrasts]
    duplicated = sorted({label for label in labels if labels.count(label) > 1})
    if duplicated:
        raise ConfigurationError(
            f"Analysis '{name}' has contrasts sharing a name: {duplicated}; "
            "set a distinct 'name' on each",
            {"analysis": name, "duplicate_labels": duplicated},
        )
    shrink = [str(c) for c in entry.get("shrink") or []]
    if not contrasts and not shrink:
        raise ConfigurationError(
            f"Analysis '{name}' defines no contrasts", {"analysis": name}
        )
    return AnalysisSpec(name=str(name), design=design, contrasts=contrasts, shrink=shrink)


def config_from_dict(data: Dict[str, Any], base_dir: Union[str, Path] = ".") -> AnalysisConfig:
    """Build an AnalysisConfig from parsed YAML content."""
    base_dir = Path(base_dir)
    missing = [key for key in ("metadata", "quant_dir", "output_dir", "analyses") if not data.get(key)]
    if missing:
        raise ConfigurationError(
            f"Configuration is missing required keys: {missing}", {"missing_keys": missing}
        )

    counts_mode = data.get("counts_from_abundance", "lengthScaledTPM")
    if counts_mode not in COUNTS_FROM_ABUNDANCE_OPTIONS:
        raise ConfigurationError(
            f"counts_from_abundance must be one of {COUNTS_FROM_ABUNDANCE_OPTIONS}, got '{counts_mode}'",
            {"counts_from_abundance": counts_mode},
        )

    thresholds = check_padj_thresholds(data.get("padj_thresholds", (0.1, 0.05)))

    ann = data.get("annotation") or {}
    annotation = AnnotationSettings(
        build=str(ann.get("build", "GRCh38")),
        tx2gene=_resolve(base_dir, ann.get("tx2gene")),
        gtf=_resolve(base_dir, ann.get("gtf")),
        cache_dir=_resolve(base_dir, ann.get("cache_dir")),
        ignore_tx_version=bool(ann.get("ignore_tx_version", True)),
    )

    analyses = [_parse_analysis(entry) for entry in data["analyses"]]
    names = [a.name for a in analyses]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Analysis names must be unique: {names}", {"analyses": names})

    plot = data.get("ma_plot") or {}
    return AnalysisConfig(
        metadata=_resolve(base_dir, data["metadata"]),
        quant_dir=_resolve(base_dir, data["quant_dir"]),
        output_dir=_resolve(base_dir, data["output_dir"]),
        annotation=annotation,
        analyses=analyses,
        sample_names=_resolve(base_dir, data.get("sample_names")),
        quant_subfolder=data.get("quant_subfolder", "{SampleID}"),
        quant_filename=data.get("quant_filename", "quant.sf"),
        tissue=data.get("tissue", "Saliva"),
        code_separator=data.get("code_separator", "_"),
        counts_from_abundance=counts_mode,
        min_total_count=int(data.get("min_total_count", 10)),
        n_cpus=int(data.get("n_cpus", 3)),
        alpha=float(data.get("alpha", 0.05)),
        padj_thresholds=thresholds,
        write_full_tables=bool(data.get("write_full_tables", True)),
        workbook=bool(data.get("workbook", True)),
        ma_plot=bool(plot.get("enabled", False)),
        ma_plot_format=str(plot.get("format", "png")).lstrip("."),
        ma_plot_ylim=tuple(float(v) for v in plot.get("ylim", (-2.0, 2.0))),
    )


def load_config(config_path: Union[str, Path]) -> AnalysisConfig:
    """
    Load run settings from a YAML file.

    Args:
        config_path: Path to YAML config file

    Returns:
        AnalysisConfig with paths resolved against the file's directory

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigurationError: If the content is malformed
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Analysis config not found: {config_path}")

    with open(config_file, "r") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ConfigurationError(f"Analysis config {config_path} is not a mapping")
    return config_from_dict(data, base_dir=config_file.resolve().parent)
