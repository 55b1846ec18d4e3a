"""
Batch orchestration of the saliva differential expression run.

annotation -> sample metadata -> quantification files -> gene counts ->
one fitted model per configured analysis -> contrasts -> exported tables.

Structural errors (missing inputs, misaligned keys, bad counts) abort the run.
A contrast that cannot be derived is recorded in the report and the run
continues.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from analysis_config import AnalysisConfig, AnalysisSpec
from annotation import CACHE_DIR, cache_path, load_reference_annotation
from de_analysis import ContrastResult, DEAnalysisEngine
from errors import ContrastNotFoundError, MissingInputError, SchemaMismatchError
from quant_importer import import_quant
from results_curator import contrast_stem, export_contrast, export_workbook
from sample_metadata import (
    attach_sample_names,
    build_quant_file_map,
    count_samples_per_level,
    filter_by_tissue,
    load_sample_metadata,
    load_sample_names,
    validate_design_levels,
)
from visualizations import create_ma_plot, save_figure

logger = logging.getLogger(__name__)

SUMMARY_FILENAME = "run_summary.json"
WORKBOOK_FILENAME = "de_results.xlsx"
PIPELINE_VERSION = "1.0.0"


@dataclass
class ContrastSummary:
    """Outcome of one contrast (or shrunk coefficient) of an analysis."""

    name: str
    factor: str
    numerator: str
    denominator: str
    shrunk: bool = False
    n_significant: Dict[str, int] = field(default_factory=dict)  # threshold -> genes
    files: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class AnalysisSummary:
    """Outcome of one fitted design."""

    name: str
    formula: str
    n_genes_tested: int = 0
    n_genes_filtered: int = 0
    contrasts: List[ContrastSummary] = field(default_factory=list)


@dataclass
class PipelineReport:
    """What a run produced: per analysis, per contrast counts, files and failures."""

    n_samples: int = 0
    n_genes: int = 0
    counts_from_abundance: str = "lengthScaledTPM"
    analyses: List[AnalysisSummary] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def failures(self) -> List[Tuple[str, str, str]]:
        """(analysis, contrast, error) for every contrast that could not be derived."""
        return [
            (analysis.name, contrast.name, contrast.error)
            for analysis in self.analyses
            for contrast in analysis.contrasts
            if contrast.error
        ]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["failures"] = [list(f) for f in self.failures]
        data["_meta"] = {
            "pipeline_version": PIPELINE_VERSION,
            "written_at": datetime.now().isoformat(),
        }
        return data

    def write_json(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, default=str))
        return path


def load_samples(config: AnalysisConfig) -> pd.DataFrame:
    """Sample records of the configured tissue, with descriptive names when configured."""
    metadata = load_sample_metadata(config.metadata, separator=config.code_separator)
    metadata = filter_by_tissue(metadata, config.tissue)
    if metadata.empty:
        raise MissingInputError(
            f"No samples with tissue '{config.tissue}' in {config.metadata}",
            {"tissue": config.tissue},
        )
    if config.sample_names is not None:
        metadata = attach_sample_names(metadata, load_sample_names(config.sample_names))
    return metadata


def quant_file_map(config: AnalysisConfig, metadata: pd.DataFrame) -> Dict[str, Path]:
    return build_quant_file_map(
        metadata,
        config.quant_dir,
        subfolder=config.quant_subfolder,
        filename=config.quant_filename,
    )


def check_design_factors(metadata: pd.DataFrame, analysis: AnalysisSpec) -> List[str]:
    """
    Level problems of an analysis' source factors.

    Returns:
        Messages for levels with fewer than two samples (fitting still works)

    Raises:
        SchemaMismatchError: If a factor is absent or has fewer than two levels
    """
    notes = []
    for factor in analysis.design.source_factors:
        if factor not in metadata.columns or len(count_samples_per_level(metadata, factor)) < 2:
            raise SchemaMismatchError(
                f"Analysis '{analysis.name}': factor '{factor}' needs at least two "
                f"levels among the selected samples",
                {"analysis": analysis.name, "factor": factor},
            )
        notes.extend(validate_design_levels(metadata, factor, min_samples=2))
    return notes


def validate_inputs(config: AnalysisConfig) -> List[str]:
    """
    Check that a run could start, without reading counts or fitting.

    Returns:
        Problems found (missing annotation source, missing quantification
        files, unusable design factors); empty when the run can start.
    """
    problems = []

    ann = config.annotation
    cached = cache_path(ann.build, ann.cache_dir or CACHE_DIR)
    sources = [p for p in (ann.tx2gene, cached, ann.gtf) if p is not None]
    if not any(Path(p).exists() for p in sources):
        problems.append(
            f"No transcript-to-gene source for build '{ann.build}' "
            f"(checked: {', '.join(str(p) for p in sources)})"
        )

    metadata = load_samples(config)
    file_map = quant_file_map(config, metadata)
    for code, path in file_map.items():
        if not path.is_file():
            problems.append(f"Missing quantification file for {code}: {path}")

    for analysis in config.analyses:
        try:
            problems.extend(
                f"{analysis.name}: {note}" for note in check_design_factors(metadata, analysis)
            )
        except SchemaMismatchError as e:
            problems.append(e.message)
    return problems


def _summarize(
    key: str, result: ContrastResult, thresholds: Tuple[float, ...]
) -> ContrastSummary:
    spec = result.contrast
    summary = ContrastSummary(
        name=key,
        factor=spec.factor,
        numerator=spec.numerator,
        denominator=spec.denominator,
        shrunk=result.shrunk,
        warnings=list(result.warnings),
        error=result.error,
    )
    if result.error is None:
        summary.n_significant = {f"{t:g}": result.n_significant(t) for t in thresholds}
    return summary


def _plot(result: ContrastResult, stem: str, config: AnalysisConfig) -> Optional[Path]:
    try:
        fig = create_ma_plot(
            result.results_df,
            padj_threshold=max(config.padj_thresholds),
            ylim=config.ma_plot_ylim,
            title=stem,
        )
    except ValueError as e:
        logger.warning(f"Skipping MA plot for {stem}: {e}")
        return None
    plot_dir = config.output_dir / "plots"
    plot_dir.mkdir(parents=True, exist_ok=True)
    return save_figure(fig, plot_dir / f"{stem}_MA.{config.ma_plot_format}")


def run_analysis(
    engine: DEAnalysisEngine,
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    analysis: AnalysisSpec,
    config: AnalysisConfig,
) -> Tuple[AnalysisSummary, Dict[str, ContrastResult]]:
    """
    Fit one analysis' design, derive its contrasts and shrunk coefficients, export them.

    Returns:
        The analysis summary and the derived results keyed by contrast name
    """
    for note in check_design_factors(metadata, analysis):
        logger.warning(f"{analysis.name}: {note}")

    model = engine.fit(counts, metadata, analysis.design)
    summary = AnalysisSummary(
        name=analysis.name,
        formula=analysis.design.formula,
        n_genes_tested=len(model.genes),
        n_genes_filtered=model.n_genes_filtered,
    )

    results = engine.contrast_many(model, analysis.contrasts)
    for coefficient in analysis.shrink:
        try:
            shrunk = engine.shrink(model, coefficient)
            results[f"{shrunk.contrast.label}_shrunk"] = shrunk
        except ContrastNotFoundError as e:
            logger.error(f"Shrinkage of {coefficient} failed: {e.message}", exc_info=True)
            summary.contrasts.append(
                ContrastSummary(
                    name=coefficient, factor="", numerator="", denominator="",
                    shrunk=True, error=e.message,
                )
            )

    for key, result in results.items():
        contrast_summary = _summarize(key, result, config.padj_thresholds)
        if result.error is None:
            label = f"{analysis.name}_shrunk" if result.shrunk else analysis.name
            written = export_contrast(
                result,
                config.output_dir,
                label,
                config.padj_thresholds,
                write_full_table=config.write_full_tables,
            )
            if config.ma_plot:
                stem = contrast_stem(label, result.contrast.numerator, result.contrast.denominator)
                plot_path = _plot(result, stem, config)
                if plot_path is not None:
                    written.append(plot_path)
            contrast_summary.files = [str(p) for p in written]
        summary.contrasts.append(contrast_summary)
    return summary, results


def run_pipeline(config: AnalysisConfig) -> PipelineReport:
    """
    Run every configured analysis and write the result files and run summary.

    Args:
        config: Loaded analysis configuration

    Returns:
        PipelineReport, also written to <output_dir>/run_summary.json

    Raises:
        MissingInputError: Annotation, metadata or quantification files absent
            (raised before any model is fit)
        SchemaMismatchError: Sample keys or transcripts do not line up
        InvalidCountsError: Imported counts are unusable
    """
    ann = config.annotation
    tx2gene = load_reference_annotation(
        ann.build,
        tx2gene_path=ann.tx2gene,
        gtf_path=ann.gtf,
        cache_dir=ann.cache_dir or CACHE_DIR,
        ignore_version=ann.ignore_tx_version,
    )

    metadata = load_samples(config)
    file_map = quant_file_map(config, metadata)
    quant = import_quant(
        file_map,
        tx2gene,
        counts_from_abundance=config.counts_from_abundance,
        ignore_version=ann.ignore_tx_version,
    )

    report = PipelineReport(
        n_samples=len(metadata),
        n_genes=len(quant.counts),
        counts_from_abundance=quant.counts_from_abundance,
        warnings=list(quant.warnings),
    )
    config.output_dir.mkdir(parents=True, exist_ok=True)

    engine = DEAnalysisEngine(
        min_total_count=config.min_total_count,
        n_cpus=config.n_cpus,
        alpha=config.alpha,
    )
    workbook_results: Dict[str, ContrastResult] = {}
    for analysis in config.analyses:
        logger.info(f"Analysis {analysis.name}: {analysis.design.formula}")
        summary, results = run_analysis(engine, quant.counts, metadata, analysis, config)
        report.analyses.append(summary)
        for contrast_summary in summary.contrasts:
            report.files.extend(contrast_summary.files)
        for key, result in results.items():
            if result.error is None:
                workbook_results[f"{analysis.name}/{key}"] = result

    if config.workbook and workbook_results:
        settings = {
            "build": ann.build,
            "tissue": config.tissue,
            "samples": len(metadata),
            "counts_from_abundance": config.counts_from_abundance,
            "min_total_count": config.min_total_count,
            "alpha": config.alpha,
            "padj_thresholds": ", ".join(f"{t:g}" for t in config.padj_thresholds),
        }
        workbook = export_workbook(
            workbook_results, config.output_dir / WORKBOOK_FILENAME, settings
        )
        report.files.append(str(workbook))

    for analysis, contrast, error in report.failures:
        logger.warning(f"{analysis}/{contrast} failed: {error}")

    summary_path = report.write_json(config.output_dir / SUMMARY_FILENAME)
    logger.info(f"Run summary written to {summary_path}")
    return report
