"""
Differential expression analysis using PyDESeq2.

Implements "fit once, contrast many": a DesignSpec is bound to a count
matrix by fit(), producing an immutable FittedModel; contrasts and shrunk
coefficients are derived from it without refitting. A different design means
a new fit and a new FittedModel.

Count matrices here are genes × samples with composite sample codes as
columns; PyDESeq2 itself works on samples × genes.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Optional
import logging
import re
import pandas as pd
import numpy as np
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from errors import (
    ContrastNotFoundError,
    InvalidCountsError,
    MissingInputError,
    SchemaMismatchError,
)

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]

# Coefficient names as produced by formulaic, e.g. "Timepoint[T.Final]"
COEFFICIENT_PATTERN = re.compile(r"^(?P<factor>[^\[]+)\[T\.(?P<level>.+)\]$")


@dataclass(frozen=True)
class DesignSpec:
    """Which metadata factors explain variation in counts."""

    formula: str  # e.g. "~Timepoint" or "~Product + Timepoint"
    reference_levels: Tuple[Tuple[str, str], ...] = ()  # (factor, level) pairs
    interaction: Optional[Tuple[str, str]] = None  # factors combined into a synthetic group
    group_name: str = "group"
    group_sep: str = "."

    @classmethod
    def interaction_group(
        cls,
        factor_a: str,
        factor_b: str,
        name: str = "group",
        reference: Optional[str] = None,
        sep: str = ".",
    ) -> "DesignSpec":
        """Design over one synthetic factor whose levels are factor_a × factor_b."""
        refs = ((name, reference),) if reference else ()
        return cls(
            formula=f"~{name}",
            reference_levels=refs,
            interaction=(factor_a, factor_b),
            group_name=name,
            group_sep=sep,
        )

    @property
    def factors(self) -> List[str]:
        """Metadata columns named in the formula, in order of appearance."""
        rhs = self.formula.split("~", 1)[-1]
        names = re.findall(r"[A-Za-z_][A-Za-z0-9_.]*", rhs)
        seen = []
        for name in names:
            if name not in seen:
                seen.append(name)
        return seen

    @property
    def source_factors(self) -> List[str]:
        """Metadata columns that must exist before fitting."""
        if self.interaction is None:
            return self.factors
        return [f for f in self.factors if f != self.group_name] + list(self.interaction)


@dataclass(frozen=True)
class ContrastSpec:
    """Pairwise comparison of two levels of one design factor."""

    factor: str
    numerator: str
    denominator: str
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or f"{self.numerator}_vs_{self.denominator}"


@dataclass(frozen=True, eq=False)
class FittedModel:
    """One fitted PyDESeq2 dataset bound to its design and filtered gene set."""

    design: DesignSpec
    dds: DeseqDataSet
    metadata: pd.DataFrame  # samples × factors, aligned to the fitted samples
    genes: Tuple[str, ...]
    n_genes_filtered: int  # genes removed by the minimum-count filter

    @property
    def coefficients(self) -> List[str]:
        return list(self.dds.varm["LFC"].columns)

    def levels(self, factor: str) -> List[str]:
        if factor not in self.metadata.columns:
            return []
        return [str(v) for v in pd.unique(self.metadata[factor].astype(str))]

    def normalized_counts(self) -> pd.DataFrame:
        """Size-factor normalized counts, genes × samples."""
        return pd.DataFrame(
            self.dds.layers["normed_counts"],
            index=self.dds.obs_names,
            columns=self.dds.var_names,
        ).T


@dataclass
class ContrastResult:
    """Result from differential expression analysis for one contrast."""

    results_df: pd.DataFrame  # genes × RESULT_COLUMNS, index named gene_id
    contrast: ContrastSpec
    shrunk: bool  # True when log2FoldChange holds shrunk estimates
    coefficient: Optional[str] = None  # set for shrunk coefficient contrasts
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None  # set when the contrast could not be derived

    @property
    def name(self) -> str:
        return self.contrast.label

    def n_significant(self, padj_threshold: float = 0.05) -> int:
        return int((self.results_df["padj"] < padj_threshold).sum())


def add_interaction_group(
    metadata: pd.DataFrame,
    factor_a: str,
    factor_b: str,
    name: str = "group",
    sep: str = ".",
) -> pd.DataFrame:
    """
    Return a copy of metadata with a synthetic factor combining two factors.

    Levels are "<level_a><sep><level_b>" (e.g. "B.Final"); categories cover
    the observed combinations, ordered by factor_a then factor_b.
    """
    missing = [f for f in (factor_a, factor_b) if f not in metadata.columns]
    if missing:
        raise MissingInputError(
            f"Cannot build interaction group: metadata has no column(s) {missing}",
            {"missing_columns": missing},
        )

    out = metadata.copy()
    combined = out[factor_a].astype(str) + sep + out[factor_b].astype(str)
    observed = set(combined)
    a_levels = _ordered_levels(out[factor_a])
    b_levels = _ordered_levels(out[factor_b])
    categories = [f"{a}{sep}{b}" for a in a_levels for b in b_levels if f"{a}{sep}{b}" in observed]
    out[name] = pd.Categorical(combined, categories=categories)
    return out


def _ordered_levels(column: pd.Series) -> List[str]:
    if isinstance(column.dtype, pd.CategoricalDtype):
        return [str(c) for c in column.cat.categories]
    return sorted(str(v) for v in column.dropna().unique())


def filter_low_counts(counts: pd.DataFrame, min_total: int = 10) -> pd.DataFrame:
    """Drop genes (rows) whose total count across samples is below min_total."""
    return counts.loc[counts.sum(axis=1) >= min_total]


def validate_counts(counts: pd.DataFrame) -> None:
    """Reject empty, non-numeric, non-finite or negative count matrices."""
    if counts is None or counts.empty:
        raise InvalidCountsError("Count matrix is empty")

    try:
        values = counts.to_numpy(dtype=float)
    except (TypeError, ValueError) as e:
        raise InvalidCountsError(f"Count matrix has non-numeric values: {e}") from e

    n_nonfinite = int((~np.isfinite(values)).sum())
    if n_nonfinite:
        raise InvalidCountsError(
            f"Count matrix has {n_nonfinite} non-finite value(s)",
            {"n_nonfinite": n_nonfinite},
        )
    n_negative = int((values < 0).sum())
    if n_negative:
        raise InvalidCountsError(
            f"Count matrix has {n_negative} negative value(s)",
            {"n_negative": n_negative},
        )


def align_metadata(counts: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """
    Order metadata rows to match count-matrix columns by composite code.

    Raises:
        SchemaMismatchError: If the two key sets differ in any way
    """
    columns = [str(c) for c in counts.columns]
    keys = [str(k) for k in metadata.index]
    missing = sorted(set(columns) - set(keys))
    extra = sorted(set(keys) - set(columns))
    if missing or extra or len(columns) != len(keys) or len(set(keys)) != len(keys):
        raise SchemaMismatchError(
            f"Sample metadata ({len(keys)} rows) does not match count matrix "
            f"({len(columns)} columns): missing metadata for {missing}, "
            f"no counts for {extra}",
            {"missing_metadata": missing, "missing_counts": extra},
        )
    aligned = metadata.copy()
    aligned.index = keys
    return aligned.loc[columns]


class DEAnalysisEngine:
    """Differential expression analysis using PyDESeq2."""

    def __init__(
        self,
        min_total_count: int = 10,
        n_cpus: int = 3,
        alpha: float = 0.05,
        refit_cooks: bool = True,
    ):
        self.min_total_count = min_total_count
        self.n_cpus = n_cpus
        self.alpha = alpha
        self.refit_cooks = refit_cooks
        self.inference = DefaultInference(n_cpus=n_cpus)

    def prepare_metadata(self, metadata: pd.DataFrame, design: DesignSpec) -> pd.DataFrame:
        """Design columns only, synthetic group added, reference levels first."""
        missing = [f for f in design.source_factors if f not in metadata.columns]
        if missing:
            raise MissingInputError(
                f"Design {design.formula} references absent metadata column(s): {missing}",
                {"missing_columns": missing, "formula": design.formula},
            )

        prepared = metadata
        if design.interaction is not None:
            prepared = add_interaction_group(
                metadata, *design.interaction, name=design.group_name, sep=design.group_sep
            )
        prepared = prepared[design.factors].copy()

        references = dict(design.reference_levels)
        for factor in design.factors:
            column = prepared[factor]
            if column.isna().any():
                raise MissingInputError(
                    f"Factor '{factor}' has missing values",
                    {"factor": factor, "samples": list(prepared.index[column.isna()])},
                )
            levels = [lvl for lvl in _ordered_levels(column) if lvl in set(column.astype(str))]
            ref = references.get(factor)
            if ref is not None:
                if ref not in levels:
                    raise ContrastNotFoundError(
                        f"Reference level '{ref}' not present in factor '{factor}'",
                        {"factor": factor, "levels": levels},
                    )
                levels = [ref] + [lvl for lvl in levels if lvl != ref]
            prepared[factor] = pd.Categorical(column.astype(str), categories=levels)
        return prepared

    def fit(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        design: DesignSpec,
    ) -> FittedModel:
        """
        Fit one negative-binomial GLM per gene.

        Args:
            counts: genes × samples, columns keyed by composite sample code
            metadata: samples × fields, indexed by composite sample code
            design: Design specification bound to the returned model

        Returns:
            FittedModel over the genes passing the minimum total count

        Raises:
            InvalidCountsError: Negative or non-finite counts
            SchemaMismatchError: Metadata keys differ from matrix columns
            MissingInputError: Formula references an absent metadata column
        """
        validate_counts(counts)
        aligned = align_metadata(counts, metadata)
        design_metadata = self.prepare_metadata(aligned, design)

        # PyDESeq2 expects integer counts; the filter sees the rounded totals
        integer_counts = counts.round().astype(int)
        filtered = filter_low_counts(integer_counts, self.min_total_count)
        n_removed = len(counts) - len(filtered)
        if filtered.empty:
            raise InvalidCountsError(
                f"No gene reaches a total count of {self.min_total_count}",
                {"min_total_count": self.min_total_count},
            )
        logger.info(
            f"Fitting {design.formula}: {len(filtered)} genes "
            f"({n_removed} below {self.min_total_count} total counts removed), "
            f"{filtered.shape[1]} samples"
        )

        samples_by_genes = filtered.T
        samples_by_genes.index = [str(c) for c in samples_by_genes.index]
        samples_by_genes.columns = [str(g) for g in samples_by_genes.columns]

        dds = DeseqDataSet(
            counts=samples_by_genes,
            metadata=design_metadata,
            design=design.formula,
            refit_cooks=self.refit_cooks,
            inference=self.inference,
            quiet=True,
        )
        dds.deseq2()

        return FittedModel(
            design=design,
            dds=dds,
            metadata=design_metadata,
            genes=tuple(samples_by_genes.columns),
            n_genes_filtered=n_removed,
        )

    def _check_contrast(self, model: FittedModel, spec: ContrastSpec) -> None:
        if spec.factor not in model.design.factors:
            raise ContrastNotFoundError(
                f"Factor '{spec.factor}' is not part of design {model.design.formula}",
                {"factor": spec.factor, "design_factors": model.design.factors},
            )
        levels = model.levels(spec.factor)
        absent = [lvl for lvl in (spec.numerator, spec.denominator) if lvl not in levels]
        if absent:
            raise ContrastNotFoundError(
                f"Level(s) {absent} not present in factor '{spec.factor}' (levels: {levels})",
                {"factor": spec.factor, "absent": absent, "levels": levels},
            )
        if spec.numerator == spec.denominator:
            raise ContrastNotFoundError(
                f"Contrast compares level '{spec.numerator}' with itself",
                {"factor": spec.factor},
            )

    def _stats(self, model: FittedModel, spec: ContrastSpec) -> DeseqStats:
        stat_res = DeseqStats(
            model.dds,
            contrast=[spec.factor, spec.numerator, spec.denominator],
            alpha=self.alpha,
            cooks_filter=True,
            independent_filter=True,
            inference=self.inference,
            quiet=True,
        )
        stat_res.summary()
        return stat_res

    @staticmethod
    def _results_table(stat_res: DeseqStats) -> pd.DataFrame:
        results_df = stat_res.results_df.copy()
        results_df.index = results_df.index.astype(str)
        results_df.index.name = "gene_id"
        return results_df[[c for c in RESULT_COLUMNS if c in results_df.columns]]

    def contrast(self, model: FittedModel, spec: ContrastSpec) -> ContrastResult:
        """
        Wald test of numerator vs denominator level on a fitted model.

        Positive log2FoldChange means higher abundance in the numerator.
        padj is Benjamini-Hochberg within this contrast; genes removed by
        Cooks or independent filtering keep their row with padj NaN.
        """
        self._check_contrast(model, spec)
        stat_res = self._stats(model, spec)
        results_df = self._results_table(stat_res)

        warnings = []
        n_undefined = int(results_df["padj"].isna().sum())
        if n_undefined:
            warnings.append(f"{n_undefined} gene(s) have undefined padj (outliers or low counts)")
        logger.info(
            f"{spec.label}: {int((results_df['padj'] < self.alpha).sum())} genes with padj < {self.alpha}"
        )
        return ContrastResult(results_df=results_df, contrast=spec, shrunk=False, warnings=warnings)

    def shrink(self, model: FittedModel, coefficient: str) -> ContrastResult:
        """
        Test a design coefficient and shrink its log fold changes in one call.

        The coefficient (e.g. "Timepoint[T.Final]") compares one level with
        the factor's reference level. p-values come from the Wald test of the
        unshrunk fit; log2FoldChange and lfcSE hold the shrunk estimates.
        """
        if coefficient not in model.coefficients:
            raise ContrastNotFoundError(
                f"Coefficient '{coefficient}' not in design {model.design.formula}; "
                f"available: {model.coefficients}",
                {"coefficient": coefficient, "available": model.coefficients},
            )
        match = COEFFICIENT_PATTERN.match(coefficient)
        if match is None:
            raise ContrastNotFoundError(
                f"Coefficient '{coefficient}' is not a level-vs-reference coefficient",
                {"coefficient": coefficient},
            )
        factor, level = match.group("factor"), match.group("level")
        # The reference is the one level without a coefficient of its own
        references = [
            lvl for lvl in model.levels(factor) if f"{factor}[T.{lvl}]" not in model.coefficients
        ]
        if len(references) != 1:
            raise ContrastNotFoundError(
                f"Cannot determine the reference level of '{factor}' for {coefficient}",
                {"coefficient": coefficient, "candidates": references},
            )
        spec = ContrastSpec(factor=factor, numerator=level, denominator=references[0])
        self._check_contrast(model, spec)

        stat_res = self._stats(model, spec)
        stat_res.lfc_shrink(coeff=coefficient)
        results_df = self._results_table(stat_res)
        return ContrastResult(
            results_df=results_df, contrast=spec, shrunk=True, coefficient=coefficient
        )

    def contrast_many(
        self, model: FittedModel, contrasts: List[ContrastSpec]
    ) -> Dict[str, ContrastResult]:
        """
        Derive several contrasts from one fitted model.

        A failing contrast is logged and returned with an empty table and its
        error set; the other contrasts are unaffected.
        """
        results = {}
        for spec in contrasts:
            try:
                results[spec.label] = self.contrast(model, spec)
            except ContrastNotFoundError as e:
                logger.error(f"Contrast {spec.label} failed: {e.message}", exc_info=True)
                results[spec.label] = ContrastResult(
                    results_df=pd.DataFrame(columns=RESULT_COLUMNS),
                    contrast=spec,
                    shrunk=False,
                    warnings=[f"Comparison failed: {e.message}"],
                    error=e.message,
                )
        return results

    def run_all_contrasts(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        design: DesignSpec,
        contrasts: List[ContrastSpec],
    ) -> Dict[str, ContrastResult]:
        """Fit the design once and derive every contrast from the same model. Fit errors propagate."""
        model = self.fit(counts, metadata, design)
        return self.contrast_many(model, contrasts)
