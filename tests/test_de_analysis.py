"""Tests for the PyDESeq2-backed differential expression engine."""

import dataclasses
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from conftest import N_GENES, SIGNAL_GENES
from de_analysis import (
    ContrastResult,
    ContrastSpec,
    DEAnalysisEngine,
    DesignSpec,
    RESULT_COLUMNS,
    add_interaction_group,
    align_metadata,
    filter_low_counts,
    validate_counts,
)
from errors import (
    ContrastNotFoundError,
    InvalidCountsError,
    MissingInputError,
    SchemaMismatchError,
)

TIMEPOINT = DesignSpec("~Timepoint", reference_levels=(("Timepoint", "Initial"),))
FINAL_VS_INITIAL = ContrastSpec("Timepoint", "Final", "Initial")


@pytest.fixture
def engine():
    return DEAnalysisEngine(n_cpus=1)


@pytest.fixture
def fitted(engine, toy_counts, toy_metadata):
    return engine.fit(toy_counts, toy_metadata, TIMEPOINT)


# ============================================================================
# Specs and helpers
# ============================================================================


class TestDesignSpec:
    def test_factors_from_formula(self):
        assert DesignSpec("~Product + Timepoint").factors == ["Product", "Timepoint"]

    def test_interaction_group(self):
        design = DesignSpec.interaction_group("Product", "Timepoint", reference="A.Initial")
        assert design.formula == "~group"
        assert design.source_factors == ["Product", "Timepoint"]
        assert dict(design.reference_levels) == {"group": "A.Initial"}

    def test_is_immutable(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            TIMEPOINT.formula = "~Product"


def test_contrast_label():
    assert FINAL_VS_INITIAL.label == "Final_vs_Initial"
    assert ContrastSpec("group", "B.Final", "B.Initial", name="B_time").label == "B_time"


def test_add_interaction_group(toy_metadata):
    meta = toy_metadata.copy()
    meta["Product"] = pd.Categorical(["A", "B", "A", "B", "A", "B"])
    grouped = add_interaction_group(meta, "Product", "Timepoint")
    assert grouped.loc[meta.index[1], "group"] == "B.Initial"
    assert list(grouped["group"].cat.categories) == ["A.Final", "A.Initial", "B.Final", "B.Initial"]
    assert "group" not in meta.columns


def test_add_interaction_group_missing_factor(toy_metadata):
    with pytest.raises(MissingInputError):
        add_interaction_group(toy_metadata, "Product", "Dose")


def test_filter_low_counts():
    counts = pd.DataFrame({"a": [0, 5, 20], "b": [9, 5, 0]}, index=["g1", "g2", "g3"])
    # g2 sits exactly at the threshold
    assert list(filter_low_counts(counts, 10).index) == ["g2", "g3"]
    assert list(filter_low_counts(counts, 11).index) == ["g3"]
    assert list(filter_low_counts(counts, 9).index) == ["g1", "g2", "g3"]


class TestValidation:
    def test_negative_counts(self, toy_counts):
        counts = toy_counts.copy()
        counts.iloc[0, 0] = -1
        with pytest.raises(InvalidCountsError):
            validate_counts(counts)

    def test_non_finite_counts(self, toy_counts):
        counts = toy_counts.astype(float)
        counts.iloc[2, 3] = np.inf
        with pytest.raises(InvalidCountsError):
            validate_counts(counts)

    def test_empty_counts(self):
        with pytest.raises(InvalidCountsError):
            validate_counts(pd.DataFrame())

    def test_align_reorders_metadata(self, toy_counts, toy_metadata):
        shuffled = toy_metadata.iloc[::-1]
        aligned = align_metadata(toy_counts, shuffled)
        assert list(aligned.index) == list(toy_counts.columns)

    def test_align_names_missing_keys(self, toy_counts, toy_metadata):
        with pytest.raises(SchemaMismatchError) as exc:
            align_metadata(toy_counts, toy_metadata.iloc[:5])
        assert exc.value.details["missing_metadata"] == [toy_counts.columns[5]]


# ============================================================================
# Fitting and contrasts (real PyDESeq2)
# ============================================================================


class TestFit:
    def test_model_is_bound_to_design(self, fitted):
        assert fitted.design is TIMEPOINT
        assert len(fitted.genes) == N_GENES
        assert fitted.n_genes_filtered == 0
        assert any(c.startswith("Timepoint[") for c in fitted.coefficients)

    def test_model_is_read_only(self, fitted):
        with pytest.raises(dataclasses.FrozenInstanceError):
            fitted.design = DesignSpec("~Fortification")

    def test_new_design_gives_new_model(self, engine, fitted, toy_counts, toy_metadata):
        other = engine.fit(toy_counts, toy_metadata, DesignSpec("~Fortification"))
        assert other is not fitted
        assert fitted.design.formula == "~Timepoint"
        assert any(c.startswith("Fortification[") for c in other.coefficients)

    def test_low_count_genes_removed(self, engine, toy_counts, toy_metadata):
        counts = toy_counts.copy()
        counts.loc["LOW"] = [0, 1, 2, 0, 3, 1]
        model = engine.fit(counts, toy_metadata, TIMEPOINT)
        assert "LOW" not in model.genes
        assert model.n_genes_filtered == 1

    def test_filter_applies_to_rounded_counts(self, engine, toy_counts, toy_metadata):
        counts = toy_counts.astype(float)
        counts.loc["FRAC_LOW"] = [2.45, 2.45, 2.45, 2.45, 0.0, 0.4]  # 10.2, rounds to 8
        counts.loc["FRAC_KEPT"] = [2.6, 2.6, 2.6, 2.6, 0.0, 0.0]  # 10.4, rounds to 12
        model = engine.fit(counts, toy_metadata, TIMEPOINT)
        assert "FRAC_LOW" not in model.genes
        assert "FRAC_KEPT" in model.genes
        assert model.n_genes_filtered == 1
        totals = pd.Series(np.asarray(model.dds.X).sum(axis=0), index=model.dds.var_names)
        assert (totals >= engine.min_total_count).all()
        assert totals["FRAC_KEPT"] == 12

    def test_refit_is_idempotent(self, engine, fitted, toy_counts, toy_metadata):
        again = engine.fit(toy_counts, toy_metadata, TIMEPOINT)
        pd.testing.assert_frame_equal(fitted.dds.varm["LFC"], again.dds.varm["LFC"])

    def test_normalized_counts_shape(self, fitted, toy_counts):
        normed = fitted.normalized_counts()
        assert normed.shape == toy_counts.shape
        assert set(normed.columns) == set(toy_counts.columns)

    def test_absent_factor(self, engine, toy_counts, toy_metadata):
        with pytest.raises(MissingInputError):
            engine.fit(toy_counts, toy_metadata, DesignSpec("~Batch"))

    def test_sample_mismatch(self, engine, toy_counts, toy_metadata):
        with pytest.raises(SchemaMismatchError):
            engine.fit(toy_counts.iloc[:, :5], toy_metadata, TIMEPOINT)

    def test_negative_counts_rejected(self, engine, toy_counts, toy_metadata):
        counts = toy_counts.copy()
        counts.iloc[0, 0] = -5
        with pytest.raises(InvalidCountsError):
            engine.fit(counts, toy_metadata, TIMEPOINT)

    def test_unknown_reference_level(self, engine, toy_counts, toy_metadata):
        design = DesignSpec("~Timepoint", reference_levels=(("Timepoint", "Midpoint"),))
        with pytest.raises(ContrastNotFoundError):
            engine.fit(toy_counts, toy_metadata, design)


class TestContrast:
    def test_every_gene_tested(self, engine, fitted):
        result = engine.contrast(fitted, FINAL_VS_INITIAL)
        df = result.results_df
        assert len(df) == N_GENES
        assert df["pvalue"].notna().all()
        assert list(df.columns) == RESULT_COLUMNS
        assert df.index.name == "gene_id"
        assert result.shrunk is False

    def test_zero_count_gene_keeps_row_with_undefined_padj(self, toy_counts, toy_metadata):
        engine = DEAnalysisEngine(min_total_count=0, n_cpus=1)
        counts = toy_counts.copy()
        counts.loc["SILENT"] = 0
        model = engine.fit(counts, toy_metadata, TIMEPOINT)
        result = engine.contrast(model, FINAL_VS_INITIAL)
        df = result.results_df
        assert "SILENT" in df.index
        assert len(df) == N_GENES + 1
        assert np.isnan(df.loc["SILENT", "padj"])
        assert result.warnings

    def test_signal_detected_with_positive_sign(self, engine, fitted):
        df = engine.contrast(fitted, FINAL_VS_INITIAL).results_df
        signal = [f"GENE{i + 1:03d}" for i in range(SIGNAL_GENES)]
        assert (df["padj"] < 0.1).any()
        assert (df.loc[signal, "log2FoldChange"] > 0).all()

    def test_swapping_levels_flips_sign(self, engine, fitted):
        forward = engine.contrast(fitted, FINAL_VS_INITIAL).results_df
        reverse = engine.contrast(fitted, ContrastSpec("Timepoint", "Initial", "Final")).results_df
        np.testing.assert_allclose(
            forward["log2FoldChange"], -reverse.loc[forward.index, "log2FoldChange"], atol=1e-6
        )

    def test_absent_level(self, engine, fitted):
        with pytest.raises(ContrastNotFoundError) as exc:
            engine.contrast(fitted, ContrastSpec("Timepoint", "Midpoint", "Initial"))
        assert exc.value.details["absent"] == ["Midpoint"]

    def test_factor_outside_design(self, engine, fitted):
        with pytest.raises(ContrastNotFoundError):
            engine.contrast(fitted, ContrastSpec("Fortification", "Fortified", "Non-Fortified"))

    def test_interaction_group_contrast(self, engine, toy_counts, toy_metadata):
        design = DesignSpec.interaction_group("Timepoint", "Fortification")
        model = engine.fit(toy_counts, toy_metadata, design)
        assert "Final.Fortified" in model.levels("group")
        result = engine.contrast(
            model, ContrastSpec("group", "Final.Fortified", "Initial.Non-Fortified")
        )
        assert len(result.results_df) == N_GENES


class TestShrink:
    def test_shrunk_estimates(self, engine, fitted):
        coefficient = [c for c in fitted.coefficients if c.startswith("Timepoint[")][0]
        result = engine.shrink(fitted, coefficient)
        assert result.shrunk is True
        assert result.coefficient == coefficient
        assert len(result.results_df) == N_GENES
        assert result.results_df["log2FoldChange"].notna().all()

    def test_pvalues_match_unshrunk_test(self, engine, fitted):
        coefficient = [c for c in fitted.coefficients if c.startswith("Timepoint[")][0]
        shrunk = engine.shrink(fitted, coefficient)
        unshrunk = engine.contrast(fitted, shrunk.contrast).results_df
        np.testing.assert_allclose(
            shrunk.results_df["pvalue"], unshrunk.loc[shrunk.results_df.index, "pvalue"]
        )

    def test_unknown_coefficient_lists_available(self, engine, fitted):
        with pytest.raises(ContrastNotFoundError) as exc:
            engine.shrink(fitted, "Timepoint[T.Midpoint]")
        assert exc.value.details["available"] == fitted.coefficients


class TestRunAllContrasts:
    def test_failed_contrast_is_isolated(self, engine, toy_counts, toy_metadata):
        results = engine.run_all_contrasts(
            toy_counts,
            toy_metadata,
            TIMEPOINT,
            [ContrastSpec("Timepoint", "Midpoint", "Initial"), FINAL_VS_INITIAL],
        )
        assert results["Midpoint_vs_Initial"].error is not None
        assert results["Midpoint_vs_Initial"].results_df.empty
        assert results["Final_vs_Initial"].error is None
        assert len(results["Final_vs_Initial"].results_df) == N_GENES

    def test_fits_once(self, engine, toy_counts, toy_metadata):
        ok = ContrastResult(pd.DataFrame(columns=RESULT_COLUMNS), FINAL_VS_INITIAL, shrunk=False)
        with patch.object(DEAnalysisEngine, "fit", return_value=MagicMock()) as fit, \
                patch.object(DEAnalysisEngine, "contrast", return_value=ok) as contrast:
            results = engine.run_all_contrasts(
                toy_counts, toy_metadata, TIMEPOINT,
                [FINAL_VS_INITIAL, ContrastSpec("Timepoint", "Initial", "Final")],
            )
        assert fit.call_count == 1
        assert contrast.call_count == 2
        assert set(results) == {"Final_vs_Initial", "Initial_vs_Final"}
