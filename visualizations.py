"""Diagnostic plots for differential expression results."""

from pathlib import Path
from typing import Tuple, Union
import numpy as np
import pandas as pd
import plotly.graph_objects as go

from errors import ExportError


def create_ma_plot(
    results_df: pd.DataFrame,
    padj_threshold: float = 0.1,
    ylim: Tuple[float, float] = (-2.0, 2.0),
    title: str = "MA Plot",
) -> go.Figure:
    """
    Create MA plot (mean normalized count vs log2 fold change).

    One point per gene. Genes with padj below the threshold are highlighted;
    fold changes outside ylim are drawn on the edge as triangles.

    Args:
        results_df: DataFrame with baseMean, log2FoldChange and padj columns
        padj_threshold: Adjusted p-value threshold for highlighting
        ylim: Fixed y-axis range (lower, upper)
        title: Figure title

    Returns:
        Plotly Figure object
    """
    if results_df is None or results_df.empty:
        raise ValueError("Cannot create MA plot: results_df is empty or None.")

    required_cols = ["baseMean", "log2FoldChange", "padj"]
    missing = [c for c in required_cols if c not in results_df.columns]
    if missing:
        raise ValueError(f"Cannot create MA plot: missing columns {missing}.")

    df = results_df.dropna(subset=["baseMean", "log2FoldChange"])
    df = df[df["baseMean"] > 0]
    if df.empty:
        raise ValueError("Cannot create MA plot: no genes with a positive mean count.")

    low, high = ylim
    lfc = df["log2FoldChange"]
    clamped = lfc.clip(lower=low, upper=high)
    outside = (lfc < low) | (lfc > high)
    significant = df["padj"].notna() & (df["padj"] < padj_threshold)

    fig = go.Figure()
    for label, mask, color in [
        ("NS", ~significant, "lightgray"),
        (f"padj < {padj_threshold}", significant, "red"),
    ]:
        fig.add_trace(
            go.Scattergl(
                x=df.loc[mask, "baseMean"],
                y=clamped[mask],
                mode="markers",
                name=label,
                text=df.index[mask].astype(str),
                marker=dict(
                    color=color,
                    size=5,
                    symbol=np.where(
                        outside[mask],
                        np.where(lfc[mask] > 0, "triangle-up", "triangle-down"),
                        "circle",
                    ),
                ),
                hovertemplate="%{text}<br>baseMean=%{x:.1f}<br>log2FC=%{y:.2f}<extra></extra>",
            )
        )

    fig.add_hline(y=0, line_color="black", line_width=0.5)
    fig.update_xaxes(type="log", title="mean of normalized counts")
    fig.update_yaxes(range=[low * 1.05, high * 1.05], title="log₂ fold change")
    fig.update_layout(title=title, showlegend=True)
    return fig


def save_figure(fig: go.Figure, filepath: Union[str, Path], scale: int = 3) -> Path:
    """
    Write a figure to disk: .html as interactive HTML, other suffixes as static images.

    Static export needs kaleido; scale=3 gives ~300 DPI at the default size.
    """
    path = Path(filepath)
    try:
        if path.suffix.lower() == ".html":
            fig.write_html(str(path))
        else:
            fig.write_image(str(path), format=path.suffix.lstrip(".") or "png", scale=scale)
    except OSError as e:
        raise ExportError(f"Cannot write figure to {path}: {e}", {"path": str(path)}) from e
    return path
