#!/usr/bin/env python3
"""
Saliva DE CLI

Command-line entry point for the saliva RNA-seq differential expression run.
"""

import dataclasses
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from analysis_config import check_padj_thresholds, load_config
from errors import PipelineError
from pipeline import run_pipeline, validate_inputs

app = typer.Typer(
    name="saliva-de",
    help="Differential expression of saliva RNA-seq quantifications",
    add_completion=False,
)

console = Console()


def setup_logging(level: int = logging.INFO) -> None:
    """Set up logging with Rich handler for colored output."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
        force=True,
    )


def verbose_callback(value: bool):
    setup_logging(level=logging.DEBUG if value else logging.INFO)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", callback=verbose_callback, help="Enable verbose logging"
    ),
):
    """Saliva DE CLI"""
    pass


def _load(config_path: Path, quant_dir: Optional[Path], output_dir: Optional[Path],
          thresholds: Optional[List[float]]):
    config = load_config(config_path)
    overrides = {}
    if quant_dir is not None:
        overrides["quant_dir"] = quant_dir
    if output_dir is not None:
        overrides["output_dir"] = output_dir
    if thresholds:
        overrides["padj_thresholds"] = check_padj_thresholds(thresholds)
    return dataclasses.replace(config, **overrides)


@app.command()
def run(
    config_path: Path = typer.Argument(..., help="YAML analysis configuration"),
    quant_dir: Optional[Path] = typer.Option(None, help="Override the quantification directory"),
    output_dir: Optional[Path] = typer.Option(None, help="Override the output directory"),
    padj: Optional[List[float]] = typer.Option(
        None, "--padj", help="Adjusted p-value threshold (repeatable)"
    ),
):
    """Run every configured analysis and export significant genes."""
    console.print(f"[bold blue]Running differential expression from {config_path}[/bold blue]")

    try:
        config = _load(config_path, quant_dir, output_dir, padj)
        report = run_pipeline(config)
    except (PipelineError, FileNotFoundError) as e:
        console.print(f"[bold red]Error: {escape(str(e))}[/bold red]")
        sys.exit(1)

    table = Table(title="Significant genes")
    table.add_column("Analysis")
    table.add_column("Contrast")
    for threshold in config.padj_thresholds:
        table.add_column(f"padj < {threshold:g}", justify="right")
    for analysis in report.analyses:
        for contrast in analysis.contrasts:
            if contrast.error:
                cells = ["[red]failed[/red]"] * len(config.padj_thresholds)
            else:
                cells = [str(n) for n in contrast.n_significant.values()]
            table.add_row(analysis.name, contrast.name, *cells)
    console.print(table)

    for analysis, contrast, error in report.failures:
        console.print(f"[yellow]{analysis}/{contrast}: {escape(error)}[/yellow]")
    console.print("[bold green]Differential expression completed![/bold green]")
    console.print(f"Results saved to: {config.output_dir}")


@app.command()
def validate(
    config_path: Path = typer.Argument(..., help="YAML analysis configuration"),
    quant_dir: Optional[Path] = typer.Option(None, help="Override the quantification directory"),
):
    """Check configuration, metadata and input files without fitting anything."""
    try:
        config = _load(config_path, quant_dir, None, None)
        problems = validate_inputs(config)
    except (PipelineError, FileNotFoundError) as e:
        console.print(f"[bold red]Error: {escape(str(e))}[/bold red]")
        sys.exit(1)

    if problems:
        for problem in problems:
            console.print(f"[red]- {escape(problem)}[/red]")
        console.print(f"[bold red]{len(problems)} problem(s) found[/bold red]")
        sys.exit(1)
    console.print(
        f"[bold green]Configuration OK: {len(config.analyses)} analyses ready to run[/bold green]"
    )


if __name__ == "__main__":
    app()
