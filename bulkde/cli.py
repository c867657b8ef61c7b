#!/usr/bin/env python3
"""
Command line interface for bulkde.

Runs the full differential expression pipeline from a JSON config or from
flags, and exposes the annotation and enrichment steps on their own.
"""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich import box
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from bulkde.config.analysis_config import (
    CONFIG_FILE_NAME,
    AnalysisConfig,
    AnnotationConfig,
    EnrichmentConfig,
    InputConfig,
    OutputConfig,
    ThresholdConfig,
)
from bulkde.config.settings import get_settings
from bulkde.core.results_table import read_deg_table
from bulkde.ui.console_manager import get_console_manager, setup_logging
from bulkde.utils.logger import get_logger
from bulkde.version import __version__

logger = get_logger(__name__)

console_manager = get_console_manager()
console = console_manager.console

app = typer.Typer(
    name="bulkde",
    help="Bulk RNA-Seq differential expression and gene-set enrichment",
    add_completion=True,
    rich_markup_mode="rich",
)


def _fail(error: Exception, suggestion: Optional[str] = None) -> None:
    console_manager.print_error_panel(str(error), suggestion)
    raise typer.Exit(1)


def _init_logging(verbose: bool) -> None:
    settings = get_settings()
    if settings.config_error:
        console.print(f"[yellow]Warning: {settings.config_error}[/yellow]")
    setup_logging(logging.DEBUG if verbose else settings.log_level)


def _parse_contrast(contrast: str) -> List[str]:
    parts = [p.strip() for p in contrast.split(",")]
    if len(parts) != 3 or not all(parts):
        raise typer.BadParameter("Use FACTOR,TEST_LEVEL,REFERENCE_LEVEL", param_hint="--contrast")
    return parts


def build_config(
    config_path: Optional[Path],
    counts: Optional[Path],
    metadata: Optional[Path],
    design: Optional[str],
    contrast: Optional[str],
    padj: Optional[float],
    lfc: Optional[float],
    output: Optional[Path],
    organism: Optional[str],
    annotate: Optional[bool],
    enrich: Optional[bool],
) -> AnalysisConfig:
    """
    Config file values overridden by any flag that was given; without a
    config file, counts, metadata and contrast flags are required.
    """
    if config_path is not None:
        data = AnalysisConfig.load(config_path).model_dump()
    else:
        if counts is None or metadata is None or contrast is None:
            raise typer.BadParameter(
                "Either --config or --counts, --metadata and --contrast are required"
            )
        data = {
            "input": InputConfig(counts_path=counts, metadata_path=metadata).model_dump(),
            "design": {"design": design or f"~{_parse_contrast(contrast)[0]}"},
            "output": OutputConfig(output_dir=get_settings().WORKSPACE).model_dump(),
        }

    if counts is not None:
        data["input"]["counts_path"] = counts
    if metadata is not None:
        data["input"]["metadata_path"] = metadata
    if design is not None:
        data["design"]["design"] = design
    if contrast is not None:
        data["design"]["contrast"] = _parse_contrast(contrast)
    thresholds = data.setdefault("thresholds", ThresholdConfig().model_dump())
    if padj is not None:
        thresholds["padj"] = padj
    if lfc is not None:
        thresholds["lfc"] = lfc
    if output is not None:
        data["output"]["output_dir"] = output
    annotation = data.setdefault("annotation", AnnotationConfig().model_dump())
    if organism is not None:
        annotation["organism"] = organism
    if annotate is not None:
        annotation["enabled"] = annotate
    if enrich is not None:
        data.setdefault("enrichment", EnrichmentConfig().model_dump())["enabled"] = enrich

    return AnalysisConfig.model_validate(data)


@app.callback(invoke_without_command=True)
def default_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show the version and exit"),
):
    """Show help when bulkde is invoked without a subcommand."""
    if version:
        console.print(f"bulkde {__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Analysis config JSON (see 'bulkde init-config')"
    ),
    counts: Optional[Path] = typer.Option(None, "--counts", help="Genes x samples count matrix"),
    metadata: Optional[Path] = typer.Option(None, "--metadata", help="Sample metadata table"),
    design: Optional[str] = typer.Option(None, "--design", help="Design formula, e.g. '~batch + condition'"),
    contrast: Optional[str] = typer.Option(
        None, "--contrast", help="FACTOR,TEST_LEVEL,REFERENCE_LEVEL"
    ),
    padj: Optional[float] = typer.Option(None, "--padj", help="Adjusted p-value cutoff (default 0.1)"),
    lfc: Optional[float] = typer.Option(None, "--lfc", help="Absolute log2 fold-change cutoff (default 1.0)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory"),
    organism: Optional[str] = typer.Option(None, "--organism", help="human, mouse or rat"),
    annotate: Optional[bool] = typer.Option(
        None, "--annotate/--no-annotate", help="Annotate results through BioMart"
    ),
    enrich: Optional[bool] = typer.Option(
        None, "--enrich/--no-enrich", help="Run gene set enrichment"
    ),
    save_png: bool = typer.Option(False, "--png", help="Also write PNG figures"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Run the full analysis: load, fit, test, annotate, plot, enrich and report.

    Examples:
      bulkde run --config bulkde_config.json
      bulkde run --counts counts.csv --metadata samples.csv --contrast condition,treated,control
    """
    from bulkde.services.orchestration.pipeline import AnalysisPipeline

    _init_logging(verbose)
    try:
        config = build_config(
            config_path, counts, metadata, design, contrast, padj, lfc, output,
            organism, annotate, enrich,
        )
    except typer.BadParameter:
        raise
    except (ValueError, FileNotFoundError) as e:
        _fail(e, "Check the config file or run 'bulkde init-config' for a template")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        console=console_manager.error_console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting", total=None)

        def on_step(step: str, current: int, total: int) -> None:
            progress.update(task, description=f"[{current}/{total}] {step}", completed=current - 1, total=total)

        try:
            result = AnalysisPipeline(
                config, progress_callback=on_step, save_png=save_png or None
            ).run()
        except Exception as e:
            progress.stop()
            _fail(e, "Rerun with --verbose for the full log")

    select = result.stats["select"]
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold cyan")
    table.add_column("Output", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("Genes tested", str(select["n_genes_tested"]))
    table.add_row(
        "Significant",
        f"{select['n_significant']} ({select['n_upregulated']} up, {select['n_downregulated']} down)",
    )
    if result.enrichment is not None:
        for mode, terms in result.enrichment.groupby("mode", sort=False):
            n_sig = int((terms["padj"] < config.thresholds.padj).sum())
            table.add_row(f"Enriched terms ({mode})", str(n_sig))
    table.add_row("Report", str(result.report_path))
    table.add_row("Notebook", str(result.notebook_path))
    table.add_row("Provenance", str(result.provenance_path))
    console.print(table)
    console_manager.print_success_panel(
        f"Analysis '{config.name}' finished", f"{len(result.files)} files in {result.output_dir}"
    )


@app.command()
def annotate(
    organism: str = typer.Option("human", "--organism", help="human, mouse or rat"),
    output: Path = typer.Option(
        Path("annotation.tsv"), "--output", "-o", help="Annotation table to write"
    ),
    results: Optional[Path] = typer.Option(
        None, "--results", "-r", help="Results CSV to annotate in place"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Fetch the BioMart annotation table and optionally annotate a results CSV."""
    from bulkde.core.results_table import write_deg_table
    from bulkde.services.data_access.annotation_service import AnnotationService

    _init_logging(verbose)
    service = AnnotationService()
    try:
        AnnotationConfig(organism=organism)
        with console_manager.status(f"Querying BioMart for {organism} genes..."):
            annotation, stats, _ = service.get_annotation(organism, output)
        console.print(f"[green]Annotation table with {stats['n_rows']} rows at {output}[/green]")

        if results is not None:
            table = service.annotate_results(read_deg_table(results), annotation)
            write_deg_table(table, results)
            console.print(f"[green]Annotated {results}[/green]")
    except Exception as e:
        _fail(e)


@app.command()
def enrich(
    results: Path = typer.Argument(..., help="Results CSV written by 'bulkde run'"),
    output: Path = typer.Option(Path("."), "--output", "-o", help="Output directory"),
    mode: str = typer.Option("both", "--mode", help="ora, gsea or both"),
    collections: List[str] = typer.Option(
        ["GO", "KEGG", "DO"], "--collection", help="GO, KEGG or DO (repeatable)"
    ),
    gmt: List[Path] = typer.Option([], "--gmt", help="Local GMT file (repeatable)"),
    gene_id_type: str = typer.Option("symbol", "--id-type", help="symbol, entrez_id or gene_id"),
    organism: str = typer.Option("human", "--organism", help="human, mouse or rat"),
    padj: float = typer.Option(0.1, "--padj", help="Adjusted p-value cutoff"),
    lfc: float = typer.Option(1.0, "--lfc", help="Absolute log2 fold-change cutoff"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run gene set enrichment on an existing results CSV."""
    from bulkde.services.orchestration.pipeline import (
        run_enrichment_on_table,
        write_enrichment_tables,
    )

    _init_logging(verbose)
    try:
        enrichment_config = EnrichmentConfig(
            mode=mode,
            collections=collections,
            gmt_files={path.stem: path for path in gmt},
            gene_id_type=gene_id_type,
        )
        thresholds = ThresholdConfig(padj=padj, lfc=lfc)
        AnnotationConfig(organism=organism)
        table = read_deg_table(results)
        with console_manager.status("Running enrichment..."):
            enrichment, stats, _, _ = run_enrichment_on_table(
                table, enrichment_config, thresholds, organism=organism
            )
        output.mkdir(parents=True, exist_ok=True)
        written = write_enrichment_tables(enrichment, output)
    except Exception as e:
        _fail(e)

    for path in written:
        console.print(f"[green]Wrote {path}[/green]")


@app.command(name="init-config")
def init_config(
    path: Path = typer.Argument(Path(CONFIG_FILE_NAME), help="Where to write the config"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
):
    """Write a starter analysis config."""
    if path.exists() and not force:
        console_manager.print_error_panel(
            f"{path} already exists", "Use --force to overwrite it"
        )
        raise typer.Exit(1)
    written = AnalysisConfig.template().save(path)
    console.print(f"[green]Config written to {written}[/green]")
    console.print("[dim]Edit input paths and contrast, then run 'bulkde run --config ...'[/dim]")


@app.command(name="config-show")
def config_show():
    """Display the environment settings in effect."""
    settings = get_settings()
    console.print()
    console.print(
        Panel.fit("[bold cyan]Current settings[/bold cyan]", border_style="cyan", padding=(0, 2))
    )

    table = Table(title=None, box=box.SIMPLE, show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    for key, value in sorted(settings.get_all_settings().items()):
        table.add_row(key, str(value))
    console.print(table)

    env_file = Path.cwd() / ".env"
    if env_file.exists():
        console.print(f"[dim]Loaded from environment and {env_file}[/dim]")

    if settings.config_error:
        console.print(Panel.fit(f"[red]{settings.config_error}[/red]", border_style="red"))
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
