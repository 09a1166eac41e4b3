"""
xelhua command line interface.

Usage:
    xelhua info
    xelhua inspect model.xlsx [--json]
    xelhua validate model.xlsx [--tolerance 1e-6] [--json]
    xelhua eval model.xlsx "Summary!B24"
    xelhua dump model.xlsx [--sheet Data] [--max-rows 100]
    xelhua convert legacy.xls converted.xlsx

Logs go to stderr (and LOG_FILE when configured) so stdout can be piped.
"""

import json
import logging
import sys
from typing import Optional

import click
from dotenv import load_dotenv

from xelhua import get_manifest
from xelhua.config import get_settings
from xelhua.evaluation_service import ExcelError, FormulaEvaluator, to_text
from xelhua.exceptions import XelhuaError
from xelhua.inspection_service import WorkbookInspector
from xelhua.storage import open_workbook, save_workbook
from xelhua.streaming_service import iter_rows
from xelhua.validation_service import ValidationService

# Load environment variables
load_dotenv()

logger = logging.getLogger('xelhua.cli')


def configure_logging():
    """Configure root logging from settings."""
    settings = get_settings()
    handlers = [logging.StreamHandler(sys.stderr)]
    if settings.LOG_FILE:
        handlers.append(logging.FileHandler(settings.LOG_FILE))

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=settings.LOG_FORMAT,
        handlers=handlers
    )


def _fail(message: str, error: Exception):
    logger.error(f"{message}: {error}")
    click.echo(f"✗ {message}: {error}", err=True)
    sys.exit(1)


def _progress(stage: str, percent: float, message: str):
    bar_length = 40
    filled = int(bar_length * percent / 100)
    bar = '█' * filled + '░' * (bar_length - filled)
    click.echo(f"\r[{bar}] {percent:.1f}% - {stage}: {message}", nl=False, err=True)


def _display(value) -> str:
    if value is None:
        return ''
    if isinstance(value, ExcelError):
        return value.code
    if isinstance(value, (bool, int, float)):
        return to_text(value)
    return str(value)


@click.group()
@click.option('--quiet', '-q', is_flag=True, help='Hide progress output')
@click.pass_context
def cli(ctx, quiet: bool):
    """Excel workbook toolkit: inspect, validate, evaluate and convert."""
    configure_logging()
    ctx.ensure_object(dict)
    ctx.obj['progress'] = None if quiet else _progress


@cli.command('info')
@click.option('--json', 'as_json', is_flag=True, help='Print the manifest as JSON')
def info_cmd(as_json: bool):
    """Show package manifest attributes."""
    manifest = get_manifest()
    if as_json:
        click.echo(json.dumps(manifest, indent=2))
        return
    for key, value in manifest.items():
        click.echo(f"{key}: {value}")


@cli.command('inspect')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--json', 'as_json', is_flag=True, help='Print the full summary as JSON')
@click.pass_context
def inspect_cmd(ctx, file: str, as_json: bool):
    """Describe sheets, cells and circular references of a workbook."""
    try:
        summary = WorkbookInspector(progress_callback=ctx.obj['progress']).inspect(file)
    except (XelhuaError, FileNotFoundError) as e:
        _fail('Inspection failed', e)

    if ctx.obj['progress']:
        click.echo(err=True)

    if as_json:
        click.echo(summary.model_dump_json(indent=2))
        return

    stats = summary.stats
    click.echo(f"File: {summary.path}")
    click.echo(f"SHA-256: {summary.file_hash}")
    click.echo(f"\nSheets:")
    for sheet in summary.sheets:
        click.echo(f"  {sheet.name}: {sheet.max_row} rows x {sheet.max_column} cols, "
                   f"{len(sheet.merged_ranges)} merged ranges")
    click.echo(f"\nStatistics:")
    click.echo(f"  Total cells: {stats.total_cells}")
    click.echo(f"  Value cells: {stats.value_cells}")
    click.echo(f"  Formula cells: {stats.formula_cells}")
    click.echo(f"  Text formula cells: {stats.formula_text_cells}")
    click.echo(f"  Dropdown cells: {stats.dropdown_cells}")
    click.echo(f"  Circular references: {stats.circular_references}")
    for i, group in enumerate(summary.circular_groups, 1):
        click.echo(f"    Group {i}: {', '.join(group)}")


@cli.command('validate')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--tolerance', '-t', type=float, default=None,
              help='Numeric tolerance (default: XELHUA_TOLERANCE)')
@click.option('--json', 'as_json', is_flag=True, help='Print the full report as JSON')
@click.pass_context
def validate_cmd(ctx, file: str, tolerance: Optional[float], as_json: bool):
    """Recalculate formulas and compare them with Excel's cached values."""
    try:
        service = ValidationService(tolerance=tolerance, progress_callback=ctx.obj['progress'])
        report = service.validate_workbook(file)
    except (XelhuaError, FileNotFoundError) as e:
        _fail('Validation failed', e)

    if ctx.obj['progress']:
        click.echo(err=True)

    if as_json:
        click.echo(report.model_dump_json(indent=2))
    else:
        click.echo(f"Status: {report.status.upper()}")
        click.echo(f"  Formulas: {report.total}")
        click.echo(f"  Matches: {report.matches}")
        click.echo(f"  Mismatches: {report.mismatches}")
        click.echo(f"  Errors: {report.errors}")
        click.echo(f"  Without cached value: {report.no_cached_value}")
        for mismatch in report.mismatch_cells:
            detail = mismatch.error or f"expected {mismatch.expected!r}, got {mismatch.actual!r}"
            click.echo(f"  ✗ {mismatch.cell_ref} {mismatch.formula}: {detail}")

    if report.status != 'passed':
        sys.exit(1)


@cli.command('eval')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.argument('ref')
def eval_cmd(file: str, ref: str):
    """Evaluate one cell, e.g. "Summary!B24"."""
    try:
        workbook = open_workbook(file)
        value = FormulaEvaluator(workbook).evaluate_cell(ref)
    except (XelhuaError, FileNotFoundError, ValueError) as e:
        _fail('Evaluation failed', e)
    click.echo(_display(value))


@cli.command('dump')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--sheet', '-s', default=None, help='Sheet name (default: first sheet)')
@click.option('--max-rows', '-n', type=int, default=None, help='Stop after this many rows')
def dump_cmd(file: str, sheet: Optional[str], max_rows: Optional[int]):
    """Stream a sheet's cached values as tab-separated text."""
    max_row = None if max_rows is None else max_rows - 1
    try:
        for row in iter_rows(file, sheet=sheet, max_row=max_row):
            click.echo('\t'.join(_display(value) for value in row))
    except (XelhuaError, FileNotFoundError, KeyError) as e:
        _fail('Dump failed', e)


@cli.command('convert')
@click.argument('src', type=click.Path(exists=True, dir_okay=False))
@click.argument('dest')
def convert_cmd(src: str, dest: str):
    """Convert a .xls/.xlsx/.xlsm workbook to .xlsx."""
    try:
        workbook = open_workbook(src)
        path = save_workbook(workbook, dest)
    except (XelhuaError, FileNotFoundError) as e:
        _fail('Conversion failed', e)
    click.echo(f"✓ Wrote {path}")


if __name__ == '__main__':
    cli()
