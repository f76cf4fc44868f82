# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from buildmatrix.config import load_workflow
from buildmatrix.coordinator import Coordinator, default_workers
from buildmatrix.errors import ConfigError, CoordinationError
from buildmatrix.expander import expand
from buildmatrix.model import JobSpec, MatrixModel
from buildmatrix.report import aggregate
from buildmatrix.runner import ShellStageExecutor
from buildmatrix.ui.console import Console, get_console, set_console


EXIT_CONFIG_ERROR = 2
DEFAULT_MATRIX_FILES = ("buildmatrix_workflow.py", "buildmatrix.json")


def find_matrix_files() -> list[Path]:
    """
    Find all matrix files in the current directory.

    Returns:
        List of Path objects for matrix files
    """
    found = []
    current_dir = Path(".")

    for name in DEFAULT_MATRIX_FILES:
        path = current_dir / name
        if path.exists():
            found.append(path)

    # Look for other *_workflow.py files
    for path in current_dir.glob("*_workflow.py"):
        if path not in found:
            found.append(path)

    return sorted(found)


def discover_matrix(config_arg: str | None) -> Path:
    """
    Discover the matrix file from argument or default.

    Raises:
        SystemExit: If no file can be found or several candidates exist
    """
    console = get_console()

    if config_arg:
        path = Path(config_arg)
        if not path.exists() and path.suffix not in (".py", ".json"):
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Matrix file not found",
                f"Could not find matrix file: {config_arg}",
                suggestion="Create a matrix file or specify a different path:\n  buildmatrix run --config my_workflow.py",
            )
            sys.exit(EXIT_CONFIG_ERROR)
        return path

    candidates = find_matrix_files()

    if not candidates:
        console.print_error(
            "No matrix file found",
            "Could not find any matrix files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_MATRIX_FILES), "  *_workflow.py"],
            suggestion="Create buildmatrix_workflow.py or specify one explicitly:\n  buildmatrix run --config my_workflow.py",
        )
        sys.exit(EXIT_CONFIG_ERROR)

    if len(candidates) > 1:
        console.print_error(
            "Multiple matrix files found",
            "Found multiple matrix files. Please specify which one to use:",
            details=[f"  {c}" for c in candidates],
            suggestion="Specify a matrix file explicitly:\n  buildmatrix run --config buildmatrix_workflow.py",
        )
        sys.exit(EXIT_CONFIG_ERROR)

    return candidates[0]


def print_config_error(e: ConfigError) -> None:
    details = [f"at {e.location}"] if e.location else []
    get_console().print_error("Invalid matrix configuration", e.message, details=details + e.details)


def _load(ctx: click.Context, config: str | None) -> tuple[Path, MatrixModel]:
    console = get_console()
    path = discover_matrix(config)
    try:
        return path, load_workflow(path)
    except ConfigError as e:
        print_config_error(e)
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_CONFIG_ERROR)
    except Exception as e:
        console.print_error("Failed to load matrix", f"Could not load matrix from {path}", details=[str(e)])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_CONFIG_ERROR)


def _expand(model: MatrixModel) -> tuple[JobSpec, ...]:
    try:
        return expand(model)
    except ConfigError as e:
        print_config_error(e)
        sys.exit(EXIT_CONFIG_ERROR)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    envvar="BUILDMATRIX_DEBUG",
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """buildmatrix: expand a CI build matrix and run it."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config", default=None, help="Matrix file (.py or .json); discovered when omitted")
@click.pass_context
def validate(ctx, config):
    """Check a matrix file without running anything."""
    path, model = _load(ctx, config)
    jobs = _expand(model)
    get_console().print_info(f"{path.name}: OK ({len(jobs)} jobs)")


@cli.command()
@click.option("--config", default=None, help="Matrix file (.py or .json); discovered when omitted")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the expanded jobs as JSON")
@click.pass_context
def plan(ctx, config, as_json):
    """Print the expanded matrix."""
    _path, model = _load(ctx, config)
    jobs = _expand(model)
    console = get_console()
    if as_json:
        payload = [
            {
                "number": j.number,
                "name": j.name,
                "axes": j.axes,
                "env": j.env,
                "allow_failure": j.allow_failure,
                "stages": [{"phase": s.phase.value, "run": s.run} for s in j.stages],
            }
            for j in jobs
        ]
        console.print_info(json.dumps(payload, indent=2))
    else:
        console.print_plan(jobs)


@cli.command()
@click.option("--config", default=None, help="Matrix file (.py or .json); discovered when omitted")
@click.option("--workers", default=None, type=click.IntRange(min=1), envvar="BUILDMATRIX_WORKERS", help="Number of parallel jobs")
@click.option(
    "--fail-fast/--no-fail-fast",
    default=None,
    help="Override the matrix fail_fast setting",
)
@click.option("--timeout", default=None, type=float, envvar="BUILDMATRIX_STAGE_TIMEOUT", help="Per-stage timeout in seconds")
@click.option("--workdir", default=".", show_default=True, help="Directory stages run in")
@click.option("--report", "report_path", default=None, help="Write the JSON build report to this path")
@click.option("--show-output/--no-show-output", default=True, show_default=True, help="Print output of failed steps")
@click.pass_context
def run(ctx, config, workers, fail_fast, timeout, workdir, report_path, show_output):
    """Expand the matrix and run every job."""
    set_console(Console(debug=ctx.obj.get("debug", False), show_output=show_output))
    console = get_console()

    path, model = _load(ctx, config)
    jobs = _expand(model)

    effective_fail_fast = model.fail_fast if fail_fast is None else fail_fast
    workers = workers or default_workers()

    try:
        console.print_run_started(
            config=path.name,
            job_count=len(jobs),
            workers=workers,
            fail_fast=effective_fail_fast,
        )

        coordinator = Coordinator(
            ShellStageExecutor(workdir, timeout=timeout),
            workers=workers,
            fail_fast=effective_fail_fast,
        )
        report = aggregate(coordinator.run(jobs))
        console.print_report(report)

        if report_path:
            Path(report_path).write_text(json.dumps(report.to_dict(), indent=2) + "\n", encoding="utf-8")
            console.print_debug(f"report written to {report_path}")

        sys.exit(report.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except CoordinationError as e:
        console.print_error("Internal coordination error", str(e))
        console.print_exception(e)
        sys.exit(1)
    except Exception as e:
        console.print_error("Build failed", str(e), suggestion="Re-run with --debug for the full traceback")
        console.print_exception(e)
        sys.exit(1)


if __name__ == "__main__":
    cli()
