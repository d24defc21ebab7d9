"""
Command-line front end.

    wmclean input.png -o output.png --profile region-exact --region 0.7,0.85,0.3,0.15
    wmclean shots/*.jpg -o cleaned/

With several inputs the output is a directory; every image gets its own
progress bar, a failing image does not stop the others, and the exit code
summarizes the batch.
"""

import argparse
import logging
import pathlib
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from .buffer import PixelBuffer
from .config import get_settings
from .engine import BatchItem, WatermarkEngine
from .errors import EngineError, InputError, RegionError
from .pipeline.profiles import PROFILES
from .pipeline.region import NormalizedRegion
from .pipeline.scheduler import CooperativeScheduler, DelegatedScheduler

logger = logging.getLogger(__name__)
console = Console(stderr=True)

# Failures that mean the caller passed something unusable
USAGE_ERRORS = (InputError, RegionError)


def parse_cli_args(argv=None):
    """Sets up and parses command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="wmclean",
        description="Detect overlay watermarks and repair them from surrounding pixels.",
    )
    parser.add_argument("inputs", type=pathlib.Path, nargs="+", help="Image(s) to clean.")
    parser.add_argument("-o", "--output", type=pathlib.Path, required=True,
                        help="Output file for one input, or a directory for several.")
    parser.add_argument("-p", "--profile", choices=sorted(PROFILES), default=None,
                        help="Algorithm profile (default from settings).")
    parser.add_argument("-r", "--region", type=str, default=None,
                        help="Watermark region as normalized 'x,y,w,h', applied to every input.")
    parser.add_argument("-m", "--mode", choices=["cooperative", "delegated"], default=None,
                        help="Execution strategy (default from settings).")
    parser.add_argument("-b", "--bands", type=int, default=None, help="Number of row bands.")
    parser.add_argument("-t", "--timeout", type=float, default=None,
                        help="Seconds before a run is aborted, 0 disables.")
    parser.add_argument("--noise", type=float, default=None,
                        help="Opt-in repair noise amplitude, needs --seed.")
    parser.add_argument("--seed", type=int, default=None, help="Seed for repair noise.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser.parse_args(argv)


def output_paths(inputs: list[pathlib.Path], output: pathlib.Path) -> list[pathlib.Path]:
    """One output path per input; several inputs, or an existing directory, mean a directory."""
    if len(inputs) == 1 and not output.is_dir():
        return [output]
    return [output / path.name for path in inputs]


def exit_code(failures: list[EngineError | OSError]) -> int:
    """0 when everything succeeded, 2 when only usage errors failed, 1 otherwise."""
    if not failures:
        return 0
    if all(isinstance(e, USAGE_ERRORS) for e in failures):
        return 2
    return 1


def main(argv=None) -> int:
    args = parse_cli_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )

    overrides = {}
    if args.bands is not None:
        overrides["band_count"] = args.bands
    if args.noise is not None:
        overrides["noise_amplitude"] = args.noise
    if args.seed is not None:
        overrides["noise_seed"] = args.seed
    settings = get_settings().model_copy(update=overrides)

    mode = args.mode or settings.execution_mode
    if mode == "cooperative":
        scheduler = CooperativeScheduler()
    else:
        scheduler = DelegatedScheduler(start_method=settings.worker_start_method)
    engine = WatermarkEngine(settings, scheduler=scheduler)

    try:
        region = NormalizedRegion.parse(args.region) if args.region else None
    except RegionError as e:
        console.print(f"[red]Invalid region:[/red] {e}")
        return 2

    targets = output_paths(args.inputs, args.output)
    if targets[0] != args.output:
        args.output.mkdir(parents=True, exist_ok=True)

    failures = []
    items = []
    item_targets = []
    for source, target in zip(args.inputs, targets):
        try:
            items.append(BatchItem(buffer=PixelBuffer.open(source), region=region, name=source.name))
            item_targets.append(target)
        except InputError as e:
            console.print(f"[red]Skipped {source}:[/red] {e}")
            failures.append(e)

    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        tasks = [progress.add_task(item.name, total=100) for item in items]
        results = engine.run_batch(
            items,
            profile=args.profile,
            on_progress=lambda index, pct: progress.update(tasks[index], completed=pct),
            timeout=args.timeout,
        )

    saved = 0
    for outcome, target in zip(results, item_targets):
        if not outcome.ok:
            console.print(f"[red]Failed {outcome.name} ({outcome.error.kind}):[/red] {outcome.error}")
            failures.append(outcome.error)
            continue
        try:
            outcome.result.buffer.save(target)
        except OSError as e:
            console.print(f"[red]Could not write {target}:[/red] {e}")
            failures.append(e)
            continue
        saved += 1
        console.print(
            f"[green]Saved[/green] {target} "
            f"({outcome.result.changed_pixels} pixel updates, {outcome.result.strategy})"
        )

    if len(args.inputs) > 1:
        console.print(f"{saved} of {len(args.inputs)} images cleaned, {len(failures)} failed")
    return exit_code(failures)


if __name__ == "__main__":
    sys.exit(main())
