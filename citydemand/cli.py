"""Click CLI commands for the city demand pipeline."""

import logging
from typing import List, Optional, Sequence

import click
from tqdm import tqdm

from .config import CityConfig, load_cities, load_config
from .models import CityDemandError
from .pipeline import CityPipeline

logger = logging.getLogger(__name__)


class TqdmProgress:
    """progress_callback that drives a tqdm bar (0-100)."""

    def __init__(self, desc: str = ""):
        self.bar = tqdm(total=100, desc=desc, unit="%", leave=False,
                        bar_format="{desc:<40.40} {percentage:3.0f}%|{bar}|")

    def __call__(self, pct: float, msg: str) -> None:
        self.bar.n = max(0.0, min(100.0, float(pct)))
        self.bar.set_description_str(msg, refresh=False)
        self.bar.refresh()

    def close(self) -> None:
        self.bar.close()


def _select(cities: List[CityConfig], codes: Sequence[str]) -> List[CityConfig]:
    if not codes:
        return cities
    wanted = {c.upper() for c in codes}
    selected = [c for c in cities if c.code.upper() in wanted]
    missing = wanted - {c.code.upper() for c in selected}
    if missing:
        raise click.ClickException(f"Unknown city code(s): {', '.join(sorted(missing))}")
    return selected


def _run(cities_path: str, config_path: Optional[str], codes: Sequence[str],
         download: bool, process: bool, progress: bool) -> None:
    try:
        config = load_config(config_path)
        cities = _select(load_cities(cities_path), codes)
    except CityDemandError as e:
        raise click.ClickException(str(e))

    reporter = TqdmProgress() if progress else None
    try:
        pipeline = CityPipeline(config, progress_callback=reporter)
        results = pipeline.run(cities, download=download, process=process)
    finally:
        if reporter is not None:
            reporter.close()

    failed = [r.code for r in results if not r.ok]
    if failed:
        raise click.ClickException(f"{len(failed)} of {len(results)} cities failed: "
                                   f"{', '.join(failed)}")
    click.echo(f"Completed {len(results)} cities")


_common = [
    click.option('--cities', 'cities_path', default='cities.json', show_default=True,
                 type=click.Path(dir_okay=False), help='City list JSON'),
    click.option('--config', 'config_path', default=None,
                 type=click.Path(exists=True, dir_okay=False), help='Performance config JSON'),
    click.option('--only', 'codes', multiple=True, help='Restrict to these city codes'),
    click.option('--no-progress', is_flag=True, help='Disable the progress bar'),
]


def common_options(func):
    for option in reversed(_common):
        func = option(func)
    return func


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose: bool):
    """Build travel-demand datasets for cities from OpenStreetMap data."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@cli.command()
@common_options
def download(cities_path, config_path, codes, no_progress):
    """Download roads, buildings and places into the raw store."""
    _run(cities_path, config_path, codes, download=True, process=False,
         progress=not no_progress)


@cli.command()
@common_options
def process(cities_path, config_path, codes, no_progress):
    """Build the building index and demand data from the raw store."""
    _run(cities_path, config_path, codes, download=False, process=True,
         progress=not no_progress)


@cli.command()
@common_options
def run(cities_path, config_path, codes, no_progress):
    """Download and process every city."""
    _run(cities_path, config_path, codes, download=True, process=True,
         progress=not no_progress)


if __name__ == '__main__':
    cli()
