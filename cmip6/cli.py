import os
import pdb
from pathlib import Path

import click
from dotenv import load_dotenv

from cmip6.base_values import DEFAULT_YEARS, DOMAINS, VARIABLES
from cmip6.pipeline import ConversionPipeline, TaskResult
from etl_scripts.grabbag import eprint

load_dotenv()

scratchspace: Path = (Path(__file__).parent.parent / "scratchspace" / "cmip6").absolute()

domains_choice = click.Choice(list(DOMAINS))
variables_choice = click.Choice(list(VARIABLES))


def default_data_dir() -> Path:
    env = os.getenv("CMIP6_DATA_DIR")
    return Path(env) if env else scratchspace


@click.command
@click.argument("domain", type=domains_choice)
@click.option("--start-year", type=int, default=DEFAULT_YEARS.start, show_default=True)
@click.option("--end-year", type=int, default=DEFAULT_YEARS.stop - 1, show_default=True, help="Inclusive.")
@click.option(
    "--variable",
    "variables",
    type=variables_choice,
    multiple=True,
    help="Only convert this variable, can be repeated. Defaults to all variables.",
)
@click.option("--keep-intermediates", is_flag=True, help="Keep downloaded NetCDF and monthly files.")
@click.option("--max-parallel", type=int, default=1, show_default=True, help="Years converted at the same time.")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Root for downloads and outputs. Defaults to $CMIP6_DATA_DIR or the scratchspace.",
)
@click.option("--pdb", "use_pdb", is_flag=True, help="Drop into debugger on error.")
def download(
    domain: str,
    start_year: int,
    end_year: int,
    variables: tuple[str, ...],
    keep_intermediates: bool,
    max_parallel: int,
    data_dir: Path | None,
    use_pdb: bool,
):
    """
    Download DOMAIN archives and convert them to yearly time series.

    Prints one line per task to stdout: variable, year and whether it was converted, already existed or is not
    published by the model. Rerunning after an interruption continues with the missing years.
    """
    if end_year < start_year:
        raise click.BadParameter("must not be before --start-year", param_hint="--end-year")
    data_dir = data_dir if data_dir is not None else default_data_dir()
    selected = [VARIABLES[name] for name in variables] if variables else None
    eprint(f"Writing {domain} to {data_dir}")

    try:
        with ConversionPipeline(
            DOMAINS[domain],
            data_dir,
            delete_intermediates=not keep_intermediates,
            max_parallel=max_parallel,
        ) as pipeline:
            results = pipeline.run(selected, range(start_year, end_year + 1))
    except Exception:
        if use_pdb:
            pdb.post_mortem()
        raise

    for (name, year), result in results.items():
        print(f"{name}\t{year}\t{result.value}")
    converted = sum(1 for result in results.values() if result is TaskResult.CONVERTED)
    eprint(f"✓ {converted} of {len(results)} tasks converted")


@click.command
@click.argument("domain", type=domains_choice, required=False)
def list_variables(domain: str | None):
    """List all variables, or with DOMAIN how that model publishes each of them."""
    for variable in VARIABLES.values():
        if domain is None:
            print(f"{variable.name}\t{variable.shortname}\t{variable.unit}")
        else:
            print(f"{variable.name}\t{DOMAINS[domain].time_type(variable).value}")


@click.group
def cli():
    pass


cli.add_command(download)
cli.add_command(list_variables)

if __name__ == "__main__":
    cli()
