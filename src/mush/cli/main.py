"""CLI entry point for mush.

``mush worker start`` takes over the terminal and runs jobs from the
queue until Ctrl+Q, a double Ctrl+C or a termination signal.
"""

import typer
from rich.console import Console

from .. import __version__
from .cmd.worker import app as worker_app

app = typer.Typer(
    name="mush",
    help="Mush - run agent jobs from your queue in this terminal",
    no_args_is_help=True,
    add_completion=False,
)
app.add_typer(worker_app, name="worker", help="Run the job worker")

console = Console()


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        console.print(f"mush {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """Mush - run agent jobs from your queue in this terminal."""


@app.command()
def paths():
    """Show the directories mush reads and writes."""
    from ..core.global_paths import GlobalPath

    console.print(f"config  {GlobalPath.config()}")
    console.print(f"data    {GlobalPath.data()}")
    console.print(f"state   {GlobalPath.state()}")
    console.print(f"logs    {GlobalPath.log()}")
    console.print(f"history {GlobalPath.history()}")


if __name__ == "__main__":
    app()
