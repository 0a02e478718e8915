"""Command line entry points for codelore."""

from typer import Typer

from .enrichment import enrichment_app


cli = Typer(help="Codelore command line tools")
cli.add_typer(enrichment_app, name="enrichment")

__all__ = ["cli", "enrichment_app"]
