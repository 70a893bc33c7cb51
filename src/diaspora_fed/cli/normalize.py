"""CLI: dfed normalize"""

import json
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from diaspora_fed.errors import FederationError
from diaspora_fed.models.envelope import DecodedMessage
from diaspora_fed.normalizer import normalize, parse_fields

console = Console()


def _get_resolver():
    from diaspora_fed.cli.main import _get_resolver
    return _get_resolver()


def _run(coro):
    from diaspora_fed.cli.main import _run
    return _run(coro)


@click.command("normalize")
@click.argument("payload", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--sender", default=None, help="Envelope signer; enables signature checks")
@click.option("--json-output", "--json", is_flag=True)
def normalize_cmd(payload: Path, sender: Optional[str], json_output: bool):
    """Show the canonical fields of a decoded PAYLOAD."""
    text = payload.read_text()

    async def _normalize():
        resolver = _get_resolver()
        key = await resolver.resolve_public_key(sender)
        return await normalize(DecodedMessage(message=text, author=sender, key=key), resolver)

    try:
        message = _run(_normalize()) if sender else parse_fields(text)
    except FederationError as e:
        console.print(f"[red]{e.code}: {e}[/red]")
        raise SystemExit(1)

    if json_output:
        click.echo(json.dumps({
            "type": message.type.value,
            "fields": message.fields,
            "embedded": [obj.model_dump() for obj in message.embedded],
            "signed_data": message.signed_data,
        }, indent=2))
        return

    table = Table(title=f"{message.type.value}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for name, value in message.fields:
        table.add_row(name, value)
    for obj in message.embedded:
        for name, value in obj.fields:
            table.add_row(f"{obj.name}.{name}", value)
    console.print(table)
    if message.signed_data:
        console.print(f"[dim]signed data: {message.signed_data}[/dim]")
    if sender:
        console.print("[green]Signatures verified[/green]")
