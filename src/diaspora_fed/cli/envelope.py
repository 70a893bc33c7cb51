"""CLI: dfed envelope build|open"""

from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel

from diaspora_fed import envelope as codec
from diaspora_fed.errors import FederationError

console = Console()


def _get_resolver():
    from diaspora_fed.cli.main import _get_resolver
    return _get_resolver()


def _run(coro):
    from diaspora_fed.cli.main import _run
    return _run(coro)


def _read(source: Optional[Path]) -> str:
    if source is None:
        return click.get_text_stream("stdin").read()
    return source.read_text()


@click.group()
def envelope():
    """Magic envelope tools."""


@envelope.command("build")
@click.argument("payload", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=False)
@click.option("--handle", required=True, help="Sender handle (user@host)")
@click.option("--key", "key_file", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True,
              help="Sender private key (PEM)")
@click.option("--recipient-key", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None,
              help="Recipient public key (PEM); omit with --public")
@click.option("--public", is_flag=True, help="Build a public envelope")
def envelope_build(payload: Optional[Path], handle: str, key_file: Path, recipient_key: Optional[Path], public: bool):
    """Sign PAYLOAD (or stdin) into an envelope and print it."""
    if not public and recipient_key is None:
        console.print("[red]Private envelopes need --recipient-key (or pass --public).[/red]")
        raise SystemExit(1)
    try:
        built = codec.build_message(
            _read(payload),
            handle,
            key_file.read_text(),
            recipient_key.read_text() if recipient_key else None,
            public,
        )
    except FederationError as e:
        console.print(f"[red]{e.code}: {e}[/red]")
        raise SystemExit(1)
    click.echo(built)


@envelope.command("open")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=False)
@click.option("--key", "key_file", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None,
              help="Recipient private key (PEM), needed for private envelopes")
@click.option("--legacy", is_flag=True, help="Input uses the old <diaspora> format")
def envelope_open(source: Optional[Path], key_file: Optional[Path], legacy: bool):
    """Verify and decode an envelope from SOURCE (or stdin)."""
    raw = _read(source)
    private_key = key_file.read_text() if key_file else None

    async def _open():
        resolver = _get_resolver()
        if legacy:
            return await codec.decode_legacy(raw, private_key, resolver)
        return await codec.decode_raw(raw, private_key, resolver)

    try:
        decoded = _run(_open())
    except FederationError as e:
        console.print(f"[red]{e.code}: {e}[/red]")
        raise SystemExit(1)
    console.print(f"[green]Verified[/green] message from [bold]{decoded.author}[/bold]")
    console.print(Panel(decoded.message, title="payload"))
