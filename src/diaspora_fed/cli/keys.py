"""CLI: dfed keys generate|add|list"""

from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from diaspora_fed import crypto
from diaspora_fed.errors import CryptoFailure
from diaspora_fed.identity import normalize_handle

console = Console()


def _load_keyring() -> dict:
    from diaspora_fed.cli.main import _load_keyring
    return _load_keyring()


def _save_keyring(keys: dict) -> None:
    from diaspora_fed.cli.main import _save_keyring
    _save_keyring(keys)


@click.group()
def keys():
    """Key pairs and known author keys."""


@keys.command("generate")
@click.argument("handle")
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), required=True,
              help="Where to write the private key (PEM)")
@click.option("--bits", default=4096, type=int, show_default=True)
def keys_generate(handle: str, out_path: Path, bits: int):
    """Generate a key pair for HANDLE and remember its public key."""
    with console.status(f"Generating {bits}-bit RSA key..."):
        private_key = crypto.generate_private_key(bits)
    out_path.write_text(crypto.export_private_pem(private_key))
    out_path.chmod(0o600)

    ring = _load_keyring()
    ring[normalize_handle(handle)] = crypto.export_public_pem(private_key)
    _save_keyring(ring)
    console.print(f"[green]Private key written to {out_path}[/green]")
    console.print(f"[dim]Public key of {normalize_handle(handle)} saved to ~/.dfed/keys.json[/dim]")


@keys.command("add")
@click.argument("handle")
@click.argument("key_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def keys_add(handle: str, key_file: Path):
    """Trust KEY_FILE (PEM) as the public key of HANDLE."""
    try:
        public_pem = crypto.export_public_pem(crypto.load_public_key(key_file.read_text()))
    except CryptoFailure as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    ring = _load_keyring()
    ring[normalize_handle(handle)] = public_pem
    _save_keyring(ring)
    console.print(f"[green]Added key for {normalize_handle(handle)}[/green]")


@keys.command("list")
def keys_list():
    """List known author keys."""
    ring = _load_keyring()
    table = Table(title=f"Known keys ({len(ring)})")
    table.add_column("Handle", style="bold")
    table.add_column("Key")
    for handle, pem in sorted(ring.items()):
        body = "".join(line for line in pem.splitlines() if not line.startswith("-----"))
        table.add_row(handle, f"{body[:24]}...{body[-12:]}")
    console.print(table)
