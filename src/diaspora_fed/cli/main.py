"""
diaspora-fed CLI — `dfed` command.

Commands:
  dfed keys generate|add|list     Local key pairs and the known-keys ring
  dfed envelope build <file>      Sign (and optionally encrypt) a payload
  dfed envelope open <file>       Verify and decode an envelope
  dfed normalize <file>           Show the canonical fields of a payload

Everything works offline: author keys come from ~/.dfed/keys.json.
"""

import asyncio
import json
from pathlib import Path

try:
    import click
    from rich.console import Console
except ImportError:
    raise SystemExit("CLI requires extras: pip install diaspora-fed[cli]")

from diaspora_fed.identity import StaticKeyResolver

console = Console()
KEYRING_FILE = Path.home() / ".dfed" / "keys.json"


def _load_keyring() -> dict:
    try:
        return json.loads(KEYRING_FILE.read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        return {}


def _save_keyring(keys: dict) -> None:
    KEYRING_FILE.parent.mkdir(parents=True, exist_ok=True)
    KEYRING_FILE.write_text(json.dumps(keys, indent=2))


def _get_resolver() -> StaticKeyResolver:
    return StaticKeyResolver(_load_keyring())


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option("0.1.0")
def main():
    """diaspora-fed CLI — build, open and inspect federation messages."""


# Register subcommands from separate modules
from diaspora_fed.cli.keys import keys
from diaspora_fed.cli.envelope import envelope
from diaspora_fed.cli.normalize import normalize_cmd

main.add_command(keys)
main.add_command(envelope)
main.add_command(normalize_cmd)


if __name__ == "__main__":
    main()
