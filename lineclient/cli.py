#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aioconsole
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from shared.log import callback_logger, get_logger
from shared.utils import parse_hostport
from . import codec
from .client import Client
from .config import ConfigError, load_config

app = typer.Typer(help="lineclient interactive shell")
console = Console()
logger = get_logger(__name__)

COUNT_REQUEST = {"request": "count"}
TIME_REQUEST = {"request": "time"}

COMMAND_HELP = {
    "send": "/send <json>   send a request (object, or array of objects)",
    "count": "/count         ask the server for its count",
    "time": "/time          ask the server for its time",
    "help": "/help          show this list",
    "quit": "/quit          close the connection and exit",
}


class Shell:
    """Reads /commands and turns them into client writes."""

    def __init__(self, client: Client, console: Console, timeout: Optional[float] = None) -> None:
        self.client = client
        self.console = console
        self.timeout = timeout
        self.running = True
        self.commands: Dict[str, Callable[[Optional[str]], Awaitable[None]]] = {
            "send": self.run_send,
            "count": self.run_count,
            "time": self.run_time,
            "help": self.run_help,
            "quit": self.run_quit,
            "exit": self.run_quit,
        }

    @staticmethod
    def parse(line: str) -> Tuple[str, Optional[str]]:
        """Split '/cmd params' into ('cmd', 'params'); params is None when absent."""
        line = line.strip()
        i = line.find(" ")
        params = None
        if i == -1:
            i = len(line)
        else:
            params = line[i:].strip() or None
        return line[1:i], params

    async def read_input(self, line: str) -> None:
        if not line.strip().startswith("/"):
            self.console.print("[red]Invalid Command[/]")
            return
        cmd, params = self.parse(line)
        await self.run_command(cmd, params)

    async def run_command(self, cmd: str, params: Optional[str]) -> None:
        handler = self.commands.get(cmd)
        if handler is None:
            self.console.print("[red]Invalid Command[/]")
            return
        await handler(params)

    async def run_send(self, params: Optional[str]) -> None:
        if not params:
            self.console.print("Usage: /send <json>")
            return
        await self._write(params)

    async def run_count(self, params: Optional[str] = None) -> None:
        await self._write(COUNT_REQUEST)

    async def run_time(self, params: Optional[str] = None) -> None:
        await self._write(TIME_REQUEST)

    async def run_help(self, params: Optional[str] = None) -> None:
        table = Table(title="Commands", show_header=False)
        for text in COMMAND_HELP.values():
            table.add_row(text)
        self.console.print(table)

    async def run_quit(self, params: Optional[str] = None) -> None:
        self.running = False

    async def _write(self, message: Any) -> None:
        try:
            replies = await asyncio.wait_for(self.client.write(message), self.timeout)
        except asyncio.TimeoutError:
            self.console.print("[yellow]No reply yet; the request stays pending[/]")
            return
        for reply in replies:
            self.console.print_json(data=reply)

    async def loop(self, prompt: str = ": ") -> None:
        while self.running:
            try:
                line = await aioconsole.ainput(prompt)
            except EOFError:
                break
            if not line.strip():
                continue
            await self.read_input(line)


def _console_log(text: str) -> None:
    console.print(f"[dim]{escape(text)}[/]", highlight=False)


@app.command()
def run(
    server: Optional[str] = typer.Option(None, help="host:port of the server (default from config or LINECLIENT_SERVER)"),
    name: Optional[str] = typer.Option(None, help="Username; prompted for if omitted"),
    config: Optional[Path] = typer.Option(None, help="YAML config file"),
    timeout: float = typer.Option(10.0, help="Seconds to wait for replies before returning to the prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Ask for credentials, connect and start the interactive loop."""
    overrides: Dict[str, Any] = {}
    if server:
        try:
            overrides["host"], overrides["port"] = parse_hostport(server)
        except ValueError as e:
            console.print(f"[red]{e}[/]")
            raise typer.Exit(code=2)
    try:
        cfg = load_config(
            config,
            logger=callback_logger(_console_log, level="DEBUG" if verbose else "INFO"),
            **overrides,
        )
    except ConfigError as e:
        console.print(f"[red]Config error[/]: {e}")
        raise typer.Exit(code=2)

    username = name or console.input("Username: ")
    password = console.input("Password: ", password=True)

    async def main_loop() -> None:
        client = Client(cfg)
        client.set_credentials(username, password)
        console.print(f"[bold green]lineclient starting[/] as {escape(username)} on {cfg.address}")
        await client.connect()
        shell = Shell(client, console, timeout=timeout)
        try:
            await shell.loop()
        finally:
            await client.close()

    asyncio.run(main_loop())


@app.command()
def encode(messages: List[str] = typer.Argument(..., help="JSON messages to frame")):
    """Print the wire framing of the given JSON messages."""
    for message in messages:
        try:
            json.loads(message)
        except json.JSONDecodeError as e:
            console.print(f"[red]Invalid JSON[/] {escape(message)}: {e}")
            raise typer.Exit(code=1)
    console.out(codec.encode(messages), end="", highlight=False)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
