"""CLI entry point for the CORS proxy."""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from cors_proxy.config import load_config_file, resolve_config, write_config_template
from cors_proxy.errors import BindError, ConfigurationError
from cors_proxy.lifecycle import ProxyServer, run_proxy
from cors_proxy.vars import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT_MS,
    LOG_LEVEL,
    VERSION,
    env_defaults,
)

console = Console()

QUICK_START = "cors-proxy --port 8000 --target http://example.com"

# Request log colors per verb
METHOD_STYLES = {
    "GET": "green",
    "POST": "blue",
    "PUT": "yellow",
    "DELETE": "red",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cors-proxy",
        description="Reverse proxy that adds CORS headers to a single upstream target",
        epilog=f"example: {QUICK_START}",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="start",
        choices=["start", "init"],
        help="start the proxy (default) or write a proxy.config.json template",
    )
    parser.add_argument(
        "-p", "--port", type=int, default=None, help=f"Port to listen on (default: {DEFAULT_PORT})"
    )
    parser.add_argument("-t", "--target", default=None, help="Upstream target URL (required)")
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help=f"Path to JSON config file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--logger",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Log every proxied request (default: on)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        help=f"Upstream request timeout in milliseconds (default: {DEFAULT_TIMEOUT_MS})",
    )
    parser.add_argument("--host", default=None, help="Interface to bind to (default: 0.0.0.0)")
    parser.add_argument("-v", "--version", action="store_true", help="Show the version and exit")
    return parser


class ProxyLogHandler(RichHandler):
    """RichHandler that colors request lines (``[METHOD] url``) by HTTP verb."""

    def render_message(self, record: logging.LogRecord, message: str) -> Text:
        text = super().render_message(record, message)
        method = getattr(record, "proxy_method", None)
        if method:
            tag_end = len(method) + 2
            text.stylize(f"bold {METHOD_STYLES.get(method, 'white')}", 0, tag_end)
            text.stylize("dim", tag_end + 1)
        return text


def configure_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[ProxyLogHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
    )


def print_error(title: str, detail: str = "") -> None:
    body = f"[bold red]{title}[/]"
    if detail:
        body += f"\n\n{detail}"
    console.print(Panel(body, border_style="red", padding=(1, 2)))


def print_startup_banner(server: ProxyServer) -> None:
    console.print(
        Panel(
            f"[bold cyan]{escape(server.summary)}[/]\n\n[dim]Press[/] [bold yellow]Ctrl+C[/] [dim]to stop[/]",
            title="CORS Proxy",
            border_style="cyan",
            padding=(1, 2),
        )
    )


def init_config(path: str = DEFAULT_CONFIG_FILE) -> int:
    try:
        config_path = write_config_template(str(Path.cwd() / path))
    except FileExistsError:
        print_error(f"{path} already exists")
        return 1
    console.print(
        Panel(
            f"[bold green]Config file created[/]\n\n"
            f"Location: [cyan]{escape(str(config_path))}[/]\n"
            f"Next: edit it, then run [green]cors-proxy start[/]",
            border_style="green",
            padding=(1, 2),
        )
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    if args.version:
        console.print(f"[bold]cors-proxy[/] [cyan]v{VERSION}[/]")
        return 0

    if args.command == "init":
        return init_config()

    # Build config: CLI args > config file > env vars > defaults
    config_file = args.config or DEFAULT_CONFIG_FILE
    try:
        file_values = load_config_file(config_file)
    except ConfigurationError as e:
        print_error("Failed to load config file", escape(str(e)))
        file_values = {}

    cli_values = {
        "listen_port": args.port,
        "target": args.target,
        "logging_enabled": args.logger,
        "request_timeout_ms": args.timeout,
        "host": args.host,
    }
    try:
        config = resolve_config(cli_values, file_values, env_defaults())
    except ConfigurationError as e:
        print_error(
            "Invalid configuration",
            f"{escape(str(e))}\n\n[yellow]Quick start:[/] [green]{QUICK_START}[/]",
        )
        return 1

    try:
        asyncio.run(run_proxy(config, on_started=print_startup_banner))
    except BindError as e:
        print_error("Cannot start the proxy server", escape(str(e)))
        return 1
    except KeyboardInterrupt:
        pass

    console.print("[bold green]Proxy server stopped.[/]")
    return 0
