"""
CLI command for the collabot WebSocket server.
"""

import asyncio
from typing import Annotated, Optional

import cyclopts
from rich.console import Console

serve_app = cyclopts.App(name="serve", help="Run the collabot WebSocket server")

console = Console()


def build_server(orchestrator, host: str, port: int, handshake_timeout: float):
    """Wire a server, its channel and its methods around an orchestrator."""
    from collabot.serve.methods import register_methods
    from collabot.serve.server import create_server
    from collabot.serve.ws_interface import WebSocketChannel

    server = create_server(host=host, port=port, handshake_timeout=handshake_timeout)
    channel = WebSocketChannel(server)
    orchestrator.pool.set_on_change(channel.pool_observer)
    register_methods(server, orchestrator, channel)
    return server


@serve_app.default
def serve(
    home: Annotated[
        Optional[str], cyclopts.Parameter(help="Harness home (config.yaml, roles/, projects/)")
    ] = None,
    host: Annotated[Optional[str], cyclopts.Parameter(help="Host to bind to")] = None,
    port: Annotated[Optional[int], cyclopts.Parameter(help="Port to listen on")] = None,
    engine: Annotated[str, cyclopts.Parameter(help="Agent engine (echo, subprocess)")] = "echo",
    agent_command: Annotated[
        Optional[str], cyclopts.Parameter(help="Command line for the subprocess engine")
    ] = None,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable debug logging")] = False,
):
    """
    Run the collabot WebSocket server.

    Clients connect to ``/ws``, handshake with protocol version 1 and then
    speak JSON-RPC 2.0.

    Example:
        collabot serve --port 9800
        collabot serve --engine subprocess --agent-command "my-agent --jsonl"
    """
    from collabot.config import configure_logging, load_config
    from collabot.errors import ConfigError
    from collabot.harness import HarnessPaths, create_runner, load_orchestrator
    from collabot.serve.server import run_server

    configure_logging(verbose)
    paths = HarnessPaths.resolve(home)

    try:
        config = load_config(paths.config_file)
        orchestrator = load_orchestrator(paths, create_runner(engine, agent_command), config)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    ws_config = config.ws
    host = host or (ws_config.host if ws_config else "127.0.0.1")
    port = port or (ws_config.port if ws_config else 9800)
    handshake_timeout = ws_config.handshake_timeout_seconds if ws_config else 10.0

    server = build_server(orchestrator, host, port, handshake_timeout)

    console.print("[bold]Starting collabot WebSocket server...[/bold]")
    console.print(f"  Home: {paths.home}")
    console.print(f"  Projects: {len(orchestrator.projects)}")
    console.print(f"  Roles: {len(orchestrator.roles)}")
    console.print(f"  Engine: {engine}")
    console.print()
    console.print(f"Connect at: ws://{host}:{port}/ws")
    console.print()

    asyncio.run(run_server(server))
