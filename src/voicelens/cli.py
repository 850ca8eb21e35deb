"""VoiceLens CLI - voicelens command line tool."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from voicelens import __version__
from voicelens.common.events import Event
from voicelens.config import Config, load_config
from voicelens.foundation.camera import Facing
from voicelens.foundation.speech import MockRecognitionBackend
from voicelens.session import VoiceSession

app = typer.Typer(
    name="voicelens",
    help="Ask a spoken question about what the camera sees",
    no_args_is_help=True,
)
console = Console()

STATUS_STYLES = {
    "answered": "green",
    "failed": "red",
    "aborted": "yellow",
    "cancelled": "dim",
    "superseded": "dim",
}


def get_config(mock: bool = False) -> Config:
    """Get configuration."""
    cfg = load_config()
    if mock:
        cfg.mock_mode = True
    return cfg


@app.command()
def ask(
    mock: bool = typer.Option(False, "--mock", help="Use mock devices and a canned vision answer"),
    question: Optional[str] = typer.Option(
        None, "--question", "-q", help="Question to recognize (mock mode only)"
    ),
    facing: Facing = typer.Option(Facing.BACK, "--facing", help="Camera to use"),
    json_output: bool = typer.Option(False, "--json-output", help="Print the turn as JSON"),
):
    """Turn on the camera and answer one spoken question."""
    cfg = get_config(mock)

    if question and not cfg.mock_mode:
        console.print("[red]Error:[/] --question needs --mock")
        raise typer.Exit(2)

    async def _ask():
        recognition = None
        if cfg.mock_mode:
            recognition = MockRecognitionBackend(
                [question or "What do you see?"], delay=0.1
            )

        session = VoiceSession(cfg, recognition_backend=recognition, configure_logging=True)

        async def on_phase(event: Event) -> None:
            if not json_output:
                console.print(f"[dim]phase:[/] {event.data['phase']}")

        session.events.subscribe("session.phase", on_phase)

        async with session:
            if not await session.start_camera(facing):
                console.print(f"[red]Camera error:[/] {session.state.last_error}")
                return 1
            turn = await session.ask()

        if json_output:
            print(json.dumps(turn.to_dict(), indent=2))
        else:
            style = STATUS_STYLES.get(turn.status, "white")
            body = turn.answer or turn.error or "(no answer)"
            console.print(
                Panel(
                    f"[bold]Q:[/] {turn.question or '-'}\n\n{body}",
                    title=f"Turn {turn.turn_id} [{style}]{turn.status}[/]",
                )
            )
        return 0 if turn.status == "answered" else 1

    try:
        code = asyncio.run(_ask())
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


@app.command()
def status(mock: bool = typer.Option(False, "--mock", help="Use mock devices")):
    """Show component status."""
    cfg = get_config(mock)

    async def _status():
        async with VoiceSession(cfg) as session:
            info = session.get_status()

        console.print(
            Panel(
                f"Phase: [bold]{info['phase']}[/]  Microphone: [bold]{info['microphone']}[/]"
                f"  Mock: {info['mock_mode']}",
                title="Session Status",
            )
        )

        table = Table(title="Components")
        table.add_column("Component", style="cyan")
        table.add_column("State")
        table.add_column("Backend")

        for name, component in info["components"].items():
            state = component.get("state", "unknown")
            state_style = {"running": "green", "error": "red"}.get(state, "white")
            backend = component.get("backend", {})
            backend_name = backend.get("backend", "") if isinstance(backend, dict) else ""
            table.add_row(name, f"[{state_style}]{state}[/]", backend_name)

        vision = info["vision"]
        vision_state = "[green]configured[/]" if vision["configured"] else "[red]unconfigured[/]"
        table.add_row("vision", vision_state, vision["model"])
        console.print(table)

    try:
        asyncio.run(_status())
    except Exception as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]VoiceLens[/] v{__version__}")


@app.command()
def config(json_output: bool = typer.Option(False, "--json-output", help="Print as JSON")):
    """Show configuration."""
    cfg = get_config()
    data = cfg.model_dump()
    if data["vision"].get("api_key"):
        data["vision"]["api_key"] = "***"

    if json_output:
        print(json.dumps(data, indent=2, default=str))
    else:
        console.print("[bold]Configuration[/]")
        console.print(f"  Device: {cfg.device.name}")
        console.print(f"  Mode: {cfg.device.mode}")
        console.print(f"  Mock Mode: {cfg.mock_mode}")
        console.print("\n[bold]Speech[/]")
        console.print(f"  Language: {cfg.speech.language}")
        console.print(f"  Auto Restart: {cfg.speech.auto_restart}")
        console.print("\n[bold]Voice[/]")
        console.print(f"  Enabled: {cfg.voice.enabled}")
        console.print(f"  Rate: {cfg.voice.rate}")
        console.print("\n[bold]Vision[/]")
        console.print(f"  Endpoint: {cfg.vision.endpoint}")
        console.print(f"  Model: {cfg.vision.model}")
        console.print(f"  API Key: {'set' if cfg.vision.api_key else 'not set'}")


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
