"""CLI implementation for pullstream."""

import concurrent.futures
import json
import logging
import sys
import time
from typing import Optional

import typer

from .core.model import (
    BackendKind, ConcurrentReadViolation, ReadResult, StreamTarget, StreamerState,
)
from .io import CLOSE_TIMEOUT, DEFAULT_READ_QUANTUM, READ_TIMEOUT
from .runner import SessionRunner

app = typer.Typer(add_completion=False, help="Pull bytes off a long-lived HTTP stream by hand.")


def _configure_logging(verbose: int) -> None:
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s: %(message)s",
                        stream=sys.stderr, force=True)


def _build_runner(url: str, quantum: int, insecure: bool, read_timeout: float) -> SessionRunner:
    try:
        target = StreamTarget(url, quantum)
    except ValueError as e:
        typer.echo(f"Invalid target: {e}", err=True)
        raise typer.Exit(code=2)
    return SessionRunner(target, validate_certificates=not insecure, read_timeout=read_timeout)


def _pull(runner: SessionRunner, timeout: float) -> dict:
    """Issue one read on the active streamer and summarize its outcome."""
    try:
        future = runner.read_active()
    except ConcurrentReadViolation as e:
        return {"count": 0, "error": str(e)}
    if future is None:
        return _describe(None)
    try:
        return _describe(future.result(timeout=timeout))
    except concurrent.futures.TimeoutError:
        return {"count": 0, "error": f"read timed out after {timeout}s"}


def _describe(result: Optional[ReadResult]) -> dict:
    if result is None:
        return {"count": 0, "skipped": True}
    payload = {"count": result.count, "eos": result.at_end_of_stream}
    if result.error is not None:
        payload["error"] = str(result.error)
    if result.cancelled:
        payload["cancelled"] = True
    return payload


@app.command()
def sample(
    url: str = typer.Argument(..., help="URL of a long-lived HTTP(S) resource"),
    backend: BackendKind = typer.Option(BackendKind.EVENT_DRIVEN, "--backend", "-b",
                                        help="Transport backend to stream with"),
    quantum: int = typer.Option(DEFAULT_READ_QUANTUM, "--quantum", "-q", min=1,
                                envvar="PULLSTREAM_QUANTUM", help="Bytes requested per read"),
    reads: int = typer.Option(5, "--reads", "-n", min=0, help="Number of reads to issue"),
    interval: float = typer.Option(0.5, "--interval", min=0.0, help="Seconds to wait before each read"),
    read_timeout: float = typer.Option(READ_TIMEOUT, "--read-timeout", min=0.0,
                                       envvar="PULLSTREAM_READ_TIMEOUT",
                                       help="Per-read timeout (negotiated-upgrade backend)"),
    insecure: bool = typer.Option(False, "--insecure", envvar="PULLSTREAM_INSECURE",
                                  help="Disable certificate validation (event-driven backend)"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Log transitions to stderr"),
):
    """Start one stream, issue a fixed number of reads, stop, and print a JSON summary."""
    _configure_logging(verbose)
    results = []
    with _build_runner(url, quantum, insecure, read_timeout) as runner:
        streamer = runner.start(backend)
        for _ in range(reads):
            time.sleep(interval)
            payload = _pull(runner, read_timeout + CLOSE_TIMEOUT)
            results.append(payload)
            if payload.get("eos") or "error" in payload:
                break
        final_state = streamer.state
        runner.stop_active()

    summary = {
        "url": url,
        "backend": backend.value,
        "quantum": quantum,
        "reads": results,
        "bytes": sum(r["count"] for r in results),
        "state": final_state.value,
    }
    typer.echo(json.dumps(summary))
    if final_state is StreamerState.ERRORED:
        raise typer.Exit(code=1)


_CONSOLE_HELP = "commands: event | upgrade | read | stop | status | quit"


@app.command()
def console(
    url: str = typer.Argument(..., help="URL of a long-lived HTTP(S) resource"),
    quantum: int = typer.Option(DEFAULT_READ_QUANTUM, "--quantum", "-q", min=1,
                                envvar="PULLSTREAM_QUANTUM", help="Bytes requested per read"),
    read_timeout: float = typer.Option(READ_TIMEOUT, "--read-timeout", min=0.0,
                                       envvar="PULLSTREAM_READ_TIMEOUT",
                                       help="Per-read timeout (negotiated-upgrade backend)"),
    insecure: bool = typer.Option(False, "--insecure", envvar="PULLSTREAM_INSECURE",
                                  help="Disable certificate validation (event-driven backend)"),
    verbose: int = typer.Option(1, "--verbose", "-v", count=True, help="Log transitions to stderr"),
):
    """Drive a runner with line commands read from stdin."""
    _configure_logging(verbose)
    actions = {
        "event": lambda runner: runner.start_event_driven(),
        "upgrade": lambda runner: runner.start_negotiated_upgrade(),
        "stop": lambda runner: runner.stop_active(),
        "status": lambda runner: None,
    }
    with _build_runner(url, quantum, insecure, read_timeout) as runner:
        for line in sys.stdin:
            command = line.strip().lower()
            if not command:
                continue
            if command in ("quit", "exit"):
                break
            if command == "read":
                typer.echo(json.dumps(_pull(runner, read_timeout + CLOSE_TIMEOUT)))
                continue
            action = actions.get(command)
            if action is None:
                typer.echo(f"unknown command {command!r}; {_CONSOLE_HELP}", err=True)
                continue
            action(runner)
            active = runner.active
            typer.echo(json.dumps({
                "backend": active.kind.value if active else None,
                "state": active.state.value if active else None,
            }))


if __name__ == "__main__":
    app()
