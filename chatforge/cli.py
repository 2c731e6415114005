"""Command line interface for running chatforge workers and inspecting runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from chatforge import (
    GenerationWorker,
    MessageDispatcher,
    create_orchestrator,
    get_repository,
    get_transport,
)
from chatforge.config import load_config
from chatforge.errors import ActiveRunExistsError, RunNotFoundError

app = typer.Typer(help="CLI for chatforge generation workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running generation workers")
run_app = typer.Typer(help="Commands for inspecting workflow runs")
message_app = typer.Typer(help="Commands for submitting and inspecting messages")

app.add_typer(worker_app, name="worker")
app.add_typer(run_app, name="run")
app.add_typer(message_app, name="message")

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, help="Override the log level from configuration"
    ),
) -> None:
    """chatforge CLI entry point."""
    configure_logging(log_level or load_config().log_level)


@worker_app.command("start")
def worker_start(
    lifespan: Optional[float] = None,
    resume: bool = typer.Option(
        True, help="Resume runs left unfinished by a previous worker first"
    ),
) -> None:
    """
    Run a worker process that generates replies for queued messages.

    The worker connects to the configured transport and repository, resumes
    interrupted runs, then consumes new messages until stopped. Runs whose
    lease expired are picked up again every `worker.resume_interval` seconds.

    Example:
        chatforge worker start
        chatforge worker start --lifespan 300 --no-resume
    """
    config = load_config()
    transport = get_transport(config=config)
    orchestrator = create_orchestrator(config)
    worker = GenerationWorker(
        transport,
        orchestrator,
        resume_on_start=resume,
        resume_interval=config.worker.resume_interval,
    )
    typer.echo("Starting generation worker")
    asyncio.run(worker.start(lifespan=lifespan))


@run_app.command("list")
def run_list() -> None:
    """
    List all workflow runs with their current status.

    Example:
        chatforge run list
        # Output: 3f2a...    msg-1    completed
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.message_id}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run and the memoized record of each of its steps.

    Example:
        chatforge run show 3f2a...
        # Output: Run 3f2a...: failed
        #         - extract-urls: succeeded (attempt 1)
        #         - scrape-urls: failed (attempt 3) all 1 url(s) failed to scrape
    """

    async def _load():
        run = await repo.get_run(run_id)
        steps = await repo.list_steps(run_id) if run else []
        return run, steps

    repo = get_repository()
    run, steps = asyncio.run(_load())
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.run_id}: {run.status.value}")
    typer.echo(f"Message: {run.message_id}")
    if run.error:
        typer.echo(f"Error: {run.error}")
    for step in steps:
        line = f"- {step.step_name}: {step.status.value} (attempt {step.attempt})"
        if step.error:
            line += f" {step.error}"
        typer.echo(line)


@run_app.command("resume")
def run_resume() -> None:
    """Resume every queued or running run from its memoized steps."""
    orchestrator = create_orchestrator()
    runs = asyncio.run(orchestrator.resume_incomplete())
    if not runs:
        typer.echo("No incomplete runs")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.status.value}")


@run_app.command("retry")
def run_retry(run_id: str) -> None:
    """
    Start a new run for a failed run, reusing its succeeded steps.

    Example:
        chatforge run retry 3f2a...
        # Output: 9c1b...    completed
    """
    orchestrator = create_orchestrator()
    try:
        run = asyncio.run(orchestrator.retry_failed(run_id))
    except RunNotFoundError:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    except (ActiveRunExistsError, ValueError) as e:
        typer.echo(str(e))
        raise typer.Exit(code=1)
    typer.echo(f"{run.run_id}\t{run.status.value}")


@message_app.command("submit")
def message_submit(conversation_id: str, text: str) -> None:
    """
    Queue a chat message for generation and print its id.

    Example:
        chatforge message submit conv-1 "summarise https://example.com"
    """

    async def _submit() -> str:
        transport = get_transport()
        await transport.connect()
        try:
            dispatcher = MessageDispatcher(transport, get_repository())
            return await dispatcher.submit_message(conversation_id, text)
        finally:
            await transport.disconnect()

    message_id = asyncio.run(_submit())
    typer.echo(f"Message queued: {message_id}")


@message_app.command("show")
def message_show(message_id: str) -> None:
    """Show the status and reply of a message."""
    repo = get_repository()
    message = asyncio.run(repo.get_message(message_id))
    if message is None:
        typer.echo("Message not found")
        raise typer.Exit(code=1)
    typer.echo(f"Message {message.message_id}: {message.status.value}")
    if message.content:
        typer.echo(message.content)
    if message.error:
        typer.echo(f"Error: {message.error}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
