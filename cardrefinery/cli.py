"""Command line interface for inspecting and running refinement sessions."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer

from .config import RefineryConfig, load_config
from .constants import STAGES, StageName
from .contracts import Generator
from .engine import PipelineEngine
from .errors import ConfigError, NotFoundError, RefineryError
from .generation import PydanticAIGenerator
from .models import Session
from .persistence import SessionRepository, VersionedStore
from .storage import get_store
from .workspace import Workspace

app = typer.Typer(help="CLI for character card refinement sessions")

sessions_app = typer.Typer(help="Commands for managing saved sessions")
storage_app = typer.Typer(help="Commands for inspecting session storage")
presets_app = typer.Typer(help="Commands for listing prompt and schema presets")

app.add_typer(sessions_app, name="sessions")
app.add_typer(storage_app, name="storage")
app.add_typer(presets_app, name="presets")


class _State:
    config_path: Optional[str] = None
    storage_url: Optional[str] = None


state = _State()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    storage_url: Optional[str] = typer.Option(
        None, "--storage-url", help="Override the configured storage URL"
    ),
) -> None:
    """Card refinery CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    state.config_path = str(config) if config else None
    state.storage_url = storage_url


def _config() -> RefineryConfig:
    try:
        return load_config(state.config_path)
    except ConfigError as e:
        typer.secho(f"Invalid configuration: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=2)


def _store(config: RefineryConfig) -> VersionedStore:
    try:
        return VersionedStore(get_store(state.storage_url, config))
    except ConfigError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=2)


def _repository(config: RefineryConfig) -> SessionRepository:
    return SessionRepository(
        _store(config),
        max_sessions_per_character=config.limits.max_sessions_per_character,
        max_history_entries=config.limits.max_history_entries,
    )


def build_generator(config: RefineryConfig) -> Generator:
    return PydanticAIGenerator.from_config(config.generation)


def _timestamp(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _session_line(session: Session) -> str:
    label = session.name or session.character_name
    return (
        f"{session.id}\t{label}\t{session.status}\t"
        f"iterations={session.iteration_count}\tupdated={_timestamp(session.updated_at)}"
    )


# ----------------------------------------------------------------------
# sessions


@sessions_app.command("list")
def sessions_list(
    character: Optional[str] = typer.Option(None, help="Only show this character id"),
) -> None:
    """
    List saved sessions, most recently updated first.

    Example:
        cardrefinery sessions list --character alice.png
    """
    repo = _repository(_config())
    if character:
        grouped = {character: asyncio.run(repo.list_for_character(character))}
    else:
        grouped = asyncio.run(repo.list_all())
    if not any(grouped.values()):
        typer.echo("No sessions found")
        return
    for character_id, sessions in grouped.items():
        typer.echo(f"{character_id}:")
        for session in sessions:
            typer.echo(f"  {_session_line(session)}")


@sessions_app.command("show")
def sessions_show(
    session_id: str,
    history: bool = typer.Option(False, help="Print every history entry"),
) -> None:
    """Show the current stage results of a session."""
    repo = _repository(_config())
    session = asyncio.run(repo.get(session_id))
    if session is None:
        typer.echo("Session not found")
        raise typer.Exit(code=1)

    typer.echo(_session_line(session))
    if session.user_guidance:
        typer.echo(f"Guidance: {session.user_guidance}")
    for stage in STAGES:
        result = session.stage_results.get(stage)
        if result is None:
            typer.echo(f"- {stage}: pending")
        elif result.error:
            typer.echo(f"- {stage}: error ({result.error})")
        else:
            typer.echo(f"- {stage}: complete ({_timestamp(result.timestamp)})")
            typer.echo(result.output or "")
    if history:
        typer.echo(f"History ({len(session.history)} entries):")
        for i, entry in enumerate(session.history):
            outcome = "error" if entry.error else "ok"
            typer.echo(f"  [{i}] {entry.stage} {outcome} {_timestamp(entry.timestamp)}")


@sessions_app.command("delete")
def sessions_delete(session_id: str) -> None:
    """Delete one session."""
    repo = _repository(_config())
    if asyncio.run(repo.delete(session_id)):
        typer.echo(f"Deleted {session_id}")
    else:
        typer.echo("Session not found")


@sessions_app.command("rename")
def sessions_rename(session_id: str, name: str) -> None:
    """Give a session a label. An empty name clears it."""
    repo = _repository(_config())
    try:
        session = asyncio.run(repo.rename(session_id, name))
    except NotFoundError:
        typer.echo("Session not found")
        raise typer.Exit(code=1)
    typer.echo(f"Renamed {session.id} to {session.name or '(unnamed)'}")


@sessions_app.command("purge")
def sessions_purge(
    character: Optional[str] = typer.Option(None, help="Only delete this character's sessions"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete all sessions, or all sessions of one character."""
    scope = f"all sessions of {character}" if character else "ALL sessions"
    if not yes:
        typer.confirm(f"Delete {scope}?", abort=True)
    repo = _repository(_config())
    if character:
        count = asyncio.run(repo.delete_all_for_character(character))
    else:
        count = asyncio.run(repo.purge_all())
    typer.echo(f"Deleted {count} sessions")


# ----------------------------------------------------------------------
# storage


async def _storage_status(store: VersionedStore) -> List[str]:
    lines = [f"Backend: {store.backend.description}"]
    try:
        await store.initialize()
    except RefineryError as e:
        lines.append(f"Status: degraded ({e})")
        return lines
    meta = await store.meta()
    lines.append(f"Version: {meta.version if meta else 'none'} (supported {store.version})")
    if meta:
        lines.append(f"Last migration: {_timestamp(meta.last_migration)}")
    lines.append(f"Keys: {', '.join(await store.backend.keys()) or 'none'}")
    lines.append("Status: ok")
    return lines


@storage_app.command("status")
def storage_status() -> None:
    """Show the storage backend, stored version and keys."""
    store = _store(_config())
    for line in asyncio.run(_storage_status(store)):
        typer.echo(line)


@storage_app.command("migrate")
def storage_migrate() -> None:
    """Run pending storage migrations."""
    store = _store(_config())
    try:
        meta = asyncio.run(store.initialize())
    except RefineryError as e:
        typer.secho(f"Migration failed: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    version = meta.version if meta else store.version
    typer.echo(f"Storage is at version {version}")


# ----------------------------------------------------------------------
# presets


@presets_app.command("list")
def presets_list(
    stage: Optional[str] = typer.Option(None, help="Only presets usable for this stage"),
) -> None:
    """List prompt and schema presets."""
    if stage is not None and stage not in STAGES:
        typer.secho(f"Unknown stage {stage}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    registry = _config().build_registry()
    typer.echo("Prompt presets:")
    for preset in registry.list_prompt_presets(stage):  # type: ignore[arg-type]
        marker = "builtin" if preset.is_builtin else "user"
        typer.echo(f"  {preset.id}\t{preset.name}\t{marker}")
    typer.echo("Schema presets:")
    for preset in registry.list_schema_presets(stage):  # type: ignore[arg-type]
        marker = "builtin" if preset.is_builtin else "user"
        typer.echo(f"  {preset.id}\t{preset.name}\t{marker}")


# ----------------------------------------------------------------------
# run


async def _run(
    config: RefineryConfig,
    character_id: str,
    document: dict,
    stages: List[StageName],
    session_id: Optional[str],
    guidance: Optional[str],
    iterate: bool,
) -> Workspace:
    repo = _repository(config)
    engine = PipelineEngine(
        repo,
        build_generator(config),
        registry=config.build_registry(),
        prompts=config.prompts,
    )
    workspace = Workspace(repo, engine, stage_defaults=config.stage_defaults)
    await workspace.set_document(character_id, document)
    if session_id:
        await workspace.load_session(session_id)
    if guidance is not None:
        await workspace.set_user_guidance(guidance)
    if iterate:
        await workspace.quick_iterate()
    else:
        await workspace.run_pipeline(stages)
    return workspace


@app.command("run")
def run(
    card: Path = typer.Argument(..., help="Character card JSON file"),
    stage: List[str] = typer.Option(
        [], "--stage", "-s", help="Stage to run, repeatable (default: all)"
    ),
    character_id: Optional[str] = typer.Option(None, help="Character id (default: file name)"),
    session_id: Optional[str] = typer.Option(None, "--session", help="Continue this session"),
    guidance: Optional[str] = typer.Option(None, help="User guidance for this run"),
    iterate: bool = typer.Option(False, help="Refine the rewrite with the last analysis"),
) -> None:
    """
    Run pipeline stages for a character card and save the results.

    Example:
        cardrefinery run alice.json --stage score --stage rewrite
    """
    unknown = [s for s in stage if s not in STAGES]
    if unknown:
        typer.secho(f"Unknown stage(s): {', '.join(unknown)}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    try:
        document = json.loads(card.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        typer.secho(f"Could not read {card}: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    config = _config()
    try:
        workspace = asyncio.run(
            _run(
                config,
                character_id or card.name,
                document,
                list(stage) or list(STAGES),  # type: ignore[arg-type]
                session_id,
                guidance,
                iterate,
            )
        )
    except NotFoundError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    session = workspace.session
    if session is None:
        typer.echo("Nothing to run")
        raise typer.Exit(code=1)
    typer.echo(f"Session {session.id}")
    failed = False
    for name, status in workspace.stage_status().items():
        result = session.stage_results.get(name)
        typer.echo(f"== {name}: {status}")
        if result is not None and result.error:
            failed = failed or status == "error"
            typer.echo(result.error)
        elif result is not None:
            typer.echo(result.output or "")
    if failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - manual invocation
    app()
