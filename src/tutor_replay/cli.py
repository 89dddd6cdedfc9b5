"""CLI entry point for tutoring session replay."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from tutor_replay.audio import AudioError, ConversationAudioClient
from tutor_replay.cursor import CursorState
from tutor_replay.db import ImportRecord, ReplayDatabase, ReplayLoadError
from tutor_replay.lesson import LessonLoadError, LessonStructureCache
from tutor_replay.models import SessionReplayData
from tutor_replay.player import ReplaySession, ReplayStatus, open_replay
from tutor_replay.snapshot import ReplaySnapshot
from tutor_replay.streams import EventStore
from tutor_replay.timestamps import format_time, progress_percentage

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "tutor-replay" / "replay.db"

db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    help="Path to SQLite database",
)


def _require_db(db: Path) -> None:
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)


def _load_session_or_exit(store: ReplayDatabase, session_id: str) -> SessionReplayData:
    try:
        return store.load_session(session_id)
    except ReplayLoadError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def summarize_snapshot(snapshot: ReplaySnapshot) -> dict[str, Any]:
    """Compact, JSON-friendly view of a snapshot."""
    panel = snapshot.tutor_panel
    conversation = panel.active_conversation
    return {
        "time_ms": snapshot.time_ms,
        "active_task_index": snapshot.active_task_index,
        "code_source": snapshot.code_source,
        "code": snapshot.code,
        "strokes": len(snapshot.visible_strokes),
        "messages": [
            {"role": m.role, "content": m.content} for m in snapshot.visible_messages
        ],
        "tutor_panel": {
            "open": panel.panel_open,
            "conversation_id": conversation.conversation_id if conversation else None,
            "speaking_state": panel.speaking_state.value,
            "highlighted_line": panel.highlighted_line,
        },
        "test_results": {
            "passed": sum(1 for r in snapshot.visible_test_results if r.passed),
            "failed": sum(1 for r in snapshot.visible_test_results if not r.passed),
        },
        "errors": [e.error_message for e in snapshot.visible_errors],
        "completed_tasks": list(snapshot.completed_task_indexes),
    }


def _describe_changes(before: dict[str, Any] | None, after: dict[str, Any]) -> list[str]:
    """Human-readable lines for facets that changed between two summaries."""
    if before is None:
        before = {}
    lines = []
    if before.get("active_task_index") != after["active_task_index"]:
        lines.append(f"task -> {after['active_task_index']}")
    if before.get("code") != after["code"] and after["code_source"] == "snapshot":
        lines.append(f"code updated ({len(after['code'])} chars)")
    messages = after["messages"]
    for message in messages[len(before.get("messages") or []):]:
        lines.append(f"{message['role']}: {message['content']}")
    if before.get("tutor_panel") != after["tutor_panel"]:
        panel = after["tutor_panel"]
        state = "open" if panel["open"] else "closed"
        lines.append(f"tutor panel {state}, {panel['speaking_state']}")
    if before.get("test_results") != after["test_results"]:
        results = after["test_results"]
        lines.append(f"tests: {results['passed']} passed, {results['failed']} failed")
    if before.get("errors") != after["errors"]:
        errors = after["errors"]
        if errors:
            lines.append(f"error: {errors[-1]}")
    if before.get("completed_tasks") != after["completed_tasks"]:
        lines.append(f"completed tasks: {after['completed_tasks']}")
    return lines


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Tutoring session replay CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@main.command("import")
@db_option
def import_records(db: Path) -> None:
    """Import session data from stdin (JSONL format).

    Each line is a record {"table": ..., "row": {...}}. Duplicate rows (same
    ID) are silently skipped.

    Example usage:
        cat session-bundle.jsonl | tutor-replay import
    """
    db.parent.mkdir(parents=True, exist_ok=True)

    imported_count = 0
    valid_count = 0
    has_input = False

    with ReplayDatabase.open(db) as store:
        for line_number, line in enumerate(sys.stdin, 1):
            stripped = line.strip()
            if not stripped:
                continue

            has_input = True

            try:
                data = json.loads(stripped)
                record = ImportRecord.model_validate(data)
                if store.import_record(record):
                    imported_count += 1
                valid_count += 1
            except json.JSONDecodeError as e:
                click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
            except ValidationError as e:
                click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)
            except ValueError as e:
                click.echo(f"Warning: line {line_number}: {e}", err=True)

    click.echo(f"Imported {imported_count} records")

    # Exit code 1 if we had input but no valid records (all lines were errors)
    if has_input and valid_count == 0:
        sys.exit(1)


@main.command("sessions")
@db_option
def sessions_command(db: Path) -> None:
    """List recorded sessions."""
    _require_db(db)

    with ReplayDatabase.open(db) as store:
        sessions = store.list_sessions()

    if not sessions:
        click.echo("No sessions recorded")
        return

    for session in sessions:
        status = session["status"] or ("completed" if session["completed_at"] else "ongoing")
        click.echo(f"{session['id']}  {session['started_at']}  {status}")


@main.command("snapshot")
@click.argument("session_id")
@db_option
@click.option("--at", "at_ms", type=int, default=0, help="Cursor time in milliseconds")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def snapshot_command(session_id: str, db: Path, at_ms: int, output_json: bool) -> None:
    """Show replay state of a session at a point in time."""
    _require_db(db)

    with ReplayDatabase.open(db) as store:
        data = _load_session_or_exit(store, session_id)
        lesson = LessonStructureCache(store.load_lesson_structure).get_or_none(
            data.session.lesson_id
        )

    session = ReplaySession(data, lesson=lesson)
    snapshot = session.get_snapshot(at_ms)
    summary = summarize_snapshot(snapshot)

    if output_json:
        click.echo(json.dumps(summary, indent=2))
        return

    pct = progress_percentage(snapshot.time_ms, session.duration_ms)
    click.echo(
        f"Session {session_id} at {format_time(snapshot.time_ms)} / "
        f"{format_time(session.duration_ms)} ({pct}%)"
    )
    click.echo()
    task_line = f"Task: {snapshot.active_task_index}"
    if lesson is not None and (task := lesson.task_at(snapshot.active_task_index)):
        task_line += f" - {task.title}"
    if snapshot.active_task_completed:
        task_line += " (completed)"
    click.echo(task_line)
    click.echo(f"Code ({snapshot.code_source}):")
    for code_line in snapshot.code.splitlines() or ["(empty)"]:
        click.echo(f"  {code_line}")
    click.echo()

    panel = summary["tutor_panel"]
    click.echo(
        f"Tutor: panel {'open' if panel['open'] else 'closed'}, {panel['speaking_state']}"
    )
    click.echo(f"Strokes: {summary['strokes']}")
    click.echo(f"Messages: {len(snapshot.visible_messages)}")
    for message in snapshot.visible_messages[-5:]:
        click.echo(f"  {message.role}: {message.content}")
    if snapshot.terminal_output:
        click.echo("Terminal:")
        for entry in snapshot.terminal_output:
            for text_line in entry.text.splitlines():
                click.echo(f"  {text_line}")


@main.command("timeline")
@click.argument("session_id")
@db_option
@click.option("--stream", "stream_name", help="Only show one stream (e.g. messages)")
def timeline_command(session_id: str, db: Path, stream_name: str | None) -> None:
    """List every event of a session with its offset from the start."""
    _require_db(db)

    with ReplayDatabase.open(db) as store:
        data = _load_session_or_exit(store, session_id)

    events = EventStore.from_replay_data(data)
    rows: list[tuple[int, str, str]] = []
    for stream in events.point_streams():
        if stream_name and stream.name != stream_name:
            continue
        for offset, event in stream.entries():
            rows.append((offset, stream.name, event.id))
    if not stream_name or stream_name == "tutor_conversations":
        for span in events.conversations:
            rows.append(
                (
                    span.start_offset_ms,
                    "tutor_conversations",
                    f"{span.conversation_id} until {format_time(span.end_offset_ms)}",
                )
            )

    if not rows:
        click.echo("No events")
        return

    rows.sort(key=lambda row: row[0])
    for offset, name, description in rows:
        click.echo(f"{format_time(offset)}  {name:<28} {description}")


@main.command("play")
@click.argument("session_id")
@db_option
@click.option("--speed", type=float, default=1.0, help="Playback rate multiplier")
@click.option("--from", "from_ms", type=int, default=0, help="Start time in milliseconds")
@click.option("--to", "to_ms", type=int, default=None, help="Stop time in milliseconds")
def play_command(
    session_id: str, db: Path, speed: float, from_ms: int, to_ms: int | None
) -> None:
    """Replay a session in real time, printing state changes as they happen."""
    _require_db(db)
    if speed <= 0:
        click.echo("Speed must be positive", err=True)
        sys.exit(1)

    store = ReplayDatabase.open(db)

    async def load(sid: str) -> SessionReplayData:
        return store.load_session(sid)

    async def run() -> int:
        view = await open_replay(
            session_id, load, lessons=LessonStructureCache(store.load_lesson_structure)
        )
        if view.status is ReplayStatus.ERROR or view.session is None:
            click.echo(f"Error: {view.error}", err=True)
            return 1

        session = view.session
        last: dict[str, Any] | None = None
        stop_at = session.duration_ms if to_ms is None else min(to_ms, session.duration_ms)
        finished = asyncio.Event()

        def on_change(snapshot: ReplaySnapshot, state: CursorState) -> None:
            nonlocal last
            summary = summarize_snapshot(snapshot)
            for change in _describe_changes(last, summary):
                click.echo(f"[{format_time(snapshot.time_ms)}] {change}")
            last = summary
            if snapshot.time_ms >= stop_at or not state.is_playing:
                finished.set()

        session.set_playback_rate(speed)
        session.seek(from_ms)
        session.subscribe(on_change)
        session.play()
        try:
            await finished.wait()
        finally:
            session.close()
        return 0

    try:
        exit_code = asyncio.run(run())
    finally:
        store.close()
    if exit_code:
        sys.exit(exit_code)


@main.command("lesson")
@click.argument("lesson_id")
@db_option
def lesson_command(lesson_id: str, db: Path) -> None:
    """Show the tasks of a lesson."""
    _require_db(db)

    with ReplayDatabase.open(db) as store:
        try:
            lesson = store.load_lesson_structure(lesson_id)
        except LessonLoadError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    for index, task in enumerate(lesson.tasks):
        kind = " [visualization]" if lesson.is_visualization_task(index) else ""
        difficulty = f" ({task.difficulty})" if task.difficulty else ""
        click.echo(f"{index}. {task.title}{difficulty}{kind}")
        if task.method_name:
            click.echo(f"   method: {task.method_name}")
        concepts = lesson.concepts_for_task(index)
        if concepts:
            click.echo(f"   concepts: {', '.join(concepts)}")


@main.command("fetch-audio")
@click.argument("conversation_id")
@click.option(
    "-o",
    "--output",
    type=click.Path(path_type=Path),
    required=True,
    help="File to write the audio to",
)
def fetch_audio_command(conversation_id: str, output: Path) -> None:
    """Download the recorded audio of a tutor conversation."""
    try:
        client = ConversationAudioClient()
        data = asyncio.run(client.fetch_conversation_audio(conversation_id))
    except AudioError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    output.write_bytes(data)
    click.echo(f"Wrote {len(data)} bytes to {output}")


if __name__ == "__main__":
    main()
