"""SQLite store for recorded sessions and lesson structures."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from tutor_replay.lesson import LessonLoadError, LessonStructure, LessonTask, TaskExample, TestCase
from tutor_replay.models import (
    CodeError,
    CodeSnapshot,
    Message,
    NavigationEvent,
    Session,
    SessionReplayData,
    Stroke,
    TaskProgress,
    TestResult,
    TutorConversation,
    TutorHighlight,
    TutorPanelInteraction,
    UserHighlight,
    VisualizationInteraction,
    compute_duration_ms,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS learning_sessions (
    id TEXT PRIMARY KEY,
    profile_id TEXT,
    class_id TEXT,
    lesson_id TEXT,
    status TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS code_snapshots (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    task_index INTEGER NOT NULL,
    method_id TEXT NOT NULL,
    code_content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sidebar_navigation_events (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    from_task_index INTEGER NOT NULL,
    to_task_index INTEGER NOT NULL,
    navigation_direction TEXT,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS visualization_stroke_data (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    task TEXT NOT NULL,
    zone TEXT NOT NULL,
    stroke_number INTEGER NOT NULL,
    point_count INTEGER DEFAULT 0,
    complete_points TEXT,
    start_point TEXT,
    end_point TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS visualization_interactions (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    task TEXT NOT NULL,
    action TEXT NOT NULL,
    zone TEXT NOT NULL,
    x REAL NOT NULL,
    y REAL NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS test_case_results (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    task_index INTEGER NOT NULL,
    method_id TEXT NOT NULL,
    test_case_index INTEGER NOT NULL,
    test_input TEXT,
    expected_output TEXT,
    actual_output TEXT,
    passed INTEGER NOT NULL,
    error_message TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tutor_panel_interactions (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    current_task_index INTEGER NOT NULL,
    interaction_type TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tutor_conversations (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS tutor_highlights (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    line_number INTEGER NOT NULL,
    highlighted_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_highlights (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    highlighted_text TEXT NOT NULL,
    highlighted_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS code_errors (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    task_index INTEGER NOT NULL,
    error_message TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_progress (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    task_index INTEGER NOT NULL,
    completed INTEGER NOT NULL,
    completed_at TEXT,
    attempts INTEGER DEFAULT 0,
    test_cases_passed INTEGER DEFAULT 0,
    total_test_cases INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS coding_tasks (
    id TEXT PRIMARY KEY,
    lesson_id TEXT NOT NULL,
    task_order INTEGER NOT NULL,
    title TEXT NOT NULL,
    difficulty TEXT,
    description TEXT,
    method_name TEXT,
    starter_code TEXT,
    concepts TEXT
);

CREATE TABLE IF NOT EXISTS coding_task_examples (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    example_order INTEGER NOT NULL,
    input_data TEXT,
    expected_output TEXT,
    FOREIGN KEY (task_id) REFERENCES coding_tasks(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS coding_task_test_cases (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    test_case_order INTEGER NOT NULL,
    input_data TEXT,
    expected_output TEXT,
    FOREIGN KEY (task_id) REFERENCES coding_tasks(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_sessions_lesson ON learning_sessions(lesson_id);
CREATE INDEX IF NOT EXISTS idx_code_snapshots_session ON code_snapshots(session_id);
CREATE INDEX IF NOT EXISTS idx_navigation_session ON sidebar_navigation_events(session_id);
CREATE INDEX IF NOT EXISTS idx_strokes_session ON visualization_stroke_data(session_id);
CREATE INDEX IF NOT EXISTS idx_viz_interactions_session ON visualization_interactions(session_id);
CREATE INDEX IF NOT EXISTS idx_test_results_session ON test_case_results(session_id);
CREATE INDEX IF NOT EXISTS idx_panel_session ON tutor_panel_interactions(session_id);
CREATE INDEX IF NOT EXISTS idx_conversations_session ON tutor_conversations(session_id);
CREATE INDEX IF NOT EXISTS idx_tutor_highlights_session ON tutor_highlights(session_id);
CREATE INDEX IF NOT EXISTS idx_user_highlights_session ON user_highlights(session_id);
CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id);
CREATE INDEX IF NOT EXISTS idx_code_errors_session ON code_errors(session_id);
CREATE INDEX IF NOT EXISTS idx_task_progress_session ON task_progress(session_id);
CREATE INDEX IF NOT EXISTS idx_coding_tasks_lesson ON coding_tasks(lesson_id);
"""

logger = logging.getLogger(__name__)

# Stream name -> (table, time column, model)
SESSION_STREAMS: dict[str, tuple[str, str, type[BaseModel]]] = {
    "code_snapshots": ("code_snapshots", "created_at", CodeSnapshot),
    "navigation_events": ("sidebar_navigation_events", "timestamp", NavigationEvent),
    "strokes": ("visualization_stroke_data", "created_at", Stroke),
    "visualization_interactions": ("visualization_interactions", "timestamp", VisualizationInteraction),
    "test_results": ("test_case_results", "created_at", TestResult),
    "code_errors": ("code_errors", "created_at", CodeError),
    "task_progress": ("task_progress", "created_at", TaskProgress),
    "tutor_panel_interactions": ("tutor_panel_interactions", "timestamp", TutorPanelInteraction),
    "tutor_conversations": ("tutor_conversations", "start_time", TutorConversation),
    "tutor_highlights": ("tutor_highlights", "highlighted_at", TutorHighlight),
    "user_highlights": ("user_highlights", "highlighted_at", UserHighlight),
    "messages": ("messages", "created_at", Message),
}

# Columns stored as JSON text
JSON_COLUMNS = {
    "complete_points",
    "start_point",
    "end_point",
    "test_input",
    "expected_output",
    "actual_output",
    "input_data",
    "concepts",
}

IMPORTABLE_TABLES = {
    "learning_sessions",
    "coding_tasks",
    "coding_task_examples",
    "coding_task_test_cases",
} | {table for table, _, _ in SESSION_STREAMS.values()}


class ReplayLoadError(Exception):
    """Base exception for session load failures."""

    pass


class SessionNotFoundError(ReplayLoadError):
    """Raised when the requested session does not exist."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionFetchError(ReplayLoadError):
    """Raised when session data exists but cannot be read."""

    pass


class ImportRecord(BaseModel):
    """One line of a session bundle: a row destined for a table."""

    table: str
    row: dict[str, Any]


def _decode_row(row: sqlite3.Row) -> dict[str, Any]:
    """Convert a database row to a dict, decoding JSON columns."""
    result = dict(row)
    for column in JSON_COLUMNS & result.keys():
        value = result[column]
        if isinstance(value, str):
            try:
                result[column] = json.loads(value)
            except json.JSONDecodeError:
                pass  # plain text payload
    return result


class ReplayDatabase:
    """SQLite-backed store of recorded sessions.

    Not thread-safe. Each thread should have its own ReplayDatabase instance.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def __enter__(self) -> "ReplayDatabase":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> ReplayDatabase:
        """Open or create a database at the given path."""
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> ReplayDatabase:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        return cls(conn)

    def insert_row(self, table: str, row: dict[str, Any], *, commit: bool = True) -> bool:
        """Insert a row into a known table.

        Uses INSERT OR IGNORE for idempotent inserts (same ID = no-op).
        JSON columns are serialized automatically.

        Returns:
            True if the row was inserted, False if it already existed.

        Raises:
            ValueError: If the table is unknown or the row is empty.
        """
        if table not in IMPORTABLE_TABLES:
            raise ValueError(f"Unknown table: {table}")
        if not row:
            raise ValueError("Row has no columns")

        known = self._table_columns(table)
        unknown = set(row) - known
        if unknown:
            raise ValueError(f"Unknown columns for {table}: {', '.join(sorted(unknown))}")

        columns = list(row)
        values = [
            json.dumps(row[c]) if c in JSON_COLUMNS and row[c] is not None else row[c]
            for c in columns
        ]
        cursor = self._conn.execute(
            f"INSERT OR IGNORE INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            values,
        )
        if commit:
            self._conn.commit()
        return cursor.rowcount > 0

    def import_record(self, record: ImportRecord) -> bool:
        return self.insert_row(record.table, record.row)

    def _table_columns(self, table: str) -> set[str]:
        cursor = self._conn.execute(f"PRAGMA table_info({table})")
        return {row["name"] for row in cursor.fetchall()}

    def list_sessions(self) -> list[dict[str, Any]]:
        """All sessions, most recently started first."""
        cursor = self._conn.execute(
            "SELECT * FROM learning_sessions ORDER BY started_at DESC"
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_stream_rows(self, session_id: str, stream: str) -> list[dict[str, Any]]:
        """Rows of one stream for a session, ordered by their time column."""
        table, time_column, _ = SESSION_STREAMS[stream]
        cursor = self._conn.execute(
            f"SELECT * FROM {table} WHERE session_id = ? ORDER BY {time_column} ASC, rowid ASC",
            (session_id,),
        )
        return [_decode_row(row) for row in cursor.fetchall()]

    def load_session(self, session_id: str, *, now: datetime | None = None) -> SessionReplayData:
        """Load a session and all of its streams.

        Args:
            session_id: Session to load.
            now: Optional current time for testing; used as the end of
                sessions that have not completed.

        Raises:
            SessionNotFoundError: If the session does not exist.
            SessionFetchError: If any stored row cannot be read.
        """
        try:
            row = self._conn.execute(
                "SELECT * FROM learning_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise SessionFetchError(f"Session lookup failed: {e}") from e
        if row is None:
            raise SessionNotFoundError(session_id)

        info = dict(row)
        try:
            duration_ms = compute_duration_ms(info["started_at"], info["completed_at"], now=now)
            session = Session(duration_ms=duration_ms, **info)
            streams: dict[str, list[Any]] = {}
            for name, (_, _, model) in SESSION_STREAMS.items():
                streams[name] = [
                    model.model_validate(r) for r in self.get_stream_rows(session_id, name)
                ]
            data = SessionReplayData(session=session, **streams)
        except sqlite3.Error as e:
            raise SessionFetchError(f"Failed to fetch session data: {e}") from e
        except (ValidationError, ValueError) as e:
            raise SessionFetchError(f"Invalid session data: {e}") from e

        logger.info(
            "Loaded session %s: %d ms, %s",
            session_id, duration_ms, data.event_counts(),
        )
        return data

    def load_lesson_structure(self, lesson_id: str) -> LessonStructure:
        """Load a lesson's tasks, templates, test cases and concepts.

        Raises:
            LessonLoadError: If the lesson has no tasks or stored rows are invalid.
        """
        try:
            task_rows = [
                _decode_row(r)
                for r in self._conn.execute(
                    "SELECT * FROM coding_tasks WHERE lesson_id = ? ORDER BY task_order ASC",
                    (lesson_id,),
                ).fetchall()
            ]
        except sqlite3.Error as e:
            raise LessonLoadError(f"Failed to fetch coding tasks: {e}") from e
        if not task_rows:
            raise LessonLoadError(f"No coding tasks for lesson {lesson_id}")

        tasks: list[LessonTask] = []
        method_templates: dict[str, str] = {}
        test_cases: dict[str, list[TestCase]] = {}
        concept_mappings: dict[int, list[str]] = {}

        try:
            for index, task in enumerate(task_rows):
                examples = [
                    TaskExample(input=r["input_data"], output=r["expected_output"])
                    for r in self._task_children("coding_task_examples", "example_order", task["id"])
                ]
                tasks.append(
                    LessonTask(
                        id=task["id"],
                        title=task["title"],
                        difficulty=task["difficulty"],
                        description=task["description"] or "",
                        method_name=task["method_name"],
                        examples=examples,
                    )
                )
                method = task["method_name"]
                if method and task["starter_code"]:
                    method_templates[method] = task["starter_code"]
                if method:
                    cases = self._task_children("coding_task_test_cases", "test_case_order", task["id"])
                    if cases:
                        test_cases[method] = [
                            TestCase(input=r["input_data"], expected=r["expected_output"], method_id=method)
                            for r in cases
                        ]
                if isinstance(task["concepts"], list):
                    concept_mappings[index] = [str(c) for c in task["concepts"]]
        except (sqlite3.Error, ValidationError) as e:
            raise LessonLoadError(f"Invalid lesson data for {lesson_id}: {e}") from e

        return LessonStructure(
            lesson_id=lesson_id,
            tasks=tasks,
            method_templates=method_templates,
            test_cases=test_cases,
            concept_mappings=concept_mappings,
        )

    def _task_children(self, table: str, order_column: str, task_id: str) -> list[dict[str, Any]]:
        cursor = self._conn.execute(
            f"SELECT * FROM {table} WHERE task_id = ? ORDER BY {order_column} ASC",
            (task_id,),
        )
        return [_decode_row(row) for row in cursor.fetchall()]
