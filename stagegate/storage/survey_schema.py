"""SQLite schema for patient survey data.

The pipeline only guarantees the schema exists before the service is
deployed; the tables themselves are owned by the service.
"""

import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import List, Union


logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS surveys (
        survey_id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        study_id TEXT NOT NULL,
        completed_at TEXT NOT NULL,
        metadata TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_surveys_study_id ON surveys(study_id)",
    "CREATE INDEX IF NOT EXISTS idx_surveys_patient_id ON surveys(patient_id)",
    """
    CREATE TABLE IF NOT EXISTS responses (
        response_id TEXT PRIMARY KEY,
        survey_id TEXT NOT NULL,
        question_id INTEGER NOT NULL,
        question_text TEXT NOT NULL,
        answer TEXT NOT NULL,
        response_type TEXT NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY(survey_id) REFERENCES surveys(survey_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_responses_survey_id ON responses(survey_id)",
]


def bootstrap_schema(db_path: Union[str, Path]) -> Path:
    """Create the survey tables and indexes. Safe to run repeatedly."""
    db_path = Path(db_path)
    if db_path.parent and not db_path.parent.exists():
        db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with closing(sqlite3.connect(str(db_path))) as conn:
            conn.execute("PRAGMA foreign_keys = ON")
            with conn:
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)
    except sqlite3.Error as e:
        logger.error(f"Failed to create database schema in {db_path}: {e}")
        raise

    logger.info(f"Database tables created successfully in {db_path}")
    return db_path


def list_tables(db_path: Union[str, Path]) -> List[str]:
    with closing(sqlite3.connect(str(db_path))) as conn:
        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ).fetchall()
    return [row[0] for row in rows]


def list_indexes(db_path: Union[str, Path]) -> List[str]:
    with closing(sqlite3.connect(str(db_path))) as conn:
        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ).fetchall()
    return [row[0] for row in rows]
