from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine


def _default_db_path() -> Path:
    override = (os.getenv("CHAPTER_GUARD_DB_PATH") or "").strip()
    if override:
        path = Path(override)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path
    # Keep local state inside the repo but gitignored (any "data/" dir is ignored).
    api_root = Path(__file__).resolve().parents[1]  # .../apps/api
    data_dir = api_root / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "chapter_guard.sqlite3"


DB_PATH = _default_db_path()
ENGINE = create_engine(
    f"sqlite:///{DB_PATH}",
    echo=False,
    # Streamed runs touch the DB from the event loop and from threadpool routes.
    connect_args={"check_same_thread": False},
)


def init_db(engine=None) -> None:
    eng = engine or ENGINE
    SQLModel.metadata.create_all(eng)
    # Snapshot versions are allocated per chapter and must never be reused.
    with eng.connect() as conn:
        conn.execute(
            text(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS ix_chapter_snapshot_chapter_version
                ON chapter_snapshot(chapter_id, version);
                """
            )
        )
        conn.commit()


@contextmanager
def get_session(engine=None) -> Session:
    # Pipelines keep loaded Chapter rows in memory across awaits and yields.
    # expire_on_commit=False keeps their attributes readable after the session
    # closes (no DetachedInstanceError); reload explicitly when fresh state matters.
    with Session(engine or ENGINE, expire_on_commit=False) as session:
        yield session
