"""SQLite-based sandbox persistence using aiosqlite.

This module provides the SandboxStore class, the persistence collaborator of
the orchestrator. Each sandbox is stored as one row: the state in its own
column (so startup cleanup can select running sandboxes) and the full record
as JSON.

State changes go through ``transition``, which checks the lifecycle table
before writing anything; an illegal event leaves the row untouched.

Usage:
    >>> from models.database import SandboxStore
    >>> store = SandboxStore("./data/sandboxes.db")
    >>> await store.init()
    >>> await store.save(sandbox)
    >>> sandbox = await store.transition(sandbox.id, LifecycleEvent.PROVISION)
"""

import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import Sandbox, SandboxState
from sandbox.errors import SandboxNotFoundError
from sandbox.state_machine import LifecycleEvent, next_state

logger = structlog.get_logger(__name__)


class SandboxStore:
    """Async SQLite store for sandbox records.

    Reads and writes raise on failure: the orchestrator must know whether a
    transition was persisted. Only ``touch`` swallows errors, since activity
    tracking must never break a terminal session.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create the table if it does not exist, plus parent directories."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS sandboxes (
                        id TEXT PRIMARY KEY,
                        state TEXT NOT NULL,
                        data TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_sandboxes_state
                    ON sandboxes(state)
                """)
                await db.commit()
            logger.info("sandbox_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "sandbox_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    @staticmethod
    async def _write(db: aiosqlite.Connection, sandbox: Sandbox) -> None:
        await db.execute(
            """
            INSERT OR REPLACE INTO sandboxes (id, state, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                sandbox.id,
                str(sandbox.state),
                sandbox.model_dump_json(),
                sandbox.created_at,
                sandbox.updated_at,
            ),
        )

    async def save(self, sandbox: Sandbox) -> Sandbox:
        """Insert or replace a sandbox record."""
        async with aiosqlite.connect(self.db_path) as db:
            await self._write(db, sandbox)
            await db.commit()
        logger.debug("sandbox_saved", sandbox_id=sandbox.id, state=str(sandbox.state))
        return sandbox

    async def get(self, sandbox_id: str) -> Sandbox | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT data FROM sandboxes WHERE id = ?",
                (sandbox_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return Sandbox.model_validate_json(row["data"])

    async def load(self, sandbox_id: str) -> Sandbox:
        """Load a sandbox.

        Raises:
            SandboxNotFoundError: If no record has this id.
        """
        sandbox = await self.get(sandbox_id)
        if sandbox is None:
            raise SandboxNotFoundError(sandbox_id)
        return sandbox

    async def list_by_state(self, state: SandboxState) -> list[Sandbox]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT data FROM sandboxes WHERE state = ? ORDER BY created_at",
                (str(state),),
            )
            rows = await cursor.fetchall()
        return [Sandbox.model_validate_json(row["data"]) for row in rows]

    async def _modify(
        self, sandbox_id: str, mutate: Callable[[Sandbox], Sandbox]
    ) -> tuple[Sandbox, Sandbox]:
        """Read, change and write one record inside a single write transaction.

        ``BEGIN IMMEDIATE`` takes the write lock before the read, so a
        concurrent ``touch`` cannot interleave between read and write.

        Returns:
            The record before and after ``mutate``.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "SELECT data FROM sandboxes WHERE id = ?",
                    (sandbox_id,),
                )
                row = await cursor.fetchone()
                if row is None:
                    raise SandboxNotFoundError(sandbox_id)
                current = Sandbox.model_validate_json(row["data"])
                updated = mutate(current)
                await self._write(db, updated)
            except BaseException:
                await db.rollback()
                raise
            await db.commit()
        return current, updated

    async def update(self, sandbox_id: str, **changes: Any) -> Sandbox:
        """Write field changes without changing the state.

        Raises:
            SandboxNotFoundError: If no record has this id.
            ValueError: If ``changes`` tries to set ``state``.
        """
        if "state" in changes:
            raise ValueError("State changes must go through transition()")
        _, updated = await self._modify(
            sandbox_id,
            lambda sandbox: sandbox.model_copy(update={**changes, "updated_at": time.time()}),
        )
        return updated

    async def transition(
        self, sandbox_id: str, event: LifecycleEvent, **changes: Any
    ) -> Sandbox:
        """Apply a lifecycle event and persist the new state with ``changes``.

        Raises:
            SandboxNotFoundError: If no record has this id.
            InvalidTransitionError: If ``event`` is not legal from the
                stored state. Nothing is written.
        """

        def apply(sandbox: Sandbox) -> Sandbox:
            target = next_state(sandbox.state, event)
            return sandbox.model_copy(
                update={**changes, "state": target, "updated_at": time.time()}
            )

        previous, updated = await self._modify(sandbox_id, apply)
        logger.info(
            "sandbox_transitioned",
            sandbox_id=sandbox_id,
            lifecycle_event=str(event),
            from_state=str(previous.state),
            to_state=str(updated.state),
        )
        return updated

    async def touch(self, sandbox_id: str) -> None:
        """Record activity on a sandbox. Never raises.

        Only the activity timestamp inside the stored JSON is rewritten, so a
        touch racing a transition cannot write back an older state.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    UPDATE sandboxes
                    SET data = json_set(data, '$.last_activity_at', ?)
                    WHERE id = ?
                    """,
                    (time.time(), sandbox_id),
                )
                await db.commit()
        except Exception as e:
            logger.warning("sandbox_touch_failed", sandbox_id=sandbox_id, error=str(e))
