from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from .canonical import from_json_column, to_canonical_json
from .costs import PricingFunction, apply_cost_delta, default_pricing
from .errors import ConcurrencyError, NotFoundError, StateError, truncate_error_message
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    CompletionReason,
    CostDelta,
    GeneratedImage,
    GenerationRequest,
    IterationSnapshot,
    RequestStatus,
    UserContext,
    utcnow,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS generation_requests (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    organization_id TEXT NOT NULL,
    project_id TEXT,
    space_id TEXT,
    created_by TEXT,
    brief TEXT NOT NULL,
    initial_prompt TEXT,
    reference_image_urls TEXT NOT NULL,
    negative_prompts TEXT,
    judge_ids TEXT NOT NULL,
    image_params TEXT NOT NULL,
    threshold REAL NOT NULL,
    max_iterations INTEGER NOT NULL,
    status TEXT NOT NULL,
    current_iteration INTEGER NOT NULL DEFAULT 0,
    final_image_id TEXT,
    completion_reason TEXT,
    costs TEXT NOT NULL,
    error_message TEXT,
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS ix_requests_org_created ON generation_requests (organization_id, created_at);
CREATE INDEX IF NOT EXISTS ix_requests_status_created ON generation_requests (status, created_at);

CREATE TABLE IF NOT EXISTS request_iterations (
    request_id TEXT NOT NULL REFERENCES generation_requests (id),
    iteration_number INTEGER NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (request_id, iteration_number)
);

CREATE TABLE IF NOT EXISTS generated_images (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    request_id TEXT NOT NULL REFERENCES generation_requests (id),
    iteration_number INTEGER NOT NULL,
    storage_key TEXT NOT NULL,
    storage_url TEXT NOT NULL,
    prompt_used TEXT NOT NULL,
    generation_params TEXT NOT NULL,
    width INTEGER,
    height INTEGER,
    mime_type TEXT NOT NULL,
    file_size_bytes INTEGER,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_images_request_iteration ON generated_images (request_id, iteration_number);
"""

_MAX_PAGE_SIZE = 100


def _timestamp(value: datetime) -> str:
    # Fixed precision keeps lexical order equal to chronological order.
    return value.isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# GenerationStateStore
# ---------------------------------------------------------------------------


class GenerationStateStore:
    """SQLite-backed store for generation requests, iterations and images.

    The request row is the only shared mutable resource. Every mutation runs
    inside a ``BEGIN IMMEDIATE`` transaction, which takes the database write
    lock before reading, so read-modify-write sequences (claim, iteration
    append, cost accumulation, continuation) never interleave across threads
    or worker processes. Iterations live in an append-only child table keyed
    by ``(request_id, iteration_number)``; the parent row only carries
    ``current_iteration``.
    """

    def __init__(self, path: Path, *, pricing: PricingFunction = default_pricing) -> None:
        self.path = path
        self.pricing = pricing
        self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create the database file and tables if they do not exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _transaction(self, *, write: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction on a fresh connection.

        Write transactions take the lock up front so concurrent writers queue
        instead of failing on upgrade. Read transactions give a consistent
        snapshot of a parent row and its children.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN DEFERRED")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _request_from_rows(row: sqlite3.Row, iteration_rows: list[sqlite3.Row]) -> GenerationRequest:
        payload: dict[str, Any] = {
            "id": row["id"],
            "organization_id": row["organization_id"],
            "project_id": row["project_id"],
            "space_id": row["space_id"],
            "created_by": row["created_by"],
            "brief": row["brief"],
            "initial_prompt": row["initial_prompt"],
            "reference_image_urls": from_json_column(row["reference_image_urls"], []),
            "negative_prompts": row["negative_prompts"],
            "judge_ids": from_json_column(row["judge_ids"], []),
            "image_params": from_json_column(row["image_params"], {}),
            "threshold": row["threshold"],
            "max_iterations": row["max_iterations"],
            "status": row["status"],
            "current_iteration": row["current_iteration"],
            "final_image_id": row["final_image_id"],
            "completion_reason": row["completion_reason"],
            "iterations": [from_json_column(item["payload"]) for item in iteration_rows],
            "costs": from_json_column(row["costs"], {}),
            "error_message": row["error_message"],
            "cancel_requested": bool(row["cancel_requested"]),
            "created_at": row["created_at"],
            "completed_at": row["completed_at"],
        }
        try:
            return GenerationRequest.model_validate(payload)
        except ValidationError as exc:
            raise ValueError(f"generation request {row['id']} failed validation: {exc}") from exc

    @staticmethod
    def _image_from_row(row: sqlite3.Row) -> GeneratedImage:
        return GeneratedImage.model_validate(
            {
                "id": row["id"],
                "request_id": row["request_id"],
                "iteration_number": row["iteration_number"],
                "storage_key": row["storage_key"],
                "storage_url": row["storage_url"],
                "prompt_used": row["prompt_used"],
                "generation_params": from_json_column(row["generation_params"], {}),
                "width": row["width"],
                "height": row["height"],
                "mime_type": row["mime_type"],
                "file_size_bytes": row["file_size_bytes"],
                "created_at": row["created_at"],
            }
        )

    def _load(self, conn: sqlite3.Connection, request_id: str) -> GenerationRequest:
        row = conn.execute("SELECT * FROM generation_requests WHERE id = ?", (request_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"generation request not found: {request_id}")
        iteration_rows = conn.execute(
            "SELECT payload FROM request_iterations WHERE request_id = ? ORDER BY iteration_number ASC",
            (request_id,),
        ).fetchall()
        return self._request_from_rows(row, iteration_rows)

    def _load_many(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[GenerationRequest]:
        results: list[GenerationRequest] = []
        for row in rows:
            iteration_rows = conn.execute(
                "SELECT payload FROM request_iterations WHERE request_id = ? ORDER BY iteration_number ASC",
                (row["id"],),
            ).fetchall()
            results.append(self._request_from_rows(row, iteration_rows))
        return results

    @staticmethod
    def _update_fields(conn: sqlite3.Connection, request_id: str, fields: dict[str, Any]) -> None:
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conn.execute(
            f"UPDATE generation_requests SET {assignments} WHERE id = ?",
            (*fields.values(), request_id),
        )

    # ------------------------------------------------------------------
    # Requests: create and query
    # ------------------------------------------------------------------

    def insert_request(self, request: GenerationRequest) -> GenerationRequest:
        """Persist a new request row.

        Raises:
            StateError: If a request with the same id already exists.
        """
        with self._transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO generation_requests (
                        id, organization_id, project_id, space_id, created_by, brief, initial_prompt,
                        reference_image_urls, negative_prompts, judge_ids, image_params, threshold,
                        max_iterations, status, current_iteration, final_image_id, completion_reason,
                        costs, error_message, cancel_requested, created_at, completed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        request.id,
                        request.organization_id,
                        request.project_id,
                        request.space_id,
                        request.created_by,
                        request.brief,
                        request.initial_prompt,
                        to_canonical_json(request.reference_image_urls),
                        request.negative_prompts,
                        to_canonical_json(request.judge_ids),
                        to_canonical_json(request.image_params),
                        request.threshold,
                        request.max_iterations,
                        request.status.value,
                        request.current_iteration,
                        request.final_image_id,
                        request.completion_reason.value if request.completion_reason else None,
                        to_canonical_json(request.costs),
                        request.error_message,
                        int(request.cancel_requested),
                        _timestamp(request.created_at),
                        _timestamp(request.completed_at) if request.completed_at else None,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise StateError(f"generation request already exists: {request.id}") from exc
            for iteration in request.iterations:
                self._insert_iteration(conn, request.id, iteration)
        logger.info("created generation request %s for organization %s", request.id, request.organization_id)
        return request

    def get_request(self, request_id: str) -> GenerationRequest:
        """Return a request with its full iteration history.

        Raises:
            NotFoundError: If the id is unknown.
        """
        with self._transaction(write=False) as conn:
            return self._load(conn, request_id)

    def find_request(
        self,
        request_id: str,
        *,
        organization_id: str | None = None,
        user_context: UserContext | None = None,
    ) -> GenerationRequest:
        """Scoped lookup; a request outside the caller's scope is reported as missing."""
        request = self.get_request(request_id)
        if organization_id is not None and request.organization_id != organization_id:
            raise NotFoundError(f"generation request not found: {request_id}")
        if user_context is not None and not user_context.is_privileged and request.created_by != user_context.user_id:
            raise NotFoundError(f"generation request not found: {request_id}")
        return request

    def find_by_organization(
        self,
        organization_id: str,
        *,
        status: RequestStatus | None = None,
        project_id: str | None = None,
        space_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
        user_context: UserContext | None = None,
    ) -> list[GenerationRequest]:
        """List an organization's requests, newest first.

        Non-privileged callers only see requests they created. ``limit`` is
        clamped to 1..100.
        """
        clauses = ["organization_id = ?"]
        params: list[Any] = [organization_id]
        if status is not None:
            clauses.append("status = ?")
            params.append(RequestStatus(status).value)
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if space_id is not None:
            clauses.append("space_id = ?")
            params.append(space_id)
        if user_context is not None and not user_context.is_privileged:
            clauses.append("created_by = ?")
            params.append(user_context.user_id)
        params.extend([max(1, min(limit, _MAX_PAGE_SIZE)), max(0, offset)])
        query = (
            f"SELECT * FROM generation_requests WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?"
        )
        with self._transaction(write=False) as conn:
            return self._load_many(conn, conn.execute(query, params).fetchall())

    def get_pending_requests(self, limit: int | None = None) -> list[GenerationRequest]:
        """Return PENDING requests oldest first, across all organizations."""
        query = "SELECT * FROM generation_requests WHERE status = ? ORDER BY created_at ASC, seq ASC"
        params: list[Any] = [RequestStatus.PENDING.value]
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(0, limit))
        with self._transaction(write=False) as conn:
            return self._load_many(conn, conn.execute(query, params).fetchall())

    def get_pending_request_ids(self, limit: int | None = None) -> list[str]:
        """Ids of PENDING requests in pickup order, without loading their history."""
        query = "SELECT id FROM generation_requests WHERE status = ? ORDER BY created_at ASC, seq ASC"
        params: list[Any] = [RequestStatus.PENDING.value]
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(0, limit))
        with self._transaction(write=False) as conn:
            return [row["id"] for row in conn.execute(query, params).fetchall()]

    def get_active_requests(self) -> list[GenerationRequest]:
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        query = (
            f"SELECT * FROM generation_requests WHERE status IN ({placeholders}) "
            "ORDER BY created_at ASC, seq ASC"
        )
        with self._transaction(write=False) as conn:
            rows = conn.execute(query, [status.value for status in ACTIVE_STATUSES]).fetchall()
            return self._load_many(conn, rows)

    # ------------------------------------------------------------------
    # Requests: status transitions
    # ------------------------------------------------------------------

    def update_status(self, request_id: str, status: RequestStatus) -> GenerationRequest:
        """Low-level status setter; stamps ``completed_at`` for terminal statuses.

        Raises:
            NotFoundError: If the id is unknown.
        """
        status = RequestStatus(status)
        with self._transaction() as conn:
            self._load(conn, request_id)
            fields: dict[str, Any] = {"status": status.value}
            if status in TERMINAL_STATUSES:
                fields["completed_at"] = _timestamp(utcnow())
            self._update_fields(conn, request_id, fields)
            return self._load(conn, request_id)

    def claim(self, request_id: str, status: RequestStatus = RequestStatus.OPTIMIZING) -> GenerationRequest:
        """Atomically move a PENDING request into an active status.

        Raises:
            NotFoundError: If the id is unknown.
            ConcurrencyError: If the request is no longer PENDING.
        """
        if status not in ACTIVE_STATUSES:
            raise ValueError(f"claim target must be an active status, got: {status}")
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE generation_requests SET status = ? WHERE id = ? AND status = ?",
                (status.value, request_id, RequestStatus.PENDING.value),
            )
            if cursor.rowcount == 0:
                current = self._load(conn, request_id)
                raise ConcurrencyError(
                    f"generation request {request_id} is {current.status.value}, not pending"
                )
            claimed = self._load(conn, request_id)
        logger.info("claimed generation request %s", request_id)
        return claimed

    def _finish(self, request_id: str, fields: dict[str, Any]) -> GenerationRequest:
        fields = {**fields, "completed_at": _timestamp(utcnow())}
        with self._transaction() as conn:
            self._load(conn, request_id)
            self._update_fields(conn, request_id, fields)
            return self._load(conn, request_id)

    def complete(
        self,
        request_id: str,
        final_image_id: str | None,
        reason: CompletionReason = CompletionReason.SUCCESS,
    ) -> GenerationRequest:
        return self._finish(
            request_id,
            {
                "status": RequestStatus.COMPLETED.value,
                "final_image_id": final_image_id,
                "completion_reason": CompletionReason(reason).value,
            },
        )

    def fail(self, request_id: str, message: str) -> GenerationRequest:
        """Mark a request FAILED/ERROR. A failed request never carries a final image."""
        return self._finish(
            request_id,
            {
                "status": RequestStatus.FAILED.value,
                "final_image_id": None,
                "completion_reason": CompletionReason.ERROR.value,
                "error_message": truncate_error_message(message),
            },
        )

    def cancel(self, request_id: str) -> GenerationRequest:
        return self._finish(
            request_id,
            {
                "status": RequestStatus.CANCELLED.value,
                "final_image_id": None,
                "completion_reason": CompletionReason.CANCELLED.value,
            },
        )

    def request_cancellation(self, request_id: str) -> GenerationRequest:
        """Signal cancellation.

        A PENDING request is cancelled on the spot since no worker owns it.
        An active request gets the flag set and the owning loop observes it
        between phases.

        Raises:
            NotFoundError: If the id is unknown.
            StateError: If the request already terminated.
        """
        with self._transaction() as conn:
            request = self._load(conn, request_id)
            if request.is_terminal:
                raise StateError(f"generation request {request_id} already {request.status.value}")
            fields: dict[str, Any] = {"cancel_requested": 1}
            if request.status is RequestStatus.PENDING:
                fields.update(
                    status=RequestStatus.CANCELLED.value,
                    completion_reason=CompletionReason.CANCELLED.value,
                    completed_at=_timestamp(utcnow()),
                )
            self._update_fields(conn, request_id, fields)
            return self._load(conn, request_id)

    def is_cancel_requested(self, request_id: str) -> bool:
        with self._transaction(write=False) as conn:
            row = conn.execute(
                "SELECT cancel_requested FROM generation_requests WHERE id = ?", (request_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"generation request not found: {request_id}")
        return bool(row["cancel_requested"])

    # ------------------------------------------------------------------
    # Requests: history, costs and continuation
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_iteration(conn: sqlite3.Connection, request_id: str, snapshot: IterationSnapshot) -> None:
        conn.execute(
            "INSERT INTO request_iterations (request_id, iteration_number, payload, created_at) VALUES (?, ?, ?, ?)",
            (request_id, snapshot.iteration_number, to_canonical_json(snapshot), _timestamp(snapshot.created_at)),
        )

    def add_iteration(self, request_id: str, snapshot: IterationSnapshot) -> GenerationRequest:
        """Append one scored iteration and advance ``current_iteration`` atomically.

        Raises:
            NotFoundError: If the id is unknown.
            StateError: If the request is terminal or the iteration number is
                not exactly ``current_iteration + 1``.
        """
        with self._transaction() as conn:
            request = self._load(conn, request_id)
            if request.is_terminal:
                raise StateError(
                    f"cannot append iteration to {request.status.value} generation request {request_id}"
                )
            expected = request.current_iteration + 1
            if snapshot.iteration_number != expected:
                raise StateError(
                    f"iteration {snapshot.iteration_number} out of order for {request_id}, expected {expected}"
                )
            self._insert_iteration(conn, request_id, snapshot)
            self._update_fields(conn, request_id, {"current_iteration": expected})
            return self._load(conn, request_id)

    def update_costs(self, request_id: str, delta: CostDelta) -> GenerationRequest:
        """Add usage to the persisted totals and reprice them.

        Raises:
            NotFoundError: If the id is unknown.
        """
        with self._transaction() as conn:
            request = self._load(conn, request_id)
            costs = apply_cost_delta(request.costs, delta, self.pricing)
            self._update_fields(conn, request_id, {"costs": to_canonical_json(costs)})
            return self._load(conn, request_id)

    def update_negative_prompts(self, request_id: str, negative_prompts: str | None) -> GenerationRequest:
        with self._transaction() as conn:
            self._load(conn, request_id)
            self._update_fields(conn, request_id, {"negative_prompts": negative_prompts})
            return self._load(conn, request_id)

    def reopen(
        self,
        request_id: str,
        extra_iterations: int,
        *,
        judge_ids: list[str] | None = None,
        prompt_override: str | None = None,
    ) -> GenerationRequest:
        """Return a terminated request to PENDING with a larger iteration budget.

        History, ``current_iteration`` and costs are preserved.

        Raises:
            NotFoundError: If the id is unknown.
            StateError: If the request has not terminated.
        """
        if extra_iterations < 1:
            raise ValueError(f"extra_iterations must be >= 1, got: {extra_iterations}")
        with self._transaction() as conn:
            request = self._load(conn, request_id)
            if not request.is_terminal:
                raise StateError(
                    f"only terminated requests can be continued; {request_id} is {request.status.value}"
                )
            fields: dict[str, Any] = {
                "status": RequestStatus.PENDING.value,
                "max_iterations": request.max_iterations + extra_iterations,
                "completed_at": None,
                "final_image_id": None,
                "completion_reason": None,
                "error_message": None,
                "cancel_requested": 0,
            }
            if judge_ids is not None:
                fields["judge_ids"] = to_canonical_json(judge_ids)
            if prompt_override is not None:
                fields["initial_prompt"] = prompt_override
            self._update_fields(conn, request_id, fields)
            return self._load(conn, request_id)

    # ------------------------------------------------------------------
    # Generated images
    # ------------------------------------------------------------------

    def create_image(self, image: GeneratedImage) -> GeneratedImage:
        with self._transaction() as conn:
            self._load(conn, image.request_id)
            conn.execute(
                """
                INSERT INTO generated_images (
                    id, request_id, iteration_number, storage_key, storage_url, prompt_used,
                    generation_params, width, height, mime_type, file_size_bytes, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    image.id,
                    image.request_id,
                    image.iteration_number,
                    image.storage_key,
                    image.storage_url,
                    image.prompt_used,
                    to_canonical_json(image.generation_params),
                    image.width,
                    image.height,
                    image.mime_type,
                    image.file_size_bytes,
                    _timestamp(image.created_at),
                ),
            )
        return image

    def get_image(self, image_id: str) -> GeneratedImage:
        with self._transaction(write=False) as conn:
            row = conn.execute("SELECT * FROM generated_images WHERE id = ?", (image_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"generated image not found: {image_id}")
        return self._image_from_row(row)

    def get_images_by_request(self, request_id: str) -> list[GeneratedImage]:
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                "SELECT * FROM generated_images WHERE request_id = ? ORDER BY iteration_number ASC, seq ASC",
                (request_id,),
            ).fetchall()
        return [self._image_from_row(row) for row in rows]

    def get_images_by_iteration(self, request_id: str, iteration_number: int) -> list[GeneratedImage]:
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                "SELECT * FROM generated_images WHERE request_id = ? AND iteration_number = ? ORDER BY seq ASC",
                (request_id, iteration_number),
            ).fetchall()
        return [self._image_from_row(row) for row in rows]
