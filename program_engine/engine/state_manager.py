"""
State Manager for the Program Engine.

Holds programs, stages, templates, processes, block instances and user
records. Provides persistence to a JSON file, a re-entrant transaction
scope that serializes writes, and the conditional writes that enforce
uniqueness (program slug, one active process per user and program).
"""

import copy
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Type, Union

from pydantic import BaseModel

from ..exceptions import ConflictError
from ..models import BlockInstance, Process, Program, Stage, StageTemplate, UserRecord

logger = logging.getLogger(__name__)

COLLECTIONS: Dict[str, Type[BaseModel]] = {
    "programs": Program,
    "stages": Stage,
    "templates": StageTemplate,
    "processes": Process,
    "blocks": BlockInstance,
    "users": UserRecord,
}


class StateManager:
    """
    Document store for all engine entities.

    State is kept in memory and optionally persisted as JSON. Every
    state-changing operation runs inside ``transaction()``, which holds a
    re-entrant lock, restores the previous state if the block raises, and
    saves once the outermost scope commits.
    """

    def __init__(self, storage_path: Optional[Union[str, Path]] = None):
        """
        Initialize the state manager.

        Args:
            storage_path: Path to store engine state as JSON.
                         If None, state is kept in memory only.
        """
        self.storage_path = Path(storage_path) if storage_path else None
        self.collections: Dict[str, Dict[str, BaseModel]] = {name: {} for name in COLLECTIONS}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, BaseModel]]] = None

        if self.storage_path:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

        logger.info(
            f"Initialized StateManager with {'persistent' if self.storage_path else 'in-memory'} storage"
        )

    @contextmanager
    def transaction(self) -> Iterator["StateManager"]:
        """
        Run a read-modify-write sequence atomically.

        Nested scopes join the outer one. If the outermost scope raises,
        all collections are restored to their state at entry.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._snapshot = copy.deepcopy(self.collections)
            self._depth += 1
            try:
                yield self
            except Exception:
                if outermost:
                    self.collections = self._snapshot
                    logger.debug("Transaction rolled back")
                raise
            else:
                if outermost:
                    self._save_state()
            finally:
                self._depth -= 1
                if outermost:
                    self._snapshot = None

    # Generic document access

    def get(self, collection: str, doc_id: Optional[str]) -> Optional[Any]:
        if not doc_id:
            return None
        with self._lock:
            return self.collections[collection].get(doc_id)

    def _documents(self, collection: str) -> List[Any]:
        """Snapshot of a collection taken under the store lock."""
        with self._lock:
            return list(self.collections[collection].values())

    def put(self, collection: str, doc: BaseModel) -> BaseModel:
        """Insert or replace a document."""
        with self.transaction():
            self.collections[collection][doc.id] = doc
        return doc

    def query(self, collection: str, predicate: Optional[Callable[[Any], bool]] = None) -> List[Any]:
        docs = self._documents(collection)
        if predicate is None:
            return docs
        return [doc for doc in docs if predicate(doc)]

    # Programs

    def get_program(self, program_id: str) -> Optional[Program]:
        return self.get("programs", program_id)

    def find_program_by_slug(self, slug: str) -> Optional[Program]:
        for program in self._documents("programs"):
            if program.slug == slug:
                return program
        return None

    def insert_program(self, program: Program) -> Program:
        """
        Insert a program if its slug is not taken.

        Raises:
            ConflictError: If another program already uses the slug
        """
        with self.transaction():
            for existing in self.collections["programs"].values():
                if existing.slug == program.slug and existing.id != program.id:
                    raise ConflictError("Program slug already exists.")
            self.collections["programs"][program.id] = program
        logger.info(f"Stored program {program.id} ({program.slug})")
        return program

    def get_active_programs(self) -> List[Program]:
        return self.query("programs", lambda p: p.is_active)

    # Stages and templates

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        return self.get("stages", stage_id)

    def get_template(self, template_id: str) -> Optional[StageTemplate]:
        return self.get("templates", template_id)

    # Processes

    def get_process(self, process_id: str) -> Optional[Process]:
        return self.get("processes", process_id)

    def find_active_process(self, user_id: str, program_id: str) -> Optional[Process]:
        for process in self._documents("processes"):
            if process.user_id == user_id and process.program_id == program_id and not process.is_deleted:
                return process
        return None

    def insert_process(self, process: Process) -> Process:
        """
        Insert a process unless the user already has one in the program.

        Raises:
            ConflictError: If an active process exists for (user, program)
        """
        with self.transaction():
            if self.find_active_process(process.user_id, process.program_id):
                raise ConflictError("Process already exists for this program")
            self.collections["processes"][process.id] = process
        logger.info(f"Stored process {process.id} for user {process.user_id}")
        return process

    # Blocks and users

    def get_block(self, block_id: str) -> Optional[BlockInstance]:
        return self.get("blocks", block_id)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self.get("users", user_id)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        for user in self._documents("users"):
            if user.email.lower() == email.lower():
                return user
        return None

    def get_summary(self) -> Dict[str, Any]:
        """
        Get document counts for every collection.

        Returns:
            Dictionary with per-collection counts and process status breakdown
        """
        with self._lock:
            summary: Dict[str, Any] = {name: len(docs) for name, docs in self.collections.items()}
            processes = list(self.collections["processes"].values())
        by_status: Dict[str, int] = {}
        for process in processes:
            if process.is_deleted:
                continue
            by_status[process.status] = by_status.get(process.status, 0) + 1
        summary["processes_by_status"] = by_status
        return summary

    def _save_state(self):
        """Save current state to persistent storage."""
        if not self.storage_path:
            return

        try:
            state_data = {
                name: {doc_id: doc.model_dump(mode="json") for doc_id, doc in docs.items()}
                for name, docs in self.collections.items()
            }
            state_data["last_updated"] = datetime.now(timezone.utc).isoformat()

            with open(self.storage_path, "w", encoding="utf-8") as f:
                json.dump(state_data, f, indent=2, default=str)

        except Exception as e:
            logger.error(f"Failed to save state to {self.storage_path}: {e}")

    def _load_state(self):
        """Load state from persistent storage."""
        if not self.storage_path or not self.storage_path.exists():
            return

        try:
            with open(self.storage_path, encoding="utf-8") as f:
                state_data = json.load(f)

            for name, model in COLLECTIONS.items():
                for doc_id, doc_data in state_data.get(name, {}).items():
                    self.collections[name][doc_id] = model(**doc_data)

            logger.info(
                f"Loaded {len(self.collections['programs'])} programs and "
                f"{len(self.collections['processes'])} processes from {self.storage_path}"
            )

        except Exception as e:
            logger.error(f"Failed to load state from {self.storage_path}: {e}")
