"""Persistent per-project dev server config.

Stores the last command that actually came up (last-known-good), the most
recent failure, and an explicit user override, keyed by absolute project
path, in a single JSON file under the state directory.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from devwarden.command import SafeCommand

logger = logging.getLogger(__name__)


class StoredCommand(BaseModel):
    bin: str
    args: list[str] = Field(default_factory=list)

    @classmethod
    def from_safe(cls, cmd: SafeCommand) -> StoredCommand:
        return cls(bin=cmd.bin, args=list(cmd.args))

    def to_safe(self) -> SafeCommand:
        return SafeCommand(bin=self.bin, args=tuple(self.args))


class LastKnownGood(BaseModel):
    command: StoredCommand
    port: int | None = None
    framework: str | None = None
    script_name: str | None = None
    spawn_cwd: str | None = None
    updated_at: float = Field(default_factory=time.time)


class LastFailure(BaseModel):
    error: str
    timestamp: float = Field(default_factory=time.time)


class UserOverride(BaseModel):
    command: StoredCommand
    port: int | None = None
    set_at: float = Field(default_factory=time.time)


class PersistedDevConfig(BaseModel):
    last_known_good: LastKnownGood | None = None
    last_failure: LastFailure | None = None
    user_override: UserOverride | None = None


class DevConfigStore:
    """JSON-file backed store of ``PersistedDevConfig`` per project.

    Reads are served from memory; every mutation rewrites the file
    atomically. A missing or corrupt file starts the store empty.
    """

    FILENAME = "devservers.json"

    def __init__(self, state_dir: str) -> None:
        self._path = os.path.join(os.path.expanduser(state_dir), self.FILENAME)
        self._lock = threading.Lock()
        self._data: dict[str, PersistedDevConfig] = self._read()

    @property
    def path(self) -> str:
        return self._path

    def get(self, project_path: str) -> PersistedDevConfig | None:
        with self._lock:
            config = self._data.get(project_path)
            return config.model_copy(deep=True) if config else None

    def record_success(
        self,
        project_path: str,
        command: SafeCommand,
        port: int | None = None,
        framework: str | None = None,
        script_name: str | None = None,
        spawn_cwd: str | None = None,
    ) -> None:
        """Record a successful startup; clears any previous failure."""
        with self._lock:
            config = self._data.setdefault(project_path, PersistedDevConfig())
            config.last_known_good = LastKnownGood(
                command=StoredCommand.from_safe(command),
                port=port,
                framework=framework,
                script_name=script_name,
                spawn_cwd=spawn_cwd,
            )
            config.last_failure = None
            self._write()
        logger.info(
            "Saved last-known-good for %s: %s",
            os.path.basename(project_path),
            " ".join(command.argv),
        )

    def record_failure(self, project_path: str, error: str) -> None:
        with self._lock:
            config = self._data.setdefault(project_path, PersistedDevConfig())
            config.last_failure = LastFailure(error=error)
            self._write()

    def set_user_override(
        self, project_path: str, command: SafeCommand, port: int | None = None
    ) -> None:
        with self._lock:
            config = self._data.setdefault(project_path, PersistedDevConfig())
            config.user_override = UserOverride(
                command=StoredCommand.from_safe(command), port=port
            )
            self._write()
        logger.info(
            "User override set for %s: %s",
            os.path.basename(project_path),
            " ".join(command.argv),
        )

    def clear_user_override(self, project_path: str) -> None:
        with self._lock:
            config = self._data.get(project_path)
            if config and config.user_override:
                config.user_override = None
                self._write()

    def clear(self, project_path: str) -> None:
        with self._lock:
            if self._data.pop(project_path, None) is not None:
                self._write()

    def _read(self) -> dict[str, PersistedDevConfig]:
        try:
            with open(self._path) as f:
                raw = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable dev config %s: %s", self._path, e)
            return {}

        data: dict[str, PersistedDevConfig] = {}
        for project_path, entry in raw.items():
            try:
                data[project_path] = PersistedDevConfig.model_validate(entry)
            except PydanticValidationError as e:
                logger.warning("Dropping invalid dev config for %s: %s", project_path, e)
        return data

    def _write(self) -> None:
        directory = os.path.dirname(self._path)
        os.makedirs(directory, exist_ok=True)
        payload = {k: v.model_dump(mode="json") for k, v in self._data.items()}
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".devservers.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp, self._path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
