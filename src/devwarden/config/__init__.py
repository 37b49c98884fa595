"""Configuration: Pydantic models for devwarden settings."""

from __future__ import annotations

import json
import os
from typing import Any

from pydantic import BaseModel, Field


class TimeoutsConfig(BaseModel):
    """The hard timeouts of the system. All values are seconds."""

    kill_grace: float = Field(
        default=5.0, description="SIGTERM grace window before SIGKILL"
    )
    shutdown_grace: float = Field(
        default=1.0, description="Grace window used by kill_all at shutdown"
    )
    force_reap: float = Field(
        default=2.0,
        description="How long to wait for a SIGKILLed process before dropping it",
    )
    verification_window: float = Field(
        default=10.0,
        description="How long a restarted dev server must stay up to count as recovered",
    )


class PtyConfig(BaseModel):
    """Interactive terminal sessions."""

    default_shell: str | None = Field(
        default=None, description="Shell used when spawn() is given none"
    )
    max_sessions: int = Field(default=32)
    batch_ms: int = Field(
        default=8, description="Output batching window before publishing data"
    )
    scrollback_lines: int = Field(default=10_000)
    strip_env: list[str] = Field(
        default_factory=lambda: [
            "CLAUDECODE",
            "CLAUDE_CODE_SESSION",
            "CLAUDE_CODE_ENTRY_POINT",
        ],
        description="Environment variables removed before launching a shell",
    )
    mcp_port: int | None = Field(
        default=None, description="Exported to shells as DEVWARDEN_MCP_PORT"
    )


class DevServerConfig(BaseModel):
    """Dev server supervision."""

    startup_timeout: float = Field(
        default=20.0, description="Max seconds to wait for a localhost URL"
    )
    startup_retries: int = Field(
        default=3, description="Self-heal retries for early exits during startup"
    )
    install_timeout: float = Field(default=300.0)
    crash_loop_max: int = Field(default=3)
    crash_loop_window: float = Field(default=60.0)
    output_lines: int = Field(
        default=2_000, description="Per-project output kept for crash logs"
    )
    extra_paths: list[str] = Field(
        default_factory=lambda: [
            "/usr/local/bin",
            "/opt/homebrew/bin",
            "/opt/homebrew/sbin",
            "~/.nvm/current/bin",
            "~/.volta/bin",
            "~/.fnm/current/bin",
            "/usr/local/share/npm/bin",
        ],
        description="Tool directories appended to PATH for dev servers",
    )


class RepairConfig(BaseModel):
    """Self-healing repair loop."""

    enabled: bool = Field(default=True)
    agent_mode: bool = Field(
        default=False,
        description="Wait for a repair agent before each restart; off means backoff and restart",
    )
    max_iterations: int = Field(default=3, ge=1)
    base_delay: float = Field(
        default=2.0, description="Backoff base between attempts (doubles each time)"
    )
    agent_engage_timeout: float = Field(default=30.0)
    agent_write_timeout: float = Field(default=120.0)
    quiet_period: float = Field(
        default=2.0, description="Pause after agent writes so file watchers settle"
    )
    cooldown: float = Field(
        default=600.0, description="Cooldown after an exhausted incident"
    )
    max_files: int = Field(default=8)
    max_lines: int = Field(default=300)
    health_timeout: float = Field(default=5.0)
    health_retries: int = Field(default=3)
    health_retry_delay: float = Field(default=1.0)


class McpConfig(BaseModel):
    """MCP bridge session bookkeeping."""

    session_ttl: float = Field(default=30 * 60.0)
    sweep_interval: float = Field(default=5 * 60.0)
    token_ttl: float = Field(default=2 * 60 * 60.0)


class WardenConfig(BaseModel):
    """Top-level devwarden configuration."""

    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    pty: PtyConfig = Field(default_factory=PtyConfig)
    devserver: DevServerConfig = Field(default_factory=DevServerConfig)
    repair: RepairConfig = Field(default_factory=RepairConfig)
    mcp: McpConfig = Field(default_factory=McpConfig)
    state_dir: str = Field(
        default="~/.devwarden", description="Directory for persisted state"
    )

    @property
    def state_path(self) -> str:
        return os.path.expanduser(self.state_dir)

    @classmethod
    def load(cls, config_path: str | None = None) -> WardenConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            DEVWARDEN_KILL_GRACE        - SIGTERM grace window (seconds)
            DEVWARDEN_SHUTDOWN_GRACE    - Shutdown grace window (seconds)
            DEVWARDEN_VERIFY_WINDOW     - Repair verification window (seconds)
            DEVWARDEN_MAX_ITERATIONS    - Max repair attempts per incident
            DEVWARDEN_AGENT_REPAIR      - Agent-assisted repair on/off (1/0)
            DEVWARDEN_SESSION_TTL       - MCP session idle TTL (seconds)
            DEVWARDEN_STATE_DIR         - Where persisted state lives
        """
        from dotenv import load_dotenv

        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        timeouts = config_data.get("timeouts", {})
        repair = config_data.get("repair", {})
        mcp = config_data.get("mcp", {})

        env_kill_grace = os.environ.get("DEVWARDEN_KILL_GRACE")
        if env_kill_grace:
            timeouts["kill_grace"] = float(env_kill_grace)

        env_shutdown_grace = os.environ.get("DEVWARDEN_SHUTDOWN_GRACE")
        if env_shutdown_grace:
            timeouts["shutdown_grace"] = float(env_shutdown_grace)

        env_verify = os.environ.get("DEVWARDEN_VERIFY_WINDOW")
        if env_verify:
            timeouts["verification_window"] = float(env_verify)

        env_iterations = os.environ.get("DEVWARDEN_MAX_ITERATIONS")
        if env_iterations:
            repair["max_iterations"] = int(env_iterations)

        env_agent_repair = os.environ.get("DEVWARDEN_AGENT_REPAIR")
        if env_agent_repair:
            repair["agent_mode"] = env_agent_repair.lower() in ("1", "true", "yes")

        env_ttl = os.environ.get("DEVWARDEN_SESSION_TTL")
        if env_ttl:
            mcp["session_ttl"] = float(env_ttl)

        env_state_dir = os.environ.get("DEVWARDEN_STATE_DIR")
        if env_state_dir:
            config_data["state_dir"] = env_state_dir

        if timeouts:
            config_data["timeouts"] = timeouts
        if repair:
            config_data["repair"] = repair
        if mcp:
            config_data["mcp"] = mcp

        return cls.model_validate(config_data)
