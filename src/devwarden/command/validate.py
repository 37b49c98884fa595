"""Command validation: the single gate in front of every process launch.

Nothing reaches ``subprocess`` or a PTY without passing through here:
dev server commands go through ``validate_command``/``validate_plan`` and
interactive shells through ``validate_shell``. Both are closed
allowlists; anything not listed is rejected.
"""

from __future__ import annotations

import os
import re

from devwarden.command.models import DevServerPlan, SafeCommand, ValidationResult

ALLOWED_BINS: frozenset[str] = frozenset({"npm", "pnpm", "yarn", "bun", "node", "npx"})

PACKAGE_MANAGERS: tuple[str, ...] = ("npm", "pnpm", "yarn", "bun")

# Shell metacharacters. Never permitted anywhere in a command.
FORBIDDEN_CHARS = re.compile(r"[;|&<>$`()\\\n\r]")

# Dangerous binaries smuggled in as arguments (e.g. ``npx bash``).
FORBIDDEN_WORDS: frozenset[str] = frozenset(
    {
        "bash",
        "sh",
        "zsh",
        "fish",
        "curl",
        "wget",
        "python",
        "python3",
        "ruby",
        "perl",
        "sudo",
        "rm",
    }
)

ALLOWED_SHELLS: frozenset[str] = frozenset(
    {
        "/bin/bash",
        "/bin/zsh",
        "/bin/sh",
        "/bin/fish",
        "/usr/bin/bash",
        "/usr/bin/zsh",
        "/usr/bin/fish",
        "/usr/local/bin/bash",
        "/usr/local/bin/zsh",
        "/usr/local/bin/fish",
        "/opt/homebrew/bin/bash",
        "/opt/homebrew/bin/zsh",
        "/opt/homebrew/bin/fish",
    }
)

# Package manager subcommands that are not package.json script names.
_PM_SUBCOMMANDS: frozenset[str] = frozenset(
    {
        "install", "i", "ci", "init", "publish", "pack", "link", "unlink",
        "add", "remove", "upgrade", "update", "exec", "dlx", "create",
        "x", "cache", "config", "set", "get", "info", "why", "ls", "list",
        "outdated", "prune", "rebuild", "audit", "fund", "login", "logout",
        "whoami", "version", "help", "bin", "prefix", "root",
    }
)


def is_allowed_bin(bin: str) -> bool:
    """Whether ``bin`` is one of the allowlisted binaries."""
    return bin in ALLOWED_BINS


def is_clean_arg(arg: str) -> bool:
    """Whether ``arg`` is free of metacharacters and dangerous words."""
    if not isinstance(arg, str):
        return False
    if FORBIDDEN_CHARS.search(arg):
        return False
    return arg.strip().lower() not in FORBIDDEN_WORDS


def validate_command(cmd: SafeCommand) -> ValidationResult:
    """Validate a SafeCommand: bin in allowlist, every arg clean."""
    if not is_allowed_bin(cmd.bin):
        allowed = ", ".join(sorted(ALLOWED_BINS))
        return ValidationResult.failure(
            f'Binary "{cmd.bin}" is not in the allowlist: {allowed}'
        )
    for arg in cmd.args:
        if not is_clean_arg(arg):
            return ValidationResult.failure(
                f'Argument "{arg}" contains forbidden characters or patterns'
            )
    return ValidationResult.success()


def validate_plan(plan: DevServerPlan) -> ValidationResult:
    """Validate an entire DevServerPlan.

    The embedded command is re-validated: a plan is never trusted just
    because it was produced internally.
    """
    if not plan.cwd or not os.path.isabs(plan.cwd):
        return ValidationResult.failure(
            f'cwd must be an absolute path, got: "{plan.cwd}"'
        )
    if plan.spawn_cwd is not None and not os.path.isabs(plan.spawn_cwd):
        return ValidationResult.failure(
            f'spawn_cwd must be an absolute path, got: "{plan.spawn_cwd}"'
        )
    if plan.port is not None:
        if isinstance(plan.port, bool) or not isinstance(plan.port, int):
            return ValidationResult.failure(f"Port {plan.port!r} is not an integer")
        if not 1 <= plan.port <= 65535:
            return ValidationResult.failure(
                f"Port {plan.port} is out of range (1-65535)"
            )
    return validate_command(plan.command)


def validate_shell(shell: str) -> ValidationResult:
    """Validate an interactive shell path for a PTY session."""
    if shell not in ALLOWED_SHELLS:
        return ValidationResult.failure(f"Shell not allowed: {shell}")
    return ValidationResult.success()


def parse_command_string(raw: str) -> SafeCommand | None:
    """Parse a user-provided command string into a SafeCommand.

    Returns None (never raises) when the string is empty, contains a
    metacharacter anywhere, or fails validation, so callers can fall back
    to asking the user.
    """
    if not isinstance(raw, str) or FORBIDDEN_CHARS.search(raw):
        return None
    parts = raw.split()
    if not parts:
        return None
    cmd = SafeCommand(bin=parts[0], args=tuple(parts[1:]))
    return cmd if validate_command(cmd).ok else None


def command_to_string(cmd: SafeCommand) -> str:
    """Render a SafeCommand for display. Never for execution."""
    return " ".join(cmd.argv)


def extract_script_name(cmd: SafeCommand) -> str | None:
    """The package.json script a command refers to, if any.

    ``npm run dev`` -> ``dev``, ``yarn dev`` -> ``dev``, ``npm start`` ->
    ``start``, ``npx vite`` -> None, ``node server.js`` -> None.
    """
    if cmd.bin not in PACKAGE_MANAGERS or not cmd.args:
        return None
    if cmd.args[0] == "run":
        return cmd.args[1] if len(cmd.args) >= 2 else None
    if cmd.args[0] not in _PM_SUBCOMMANDS:
        return cmd.args[0]
    return None
