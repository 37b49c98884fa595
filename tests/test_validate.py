"""Tests for devwarden.command (SafeCommand, validation, parsing)."""

from __future__ import annotations

import pytest

from devwarden.command import (
    Confidence,
    DevServerPlan,
    SafeCommand,
    ValidationResult,
    command_to_string,
    extract_script_name,
    parse_command_string,
    validate_command,
    validate_plan,
    validate_shell,
)
from devwarden.errors import ValidationError


def _plan(**overrides) -> DevServerPlan:
    fields = {
        "cwd": "/home/me/app",
        "manager": "npm",
        "command": SafeCommand("npm", ("run", "dev")),
        "port": 3000,
        "confidence": Confidence.HIGH,
    }
    fields.update(overrides)
    return DevServerPlan(**fields)


# ---------------------------------------------------------------------------
# SafeCommand
# ---------------------------------------------------------------------------


class TestSafeCommand:
    def test_args_become_tuple(self) -> None:
        cmd = SafeCommand("npm", ["run", "dev"])  # type: ignore[arg-type]
        assert cmd.args == ("run", "dev")
        assert cmd.argv == ["npm", "run", "dev"]

    def test_frozen(self) -> None:
        cmd = SafeCommand("npm")
        with pytest.raises(AttributeError):
            cmd.bin = "bash"  # type: ignore[misc]


# ---------------------------------------------------------------------------
# validate_command
# ---------------------------------------------------------------------------


class TestValidateCommand:
    @pytest.mark.parametrize("bin", ["npm", "pnpm", "yarn", "bun", "node", "npx"])
    def test_allowed_bins(self, bin: str) -> None:
        assert validate_command(SafeCommand(bin, ("dev",))).ok

    @pytest.mark.parametrize("bin", ["bash", "sh", "python", "/usr/bin/npm", "deno"])
    def test_rejected_bins(self, bin: str) -> None:
        result = validate_command(SafeCommand(bin))
        assert not result.ok
        assert "allowlist" in (result.error or "")

    @pytest.mark.parametrize(
        "arg", ["dev;rm", "a|b", "a&b", "$(id)", "`id`", "x>y", "a\\b", "line\nbreak"]
    )
    def test_metacharacters_rejected(self, arg: str) -> None:
        assert not validate_command(SafeCommand("npm", ("run", arg))).ok

    @pytest.mark.parametrize("word", ["bash", "SUDO", " curl ", "python3"])
    def test_dangerous_words_rejected(self, word: str) -> None:
        assert not validate_command(SafeCommand("npx", (word,))).ok

    def test_flags_allowed(self) -> None:
        cmd = SafeCommand("npm", ("run", "dev", "--", "--port=3001", "--host"))
        assert validate_command(cmd).ok


# ---------------------------------------------------------------------------
# validate_plan / validate_shell
# ---------------------------------------------------------------------------


class TestValidatePlan:
    def test_good_plan(self) -> None:
        assert validate_plan(_plan()).ok

    def test_relative_cwd(self) -> None:
        assert not validate_plan(_plan(cwd="app")).ok

    def test_relative_spawn_cwd(self) -> None:
        assert not validate_plan(_plan(spawn_cwd="apps/web")).ok

    @pytest.mark.parametrize("port", [0, 70000, True, "3000"])
    def test_bad_port(self, port) -> None:
        assert not validate_plan(_plan(port=port)).ok

    def test_no_port_is_fine(self) -> None:
        assert validate_plan(_plan(port=None)).ok

    def test_command_revalidated(self) -> None:
        assert not validate_plan(_plan(command=SafeCommand("sh", ("-c", "x")))).ok

    def test_launch_cwd_prefers_spawn_cwd(self) -> None:
        assert _plan().launch_cwd == "/home/me/app"
        assert _plan(spawn_cwd="/home/me/app/web").launch_cwd == "/home/me/app/web"


class TestValidateShell:
    def test_allowed(self) -> None:
        assert validate_shell("/bin/zsh").ok

    @pytest.mark.parametrize("shell", ["bash", "/tmp/bash", "/usr/bin/python3"])
    def test_rejected(self, shell: str) -> None:
        assert not validate_shell(shell).ok


class TestValidationResult:
    def test_raise_for_error(self) -> None:
        with pytest.raises(ValidationError, match="nope"):
            ValidationResult.failure("nope").raise_for_error()
        ValidationResult.success().raise_for_error()

    def test_truthiness(self) -> None:
        assert ValidationResult.success()
        assert not ValidationResult.failure("x")


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class TestParseCommandString:
    def test_parses(self) -> None:
        assert parse_command_string("  pnpm   dev ") == SafeCommand("pnpm", ("dev",))

    @pytest.mark.parametrize(
        "raw", ["", "   ", "npm run dev && rm -rf /", "bash -c x", "npm run $SCRIPT"]
    )
    def test_rejects(self, raw: str) -> None:
        assert parse_command_string(raw) is None

    def test_command_to_string(self) -> None:
        assert command_to_string(SafeCommand("yarn", ("dev",))) == "yarn dev"


class TestExtractScriptName:
    @pytest.mark.parametrize(
        "cmd,expected",
        [
            (SafeCommand("npm", ("run", "dev")), "dev"),
            (SafeCommand("yarn", ("dev",)), "dev"),
            (SafeCommand("npm", ("start",)), "start"),
            (SafeCommand("pnpm", ("install",)), None),
            (SafeCommand("npx", ("vite",)), None),
            (SafeCommand("node", ("server.js",)), None),
            (SafeCommand("npm", ("run",)), None),
        ],
    )
    def test_extract(self, cmd: SafeCommand, expected: str | None) -> None:
        assert extract_script_name(cmd) == expected
