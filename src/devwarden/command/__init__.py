"""Command validator: allowlisted process invocations.

Every command that reaches an OS process launcher passes through here.
"""

from devwarden.command.models import (
    Confidence,
    DetectionMeta,
    DevServerPlan,
    SafeCommand,
    ValidationResult,
)
from devwarden.command.validate import (
    ALLOWED_BINS,
    ALLOWED_SHELLS,
    command_to_string,
    extract_script_name,
    is_allowed_bin,
    is_clean_arg,
    parse_command_string,
    validate_command,
    validate_plan,
    validate_shell,
)

__all__ = [
    "ALLOWED_BINS",
    "ALLOWED_SHELLS",
    "Confidence",
    "DetectionMeta",
    "DevServerPlan",
    "SafeCommand",
    "ValidationResult",
    "command_to_string",
    "extract_script_name",
    "is_allowed_bin",
    "is_clean_arg",
    "parse_command_string",
    "validate_command",
    "validate_plan",
    "validate_shell",
]
