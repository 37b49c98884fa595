"""PTY session registry: interactive shells on pseudo-terminals."""

from devwarden.pty.buffer import RollingBuffer, sanitize_output, strip_ansi
from devwarden.pty.process import PTYProcess
from devwarden.pty.registry import PTYRegistry, PtySession, new_session_id

__all__ = [
    "PTYProcess",
    "PTYRegistry",
    "PtySession",
    "RollingBuffer",
    "new_session_id",
    "sanitize_output",
    "strip_ansi",
]
