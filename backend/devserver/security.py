"""Input validation for workspace materialization.

This module guards the two caller-supplied values that end up on the
filesystem: session IDs (which name workspace directories) and file tree
paths (which are written inside a workspace). It also bounds process output
before it is attached to errors.
"""

import re
from pathlib import Path

# Session IDs become directory names, so only portable characters are allowed.
SESSION_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]{0,127}")

# Orchestrator bookkeeping lives here; callers may not write into it.
RESERVED_DIR_NAME = ".devserver"


def validate_session_id(session_id: str) -> tuple[bool, str]:
    """Validate a session ID before deriving a workspace path from it.

    Args:
        session_id: The caller-supplied session identifier.

    Returns:
        A tuple of (is_valid, error_message).

    Examples:
        >>> validate_session_id("doc_42")
        (True, "")
        >>> validate_session_id("../etc")
        (False, "Session ID contains invalid characters")
    """
    if not session_id:
        return False, "Session ID cannot be empty"
    if not SESSION_ID_PATTERN.fullmatch(session_id):
        return False, "Session ID contains invalid characters"
    return True, ""


def validate_path(workspace_root: str, relative_path: str) -> tuple[bool, str, str]:
    """Validate a file path to prevent directory traversal attacks.

    Ensures that the resolved path remains within the workspace root and
    outside the reserved bookkeeping directory.

    Args:
        workspace_root: The absolute path of the session's workspace.
        relative_path: The file tree path the caller wants to write.

    Returns:
        A tuple of (is_valid, error_message, resolved_absolute_path).
        If invalid, error_message explains the issue and
        resolved_absolute_path is empty.

    Examples:
        >>> validate_path("/tmp/devserver-a", "src/App.tsx")
        (True, "", "/tmp/devserver-a/src/App.tsx")
        >>> validate_path("/tmp/devserver-a", "../etc/passwd")
        (False, "Path traversal blocked: contains '..'", "")
    """
    if not relative_path:
        return False, "Path cannot be empty", ""

    if "\x00" in relative_path:
        return False, "Path contains null byte", ""

    normalized = relative_path.replace("\\", "/")
    if normalized.startswith("/") or re.match(r"^[A-Za-z]:", normalized):
        return False, "Absolute paths not allowed", ""

    # Reject parent traversal components while allowing names like "file..bak".
    components = [part for part in normalized.split("/") if part not in ("", ".")]
    if not components:
        return False, "Path cannot be empty", ""
    if ".." in components:
        return False, "Path traversal blocked: contains '..'", ""
    if components[0] == RESERVED_DIR_NAME:
        return False, f"Reserved path: {RESERVED_DIR_NAME}", ""

    try:
        root = Path(workspace_root).resolve()
        resolved = (root / "/".join(components)).resolve()
    except (ValueError, OSError) as e:
        return False, f"Invalid path: {e}", ""

    # Symlinks inside the workspace could still point outside of it.
    try:
        resolved.relative_to(root)
    except ValueError:
        return False, f"Path traversal blocked: {relative_path}", ""

    return True, "", str(resolved)


def sanitize_output(output: str, max_length: int = 2000) -> str:
    """Bound process output for inclusion in logs and error messages.

    Keeps the tail of the output, where failures are usually reported, and
    strips null bytes.

    Args:
        output: The raw process output.
        max_length: Maximum number of characters to keep.

    Returns:
        The sanitized output string.
    """
    if not output:
        return ""

    output = output.replace("\x00", "").strip()
    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = (
            f"[truncated, {truncated_chars} chars omitted] ... "
            + output[-max_length:]
        )

    return output


def tail_excerpt(output: str, max_length: int = 200) -> str:
    """Return the last ``max_length`` characters of process output.

    Used for the short excerpts attached to install and start failures.
    """
    if not output:
        return ""
    return output.replace("\x00", "").strip()[-max_length:].strip()
