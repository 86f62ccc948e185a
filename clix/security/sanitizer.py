"""
Best-effort cleansing of untrusted text before it is stored.

Applied to user- or AI-supplied commands, variable names/values and paths.
Everything here is stateless. Input that cannot be brought into an acceptable
shape raises SanitizationError.

``sanitize_command`` is idempotent: sanitizing its own output returns the
same string.
"""
import json
import re

from ..errors import SanitizationError

MAX_COMMAND_LENGTH = 2000
MAX_VARIABLE_NAME_LENGTH = 64
MAX_VARIABLE_VALUE_LENGTH = 1024
MAX_PATH_LENGTH = 256
MAX_USER_INPUT_LENGTH = 2048
MAX_JSON_LENGTH = 10_000

SHELL_METACHARACTERS = frozenset(";|&$`()<>")

SENSITIVE_PREFIXES = ("/etc/", "/var/", "/sys/", "/proc/", "/dev/", "/boot/", "/root/")

_VARIABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_WHITESPACE = re.compile(r"\s+")
_NEWLINE_RUN = re.compile(r"\n{3,}")


def sanitize_command(command: str) -> str:
    """
    Clean a command string for storage.

    Strips NUL bytes, collapses whitespace runs to one space, trims, and
    backslash-escapes shell metacharacters whose usage looks suspicious.

    Raises:
        SanitizationError: The result is longer than MAX_COMMAND_LENGTH
    """
    sanitized = command.replace("\0", "")
    sanitized = normalize_whitespace(sanitized)
    sanitized = escape_shell_metacharacters(sanitized)

    if len(sanitized) > MAX_COMMAND_LENGTH:
        raise SanitizationError("Command too long after sanitization")

    return sanitized


def normalize_whitespace(command: str) -> str:
    return _WHITESPACE.sub(" ", command).strip()


def escape_shell_metacharacters(command: str) -> str:
    """
    Escape suspicious unquoted metacharacters.

    Characters inside quotes are left alone. A backslash outside single
    quotes escapes the character after it, so the pair is copied as written;
    this is what keeps a second pass from escaping anything twice.
    """
    result = []
    in_single = in_double = False
    i = 0

    while i < len(command):
        ch = command[i]

        if ch == "\\" and not in_single:
            result.append(command[i:i + 2])
            i += 2
            continue

        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif ch in SHELL_METACHARACTERS and not in_single and not in_double:
            if _is_suspicious(command, i):
                result.append("\\")

        result.append(ch)
        i += 1

    return "".join(result)


def _is_suspicious(command: str, index: int) -> bool:
    ch = command[index]
    prev = command[index - 1] if index > 0 else ""
    nxt = command[index + 1] if index + 1 < len(command) else ""

    if ch == ";":
        return nxt == ";"
    if ch == "|":
        # || is a plain logical or
        if prev == "|" or nxt == "|":
            return False
        return nxt == " " or nxt.isalpha()
    if ch == "&":
        # && is fine, a lone & backgrounds a process
        return prev != "&" and nxt != "&"
    if ch == "$":
        return nxt == "("
    if ch == "`":
        return True
    # Redirections and parentheses are left to the security validator
    return False


def sanitize_variable_name(name: str) -> str:
    """
    Raises:
        SanitizationError: The name is not an identifier or is too long
    """
    if not _VARIABLE_NAME.match(name):
        raise SanitizationError(
            f"Invalid variable name: {name}. Variable names must start with a letter "
            "or underscore and contain only alphanumeric characters and underscores."
        )
    if len(name) > MAX_VARIABLE_NAME_LENGTH:
        raise SanitizationError("Variable name too long")
    return name


def sanitize_variable_value(value: str) -> str:
    """
    Strip NUL bytes and escape line breaks.

    Raises:
        SanitizationError: The escaped value is longer than MAX_VARIABLE_VALUE_LENGTH
    """
    sanitized = value.replace("\0", "")
    sanitized = sanitized.replace("\n", "\\n").replace("\r", "\\r")

    if len(sanitized) > MAX_VARIABLE_VALUE_LENGTH:
        raise SanitizationError("Variable value too long")
    return sanitized


def sanitize_file_path(path: str) -> str:
    """
    Reject traversal and sensitive system locations.

    Raises:
        SanitizationError: The path contains ``..``, starts with a sensitive
            prefix, or is too long
    """
    sanitized = path.replace("\0", "")

    if ".." in sanitized:
        raise SanitizationError("Path contains directory traversal sequences")

    for prefix in SENSITIVE_PREFIXES:
        if sanitized.startswith(prefix):
            raise SanitizationError(f"Access to sensitive directory not allowed: {prefix}")

    while "//" in sanitized:
        sanitized = sanitized.replace("//", "/")

    if len(sanitized) > MAX_PATH_LENGTH:
        raise SanitizationError("File path too long")
    return sanitized


def sanitize_user_input(text: str) -> str:
    """Free-form text such as descriptions and prompts."""
    sanitized = text.replace("\0", "")
    sanitized = sanitized.replace("<script", "&lt;script")
    sanitized = sanitized.replace("javascript:", "")
    sanitized = sanitized.replace("data:", "")
    sanitized = _NEWLINE_RUN.sub("\n\n", sanitized)

    if len(sanitized) > MAX_USER_INPUT_LENGTH:
        raise SanitizationError("Input too long")
    return sanitized


def sanitize_json_input(json_str: str) -> str:
    """
    Check that a JSON document is small, well formed and free of script content.

    Returns the input unchanged.
    """
    if len(json_str) > MAX_JSON_LENGTH:
        raise SanitizationError("JSON input too large")

    try:
        json.loads(json_str)
    except json.JSONDecodeError as e:
        raise SanitizationError(f"Invalid JSON: {e}") from e

    if "javascript:" in json_str or "<script" in json_str:
        raise SanitizationError("JSON contains potentially dangerous content")

    return json_str
