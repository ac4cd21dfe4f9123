"""
Key generalization heuristics.

Turns overly specific issue signatures into general ones by replacing the
volatile parts with placeholders:

    "TypeError at src/app.js:42"  ->  "TypeError at <javascript_file>"
    "timeout after 3000 ms"       ->  "timeout after <n> ms"

normalize_key() is idempotent: normalize_key(normalize_key(x)) == normalize_key(x).
Placeholders contain no digits, quotes, dots or slashes, so no rule can
match its own output.
"""

import re
from typing import Optional

FILE_TYPES = {
    "ps1": "powershell_script",
    "psm1": "powershell_script",
    "js": "javascript_file",
    "mjs": "javascript_file",
    "ts": "typescript_file",
    "json": "json_file",
    "md": "markdown_file",
    "cs": "csharp_file",
    "py": "python_file",
    "yaml": "yaml_file",
    "yml": "yaml_file",
}

_QUOTED = re.compile(r"'[^']*'|\"[^\"]*\"|`[^`]*`")
_FILE_PATH = re.compile(
    r"(?:[A-Za-z]:)?(?:[\w\-.]*[/\\])*[\w\-]+\.([A-Za-z][A-Za-z0-9]{0,5})(?::\d+)*\b"
)
_LINE_REF = re.compile(r"\b(line|ln|row|col|column)\s*:?\s*\d+", re.IGNORECASE)
_HEX = re.compile(r"\b0x[0-9a-fA-F]+\b|\b(?=[0-9a-fA-F]*\d)(?=[0-9a-fA-F]*[a-fA-F])[0-9a-fA-F]{8,}\b")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_WHITESPACE = re.compile(r"\s+")


def generalize_file_path(file_path: Optional[str]) -> Optional[str]:
    """File path -> file type ('app/main.ps1' -> 'powershell_script')."""
    if not file_path:
        return None
    extension = file_path.rsplit(".", 1)[-1].lower() if "." in file_path else ""
    return FILE_TYPES.get(extension, "unknown_file")


def generalize_error_message(message: Optional[str]) -> Optional[str]:
    """Error message -> coarse category, or None for an empty message."""
    if not message:
        return None
    msg = message.lower()
    if "missing" in msg and ("catch" in msg or "finally" in msg):
        return "try_catch_finally_structure"
    if "missing closing" in msg or "missing '}'" in msg:
        return "missing_closing_brace"
    if "syntax error" in msg or "syntaxerror" in msg:
        return "syntax_error"
    if "typeerror" in msg or "type error" in msg:
        return "type_error"
    if "referenceerror" in msg or "reference error" in msg:
        return "reference_error"
    if "undefined" in msg or "null" in msg:
        return "null_undefined_error"
    if "timeout" in msg or "timed out" in msg:
        return "timeout_error"
    if "permission" in msg or "access denied" in msg:
        return "permission_error"
    match = re.search(r"(\w+)(error|exception)\b", msg)
    if match:
        return f"{match.group(1)}_{match.group(2)}"
    return "unknown_error"


def _replace_path(match: "re.Match") -> str:
    file_type = FILE_TYPES.get(match.group(1).lower())
    if file_type is None:
        # Dotted identifiers such as "config.load" are not paths
        return match.group(0)
    return f"<{file_type}>"


def normalize_key(key: str) -> str:
    """Replace volatile fragments of an issue type or fix method with placeholders."""
    text = _QUOTED.sub("<str>", key)
    text = _FILE_PATH.sub(_replace_path, text)
    text = _LINE_REF.sub(lambda m: f"{m.group(1)} <n>", text)
    text = _HEX.sub("<hex>", text)
    text = _NUMBER.sub("<n>", text)
    return _WHITESPACE.sub(" ", text).strip()


def is_specific(key: str) -> bool:
    """True when normalize_key would change key."""
    return normalize_key(key) != key
