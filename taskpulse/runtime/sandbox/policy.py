"""Content rules for sandboxed commands and scripts.

These are denylist/allowlist checks only. They stop the obvious mistakes
and the obvious abuse, nothing more: a determined script author can get
around a substring denylist. Deployments that run untrusted input should
put the sandbox root inside a container or a seccomp profile as well.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass

ALLOWED_COMMANDS: frozenset[str] = frozenset({
    "echo", "ls", "cat", "mkdir", "rm", "cp", "mv",
    "date", "pwd", "whoami", "uname", "hostname", "sleep",
    "python", "python3", "node",
})

DISALLOWED_KEYWORDS: tuple[str, ...] = (
    # privilege escalation
    "sudo", "su", "passwd", "chmod", "chown",
    # filesystem destruction
    "rm -rf", "dd", "mkfs", "fdisk", "mount", "umount",
    # power control
    "shutdown", "reboot", "halt", "poweroff",
    # remote access / transfer
    "wget", "curl", "ssh", "scp", "telnet",
)

SHELL_METACHARACTERS: tuple[str, ...] = (
    "`", "$", "&", "|", ";", ">", "<", "~", "\n", "\r", "\x00",
)

SUPPORTED_LANGUAGES: tuple[str, ...] = ("javascript", "python", "bash")

_KEYWORD_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (kw, re.compile(r"(?<![\w-])" + r"\s+".join(map(re.escape, kw.split())) + r"(?![\w-])"))
    for kw in DISALLOWED_KEYWORDS
)

_DANGEROUS_SCRIPT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"require\s*\(\s*['\"](?:node:)?fs['\"]\s*\)"), "filesystem module import"),
    (re.compile(r"require\s*\(\s*['\"](?:node:)?child_process['\"]\s*\)"), "child_process import"),
    (re.compile(r"import\s+.*\s+from\s+['\"](?:node:)?(?:fs|child_process)['\"]"), "filesystem/process module import"),
    (re.compile(r"\bexec\s*\("), "exec() call"),
    (re.compile(r"\bspawn\s*\("), "spawn() call"),
    (re.compile(r"\beval\s*\("), "eval() call"),
    (re.compile(r"\bFunction\s*\("), "Function() constructor"),
    (re.compile(r"process\.exit"), "process.exit"),
    (re.compile(r"\bsys\.exit\b"), "sys.exit"),
    (re.compile(r"\bos\.(?:system|popen|exec\w*|spawn\w*|kill)\b"), "os process primitive"),
    (re.compile(r"\bsubprocess\b"), "subprocess module"),
    (re.compile(r"__import__"), "dynamic import"),
    (re.compile(r"shutil\.rmtree"), "recursive delete"),
    (re.compile(r"rm\s+-rf"), "rm -rf"),
    (re.compile(r"\bsudo\s+"), "sudo"),
)


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    reason: str = ""

    @classmethod
    def ok(cls) -> Verdict:
        return cls(True)

    @classmethod
    def reject(cls, reason: str) -> Verdict:
        return cls(False, reason)


def validate_command(command: str, *, max_length: int = 1000) -> Verdict:
    trimmed = (command or "").strip()
    if not trimmed:
        return Verdict.reject("command must not be empty")
    if len(trimmed) > max_length:
        return Verdict.reject(f"command is too long ({len(trimmed)} > {max_length} characters)")

    lowered = trimmed.lower()
    for keyword, pattern in _KEYWORD_PATTERNS:
        if pattern.search(lowered):
            return Verdict.reject(f"command contains disallowed keyword: {keyword}")

    for char in SHELL_METACHARACTERS:
        if char in trimmed:
            shown = char if char.isprintable() and not char.isspace() else repr(char)
            return Verdict.reject(f"command contains disallowed character: {shown}")

    first = trimmed.split()[0].lower()
    if first not in ALLOWED_COMMANDS:
        return Verdict.reject(f"command is not in the allowed list: {first}")

    try:
        tokens = shlex.split(trimmed)
    except ValueError as exc:
        return Verdict.reject(f"command cannot be parsed: {exc}")

    # Quoting can hide a keyword from the raw-string scan; check what will run.
    joined = " ".join(tokens).lower()
    for keyword, pattern in _KEYWORD_PATTERNS:
        if pattern.search(joined):
            return Verdict.reject(f"command contains disallowed keyword: {keyword}")
    if first == "rm" and _is_recursive_force(tokens[1:]):
        return Verdict.reject("command contains disallowed keyword: rm -rf")
    return Verdict.ok()


def _is_recursive_force(args: list[str]) -> bool:
    letters: set[str] = set()
    for arg in args:
        if arg == "--":
            break
        if arg.startswith("--"):
            letters.add({"--recursive": "r", "--force": "f"}.get(arg, ""))
        elif arg.startswith("-"):
            letters.update(arg[1:].lower())
    return {"r", "f"} <= letters


def normalize_language(language: str | None) -> str:
    return (language or "javascript").strip().lower()


def validate_script(source: str, language: str, *, max_bytes: int = 10_000) -> Verdict:
    lang = normalize_language(language)
    if lang not in SUPPORTED_LANGUAGES:
        return Verdict.reject(
            f"unsupported script language: {language}. "
            f"Supported: {', '.join(SUPPORTED_LANGUAGES)}"
        )
    if not source or not source.strip():
        return Verdict.reject("script must not be empty")
    size = len(source.encode("utf-8"))
    if size > max_bytes:
        return Verdict.reject(f"script is too large ({size} > {max_bytes} bytes)")
    for pattern, label in _DANGEROUS_SCRIPT_PATTERNS:
        if pattern.search(source):
            return Verdict.reject(f"script contains a dangerous construct: {label}")
    return Verdict.ok()
