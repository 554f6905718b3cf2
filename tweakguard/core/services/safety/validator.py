"""
Script safety validator — decides whether a script may run at all.

Every execution request passes through ``ScriptSafetyValidator.validate``
before anything touches a host. Checks run in a fixed order and stop at
the first block:

    1. operation allowlist      operation id must carry a known prefix
    2. catalog allowlist        catalog-backed scripts must match a shipped hash
    3. encoded commands         -EncodedCommand and its abbreviations
    4. unsafe language features Add-Type, Invoke-Command, Start-Job, ...
    5. alternate data streams   C:\\path\\file:stream
    6. syntax tree              every command target must be a literal
    7. process launch targets   Start-Process/saps/start need an allowlisted literal
    8. download safety          download URLs must be literal, trusted hosts
    9. external scripts         referenced .ps1 files must be validly signed

A block never raises: it comes back as a ``SafetyVerdict`` carrying the
reason, and the runner turns that into a failed result. With
``enforce_script_safety_guards`` off, every script is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import ntpath
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator
from urllib.parse import urlsplit

from tweakguard.core.models.state import AppSettings
from tweakguard.core.services.safety.powershell_ast import (
    Assignment,
    Ast,
    CommandAst,
    CommandParameter,
    ExpandableString,
    InvokeMember,
    PowerShellParseError,
    StringConstant,
    Variable,
    parse_script,
)
from tweakguard.core.services.subprocess_runner import CommandRunner, run_command

logger = logging.getLogger(__name__)

SettingsAccessor = Callable[[], AppSettings]
SignatureVerifier = Callable[[str], "str | None"]


# ═══════════════════════════════════════════════════════════════════
#  Policy tables
# ═══════════════════════════════════════════════════════════════════

ALLOWED_OPERATION_PREFIXES = (
    "tweak.", "fix.", "feature.", "updates.", "store.", "apps.",
    "services.", "panel.", "safety.", "system.", "home.",
)

CATALOG_BACKED_PREFIXES = ("tweak.", "fix.", "panel.")

# Catalog entries whose bodies are generated per machine
CATALOG_EXEMPT_PREFIXES = ("tweak.dns.",)
CATALOG_EXEMPT_IDS = frozenset({"tweak.run-oo-shutup10"})

TRUSTED_DOWNLOAD_HOSTS = (
    "community.chocolatey.org",
    "github.com",
    "raw.githubusercontent.com",
    "www.oo-software.com",
    "dl5.oo-software.com",
    "aka.ms",
)

ALLOWED_START_PROCESS_TARGETS = frozenset({
    "explorer.exe", "wsreset.exe", "winsat.exe", "dfrgui.exe", "cleanmgr.exe",
    "mdsched.exe", "appwiz.cpl", "ncpa.cpl", "services.msc", "devmgmt.msc",
    "diskmgmt.msc", "gpedit.msc", "sysdm.cpl", "wf.msc", "onedrivesetup.exe",
})

DYNAMIC_INVOKE_ALIASES = frozenset({"invoke-expression", "iex"})

START_PROCESS_COMMAND_NAMES = frozenset({"start-process", "saps", "start"})
START_PROCESS_SWITCHES = ("nonewwindow", "passthru", "wait", "usenewenvironment", "loaduserprofile")
START_PROCESS_SWITCH_ALIASES = frozenset({"nnw", "lup"})
START_PROCESS_VALUE_PARAMETERS = (
    "filepath", "argumentlist", "credential", "workingdirectory", "verb", "windowstyle",
    "redirectstandarderror", "redirectstandardinput", "redirectstandardoutput", "environment",
)

DOWNLOAD_COMMAND_NAMES = frozenset({
    "invoke-webrequest", "iwr", "invoke-restmethod", "irm", "curl", "wget", "start-bitstransfer",
})
DOWNLOAD_MEMBER_NAMES = frozenset({"downloadstring", "downloadfile", "openread"})
DOWNLOAD_URI_PARAMETERS = frozenset({"uri", "source", "url"})

# ── Patterns ───────────────────────────────────────────────────────

DOWNLOAD_TRIGGER_RE = re.compile(
    r"\b(?:" + "|".join(sorted(DOWNLOAD_COMMAND_NAMES | DOWNLOAD_MEMBER_NAMES)) + r")\b",
    re.IGNORECASE,
)
# Every abbreviation powershell.exe accepts: -ec, -en, -enc, ... -encodedcommand
ENCODED_COMMAND_RE = re.compile(
    r"\B-(?:ec|en(?:c(?:o(?:d(?:e(?:d(?:c(?:o(?:m(?:m(?:a(?:n(?:d)?)?)?)?)?)?)?)?)?)?)?)?)\b",
    re.IGNORECASE,
)
# Bare -e is only an encoded-command switch on a PowerShell command line
SHORT_ENCODED_COMMAND_RE = re.compile(
    r"\b(?:powershell|pwsh)(?:\.exe)?\b[^\r\n;|]*?\s-e\b",
    re.IGNORECASE,
)
UNSAFE_LANGUAGE_FEATURE_RE = re.compile(
    r"\b(?:Add-Type|Invoke-Command|Start-Job|Register-ScheduledJob)\b"
    r"|FromBase64String\s*\("
    r"|System\.Reflection\.Assembly\s*::\s*Load",
    re.IGNORECASE,
)
ALTERNATE_DATA_STREAM_RE = re.compile(r"[A-Za-z]:\\[^|;\r\n]*:[^\\/\r\n]+")
SCRIPT_FILE_PATH_RE = re.compile(
    r"""(?:-File(?:Path)?|&)\s+(?:['"](?P<q>[A-Za-z]:\\[^'"]+\.ps1)['"]|(?P<b>[A-Za-z]:\\\S+\.ps1))""",
    re.IGNORECASE,
)


# ═══════════════════════════════════════════════════════════════════
#  Verdict
# ═══════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SafetyVerdict:
    """Allow/deny decision with the reason for a deny."""

    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> SafetyVerdict:
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: str) -> SafetyVerdict:
        return cls(allowed=False, reason=reason)

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason}


def compute_script_hash(script: str) -> str:
    """Uppercase hex SHA-256 of the UTF-8 script body."""
    return hashlib.sha256((script or "").encode("utf-8")).hexdigest().upper()


# ═══════════════════════════════════════════════════════════════════
#  Validator
# ═══════════════════════════════════════════════════════════════════


class ScriptSafetyValidator:
    """Ordered allow/deny checks over a script and its operation id.

    Args:
        settings_accessor: Returns the live settings snapshot; read on
            every call so toggling enforcement takes effect immediately.
        trusted_hashes: Catalog script hashes (see ``allowlist``).
        signature_verifier: ``path -> None`` when the file is validly
            signed, otherwise the block reason. Defaults to an
            Authenticode check through PowerShell.
    """

    def __init__(
        self,
        settings_accessor: SettingsAccessor,
        trusted_hashes: Iterable[str] = (),
        signature_verifier: SignatureVerifier | None = None,
    ):
        self._settings = settings_accessor
        self._trusted_hashes = frozenset(h.upper() for h in trusted_hashes)
        self._verify_signature = signature_verifier or AuthenticodeVerifier()

    @property
    def trusted_hashes(self) -> frozenset[str]:
        return self._trusted_hashes

    def with_trusted_hashes(self, trusted_hashes: Iterable[str]) -> ScriptSafetyValidator:
        """A new validator over a rebuilt allowlist; this one is unchanged."""
        return ScriptSafetyValidator(self._settings, trusted_hashes, self._verify_signature)

    def validate(self, operation_id: str, script: str) -> SafetyVerdict:
        if not self._settings().enforce_script_safety_guards:
            return SafetyVerdict.allow()

        checks = (
            lambda: check_operation_allowlist(operation_id),
            lambda: self.check_catalog_allowlist(operation_id, script),
            lambda: check_script_patterns(script),
            lambda: check_ast_safety(script),
            lambda: check_start_process_targets(script),
            lambda: check_download_safety(script),
            lambda: self.check_external_signatures(script),
        )
        for check in checks:
            reason = check()
            if reason:
                logger.warning("Script blocked for %s: %s", operation_id, reason)
                return SafetyVerdict.block(reason)
        return SafetyVerdict.allow()

    def check_catalog_allowlist(self, operation_id: str, script: str) -> str | None:
        op = operation_id.lower()
        if not op.startswith(CATALOG_BACKED_PREFIXES):
            return None
        if op.startswith(CATALOG_EXEMPT_PREFIXES) or op in CATALOG_EXEMPT_IDS:
            return None

        script_hash = compute_script_hash(script)
        if script_hash in self._trusted_hashes:
            return None
        return (
            f"Blocked script for operation '{operation_id}' because hash {script_hash} "
            "is not in the trusted catalog allowlist."
        )

    def check_external_signatures(self, script: str) -> str | None:
        for path in referenced_script_files(script):
            reason = self._verify_signature(path)
            if reason:
                return reason
        return None


# ═══════════════════════════════════════════════════════════════════
#  Individual checks (None = pass, str = block reason)
# ═══════════════════════════════════════════════════════════════════


def check_operation_allowlist(operation_id: str) -> str | None:
    if operation_id.lower().startswith(ALLOWED_OPERATION_PREFIXES):
        return None
    return f"Blocked operation id '{operation_id}' because it is not in the PowerShell operation allowlist."


def check_script_patterns(script: str) -> str | None:
    if ENCODED_COMMAND_RE.search(script) or SHORT_ENCODED_COMMAND_RE.search(script):
        return "Blocked encoded command invocation pattern (-EncodedCommand/-enc/-e)."
    if UNSAFE_LANGUAGE_FEATURE_RE.search(script):
        return (
            "Blocked unsafe PowerShell language feature pattern "
            "(dynamic runtime assembly/job/remote execution)."
        )
    if ALTERNATE_DATA_STREAM_RE.search(script):
        return "Blocked alternate data stream path usage."
    return None


def check_ast_safety(script: str) -> str | None:
    """Every invoked command name must be a literal, and never an alias of IEX."""
    try:
        tree = parse_script(script)
    except PowerShellParseError as e:
        return f"Blocked script because AST parsing reported errors: {e}"

    invoker_variables: set[str] = set()
    for assignment in tree.find_all(Assignment):
        if not isinstance(assignment.target, Variable):
            continue
        literal = _quoted_literal(assignment.value_text)
        if literal and literal.strip().lower() in DYNAMIC_INVOKE_ALIASES:
            invoker_variables.add(assignment.target.name.lower())

    for command in tree.find_all(CommandAst):
        name = command.command_name
        if name and name.strip():
            if name.lower() in DYNAMIC_INVOKE_ALIASES:
                return f"Blocked dynamic script execution command '{name}'."
            continue

        first = command.elements[0] if command.elements else None
        if isinstance(first, Variable) and first.name.lower() in invoker_variables:
            return f"Blocked dynamic invocation through variable '${first.name}'."
        return "Blocked dynamic invocation that uses a non-literal command target."

    return None


def _quoted_literal(raw: str) -> str | None:
    text = raw.strip()
    if len(text) < 2 or text[0] not in "'\"" or text[-1] != text[0]:
        return None
    return text[1:-1]


def check_start_process_targets(script: str) -> str | None:
    """Every process-start call must name an allowlisted literal target."""
    try:
        tree = parse_script(script)
    except PowerShellParseError as e:
        return f"Blocked script because AST parsing reported errors: {e}"

    for command in tree.find_all(CommandAst):
        name = command.command_name
        if not name or name.lower() not in START_PROCESS_COMMAND_NAMES:
            continue
        target = start_process_target(command)
        literal = _literal_value(target) if target is not None else None
        if not literal or not literal.strip():
            return f"Blocked {name} because the process target is not a literal value."
        file_name = ntpath.basename(literal.strip()) or literal.strip()
        if file_name.lower() not in ALLOWED_START_PROCESS_TARGETS:
            return f"Blocked Start-Process target '{file_name}'."
    return None


def _is_file_path_parameter(name: str) -> bool:
    return name in ("path", "pspath") or "filepath".startswith(name)


def _is_switch_parameter(name: str) -> bool:
    if name in START_PROCESS_SWITCH_ALIASES:
        return True
    return any(s.startswith(name) for s in START_PROCESS_SWITCHES) and not any(
        p.startswith(name) for p in START_PROCESS_VALUE_PARAMETERS
    )


def start_process_target(command: CommandAst) -> Ast | None:
    """The -FilePath argument, else the first positional argument."""
    positional: Ast | None = None
    elements = command.elements
    i = 1
    while i < len(elements):
        element = elements[i]
        if isinstance(element, CommandParameter):
            param = element.name.lower()
            argument = element.argument
            if argument is None and not _is_switch_parameter(param) and i + 1 < len(elements):
                if not isinstance(elements[i + 1], CommandParameter):
                    i += 1
                    argument = elements[i]
            if param and _is_file_path_parameter(param):
                return argument
        elif positional is None:
            positional = element
        i += 1
    return positional


def _literal_value(node: Ast) -> str | None:
    if isinstance(node, StringConstant):
        return node.value
    if isinstance(node, ExpandableString) and not node.nested:
        return node.value
    return None


# ── Download safety ────────────────────────────────────────────────


def _host_reason(host: str) -> str:
    return f"Blocked download host '{host}'. Allowed hosts: {', '.join(TRUSTED_DOWNLOAD_HOSTS)}"


def is_trusted_host(host: str) -> bool:
    return host.lower() in TRUSTED_DOWNLOAD_HOSTS


def literal_http_host(node: Ast) -> str | None:
    """Host of a literal http(s) URL node, or None when not a literal URL."""
    literal = _literal_value(node)
    if literal is None:
        return None

    literal = literal.strip()
    if not literal:
        return None
    try:
        parts = urlsplit(literal)
        host = parts.hostname
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not host:
        return None
    return host


def check_download_safety(script: str) -> str | None:
    """Download calls must name literal URLs on trusted hosts."""
    if not DOWNLOAD_TRIGGER_RE.search(script):
        return None

    try:
        tree = parse_script(script)
    except PowerShellParseError as e:
        return f"Blocked script because download safety parsing reported errors: {e}"

    hosts = [h for h in (literal_http_host(n) for n in tree.find_all(Ast)) if h]
    if not hosts:
        return "Blocked download command because no literal allowlisted URL was found."
    for host in hosts:
        if not is_trusted_host(host):
            return _host_reason(host)

    for command in tree.find_all(CommandAst):
        name = command.command_name
        if not name or name.lower() not in DOWNLOAD_COMMAND_NAMES:
            continue
        reason = _check_download_command(command, name)
        if reason:
            return reason

    for invoke in tree.find_all(InvokeMember):
        reason = _check_download_member(invoke)
        if reason:
            return reason
    return None


def _check_download_command(command: CommandAst, name: str) -> str | None:
    saw_literal = False
    elements = command.elements
    i = 1
    while i < len(elements):
        element = elements[i]
        if isinstance(element, CommandParameter) and element.name.lower() in DOWNLOAD_URI_PARAMETERS:
            argument = element.argument
            if argument is None:
                if i + 1 >= len(elements):
                    return (
                        f"Blocked download command '{name}' because parameter "
                        f"'-{element.name}' has no value."
                    )
                i += 1
                argument = elements[i]
            host = literal_http_host(argument)
            if host is None:
                return (
                    f"Blocked download command '{name}' because parameter "
                    f"'-{element.name}' is not a literal URL."
                )
            if not is_trusted_host(host):
                return _host_reason(host)
            saw_literal = True
        else:
            host = literal_http_host(element)
            if host is not None:
                if not is_trusted_host(host):
                    return _host_reason(host)
                saw_literal = True
        i += 1

    if not saw_literal:
        return f"Blocked download command '{name}' because URL is not a literal allowlisted value."
    return None


def _member_name(invoke: InvokeMember) -> str:
    if invoke.member_name is not None:
        return invoke.member_name
    member = invoke.member
    if isinstance(member, ExpandableString):
        return member.value.strip().strip("'\"")
    if isinstance(member, Variable):
        return f"${member.name}"
    return ""


def _check_download_member(invoke: InvokeMember) -> str | None:
    member = _member_name(invoke)
    if member.lower() not in DOWNLOAD_MEMBER_NAMES:
        return None
    if not invoke.arguments:
        return f"Blocked dynamic download invocation '.{member}(...)' because URL argument is missing."
    host = literal_http_host(invoke.arguments[0])
    if host is None:
        return f"Blocked dynamic download invocation '.{member}(...)' because URL argument is not a literal URL."
    if not is_trusted_host(host):
        return _host_reason(host)
    return None


# ── External scripts ───────────────────────────────────────────────


def referenced_script_files(script: str) -> Iterator[str]:
    """Distinct literal .ps1 paths passed to -File/-FilePath or ``&``."""
    seen: set[str] = set()
    for match in SCRIPT_FILE_PATH_RE.finditer(script):
        path = (match.group("q") or match.group("b") or "").strip()
        if path and path.lower() not in seen:
            seen.add(path.lower())
            yield path


class AuthenticodeVerifier:
    """Checks a script file's Authenticode status through PowerShell."""

    def __init__(self, command_runner: CommandRunner = run_command):
        self._run = command_runner

    def __call__(self, path: str) -> str | None:
        if not Path(path).is_file():
            return f"Blocked external invocation: script file '{path}' does not exist."

        literal = path.replace("'", "''")
        query = f"(Get-AuthenticodeSignature -FilePath '{literal}').Status.ToString()"
        result = self._run(
            ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", query],
        )
        if not result["ok"]:
            detail = result.get("stderr", "").strip() or result.get("error", "")
            logger.debug("Signature check failed for %s: %s", path, detail)
            return f"Blocked external invocation: failed to validate script signature for '{path}'."

        lines = [line.strip() for line in result["stdout"].splitlines() if line.strip()]
        status = lines[-1] if lines else "Unknown"
        if status.lower() != "valid":
            return (
                f"Blocked external invocation: script '{path}' signature status is "
                f"'{status}' (expected Valid)."
            )
        return None
