"""Login audit module.

Reports, per (VM, username) entry, whether the account exists, when it last
logged in, and the most recent commands in its shell history. The remote
diagnostic is read-only.

Wire format
-----------
The remote script prints a single record line:

    USER_NOT_FOUND|||
    FOUND|<lastlog line>|<last line>|<commands>

`<commands>` is either ``NO_HISTORY`` or the last N history lines joined by
the reserved separator ``§``. Backslash, ``|``, ``§`` and carriage return
inside any field are backslash-escaped remotely (CR travels as a backslash
followed by ``r``). The record is terminated by LF only and other control
characters pass through untouched, so `parse_audit_record` can
restore the original text exactly.

Login classification happens locally in `classify_login`:

- lastlog says "Never logged in"            -> NEVER
- no session record (empty / "wtmp begins") -> lastlog timestamp, else NEVER
- session record "still logged in"          -> ACTIVE since <start>
- any other session record                  -> LOGGED_IN at <time>
"""

import logging
import shlex
from dataclasses import dataclass, field
from enum import Enum

from rich.console import Console
from rich.text import Text

from azfleet.remote_exec import RemoteExecError, RemoteExecutor, SSHConfig
from azfleet.settings import Settings
from azfleet.user_config import UserEntry, UserSpec
from azfleet.vm_inventory import VMInventory, VmIpIndex

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|"
COMMAND_SEPARATOR = "§"
ESCAPE = "\\"
NO_HISTORY = "NO_HISTORY"
ESCAPED_CONTROL_CHARS = {"r": "\r"}


class LoginStatus(Enum):
    """Per-entry audit outcome."""

    ACTIVE = "ACTIVE"
    LOGGED_IN = "LOGGED_IN"
    NEVER = "NEVER"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    ERROR = "ERROR"

    @property
    def label(self) -> str:
        return {
            LoginStatus.LOGGED_IN: "LOGGED IN",
            LoginStatus.USER_NOT_FOUND: "NOT FOUND",
        }.get(self, self.value)


class AuditParseError(Exception):
    """Raised when remote audit output does not match the record format."""

    pass


AUDIT_SCRIPT_TEMPLATE = """\
export LC_ALL=C
USERNAME={username}
HISTORY_LINES={history_lines}

esc() {{
    sed -e 's/\\\\/\\\\\\\\/g' -e 's/|/\\\\|/g' -e 's/§/\\\\§/g' -e 's/\\r/\\\\r/g'
}}

if ! id "$USERNAME" >/dev/null 2>&1; then
    echo "USER_NOT_FOUND|||"
    exit 0
fi

lastlog_line=$(lastlog -u "$USERNAME" 2>/dev/null | tail -n 1)
case "$lastlog_line" in
    Username*) lastlog_line="" ;;
esac
last_line=$(last -n 1 "$USERNAME" 2>/dev/null | head -n 1)

user_home=$(getent passwd "$USERNAME" | cut -d: -f6)
history_file="$user_home/.bash_history"

commands=""
if [ -n "$user_home" ] && sudo test -f "$history_file" 2>/dev/null; then
    while IFS= read -r line || [ -n "$line" ]; do
        [ -z "$line" ] && continue
        line=$(printf '%s\\n' "$line" | esc)
        if [ -n "$commands" ]; then
            commands="$commands§$line"
        else
            commands="$line"
        fi
    done < <(sudo tail -n "$HISTORY_LINES" "$history_file" 2>/dev/null)
else
    commands="NO_HISTORY"
fi

printf 'FOUND|%s|%s|%s\\n' \\
    "$(printf '%s\\n' "$lastlog_line" | esc)" \\
    "$(printf '%s\\n' "$last_line" | esc)" \\
    "$commands"
"""


def build_audit_script(username: str, history_lines: int = 10) -> str:
    """Render the read-only remote diagnostic for one user."""
    return AUDIT_SCRIPT_TEMPLATE.format(
        username=shlex.quote(username), history_lines=int(history_lines)
    )


def escape_field(text: str) -> str:
    """Escape text the same way the remote `esc` helper does."""
    return (
        text.replace(ESCAPE, ESCAPE * 2)
        .replace(FIELD_SEPARATOR, ESCAPE + FIELD_SEPARATOR)
        .replace(COMMAND_SEPARATOR, ESCAPE + COMMAND_SEPARATOR)
        .replace("\r", ESCAPE + "r")
    )


def split_escaped(text: str, separator: str) -> list[str]:
    """Split on unescaped separators, leaving escapes in the pieces intact."""
    pieces: list[str] = []
    current: list[str] = []
    chars = iter(text)

    for char in chars:
        if char == ESCAPE:
            current.append(char)
            current.append(next(chars, ""))
        elif char == separator:
            pieces.append("".join(current))
            current = []
        else:
            current.append(char)

    pieces.append("".join(current))
    return pieces


def unescape_field(text: str) -> str:
    """Drop one level of backslash escaping; an escaped ``r`` is a CR."""
    result: list[str] = []
    chars = iter(text)
    for char in chars:
        if char == ESCAPE:
            escaped = next(chars, "")
            result.append(ESCAPED_CONTROL_CHARS.get(escaped, escaped))
        else:
            result.append(char)
    return "".join(result)


@dataclass
class AuditRecord:
    """Decoded remote audit record."""

    user_found: bool
    lastlog_line: str = ""
    last_line: str = ""
    commands: list[str] = field(default_factory=list)
    history_available: bool = False


def parse_audit_record(output: str) -> AuditRecord:
    """Decode the record line printed by the audit script.

    Raises:
        AuditParseError: If no record line is present
    """
    lines = [line for line in output.split("\n") if line.strip()]
    record_line = next(
        (
            line
            for line in reversed(lines)
            if line.startswith("FOUND|") or line.startswith("USER_NOT_FOUND|")
        ),
        None,
    )
    if record_line is None:
        raise AuditParseError(f"Unrecognized audit output: {output.strip()!r}")

    fields = split_escaped(record_line, FIELD_SEPARATOR)
    if fields[0] == "USER_NOT_FOUND":
        return AuditRecord(user_found=False)

    if len(fields) != 4:
        raise AuditParseError(f"Malformed audit record: {record_line!r}")

    _, lastlog_raw, last_raw, commands_raw = fields
    if commands_raw == NO_HISTORY:
        commands: list[str] = []
        history_available = False
    else:
        commands = [
            unescape_field(piece)
            for piece in split_escaped(commands_raw, COMMAND_SEPARATOR)
            if piece
        ]
        history_available = True

    return AuditRecord(
        user_found=True,
        lastlog_line=unescape_field(lastlog_raw).strip(),
        last_line=unescape_field(last_raw).strip(),
        commands=commands,
        history_available=history_available,
    )


def classify_login(lastlog_line: str, last_line: str) -> tuple[LoginStatus, str]:
    """Classify login state from the last-login record and the latest session record.

    Args:
        lastlog_line: `lastlog -u <user>` data line ("" if unavailable)
        last_line: First line of `last -n 1 <user>` ("" if unavailable)

    Returns:
        (status, message)
    """
    if "Never logged in" in lastlog_line:
        return LoginStatus.NEVER, "Never logged in"

    if not last_line or "wtmp begins" in last_line:
        # No session record; fall back to lastlog: Username Port From Latest...
        latest = " ".join(lastlog_line.split()[3:])
        if latest and "Never" not in latest:
            return LoginStatus.LOGGED_IN, latest
        return LoginStatus.NEVER, "Never logged in"

    # last: user tty from Dow Mon DD HH:MM ...
    login_time = " ".join(last_line.split()[3:7])
    if "still logged in" in last_line:
        return LoginStatus.ACTIVE, f"Currently logged in (since {login_time})"
    return LoginStatus.LOGGED_IN, f"Last login: {login_time}"


@dataclass
class LoginCheck:
    """Audit result for one (VM, username) entry."""

    vm_name: str
    username: str
    status: LoginStatus
    message: str
    commands: list[str] = field(default_factory=list)
    history_available: bool = False


@dataclass
class AuditSummary:
    """Aggregate counts for one audit pass."""

    total: int
    active: int = 0
    logged_in: int = 0
    never: int = 0
    not_found: int = 0
    errors: int = 0
    skipped: int = 0

    def record(self, status: LoginStatus) -> None:
        if status is LoginStatus.ACTIVE:
            self.active += 1
        elif status is LoginStatus.LOGGED_IN:
            self.logged_in += 1
        elif status is LoginStatus.NEVER:
            self.never += 1
        elif status is LoginStatus.USER_NOT_FOUND:
            self.not_found += 1
        else:
            self.errors += 1

    @property
    def failed(self) -> int:
        return self.not_found + self.errors

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


@dataclass
class AuditReport:
    """Ordered checks plus their summary."""

    checks: list[LoginCheck]
    summary: AuditSummary


class LoginAuditor:
    """Audit login activity for every (VM, username) entry, sequentially."""

    def __init__(
        self,
        inventory: VMInventory,
        executor: RemoteExecutor,
        settings: Settings | None = None,
    ):
        self.inventory = inventory
        self.executor = executor
        self.settings = settings or Settings()

    def audit(self, spec: UserSpec) -> AuditReport:
        """Run one audit pass.

        Raises:
            PreconditionError: If the fleet IP query fails
        """
        logger.info("Fetching VM IP addresses from Azure...")
        ip_index = self.inventory.list_public_ips(spec.resource_group)
        logger.info(f"Found {len(ip_index)} VMs with public IPs")

        summary = AuditSummary(total=len(spec.entries))
        checks: list[LoginCheck] = []

        for entry in spec.entries:
            missing = entry.missing_fields(require_password=False)
            if missing:
                logger.warning(f"Skipping entry {entry.position}: {', '.join(missing)} is missing")
                summary.skipped += 1
                continue

            check = self.check_entry(spec, entry, ip_index)
            summary.record(check.status)
            checks.append(check)

        return AuditReport(checks=checks, summary=summary)

    def check_entry(self, spec: UserSpec, entry: UserEntry, ip_index: VmIpIndex) -> LoginCheck:
        """Audit a single entry; never raises for per-entry problems."""
        vm_ip = ip_index.get(entry.vm_name)
        if not vm_ip:
            return self._error(entry, f"VM '{entry.vm_name}' not found or has no public IP")

        ssh_config = SSHConfig(
            host=vm_ip,
            user=spec.admin_username,
            password=spec.admin_password,
            connect_timeout=self.settings.ssh_connect_timeout,
            strict_host_key_checking=self.settings.strict_host_key_checking,
        )
        script = build_audit_script(entry.username, self.settings.history_lines)

        try:
            result = self.executor.run_script(ssh_config, script)
        except RemoteExecError as e:
            return self._error(entry, f"SSH connection failed: {e}")

        if not result.success:
            return self._error(entry, f"SSH connection failed: {result.get_output().strip()}")

        try:
            record = parse_audit_record(result.stdout)
        except AuditParseError as e:
            return self._error(entry, str(e))

        if not record.user_found:
            return LoginCheck(
                vm_name=entry.vm_name,
                username=entry.username,
                status=LoginStatus.USER_NOT_FOUND,
                message="User does not exist",
            )

        status, message = classify_login(record.lastlog_line, record.last_line)
        return LoginCheck(
            vm_name=entry.vm_name,
            username=entry.username,
            status=status,
            message=message,
            commands=record.commands,
            history_available=record.history_available,
        )

    def _error(self, entry: UserEntry, message: str) -> LoginCheck:
        logger.debug(f"Audit error for {entry.username}@{entry.vm_name}: {message}")
        return LoginCheck(
            vm_name=entry.vm_name,
            username=entry.username,
            status=LoginStatus.ERROR,
            message=message,
        )


STATUS_STYLES = {
    LoginStatus.ACTIVE: "green",
    LoginStatus.LOGGED_IN: "blue",
    LoginStatus.NEVER: "yellow",
    LoginStatus.USER_NOT_FOUND: "red",
    LoginStatus.ERROR: "red",
}


def render_audit(checks: list[LoginCheck], console: Console | None = None) -> None:
    """Print the audit table: one row per entry plus its recent commands."""
    console = console or Console()
    row_format = "{:<12} {:<20} {:<15} {}"

    console.print()
    console.print(Text(row_format.format("VM", "USERNAME", "STATUS", "LAST LOGIN"), style="cyan"))
    console.print(Text(row_format.format("-" * 12, "-" * 20, "-" * 15, "-" * 32), style="cyan"))

    for check in checks:
        row = Text()
        row.append(f"{check.vm_name:<12} ")
        row.append(f"{check.username:<20} ")
        row.append(f"{check.status.label:<15}", style=STATUS_STYLES[check.status])
        row.append(f" {check.message}")
        console.print(row)

        if check.status in (LoginStatus.ERROR, LoginStatus.USER_NOT_FOUND):
            console.print()
            continue

        if check.history_available and check.commands:
            console.print(Text(f"{'':13}Last {len(check.commands)} commands:", style="cyan"))
            for command in check.commands:
                line = Text(f"{'':15}")
                line.append("→", style="blue")
                line.append(f" {command}")
                console.print(line)
        elif not check.history_available:
            console.print(Text(f"{'':13}No command history found", style="yellow"))
        console.print()
