"""Unit tests for login_auditor module."""

import os
import shutil
import subprocess
import sys
from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from azfleet.login_auditor import (
    AuditParseError,
    AuditSummary,
    LoginAuditor,
    LoginCheck,
    LoginStatus,
    build_audit_script,
    classify_login,
    escape_field,
    parse_audit_record,
    render_audit,
    split_escaped,
    unescape_field,
)
from azfleet.remote_exec import RemoteExecError, SSHPasswordExecutor, decode_output
from azfleet.settings import Settings
from azfleet.user_config import UserEntry, UserSpec
from tests.mocks.fleet_fakes import FakeExecutor, FakeInventory, audit_record, failed, ok

IPS = {"lab-001": "20.1.2.3", "lab-002": "20.1.2.4"}

LASTLOG_NEVER = "alice                                      **Never logged in**"
LASTLOG_SEEN = "alice            pts/0    10.0.0.5         Tue Mar  5 14:02:11 +0000 2024"
LAST_ACTIVE = "alice    pts/0        10.0.0.5         Tue Mar  5 14:02   still logged in"
LAST_CLOSED = "alice    pts/0        10.0.0.5         Tue Mar  5 14:02 - 15:10  (01:08)"
LAST_EMPTY = "wtmp begins Mon Mar  4 00:00:01 2024"


def make_spec(*entries) -> UserSpec:
    return UserSpec(
        config_path=Path("vm-users.local.json"),
        deployment_config=Path("vm-config.local.json"),
        resource_group="test-rg",
        admin_username="labadmin",
        admin_password="Adm1n-Pass!",
        entries=[UserEntry.from_raw(i, raw) for i, raw in enumerate(entries)],
    )


class TestClassifyLogin:
    """Tests for login classification."""

    def test_never_logged_in(self):
        assert classify_login(LASTLOG_NEVER, LAST_EMPTY) == (LoginStatus.NEVER, "Never logged in")

    def test_never_wins_over_session_record(self):
        status, _ = classify_login(LASTLOG_NEVER, LAST_CLOSED)
        assert status is LoginStatus.NEVER

    def test_active_session(self):
        status, message = classify_login(LASTLOG_SEEN, LAST_ACTIVE)
        assert status is LoginStatus.ACTIVE
        assert message == "Currently logged in (since Tue Mar 5 14:02)"

    def test_past_session(self):
        status, message = classify_login(LASTLOG_SEEN, LAST_CLOSED)
        assert status is LoginStatus.LOGGED_IN
        assert message == "Last login: Tue Mar 5 14:02"

    def test_falls_back_to_lastlog(self):
        status, message = classify_login(LASTLOG_SEEN, LAST_EMPTY)
        assert status is LoginStatus.LOGGED_IN
        assert message == "Tue Mar 5 14:02:11 +0000 2024"

    def test_no_records_at_all(self):
        assert classify_login("", "") == (LoginStatus.NEVER, "Never logged in")


class TestEscaping:
    """Tests for the record field escaping."""

    @pytest.mark.parametrize(
        "text",
        [
            "ls -la | grep foo",
            "echo a§b",
            "printf 'x\\y'",
            "trailing backslash \\",
            "|§\\|§",
            "cr\rinside",
            "form\x0cfeed",
        ],
    )
    def test_escaped_text_survives_splitting(self, text):
        joined = "§".join([escape_field(text), escape_field("next")])
        pieces = split_escaped(joined, "§")

        assert [unescape_field(piece) for piece in pieces] == [text, "next"]

    def test_split_keeps_escaped_separator(self):
        assert split_escaped("a\\|b|c", "|") == ["a\\|b", "c"]

    def test_carriage_return_travels_escaped(self):
        assert escape_field("a\rb") == "a\\rb"
        assert unescape_field("a\\rb") == "a\rb"
        assert unescape_field("a\\\\rb") == "a\\rb"


class TestParseAuditRecord:
    """Tests for decoding remote audit output."""

    def test_user_not_found(self):
        record = parse_audit_record("USER_NOT_FOUND|||\n")
        assert record.user_found is False
        assert record.commands == []

    def test_found_with_commands(self):
        output = audit_record(LASTLOG_SEEN, LAST_CLOSED, ["ls -la | grep foo", "cd /tmp", "echo §"])
        record = parse_audit_record(output)

        assert record.user_found is True
        assert record.lastlog_line == LASTLOG_SEEN
        assert record.last_line == LAST_CLOSED
        assert record.commands == ["ls -la | grep foo", "cd /tmp", "echo §"]
        assert record.history_available is True

    def test_no_history(self):
        record = parse_audit_record(audit_record(LASTLOG_NEVER, LAST_EMPTY))
        assert record.history_available is False
        assert record.commands == []

    def test_empty_history_file(self):
        record = parse_audit_record("FOUND|||\n")
        assert record.history_available is True
        assert record.commands == []

    def test_banner_noise_ignored(self):
        output = "Welcome to Ubuntu 22.04\n" + audit_record(LASTLOG_NEVER, "", ["whoami"])
        assert parse_audit_record(output).commands == ["whoami"]

    @pytest.mark.parametrize("control", ["\x0c", "\x0b", "\x1c", "\x1d", "\x1e", "\x85", "\u2028"])
    def test_control_characters_stay_in_command(self, control):
        record = parse_audit_record(f"FOUND|||ls{control}foo§pwd\n")
        assert record.commands == [f"ls{control}foo", "pwd"]

    def test_escaped_carriage_return_in_command(self):
        record = parse_audit_record(audit_record(LASTLOG_NEVER, "", ["printf 'a\rb'", "pwd"]))
        assert record.commands == ["printf 'a\rb'", "pwd"]

    def test_unrecognized_output(self):
        with pytest.raises(AuditParseError, match="Unrecognized audit output"):
            parse_audit_record("bash: lastlog: command not found\n")

    def test_wrong_field_count(self):
        with pytest.raises(AuditParseError, match="Malformed audit record"):
            parse_audit_record("FOUND|only|three\n")


class TestBuildAuditScript:
    def test_script_is_read_only(self):
        script = build_audit_script("alice", 5)

        assert "USERNAME=alice" in script
        assert "HISTORY_LINES=5" in script
        for mutating in ("useradd", "usermod", "chpasswd", "rm ", "> "):
            assert mutating not in script

    def test_username_quoted(self):
        assert "USERNAME='bad user'" in build_audit_script("bad user")


class TestAuditSummary:
    def test_not_found_and_errors_fail(self):
        summary = AuditSummary(total=3)
        summary.record(LoginStatus.NEVER)
        summary.record(LoginStatus.ACTIVE)
        assert summary.exit_code == 0

        summary.record(LoginStatus.USER_NOT_FOUND)
        assert summary.failed == 1
        assert summary.exit_code == 1


class TestLoginAuditor:
    """Tests for LoginAuditor."""

    def test_statuses_per_entry(self):
        executor = FakeExecutor(
            responses={
                "20.1.2.3": ok(audit_record(LASTLOG_SEEN, LAST_ACTIVE, ["ls", "top"])),
                "20.1.2.4": ok("USER_NOT_FOUND|||\n"),
            }
        )
        spec = make_spec({"vm_name": "lab-001", "username": "alice"}, {"vm_name": "lab-002", "username": "bob"})

        report = LoginAuditor(FakeInventory(ips=IPS), executor).audit(spec)

        alice, bob = report.checks
        assert alice.status is LoginStatus.ACTIVE
        assert alice.commands == ["ls", "top"]
        assert bob.status is LoginStatus.USER_NOT_FOUND
        assert bob.message == "User does not exist"
        assert bob.commands == []
        assert report.summary.active == 1
        assert report.summary.not_found == 1
        assert report.summary.exit_code == 1

    def test_password_not_required(self):
        executor = FakeExecutor(responses={"20.1.2.3": ok(audit_record(LASTLOG_NEVER, LAST_EMPTY))})
        report = LoginAuditor(FakeInventory(ips=IPS), executor).audit(
            make_spec({"vm_name": "lab-001", "username": "alice"})
        )

        assert report.checks[0].status is LoginStatus.NEVER
        assert report.summary.skipped == 0
        assert report.summary.exit_code == 0

    def test_incomplete_entry_skipped(self):
        executor = FakeExecutor()
        report = LoginAuditor(FakeInventory(ips=IPS), executor).audit(
            make_spec({"vm_name": "", "username": "alice"})
        )

        assert report.checks == []
        assert report.summary.skipped == 1
        assert executor.calls == []

    def test_unknown_vm_is_error(self):
        report = LoginAuditor(FakeInventory(ips=IPS), FakeExecutor()).audit(
            make_spec({"vm_name": "lab-099", "username": "alice"})
        )

        check = report.checks[0]
        assert check.status is LoginStatus.ERROR
        assert check.message == "VM 'lab-099' not found or has no public IP"

    def test_ssh_failures_are_errors(self):
        executor = FakeExecutor(
            responses={
                "20.1.2.3": RemoteExecError("Command timed out after 120s on 20.1.2.3"),
                "20.1.2.4": failed("Permission denied, please try again."),
            }
        )
        spec = make_spec({"vm_name": "lab-001", "username": "alice"}, {"vm_name": "lab-002", "username": "bob"})

        report = LoginAuditor(FakeInventory(ips=IPS), executor).audit(spec)

        assert [c.status for c in report.checks] == [LoginStatus.ERROR, LoginStatus.ERROR]
        assert report.checks[0].message.startswith("SSH connection failed: Command timed out")
        assert "Permission denied" in report.checks[1].message
        assert report.summary.errors == 2

    def test_history_depth_from_settings(self):
        executor = FakeExecutor(responses={"20.1.2.3": ok(audit_record(LASTLOG_NEVER, ""))})
        LoginAuditor(FakeInventory(ips=IPS), executor, Settings(history_lines=25)).audit(
            make_spec({"vm_name": "lab-001", "username": "alice"})
        )

        _, script = executor.calls[0]
        assert "HISTORY_LINES=25" in script

    def test_non_utf8_history_does_not_abort_audit(self, ssh_capture):
        ssh_capture.configure_response("labadmin@20.1.2.3", returncode=0, stdout=b"FOUND|||caf\xe9\n")
        ssh_capture.configure_response("labadmin@20.1.2.4", returncode=0, stdout=b"USER_NOT_FOUND|||\n")
        spec = make_spec({"vm_name": "lab-001", "username": "alice"}, {"vm_name": "lab-002", "username": "bob"})

        report = LoginAuditor(FakeInventory(ips=IPS), SSHPasswordExecutor()).audit(spec)

        alice, bob = report.checks
        assert alice.status is LoginStatus.NEVER
        assert alice.commands == ["caf\ufffd"]
        assert bob.status is LoginStatus.USER_NOT_FOUND
        assert len(ssh_capture.calls) == 2


class TestRenderAudit:
    """Tests for the audit table."""

    def render(self, checks) -> str:
        buffer = StringIO()
        render_audit(checks, Console(file=buffer, width=120, no_color=True))
        return buffer.getvalue()

    def test_rows_and_commands(self):
        output = self.render(
            [
                LoginCheck("lab-001", "alice", LoginStatus.LOGGED_IN, "Last login: Tue Mar 5 14:02",
                           ["ls -la | grep foo"], True),
                LoginCheck("lab-002", "bob", LoginStatus.NEVER, "Never logged in", [], False),
                LoginCheck("lab-003", "carol", LoginStatus.USER_NOT_FOUND, "User does not exist"),
            ]
        )

        assert "USERNAME" in output
        assert "LOGGED IN" in output
        assert "Last 1 commands:" in output
        assert "→ ls -la | grep foo" in output
        assert "No command history found" in output
        assert "NOT FOUND" in output
        assert output.count("No command history found") == 1


BASH = shutil.which("bash")


@pytest.mark.skipif(BASH is None or sys.platform != "linux", reason="requires bash and GNU sed")
class TestAuditScriptUnderBash:
    """Run the generated audit script locally against stand-in system tools."""

    def make_tools(self, tmp_path: Path, home: Path, user_exists: bool = True) -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        tools = {
            "id": "exit 0\n" if user_exists else "exit 1\n",
            "sudo": 'exec "$@"\n',
            "getent": f'echo "alice:x:1000:1000::{home}:/bin/bash"\n',
            "lastlog": (
                'echo "Username         Port     From             Latest"\n'
                f'echo "{LASTLOG_SEEN}"\n'
            ),
            "last": f'echo "{LAST_ACTIVE}"\necho ""\necho "{LAST_EMPTY}"\n',
        }
        for name, body in tools.items():
            tool = bin_dir / name
            tool.write_text("#!/bin/sh\n" + body)
            tool.chmod(0o755)
        return bin_dir

    def run_audit(self, tmp_path: Path, history: bytes | None, history_lines: int = 10, user_exists: bool = True):
        home = tmp_path / "home"
        home.mkdir()
        if history is not None:
            (home / ".bash_history").write_bytes(history)
        bin_dir = self.make_tools(tmp_path, home, user_exists)

        result = subprocess.run(
            [BASH, "-s"],
            input=build_audit_script("alice", history_lines).encode("utf-8"),
            capture_output=True,
            env={**os.environ, "PATH": f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}"},
            timeout=30,
            check=False,
        )

        assert result.returncode == 0, decode_output(result.stderr)
        return parse_audit_record(decode_output(result.stdout))

    def test_history_with_separators_and_control_characters(self, tmp_path):
        commands = [
            "ls -la | grep foo",
            "echo a§b",
            "printf 'x\\y'",
            "trailing backslash \\",
            "|§\\|§",
            "printf 'a\rb'",
            "form\x0cfeed",
            "tab\there",
        ]

        record = self.run_audit(tmp_path, "\n".join(commands).encode("utf-8") + b"\n")

        assert record.user_found is True
        assert record.history_available is True
        assert record.commands == commands
        assert record.lastlog_line == LASTLOG_SEEN
        assert record.last_line == LAST_ACTIVE
        assert classify_login(record.lastlog_line, record.last_line)[0] is LoginStatus.ACTIVE

    def test_non_utf8_line_and_missing_final_newline(self, tmp_path):
        record = self.run_audit(tmp_path, b"caf\xe9\n\nwhoami")
        assert record.commands == ["caf\ufffd", "whoami"]

    def test_history_depth_limits_commands(self, tmp_path):
        history = "".join(f"cmd{i}\n" for i in range(1, 16)).encode("utf-8")
        record = self.run_audit(tmp_path, history, history_lines=3)
        assert record.commands == ["cmd13", "cmd14", "cmd15"]

    def test_missing_history_file(self, tmp_path):
        record = self.run_audit(tmp_path, None)
        assert record.user_found is True
        assert record.history_available is False
        assert record.commands == []

    def test_unknown_user(self, tmp_path):
        record = self.run_audit(tmp_path, None, user_exists=False)
        assert record.user_found is False
