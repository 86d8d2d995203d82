"""Azure CLI command sanitization for safe logging.

Every `az` command azfleet runs is logged at debug level before execution.
Several of them carry credentials (`az vm create --admin-password ...`), so
the logged form must never contain the secret values.

Security Controls:
- Parameter-based redaction for argument lists (--admin-password, --password, ...)
- Parameter-based redaction for flat command strings (both `--p v` and `--p=v`)
- Terminal escape removal before display

Usage:
    >>> from azfleet.security import AzureCommandSanitizer
    >>> AzureCommandSanitizer.sanitize_args(["az", "vm", "create", "--admin-password", "S3cret!"])
    'az vm create --admin-password [REDACTED]'
"""

import re
import shlex
from re import Pattern
from typing import ClassVar


class AzureCommandSanitizer:
    """Redact credential values from Azure CLI commands.

    Examples:
        >>> AzureCommandSanitizer.sanitize("az vm create --admin-password MyPass")
        'az vm create --admin-password [REDACTED]'
    """

    REDACTED = "[REDACTED]"

    # Matched case-insensitively (lowercase only in set)
    SENSITIVE_PARAMS: ClassVar[set[str]] = {
        "--password",
        "--admin-password",
        "--client-secret",
        "--secret",
        "--ssh-key-value",
        "--ssh-key-values",
        "--account-key",
        "--connection-string",
        "--sas-token",
        "--token",
        "--custom-data",
        "--user-data",
    }

    SENSITIVE_KEYWORDS: ClassVar[tuple[str, ...]] = (
        "password",
        "secret",
        "token",
        "credential",
    )

    # --param value | --param=value | --param "quoted value"
    PARAM_VALUE_PATTERN: ClassVar[Pattern] = re.compile(
        r"""(--[\w-]+)(\s+|=)("[^"]*"|'[^']*'|[^\s"'-][^\s]*)""",
        re.IGNORECASE,
    )

    ANSI_ESCAPE_PATTERN: ClassVar[Pattern] = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

    @classmethod
    def is_sensitive_param(cls, param: str) -> bool:
        """Check whether a `--flag` carries a secret value."""
        param_lower = param.lower()
        if param_lower in cls.SENSITIVE_PARAMS:
            return True
        return any(keyword in param_lower for keyword in cls.SENSITIVE_KEYWORDS)

    @classmethod
    def sanitize_args(cls, args: list[str]) -> str:
        """Render an argument list as a shell-quoted string with secrets redacted.

        Args:
            args: Command as passed to subprocess.run

        Returns:
            Display-safe command line
        """
        rendered: list[str] = []
        redact_next = False

        for arg in args:
            if redact_next:
                rendered.append(cls.REDACTED)
                redact_next = False
                continue

            if arg.startswith("--") and "=" in arg:
                param, _, _ = arg.partition("=")
                if cls.is_sensitive_param(param):
                    rendered.append(f"{param}={cls.REDACTED}")
                    continue

            if arg.startswith("--") and cls.is_sensitive_param(arg):
                redact_next = True

            rendered.append(shlex.quote(arg))

        return cls._strip_terminal_escapes(" ".join(rendered))

    @classmethod
    def sanitize(cls, command: str) -> str:
        """Sanitize a flat command string.

        Args:
            command: Azure CLI command string

        Returns:
            Command with sensitive parameter values replaced by [REDACTED]
        """

        def replace(match: re.Match) -> str:
            param, separator, value = match.group(1), match.group(2), match.group(3)
            if not cls.is_sensitive_param(param):
                return match.group(0)
            if value[:1] in {'"', "'"}:
                quote = value[0]
                return f"{param}{separator}{quote}{cls.REDACTED}{quote}"
            return f"{param}{separator}{cls.REDACTED}"

        return cls._strip_terminal_escapes(cls.PARAM_VALUE_PATTERN.sub(replace, str(command)))

    @classmethod
    def _strip_terminal_escapes(cls, text: str) -> str:
        text = cls.ANSI_ESCAPE_PATTERN.sub("", text)
        return "".join(char for char in text if char in "\n\t" or ord(char) >= 32)


def sanitize_azure_command(command: str | list[str]) -> str:
    """Convenience function to sanitize an Azure CLI command.

    Accepts either the argument list handed to subprocess or a flat string.
    """
    if isinstance(command, list):
        return AzureCommandSanitizer.sanitize_args(command)
    return AzureCommandSanitizer.sanitize(command)
