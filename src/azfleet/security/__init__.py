"""Security module for azfleet.

- AzureCommandSanitizer: Redact credentials from Azure CLI commands before logging

Example:
    >>> from azfleet.security import sanitize_azure_command
    >>> sanitize_azure_command("az vm create --admin-password Secret")
    'az vm create --admin-password [REDACTED]'
"""

from azfleet.security.azure_command_sanitizer import (
    AzureCommandSanitizer,
    sanitize_azure_command,
)

__all__ = [
    "AzureCommandSanitizer",
    "sanitize_azure_command",
]
