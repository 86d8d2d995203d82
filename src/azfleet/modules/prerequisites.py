"""
Prerequisites Checker Module

Verifies required external tools are installed before any fleet operation.

Security Requirements:
- Read-only system checks
- No shell=True in subprocess calls
"""

import logging
import platform
import shutil
from dataclasses import dataclass
from typing import ClassVar

logger = logging.getLogger(__name__)


class PreconditionError(Exception):
    """Raised when the environment cannot run a fleet operation.

    Covers missing external tools, an unauthenticated Azure CLI session
    and a referenced resource group that does not exist.
    """

    pass


@dataclass
class PrerequisiteResult:
    """Result of prerequisite checks."""

    all_available: bool
    missing: list[str]
    available: list[str]
    platform_name: str


class PrerequisiteChecker:
    """
    Check required external tools are installed.

    Tools per operation:
    - deploy: az
    - users / logins: az, ssh, sshpass
    """

    DEPLOY_TOOLS: ClassVar[list[str]] = ["az"]
    REMOTE_TOOLS: ClassVar[list[str]] = ["az", "ssh", "sshpass"]

    INSTALL_HINTS: ClassVar[dict[str, dict[str, str]]] = {
        "macos": {
            "az": "brew install azure-cli",
            "ssh": "brew install openssh",
            "sshpass": "brew install hudochenkov/sshpass/sshpass",
        },
        "linux": {
            "az": "curl -sL https://aka.ms/InstallAzureCLIDeb | sudo bash",
            "ssh": "sudo apt-get install openssh-client",
            "sshpass": "sudo apt-get install sshpass",
        },
    }

    GENERIC_HINTS: ClassVar[dict[str, str]] = {
        "az": "https://docs.microsoft.com/cli/azure/install-azure-cli",
        "ssh": "https://www.openssh.com/",
        "sshpass": "https://sourceforge.net/projects/sshpass/",
    }

    @classmethod
    def check_tool(cls, tool_name: str) -> bool:
        """
        Check if a single tool is available in PATH.

        Security: Uses shutil.which (safe, no subprocess)
        """
        result = shutil.which(tool_name)
        if result:
            logger.debug(f"Found {tool_name} at {result}")
            return True
        logger.debug(f"Tool not found: {tool_name}")
        return False

    @classmethod
    def check_all(cls, tools: list[str]) -> PrerequisiteResult:
        """
        Check a list of tools and return a comprehensive result.

        Args:
            tools: Tool names to look up on PATH

        Returns:
            PrerequisiteResult: Detailed check results
        """
        missing: list[str] = []
        available: list[str] = []

        for tool in tools:
            if cls.check_tool(tool):
                available.append(tool)
            else:
                missing.append(tool)

        return PrerequisiteResult(
            all_available=not missing,
            missing=missing,
            available=available,
            platform_name=cls.detect_platform(),
        )

    @classmethod
    def require(cls, tools: list[str]) -> None:
        """Ensure every tool is installed.

        Raises:
            PreconditionError: With install instructions for the missing tools
        """
        result = cls.check_all(tools)
        if not result.all_available:
            raise PreconditionError(cls.format_missing_message(result.missing, result.platform_name))
        logger.debug(f"All prerequisites available ({result.platform_name})")

    @classmethod
    def detect_platform(cls) -> str:
        """
        Detect the operating system platform.

        Returns:
            str: Platform name (macos, linux, windows, unknown)
        """
        system = platform.system().lower()

        if system == "darwin":
            return "macos"
        if system in ("linux", "windows"):
            return system
        return "unknown"

    @classmethod
    def format_missing_message(cls, missing: list[str], platform_name: str) -> str:
        """
        Format user-friendly installation instructions for missing tools.

        Example:
            >>> print(PrerequisiteChecker.format_missing_message(["sshpass"], "linux"))
            Missing required tools: sshpass
            <BLANKLINE>
            Install sshpass:
              sudo apt-get install sshpass
        """
        if not missing:
            return "All prerequisites are installed."

        hints = cls.INSTALL_HINTS.get(platform_name, {})
        lines: list[str] = [f"Missing required tools: {', '.join(missing)}"]

        for tool in missing:
            lines.append("")
            lines.append(f"Install {tool}:")
            lines.append(f"  {hints.get(tool) or cls.GENERIC_HINTS.get(tool, 'see vendor docs')}")

        return "\n".join(lines)
