# bootstrap.py
# One-time host preparation: platform detection, Ollama install, per-tool install.
#
# The executor only ever calls check_and_install_tool(); the CLI calls
# ensure_ollama() once at start-up.

import asyncio
import ctypes
import logging
import os
import platform as _platform
import shutil
import sys
from enum import Enum
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

OLLAMA_INSTALL_SCRIPT_URL = "https://ollama.ai/install.sh"
OLLAMA_WINDOWS_INSTALLER_URL = "https://ollama.com/download/OllamaSetup.exe"


class BootstrapError(Exception):
    """Raised when the host cannot be prepared (tool or Ollama install)."""


class Platform(Enum):
    KALI_LINUX = "Kali Linux"
    WINDOWS = "Windows"
    OTHER_LINUX = "Linux (Other)"
    UNSUPPORTED = "Unsupported OS"

    def __str__(self) -> str:
        return self.value


def detect_platform() -> Platform:
    if sys.platform == "win32":
        return Platform.WINDOWS
    if not sys.platform.startswith("linux"):
        return Platform.UNSUPPORTED
    try:
        release = _platform.freedesktop_os_release()
    except OSError:
        return Platform.OTHER_LINUX
    if release.get("ID", "").lower() == "kali":
        return Platform.KALI_LINUX
    return Platform.OTHER_LINUX


def is_elevated() -> bool:
    if sys.platform == "win32":
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    if hasattr(os, "geteuid"):
        return os.geteuid() == 0
    return False


async def _run(*argv: str) -> int:
    """Run a command with inherited stdio (sudo may prompt) and return its status."""
    try:
        proc = await asyncio.create_subprocess_exec(*argv)
    except OSError as exc:
        raise BootstrapError(f"Could not run {argv[0]}: {exc}") from exc
    return await proc.wait()


class SystemSetup:
    """Host facts plus the install routines that depend on them."""

    def __init__(self, platform: Platform | None = None, is_admin: bool | None = None) -> None:
        self.platform = platform if platform is not None else detect_platform()
        self.is_admin = is_admin if is_admin is not None else is_elevated()

    def _privileged(self, *argv: str) -> tuple[str, ...]:
        return argv if self.is_admin else ("sudo", *argv)

    # ------------------------------------------------------------------
    # Per-tool installation
    # ------------------------------------------------------------------

    async def check_and_install_tool(self, tool: str) -> None:
        if shutil.which(tool):
            return

        logger.info("Tool %r not found on PATH, attempting install", tool)
        if self.platform is Platform.KALI_LINUX:
            await self._apt_install(tool)
        elif self.platform is Platform.WINDOWS:
            await self._winget_install(tool)
        else:
            raise BootstrapError(
                f"{tool} is not installed and automatic installation "
                "is not supported for this platform"
            )

    async def _apt_install(self, package: str) -> None:
        status = await _run(*self._privileged("apt", "install", "-y", package))
        if status != 0:
            raise BootstrapError(f"Failed to install {package}")

    async def _winget_install(self, package: str) -> None:
        if not shutil.which("winget"):
            raise BootstrapError("winget not found - requires Windows 10 1709+")
        status = await _run("winget", "install", "--silent", "--accept-package-agreements", package)
        if status != 0:
            raise BootstrapError(f"Failed to install {package} via winget")

    # ------------------------------------------------------------------
    # Ollama
    # ------------------------------------------------------------------

    async def ollama_installed(self) -> bool:
        if not shutil.which("ollama"):
            return False
        proc = await asyncio.create_subprocess_exec(
            "ollama",
            "--version",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        return await proc.wait() == 0

    async def ensure_ollama(self) -> None:
        if await self.ollama_installed():
            return

        if self.platform in (Platform.KALI_LINUX, Platform.OTHER_LINUX):
            await self._install_ollama_linux()
        elif self.platform is Platform.WINDOWS:
            await self._install_ollama_windows()
        else:
            raise BootstrapError("Unsupported platform for automatic Ollama installation")

    async def _install_ollama_linux(self) -> None:
        try:
            async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
                response = await client.get(OLLAMA_INSTALL_SCRIPT_URL)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise BootstrapError(f"Failed to download Ollama install script: {exc}") from exc

        status = await _run(*self._privileged("sh", "-c", response.text))
        if status != 0:
            raise BootstrapError("Failed to install Ollama")

        status = await _run(*self._privileged("systemctl", "enable", "--now", "ollama"))
        if status != 0:
            raise BootstrapError("Failed to enable Ollama service")

    async def _install_ollama_windows(self) -> None:
        downloads = Path.home() / "Downloads"
        if not downloads.is_dir():
            raise BootstrapError("Failed to find downloads directory")
        installer = downloads / "OllamaSetup.exe"

        try:
            async with httpx.AsyncClient(timeout=300.0, follow_redirects=True) as client:
                response = await client.get(OLLAMA_WINDOWS_INSTALLER_URL)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise BootstrapError(f"Failed to download Ollama installer: {exc}") from exc
        installer.write_bytes(response.content)

        status = await _run("cmd", "/C", "start", "/wait", str(installer))
        if status != 0:
            raise BootstrapError("Failed to install Ollama on Windows")
