"""Best-effort foregrounding of the vault desktop window."""

import asyncio
import contextlib
import os
import shutil
from typing import Optional

from loguru import logger

from .config import Config

FOCUS_TIMEOUT = 2.0


def focus_commands(title: str, session_type: Optional[str] = None) -> list[list[str]]:
    """
    Window-manager commands to try, in order, for the installed tools.

    X11: the first of wmctrl or xdotool. Wayland: additionally the first of
    swaymsg or hyprctl.
    """
    commands = []
    if shutil.which("wmctrl"):
        commands.append(["wmctrl", "-a", title])
    elif shutil.which("xdotool"):
        commands.append(["xdotool", "search", "--name", title, "windowactivate", "--sync"])

    session_type = session_type if session_type is not None else os.getenv("XDG_SESSION_TYPE", "")
    if session_type == "wayland":
        if shutil.which("swaymsg"):
            commands.append(["swaymsg", f'[title="{title}"] focus'])
        elif shutil.which("hyprctl"):
            commands.append(["hyprctl", "dispatch", "focuswindow", f"title:{title}"])
    return commands


async def focus_vault_app(title: Optional[str] = None) -> None:
    """Try to bring the vault app to the foreground. Never raises."""
    for argv in focus_commands(title or Config.APP_TITLE):
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"Focus command {argv[0]} failed to start: {e}")
            continue
        try:
            await asyncio.wait_for(proc.wait(), timeout=FOCUS_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug(f"Focus command {argv[0]} timed out")
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
