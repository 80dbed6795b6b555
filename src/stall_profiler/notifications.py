"""User-facing prompts for severe stalls."""

import asyncio
import subprocess
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from stall_profiler.config import AlertsConfig

log = structlog.get_logger()

DISMISS_LABEL = "Dismiss"


@dataclass
class PromptAction:
    """A button offered by a prompt. ``run`` is called when the user picks it."""

    label: str
    run: Callable[[], None]


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_dialog_script(
    title: str, message: str, labels: list[str], timeout: int, sound: bool = True
) -> str:
    """Build the AppleScript for a dialog offering the given buttons."""
    buttons = ", ".join(_quote(label) for label in [*labels, DISMISS_LABEL])
    lines = [
        f"display dialog {_quote(message)} with title {_quote(title)} "
        f"buttons {{{buttons}}} default button {_quote(DISMISS_LABEL)} "
        f"giving up after {timeout}",
    ]
    if sound:
        lines.insert(0, "beep")
    return "\n".join(lines)


def parse_dialog_choice(output: str) -> str | None:
    """Extract the chosen button from osascript output.

    Output looks like ``button returned:Show, gave up:false``. Returns None
    when the dialog timed out or nothing was chosen.
    """
    choice = None
    for part in output.strip().split(", "):
        key, _, value = part.partition(":")
        if key == "button returned":
            choice = value or None
        elif key == "gave up" and value == "true":
            return None
    return choice


class Notifier:
    """Shows prompts based on alert configuration."""

    def __init__(self, config: AlertsConfig, title: str = "Stall Profiler"):
        self.config = config
        self.title = title

    async def _show_dialog(self, message: str, labels: list[str]) -> str | None:
        script = build_dialog_script(
            self.title, message, labels, self.config.prompt_timeout, self.config.sound
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                "osascript",
                "-e",
                script,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
            # Dialog gives up after prompt_timeout; allow a little slack on top
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self.config.prompt_timeout + 5
            )
        except (asyncio.TimeoutError, FileNotFoundError, OSError) as e:
            log.warning("prompt_failed", error=str(e))
            return None
        return parse_dialog_choice(stdout.decode("utf-8", errors="replace"))

    async def prompt(self, message: str, actions: list[PromptAction]) -> str | None:
        """Show a prompt and run the action the user picks.

        Returns the label of the action that ran, or None.
        """
        if not self.config.enabled:
            return None

        choice = await self._show_dialog(message, [a.label for a in actions])
        log.debug("prompt_answered", choice=choice)
        for action in actions:
            if action.label == choice:
                action.run()
                return action.label
        return None
