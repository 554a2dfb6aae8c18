"""
User interaction for passwords and confirmations.

The executor never reads the terminal itself; it asks a Prompter. The CLI
passes a TerminalPrompter, tests pass a CannedPrompter.
"""

from typing import List, Optional

import click


class PromptError(Exception):
    """Raised when an answer is needed but none can be obtained."""
    pass


class Prompter:
    """Interface for obtaining passwords and confirmations."""

    def password(self, message: str, confirm: bool = False) -> str:
        raise NotImplementedError

    def confirm(self, message: str) -> bool:
        raise NotImplementedError


class TerminalPrompter(Prompter):
    """Prompts on the controlling terminal through click (input hidden)."""

    def password(self, message: str, confirm: bool = False) -> str:
        try:
            return click.prompt(message, hide_input=True, confirmation_prompt=confirm, err=True)
        except click.Abort:
            raise PromptError("Password prompt aborted")

    def confirm(self, message: str) -> bool:
        try:
            return click.confirm(message, default=False, err=True)
        except click.Abort:
            return False


class CannedPrompter(Prompter):
    """
    Answers prompts from preset values and records every question asked.

    Args:
        passwords: Answers for password prompts, used in order
        confirmations: Answers for confirmation prompts, used in order
    """

    def __init__(self, passwords: Optional[List[str]] = None,
                 confirmations: Optional[List[bool]] = None):
        self.passwords = list(passwords or [])
        self.confirmations = list(confirmations or [])
        self.asked: List[str] = []

    def password(self, message: str, confirm: bool = False) -> str:
        self.asked.append(message)
        if not self.passwords:
            raise PromptError(f"No password available for prompt: {message}")
        return self.passwords.pop(0)

    def confirm(self, message: str) -> bool:
        self.asked.append(message)
        if not self.confirmations:
            raise PromptError(f"No answer available for prompt: {message}")
        return self.confirmations.pop(0)
