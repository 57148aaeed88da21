"""Interactive prompts with optional timeouts."""
from __future__ import annotations

import select
import sys
import termios
from typing import Sequence, TypeVar

from zhb.errors import Cancelled, PromptTimeout

T = TypeVar("T")


def timed_input(prompt: str, timeout: float | None = None, secret: bool = False) -> str | None:
    """Read one line from the terminal.

    Returns None when ``timeout`` seconds pass without a complete line.
    With ``secret`` the terminal echo is switched off while reading.
    """
    if timeout is None and not secret:
        return input(prompt)

    sys.stdout.write(prompt)
    sys.stdout.flush()
    fd = sys.stdin.fileno()
    saved = None
    if secret and sys.stdin.isatty():
        saved = termios.tcgetattr(fd)
        quiet = termios.tcgetattr(fd)
        quiet[3] &= ~termios.ECHO
        termios.tcsetattr(fd, termios.TCSADRAIN, quiet)
    try:
        ready, _, _ = select.select([sys.stdin], [], [], timeout)
        if not ready:
            return None
        line = sys.stdin.readline()
        if not line:
            raise EOFError
        return line.rstrip("\n")
    finally:
        if saved is not None:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        if secret:
            sys.stdout.write("\n")


def ask(prompt: str, default: str = "", timeout: float | None = None) -> str:
    """Ask for a value; empty input yields ``default``. Timeout raises."""
    suffix = f" [{default}]" if default else ""
    try:
        answer = timed_input(f"{prompt}{suffix}: ", timeout)
    except EOFError:
        raise Cancelled("No input available")
    if answer is None:
        raise PromptTimeout(f"No answer within {timeout}s: {prompt}")
    return answer.strip() or default


def ask_secret(prompt: str, timeout: float | None = None) -> str:
    try:
        answer = timed_input(f"{prompt}: ", timeout, secret=True)
    except EOFError:
        raise Cancelled("No input available")
    if answer is None:
        raise PromptTimeout(f"No answer within {timeout}s: {prompt}")
    return answer


def confirm(prompt: str) -> bool:
    """Ask the user yes/no. Return True if yes."""
    try:
        answer = input(f"{prompt} [y/N] ").strip().lower()
    except EOFError:
        print()
        return False
    return answer in ("y", "yes")


def confirm_token(prompt: str, token: str) -> str:
    """Ask the operator to type a literal token; return what was typed."""
    try:
        return input(f"{prompt} Type '{token}' to continue: ").strip()
    except EOFError:
        return ""


def choose_with_default(message: str, choices: Sequence[str], default: int,
                        timeout: float | None) -> int:
    """Show numbered choices; return the picked index or ``default`` on timeout."""
    for i, label in enumerate(choices, 1):
        marker = " (default)" if i - 1 == default else ""
        print(f"{i}) {label}{marker}")
    print()
    try:
        answer = timed_input(
            f"{message} (1-{len(choices)}, auto-selects {default + 1} in {timeout}s): "
            if timeout else f"{message} (1-{len(choices)}): ",
            timeout,
        )
    except EOFError:
        return default
    if answer is None:
        print()
        print(f"Auto-selecting: {choices[default]}")
        return default
    answer = answer.strip()
    if not answer:
        return default
    if answer.isdigit() and 1 <= int(answer) <= len(choices):
        return int(answer) - 1
    raise Cancelled(f"Invalid selection: {answer}")


def select_item(items: Sequence[T], labels: Sequence[str], message: str,
                timeout: float | None = None) -> T:
    """Pick one item from a numbered list; 'q' or timeout cancels."""
    for i, label in enumerate(labels, 1):
        print(f"{i}) {label}")
    print()
    try:
        answer = timed_input(f"{message} (1-{len(items)}) or 'q' to quit: ", timeout)
    except EOFError:
        raise Cancelled("No selection made")
    if answer is None:
        raise PromptTimeout("Selection timeout - nothing selected")
    answer = answer.strip()
    if answer.lower() == "q":
        raise Cancelled("Selection cancelled by user")
    if answer.isdigit() and 1 <= int(answer) <= len(items):
        return items[int(answer) - 1]
    raise Cancelled(f"Invalid selection: {answer}")
