"""Subprocess, prompt and validation seams used by the setup flows."""

from __future__ import annotations

import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Optional, TextIO


class CommandFailed(Exception):
    """An external command could not be started or exited non-zero."""

    def __init__(
        self, name: str, args: tuple[str, ...], stderr: str, returncode: Optional[int]
    ) -> None:
        self.name = name
        self.args_list = tuple(args)
        self.stderr = stderr
        self.returncode = returncode
        if returncode is None:
            message = f"{name}: {stderr}"
        else:
            message = f"{name}: exit status {returncode}"
        super().__init__(message)


class Shell(ABC):
    """Runs external command-line tools."""

    @abstractmethod
    def run(self, name: str, *args: str) -> tuple[str, str]:
        """Run a command and return (stdout, stderr); raises CommandFailed."""

    @abstractmethod
    def run_interactive(self, name: str, *args: str) -> None:
        """Run a command attached to the terminal; raises CommandFailed."""

    @abstractmethod
    def available(self, name: str) -> bool:
        """Whether the command can be found on PATH."""


class SubprocessShell(Shell):
    """Shell backed by real subprocesses."""

    def run(self, name: str, *args: str) -> tuple[str, str]:
        try:
            proc = subprocess.run(
                [name, *args], capture_output=True, text=True, check=False
            )
        except OSError as exc:
            raise CommandFailed(name, args, str(exc), None) from exc
        if proc.returncode != 0:
            raise CommandFailed(name, args, proc.stderr, proc.returncode)
        return proc.stdout, proc.stderr

    def run_interactive(self, name: str, *args: str) -> None:
        try:
            proc = subprocess.run([name, *args], check=False)
        except OSError as exc:
            raise CommandFailed(name, args, str(exc), None) from exc
        if proc.returncode != 0:
            raise CommandFailed(name, args, "", proc.returncode)

    def available(self, name: str) -> bool:
        return shutil.which(name) is not None


class Prompter(ABC):
    """Interaction with the person running setup."""

    @abstractmethod
    def confirm(self, message: str) -> bool:
        """Ask a yes/no question; default no."""

    @abstractmethod
    def pick(self, message: str, options: list[str]) -> int:
        """Ask for one of the options; returns its zero-based index."""

    @abstractmethod
    def input(self, message: str) -> str:
        """Ask for a line of free text."""

    @abstractmethod
    def wait(self, message: str) -> None:
        """Show a message and wait for ENTER."""


class StdPrompter(Prompter):
    """Prompter reading lines from one text stream and writing to another."""

    def __init__(self, reader: TextIO, writer: TextIO) -> None:
        self._reader = reader
        self._writer = writer

    def _ask(self, text: str) -> str:
        self._writer.write(text)
        self._writer.flush()
        return self._reader.readline()

    def confirm(self, message: str) -> bool:
        answer = self._ask(f"{message} [y/N]: ").strip().lower()
        return answer in ("y", "yes")

    def pick(self, message: str, options: list[str]) -> int:
        self._writer.write(message + "\n")
        for number, option in enumerate(options, start=1):
            self._writer.write(f"  {number}) {option}\n")
        answer = self._ask("Choose [1]: ").strip()
        if not answer:
            return 0
        try:
            number = int(answer)
        except ValueError:
            return 0
        if not 1 <= number <= len(options):
            return 0
        return number - 1

    def input(self, message: str) -> str:
        return self._ask(message).rstrip("\r\n")

    def wait(self, message: str) -> None:
        line = self._ask(message + "\n")
        if not line.endswith("\n"):
            raise EOFError("input closed while waiting")


class Validator(ABC):
    """Checks that an OAuth client id works."""

    @abstractmethod
    def validate(self, client_id: str) -> None:
        """Raise if the client id fails validation."""


class NoopValidator(Validator):
    """Validator that accepts every client id, remembering each one it saw."""

    def __init__(self) -> None:
        self.accepted: list[str] = []

    def validate(self, client_id: str) -> None:
        self.accepted.append(client_id)