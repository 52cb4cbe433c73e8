#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Interactive parameter resolution for the QIIME 2 workflows.

Overview
--------
Every tunable value of a stage is described by a ``StageParameter``: the
prompt shown to the user, the default applied on an empty answer or a
timed-out prompt, a parser and an optional validator. A ``Prompter``
resolves parameters one at a time, or as a confirm group that is
re-solicited until the user accepts it.

Validation strictness is chosen per parameter:
  • ``REJECT``  - report the problem and ask again (e.g. missing metadata)
  • ``WARN``    - report the problem and keep the value (e.g. truncation
                  lengths outside the suggested range)
  • ``USE_DEFAULT`` - report the problem and fall back to the default
                  (e.g. an unknown tree method or rarefaction depth)

Input is read through an injectable ``reader`` callable so a scripted
sequence of answers can stand in for a terminal.
"""

from __future__ import annotations

import logging
import os
import re
import select
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

from q2_errors import PipelineAborted


REJECT = "reject"
WARN = "warn"
USE_DEFAULT = "default"

Reader = Callable[[str, Optional[float]], Optional[str]]
Validator = Callable[[Any], Optional[str]]

IUPAC_DNA = re.compile(r"^[ACGTURYSWKMBDHVN]+$", re.IGNORECASE)


class TerminalReader:
    """
    Read answers line by line from a file descriptor with a bounded wait.

    Bytes are read straight from the descriptor and split on newlines
    here, so answers typed ahead of their prompt stay queued for the
    prompts that follow instead of hiding in a stream buffer that
    ``select`` cannot see.

    Parameters
    ----------
    fd : int, optional
        Descriptor to read; standard input when omitted.
    out : file-like, optional
        Stream the prompts are written to; standard output when omitted.
    """

    def __init__(self, fd: Optional[int] = None, out=None) -> None:
        self.fd = fd
        self.out = out
        self.pending = bytearray()

    def __call__(self, prompt: str, timeout: Optional[float]) -> Optional[str]:
        """
        Write the prompt and return the next line.

        Returns
        -------
        str or None
            The line without its newline, or ``None`` if the wait timed out.

        Raises
        ------
        EOFError
            If the input is closed and no unread line remains.
        """
        fd = sys.stdin.fileno() if self.fd is None else self.fd
        out = self.out or sys.stdout
        out.write(prompt)
        out.flush()
        deadline = None if timeout is None else time.monotonic() + timeout
        while b"\n" not in self.pending:
            if deadline is not None:
                remaining = deadline - time.monotonic()
                ready = select.select([fd], [], [], remaining)[0] if remaining > 0 else []
                if not ready:
                    out.write("\n")
                    return None
            chunk = os.read(fd, 4096)
            if not chunk:
                if not self.pending:
                    raise EOFError("standard input closed")
                self.pending.extend(b"\n")
            self.pending.extend(chunk)
        line, _, rest = bytes(self.pending).partition(b"\n")
        self.pending[:] = rest
        return line.decode("utf-8", errors="replace").rstrip("\r")


terminal_reader = TerminalReader()


def normalise_user_path(text: str) -> Path:
    """Expand a leading '~' and drop trailing or duplicated slashes."""
    return Path(os.path.expanduser(text.strip()))


# ----------------------------- validators ----------------------------- #

def in_range(low: int, high: int, *, label: str) -> Validator:
    """Return a validator flagging numbers outside ``[low, high]``."""

    def _check(value: Any) -> Optional[str]:
        if value < low or value > high:
            return (
                f"The value of {label} ({value}) is outside the suggested "
                f"range [{low}-{high}]"
            )
        return None

    return _check


def iupac_sequence(value: str) -> Optional[str]:
    """Flag sequences with characters outside the IUPAC nucleotide codes."""
    if not IUPAC_DNA.match(value.lstrip("^")):
        return f"'{value}' contains characters that are not IUPAC nucleotide codes"
    return None


def has_suffix(*suffixes: str) -> Validator:
    """Return a validator requiring the path (or text) to end with a suffix."""

    def _check(value: Any) -> Optional[str]:
        if not str(value).endswith(tuple(suffixes)):
            return f"{value} does not end with {' or '.join(suffixes)}"
        return None

    return _check


def readable_file(value: Path) -> Optional[str]:
    """Flag paths that are missing, unreadable or empty files."""
    path = Path(value)
    if not path.is_file() or not os.access(path, os.R_OK) or path.stat().st_size == 0:
        return (
            f"The supplied file is either non-readable, empty, or missing: {path}"
        )
    return None


# ----------------------------- parameters ----------------------------- #

@dataclass
class StageParameter:
    """A single value collected for one stage invocation.

    Attributes
    ----------
    name : str
        Key under which the resolved value is returned.
    prompt : str
        Text shown to the user.
    default : Any
        Value used for an empty answer or a timed-out prompt.
    parse : callable
        Converts the raw answer; ``ValueError`` marks the answer invalid.
    validator : callable, optional
        Returns a problem description, or ``None`` if the value is fine.
    on_invalid : str
        One of ``REJECT``, ``WARN`` or ``USE_DEFAULT``.
    timeout : float or None
        Seconds to wait for an answer.
    label : str, optional
        Human-readable name used in summaries.
    value : Any
        The resolved value (``None`` until resolved).
    """

    name: str
    prompt: str
    default: Any
    parse: Callable[[str], Any] = str
    validator: Optional[Validator] = None
    on_invalid: str = WARN
    timeout: Optional[float] = 120.0
    label: Optional[str] = None
    value: Any = None

    def __post_init__(self) -> None:
        if self.on_invalid not in (REJECT, WARN, USE_DEFAULT):
            raise ValueError(f"Unknown on_invalid mode: {self.on_invalid}")
        if self.label is None:
            self.label = self.name


class Prompter:
    """Ask questions and resolve ``StageParameter`` values."""

    def __init__(
        self,
        *,
        reader: Reader = terminal_reader,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.reader = reader
        self.logger = logger or logging.getLogger("q2_workflows")

    def ask(self, prompt: str, timeout: Optional[float] = None) -> str:
        """Return the stripped answer, or '' if the prompt timed out."""
        try:
            answer = self.reader(prompt, timeout)
        except EOFError as exc:
            raise PipelineAborted("Standard input was closed; terminating.") from exc
        if answer is None:
            self.logger.debug("No answer to %r within %s s.", prompt.strip(), timeout)
            return ""
        return answer.strip()

    def ask_yes_no(self, question: str, timeout: Optional[float] = 60.0) -> bool:
        """True only if the answer starts with 'y' or 'Y'."""
        return self.ask(question, timeout)[:1] in ("y", "Y")

    def checkpoint(self, question: str, timeout: Optional[float] = 100.0) -> None:
        """Offer early termination; raise ``PipelineAborted`` on 'yes'."""
        if self.ask_yes_no(question, timeout):
            raise PipelineAborted(f"Terminated by user ({question.strip()})")

    def resolve(self, param: StageParameter) -> Any:
        """
        Solicit a value until it is acceptable under the parameter's mode.

        An empty or timed-out answer yields the default, which is validated
        like any other value so a ``REJECT`` default cannot slip through.
        """
        while True:
            raw = self.ask(param.prompt, param.timeout)
            if not raw:
                value = param.default
            else:
                try:
                    value = param.parse(raw)
                except ValueError:
                    if param.on_invalid == USE_DEFAULT:
                        self.logger.warning(
                            "'%s' is not a valid %s; using the default (%s).",
                            raw, param.label, param.default,
                        )
                        value = param.default
                    else:
                        self.logger.warning("'%s' is not a valid %s.", raw, param.label)
                        continue

            problem = param.validator(value) if param.validator else None
            if problem:
                if param.on_invalid == REJECT:
                    self.logger.warning("%s", problem)
                    self.logger.warning("Your input was %s", value)
                    continue
                if param.on_invalid == USE_DEFAULT and value != param.default:
                    self.logger.warning("%s; using the default (%s).", problem, param.default)
                    value = param.default
                else:
                    self.logger.warning("%s", problem)

            param.value = value
            return value

    def confirm(
        self,
        params: Sequence[StageParameter],
        *,
        question: str = "Do you wish to change them?[y/n] ",
        retry_on: bool = True,
        timeout: Optional[float] = 60.0,
    ) -> Dict[str, Any]:
        """
        Resolve a group of parameters and loop until the user accepts them.

        Parameters
        ----------
        params : sequence of StageParameter
            Parameters re-solicited together on every pass.
        question : str
            Confirmation question shown after the summary.
        retry_on : bool
            The yes/no answer that sends control back to solicitation
            (``True`` for "change them?", ``False`` for "is this correct?").
        timeout : float or None
            Seconds to wait for the confirmation.

        Returns
        -------
        dict
            Parameter name to resolved value.
        """
        while True:
            values = {p.name: self.resolve(p) for p in params}
            for p in params:
                self.logger.info("The selected %s is: %s", p.label, p.value)
            if self.ask_yes_no(question, timeout) != retry_on:
                return values
            self.logger.info("You can retry.")
