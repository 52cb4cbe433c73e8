#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
External tool invocation and logging helpers.

Every QIIME 2 / biom step is run as a subprocess (no shell=True). Its
combined stdout/stderr is streamed to the console and appended to a
step-specific log file, and a non-zero exit raises ``ExternalToolFailure``
so the calling pipeline halts before any downstream stage runs. External
tools are never given a timeout: some tree strategies run for days.
"""

from __future__ import annotations

import logging
import os
import resource
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional, Sequence, TextIO

import psutil

from q2_errors import ExternalToolFailure, PreconditionFailure


# Wall-clock start for runtime/elapsed logging
_SCRIPT_START_TIME = time.time()


# ----------------------------- logging -------------------------- #

def setup_logging(*, name: str, log_file: Optional[Path] = None) -> logging.Logger:
    """
    Configure logging to stderr (human) and optionally a file (machine).

    The stream shows INFO+ with compact formatting. The file, once
    attached, captures DEBUG+ with timestamps.

    Parameters
    ----------
    name : str
        Logger name, e.g. 'q2_make_dataset'.
    log_file : pathlib.Path, optional
        Run log to attach immediately.

    Returns
    -------
    logging.Logger
        Configured logger instance.
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    # Avoid duplicate handlers if reinitialised
    logger.handlers.clear()
    logger.propagate = False

    stream_handler = logging.StreamHandler(stream=sys.stderr)
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(stream_handler)

    if log_file is not None:
        attach_log_file(logger=logger, log_file=log_file)
    return logger


def attach_log_file(*, logger: logging.Logger, log_file: Path) -> None:
    """Add a DEBUG-level file handler (append mode) to an existing logger."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(filename=log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    logger.addHandler(file_handler)
    logger.debug("Python version: %s", " ".join(map(str, sys.version_info)))
    logger.debug("Command line: %s", " ".join(sys.argv))
    logger.info("Logging to %s", log_file)


def log_section(*, logger: logging.Logger, title: str) -> None:
    """Emit a visible section divider in logs."""
    sep = "=" * max(10, min(80, len(title) + 8))
    logger.info("%s", sep)
    logger.info("== %s ==", title)
    logger.info("%s", sep)


def log_memory_usage(
    logger: logging.Logger,
    prefix: str = "",
    extra_msg: str | None = None,
) -> None:
    """
    Log current RSS, peak RSS of finished child processes, and elapsed time.

    The children figure covers the external toolkit, which does all the
    heavy lifting; this process itself stays small.
    """
    parts = []
    if prefix:
        parts.append(prefix.strip())

    try:
        cur_gb = psutil.Process(os.getpid()).memory_info().rss / (1024 ** 3)
        parts.append(f"RAM: {cur_gb:.2f} GB")
    except psutil.Error:
        pass

    # ru_maxrss is kilobytes on Linux, bytes on macOS
    peak = resource.getrusage(resource.RUSAGE_CHILDREN).ru_maxrss
    if peak:
        divisor = 1024 ** 2 if os.uname().sysname == "Linux" else 1024 ** 3
        parts.append(f"Tool peak: {peak / divisor:.2f} GB")

    elapsed_min = max(0.0, time.time() - _SCRIPT_START_TIME) / 60.0
    parts.append(f"Elapsed: {elapsed_min:.1f} min")
    if extra_msg:
        parts.append(extra_msg)

    logger.info(" | ".join(parts))


def ensure_qiime2_tmp(*, tmp_root: Path) -> Path:
    """
    Create the child-process temp root and its sticky QIIME 2 cache dir.

    QIIME 2 writes its cache to ``$TMPDIR/qiime2`` and refuses to use it
    unless the directory is sticky and world-writable (01777).

    Raises
    ------
    PreconditionFailure
        If the filesystem rejects the sticky mode.
    """
    qdir = Path(tmp_root) / "qiime2"
    qdir.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(qdir, 0o1777)
    except PermissionError as exc:
        raise PreconditionFailure(
            f"Cannot set sticky perms on {qdir}. Try running `chmod 1777 {qdir}` manually.",
            stage="Precheck",
        ) from exc
    return qdir


def tmp_environment(tmp_root: Path) -> dict:
    """Environment overrides pointing child temp files at ``tmp_root``."""
    tmp = str(tmp_root)
    return {"TMPDIR": tmp, "TEMP": tmp, "TMP": tmp}


# ----------------------------- invocation ----------------------------- #

class ToolInvoker:
    """
    Run external commands, tee'ing their output to console and a step log.

    Parameters
    ----------
    logger : logging.Logger
        Receives the command line and timing of every step.
    console : file-like, optional
        Where tool output is echoed (stdout by default).
    env : dict, optional
        Extra environment variables for child processes.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        console: Optional[TextIO] = None,
        env: Optional[dict] = None,
    ) -> None:
        self.logger = logger
        self.console = console
        self.env = dict(env or {})

    def invoke(self, cmd: Sequence[str], log_file: Path) -> int:
        """
        Execute ``cmd`` to completion and return its exit code.

        Output lines are written to the console and appended to
        ``log_file`` as they arrive, after a ``$ <command>`` header line.
        """
        log_file.parent.mkdir(parents=True, exist_ok=True)
        console = self.console or sys.stdout
        child_env = {**os.environ, **self.env} if self.env else None

        with log_file.open("a", encoding="utf-8") as lf:
            lf.write("$ " + " ".join(cmd) + "\n")
            lf.flush()
            proc = subprocess.Popen(
                list(cmd),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                env=child_env,
            )
            for line in proc.stdout:
                console.write(line)
                lf.write(line)
            console.flush()
            return proc.wait()

    def run(self, *, cmd: Sequence[str], log_file: Path, stage: Optional[str] = None) -> None:
        """
        Run one step and raise if it fails.

        Raises
        ------
        ExternalToolFailure
            If the command exits non-zero or cannot be started.
        """
        self.logger.info("▶ %s", " ".join(cmd))
        self.logger.debug("Step log: %s", log_file)
        start = time.time()
        try:
            returncode = self.invoke(cmd, log_file)
        except OSError as exc:
            self.logger.error("Could not start %s: %s", cmd[0], exc)
            raise ExternalToolFailure(
                cmd=cmd, returncode=127, log_file=log_file, stage=stage
            ) from exc
        elapsed = time.time() - start
        if returncode != 0:
            raise ExternalToolFailure(
                cmd=cmd, returncode=returncode, log_file=log_file, stage=stage
            )
        self.logger.info("✔ %s finished in %.1f s", " ".join(cmd[:3]), elapsed)
