#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Error taxonomy shared by the interactive QIIME 2 workflows.

Only ``ValidationFailure`` is recoverable (the resolver re-prompts); every
other error halts the running pipeline and is reported with the stage that
raised it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class PipelineError(RuntimeError):
    """Base class for all workflow errors."""

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class PreconditionFailure(PipelineError):
    """The project layout or runtime environment is not usable."""


class MissingDirectory(PreconditionFailure):
    """An expected project directory does not exist."""

    def __init__(self, path: Path, *, stage: Optional[str] = None) -> None:
        super().__init__(f"Expected directory is missing: {path}", stage=stage)
        self.path = Path(path)


class WrongWorkingDirectory(PreconditionFailure):
    """The workflow was started outside a project root."""

    def __init__(self, cwd: Path, *, stage: Optional[str] = None) -> None:
        super().__init__(
            f"{cwd} is not a project root (expected data/raw/fastq-reads/ below it). "
            "Run the workflow from the top of the project folder.",
            stage=stage,
        )
        self.cwd = Path(cwd)


class MissingExecutable(PreconditionFailure):
    """A toolkit executable is not on PATH (environment not activated)."""

    def __init__(self, name: str, *, stage: Optional[str] = None) -> None:
        super().__init__(
            f"Could not locate '{name}' on PATH. Activate the QIIME 2 conda "
            "environment before running this workflow.",
            stage=stage,
        )
        self.name = name


class ValidationFailure(PipelineError, ValueError):
    """A user-supplied value was rejected."""


class ExternalToolFailure(PipelineError):
    """An external command exited non-zero."""

    def __init__(
        self,
        *,
        cmd: Sequence[str],
        returncode: int,
        log_file: Optional[Path] = None,
        stage: Optional[str] = None,
    ) -> None:
        where = f" See log: {log_file}" if log_file else ""
        super().__init__(
            f"Command failed (exit={returncode}): {' '.join(cmd)}.{where}",
            stage=stage,
        )
        self.cmd = list(cmd)
        self.returncode = returncode
        self.log_file = log_file


class MissingArtifact(PipelineError):
    """A required input artefact is absent."""

    def __init__(self, role: str, path: Optional[Path] = None, *, stage: Optional[str] = None) -> None:
        if path is None:
            msg = f"No '{role}' artefact has been produced by an earlier stage."
        else:
            msg = f"Required '{role}' artefact not found: {path}"
        super().__init__(msg, stage=stage)
        self.role = role
        self.path = path


class PipelineAborted(PipelineError):
    """The user terminated the workflow at a checkpoint."""
