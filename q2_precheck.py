#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Preconditions checked before any external tool is invoked.

- The working directory must be a project root with the expected data
  folders (see ``q2_layout``).
- The QIIME 2 runtime must already be activated, i.e. its executables are
  on PATH. This workflow never activates environments itself.
- Sample metadata must be a readable, non-empty TSV with a header row and
  at least one sample row. Deeper QIIME metadata rules are left to QIIME.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pandas as pd

from q2_errors import (
    MissingDirectory,
    MissingExecutable,
    ValidationFailure,
    WrongWorkingDirectory,
)
from q2_layout import ProjectLayout
from q2_prompt import readable_file


def check_project_layout(*, layout: ProjectLayout) -> None:
    """
    Verify the working directory is a project root with input folders.

    Raises
    ------
    WrongWorkingDirectory
        If there is no ``data/`` folder below ``layout.root``.
    MissingDirectory
        If ``data/raw`` or ``data/raw/fastq-reads`` is missing.
    """
    if not layout.data.is_dir():
        raise WrongWorkingDirectory(layout.root, stage="Precheck")
    for folder in (layout.raw, layout.fastq_reads):
        if not folder.is_dir():
            raise MissingDirectory(folder, stage="Precheck")


def check_executables(
    *,
    names: Sequence[str],
    which: Callable[[str], Optional[str]] = shutil.which,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, str]:
    """
    Locate each executable on PATH.

    Returns
    -------
    dict
        Executable name to resolved path.

    Raises
    ------
    MissingExecutable
        For the first executable that cannot be found.
    """
    found: Dict[str, str] = {}
    for name in names:
        path = which(name)
        if not path:
            raise MissingExecutable(name, stage="Precheck")
        found[name] = path
    if logger is not None:
        env_name = os.environ.get("CONDA_DEFAULT_ENV")
        if env_name:
            logger.info("Active conda environment: %s", env_name)
        for name, path in found.items():
            logger.debug("%s=%s", name, path)
    return found


def check_environment(
    *,
    layout: ProjectLayout,
    executables: Sequence[str] = ("qiime", "biom"),
    which: Callable[[str], Optional[str]] = shutil.which,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, str]:
    """Run every precondition check for the dataset builder."""
    check_project_layout(layout=layout)
    return check_executables(names=executables, which=which, logger=logger)


# ------------------------ metadata checks ------------------------ #

@dataclass(frozen=True)
class MetadataSummary:
    """What the workflow needs to know about a metadata TSV."""

    path: Path
    sample_column: str
    columns: List[str]
    sample_ids: List[str]

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)


def inspect_metadata(metadata_tsv: Path) -> MetadataSummary:
    """
    Read a QIIME-style metadata TSV and return its sample identifiers.

    The first column is taken as the sample identifier. Directive rows such
    as '#q2:types' are skipped; a '#SampleID' header is accepted.

    Raises
    ------
    ValidationFailure
        If the file is missing, unreadable, empty, or has no sample rows.
    """
    problem = readable_file(metadata_tsv)
    if problem:
        raise ValidationFailure(problem)
    try:
        md = pd.read_csv(metadata_tsv, sep="\t", dtype=str, skip_blank_lines=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as err:
        raise ValidationFailure(f"Could not parse metadata TSV {metadata_tsv}: {err}") from err

    if md.columns.empty:
        raise ValidationFailure(f"Metadata file has no header row: {metadata_tsv}")
    sample_col = md.columns[0]
    ids = md[sample_col].dropna().astype(str).str.strip()
    ids = ids[(ids != "") & ~ids.str.startswith("#")]
    if ids.empty:
        raise ValidationFailure(f"Metadata file lists no samples: {metadata_tsv}")
    return MetadataSummary(
        path=Path(metadata_tsv),
        sample_column=str(sample_col),
        columns=[str(c) for c in md.columns],
        sample_ids=ids.tolist(),
    )


def metadata_problem(metadata_tsv: Path) -> Optional[str]:
    """Validator form of ``inspect_metadata`` for the parameter resolver."""
    try:
        inspect_metadata(metadata_tsv)
    except ValidationFailure as err:
        return str(err)
    return None
