#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Pipeline state and stage sequencing shared by both workflows.

A workflow is a fixed, ordered list of ``Stage`` objects. Each stage reads
what it needs from the ``PipelineContext`` (only artefacts recorded by
earlier stages can be required), invokes external tools, and returns the
``Artifact`` objects it produced. The sequencer checks those outputs exist
on disk, records them, and moves on; any error halts the run before the
next stage begins. There is no resume: artefacts already written are left
in place for a user who wants to continue by hand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from q2_errors import MissingArtifact, PipelineAborted, PipelineError
from q2_tools import log_memory_usage, log_section


class PipelineState(Enum):
    PRECHECK = "Precheck"
    IMPORT = "Import"
    TRIM = "Trim"
    DENOISE = "Denoise"
    TREE_BUILD = "TreeBuild"
    CLASSIFY = "Classify"
    RAREFY = "Rarefy"
    EXPORT = "Export"
    EXTRACT = "Extract"
    TRAIN = "Train"
    SELF_TEST = "SelfTest"
    DONE = "Done"
    ABORTED = "Aborted"
    FAILED = "Failed"


@dataclass(frozen=True)
class Artifact:
    """A named output of one stage; never modified once written."""

    role: str
    path: Path
    stage: str


@dataclass
class PipelineContext:
    """
    State threaded through every stage of one workflow run.

    Attributes
    ----------
    layout : object
        ``ProjectLayout`` or ``ClassifierLayout`` in effect.
    logger : logging.Logger
        Run logger.
    invoker : object
        ``ToolInvoker`` used for every external command.
    prompter : object
        ``Prompter`` used for every interactive question.
    settings : object
        Frozen settings dataclass of the workflow.
    options : dict
        Values resolved up front and consumed by later stages.
    artifacts : dict
        Role to ``Artifact`` for everything produced so far.
    """

    layout: Any
    logger: logging.Logger
    invoker: Any
    prompter: Any
    settings: Any = None
    options: Dict[str, Any] = field(default_factory=dict)
    artifacts: Dict[str, Artifact] = field(default_factory=dict)
    stage: Optional[str] = None

    def record(self, artifact: Artifact) -> None:
        if self.has(artifact.role):
            raise PipelineError(
                f"Artefact '{artifact.role}' was already produced by stage "
                f"{self.artifacts[artifact.role].stage}",
                stage=artifact.stage,
            )
        self.artifacts[artifact.role] = artifact

    def has(self, role: str) -> bool:
        return role in self.artifacts

    def require(self, role: str) -> Path:
        """
        Return the path of an artefact recorded by an earlier stage.

        Raises
        ------
        MissingArtifact
            If no earlier stage recorded the role or its file is gone.
        """
        artifact = self.artifacts.get(role)
        if artifact is None:
            raise MissingArtifact(role, stage=self.stage)
        if not artifact.path.exists():
            raise MissingArtifact(role, artifact.path, stage=self.stage)
        return artifact.path

    def produce(self, role: str, path: Path) -> Artifact:
        """Build an ``Artifact`` attributed to the running stage."""
        return Artifact(role=role, path=Path(path), stage=self.stage or "")

    def run_tool(self, cmd: Sequence[str], log_file: Path) -> None:
        self.invoker.run(cmd=cmd, log_file=log_file, stage=self.stage)


StageFunc = Callable[[PipelineContext], Optional[Iterable[Artifact]]]


@dataclass(frozen=True)
class Stage:
    state: PipelineState
    title: str
    run: StageFunc


class StageSequencer:
    """Run stages strictly in order, halting at the first error or abort."""

    def __init__(self, stages: Sequence[Stage], *, logger: logging.Logger) -> None:
        self.stages = list(stages)
        self.logger = logger
        self.state = PipelineState.PRECHECK
        self.completed: List[PipelineState] = []
        self.error: Optional[PipelineError] = None

    def run(self, ctx: PipelineContext) -> int:
        """
        Execute every stage; return 0 on completion, 1 on abort or failure.
        """
        for stage in self.stages:
            self.state = stage.state
            ctx.stage = stage.state.value
            log_section(logger=self.logger, title=stage.title)
            try:
                for artifact in stage.run(ctx) or ():
                    if not artifact.path.exists():
                        raise MissingArtifact(artifact.role, artifact.path, stage=ctx.stage)
                    ctx.record(artifact)
            except PipelineAborted as err:
                return self._halt(ctx, PipelineState.ABORTED, err)
            except PipelineError as err:
                return self._halt(ctx, PipelineState.FAILED, err)
            self.completed.append(stage.state)
            log_memory_usage(self.logger, prefix=f"END {stage.state.value}")

        self.state = PipelineState.DONE
        ctx.stage = PipelineState.DONE.value
        return 0

    def _halt(self, ctx: PipelineContext, state: PipelineState, err: PipelineError) -> int:
        self.error = err
        failed_at = self.state.value
        self.state = state
        if state is PipelineState.ABORTED:
            self.logger.warning("%s. Workflow terminated at stage %s.", err, failed_at)
        else:
            self.logger.error("Stage %s failed: %s", failed_at, err)
        if ctx.artifacts:
            self.logger.info("Artefacts produced before the halt (left in place):")
            for artifact in ctx.artifacts.values():
                self.logger.info("  %s: %s", artifact.role, artifact.path)
        return 1
