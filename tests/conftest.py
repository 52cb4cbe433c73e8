"""Shared pytest fixtures: scripted terminal input and a fake QIIME 2 toolkit."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from q2_layout import DEFAULT_CLASSIFIER
from q2_tools import ToolInvoker, setup_logging

TAXONOMY_EXPORT = (
    "Feature ID\tTaxon\tConfidence\n"
    "f1\tk__Bacteria; p__Proteobacteria; c__Gammaproteobacteria\t0.98\n"
    "f2\tk__Bacteria; p__Proteobacteria\t0.91\n"
    "f3\tk__Bacteria; p__Chloroflexi\t0.87\n"
    "f4\tUnassigned\t0.5\n"
)

# files written by `qiime tools export`, keyed by the exported artefact name
EXPORTED_FILES = {
    "table.qza": ("feature-table.biom", "biom\n"),
    "rooted-tree.qza": ("tree.nwk", "(f1,(f2,f3));\n"),
    "taxonomy.qza": ("taxonomy.tsv", TAXONOMY_EXPORT),
    "rep-seqs.qza": ("dna-sequences.fasta", ">f1\nACGT\n"),
}


class ScriptedInput:
    """Terminal stand-in: returns queued answers (None = timeout), then EOF."""

    def __init__(self, answers: Sequence[Optional[str]]) -> None:
        self.answers = list(answers)
        self.prompts: List[str] = []

    def __call__(self, prompt: str, timeout: Optional[float]) -> Optional[str]:
        self.prompts.append(prompt)
        if not self.answers:
            raise EOFError("scripted input exhausted")
        return self.answers.pop(0)


class FakeInvoker(ToolInvoker):
    """
    Records commands instead of running them.

    Every path given to an ``--o-*``, ``--output-path`` or ``-o`` flag is
    created, ``qiime tools export`` writes the files QIIME would write, and
    a command containing ``fail_on`` exits with ``returncode``.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        fail_on: Optional[str] = None,
        returncode: int = 1,
        skip_exports: Sequence[str] = (),
    ) -> None:
        super().__init__(logger=logger)
        self.commands: List[List[str]] = []
        self.fail_on = fail_on
        self.returncode = returncode
        self.skip_exports = set(skip_exports)

    def invoke(self, cmd, log_file: Path) -> int:
        cmd = list(cmd)
        self.commands.append(cmd)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as fh:
            fh.write("$ " + " ".join(cmd) + "\n")
        if self.fail_on and self.fail_on in " ".join(cmd):
            return self.returncode

        if cmd[:3] == ["qiime", "tools", "export"]:
            source = Path(cmd[cmd.index("--input-path") + 1]).name
            out_dir = Path(cmd[cmd.index("--output-path") + 1])
            out_dir.mkdir(parents=True, exist_ok=True)
            name, content = EXPORTED_FILES[source]
            if name not in self.skip_exports:
                (out_dir / name).write_text(content)
            return 0

        for flag, value in zip(cmd, cmd[1:]):
            if flag.startswith("--o-") or flag in ("--output-path", "-o"):
                out = Path(value)
                out.parent.mkdir(parents=True, exist_ok=True)
                out.write_text("artefact\n")
        return 0

    def ran(self, *words: str) -> bool:
        """True if some recorded command starts with ``words``."""
        return any(cmd[: len(words)] == list(words) for cmd in self.commands)

    def find(self, *words: str) -> List[str]:
        for cmd in self.commands:
            if cmd[: len(words)] == list(words):
                return cmd
        raise AssertionError(f"no command starting with {' '.join(words)}")


def flag_value(cmd: Sequence[str], flag: str) -> str:
    return cmd[list(cmd).index(flag) + 1]


def fake_which(name: str) -> str:
    return f"/opt/conda/envs/qiime2/bin/{name}"


@pytest.fixture
def logger(tmp_path):
    """A fresh console logger per test."""
    return setup_logging(name=f"q2_test.{tmp_path.name}")


@pytest.fixture
def invoker(logger):
    return FakeInvoker(logger=logger)


@pytest.fixture
def project(tmp_path) -> Path:
    """Project root with reads folder, metadata and the default classifier."""
    root = tmp_path / "project"
    (root / "data" / "raw" / "fastq-reads").mkdir(parents=True)
    (root / "data" / "metadata.tsv").write_text(
        "sample-id\tgroup\n#q2:types\tcategorical\nS1\tA\nS2\tB\n"
    )
    (root / "data" / "interim").mkdir()
    (root / "data" / "interim" / DEFAULT_CLASSIFIER).write_text("classifier\n")
    return root
