#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Train a 16S rRNA naive-Bayes classifier for the make-dataset workflow.

Overview
--------
Interactive QIIME 2 workflow:

  import reference FASTA + taxonomy -> extract the amplified region
  (primer pair) -> fit-classifier-naive-bayes -> optional self-test on
  representative sequences obtained with the same primers

The reference database must be given as 16S sequences (FASTA) and a
headerless taxonomy TSV. Common primer pairs for V4 (515F/806R) and V3-V4
(314F/806R) are built in; other primers are typed as 'F/R' sequences.
Only the DNA-binding part of a primer must be given: sequences longer than
30 nt most likely contain adapter, linker or barcode and are rejected.

All parameters are collected before the first tool runs. The trained
classifier is ``<outputDir>/<name>-trained.qza`` where ``<name>`` is the
FASTA file name without '.fasta'.

Exit status is 0 on completion (with or without the self-test) and 1 on
any abort, missing executable or failed external step.
"""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from q2_errors import MissingArtifact, PipelineAborted
from q2_layout import ClassifierLayout
from q2_pipeline import (
    Artifact,
    PipelineContext,
    PipelineState,
    Stage,
    StageSequencer,
)
from q2_precheck import check_executables
from q2_prompt import (
    REJECT,
    USE_DEFAULT,
    WARN,
    Prompter,
    Reader,
    StageParameter,
    has_suffix,
    iupac_sequence,
    normalise_user_path,
    readable_file,
    terminal_reader,
)
from q2_tools import (
    ToolInvoker,
    attach_log_file,
    log_memory_usage,
    setup_logging,
)


# Artefact roles
REF_SEQS_RAW = "reference sequences"
REF_TAXONOMY = "reference taxonomy"
REF_READS = "extracted reference reads"
TRAINED_CLASSIFIER = "trained classifier"
TEST_TAXONOMY = "test taxonomy"
TEST_SUMMARY = "test taxonomy summary"

TAXONOMY_SUFFIXES = (".tax", ".txt", ".tsv")


@dataclass(frozen=True)
class ClassifierSettings:
    """Defaults and prompt timeouts (seconds) of the classifier trainer."""

    reference_fasta: str = "~/resources/16S-classifiers/midas_s123_213/MiDAS_S123_2.1.3.fasta"
    reference_taxonomy: str = "~/resources/16S-classifiers/midas_s123_213/MiDAS_S123_2.1.3.tax"
    output_root: str = "~/resources/16S-classifiers/trained"
    max_primer_length: int = 30
    trunc_len: int = 0
    continue_timeout: float = 100.0
    param_timeout: float = 120.0
    confirm_timeout: float = 60.0
    docs_url: str = "https://docs.qiime2.org/2019.4/tutorials/feature-classifier/"


@dataclass(frozen=True)
class PrimerPair:
    """Amplification primers and the read-length window of their region."""

    name: str
    region: str
    forward: str
    reverse: str
    min_length: int
    max_length: int

    def __str__(self) -> str:
        return (
            f"{self.name} (region {self.region}) forward {self.forward} "
            f"reverse {self.reverse}"
        )


PRIMER_PRESETS: Dict[str, PrimerPair] = {
    "314F/806R": PrimerPair(
        name="314F/806R", region="V3-V4",
        forward="CCTACGGGNGGCWGCAG", reverse="GGACTACHVGGGTWTCTAAT",
        min_length=100, max_length=600,
    ),
    "515F/806R": PrimerPair(
        name="515F/806R", region="V4",
        forward="GTGCCAGCMGCCGCGGTAA", reverse="GGACTACHVGGGTWTCTAAT",
        min_length=100, max_length=400,
    ),
}
DEFAULT_PRIMERS = PRIMER_PRESETS["314F/806R"]

CUSTOM_MIN_LENGTH = 30
CUSTOM_MAX_LENGTH = 0


def parse_primers(text: str) -> PrimerPair:
    """
    Map a primer answer to a ``PrimerPair``.

    A preset name is matched case-insensitively; anything else must be
    'FORWARD/REVERSE' sequences. A trailing slash is ignored.

    Raises
    ------
    ValueError
        If the answer is neither a preset name nor an 'F/R' pair.
    """
    answer = text.strip()
    for name, preset in PRIMER_PRESETS.items():
        if name in answer.upper():
            return preset
    forward, sep, reverse = answer.rstrip("/").rpartition("/")
    forward, reverse = forward.strip().rstrip("/"), reverse.strip()
    if not sep or not forward or not reverse:
        raise ValueError(f"Expected a primer name or FORWARD/REVERSE sequences: {text!r}")
    return PrimerPair(
        name="custom", region="custom",
        forward=forward.upper(), reverse=reverse.upper(),
        min_length=CUSTOM_MIN_LENGTH, max_length=CUSTOM_MAX_LENGTH,
    )


def primer_problem(primers: PrimerPair, *, max_length: int = 30) -> Optional[str]:
    """Flag custom primers that are too long or not nucleotide codes."""
    for seq in (primers.forward, primers.reverse):
        if len(seq) > max_length:
            return (
                f"The primer sequence {seq} is too long ({len(seq)} > {max_length} nt); "
                "give only the DNA-binding part"
            )
        problem = iupac_sequence(seq)
        if problem:
            return problem
    return None


def length_problem(min_length: int, max_length: int) -> Optional[str]:
    """Flag a min length above a non-zero max length; 0 means no maximum."""
    if max_length > 0 and min_length > max_length:
        return (
            f"The min length ({min_length}) is greater than the MAX length "
            f"({max_length}); extract-reads will keep no sequences"
        )
    return None


def _positive_int(text: str) -> int:
    value = int(text)
    if value <= 0:
        raise ValueError(f"{value} is not a positive integer")
    return value


def _positive_int_or_zero(text: str) -> int:
    try:
        return _positive_int(text)
    except ValueError:
        return 0


def _path_with_suffix(default: Path, suffixes: Tuple[str, ...]) -> Callable[[str], Path]:
    """Anything that does not end with one of ``suffixes`` selects ``default``."""

    def _parse(text: str) -> Path:
        path = normalise_user_path(text)
        return path if path.name.endswith(suffixes) else default

    return _parse


def reference_name(fasta: Path) -> str:
    """Classifier name: the FASTA file name without '.fasta'."""
    name = Path(fasta).name
    return name[: -len(".fasta")] if name.endswith(".fasta") else name


@dataclass(frozen=True)
class ClassifierOptions:
    """Everything collected before the first tool runs."""

    fasta: Path
    taxonomy: Path
    name: str
    primers: PrimerPair
    trunc_len: int
    min_length: int
    max_length: int
    out_dir: Path


# ----------------------------- parameter collection ----------------------------- #

def collect_options(
    prompter: Prompter, settings: ClassifierSettings, logger: logging.Logger
) -> ClassifierOptions:
    """Solicit reference files, primers, lengths and the output directory."""
    default_fasta = normalise_user_path(settings.reference_fasta)
    default_tax = normalise_user_path(settings.reference_taxonomy)

    logger.info("Type the full path of the reference FASTA file. Default is %s", default_fasta)
    fasta = prompter.resolve(StageParameter(
        name="fasta", label="reference FASTA",
        prompt="FASTA classifier path: ", default=default_fasta,
        parse=_path_with_suffix(default_fasta, (".fasta",)),
        validator=readable_file, on_invalid=WARN, timeout=settings.param_timeout,
    ))
    logger.info("Type the full path of the reference taxonomy. Default is %s", default_tax)
    taxonomy = prompter.resolve(StageParameter(
        name="taxonomy", label="reference taxonomy",
        prompt="Taxonomy classifier path[.tax/.txt/.tsv] ", default=default_tax,
        parse=_path_with_suffix(default_tax, TAXONOMY_SUFFIXES),
        validator=readable_file, on_invalid=WARN, timeout=settings.param_timeout,
    ))
    name = reference_name(fasta)

    logger.info(
        "Type the primers used, either a name or forward and reverse primer "
        "sequences separated by a forward slash (F/R). Default is %s", DEFAULT_PRIMERS.name,
    )
    primers = prompter.confirm(
        [StageParameter(
            name="primers", label="primers",
            prompt="Amplification primers:[515F/806R, 314F/806R, seq.] ",
            default=DEFAULT_PRIMERS, parse=parse_primers,
            validator=partial(primer_problem, max_length=settings.max_primer_length),
            on_invalid=REJECT, timeout=settings.param_timeout,
        )],
        question="Is this correct?[y/n] ",
        retry_on=False,
        timeout=settings.confirm_timeout,
    )["primers"]

    logger.info(
        "A custom truncation length of the extracted region is advised only for "
        "trimmed single-end reads, and must not exceed their length. "
        "If no value is provided, %d is used (no truncation).", settings.trunc_len,
    )
    trunc_len = prompter.resolve(StageParameter(
        name="trunc_len", label="truncation length",
        prompt="Trimming length: ", default=settings.trunc_len,
        parse=_positive_int_or_zero, on_invalid=USE_DEFAULT,
        timeout=settings.param_timeout,
    ))

    logger.info(
        "Min and max length of the extracted region. If no input is provided, "
        "the defaults (min=%d, max=%d) are used.", primers.min_length, primers.max_length,
    )
    min_length = prompter.resolve(StageParameter(
        name="min_length", label="min length", prompt="Min length: ",
        default=primers.min_length, parse=_positive_int, on_invalid=USE_DEFAULT,
        timeout=settings.param_timeout,
    ))
    max_length = prompter.resolve(StageParameter(
        name="max_length", label="MAX length", prompt="MAX length: ",
        default=primers.max_length, parse=_positive_int, on_invalid=USE_DEFAULT,
        timeout=settings.param_timeout,
    ))
    problem = length_problem(min_length, max_length)
    if problem:
        logger.warning("%s", problem)

    default_out = normalise_user_path(settings.output_root) / name
    logger.info("Type the desired output directory. Default is %s", default_out)
    out_dir = prompter.resolve(StageParameter(
        name="out_dir", label="output directory", prompt="Output directory: ",
        default=default_out, parse=normalise_user_path, on_invalid=WARN,
        timeout=settings.param_timeout,
    ))

    return ClassifierOptions(
        fasta=fasta, taxonomy=taxonomy, name=name, primers=primers,
        trunc_len=trunc_len, min_length=min_length, max_length=max_length,
        out_dir=out_dir,
    )


# ----------------------------- stages ----------------------------- #

def stage_precheck(
    ctx: PipelineContext, *, which: Callable[[str], Optional[str]] = shutil.which
) -> List[Artifact]:
    """Banner, continue gate, toolkit check and parameter collection."""
    settings: ClassifierSettings = ctx.settings
    log = ctx.logger
    log.info("--- IMPORTANT USER INFORMATION ---")
    log.info(
        "This workflow trains a 16S rRNA gene classifier (e.g. Silva, Greengenes, "
        "MiDAS) and writes it in .qza format."
    )
    log.info(
        "You need the reference sequences (FASTA), the reference taxonomy (TSV) "
        "and the pair of amplification primers used."
    )
    log.info("It requires an activated QIIME 2 conda environment.")
    if not ctx.prompter.ask_yes_no("Do you want to continue?[y/n] ", settings.continue_timeout):
        raise PipelineAborted("Terminated by user (Do you want to continue?)")

    check_executables(names=("qiime",), which=which, logger=log)
    options = collect_options(ctx.prompter, settings, log)
    ctx.options["classifier"] = options

    layout = ClassifierLayout(options.out_dir, options.name)
    ctx.layout = layout
    layout.out_dir.mkdir(parents=True, exist_ok=True)
    attach_log_file(logger=log, log_file=layout.run_log)
    log.info("Reference FASTA: %s", options.fasta)
    log.info("Reference taxonomy: %s", options.taxonomy)
    log.info("Primers: %s", options.primers)
    log.info(
        "Truncation length %d; extracted length %d-%d",
        options.trunc_len, options.min_length, options.max_length,
    )
    log.info("Output directory: %s", layout.out_dir)
    return []


def stage_import(ctx: PipelineContext) -> List[Artifact]:
    layout: ClassifierLayout = ctx.layout
    options: ClassifierOptions = ctx.options["classifier"]
    ctx.run_tool(
        [
            "qiime", "tools", "import",
            "--type", "FeatureData[Sequence]",
            "--input-path", str(options.fasta),
            "--output-path", str(layout.ref_seqs_raw),
        ],
        layout.log("import"),
    )
    ctx.run_tool(
        [
            "qiime", "tools", "import",
            "--type", "FeatureData[Taxonomy]",
            "--input-format", "HeaderlessTSVTaxonomyFormat",
            "--input-path", str(options.taxonomy),
            "--output-path", str(layout.ref_taxonomy),
        ],
        layout.log("import"),
    )
    return [
        ctx.produce(REF_SEQS_RAW, layout.ref_seqs_raw),
        ctx.produce(REF_TAXONOMY, layout.ref_taxonomy),
    ]


def stage_extract(ctx: PipelineContext) -> List[Artifact]:
    layout: ClassifierLayout = ctx.layout
    options: ClassifierOptions = ctx.options["classifier"]
    ctx.run_tool(
        [
            "qiime", "feature-classifier", "extract-reads",
            "--i-sequences", str(ctx.require(REF_SEQS_RAW)),
            "--p-f-primer", options.primers.forward,
            "--p-r-primer", options.primers.reverse,
            "--p-trunc-len", str(options.trunc_len),
            "--p-min-length", str(options.min_length),
            "--p-max-length", str(options.max_length),
            "--o-reads", str(layout.ref_reads),
            "--verbose",
        ],
        layout.log("extraction"),
    )
    return [ctx.produce(REF_READS, layout.ref_reads)]


def stage_train(ctx: PipelineContext) -> List[Artifact]:
    layout: ClassifierLayout = ctx.layout
    ctx.run_tool(
        [
            "qiime", "feature-classifier", "fit-classifier-naive-bayes",
            "--i-reference-reads", str(ctx.require(REF_READS)),
            "--i-reference-taxonomy", str(ctx.require(REF_TAXONOMY)),
            "--o-classifier", str(layout.trained),
            "--verbose",
        ],
        layout.log("training"),
    )
    ctx.logger.info("The trained classifier is saved as %s", layout.trained)
    return [ctx.produce(TRAINED_CLASSIFIER, layout.trained)]


def stage_self_test(ctx: PipelineContext) -> List[Artifact]:
    """Optionally classify known representative sequences with the new classifier."""
    layout: ClassifierLayout = ctx.layout
    settings: ClassifierSettings = ctx.settings
    ctx.logger.info(
        "Before use, the classifier should be tested on demultiplexed and denoised "
        "representative sequences obtained with the chosen primers."
    )
    if not ctx.prompter.ask_yes_no("Do you want to do it now?[y/n] ", settings.confirm_timeout):
        ctx.logger.info("Remember to do this before using the classifier!")
        ctx.logger.info("Check %s for further info.", settings.docs_url)
        return []

    rep_seqs = ctx.prompter.confirm(
        [StageParameter(
            name="rep_seqs", label="representative sequences",
            prompt="Input the absolute path of the rep. reads for the test:[*.qza] ",
            default="", parse=normalise_user_path,
            validator=has_suffix(".qza"), on_invalid=REJECT,
            timeout=settings.param_timeout,
        )],
        question="Is this correct?[y/n] ",
        retry_on=False,
        timeout=settings.confirm_timeout,
    )["rep_seqs"]
    if not Path(rep_seqs).is_file():
        raise MissingArtifact("representative sequences", rep_seqs, stage=ctx.stage)

    ctx.run_tool(
        [
            "qiime", "feature-classifier", "classify-sklearn",
            "--i-classifier", str(ctx.require(TRAINED_CLASSIFIER)),
            "--i-reads", str(rep_seqs),
            "--o-classification", str(layout.test_taxonomy),
            "--verbose",
        ],
        layout.log("test"),
    )
    ctx.run_tool(
        [
            "qiime", "metadata", "tabulate",
            "--m-input-file", str(layout.test_taxonomy),
            "--o-visualization", str(layout.test_summary),
        ],
        layout.log("test"),
    )
    ctx.logger.info("The output of the test is saved as %s and can be visualised.", layout.test_summary)
    return [
        ctx.produce(TEST_TAXONOMY, layout.test_taxonomy),
        ctx.produce(TEST_SUMMARY, layout.test_summary),
    ]


def build_stages(*, which: Callable[[str], Optional[str]] = shutil.which) -> List[Stage]:
    return [
        Stage(PipelineState.PRECHECK, "Classifier parameters", partial(stage_precheck, which=which)),
        Stage(PipelineState.IMPORT, "Import reference database", stage_import),
        Stage(PipelineState.EXTRACT, "Extract reference reads", stage_extract),
        Stage(PipelineState.TRAIN, "Train naive-Bayes classifier", stage_train),
        Stage(PipelineState.SELF_TEST, "Test the classifier", stage_self_test),
    ]


# ----------------------------- main orchestration ----------------------------- #

def build_workflow(
    *,
    reader: Reader = terminal_reader,
    invoker: Optional[ToolInvoker] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
    settings: ClassifierSettings = ClassifierSettings(),
    logger: Optional[logging.Logger] = None,
) -> Tuple[StageSequencer, PipelineContext]:
    """Assemble the sequencer and a fresh context; the layout is set once options are known."""
    logger = logger or setup_logging(name="q2_make_classifier")
    ctx = PipelineContext(
        layout=None,
        logger=logger,
        invoker=invoker or ToolInvoker(logger=logger),
        prompter=Prompter(reader=reader, logger=logger),
        settings=settings,
    )
    return StageSequencer(build_stages(which=which), logger=logger), ctx


def run_make_classifier(**kwargs) -> int:
    """Run the workflow; return the process exit code."""
    sequencer, ctx = build_workflow(**kwargs)
    log_memory_usage(ctx.logger, prefix="START")
    code = sequencer.run(ctx)
    if code == 0:
        ctx.logger.info("  ---  THIS SCRIPT ENDS HERE  ---  ")
    log_memory_usage(ctx.logger, prefix="END", extra_msg=sequencer.state.value)
    return code


def build_arg_parser() -> argparse.ArgumentParser:
    return argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )


def main() -> None:
    build_arg_parser().parse_args()
    try:
        code = run_make_classifier()
    except KeyboardInterrupt:
        sys.stderr.write("\nInterrupted by user.\n")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
