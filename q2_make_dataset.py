#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Make-dataset workflow for demultiplexed 16S rRNA paired-end reads.

Overview
--------
Interactive QIIME 2 workflow run from the top of a project folder:

  import -> summarise -> cutadapt trim -> DADA2 denoise -> rooted tree
  (mafft-fasttree | iqtree-ultrafast-bootstrap | fragment-insertion SEPP)
  -> sklearn taxonomy -> alpha-rarefaction curves -> optional export

Parameters are collected at each stage with typed defaults and bounded
prompt timeouts; an unanswered prompt takes its default. The user can
terminate at several checkpoints. Every QIIME 2 artefact is written below
``data/interim`` and every step log below ``logs``.

Design choices
--------------
- Reads are imported with CasavaOneEightSingleLanePerSampleDirFmt from
  ``data/raw/fastq-reads/``; demultiplex first if needed.
- ASVs rather than OTUs (DADA2 denoise-paired; no pre-merging).
- The QIIME 2 conda environment must be activated before starting.
- No command-line options: ``--help`` prints this description.

Exit status is 0 on completion (including a skipped export) and 1 on any
abort, precondition failure or failed external step.
"""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from q2_errors import MissingArtifact
from q2_export import export_features
from q2_layout import (
    DEFAULT_TREE_STRATEGY,
    TREE_SETTINGS,
    ProjectLayout,
    TreeStrategy,
    classifier_name,
)
from q2_pipeline import (
    Artifact,
    PipelineContext,
    PipelineState,
    Stage,
    StageSequencer,
)
from q2_precheck import check_environment, inspect_metadata, metadata_problem
from q2_prompt import (
    REJECT,
    USE_DEFAULT,
    WARN,
    Prompter,
    Reader,
    StageParameter,
    in_range,
    iupac_sequence,
    normalise_user_path,
    terminal_reader,
)
from q2_tools import (
    ToolInvoker,
    attach_log_file,
    ensure_qiime2_tmp,
    log_memory_usage,
    setup_logging,
    tmp_environment,
)


# Artefact roles
DEMUX_SEQS = "demultiplexed reads"
DEMUX_SUMMARY = "demultiplexed reads summary"
TRIMMED_SEQS = "trimmed reads"
TRIMMED_SUMMARY = "trimmed reads summary"
FEATURE_TABLE = "feature table"
REP_SEQS = "representative sequences"
DENOISING_STATS = "denoising stats"
TABLE_SUMMARY = "feature table summary"
REP_SEQS_MAPPING = "representative sequences mapping"
ALIGNMENT = "aligned representative sequences"
MASKED_ALIGNMENT = "masked alignment"
UNROOTED_TREE = "unrooted tree"
ROOTED_TREE = "rooted tree"
PLACEMENTS = "insertion placements"
SEPP_FILTERED_TABLE = "sepp filtered table"
SEPP_REMOVED_TABLE = "sepp removed table"
TAXONOMY = "taxonomy"
TAXONOMY_SUMMARY = "taxonomy summary"
RAREFACTION = "alpha rarefaction"
EXPORTED_TABLE = "exported feature table"
EXPORTED_TREE = "exported tree"
EXPORTED_TAXONOMY = "exported taxonomy"
EXPORTED_SEQUENCES = "exported sequences"
MERGED_TABLE = "feature table with taxonomy"
TAXONOMY_COUNTS = "taxonomy counts"


@dataclass(frozen=True)
class DatasetSettings:
    """Fixed tool parameters, prompt defaults and prompt timeouts (seconds)."""

    adapter_f: str = "CCTAYGGGRBGCASCAG"
    adapter_r: str = "GGACTACHVGGGTWTCTAAT"
    cutadapt_cores: int = 3
    cutadapt_error_rate: float = 0.1
    trunc_len_f: int = 275
    trunc_len_r: int = 250
    trunc_len_max: int = 500
    trim_left_f: int = 5
    trim_left_r: int = 5
    trim_left_max: int = 50
    dada2_threads: int = 0
    rarefaction_depth: int = 20000
    rarefaction_min: int = 4000
    rarefaction_max: int = 50000
    terminate_timeout: float = 100.0
    param_timeout: float = 120.0
    confirm_timeout: float = 60.0
    tree_timeout: float = 100.0
    classifier_timeout: float = 200.0
    export_timeout: float = 120.0
    qiime_view: str = "https://view.qiime2.org/"


# ----------------------------- parameters ----------------------------- #

def adapter_parameters(settings: DatasetSettings) -> List[StageParameter]:
    """5' adapters searched by cutadapt; unusual characters only warn."""
    return [
        StageParameter(
            name="adapter_f", label="FORWARD adapter",
            prompt="Adapter to search in FORWARD read: ",
            default=settings.adapter_f, validator=iupac_sequence,
            on_invalid=WARN, timeout=settings.param_timeout,
        ),
        StageParameter(
            name="adapter_r", label="REVERSE adapter",
            prompt="Adapter to search in REVERSE read: ",
            default=settings.adapter_r, validator=iupac_sequence,
            on_invalid=WARN, timeout=settings.param_timeout,
        ),
    ]


def truncation_parameters(settings: DatasetSettings) -> List[StageParameter]:
    """3' truncation lengths; the suggested range is advisory."""
    top = settings.trunc_len_max
    return [
        StageParameter(
            name="trunc_len_f", label="FORWARD truncation length",
            prompt=f"Forward read 3' truncation length[0-{top}]: (DEFAULT:{settings.trunc_len_f}) ",
            default=settings.trunc_len_f, parse=int,
            validator=in_range(0, top, label="forward read 3' truncation"),
            on_invalid=WARN, timeout=settings.param_timeout,
        ),
        StageParameter(
            name="trunc_len_r", label="REVERSE truncation length",
            prompt=f"Reverse read 3' truncation length[0-{top}]: (DEFAULT:{settings.trunc_len_r}) ",
            default=settings.trunc_len_r, parse=int,
            validator=in_range(0, top, label="reverse read 3' truncation"),
            on_invalid=WARN, timeout=settings.param_timeout,
        ),
    ]


def trim_parameters(settings: DatasetSettings) -> List[StageParameter]:
    """5' trim lengths; the suggested range is advisory."""
    top = settings.trim_left_max
    return [
        StageParameter(
            name="trim_left_f", label="FORWARD 5' trim length",
            prompt=f"Forward read 5' trim length[0-{top}]: (DEFAULT:{settings.trim_left_f}) ",
            default=settings.trim_left_f, parse=int,
            validator=in_range(0, top, label="forward read 5' trim"),
            on_invalid=WARN, timeout=settings.param_timeout,
        ),
        StageParameter(
            name="trim_left_r", label="REVERSE 5' trim length",
            prompt=f"Reverse read 5' trim length[0-{top}]: (DEFAULT:{settings.trim_left_r}) ",
            default=settings.trim_left_r, parse=int,
            validator=in_range(0, top, label="reverse read 5' trim"),
            on_invalid=WARN, timeout=settings.param_timeout,
        ),
    ]


def metadata_parameter(layout: ProjectLayout, settings: DatasetSettings) -> StageParameter:
    return StageParameter(
        name="metadata", label="metadata file",
        prompt=f"Metadata file path: (DEFAULT: {layout.default_metadata}) ",
        default=layout.default_metadata, parse=normalise_user_path,
        validator=metadata_problem, on_invalid=REJECT,
        timeout=settings.param_timeout,
    )


def tree_parameter(settings: DatasetSettings) -> StageParameter:
    return StageParameter(
        name="tree_strategy", label="tree method",
        prompt=f"Select method:[1/2/3] DEFAULT:{DEFAULT_TREE_STRATEGY.value} ",
        default=DEFAULT_TREE_STRATEGY, parse=TreeStrategy.from_choice,
        on_invalid=USE_DEFAULT, timeout=settings.tree_timeout,
    )


def _classifier_parser(default: Path) -> Callable[[str], Path]:
    """Anything that is not a '.qza' path selects the default classifier."""

    def _parse(text: str) -> Path:
        path = normalise_user_path(text)
        return path if path.name.endswith(".qza") else default

    return _parse


def _classifier_exists(path: Path) -> Optional[str]:
    if not Path(path).is_file():
        return f"Classifier not found: {path}"
    return None


def classifier_parameter(layout: ProjectLayout, settings: DatasetSettings) -> StageParameter:
    return StageParameter(
        name="classifier", label="classifier",
        prompt="Full path of the trained classifier:[*.qza] ",
        default=layout.default_classifier,
        parse=_classifier_parser(layout.default_classifier),
        validator=_classifier_exists, on_invalid=WARN,
        timeout=settings.classifier_timeout,
    )


def rarefaction_parameter(settings: DatasetSettings) -> StageParameter:
    lo, hi = settings.rarefaction_min, settings.rarefaction_max
    return StageParameter(
        name="max_depth", label="max rarefaction depth",
        prompt=f"Which max rarefaction depth should be used?[{lo}-{hi}] ",
        default=settings.rarefaction_depth, parse=int,
        validator=in_range(lo, hi, label="max rarefaction depth"),
        on_invalid=USE_DEFAULT, timeout=settings.param_timeout,
    )


def _num(value: float) -> str:
    return f"{value:g}"


# ----------------------------- stages ----------------------------- #

def stage_precheck(
    ctx: PipelineContext, *, which: Callable[[str], Optional[str]] = shutil.which
) -> List[Artifact]:
    """Check layout and environment, offer to stop, then open the run log."""
    layout: ProjectLayout = ctx.layout
    check_environment(layout=layout, which=which, logger=ctx.logger)

    log = ctx.logger
    log.info("--- IMPORTANT USER INFORMATION ---")
    log.info("This workflow is designed for demultiplexed double paired-end reads.")
    log.info("If you have NOT demultiplexed reads, be sure to demultiplex first!")
    log.info("It requires an activated QIIME 2 conda environment.")
    ctx.prompter.checkpoint(
        "Terminate the script now?[y/n] ", ctx.settings.terminate_timeout
    )

    for folder in (layout.logs, layout.interim):
        folder.mkdir(parents=True, exist_ok=True)
    ensure_qiime2_tmp(tmp_root=layout.tmp)
    attach_log_file(logger=log, log_file=layout.run_log)
    log.info("The log report of the computation can be found in %s", layout.logs)
    log.info("The output of the computation can be found in %s", layout.interim)
    return []


def stage_import(ctx: PipelineContext) -> List[Artifact]:
    layout: ProjectLayout = ctx.layout
    ctx.logger.info(
        "Importing de-multiplexed paired-end reads with quality (FASTQ) from %s",
        layout.fastq_reads,
    )
    ctx.run_tool(
        [
            "qiime", "tools", "import",
            "--type", "SampleData[PairedEndSequencesWithQuality]",
            "--input-path", f"{layout.fastq_reads}/",
            "--input-format", "CasavaOneEightSingleLanePerSampleDirFmt",
            "--output-path", str(layout.demux_seqs),
        ],
        layout.log("00_import"),
    )
    ctx.run_tool(
        [
            "qiime", "demux", "summarize",
            "--i-data", str(layout.demux_seqs),
            "--o-visualization", str(layout.demux_summary),
        ],
        layout.log("00_demux-summarize"),
    )
    ctx.logger.info(
        "Data import has finished. A summary of the reads can be visualised at %s "
        "uploading the file %s", ctx.settings.qiime_view, layout.demux_summary,
    )
    return [
        ctx.produce(DEMUX_SEQS, layout.demux_seqs),
        ctx.produce(DEMUX_SUMMARY, layout.demux_summary),
    ]


def stage_trim(ctx: PipelineContext) -> List[Artifact]:
    layout: ProjectLayout = ctx.layout
    settings: DatasetSettings = ctx.settings
    ctx.logger.info(
        "Trimming out adapters from the imported reads. Provide the sequence of the "
        "adapter ligated to the 5' end. If nothing is provided, the standard KU-MME "
        "adapters are used."
    )
    adapters = ctx.prompter.confirm(
        adapter_parameters(settings), timeout=settings.confirm_timeout
    )
    demux = ctx.require(DEMUX_SEQS)

    ctx.run_tool(
        [
            "qiime", "cutadapt", "trim-paired",
            "--i-demultiplexed-sequences", str(demux),
            "--p-cores", str(settings.cutadapt_cores),
            "--p-front-f", adapters["adapter_f"],
            "--p-front-r", adapters["adapter_r"],
            "--p-error-rate", _num(settings.cutadapt_error_rate),
            "--p-indels",
            "--p-discard-untrimmed",
            "--o-trimmed-sequences", str(layout.trimmed_seqs),
            "--verbose",
        ],
        layout.log("01_trimming"),
    )
    ctx.run_tool(
        [
            "qiime", "demux", "summarize",
            "--i-data", str(layout.trimmed_seqs),
            "--o-visualization", str(layout.trimmed_summary),
        ],
        layout.log("01_trimmed-summarize"),
    )
    ctx.logger.info("The trimmed reads are saved as %s", layout.trimmed_seqs)
    ctx.logger.info(
        "A summary of the trimming step can be visualised at %s uploading the file %s",
        settings.qiime_view, layout.trimmed_summary,
    )
    return [
        ctx.produce(TRIMMED_SEQS, layout.trimmed_seqs),
        ctx.produce(TRIMMED_SUMMARY, layout.trimmed_summary),
    ]


def stage_denoise(ctx: PipelineContext) -> List[Artifact]:
    layout: ProjectLayout = ctx.layout
    settings: DatasetSettings = ctx.settings
    prompter: Prompter = ctx.prompter
    log = ctx.logger

    log.info("The trimmed reads are denoised with DADA2 into amplicon sequence variants (ASVs).")
    layout.dada2_dir.mkdir(parents=True, exist_ok=True)
    log.info("The output produced by DADA2 will be saved in %s", layout.dada2_dir)

    log.info(
        "Reads are truncated at the 3' end where quality drops (default %d and %d nt).",
        settings.trunc_len_f, settings.trunc_len_r,
    )
    trunc = prompter.confirm(truncation_parameters(settings), timeout=settings.confirm_timeout)
    log.info(
        "Reads are trimmed at the 5' end (default %d nt).", settings.trim_left_f
    )
    trim = prompter.confirm(trim_parameters(settings), timeout=settings.confirm_timeout)

    log.info("To relate metadata and denoised reads a metadata file must be provided.")
    log.info("If you don't have a metadata file yet you can terminate the script now.")
    prompter.checkpoint(
        "Do you wish to terminate the script?[y/n] ", settings.confirm_timeout
    )
    metadata = prompter.confirm(
        [metadata_parameter(layout, settings)],
        question="Do you wish to change it?[y/n] ",
        timeout=settings.confirm_timeout,
    )["metadata"]
    summary = inspect_metadata(metadata)
    ctx.options["metadata"] = metadata
    log.info(
        "Metadata %s lists %d samples (identifier column '%s').",
        metadata, summary.n_samples, summary.sample_column,
    )

    trimmed = ctx.require(TRIMMED_SEQS)
    log.info("DADA2 denoising is running... be patient.")
    ctx.run_tool(
        [
            "qiime", "dada2", "denoise-paired",
            "--i-demultiplexed-seqs", str(trimmed),
            "--p-trunc-len-f", str(trunc["trunc_len_f"]),
            "--p-trunc-len-r", str(trunc["trunc_len_r"]),
            "--p-trim-left-f", str(trim["trim_left_f"]),
            "--p-trim-left-r", str(trim["trim_left_r"]),
            "--p-n-threads", str(settings.dada2_threads),
            "--o-table", str(layout.table),
            "--o-representative-sequences", str(layout.rep_seqs),
            "--o-denoising-stats", str(layout.denoising_stats),
            "--verbose",
        ],
        layout.log("02_dada2"),
    )
    ctx.run_tool(
        [
            "qiime", "feature-table", "summarize",
            "--i-table", str(layout.table),
            "--m-sample-metadata-file", str(metadata),
            "--o-visualization", str(layout.table_summary),
            "--verbose",
        ],
        layout.log("03_metadata-merge"),
    )
    ctx.run_tool(
        [
            "qiime", "feature-table", "tabulate-seqs",
            "--i-data", str(layout.rep_seqs),
            "--o-visualization", str(layout.rep_seqs_mapping),
            "--verbose",
        ],
        layout.log("04_tabulate-seqs"),
    )
    log.info("Read counts and other summaries are available at %s", layout.table_summary)
    log.info("Feature IDs to sequences mapping (for BLAST) is available at %s", layout.rep_seqs_mapping)
    return [
        ctx.produce(FEATURE_TABLE, layout.table),
        ctx.produce(REP_SEQS, layout.rep_seqs),
        ctx.produce(DENOISING_STATS, layout.denoising_stats),
        ctx.produce(TABLE_SUMMARY, layout.table_summary),
        ctx.produce(REP_SEQS_MAPPING, layout.rep_seqs_mapping),
    ]


def build_tree_mafft_fasttree(ctx: PipelineContext, strategy: TreeStrategy) -> List[Artifact]:
    layout: ProjectLayout = ctx.layout
    tree = strategy.settings
    rep_seqs = ctx.require(REP_SEQS)
    layout.tree_dir(strategy).mkdir(parents=True, exist_ok=True)
    ctx.run_tool(
        [
            "qiime", "phylogeny", "align-to-tree-mafft-fasttree",
            "--i-sequences", str(rep_seqs),
            "--p-n-threads", str(tree.n_threads),
            "--p-mask-max-gap-frequency", _num(tree.mask_max_gap_frequency),
            "--p-mask-min-conservation", _num(tree.mask_min_conservation),
            "--o-alignment", str(layout.aligned_rep_seqs(strategy)),
            "--o-masked-alignment", str(layout.masked_rep_seqs(strategy)),
            "--o-tree", str(layout.unrooted_tree(strategy)),
            "--o-rooted-tree", str(layout.rooted_tree(strategy)),
            "--verbose",
        ],
        layout.log("05_mafft-fastree"),
    )
    return [
        ctx.produce(ALIGNMENT, layout.aligned_rep_seqs(strategy)),
        ctx.produce(MASKED_ALIGNMENT, layout.masked_rep_seqs(strategy)),
        ctx.produce(UNROOTED_TREE, layout.unrooted_tree(strategy)),
        ctx.produce(ROOTED_TREE, layout.rooted_tree(strategy)),
    ]


def build_tree_iqtree(ctx: PipelineContext, strategy: TreeStrategy) -> List[Artifact]:
    layout: ProjectLayout = ctx.layout
    tree = strategy.settings
    rep_seqs = ctx.require(REP_SEQS)
    aligned = layout.aligned_rep_seqs(strategy)
    masked = layout.masked_rep_seqs(strategy)
    unrooted = layout.unrooted_tree(strategy)
    rooted = layout.rooted_tree(strategy)
    layout.tree_dir(strategy).mkdir(parents=True, exist_ok=True)

    ctx.run_tool(
        [
            "qiime", "alignment", "mafft",
            "--i-sequences", str(rep_seqs),
            "--p-n-threads", str(tree.n_threads),
            "--o-alignment", str(aligned),
            "--verbose",
        ],
        layout.log("05_mafft-alignment"),
    )
    ctx.run_tool(
        [
            "qiime", "alignment", "mask",
            "--i-alignment", str(aligned),
            "--p-max-gap-frequency", _num(tree.mask_max_gap_frequency),
            "--p-min-conservation", _num(tree.mask_min_conservation),
            "--o-masked-alignment", str(masked),
            "--verbose",
        ],
        layout.log("06_mask-alignment"),
    )
    ctx.run_tool(
        [
            "qiime", "phylogeny", "iqtree-ultrafast-bootstrap",
            "--i-alignment", str(masked),
            "--p-seed", str(tree.seed),
            "--p-n-cores", str(tree.n_threads),
            "--p-n-runs", str(tree.n_runs),
            "--p-substitution-model", tree.substitution_model,
            "--p-bootstrap-replicates", str(tree.bootstrap_replicates),
            "--p-stop-iter", str(tree.stop_iter),
            "--p-perturb-nni-strength", _num(tree.perturb_nni_strength),
            "--p-bnni",
            "--o-tree", str(unrooted),
            "--verbose",
        ],
        layout.log("07_iqtree-ultrafast-bootstrap"),
    )
    ctx.run_tool(
        [
            "qiime", "phylogeny", "midpoint-root",
            "--i-tree", str(unrooted),
            "--o-rooted-tree", str(rooted),
            "--verbose",
        ],
        layout.log("08_midpoint-root"),
    )
    return [
        ctx.produce(ALIGNMENT, aligned),
        ctx.produce(MASKED_ALIGNMENT, masked),
        ctx.produce(UNROOTED_TREE, unrooted),
        ctx.produce(ROOTED_TREE, rooted),
    ]


def build_tree_sepp(ctx: PipelineContext, strategy: TreeStrategy) -> List[Artifact]:
    layout: ProjectLayout = ctx.layout
    tree = strategy.settings
    log = ctx.logger
    log.info("This tree will be built upon the Greengenes 13_8 99% reference tree.")
    log.info("Other reference trees are not supported by this workflow, but are by QIIME 2.")
    ctx.prompter.checkpoint(
        "Do you wish to terminate the script here?[y/n] ", ctx.settings.confirm_timeout
    )

    rep_seqs = ctx.require(REP_SEQS)
    table = ctx.require(FEATURE_TABLE)
    rooted = layout.rooted_tree(strategy)
    layout.tree_dir(strategy).mkdir(parents=True, exist_ok=True)
    layout.sepp_filtered_dir.mkdir(parents=True, exist_ok=True)

    ctx.run_tool(
        [
            "qiime", "fragment-insertion", "sepp",
            "--i-representative-sequences", str(rep_seqs),
            "--p-threads", str(tree.sepp_threads),
            "--o-tree", str(rooted),
            "--o-placements", str(layout.insertion_placements),
            "--verbose",
        ],
        layout.log("05_fragment-insertion-sepp"),
    )
    ctx.run_tool(
        [
            "qiime", "fragment-insertion", "filter-features",
            "--i-table", str(table),
            "--i-tree", str(rooted),
            "--o-filtered-table", str(layout.sepp_filtered_table),
            "--o-removed-table", str(layout.sepp_removed_table),
            "--verbose",
        ],
        layout.log("06_fragment-insertion-filter"),
    )
    return [
        ctx.produce(ROOTED_TREE, rooted),
        ctx.produce(PLACEMENTS, layout.insertion_placements),
        ctx.produce(SEPP_FILTERED_TABLE, layout.sepp_filtered_table),
        ctx.produce(SEPP_REMOVED_TABLE, layout.sepp_removed_table),
    ]


TREE_BUILDERS = {
    TreeStrategy.MAFFT_FASTTREE: build_tree_mafft_fasttree,
    TreeStrategy.IQTREE_BOOTSTRAP: build_tree_iqtree,
    TreeStrategy.FRAGMENT_INSERTION: build_tree_sepp,
}


def stage_tree(ctx: PipelineContext) -> List[Artifact]:
    settings: DatasetSettings = ctx.settings
    log = ctx.logger
    log.info("A rooted phylogenetic tree will now be created. You can choose:")
    for strategy, tree in TREE_SETTINGS.items():
        log.info("%s) %s", strategy.value, tree.summary)
    ctx.prompter.checkpoint(
        "Do you wish to terminate the script here?[y/n] ", settings.confirm_timeout
    )
    strategy = ctx.prompter.resolve(tree_parameter(settings))
    ctx.options["tree_strategy"] = strategy
    log.info("Tree method: %s (%s)", strategy.value, strategy.settings.dir_name)
    return TREE_BUILDERS[strategy](ctx, strategy)


def stage_classify(ctx: PipelineContext) -> List[Artifact]:
    layout: ProjectLayout = ctx.layout
    settings: DatasetSettings = ctx.settings
    ctx.logger.info(
        "The reads will now be mapped to their taxonomy with a trained classifier "
        "[*.qza]. If no input is provided, %s is used.", layout.default_classifier,
    )
    classifier = ctx.prompter.confirm(
        [classifier_parameter(layout, settings)],
        question="Do you wish to change this?[y/n] ",
        timeout=settings.confirm_timeout,
    )["classifier"]
    ctx.options["classifier"] = classifier
    if not classifier.is_file():
        raise MissingArtifact("classifier", classifier, stage=ctx.stage)

    rep_seqs = ctx.require(REP_SEQS)
    name = classifier_name(classifier)
    taxonomy = layout.taxonomy(classifier)
    taxonomy_qzv = layout.taxonomy_summary(classifier)
    layout.taxonomy_dir(classifier).mkdir(parents=True, exist_ok=True)

    ctx.run_tool(
        [
            "qiime", "feature-classifier", "classify-sklearn",
            "--i-classifier", str(classifier),
            "--i-reads", str(rep_seqs),
            "--o-classification", str(taxonomy),
            "--verbose",
        ],
        layout.log(f"09_{name}-taxonomy"),
    )
    ctx.run_tool(
        [
            "qiime", "metadata", "tabulate",
            "--m-input-file", str(taxonomy),
            "--o-visualization", str(taxonomy_qzv),
        ],
        layout.log(f"09_{name}-taxonomy-tabulate"),
    )
    return [
        ctx.produce(TAXONOMY, taxonomy),
        ctx.produce(TAXONOMY_SUMMARY, taxonomy_qzv),
    ]


def stage_rarefy(ctx: PipelineContext) -> List[Artifact]:
    layout: ProjectLayout = ctx.layout
    settings: DatasetSettings = ctx.settings
    ctx.logger.info(
        "Collectors curves (alpha-rarefaction) show whether the sequencing depth is "
        "high enough to assess sample alpha-diversity."
    )
    ctx.logger.info(
        "The max depth should be close to the median 'Frequency per sample' in %s. "
        "If no input is provided, %d is used.", layout.table_summary, settings.rarefaction_depth,
    )
    depth = ctx.prompter.resolve(rarefaction_parameter(settings))

    table = ctx.require(FEATURE_TABLE)
    tree = ctx.require(ROOTED_TREE)
    metadata = ctx.options.get("metadata")
    if metadata is None:
        raise MissingArtifact("sample metadata", stage=ctx.stage)
    layout.collectors_dir.mkdir(parents=True, exist_ok=True)

    ctx.run_tool(
        [
            "qiime", "diversity", "alpha-rarefaction",
            "--i-table", str(table),
            "--i-phylogeny", str(tree),
            "--p-max-depth", str(depth),
            "--m-metadata-file", str(metadata),
            "--o-visualization", str(layout.alpha_rarefaction),
            "--verbose",
        ],
        layout.log("10_collectors-curves"),
    )
    return [ctx.produce(RAREFACTION, layout.alpha_rarefaction)]


def stage_export(ctx: PipelineContext) -> List[Artifact]:
    layout: ProjectLayout = ctx.layout
    log = ctx.logger
    log.info(
        "The feature table, rooted tree, taxonomy and representative sequences can be "
        "exported to BIOM, Newick and FASTA files (e.g. for the phyloseq R package)."
    )
    if ctx.prompter.ask_yes_no(
        "Do you wish to skip the export step?[y/n] (DEFAULT: No) ",
        ctx.settings.export_timeout,
    ):
        log.info("Export skipped. Use 'qiime tools export' to export features later.")
        return []

    log.info("The features will be exported in %s", layout.export_dir)
    exported = export_features(
        invoker=ctx.invoker,
        table_qza=ctx.require(FEATURE_TABLE),
        rooted_tree_qza=ctx.require(ROOTED_TREE),
        taxonomy_qza=ctx.require(TAXONOMY),
        rep_seqs_qza=ctx.require(REP_SEQS),
        export_dir=layout.export_dir,
        log_file=layout.log("11_export"),
        stage=ctx.stage,
        logger=log,
    )
    log.info("BIOM file with feature table and taxonomy saved as: %s", exported.merged_table)
    log.info("Rooted tree saved as: %s", exported.tree)
    log.info("Representative sequences saved as: %s", exported.sequences)
    return [
        ctx.produce(EXPORTED_TABLE, exported.feature_table),
        ctx.produce(EXPORTED_TREE, exported.tree),
        ctx.produce(EXPORTED_TAXONOMY, exported.taxonomy),
        ctx.produce(EXPORTED_SEQUENCES, exported.sequences),
        ctx.produce(MERGED_TABLE, exported.merged_table),
        ctx.produce(TAXONOMY_COUNTS, exported.taxonomy_summary),
    ]


def build_stages(*, which: Callable[[str], Optional[str]] = shutil.which) -> List[Stage]:
    """The fixed stage order of the make-dataset workflow."""
    return [
        Stage(PipelineState.PRECHECK, "Precondition checks", partial(stage_precheck, which=which)),
        Stage(PipelineState.IMPORT, "Import reads", stage_import),
        Stage(PipelineState.TRIM, "Trimming with q2-cutadapt", stage_trim),
        Stage(PipelineState.DENOISE, "Denoise with DADA2", stage_denoise),
        Stage(PipelineState.TREE_BUILD, "Rooted phylogenetic tree", stage_tree),
        Stage(PipelineState.CLASSIFY, "Taxonomic classification", stage_classify),
        Stage(PipelineState.RAREFY, "Collectors curves", stage_rarefy),
        Stage(PipelineState.EXPORT, "Export features", stage_export),
    ]


# ----------------------------- main orchestration ----------------------------- #

def build_workflow(
    *,
    project_dir: Path,
    reader: Reader = terminal_reader,
    invoker: Optional[ToolInvoker] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
    settings: DatasetSettings = DatasetSettings(),
    logger: Optional[logging.Logger] = None,
) -> Tuple[StageSequencer, PipelineContext]:
    """Assemble the sequencer and a fresh context for one run."""
    logger = logger or setup_logging(name="q2_make_dataset")
    layout = ProjectLayout(Path(project_dir))
    if invoker is None:
        invoker = ToolInvoker(logger=logger, env=tmp_environment(layout.tmp))
    ctx = PipelineContext(
        layout=layout,
        logger=logger,
        invoker=invoker,
        prompter=Prompter(reader=reader, logger=logger),
        settings=settings,
    )
    return StageSequencer(build_stages(which=which), logger=logger), ctx


def run_make_dataset(**kwargs) -> int:
    """Run the workflow; return the process exit code."""
    sequencer, ctx = build_workflow(**kwargs)
    log_memory_usage(ctx.logger, prefix="START")
    code = sequencer.run(ctx)
    if code == 0:
        ctx.logger.info("The \"Make Dataset\" workflow is finished.")
        ctx.logger.info("  ---  THIS SCRIPT ENDS HERE  ---  ")
    log_memory_usage(ctx.logger, prefix="END", extra_msg=sequencer.state.value)
    return code


def build_arg_parser() -> argparse.ArgumentParser:
    """No options: the workflow is fully interactive."""
    return argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )


def main() -> None:
    """Entry point; run from the project root."""
    build_arg_parser().parse_args()
    try:
        code = run_make_dataset(project_dir=Path.cwd())
    except KeyboardInterrupt:
        sys.stderr.write("\nInterrupted by user.\n")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
