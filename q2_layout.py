#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fixed directory layout and artefact naming for the QIIME 2 workflows.

Every path is a pure function of the project root and the options in
effect (tree strategy, classifier name), so re-running a workflow always
targets the same files. Nothing here touches the filesystem; stages create
their own directories when they run.

Project layout
--------------
<project>/
    data/raw/fastq-reads/          input (Casava 1.8 demultiplexed FASTQ)
    data/metadata.tsv              default sample metadata
    data/interim/                  all QIIME 2 artefacts and visualisations
    logs/                          run log and per-step tool logs
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


DEFAULT_CLASSIFIER = "MiDAS_S123_2.1.3-trained.qza"


@dataclass(frozen=True)
class TreeSettings:
    """Per-strategy tool parameters for tree construction."""

    dir_name: str
    summary: str
    n_threads: int = 0
    mask_max_gap_frequency: float = 1.0
    mask_min_conservation: float = 0.4
    seed: int = 42
    n_runs: int = 25
    substitution_model: str = "MFP"
    bootstrap_replicates: int = 1000
    stop_iter: int = 200
    perturb_nni_strength: float = 0.2
    sepp_threads: int = 3


class TreeStrategy(Enum):
    """Exclusive choice of rooted-tree construction method."""

    MAFFT_FASTTREE = "1"
    IQTREE_BOOTSTRAP = "2"
    FRAGMENT_INSERTION = "3"

    @property
    def settings(self) -> TreeSettings:
        return TREE_SETTINGS[self]

    @classmethod
    def from_choice(cls, text: str) -> "TreeStrategy":
        """Map a menu answer ('1', '2' or '3') to a strategy."""
        try:
            return cls(text.strip())
        except ValueError:
            raise ValueError(f"Unknown tree method: {text!r}") from None


TREE_SETTINGS = {
    TreeStrategy.MAFFT_FASTTREE: TreeSettings(
        dir_name="mafft-fasttree",
        summary="mafft-fasttree pipeline: quick and dirty de-novo tree reconstruction (1-2 mins)",
    ),
    TreeStrategy.IQTREE_BOOTSTRAP: TreeSettings(
        dir_name="iqtree",
        summary="iqtree-ultrafast-bootstrap: bootstrap (1000X) validated de-novo tree (30-35 mins)",
    ),
    TreeStrategy.FRAGMENT_INSERTION: TreeSettings(
        dir_name="sepp-tree",
        summary="q2-fragment-insertion: fragment-insertion on a reference phylogenetic tree (3-7 days) (DEFAULT)",
    ),
}

DEFAULT_TREE_STRATEGY = TreeStrategy.FRAGMENT_INSERTION


def classifier_name(classifier_qza: Path) -> str:
    """Return the classifier file name without its '.qza' extension."""
    name = Path(classifier_qza).name
    return name[: -len(".qza")] if name.endswith(".qza") else name


class ProjectLayout:
    """Paths of the dataset-builder workflow.

    Attributes
    ----------
    root : Path
        Project root (the working directory the workflow is started from).
    raw : Path
        ``data/raw``; must exist before the workflow starts.
    fastq_reads : Path
        ``data/raw/fastq-reads``; the import source.
    interim : Path
        ``data/interim``; destination of every artefact.
    logs : Path
        ``logs``; run log plus one log per external step.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.data = self.root / "data"
        self.raw = self.data / "raw"
        self.fastq_reads = self.raw / "fastq-reads"
        self.interim = self.data / "interim"
        self.logs = self.root / "logs"
        self.tmp = self.interim / "tmp"
        self.run_log = self.logs / "make-dataset.log"
        self.default_metadata = self.data / "metadata.tsv"
        self.default_classifier = self.interim / DEFAULT_CLASSIFIER

    def log(self, step: str) -> Path:
        """Per-step log file, e.g. ``log('02_dada2')`` -> logs/02_dada2.log."""
        return self.logs / f"{step}.log"

    # import / trim
    @property
    def demux_seqs(self) -> Path:
        return self.interim / "demux-seqs.qza"

    @property
    def demux_summary(self) -> Path:
        return self.interim / "demux-seqs.qzv"

    @property
    def trimmed_seqs(self) -> Path:
        return self.interim / "trimmed-demux-seqs.qza"

    @property
    def trimmed_summary(self) -> Path:
        return self.interim / "trimmed-demux-seqs.qzv"

    # denoise
    @property
    def dada2_dir(self) -> Path:
        return self.interim / "dada2-denoise"

    @property
    def table(self) -> Path:
        return self.dada2_dir / "table.qza"

    @property
    def rep_seqs(self) -> Path:
        return self.dada2_dir / "rep-seqs.qza"

    @property
    def denoising_stats(self) -> Path:
        return self.dada2_dir / "denoising-stats.qza"

    @property
    def table_summary(self) -> Path:
        return self.dada2_dir / "table-summarize.qzv"

    @property
    def rep_seqs_mapping(self) -> Path:
        return self.dada2_dir / "rep-seqs-mapping.qzv"

    # tree
    def tree_dir(self, strategy: TreeStrategy) -> Path:
        return self.interim / strategy.settings.dir_name

    def rooted_tree(self, strategy: TreeStrategy) -> Path:
        return self.tree_dir(strategy) / "rooted-tree.qza"

    def aligned_rep_seqs(self, strategy: TreeStrategy) -> Path:
        return self.tree_dir(strategy) / "aligned-rep-seqs.qza"

    def masked_rep_seqs(self, strategy: TreeStrategy) -> Path:
        return self.tree_dir(strategy) / "masked-aligned-rep-seqs.qza"

    def unrooted_tree(self, strategy: TreeStrategy) -> Path:
        if strategy is TreeStrategy.IQTREE_BOOTSTRAP:
            return self.tree_dir(strategy) / "UFboot-nni-iqtree.qza"
        return self.tree_dir(strategy) / "tree.qza"

    @property
    def insertion_placements(self) -> Path:
        return self.tree_dir(TreeStrategy.FRAGMENT_INSERTION) / "insertion-placements.qza"

    @property
    def sepp_filtered_dir(self) -> Path:
        return self.interim / "sepp-filtered-table"

    @property
    def sepp_filtered_table(self) -> Path:
        return self.sepp_filtered_dir / "sepp-filtered-table.qza"

    @property
    def sepp_removed_table(self) -> Path:
        return self.sepp_filtered_dir / "sepp-removed-table.qza"

    # taxonomy
    def taxonomy_dir(self, classifier_qza: Path) -> Path:
        return self.interim / f"{classifier_name(classifier_qza)}-taxonomy"

    def taxonomy(self, classifier_qza: Path) -> Path:
        return self.taxonomy_dir(classifier_qza) / "taxonomy.qza"

    def taxonomy_summary(self, classifier_qza: Path) -> Path:
        return self.taxonomy_dir(classifier_qza) / "taxonomy.qzv"

    # rarefaction / export
    @property
    def collectors_dir(self) -> Path:
        return self.interim / "collectors-curves"

    @property
    def alpha_rarefaction(self) -> Path:
        return self.collectors_dir / "alpha-rarefaction.qzv"

    @property
    def export_dir(self) -> Path:
        return self.interim / "exported-features"


class ClassifierLayout:
    """Paths of the classifier-trainer workflow below its output directory."""

    def __init__(self, out_dir: Path, name: str) -> None:
        self.out_dir = Path(out_dir)
        self.name = name
        self.run_log = self.out_dir / "make-classifier.log"
        self.ref_seqs_raw = self.out_dir / f"{name}.qza"
        self.ref_taxonomy = self.out_dir / "ref-taxonomy.qza"
        self.ref_reads = self.out_dir / "ref-seqs.qza"
        self.trained = self.out_dir / f"{name}-trained.qza"
        self.test_taxonomy = self.out_dir / "test-taxonomy.qza"
        self.test_summary = self.out_dir / "test-taxonomy.qzv"

    def log(self, step: str) -> Path:
        return self.out_dir / f"{step}.log"
