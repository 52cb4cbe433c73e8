#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Export final artefacts to interchange formats for use outside QIIME 2.

Outputs (all in one export directory)
-------------------------------------
feature-table.biom           feature table
tree.nwk                     rooted tree
taxonomy.tsv                 taxonomy, header rewritten to '#OTUID\ttaxonomy\tconfidence'
dna-sequences.fasta          representative sequences
feature-table-taxonomy.biom  feature table with taxonomy as observation metadata
taxonomy-summary.tsv         feature counts and mean confidence per phylum

The merge itself is delegated to ``biom add-metadata``; this module only
fixes the taxonomy header so the merge sees the expected column schema.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import pandas as pd

from q2_errors import MissingArtifact
from q2_tools import ToolInvoker


OBSERVATION_HEADER = ("OTUID", "taxonomy", "confidence")
TAXONOMY_HEADER = "#" + "\t".join(OBSERVATION_HEADER)


@dataclass(frozen=True)
class ExportedFeatures:
    """Paths written by ``export_features``."""

    feature_table: Path
    tree: Path
    taxonomy: Path
    sequences: Path
    merged_table: Path
    taxonomy_summary: Path

    def as_list(self) -> List[Path]:
        return [
            self.feature_table,
            self.tree,
            self.taxonomy,
            self.sequences,
            self.merged_table,
            self.taxonomy_summary,
        ]


def rewrite_taxonomy_header(taxonomy_tsv: Path) -> Path:
    """
    Replace the first line of an exported taxonomy TSV with the fixed header.

    The first line is overwritten whatever it contains (QIIME writes
    'Feature ID\\tTaxon\\tConfidence'); body rows are kept verbatim.
    """
    with taxonomy_tsv.open("r", encoding="utf-8", errors="replace") as fh:
        lines = fh.readlines()
    body = lines[1:]
    with taxonomy_tsv.open("w", encoding="utf-8") as out:
        out.write(TAXONOMY_HEADER + "\n")
        out.writelines(body)
    return taxonomy_tsv


def summarise_taxonomy(*, taxonomy_tsv: Path, out_tsv: Path) -> pd.DataFrame:
    """
    Count features per phylum (second rank) and average their confidence.

    Features without a second rank are reported as 'Unassigned'.
    """
    tax = pd.read_csv(taxonomy_tsv, sep="\t", dtype=str).iloc[:, :3]
    tax.columns = list(OBSERVATION_HEADER[: tax.shape[1]])
    if "confidence" not in tax.columns:
        tax["confidence"] = None
    ranks = tax["taxonomy"].fillna("").str.split(";")
    tax["phylum"] = ranks.map(
        lambda r: r[1].strip() if len(r) > 1 and r[1].strip() else "Unassigned"
    )
    tax["confidence"] = pd.to_numeric(tax["confidence"], errors="coerce")
    summary = (
        tax.groupby("phylum")
        .agg(n_features=("OTUID", "count"), mean_confidence=("confidence", "mean"))
        .reset_index()
        .sort_values(["n_features", "phylum"], ascending=[False, True])
    )
    out_tsv.parent.mkdir(parents=True, exist_ok=True)
    summary.to_csv(out_tsv, sep="\t", index=False, float_format="%.4f")
    return summary


def export_features(
    *,
    invoker: ToolInvoker,
    table_qza: Path,
    rooted_tree_qza: Path,
    taxonomy_qza: Path,
    rep_seqs_qza: Path,
    export_dir: Path,
    log_file: Path,
    stage: Optional[str] = "Export",
    logger: Optional[logging.Logger] = None,
) -> ExportedFeatures:
    """
    Export the four final artefacts and merge taxonomy into the table.

    Raises
    ------
    ExternalToolFailure
        If any export or the biom merge exits non-zero.
    MissingArtifact
        If an export did not write its expected file.
    """
    export_dir.mkdir(parents=True, exist_ok=True)
    for qza in (table_qza, rooted_tree_qza, taxonomy_qza, rep_seqs_qza):
        invoker.run(
            cmd=[
                "qiime", "tools", "export",
                "--input-path", str(qza),
                "--output-path", str(export_dir),
            ],
            log_file=log_file,
            stage=stage,
        )

    biom_fp = export_dir / "feature-table.biom"
    taxonomy_tsv = export_dir / "taxonomy.tsv"
    for expected, role in ((biom_fp, "feature table (BIOM)"), (taxonomy_tsv, "taxonomy (TSV)")):
        if not expected.exists():
            raise MissingArtifact(role, expected, stage=stage)

    rewrite_taxonomy_header(taxonomy_tsv)

    merged = export_dir / "feature-table-taxonomy.biom"
    invoker.run(
        cmd=[
            "biom", "add-metadata",
            "-i", str(biom_fp),
            "--observation-metadata-fp", str(taxonomy_tsv),
            "--observation-header", ",".join(OBSERVATION_HEADER),
            "--sc-separated", "taxonomy",
            "-o", str(merged),
        ],
        log_file=log_file,
        stage=stage,
    )

    summary_tsv = export_dir / "taxonomy-summary.tsv"
    summary = summarise_taxonomy(taxonomy_tsv=taxonomy_tsv, out_tsv=summary_tsv)
    if logger is not None:
        logger.info(
            "Exported %d features across %d phyla.",
            int(summary["n_features"].sum()), len(summary),
        )

    return ExportedFeatures(
        feature_table=biom_fp,
        tree=export_dir / "tree.nwk",
        taxonomy=taxonomy_tsv,
        sequences=export_dir / "dna-sequences.fasta",
        merged_table=merged,
        taxonomy_summary=summary_tsv,
    )
