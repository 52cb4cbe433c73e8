"""Tests for exporting features and merging taxonomy into the BIOM table."""

import pandas as pd
import pytest

from conftest import FakeInvoker, flag_value
from q2_errors import ExternalToolFailure, MissingArtifact
from q2_export import (
    TAXONOMY_HEADER,
    export_features,
    rewrite_taxonomy_header,
    summarise_taxonomy,
)


@pytest.fixture
def qzas(tmp_path):
    names = ("table.qza", "rooted-tree.qza", "taxonomy.qza", "rep-seqs.qza")
    paths = {}
    for name in names:
        paths[name] = tmp_path / "interim" / name
        paths[name].parent.mkdir(parents=True, exist_ok=True)
        paths[name].write_text("qza")
    return paths


def run_export(invoker, qzas, tmp_path):
    return export_features(
        invoker=invoker,
        table_qza=qzas["table.qza"],
        rooted_tree_qza=qzas["rooted-tree.qza"],
        taxonomy_qza=qzas["taxonomy.qza"],
        rep_seqs_qza=qzas["rep-seqs.qza"],
        export_dir=tmp_path / "interim" / "exported-features",
        log_file=tmp_path / "logs" / "11_export.log",
    )


class TestRewriteHeader:

    def test_qiime_header_is_replaced(self, tmp_path):
        tsv = tmp_path / "taxonomy.tsv"
        tsv.write_text("Feature ID\tTaxon\tConfidence\nf1\tk__Bacteria\t0.9\n")
        rewrite_taxonomy_header(tsv)
        assert tsv.read_text() == "#OTUID\ttaxonomy\tconfidence\nf1\tk__Bacteria\t0.9\n"

    def test_first_line_is_replaced_even_without_a_header(self, tmp_path):
        tsv = tmp_path / "taxonomy.tsv"
        tsv.write_text("f0\tk__Archaea\t0.7\nf1\tk__Bacteria\t0.9\n")
        rewrite_taxonomy_header(tsv)
        lines = tsv.read_text().splitlines()
        assert lines == [TAXONOMY_HEADER, "f1\tk__Bacteria\t0.9"]

    def test_empty_file_gets_header(self, tmp_path):
        tsv = tmp_path / "taxonomy.tsv"
        tsv.write_text("")
        rewrite_taxonomy_header(tsv)
        assert tsv.read_text() == TAXONOMY_HEADER + "\n"


def test_summarise_taxonomy(tmp_path):
    tsv = tmp_path / "taxonomy.tsv"
    tsv.write_text(
        "#OTUID\ttaxonomy\tconfidence\n"
        "f1\tk__Bacteria; p__Proteobacteria\t0.9\n"
        "f2\tk__Bacteria; p__Proteobacteria\t0.7\n"
        "f3\tk__Bacteria; p__Chloroflexi\t0.8\n"
        "f4\tUnassigned\t0.5\n"
    )
    out = tmp_path / "taxonomy-summary.tsv"
    summary = summarise_taxonomy(taxonomy_tsv=tsv, out_tsv=out)

    # most features first, ties by name
    assert summary["phylum"].tolist() == ["p__Proteobacteria", "Unassigned", "p__Chloroflexi"]
    counts = dict(zip(summary["phylum"], summary["n_features"]))
    assert counts == {"p__Proteobacteria": 2, "p__Chloroflexi": 1, "Unassigned": 1}
    written = pd.read_csv(out, sep="\t")
    assert list(written.columns) == ["phylum", "n_features", "mean_confidence"]
    row = written[written["phylum"] == "p__Proteobacteria"].iloc[0]
    assert row["mean_confidence"] == pytest.approx(0.8)


class TestExportFeatures:

    def test_exports_and_merges(self, tmp_path, logger, qzas):
        invoker = FakeInvoker(logger=logger)
        exported = run_export(invoker, qzas, tmp_path)

        exports = [c for c in invoker.commands if c[:3] == ["qiime", "tools", "export"]]
        assert [flag_value(c, "--input-path") for c in exports] == [
            str(qzas[n]) for n in ("table.qza", "rooted-tree.qza", "taxonomy.qza", "rep-seqs.qza")
        ]
        merge = invoker.find("biom", "add-metadata")
        assert flag_value(merge, "--observation-header") == "OTUID,taxonomy,confidence"
        assert flag_value(merge, "--sc-separated") == "taxonomy"
        assert flag_value(merge, "-o") == str(exported.merged_table)

        assert exported.taxonomy.read_text().splitlines()[0] == "#OTUID\ttaxonomy\tconfidence"
        assert all(path.exists() for path in exported.as_list())
        assert (tmp_path / "logs" / "11_export.log").exists()

    def test_missing_export_file(self, tmp_path, logger, qzas):
        invoker = FakeInvoker(logger=logger, skip_exports=["taxonomy.tsv"])
        with pytest.raises(MissingArtifact) as info:
            run_export(invoker, qzas, tmp_path)
        assert info.value.stage == "Export"
        assert not invoker.ran("biom", "add-metadata")

    def test_merge_failure(self, tmp_path, logger, qzas):
        invoker = FakeInvoker(logger=logger, fail_on="add-metadata", returncode=2)
        with pytest.raises(ExternalToolFailure) as info:
            run_export(invoker, qzas, tmp_path)
        assert info.value.returncode == 2
        assert not (tmp_path / "interim" / "exported-features" / "taxonomy-summary.tsv").exists()
