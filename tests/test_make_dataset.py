"""End-to-end tests of the make-dataset workflow against a fake toolkit."""

import pytest

from conftest import FakeInvoker, ScriptedInput, fake_which, flag_value
from q2_errors import (
    ExternalToolFailure,
    MissingArtifact,
    MissingExecutable,
    WrongWorkingDirectory,
)
from q2_layout import ProjectLayout, TreeStrategy
from q2_make_dataset import build_arg_parser, build_workflow, run_make_dataset
from q2_pipeline import PipelineState


def dataset_answers(
    *,
    trunc=("", ""),
    trim=("", ""),
    metadata=("",),
    tree="",
    classifier="",
    depth="",
    skip_export="n",
):
    """Answers for every prompt of a full run, in prompt order."""
    answers = ["n"]                      # terminate now?
    answers += ["", "", "n"]             # adapters, change them?
    answers += [*trunc, "n"]             # truncation lengths, change them?
    answers += [*trim, "n"]              # trim lengths, change them?
    answers += ["n"]                     # terminate before metadata?
    answers += [*metadata, "n"]          # metadata path, change it?
    answers += ["n", tree]               # terminate before tree?, method
    if tree not in ("1", "2"):
        answers += ["n"]                 # terminate before SEPP?
    answers += [classifier, "n"]         # classifier, change this?
    answers += [depth]                   # max rarefaction depth
    answers += [skip_export]             # skip the export step?
    return answers


def run(project, answers, invoker, logger, **kwargs):
    reader = ScriptedInput(answers)
    options = dict(
        project_dir=project, reader=reader, invoker=invoker, which=fake_which, logger=logger
    )
    options.update(kwargs)
    sequencer, ctx = build_workflow(**options)
    code = sequencer.run(ctx)
    return code, sequencer, ctx, reader


class TestFullRun:

    def test_defaults(self, project, invoker, logger):
        code, sequencer, ctx, _ = run(project, dataset_answers(), invoker, logger)
        layout = ProjectLayout(project)

        assert code == 0
        assert sequencer.state is PipelineState.DONE
        cutadapt = invoker.find("qiime", "cutadapt", "trim-paired")
        assert flag_value(cutadapt, "--p-front-f") == "CCTAYGGGRBGCASCAG"
        assert flag_value(cutadapt, "--p-front-r") == "GGACTACHVGGGTWTCTAAT"
        assert flag_value(cutadapt, "--p-cores") == "3"
        assert flag_value(cutadapt, "--p-error-rate") == "0.1"
        dada2 = invoker.find("qiime", "dada2", "denoise-paired")
        assert [flag_value(dada2, f) for f in (
            "--p-trunc-len-f", "--p-trunc-len-r", "--p-trim-left-f", "--p-trim-left-r"
        )] == ["275", "250", "5", "5"]
        classify = invoker.find("qiime", "feature-classifier", "classify-sklearn")
        assert flag_value(classify, "--i-classifier") == str(layout.default_classifier)
        rarefy = invoker.find("qiime", "diversity", "alpha-rarefaction")
        assert flag_value(rarefy, "--p-max-depth") == "20000"
        assert flag_value(rarefy, "--m-metadata-file") == str(layout.default_metadata)
        assert flag_value(rarefy, "--i-phylogeny") == str(
            layout.rooted_tree(TreeStrategy.FRAGMENT_INSERTION)
        )

        taxonomy_tsv = layout.export_dir / "taxonomy.tsv"
        assert taxonomy_tsv.read_text().splitlines()[0] == "#OTUID\ttaxonomy\tconfidence"
        assert (layout.export_dir / "feature-table-taxonomy.biom").exists()
        assert (layout.export_dir / "taxonomy-summary.tsv").exists()
        assert layout.log("02_dada2").exists()
        assert layout.log("11_export").exists()
        assert "Logging to" in layout.run_log.read_text()

    def test_timeouts_take_defaults(self, project, invoker, logger):
        answers = [None if a in ("", "n") else a for a in dataset_answers()]
        code, sequencer, _, _ = run(project, answers, invoker, logger)
        assert code == 0
        dada2 = invoker.find("qiime", "dada2", "denoise-paired")
        assert flag_value(dada2, "--p-trunc-len-f") == "275"
        assert invoker.ran("qiime", "fragment-insertion", "sepp")
        assert invoker.ran("qiime", "tools", "export")

    def test_prompt_timeouts(self, project, invoker, logger):
        seen = []

        def reader(prompt, timeout):
            seen.append((prompt, timeout))
            return answers.pop(0)

        answers = dataset_answers()
        sequencer, ctx = build_workflow(
            project_dir=project, reader=reader, invoker=invoker, which=fake_which, logger=logger
        )
        assert sequencer.run(ctx) == 0
        timeouts = dict(seen)
        assert timeouts["Terminate the script now?[y/n] "] == 100.0
        assert timeouts["Select method:[1/2/3] DEFAULT:3 "] == 100.0
        assert timeouts["Full path of the trained classifier:[*.qza] "] == 200.0
        assert timeouts["Do you wish to change them?[y/n] "] == 60.0

    def test_child_temp_directory(self, project, logger):
        sequencer, ctx = build_workflow(project_dir=project, logger=logger, which=fake_which)
        tmp = str(project / "data" / "interim" / "tmp")
        assert ctx.invoker.env == {"TMPDIR": tmp, "TEMP": tmp, "TMP": tmp}

    def test_run_creates_qiime2_temp_cache(self, project, invoker, logger):
        code, _, _, _ = run(project, dataset_answers(), invoker, logger)
        assert code == 0
        assert (project / "data" / "interim" / "tmp" / "qiime2").is_dir()

    def test_run_make_dataset_exit_code(self, project, invoker, logger):
        code = run_make_dataset(
            project_dir=project, reader=ScriptedInput(dataset_answers(skip_export="y")),
            invoker=invoker, which=fake_which, logger=logger,
        )
        assert code == 0


class TestParameters:

    def test_truncation_accepted_verbatim(self, project, invoker, logger):
        code, *_ = run(project, dataset_answers(trunc=("275", "250")), invoker, logger)
        assert code == 0
        dada2 = invoker.find("qiime", "dada2", "denoise-paired")
        assert flag_value(dada2, "--p-trunc-len-f") == "275"
        assert flag_value(dada2, "--p-trunc-len-r") == "250"

    def test_out_of_range_truncation_is_flagged(self, project, invoker, logger):
        code, *_ = run(project, dataset_answers(trunc=("9999", "250")), invoker, logger)
        assert code == 0
        dada2 = invoker.find("qiime", "dada2", "denoise-paired")
        assert flag_value(dada2, "--p-trunc-len-f") == "9999"
        run_log = ProjectLayout(project).run_log.read_text()
        assert "(9999) is outside the suggested range [0-500]" in run_log

    def test_trim_range_checks_trim_values(self, project, invoker, logger):
        code, *_ = run(project, dataset_answers(trim=("60", "5")), invoker, logger)
        assert code == 0
        run_log = ProjectLayout(project).run_log.read_text()
        assert "forward read 5' trim (60) is outside the suggested range [0-50]" in run_log

    def test_change_request_keeps_other_groups(self, project, invoker, logger):
        answers = dataset_answers(trunc=("300", "200"), trim=("1", "1", "y", "10", "10"))
        code, *_ = run(project, answers, invoker, logger)
        assert code == 0
        dada2 = invoker.find("qiime", "dada2", "denoise-paired")
        assert [flag_value(dada2, f) for f in (
            "--p-trunc-len-f", "--p-trunc-len-r", "--p-trim-left-f", "--p-trim-left-r"
        )] == ["300", "200", "10", "10"]

    def test_missing_metadata_is_reprompted(self, project, invoker, logger):
        layout = ProjectLayout(project)
        layout.default_metadata.unlink()
        samples = project / "data" / "samples.tsv"
        samples.write_text("sample-id\tgroup\nS1\tA\n")

        answers = dataset_answers(metadata=("", str(samples)))
        code, _, ctx, reader = run(project, answers, invoker, logger)

        assert code == 0
        metadata_prompts = [p for p in reader.prompts if p.startswith("Metadata file path")]
        assert len(metadata_prompts) == 2
        assert str(layout.default_metadata) in metadata_prompts[0]
        assert ctx.options["metadata"] == samples
        summarize = invoker.find("qiime", "feature-table", "summarize")
        assert flag_value(summarize, "--m-sample-metadata-file") == str(samples)
        assert "non-readable, empty, or missing" in layout.run_log.read_text()

    @pytest.mark.parametrize("depth, used", [("100", "20000"), ("abc", "20000"), ("30000", "30000")])
    def test_rarefaction_depth(self, project, invoker, logger, depth, used):
        code, *_ = run(project, dataset_answers(depth=depth), invoker, logger)
        assert code == 0
        rarefy = invoker.find("qiime", "diversity", "alpha-rarefaction")
        assert flag_value(rarefy, "--p-max-depth") == used

    def test_custom_classifier(self, project, invoker, logger):
        clf = project / "refs" / "silva-138-trained.qza"
        clf.parent.mkdir()
        clf.write_text("classifier")
        code, *_ = run(project, dataset_answers(classifier=str(clf)), invoker, logger)
        layout = ProjectLayout(project)
        assert code == 0
        assert (layout.interim / "silva-138-trained-taxonomy" / "taxonomy.qza").exists()
        assert layout.log("09_silva-138-trained-taxonomy").exists()

    def test_non_qza_classifier_uses_default(self, project, invoker, logger):
        code, *_ = run(project, dataset_answers(classifier="classifier.txt"), invoker, logger)
        assert code == 0
        classify = invoker.find("qiime", "feature-classifier", "classify-sklearn")
        assert flag_value(classify, "--i-classifier") == str(ProjectLayout(project).default_classifier)


class TestTreeStrategies:

    @pytest.mark.parametrize(
        "choice, chosen, command",
        [
            ("1", "mafft-fasttree", ("qiime", "phylogeny", "align-to-tree-mafft-fasttree")),
            ("2", "iqtree", ("qiime", "phylogeny", "iqtree-ultrafast-bootstrap")),
            ("3", "sepp-tree", ("qiime", "fragment-insertion", "sepp")),
        ],
    )
    def test_strategies_are_exclusive(self, project, invoker, logger, choice, chosen, command):
        code, _, ctx, _ = run(project, dataset_answers(tree=choice), invoker, logger)
        interim = project / "data" / "interim"
        assert code == 0
        assert ctx.options["tree_strategy"] is TreeStrategy(choice)
        assert invoker.ran(*command)
        for name in {"mafft-fasttree", "iqtree", "sepp-tree"} - {chosen}:
            assert not (interim / name).exists()
        assert (interim / chosen / "rooted-tree.qza").exists()
        assert (interim / "sepp-filtered-table").exists() == (choice == "3")

    def test_iqtree_steps(self, project, invoker, logger):
        code, *_ = run(project, dataset_answers(tree="2"), invoker, logger)
        assert code == 0
        iqtree = invoker.find("qiime", "phylogeny", "iqtree-ultrafast-bootstrap")
        assert flag_value(iqtree, "--p-bootstrap-replicates") == "1000"
        assert flag_value(iqtree, "--p-seed") == "42"
        assert flag_value(iqtree, "--o-tree").endswith("UFboot-nni-iqtree.qza")
        root = invoker.find("qiime", "phylogeny", "midpoint-root")
        assert flag_value(root, "--i-tree") == flag_value(iqtree, "--o-tree")
        assert not invoker.ran("qiime", "fragment-insertion")
        assert not invoker.ran("qiime", "phylogeny", "align-to-tree-mafft-fasttree")

    def test_unknown_choice_uses_fragment_insertion(self, project, invoker, logger):
        code, _, ctx, _ = run(project, dataset_answers(tree="7"), invoker, logger)
        assert code == 0
        assert ctx.options["tree_strategy"] is TreeStrategy.FRAGMENT_INSERTION
        assert invoker.ran("qiime", "fragment-insertion", "filter-features")


class TestHalting:

    def test_tool_failure_halts_before_next_stage(self, project, logger):
        invoker = FakeInvoker(logger=logger, fail_on="dada2")
        code, sequencer, _, _ = run(project, dataset_answers(), invoker, logger)
        interim = project / "data" / "interim"

        assert code == 1
        assert sequencer.state is PipelineState.FAILED
        assert isinstance(sequencer.error, ExternalToolFailure)
        assert sequencer.error.stage == "Denoise"
        assert invoker.commands[-1][:3] == ["qiime", "dada2", "denoise-paired"]
        for name in ("sepp-tree", "iqtree", "mafft-fasttree", "collectors-curves", "exported-features"):
            assert not (interim / name).exists()
        assert not (interim / "dada2-denoise" / "table-summarize.qzv").exists()

    def test_terminate_at_start(self, project, invoker, logger):
        code, sequencer, _, _ = run(project, ["y"], invoker, logger)
        assert code == 1
        assert sequencer.state is PipelineState.ABORTED
        assert invoker.commands == []
        assert not (project / "logs").exists()

    def test_terminate_before_tree(self, project, invoker, logger):
        answers = dataset_answers()[:13] + ["y"]   # terminate before tree
        code, sequencer, _, _ = run(project, answers, invoker, logger)
        assert code == 1
        assert sequencer.state is PipelineState.ABORTED
        assert sequencer.completed[-1] is PipelineState.DENOISE
        assert not invoker.ran("qiime", "fragment-insertion")

    def test_wrong_working_directory(self, tmp_path, invoker, logger):
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        code, sequencer, _, reader = run(elsewhere, dataset_answers(), invoker, logger)
        assert code == 1
        assert isinstance(sequencer.error, WrongWorkingDirectory)
        assert reader.prompts == []
        assert invoker.commands == []

    def test_missing_toolkit(self, project, invoker, logger):
        code, sequencer, _, reader = run(
            project, dataset_answers(), invoker, logger, which=lambda name: None
        )
        assert code == 1
        assert isinstance(sequencer.error, MissingExecutable)
        assert reader.prompts == []

    def test_missing_classifier(self, project, invoker, logger):
        ProjectLayout(project).default_classifier.unlink()
        code, sequencer, _, _ = run(project, dataset_answers(), invoker, logger)
        assert code == 1
        assert sequencer.state is PipelineState.FAILED
        assert isinstance(sequencer.error, MissingArtifact)
        assert sequencer.error.role == "classifier"
        assert not invoker.ran("qiime", "feature-classifier")
        assert not (project / "data" / "interim" / "collectors-curves").exists()

    def test_closed_input_aborts(self, project, invoker, logger):
        code, sequencer, _, _ = run(project, dataset_answers()[:5], invoker, logger)
        assert code == 1
        assert sequencer.state is PipelineState.ABORTED
        assert sequencer.completed == [
            PipelineState.PRECHECK, PipelineState.IMPORT, PipelineState.TRIM
        ]
        assert not invoker.ran("qiime", "dada2")

    def test_skip_export(self, project, invoker, logger):
        code, sequencer, _, _ = run(project, dataset_answers(skip_export="y"), invoker, logger)
        assert code == 0
        assert sequencer.state is PipelineState.DONE
        assert not invoker.ran("qiime", "tools", "export")
        assert not (project / "data" / "interim" / "exported-features").exists()


class TestCommandLine:

    def test_help(self, capsys):
        with pytest.raises(SystemExit) as info:
            build_arg_parser().parse_args(["--help"])
        assert info.value.code == 0
        assert "Make-dataset workflow" in capsys.readouterr().out

    def test_no_options(self):
        with pytest.raises(SystemExit) as info:
            build_arg_parser().parse_args(["--threads", "4"])
        assert info.value.code == 2
