import math
import os

import pytest

GRAMMARS = (
    "utt1\n0\t1\t1\t1\t0.0\n1\t0.0\n\n"
    "utt2\n0\t1\t2\t2\t0.0\n1\t2\t1\t1\t0.0\n2\t0.0\n\n"
    "utt3\n0\t1\t9\t9\t0.0\n1\t0.0\n\n"
)


@pytest.fixture
def exp_dir(tmp_path):
    """A lang directory, a triphone tree, a transition model and three
    grammars, the last one with a word missing from the lexicon."""
    from traingraphs.hmm import HmmTopology, TransitionModel
    from traingraphs.k2_integration.prepare_lang import prepare_lang
    from traingraphs.tree import ContextDependency

    lang_dir = tmp_path / "lang"
    os.makedirs(lang_dir)
    with open(lang_dir / "lexicon.txt", "w", encoding="utf-8") as f:
        f.write("ab a b\nba b a\n")
    prepare_lang(lang_dir)

    # SIL, a and b are the phones 1, 2 and 3
    ctx_dep = ContextDependency.phone_position_tree(3, 1, [1, 2, 3])
    topo = HmmTopology.left_to_right([1, 2, 3])
    ctx_dep.save(tmp_path / "tree.yaml")
    TransitionModel.from_tree(ctx_dep, topo).save(tmp_path / "final.yaml")

    with open(tmp_path / "grammars.fsts", "w", encoding="utf-8") as f:
        f.write(GRAMMARS)
    return tmp_path


def command_line(exp_dir, *options, lexicon="L_disambig.fst.txt"):
    return [
        *options,
        f"--read-disambig-syms={exp_dir / 'lang' / 'disambig.int'}",
        str(exp_dir / "tree.yaml"),
        str(exp_dir / "final.yaml"),
        str(exp_dir / "lang" / lexicon),
        f"ark:{exp_dir / 'grammars.fsts'}",
        f"ark,t:{exp_dir / 'graphs.fsts'}",
    ]


def read_graphs(exp_dir):
    from traingraphs.dataio.tables import SequentialFstReader

    with SequentialFstReader(f"ark:{exp_dir / 'graphs.fsts'}") as reader:
        return list(reader)


@pytest.mark.parametrize(
    "options,lexicon",
    [
        (("--batch-size=1",), "L_disambig.fst.txt"),
        (("--batch-size=1",), "L_disambig.pt"),
        (("--batch-size=2", "--batch-failure-policy=isolate"), "L_disambig.pt"),
    ],
)
def test_run(exp_dir, options, lexicon):
    from traingraphs.bin.compile_train_graphs_fsts import RunStatus, run
    from traingraphs.k2_integration.utils import get_paths, is_empty

    result = run(command_line(exp_dir, *options, lexicon=lexicon))
    assert result.status == RunStatus.SUCCESS
    assert result.exit_code == 0
    assert (result.stats.num_succeed, result.stats.num_fail) == (2, 1)
    assert result.message == "succeeded for 2 graphs, failed for 1"

    graphs = read_graphs(exp_dir)
    assert [key for key, _ in graphs] == ["utt1", "utt2", "utt3"]
    assert [is_empty(graph) for _, graph in graphs] == [False, False, True]
    # optional silence before and after the word
    words = {p.words for p in get_paths(graphs[0][1])}
    assert words == {(1,)}
    # no transition probabilities by default, only the silence probabilities
    scores = [p.score for p in get_paths(graphs[1][1])]
    assert scores == pytest.approx([3 * math.log(0.5)] * len(scores), abs=1e-4)


class WarningRecorder:
    def __init__(self, logger, warnings):
        self.logger = logger
        self.warnings = warnings

    def warning(self, msg, *args, **kwargs):
        self.warnings.append(msg)

    def __getattr__(self, name):
        return getattr(self.logger, name)


def test_missing_disambig_symbols(exp_dir, monkeypatch):
    from traingraphs.bin import compile_train_graphs_fsts
    from traingraphs.bin.compile_train_graphs_fsts import RunStatus, run
    from traingraphs.k2_integration import graph_compiler

    warnings = []
    for module in (compile_train_graphs_fsts, graph_compiler):
        monkeypatch.setattr(
            module, "logger", WarningRecorder(module.logger, warnings)
        )
    args = [
        arg
        for arg in command_line(exp_dir, "--batch-size=1")
        if not arg.startswith("--read-disambig-syms")
    ]
    result = run(args)
    assert result.status == RunStatus.SUCCESS
    assert (result.stats.num_succeed, result.stats.num_fail) == (2, 1)
    # reported once per run
    assert len([w for w in warnings if "disambiguation symbols" in w]) == 1


def test_batch_failure_aborts(exp_dir):
    from traingraphs.bin.compile_train_graphs_fsts import RunStatus, run

    result = run(command_line(exp_dir, "--batch-size=3"))
    assert result.status == RunStatus.INTERNAL_ERROR
    assert result.exit_code == 2


def test_usage_errors(exp_dir):
    from traingraphs.bin.compile_train_graphs_fsts import RunStatus, run

    assert run([]).status == RunStatus.USAGE_ERROR
    assert run([]).exit_code == 1
    assert run(command_line(exp_dir, "--batch-size=0")).exit_code == 1
    assert run(command_line(exp_dir, "--no-such-option")).exit_code == 1
    assert run(command_line(exp_dir, "--batch-failure-policy=skip")).exit_code == 1
    assert run(["--help"]).status == RunStatus.SUCCESS


def test_bad_inputs(exp_dir):
    from traingraphs.bin.compile_train_graphs_fsts import RunStatus, run

    args = command_line(exp_dir)
    args[-5] = str(exp_dir / "missing.yaml")
    result = run(args)
    assert result.status == RunStatus.CONFIG_ERROR
    assert result.exit_code == 1

    # a disambiguation symbol that is also a phone
    with open(exp_dir / "bad_disambig.int", "w", encoding="utf-8") as f:
        f.write("1\n")
    args = command_line(exp_dir)
    args[0] = f"--read-disambig-syms={exp_dir / 'bad_disambig.int'}"
    assert run(args).status == RunStatus.CONFIG_ERROR

    args = command_line(exp_dir)
    args[-2] = f"ark:{exp_dir / 'missing.fsts'}"
    assert run(args).status == RunStatus.CONFIG_ERROR

    args = command_line(exp_dir)
    args[-1] = "scp:graphs.scp"
    assert run(args).status == RunStatus.CONFIG_ERROR


def test_internal_errors(exp_dir, monkeypatch):
    from traingraphs.batch_driver import BatchDriver
    from traingraphs.bin.compile_train_graphs_fsts import RunStatus, run
    from traingraphs.k2_integration.graph_compiler import TrainingGraphCompiler

    monkeypatch.setattr(
        TrainingGraphCompiler, "compile_graphs", lambda self, grammars: []
    )
    result = run(command_line(exp_dir))
    assert result.status == RunStatus.INTERNAL_ERROR
    assert result.exit_code == 2

    def broken_run(self, pairs, writer):
        raise KeyError("broken")

    monkeypatch.setattr(BatchDriver, "run", broken_run)
    result = run(command_line(exp_dir))
    assert result.status == RunStatus.UNEXPECTED_ERROR
    assert result.exit_code == 3


def test_parse_arguments_config(exp_dir):
    from traingraphs.bin.compile_train_graphs_fsts import (
        UsageError,
        parse_arguments,
    )

    config = exp_dir / "compile.yaml"
    with open(config, "w", encoding="utf-8") as f:
        f.write("batch_size: 1\nself_loop_scale: 0.1\ndeterminize: false\n")

    args = parse_arguments(command_line(exp_dir, f"--config={config}"))
    assert args.batch_size == 1
    assert args.self_loop_scale == 0.1
    assert args.transition_scale == 0.0
    assert not args.determinize

    # the command line wins over the file
    args = parse_arguments(
        command_line(exp_dir, f"--config={config}", "--batch-size=7", "--determinize")
    )
    assert args.batch_size == 7
    assert args.determinize

    with open(config, "w", encoding="utf-8") as f:
        f.write("batch_sise: 1\n")
    with pytest.raises(UsageError):
        parse_arguments(command_line(exp_dir, f"--config={config}"))


def test_parse_arguments_flags(exp_dir):
    from traingraphs.bin.compile_train_graphs_fsts import parse_arguments

    args = parse_arguments(
        command_line(
            exp_dir,
            "--no-determinize",
            "--no-rm-eps",
            "--transition-scale=1.0",
            "--progress",
            "--verbose",
        )
    )
    assert not args.determinize
    assert not args.rm_eps
    assert args.transition_scale == 1.0
    assert args.progress and args.verbose
    assert args.batch_failure_policy == "abort"
    assert args.graphs_out == f"ark,t:{exp_dir / 'graphs.fsts'}"
