#!/usr/bin/env python3
"""Creates training graphs (without transition-probabilities, by default).

This version takes one grammar FST per utterance, e.g. to compile graphs
for alternative transcriptions.

Usage:
    compile-train-graphs-fsts [options] <tree-in> <model-in> <lexicon-fst-in> <grammars-in> <graphs-out>

Example:
    compile-train-graphs-fsts --read-disambig-syms=lang/disambig.int \\
        exp/tree.yaml exp/final.yaml lang/L_disambig.fst.txt \\
        ark:grammars.fsts ark:graphs.fsts

The exit status is 0 when the run completes, even if some utterances could
not be compiled, 1 on usage and input errors, 2 on internal errors and 3 on
unexpected errors.
"""

import argparse
import enum
import sys
from dataclasses import dataclass
from typing import List, Optional

from hyperpyyaml import load_hyperpyyaml

from traingraphs.batch_driver import (
    BATCH_FAILURE_POLICIES,
    BatchCompilationError,
    BatchDriver,
    BatchSizeMismatchError,
    CompileStats,
)
from traingraphs.dataio.tables import (
    FstWriter,
    SequentialFstReader,
    read_disambig_symbols,
)
from traingraphs.hmm.transition_model import TransitionModel
from traingraphs.k2_integration.graph_compiler import (
    TrainingGraphCompiler,
    TrainingGraphCompilerOptions,
)
from traingraphs.k2_integration.utils import load_fst
from traingraphs.tree.context_dependency import ContextDependency
from traingraphs.utils.logger import DEFAULT_LOG_CONFIG, get_logger, setup_logging

logger = get_logger(__name__)

PROG = "compile-train-graphs-fsts"


class UsageError(Exception):
    """Bad command line. ``status`` is 0 when help was requested."""

    def __init__(self, message: str = "", status: int = 2):
        super().__init__(message)
        self.status = status


class ResourceLoadError(RuntimeError):
    """A fixed input (tree, model, lexicon, ...) could not be read."""


class RunStatus(enum.Enum):
    SUCCESS = "success"
    USAGE_ERROR = "usage_error"
    CONFIG_ERROR = "config_error"
    INTERNAL_ERROR = "internal_error"
    UNEXPECTED_ERROR = "unexpected_error"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.USAGE_ERROR: 1,
    RunStatus.CONFIG_ERROR: 1,
    RunStatus.INTERNAL_ERROR: 2,
    RunStatus.UNEXPECTED_ERROR: 3,
}


@dataclass
class RunResult:
    """Outcome of :func:`run`."""

    status: RunStatus
    stats: Optional[CompileStats] = None
    message: str = ""

    @property
    def exit_code(self) -> int:
        return self.status.exit_code


class _ArgumentParser(argparse.ArgumentParser):
    """Raises :class:`UsageError` instead of exiting."""

    def exit(self, status=0, message=None):
        raise UsageError(message or "", status)

    def error(self, message):
        self.print_usage(sys.stderr)
        raise UsageError(f"{self.prog}: error: {message}")


def _config_defaults(config_path: str, parser: argparse.ArgumentParser) -> dict:
    """Reads option defaults from a YAML file; keys are option names with
    underscores (``batch_size``, ``self_loop_scale``, ...)."""
    with open(config_path, "r", encoding="utf-8") as fin:
        config = load_hyperpyyaml(fin)
    if config is None:
        return {}
    known = {
        action.dest for action in parser._actions if action.option_strings
    } - {"help", "config"}
    unknown = set(config) - known
    if unknown:
        raise ValueError(
            f"Unknown options in {config_path}: {', '.join(sorted(unknown))}"
        )
    return dict(config)


def parse_arguments(arg_list=None) -> argparse.Namespace:
    """Parse the command line of compile-train-graphs-fsts.

    Arguments
    ---------
    arg_list : list, None
        A list of arguments to parse.  If not given, this is read from
        `sys.argv[1:]`

    Returns
    -------
    argparse.Namespace
        The options and the five positional arguments.

    Example
    -------
    >>> args = parse_arguments(
    ...     ["--batch-size=1", "tree", "mdl", "L.fst.txt", "ark:G", "ark:HCLG"]
    ... )
    >>> args.batch_size, args.transition_scale, args.determinize
    (1, 0.0, True)
    >>> args.graphs_out
    'ark:HCLG'
    """
    if arg_list is None:
        arg_list = sys.argv[1:]
    parser = _ArgumentParser(
        prog=PROG,
        description="Creates training graphs (without transition-probabilities, "
        "by default), one per utterance grammar.",
    )
    parser.add_argument("tree_in", help="Context-dependency tree (YAML)")
    parser.add_argument("model_in", help="Transition model (YAML)")
    parser.add_argument(
        "lexicon_fst_in",
        help="Lexicon with disambiguation symbols (OpenFst text or .pt)",
    )
    parser.add_argument("grammars_in", help="Archive of grammar FSTs")
    parser.add_argument("graphs_out", help="Archive of training graphs")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=250,
        help="Number of FSTs to compile at a time (more -> faster but uses "
        "more memory). 1 compiles them one by one and skips failures.",
    )
    parser.add_argument(
        "--read-disambig-syms",
        type=str,
        default="",
        help="File containing list of disambiguation symbols in phone "
        "symbol table",
    )
    parser.add_argument(
        "--transition-scale",
        type=float,
        default=0.0,
        help="Scale of transition probabilities (excluding self-loops)",
    )
    parser.add_argument(
        "--self-loop-scale",
        type=float,
        default=0.0,
        help="Scale of self-loop vs. non-self-loop probability mass",
    )
    parser.add_argument(
        "--determinize",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Determinize the graphs before removing disambiguation symbols",
    )
    parser.add_argument(
        "--rm-eps",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Remove epsilons from the graphs",
    )
    parser.add_argument(
        "--batch-failure-policy",
        choices=BATCH_FAILURE_POLICIES,
        default="abort",
        help="What a graph failing inside a batch does: stop the run "
        "(abort) or get written as an empty graph (isolate)",
    )
    parser.add_argument(
        "--progress",
        default=False,
        action="store_true",
        help="Display a progress bar",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="A yaml file with defaults for the options above",
    )
    parser.add_argument(
        "--log-config",
        type=str,
        help="A file storing the configuration options for logging",
    )
    parser.add_argument(
        "--verbose",
        default=False,
        action="store_true",
        help="Log the steps of every compilation",
    )

    pre_args, _ = parser.parse_known_args(arg_list)
    if pre_args.config:
        try:
            parser.set_defaults(**_config_defaults(pre_args.config, parser))
        except Exception as e:
            raise UsageError(f"{PROG}: error: bad --config: {e}") from e
    args = parser.parse_args(arg_list)
    if args.batch_size < 1:
        parser.error(f"--batch-size must be at least 1, got {args.batch_size}")
    return args


def load_compiler(args: argparse.Namespace) -> TrainingGraphCompiler:
    """Reads the fixed inputs and builds the graph compiler.

    Raises
    ------
    ResourceLoadError
        If the tree, the model, the lexicon or the disambiguation symbols
        cannot be read or do not fit together.
    """
    try:
        ctx_dep = ContextDependency.load(args.tree_in)
        trans_model = TransitionModel.load(args.model_in)
        lex_fst = load_fst(args.lexicon_fst_in)
        disambig_syms = read_disambig_symbols(args.read_disambig_syms)
    except (OSError, ValueError, KeyError, RuntimeError) as e:
        raise ResourceLoadError(f"Could not read the inputs: {e}") from e

    opts = TrainingGraphCompilerOptions(
        trans_prob_scale=args.transition_scale,
        self_loop_scale=args.self_loop_scale,
        determinize=args.determinize,
        rm_eps=args.rm_eps,
    )
    try:
        compiler = TrainingGraphCompiler(
            trans_model, ctx_dep, lex_fst, disambig_syms, opts
        )
    except ValueError as e:
        raise ResourceLoadError(str(e)) from e
    # the compiler owns the lexicon now
    del lex_fst
    return compiler


def run(arg_list: Optional[List[str]] = None) -> RunResult:
    """
    Runs compile-train-graphs-fsts.

    Arguments
    ---------
    arg_list : list, None
        The command line, `sys.argv[1:]` if not given.

    Returns
    -------
    RunResult
        The status, the statistics of the run (when it got that far) and a
        message describing the outcome.
    """
    try:
        args = parse_arguments(arg_list)
    except UsageError as e:
        if e.status == 0:
            return RunResult(RunStatus.SUCCESS)
        message = str(e)
        if message:
            sys.stderr.write(message.rstrip("\n") + "\n")
        return RunResult(RunStatus.USAGE_ERROR, message=message)

    overrides = {}
    if args.verbose:
        overrides = {"handlers": {"console": {"level": "DEBUG"}}}
    setup_logging(args.log_config or DEFAULT_LOG_CONFIG, overrides)
    command_line = arg_list if arg_list is not None else sys.argv[1:]
    logger.debug(f"{PROG} {' '.join(command_line)}")

    try:
        compiler = load_compiler(args)
        reader = SequentialFstReader(args.grammars_in)
    except (ResourceLoadError, OSError, ValueError) as e:
        logger.error(str(e))
        return RunResult(RunStatus.CONFIG_ERROR, message=str(e))

    driver = BatchDriver(
        compiler,
        batch_size=args.batch_size,
        batch_failure_policy=args.batch_failure_policy,
        show_progress=args.progress,
    )
    try:
        writer = FstWriter(args.graphs_out)
    except (OSError, ValueError) as e:
        reader.close()
        logger.error(f"Could not open {args.graphs_out}: {e}")
        return RunResult(RunStatus.CONFIG_ERROR, message=str(e))

    try:
        with reader, writer:
            stats = driver.run(reader, writer)
    except (BatchSizeMismatchError, BatchCompilationError) as e:
        logger.error(str(e))
        return RunResult(RunStatus.INTERNAL_ERROR, message=str(e))
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return RunResult(RunStatus.UNEXPECTED_ERROR, message=str(e))

    message = (
        f"succeeded for {stats.num_succeed} graphs, failed for {stats.num_fail}"
    )
    return RunResult(RunStatus.SUCCESS, stats, message)


def main():
    sys.exit(run().exit_code)


if __name__ == "__main__":
    main()
