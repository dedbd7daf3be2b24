"""Streams utterance grammars through the graph compiler.

Both execution strategies go through :meth:`BatchDriver.compile_many`:
with a batch size of 1 every grammar is compiled on its own, otherwise
grammars are grouped and compiled together so that they share one HMM
transducer. What happens to a graph that fails inside a group is decided by
the batch failure policy:

* ``"abort"`` -- the whole run stops with :class:`BatchCompilationError`.
* ``"isolate"`` -- the failure is handled like in the one-by-one path: a
  warning, an empty graph written under the key, one more failure counted.
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, Tuple

from tqdm.auto import tqdm

from traingraphs.k2_integration import k2
from traingraphs.k2_integration.graph_compiler import TrainingGraphCompiler
from traingraphs.k2_integration.utils import is_empty
from traingraphs.utils.data_utils import batched
from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)

ABORT = "abort"
ISOLATE = "isolate"
BATCH_FAILURE_POLICIES = (ABORT, ISOLATE)


class BatchSizeMismatchError(RuntimeError):
    """The compiler returned a different number of graphs than it was given
    grammars. This is an internal error; the run cannot continue."""


class BatchCompilationError(RuntimeError):
    """A graph of a batch failed to compile under the ``"abort"`` policy."""


@dataclass
class CompileStats:
    """Success and failure counts of a run."""

    num_succeed: int = 0
    num_fail: int = 0

    @property
    def num_total(self) -> int:
        return self.num_succeed + self.num_fail


class BatchDriver:
    """
    Compiles keyed grammars and writes the keyed graphs, in input order.

    Arguments
    ---------
    compiler : TrainingGraphCompiler
        The graph compiler.
    batch_size : int
        Number of grammars compiled together; 1 compiles them one by one.
    batch_failure_policy : str
        ``"abort"`` or ``"isolate"``, see the module documentation. It has
        no effect when ``batch_size`` is 1.
    show_progress : bool
        Display a tqdm progress bar over utterances.
    """

    def __init__(
        self,
        compiler: TrainingGraphCompiler,
        batch_size: int = 250,
        batch_failure_policy: str = ABORT,
        show_progress: bool = False,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        if batch_failure_policy not in BATCH_FAILURE_POLICIES:
            raise ValueError(
                f"Unknown batch failure policy {batch_failure_policy!r}, "
                f"expected one of {BATCH_FAILURE_POLICIES}"
            )
        self.compiler = compiler
        self.batch_size = batch_size
        self.batch_failure_policy = batch_failure_policy
        self.show_progress = show_progress

    @property
    def isolates_failures(self) -> bool:
        """Whether failed graphs are written as empty graphs instead of
        stopping the run."""
        return self.batch_size == 1 or self.batch_failure_policy == ISOLATE

    def compile_many(
        self, pairs: Iterable[Tuple[str, k2.Fsa]]
    ) -> Iterator[Tuple[str, k2.Fsa, bool]]:
        """
        Compiles ``(key, grammar)`` pairs.

        Arguments
        ---------
        pairs : Iterable[Tuple[str, k2.Fsa]]
            The keyed grammars; consumed lazily, ``batch_size`` at a time.

        Yields
        ------
        key : str
            The key of the grammar.
        graph : k2.Fsa
            Its graph, without states if the compilation failed.
        ok : bool
            Whether the graph was compiled.
        """
        if self.batch_size == 1:
            for key, grammar in pairs:
                graph, ok = self.compiler.compile_graph(grammar)
                yield key, graph, ok and not is_empty(graph)
            return

        for batch in batched(pairs, self.batch_size):
            keys = [key for key, _ in batch]
            graphs = self.compiler.compile_graphs([grammar for _, grammar in batch])
            if len(graphs) != len(keys):
                raise BatchSizeMismatchError(
                    f"Compiled {len(graphs)} graphs for a batch of "
                    f"{len(keys)} grammars (first key: {keys[0]})"
                )
            for key, graph in zip(keys, graphs):
                yield key, graph, not is_empty(graph)

    def run(self, pairs: Iterable[Tuple[str, k2.Fsa]], writer) -> CompileStats:
        """
        Compiles every pair and writes exactly one graph per key.

        Arguments
        ---------
        pairs : Iterable[Tuple[str, k2.Fsa]]
            The keyed grammars.
        writer : traingraphs.dataio.tables.FstWriter
            Anything with a ``write(key, fsa)`` method.

        Returns
        -------
        CompileStats
            The success and failure counts.
        """
        stats = CompileStats()
        with tqdm(
            dynamic_ncols=True, disable=not self.show_progress, unit="utt"
        ) as pbar:
            for key, graph, ok in self.compile_many(pairs):
                if ok:
                    stats.num_succeed += 1
                elif self.isolates_failures:
                    logger.warning(f"Empty decoding graph for utterance {key}")
                    stats.num_fail += 1
                else:
                    raise BatchCompilationError(
                        f"Could not compile the graph of utterance {key} "
                        f"in a batch of {self.batch_size}; use the "
                        f"'{ISOLATE}' policy or a batch size of 1 to skip "
                        "such utterances"
                    )
                writer.write(key, graph)
                pbar.update(1)

        logger.info(
            f"compile-train-graphs: succeeded for {stats.num_succeed} graphs, "
            f"failed for {stats.num_fail}"
        )
        return stats
