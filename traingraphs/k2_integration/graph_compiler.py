"""Graph compiler class to create per-utterance training graphs.

A training graph is ``H o C o L o G``: the utterance grammar G, the lexicon
L (phones and disambiguation symbols in, words out), the context expansion
C and the HMM transducer H. Its input labels are transition-ids, its output
labels words. H is built without the HMM self-loops; they are added once the
graph is determinized and rid of the disambiguation symbols.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from . import k2  # import k2 from ./__init__.py
from .context_fst import ILabelTable, compose_context
from .hmm_transducer import (
    GraphCompilationError,
    add_hmm_self_loops,
    get_h_transducer,
)
from .utils import empty_graph, is_empty, remove_disambig_symbols, word_labels
from traingraphs.hmm.transition_model import TransitionModel
from traingraphs.tree.context_dependency import ContextDependency
from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = [
    "GraphCompilationError",
    "TrainingGraphCompiler",
    "TrainingGraphCompilerOptions",
]


@dataclass
class TrainingGraphCompilerOptions:
    """
    Arguments
    ---------
    trans_prob_scale: float
        Scale on the log-probs of forward HMM transitions.
    self_loop_scale: float
        Scale on the log-probs of HMM self-loops.
    determinize: bool
        Determinize the transition-id graph before removing the
        disambiguation symbols.
    rm_eps: bool
        Remove epsilon arcs from the final graph.
    """

    trans_prob_scale: float = 1.0
    self_loop_scale: float = 1.0
    determinize: bool = True
    rm_eps: bool = True


class TrainingGraphCompiler:
    """
    Compiles training graphs from utterance grammars against a fixed tree,
    transition model and lexicon.

    The lexicon is owned by the compiler once passed in; callers should
    drop their reference. The tree and the model are only read.

    Arguments
    ---------
    trans_model: TransitionModel
        The transition model.
    ctx_dep: ContextDependency
        The phonetic context-dependency tree.
    lex_fst: k2.Fsa
        Lexicon with disambiguation symbols: phones in, words out.
    disambig_syms: Sequence[int]
        Disambiguation symbols of the phone side of ``lex_fst``.
    opts: TrainingGraphCompilerOptions
        Compilation options.

    Example
    -------
    >>> from traingraphs.hmm import HmmTopology, TransitionModel
    >>> from traingraphs.tree import ContextDependency
    >>> topo = HmmTopology.left_to_right([1, 2], num_states=1)
    >>> ctx_dep = ContextDependency.monophone([1, 2], num_pdf_classes=1)
    >>> trans_model = TransitionModel.from_tree(ctx_dep, topo)
    >>> L = k2.Fsa.from_str("0 1 1 7 0\\n1 2 2 0 0\\n2 3 -1 -1 0\\n3", acceptor=False)
    >>> compiler = TrainingGraphCompiler(trans_model, ctx_dep, L, [])
    >>> G = k2.Fsa.from_str("0 1 7 0\\n1 2 -1 0\\n2", acceptor=True)
    >>> graph, ok = compiler.compile_graph(G)
    >>> ok
    True
    >>> G = k2.Fsa.from_str("0 1 8 0\\n1 2 -1 0\\n2", acceptor=True)
    >>> compiler.compile_graph(G)[1]
    False
    """

    def __init__(
        self,
        trans_model: TransitionModel,
        ctx_dep: ContextDependency,
        lex_fst: k2.Fsa,
        disambig_syms: Sequence[int],
        opts: Optional[TrainingGraphCompilerOptions] = None,
    ):
        self.trans_model = trans_model
        self.ctx_dep = ctx_dep
        self.opts = opts if opts is not None else TrainingGraphCompilerOptions()
        self.disambig_syms = sorted(set(int(d) for d in disambig_syms))

        phones_and_disambig = set(trans_model.phones) & set(self.disambig_syms)
        if phones_and_disambig:
            raise ValueError(
                "Disambiguation symbols must not be phones of the model: "
                f"{sorted(phones_and_disambig)}"
            )
        if not self.disambig_syms:
            logger.warning(
                "No disambiguation symbols given: graph determinization "
                "may fail or blow up"
            )
        if not hasattr(lex_fst, "aux_labels"):
            raise ValueError("The lexicon must be a transducer (phones to words)")

        logger.debug("Arc sorting L")
        self._lex_fst = k2.arc_sort(lex_fst)
        self._lexicon_words = word_labels(self._lex_fst)
        self.ilabel_table = ILabelTable()
        self._hmm_cache = {}

    @property
    def first_disambig_label(self) -> int:
        """Smallest input label of H standing for a disambiguation symbol."""
        return self.trans_model.num_transition_ids + 1

    @property
    def lexicon_words(self) -> Set[int]:
        return self._lexicon_words

    def compile_graph(self, grammar: k2.Fsa) -> Tuple[k2.Fsa, bool]:
        """
        Compiles the training graph of one utterance.

        Arguments
        ---------
        grammar: k2.Fsa
            Words in (and out); an acceptor is taken as the identity
            transducer.

        Returns
        -------
        graph: k2.Fsa
            Transition-ids in, words out; the graph without states if the
            compilation failed.
        ok: bool
            Whether the compilation succeeded.
        """
        try:
            clg = self._compile_clg(grammar)
            graph = self._compile_hclg(clg)
        except GraphCompilationError as e:
            logger.warning(f"Graph compilation failed: {e}")
            return empty_graph(), False
        return graph, True

    def compile_graphs(self, grammars: Iterable[k2.Fsa]) -> List[k2.Fsa]:
        """
        Compiles the training graphs of several utterances, sharing one H
        among them.

        Arguments
        ---------
        grammars: Iterable[k2.Fsa]
            One grammar per utterance.

        Returns
        -------
        List[k2.Fsa]
            One graph per grammar, in the same order; graphs that failed to
            compile have no states.
        """
        clgs = []
        for grammar in grammars:
            try:
                clgs.append(self._compile_clg(grammar))
            except GraphCompilationError as e:
                logger.warning(f"Graph compilation failed: {e}")
                clgs.append(None)

        labels = set()
        for clg in clgs:
            if clg is not None:
                labels.update(clg.labels.unique().tolist())
        try:
            shared_h = self._h_transducer(labels)
        except GraphCompilationError as e:
            logger.debug(f"Cannot share H within the batch: {e}")
            shared_h = None

        graphs = []
        for clg in clgs:
            if clg is None:
                graphs.append(empty_graph())
                continue
            try:
                graphs.append(self._compile_hclg(clg, shared_h))
            except GraphCompilationError as e:
                logger.warning(f"Graph compilation failed: {e}")
                graphs.append(empty_graph())
        return graphs

    def _prepare_grammar(self, grammar: k2.Fsa) -> k2.Fsa:
        if is_empty(grammar):
            raise GraphCompilationError("The grammar has no start state")
        oov = word_labels(grammar, "labels") - self._lexicon_words
        if oov:
            raise GraphCompilationError(
                f"Words not covered by the lexicon: {sorted(oov)}"
            )
        grammar = grammar.clone()
        if not hasattr(grammar, "aux_labels"):
            grammar.aux_labels = grammar.labels.clone()
        if bool((grammar.labels == 0).any()):
            logger.debug("Removing epsilons from G")
            grammar = k2.connect(k2.remove_epsilon(grammar))
        return k2.arc_sort(grammar)

    def _compile_clg(self, grammar: k2.Fsa) -> k2.Fsa:
        G = self._prepare_grammar(grammar)

        logger.debug("Composing L and G")
        LG = k2.connect(k2.compose(self._lex_fst, G))
        if is_empty(LG):
            raise GraphCompilationError("Empty result composing L and G")

        logger.debug("Expanding the phonetic context of LG")
        CLG = compose_context(
            LG,
            self.ilabel_table,
            self.ctx_dep.context_width,
            self.ctx_dep.central_position,
            self.disambig_syms,
        )
        if is_empty(CLG):
            raise GraphCompilationError("Empty result expanding the context")
        CLG = k2.connect(k2.remove_epsilon(CLG))
        return k2.arc_sort(CLG)

    def _h_transducer(self, labels) -> k2.Fsa:
        return get_h_transducer(
            labels,
            self.ilabel_table,
            self.ctx_dep,
            self.trans_model,
            self.disambig_syms,
            self.opts.trans_prob_scale,
            cache=self._hmm_cache,
        )

    def _compile_hclg(self, CLG: k2.Fsa, H: Optional[k2.Fsa] = None) -> k2.Fsa:
        if H is None:
            H = self._h_transducer(CLG.labels.unique().tolist())

        logger.debug("Composing H and CLG")
        HCLG = k2.connect(k2.compose(H, CLG))
        if is_empty(HCLG):
            raise GraphCompilationError("Empty result composing H and CLG")

        if self.opts.determinize:
            logger.debug("Determinizing HCLG")
            HCLG = k2.connect(k2.determinize(HCLG))

        HCLG = remove_disambig_symbols(HCLG, self.first_disambig_label)
        if self.opts.rm_eps:
            logger.debug("Removing epsilons from HCLG")
            HCLG = k2.connect(k2.remove_epsilon(HCLG))

        logger.debug("Adding the HMM self-loops")
        HCLG = add_hmm_self_loops(
            HCLG, self.trans_model, self.opts.self_loop_scale
        )
        if isinstance(HCLG.aux_labels, k2.RaggedTensor):
            HCLG.aux_labels = HCLG.aux_labels.remove_values_eq(0)
        logger.debug("Arc sorting HCLG")
        HCLG = k2.arc_sort(HCLG)
        logger.debug(f"HCLG.shape: {HCLG.shape}")
        return HCLG
