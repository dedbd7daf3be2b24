"""HMM transducer H: transition-ids in, context-dependent labels out.

H has one loop state (state 0), which is both start and end of every
phone. For each context-dependent label the HMM of its central phone is
inserted between two visits of the loop state; the arcs leaving the loop
state carry the label on the output side, every other arc outputs epsilon.

H has no self-loops, so a graph composed with it stays acyclic for an
acyclic grammar and can be determinized. ``add_hmm_self_loops`` puts the
self-loops back once the graph is final.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import k2  # import k2 from ./__init__.py
from .context_fst import ILabelTable
from .utils import build_fsa, fsa_arcs, is_empty
from traingraphs.hmm.transition_model import TransitionModel
from traingraphs.tree.context_dependency import ContextDependency
from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)

ENTRY = "entry"
EXIT = "exit"

# (from_node, to_node, transition_id, score); nodes are HMM state indices,
# ENTRY or EXIT
Fragment = List[Tuple[object, object, int, float]]


class GraphCompilationError(RuntimeError):
    """A graph cannot be compiled for one utterance."""


def hmm_fragment(
    trans_model: TransitionModel,
    phone: int,
    pdfs: Sequence[int],
    trans_prob_scale: float = 1.0,
) -> Fragment:
    """
    Builds the arcs of the HMM of ``phone`` with the pdf ``pdfs[h]`` on
    each emitting HMM state ``h``, without the self-loops.

    Arguments
    ---------
    trans_model: TransitionModel
        Provides the transition-ids and their probabilities.
    phone: int
        The central phone.
    pdfs: Sequence[int]
        One pdf per emitting HMM state.
    trans_prob_scale: float
        Scale on the log-probs of the forward transitions, which are taken
        ignoring the self-loops.

    Returns
    -------
    Fragment
        Arcs leaving HMM state 0 start at ``ENTRY``, and also at state 0
        itself when a later HMM state transitions back to it.
    """
    states = trans_model.topology.topology_for_phone(phone)
    final = len(states) - 1
    reentered = any(dst == 0 for state in states[1:-1] for dst, _ in state.transitions)
    arcs = []
    for hmm_state, state in enumerate(states[:-1]):
        trans_state = trans_model.tuple_to_transition_state(
            phone, hmm_state, pdfs[hmm_state]
        )
        if trans_state is None:
            raise GraphCompilationError(
                f"No transition-state for phone {phone}, HMM state "
                f"{hmm_state}, pdf {pdfs[hmm_state]}"
            )
        for trans_index, (dst, _) in enumerate(state.transitions):
            if dst == hmm_state:
                continue
            tid = trans_model.pair_to_transition_id(trans_state, trans_index)
            score = (
                trans_prob_scale
                * trans_model.get_transition_log_prob_ignoring_self_loops(tid)
            )
            to_node = EXIT if dst == final else dst
            if hmm_state == 0:
                arcs.append((ENTRY, to_node, tid, score))
            if hmm_state != 0 or reentered:
                arcs.append((hmm_state, to_node, tid, score))
    return arcs


def get_h_transducer(
    labels: Iterable[int],
    ilabel_table: ILabelTable,
    ctx_dep: ContextDependency,
    trans_model: TransitionModel,
    disambig_syms: Sequence[int] = (),
    trans_prob_scale: float = 1.0,
    cache: Optional[Dict] = None,
) -> k2.Fsa:
    """
    Builds H, without self-loops, for the given context-dependent labels.

    Disambiguation entries ``(-d,)`` of the table become loops on state 0
    with input label ``num_transition_ids + 1 + rank of d`` in
    ``disambig_syms``.

    Arguments
    ---------
    labels: Iterable[int]
        Context-dependent labels (indices into ``ilabel_table``); 0 is
        ignored.
    ilabel_table: ILabelTable
        The phone windows of the labels.
    ctx_dep: ContextDependency
        Gives the pdf of each HMM state of a phone in context.
    trans_model: TransitionModel
        Gives the transition-ids.
    disambig_syms: Sequence[int]
        Sorted disambiguation symbols.
    trans_prob_scale: float
        Scale on forward transitions.
    cache: dict, optional
        Fragments keyed by ``(phone, pdfs)``, reused across calls.

    Returns
    -------
    H: k2.Fsa
        Arc-sorted HMM transducer.
    """
    if cache is None:
        cache = {}
    disambig_rank = {d: i for i, d in enumerate(disambig_syms)}
    first_disambig = trans_model.num_transition_ids + 1
    P = ctx_dep.central_position
    arcs = []
    num_states = 1
    for label in sorted(set(int(x) for x in labels)):
        if label <= 0:
            continue
        window = ilabel_table[label]
        if ilabel_table.is_disambig(label):
            symbol = -window[0]
            if symbol not in disambig_rank:
                raise GraphCompilationError(
                    f"Unknown disambiguation symbol {symbol}"
                )
            arcs.append([0, 0, first_disambig + disambig_rank[symbol], label, 0.0])
            continue
        phone = window[P]
        try:
            states = trans_model.topology.topology_for_phone(phone)
        except KeyError as e:
            raise GraphCompilationError(str(e)) from e
        pdfs = []
        for hmm_state in states[:-1]:
            pdf = ctx_dep.compute(window, hmm_state.pdf_class)
            if pdf is None:
                raise GraphCompilationError(
                    f"The tree has no pdf for phone window {list(window)}, "
                    f"pdf-class {hmm_state.pdf_class}"
                )
            pdfs.append(pdf)
        key = (phone, tuple(pdfs))
        if key not in cache:
            cache[key] = hmm_fragment(trans_model, phone, pdfs, trans_prob_scale)
        node2state = {ENTRY: 0, EXIT: 0}
        for from_node, to_node, tid, score in cache[key]:
            for node in (from_node, to_node):
                if node not in node2state:
                    node2state[node] = num_states
                    num_states += 1
            aux = label if from_node == ENTRY else 0
            arcs.append(
                [node2state[from_node], node2state[to_node], tid, aux, score]
            )

    final_state = num_states
    arcs.append([0, final_state, -1, -1, 0.0])
    logger.debug(f"H transducer: {num_states + 1} states, {len(arcs)} arcs")
    return k2.arc_sort(build_fsa(arcs, final_state))


def add_hmm_self_loops(
    fsa: k2.Fsa, trans_model: TransitionModel, self_loop_scale: float = 1.0
) -> k2.Fsa:
    """
    Adds the HMM self-loops to a graph with transition-ids as input labels.
    The self-loop of a transition-state comes right before the arcs
    leaving it.

    A state whose arcs all belong to one transition-state with a self-loop
    gets that self-loop. Otherwise each such transition-state among its
    arcs gets a new state: entered through the self-loop transition-id,
    looping on it and left by copies of the arcs of the transition-state.

    Arguments
    ---------
    fsa: k2.Fsa
        The graph, without self-loops and without disambiguation symbols.
    trans_model: TransitionModel
        Gives the self-loops and their probabilities.
    self_loop_scale: float
        Scale on the self-loop log-probs ``log(p)`` and on the
        ``log(1 - p)`` added to the arcs leaving a transition-state.

    Returns
    -------
    k2.Fsa
        The graph with the self-loops.

    Example
    -------
    >>> from traingraphs.hmm import HmmTopology, TransitionModel
    >>> from traingraphs.tree import ContextDependency
    >>> topo = HmmTopology.left_to_right([1], num_states=1)
    >>> ctx_dep = ContextDependency.monophone([1], num_pdf_classes=1)
    >>> trans_model = TransitionModel.from_tree(ctx_dep, topo)
    >>> graph = build_fsa([[0, 1, 2, 1, 0.0], [1, 2, -1, -1, 0.0]], 2)
    >>> graph = add_hmm_self_loops(graph, trans_model)
    >>> [(arc.src, arc.dst, arc.label) for arc in fsa_arcs(graph)]
    [(0, 0, 1), (0, 1, 2), (1, 2, -1)]
    """
    if is_empty(fsa):
        return fsa
    num_tids = trans_model.num_transition_ids
    arcs_of = defaultdict(list)
    for arc in fsa_arcs(fsa):
        trans_state = None
        if 0 < arc.label <= num_tids:
            trans_state = trans_model.transition_id_to_transition_state(arc.label)
            if trans_model.self_loop_of(trans_state) is None:
                trans_state = None
        arcs_of[arc.src].append((arc, trans_state))

    # states holding the self-loop of a transition-state, keyed by
    # (state, transition-state); the final state stays the last one
    final_state = fsa.shape[0] - 1
    next_state = final_state
    loop_states = {}
    for src, arcs in arcs_of.items():
        trans_states = {trans_state for _, trans_state in arcs}
        if len(trans_states) == 1:
            (trans_state,) = trans_states
            if trans_state is not None:
                loop_states[(src, trans_state)] = src
            continue
        for trans_state in sorted(t for t in trans_states if t is not None):
            loop_states[(src, trans_state)] = next_state
            next_state += 1
    new_final = next_state

    new_arcs = []
    for (src, trans_state), state in loop_states.items():
        loop_tid = trans_model.self_loop_of(trans_state)
        loop_score = self_loop_scale * trans_model.get_transition_log_prob(loop_tid)
        if state != src:
            new_arcs.append([src, state, loop_tid, 0, loop_score])
        new_arcs.append([state, state, loop_tid, 0, loop_score])
    for src, arcs in arcs_of.items():
        for arc, trans_state in arcs:
            dst = new_final if arc.dst == final_state else arc.dst
            if trans_state is None:
                new_arcs.append([src, dst, arc.label, arc.aux_labels, arc.score])
                continue
            score = arc.score + self_loop_scale * (
                trans_model.get_non_self_loop_log_prob(trans_state)
            )
            state = loop_states[(src, trans_state)]
            new_arcs.append([state, dst, arc.label, arc.aux_labels, score])
            if state != src:
                new_arcs.append([src, dst, arc.label, arc.aux_labels, score])
    logger.debug(
        f"Added self-loops: {new_final - final_state} new states, "
        f"{len(new_arcs)} arcs"
    )
    return build_fsa(new_arcs, new_final)
