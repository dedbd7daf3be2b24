"""Utilities for building, inspecting and (de)serializing k2 FSTs.

Conventions: state 0 is the start state, the final state is the last state
and is only entered through arcs labelled -1. Scores are log-likelihoods;
OpenFst text costs are negated scores.
"""

import os
from collections import defaultdict, namedtuple
from pathlib import Path
from typing import Iterable, List, Sequence, Set, Union

import torch

from . import k2  # import k2 from ./__init__.py
from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)

Arc = namedtuple("Arc", ["src", "dst", "label", "aux_labels", "score"])
Path_ = namedtuple("Path", ["labels", "words", "score"])


def build_fsa(arcs: Iterable[Sequence], final_state: int) -> k2.Fsa:
    """
    Builds a transducer from a list of arcs, the way the lexicon FSTs are
    built.

    Arguments
    ---------
    arcs: Iterable[Sequence]
        Arcs as ``[src_state, dest_state, label, aux, score]``, where
        ``aux`` is a label or a list of labels. Arcs entering
        ``final_state`` must have label -1 and -1 among their aux labels.
    final_state: int
        The final state; it must be the largest state id.

    Returns
    -------
    fsa: k2.Fsa
        The transducer; ``aux_labels`` is a ``k2.RaggedTensor`` if some arc
        carries more or less than one aux label, a tensor otherwise.
    """
    arcs = sorted(arcs, key=lambda arc: arc[0])
    aux = [a if isinstance(a, list) else [a] for _, _, _, a, _ in arcs]
    ragged = any(len(a) > 1 for a in aux)
    lines = [
        f"{src} {dst} {label} {-1 if label == -1 else 0} {float(score)!r}"
        for src, dst, label, _, score in arcs
    ]
    lines.append(str(final_state))
    fsa = k2.Fsa.from_str("\n".join(lines), acceptor=False)
    if ragged:
        fsa.aux_labels = k2.RaggedTensor(aux)
    else:
        fsa.aux_labels = torch.tensor(
            [a[0] if a else 0 for a in aux], dtype=torch.int32
        )
    return fsa


def empty_graph() -> k2.Fsa:
    """Returns a transducer with no states, i.e. without a start state.
    It is the sentinel for a graph that could not be compiled."""
    # state 1 is a dead end and the final state is unreachable
    dead_end = k2.Fsa.from_str("0 1 1 1 0.0\n2", acceptor=False)
    return k2.connect(dead_end)


def is_empty(fsa: k2.Fsa) -> bool:
    """True if the FST has no states (no start state)."""
    return fsa.shape[0] == 0


def fsa_arcs(fsa: k2.Fsa) -> List[Arc]:
    """
    Lists the arcs of a single FST in state order.

    Arguments
    ---------
    fsa: k2.Fsa
        A single FST; ``aux_labels`` may be missing (acceptor), a tensor
        or a ``k2.RaggedTensor``.

    Returns
    -------
    List[Arc]
        ``aux_labels`` of each arc is a list (empty for acceptors).
    """
    if is_empty(fsa):
        return []
    arcs = fsa.as_dict()["arcs"]
    src = arcs[:, 0].tolist()
    dst = arcs[:, 1].tolist()
    labels = fsa.labels.tolist()
    scores = fsa.scores.tolist()
    if not hasattr(fsa, "aux_labels"):
        aux = [[] for _ in labels]
    elif isinstance(fsa.aux_labels, k2.RaggedTensor):
        aux = fsa.aux_labels.tolist()
    else:
        aux = [[a] for a in fsa.aux_labels.tolist()]
    return [Arc(*arc) for arc in zip(src, dst, labels, aux, scores)]


def word_labels(fsa: k2.Fsa, side: str = "aux_labels") -> Set[int]:
    """The set of non-epsilon, non-final labels on one side of an FST."""
    if is_empty(fsa):
        return set()
    values = getattr(fsa, side)
    if isinstance(values, k2.RaggedTensor):
        values = values.values
    return {v for v in values.unique().tolist() if v > 0}


def remove_disambig_symbols(fsa: k2.Fsa, first_disambig_id: int) -> k2.Fsa:
    """
    Replaces every label at or above ``first_disambig_id`` by epsilon.

    Arguments
    ---------
    fsa: k2.Fsa
        The graph to be modified
    first_disambig_id: int
        The smallest auxiliary label.

    Returns
    -------
    k2.Fsa
        The same graph.
    """
    logger.debug("Removing disambiguation symbols")
    # NOTE: We need to clone here since fsa.labels is just a reference to a tensor
    #       and we will end up having issues with misversioned updates on fsa's
    #       properties.
    labels = fsa.labels.clone()
    labels[labels >= first_disambig_id] = 0
    fsa.labels = labels
    return fsa


def get_paths(fsa: k2.Fsa, max_paths: int = 10000, skip_self_loops: bool = True):
    """
    Enumerates the accepting paths of an FST.

    Arguments
    ---------
    fsa: k2.Fsa
        The FST; apart from self-loops it must be acyclic.
    max_paths: int
        Raise ValueError beyond this many paths.
    skip_self_loops: bool
        Ignore arcs whose source and destination coincide (HMM self-loops).

    Returns
    -------
    List[Path]
        ``(labels, words, score)`` per path; epsilons and -1 are dropped
        from ``labels`` and ``words``.
    """
    arcs_of = defaultdict(list)
    for arc in fsa_arcs(fsa):
        arcs_of[arc.src].append(arc)
    paths = []

    def visit(state, labels, words, score, on_path):
        for arc in arcs_of[state]:
            if skip_self_loops and arc.src == arc.dst:
                continue
            arc_words = tuple(w for w in arc.aux_labels if w > 0)
            if arc.label == -1:
                paths.append(Path_(labels, words + arc_words, score + arc.score))
                if len(paths) > max_paths:
                    raise ValueError(f"More than {max_paths} paths")
                continue
            if arc.dst in on_path:
                raise ValueError(f"Cycle through state {arc.dst}")
            visit(
                arc.dst,
                labels + ((arc.label,) if arc.label != 0 else ()),
                words + arc_words,
                score + arc.score,
                on_path | {arc.dst},
            )

    if not is_empty(fsa):
        visit(0, (), (), 0.0, {0})
    return paths


def fsa_from_openfst_text(text: str, acceptor: bool = False) -> k2.Fsa:
    """Reads an FST in OpenFst text format; a blank text is an FST
    without states."""
    if not text.strip():
        return empty_graph()
    return k2.Fsa.from_openfst(text, acceptor=acceptor)


def _cost_field(score: float) -> str:
    cost = -score + 0.0  # no negative zero
    return f"\t{cost!r}"


def fsa_to_openfst_text(fsa: k2.Fsa) -> str:
    """
    Writes a single FST in OpenFst text format.

    An arc carrying several output labels (ragged ``aux_labels``) becomes a
    chain whose extra arcs have epsilon input, so the output is a plain
    transducer accepting the same weighted pairs.

    Arguments
    ---------
    fsa: k2.Fsa
        The FST to write.

    Returns
    -------
    str
        The text, empty for an FST without states.
    """
    if is_empty(fsa):
        return ""
    next_state = fsa.shape[0]
    lines = []
    final_scores = {}

    def new_state():
        nonlocal next_state
        next_state += 1
        return next_state - 1

    for order, arc in enumerate(fsa_arcs(fsa)):
        words = [w for w in arc.aux_labels if w > 0]
        if arc.label == -1 and not words:
            best = final_scores.get(arc.src)
            if best is None or arc.score > best:
                final_scores[arc.src] = arc.score
            continue
        if arc.label == -1:
            # words emitted right before finality
            targets = [new_state() for _ in words]
            ilabels = [0] * len(words)
        else:
            words = words or [0]
            targets = [new_state() for _ in words[:-1]] + [arc.dst]
            ilabels = [arc.label] + [0] * (len(words) - 1)
        cur = arc.src
        for i, (word, target, ilabel) in enumerate(zip(words, targets, ilabels)):
            cost = _cost_field(arc.score if i == 0 else 0.0)
            lines.append((cur, order, f"{cur}\t{target}\t{ilabel}\t{word}{cost}"))
            cur = target
        if arc.label == -1:
            lines.append((cur, order, f"{cur}{_cost_field(0.0)}"))

    for state, score in final_scores.items():
        lines.append((state, float("inf"), f"{state}{_cost_field(score)}"))
    lines.sort(key=lambda line: (line[0], line[1]))
    return "\n".join(line for _, _, line in lines) + "\n"


def load_fst(path: Union[str, Path], acceptor: bool = False) -> k2.Fsa:
    """
    Loads an FST from OpenFst text (any suffix but ``.pt``) or from a
    ``torch.save``-d ``Fsa.as_dict()`` (``.pt``).

    Arguments
    ---------
    path: str
        The file to read.
    acceptor: bool
        Whether an OpenFst text file holds an acceptor.

    Returns
    -------
    k2.Fsa
        The FST.
    """
    path = str(path)
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Could not open FST {path}")
    if path.endswith(".pt"):
        logger.info(f"Loading '{path}' from its .pt format")
        return k2.Fsa.from_dict(torch.load(path, map_location="cpu"))
    logger.info(f"Loading FST: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return fsa_from_openfst_text(f.read(), acceptor=acceptor)


def save_fst(fsa: k2.Fsa, path: Union[str, Path]):
    """Inverse of :func:`load_fst`."""
    path = str(path)
    if path.endswith(".pt"):
        torch.save(fsa.as_dict(), path)
    else:
        with open(path, "w", encoding="utf-8") as f:
            f.write(fsa_to_openfst_text(fsa))
