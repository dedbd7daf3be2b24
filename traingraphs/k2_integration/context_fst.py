"""Phonetic context expansion of a phone-to-word transducer.

Each phone of the input side is replaced by a context-dependent label, an
index into an :class:`ILabelTable` whose entries are phone windows of
``context_width`` phones. Disambiguation symbols stay transparent: they get
their own table entry ``(-symbol,)`` and never enter the window.
"""

from typing import Dict, Iterable, List, Sequence, Tuple

from . import k2  # import k2 from ./__init__.py
from .utils import build_fsa, fsa_arcs, is_empty
from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)


class ILabelTable:
    """
    Numbering of the context-dependent labels.

    Index 0 is epsilon (the empty tuple). Indices are never reused, so a
    table shared by several graphs gives them a common label alphabet.

    Example
    -------
    >>> table = ILabelTable()
    >>> table.index((0, 1, 2)), table.index((-4,)), table.index((0, 1, 2))
    (1, 2, 1)
    >>> table[2], table.is_disambig(2), len(table)
    ((-4,), True, 3)
    """

    def __init__(self):
        self._entries: List[Tuple[int, ...]] = [()]
        self._index: Dict[Tuple[int, ...], int] = {(): 0}

    def index(self, entry: Sequence[int]) -> int:
        """Returns the label of a window, adding it if new."""
        entry = tuple(entry)
        label = self._index.get(entry)
        if label is None:
            label = len(self._entries)
            self._entries.append(entry)
            self._index[entry] = label
        return label

    def __getitem__(self, label: int) -> Tuple[int, ...]:
        return self._entries[label]

    def __len__(self):
        return len(self._entries)

    def is_disambig(self, label: int) -> bool:
        entry = self._entries[label]
        return len(entry) == 1 and entry[0] < 0


def compose_context(
    lg: k2.Fsa,
    ilabel_table: ILabelTable,
    context_width: int,
    central_position: int,
    disambig_syms: Iterable[int] = (),
) -> k2.Fsa:
    """
    Composes the context transducer with ``lg`` on the fly.

    A state of the result is a pair ``(lg_state, window)``, ``window``
    holding the last ``context_width - 1`` phones read (0 = boundary).
    Reading a phone emits the label of the full window once its central
    position holds a phone, epsilon before that. At the end of the
    utterance the pending right contexts are flushed with boundaries.

    Arguments
    ---------
    lg: k2.Fsa
        Phones and disambiguation symbols in, words out.
    ilabel_table: ILabelTable
        Table receiving the windows; it is extended in place.
    context_width: int
        Phones per window.
    central_position: int
        Position of the modelled phone in the window.
    disambig_syms: Iterable[int]
        Labels of ``lg`` to be kept transparent.

    Returns
    -------
    clg: k2.Fsa
        Context-dependent labels in, words out.
    """
    if is_empty(lg):
        return lg
    disambig_syms = set(disambig_syms)
    N, P = context_width, central_position
    arcs_of = {}
    for arc in fsa_arcs(lg):
        arcs_of.setdefault(arc.src, []).append(arc)

    def pending(window):
        return any(window[j] != 0 for j in range(P, N - 1))

    def shift(window, phone):
        full = window + (phone,)
        label = ilabel_table.index(full) if full[P] != 0 else 0
        return label, full[1:]

    start = (0, (0,) * (N - 1))
    state_ids = {start: 0}
    queue = [start]
    arcs = []
    final_arcs = []

    def state_id(state):
        if state not in state_ids:
            state_ids[state] = len(state_ids)
            queue.append(state)
        return state_ids[state]

    while queue:
        state = queue.pop()
        src = state_ids[state]
        lg_state, window = state
        if lg_state is None:
            # flushing the right context
            label, new_window = shift(window, 0)
            if pending(new_window):
                dst = state_id((None, new_window))
                arcs.append([src, dst, label, [], 0.0])
            else:
                final_arcs.append([src, label, [], 0.0])
            continue
        for arc in arcs_of.get(lg_state, []):
            words = [w for w in arc.aux_labels if w > 0]
            if arc.label == -1:
                if pending(window):
                    label, new_window = shift(window, 0)
                    if pending(new_window):
                        dst = state_id((None, new_window))
                        arcs.append([src, dst, label, words, arc.score])
                    else:
                        final_arcs.append([src, label, words, arc.score])
                else:
                    final_arcs.append([src, 0, words, arc.score])
                continue
            if arc.label in disambig_syms:
                label, new_window = ilabel_table.index((-arc.label,)), window
            elif arc.label == 0:
                label, new_window = 0, window
            else:
                label, new_window = shift(window, arc.label)
            dst = state_id((arc.dst, new_window))
            arcs.append([src, dst, label, words, arc.score])

    # every utterance end passes through the join state before the final one
    join_state = len(state_ids)
    final_state = join_state + 1
    for src, label, words, score in final_arcs:
        if label == 0:
            arcs.append([src, final_state, -1, words + [-1], score])
        else:
            arcs.append([src, join_state, label, words, score])
    arcs.append([join_state, final_state, -1, [-1], 0.0])
    logger.debug(
        f"Context expansion: {lg.shape[0]} states in, {final_state + 1} out, "
        f"{len(ilabel_table)} context-dependent labels"
    )
    return k2.connect(build_fsa(arcs, final_state))
