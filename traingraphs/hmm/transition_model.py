"""Transition model: numbering of the HMM arcs of every context-dependent
phone state.

A *transition-state* is a tuple ``(phone, hmm_state, pdf)``; tuples are
sorted and numbered from 1. A *transition-id* numbers the pairs
``(transition_state, transition_index)`` from 1, where
``transition_index`` indexes the transitions of the HMM state in its
topology. Label 0 stays free for epsilon.
"""

import bisect
import math
from typing import Dict, List, Optional, Sequence, Tuple

import yaml

from traingraphs.hmm.topology import HmmTopology
from traingraphs.tree.context_dependency import ContextDependency
from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)

Tuple3 = Tuple[int, int, int]


class TransitionModel:
    """
    Arguments
    ---------
    topology : HmmTopology
        HMM topology of each phone.
    tuples : Sequence[Tuple[int, int, int]]
        The ``(phone, hmm_state, pdf)`` transition-states.
    log_probs : Sequence[float], optional
        One log-probability per transition-id (index 0 unused). Defaults to
        the probabilities of the topology.

    Example
    -------
    >>> topo = HmmTopology.left_to_right([1], num_states=1, self_loop_prob=0.5)
    >>> tm = TransitionModel(topo, [(1, 0, 0)])
    >>> tm.num_transition_ids
    2
    >>> tm.is_self_loop(1), tm.is_self_loop(2)
    (True, False)
    >>> round(tm.get_transition_log_prob(2), 4)
    -0.6931
    """

    def __init__(
        self,
        topology: HmmTopology,
        tuples: Sequence[Tuple3],
        log_probs: Optional[Sequence[float]] = None,
    ):
        self.topology = topology
        self.tuples: List[Tuple3] = sorted(set(tuple(t) for t in tuples))
        for phone, hmm_state, pdf in self.tuples:
            states = topology.topology_for_phone(phone)
            if not 0 <= hmm_state < len(states) - 1:
                raise ValueError(
                    f"Transition-state {(phone, hmm_state, pdf)} refers to "
                    "a non-emitting or unknown HMM state"
                )

        # state2id[s] is the first transition-id of transition-state s;
        # state2id[-1] is one past the last transition-id.
        self._state2id = [0, 1]
        self._id2state = [0]
        for trans_state, (phone, hmm_state, _) in enumerate(self.tuples, 1):
            num_transitions = len(
                topology.topology_for_phone(phone)[hmm_state].transitions
            )
            self._state2id.append(self._state2id[-1] + num_transitions)
            self._id2state.extend([trans_state] * num_transitions)
        self._tuple2state = {t: i for i, t in enumerate(self.tuples, 1)}

        if log_probs is None:
            log_probs = [0.0]
            for tid in range(1, self.num_transition_ids + 1):
                log_probs.append(math.log(self._topology_prob(tid)))
        if len(log_probs) != self.num_transition_ids + 1:
            raise ValueError(
                f"Expected {self.num_transition_ids + 1} log-probs, "
                f"got {len(log_probs)}"
            )
        self.log_probs = [float(p) for p in log_probs]

    @classmethod
    def from_tree(
        cls, ctx_dep: ContextDependency, topology: HmmTopology
    ) -> "TransitionModel":
        """Builds the transition-states of every pdf the tree can produce
        for every HMM state of every phone of the topology."""
        phones = topology.phones
        num_pdf_classes = {p: topology.num_pdf_classes(p) for p in phones}
        pdf_info = ctx_dep.get_pdf_info(phones, num_pdf_classes)
        tuples = []
        for phone in phones:
            states = topology.topology_for_phone(phone)
            for hmm_state, state in enumerate(states[:-1]):
                for pdf in pdf_info[(phone, state.pdf_class)]:
                    tuples.append((phone, hmm_state, pdf))
        logger.debug(
            f"Transition model with {len(tuples)} transition-states "
            f"for {len(phones)} phones"
        )
        return cls(topology, tuples)

    @property
    def num_transition_states(self) -> int:
        return len(self.tuples)

    @property
    def num_transition_ids(self) -> int:
        return self._state2id[-1] - 1

    @property
    def num_pdfs(self) -> int:
        return max((pdf for _, _, pdf in self.tuples), default=-1) + 1

    @property
    def phones(self) -> List[int]:
        return self.topology.phones

    def tuple_to_transition_state(
        self, phone: int, hmm_state: int, pdf: int
    ) -> Optional[int]:
        """Returns None if the tuple is not part of the model."""
        return self._tuple2state.get((phone, hmm_state, pdf))

    def pair_to_transition_id(self, trans_state: int, trans_index: int) -> int:
        tid = self._state2id[trans_state] + trans_index
        if not self._state2id[trans_state] <= tid < self._state2id[trans_state + 1]:
            raise ValueError(
                f"Transition index {trans_index} out of range for "
                f"transition-state {trans_state}"
            )
        return tid

    def _check_tid(self, tid: int):
        if not 1 <= tid <= self.num_transition_ids:
            raise ValueError(f"Invalid transition-id {tid}")

    def transition_id_to_transition_state(self, tid: int) -> int:
        self._check_tid(tid)
        return self._id2state[tid]

    def transition_id_to_transition_index(self, tid: int) -> int:
        trans_state = self.transition_id_to_transition_state(tid)
        return tid - self._state2id[trans_state]

    def transition_id_to_phone(self, tid: int) -> int:
        return self.tuples[self.transition_id_to_transition_state(tid) - 1][0]

    def transition_id_to_hmm_state(self, tid: int) -> int:
        return self.tuples[self.transition_id_to_transition_state(tid) - 1][1]

    def transition_id_to_pdf(self, tid: int) -> int:
        return self.tuples[self.transition_id_to_transition_state(tid) - 1][2]

    def _transition(self, tid: int) -> Tuple[int, float]:
        phone, hmm_state, _ = self.tuples[
            self.transition_id_to_transition_state(tid) - 1
        ]
        state = self.topology.topology_for_phone(phone)[hmm_state]
        return state.transitions[self.transition_id_to_transition_index(tid)]

    def _topology_prob(self, tid: int) -> float:
        return self._transition(tid)[1]

    def is_self_loop(self, tid: int) -> bool:
        return self._transition(tid)[0] == self.transition_id_to_hmm_state(tid)

    def is_final(self, tid: int) -> bool:
        """True if the transition enters the final, non-emitting state."""
        phone = self.transition_id_to_phone(tid)
        num_states = len(self.topology.topology_for_phone(phone))
        return self._transition(tid)[0] == num_states - 1

    def self_loop_of(self, trans_state: int) -> Optional[int]:
        """Transition-id of the self-loop of a transition-state, if any."""
        phone, hmm_state, _ = self.tuples[trans_state - 1]
        state = self.topology.topology_for_phone(phone)[hmm_state]
        for trans_index, (dst, _) in enumerate(state.transitions):
            if dst == hmm_state:
                return self.pair_to_transition_id(trans_state, trans_index)
        return None

    def get_transition_log_prob(self, tid: int) -> float:
        self._check_tid(tid)
        return self.log_probs[tid]

    def get_non_self_loop_log_prob(self, trans_state: int) -> float:
        """log(1 - p(self-loop)) of a transition-state; 0 without self-loop."""
        self_loop = self.self_loop_of(trans_state)
        if self_loop is None:
            return 0.0
        return math.log1p(-math.exp(self.log_probs[self_loop]))

    def get_transition_log_prob_ignoring_self_loops(self, tid: int) -> float:
        """Log-prob of a non-self-loop transition, renormalised as if the
        self-loop of its state did not exist."""
        if self.is_self_loop(tid):
            raise ValueError(f"Transition-id {tid} is a self-loop")
        trans_state = self.transition_id_to_transition_state(tid)
        return self.get_transition_log_prob(tid) - self.get_non_self_loop_log_prob(
            trans_state
        )

    def pdfs_of_phone(self, phone: int) -> List[int]:
        lo = bisect.bisect_left(self.tuples, (phone, -1, -1))
        hi = bisect.bisect_left(self.tuples, (phone + 1, -1, -1))
        return sorted({pdf for _, _, pdf in self.tuples[lo:hi]})

    def to_dict(self) -> Dict:
        return {
            "topology": self.topology.to_dict(),
            "tuples": [list(t) for t in self.tuples],
            "log_probs": self.log_probs,
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "TransitionModel":
        return cls(
            HmmTopology.from_dict(d["topology"]),
            [tuple(int(x) for x in t) for t in d["tuples"]],
            d.get("log_probs"),
        )

    def save(self, path):
        """Writes the model as a YAML document."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)

    @classmethod
    def load(cls, path) -> "TransitionModel":
        """Reads a model written by :meth:`save`."""
        with open(path, "r", encoding="utf-8") as f:
            d = yaml.safe_load(f)
        if not isinstance(d, dict) or "topology" not in d or "tuples" not in d:
            raise ValueError(f"{path} does not contain a transition model")
        return cls.from_dict(d)

    def __repr__(self):
        return (
            f"TransitionModel(num_phones={len(self.phones)}, "
            f"num_transition_states={self.num_transition_states}, "
            f"num_transition_ids={self.num_transition_ids})"
        )
