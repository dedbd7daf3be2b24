"""HMM topologies of the phones.

Each phone has a list of HMM states; the last one is the final,
non-emitting state (``pdf_class`` is None and it has no transitions).
Every other state emits through its ``pdf_class`` and has outgoing
transitions ``(dst, prob)`` whose probabilities sum to one.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class HmmState:
    """One state of a phone HMM."""

    pdf_class: Optional[int]
    transitions: List[Tuple[int, float]] = field(default_factory=list)

    @property
    def is_emitting(self) -> bool:
        return self.pdf_class is not None


class HmmTopology:
    """
    Maps phones to their HMM topology.

    Arguments
    ---------
    entries : List[Tuple[List[int], List[HmmState]]]
        Each entry gives a list of phones sharing one topology.

    Example
    -------
    >>> topo = HmmTopology.left_to_right([1, 2], num_states=3, self_loop_prob=0.5)
    >>> topo.num_pdf_classes(1)
    3
    >>> topo.self_loop_prob(2, 0)
    0.5
    >>> topo.phones
    [1, 2]
    """

    def __init__(self, entries: List[Tuple[List[int], List[HmmState]]]):
        self.entries = []
        self._phone2entry = {}
        for phones, states in entries:
            states = [
                s if isinstance(s, HmmState) else HmmState(*s) for s in states
            ]
            for phone in phones:
                if phone in self._phone2entry:
                    raise ValueError(f"Phone {phone} has two topologies")
                if phone <= 0:
                    raise ValueError(f"Phone ids must be positive, got {phone}")
                self._phone2entry[phone] = len(self.entries)
            self.entries.append((sorted(phones), states))
        self.check()

    def check(self):
        """Validates every topology; raises ValueError on the first problem."""
        for phones, states in self.entries:
            if len(states) < 2:
                raise ValueError(f"Topology of phones {phones} is too short")
            final = states[-1]
            if final.is_emitting or final.transitions:
                raise ValueError(
                    f"The last state of the topology of phones {phones} "
                    "must be non-emitting without transitions"
                )
            pdf_classes = set()
            for index, state in enumerate(states[:-1]):
                if not state.is_emitting:
                    raise ValueError(
                        f"State {index} of phones {phones} is non-emitting; "
                        "only the final state may be"
                    )
                pdf_classes.add(state.pdf_class)
                if not state.transitions:
                    raise ValueError(
                        f"State {index} of phones {phones} has no transitions"
                    )
                total = 0.0
                for dst, prob in state.transitions:
                    if not 0 <= dst < len(states):
                        raise ValueError(
                            f"State {index} of phones {phones} has a "
                            f"transition to unknown state {dst}"
                        )
                    if not 0.0 < prob <= 1.0:
                        raise ValueError(
                            f"Bad transition probability {prob} in "
                            f"topology of phones {phones}"
                        )
                    if dst == index and prob >= 1.0:
                        raise ValueError(
                            f"State {index} of phones {phones} never leaves "
                            "its self-loop"
                        )
                    total += prob
                if not math.isclose(total, 1.0, abs_tol=1e-3):
                    raise ValueError(
                        f"Transition probabilities of state {index} of "
                        f"phones {phones} sum to {total}"
                    )
            if pdf_classes != set(range(len(pdf_classes))):
                raise ValueError(
                    f"pdf-classes of phones {phones} are not contiguous: "
                    f"{sorted(pdf_classes)}"
                )

    @property
    def phones(self) -> List[int]:
        return sorted(self._phone2entry)

    def topology_for_phone(self, phone: int) -> List[HmmState]:
        """Raises KeyError for a phone without topology."""
        try:
            return self.entries[self._phone2entry[phone]][1]
        except KeyError:
            raise KeyError(f"Phone {phone} has no HMM topology") from None

    def num_pdf_classes(self, phone: int) -> int:
        states = self.topology_for_phone(phone)
        return len({s.pdf_class for s in states if s.is_emitting})

    def self_loop_prob(self, phone: int, hmm_state: int) -> float:
        """Probability of the self-loop of an HMM state; 0 without one."""
        state = self.topology_for_phone(phone)[hmm_state]
        for dst, prob in state.transitions:
            if dst == hmm_state:
                return prob
        return 0.0

    def to_dict(self) -> dict:
        return {
            "entries": [
                {
                    "phones": list(phones),
                    "states": [
                        {
                            "pdf_class": s.pdf_class,
                            "transitions": [[d, p] for d, p in s.transitions],
                        }
                        for s in states
                    ],
                }
                for phones, states in self.entries
            ]
        }

    @classmethod
    def from_dict(cls, d: dict) -> "HmmTopology":
        entries = []
        for entry in d["entries"]:
            states = [
                HmmState(
                    s.get("pdf_class"),
                    [(int(dst), float(p)) for dst, p in s.get("transitions", [])],
                )
                for s in entry["states"]
            ]
            entries.append(([int(p) for p in entry["phones"]], states))
        return cls(entries)

    @classmethod
    def left_to_right(
        cls, phones: List[int], num_states: int = 3, self_loop_prob: float = 0.75
    ) -> "HmmTopology":
        """The usual topology: ``num_states`` emitting states in a chain,
        each with a self-loop, followed by the final state."""
        states = []
        for index in range(num_states):
            if self_loop_prob > 0.0:
                transitions = [
                    (index, self_loop_prob),
                    (index + 1, 1.0 - self_loop_prob),
                ]
            else:
                transitions = [(index + 1, 1.0)]
            states.append(HmmState(index, transitions))
        states.append(HmmState(None, []))
        return cls([(list(phones), states)])

    def __eq__(self, other):
        return isinstance(other, HmmTopology) and self.to_dict() == other.to_dict()
