"""Phonetic context-dependency: maps a phone in its context window to a
leaf (pdf id) of the acoustic model.

The window has ``context_width`` phones; the phone being modelled sits at
``central_position``. Phone id 0 in a window stands for "no phone", i.e.
an utterance boundary.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import yaml

from traingraphs.tree.event_map import (
    PDF_CLASS_KEY,
    ConstantEventMap,
    EventMap,
    TableEventMap,
    event_map_from_dict,
)
from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)


class ContextDependency:
    """
    Context-dependency tree.

    Arguments
    ---------
    context_width : int
        Number of phones in the window (1 = monophone, 3 = triphone).
    central_position : int
        Position of the modelled phone inside the window.
    to_pdf : EventMap
        Tree over the keys ``0 .. context_width - 1`` and ``PDF_CLASS_KEY``.

    Example
    -------
    >>> ctx_dep = ContextDependency.monophone([1, 2], num_pdf_classes=2)
    >>> ctx_dep.compute([2], 1)
    3
    >>> ctx_dep.num_pdfs
    4
    """

    def __init__(self, context_width: int, central_position: int, to_pdf: EventMap):
        if context_width < 1 or not 0 <= central_position < context_width:
            raise ValueError(
                f"Invalid context: width {context_width}, "
                f"central position {central_position}"
            )
        self.context_width = context_width
        self.central_position = central_position
        self.to_pdf = to_pdf

    def compute(self, phone_window: Sequence[int], pdf_class: int) -> Optional[int]:
        """Returns the pdf id of a pdf-class of the central phone in this
        window, or None when the tree does not cover the event."""
        if len(phone_window) != self.context_width:
            raise ValueError(
                f"Expected a window of {self.context_width} phones, "
                f"got {list(phone_window)}"
            )
        if phone_window[self.central_position] == 0:
            raise ValueError(
                f"The central phone of {list(phone_window)} is a boundary"
            )
        event = {i: int(p) for i, p in enumerate(phone_window)}
        event[PDF_CLASS_KEY] = int(pdf_class)
        return self.to_pdf.map(event)

    def get_pdf_info(
        self, phones: Iterable[int], num_pdf_classes: Dict[int, int]
    ) -> Dict[Tuple[int, int], Set[int]]:
        """For each phone and pdf-class, collects every pdf id the tree can
        produce over all possible contexts.

        Arguments
        ---------
        phones : Iterable[int]
            The phones to enumerate.
        num_pdf_classes : dict
            Number of pdf-classes of each phone.

        Returns
        -------
        dict
            ``(phone, pdf_class) -> set of pdf ids``.
        """
        ans = {}
        for phone in phones:
            for pdf_class in range(num_pdf_classes[phone]):
                event = {self.central_position: phone, PDF_CLASS_KEY: pdf_class}
                pdfs = self.to_pdf.multi_map(event)
                if not pdfs:
                    logger.warning(
                        f"No pdf for phone {phone}, pdf-class {pdf_class}"
                    )
                ans[(phone, pdf_class)] = pdfs
        return ans

    @property
    def num_pdfs(self) -> int:
        """One more than the largest leaf of the tree."""
        leaves = self.to_pdf.multi_map({})
        return max(leaves) + 1 if leaves else 0

    def to_dict(self) -> dict:
        return {
            "context_width": self.context_width,
            "central_position": self.central_position,
            "to_pdf": self.to_pdf.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ContextDependency":
        return cls(
            int(d["context_width"]),
            int(d["central_position"]),
            event_map_from_dict(d["to_pdf"]),
        )

    def save(self, path):
        """Writes the tree as a YAML document."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)

    @classmethod
    def load(cls, path) -> "ContextDependency":
        """Reads a tree written by :meth:`save`."""
        with open(path, "r", encoding="utf-8") as f:
            d = yaml.safe_load(f)
        if not isinstance(d, dict) or "to_pdf" not in d:
            raise ValueError(f"{path} does not contain a context-dependency tree")
        return cls.from_dict(d)

    @classmethod
    def monophone(
        cls, phones: List[int], num_pdf_classes: int = 3
    ) -> "ContextDependency":
        """Tree without context: every (phone, pdf-class) gets its own pdf,
        numbered in the order of ``phones``."""
        return cls.phone_position_tree(1, 0, phones, num_pdf_classes)

    @classmethod
    def phone_position_tree(
        cls,
        context_width: int,
        central_position: int,
        phones: List[int],
        num_pdf_classes: int = 3,
    ) -> "ContextDependency":
        """Tree of the given context width whose leaves only depend on the
        central phone and the pdf-class (contexts are ignored)."""
        table = {}
        pdf = 0
        for phone in phones:
            classes = {}
            for pdf_class in range(num_pdf_classes):
                classes[pdf_class] = ConstantEventMap(pdf)
                pdf += 1
            table[phone] = TableEventMap(PDF_CLASS_KEY, classes)
        return cls(
            context_width, central_position, TableEventMap(central_position, table)
        )

    def __repr__(self):
        return (
            f"ContextDependency(context_width={self.context_width}, "
            f"central_position={self.central_position}, "
            f"num_pdfs={self.num_pdfs})"
        )
