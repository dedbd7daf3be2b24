"""Decision-tree maps from phonetic events to leaves.

An *event* is a dict mapping integer keys to integer values. For phonetic
context trees the keys ``0 .. N-1`` are positions in the phone window and
the key :data:`PDF_CLASS_KEY` is the pdf-class of the HMM state.

Three node types make up a tree:

* :class:`ConstantEventMap` -- a leaf, always returns its answer.
* :class:`TableEventMap` -- dispatches on the value of one key.
* :class:`SplitEventMap` -- asks whether the value of one key is in a set.

Example
-------
>>> tree = TableEventMap(1, {
...     1: ConstantEventMap(0),
...     2: SplitEventMap(0, {1}, ConstantEventMap(1), ConstantEventMap(2)),
... })
>>> tree.map({0: 1, 1: 2, 2: 0})
1
>>> tree.map({0: 3, 1: 2, 2: 0})
2
>>> sorted(tree.multi_map({1: 2}))
[1, 2]
>>> tree.map({0: 3, 1: 5}) is None
True
"""

from typing import Dict, Optional, Set

PDF_CLASS_KEY = -1


class EventMap:
    """Base class of the decision-tree nodes."""

    def map(self, event: Dict[int, int]) -> Optional[int]:
        """Returns the leaf reached by a fully specified event, or None if
        the event is not covered by the tree."""
        raise NotImplementedError

    def multi_map(self, event: Dict[int, int]) -> Set[int]:
        """Returns every leaf reachable by an event whose keys may be only
        partially specified."""
        raise NotImplementedError

    def to_dict(self) -> dict:
        """Plain-data form, see :func:`event_map_from_dict`."""
        raise NotImplementedError

    def __eq__(self, other):
        return type(self) is type(other) and self.to_dict() == other.to_dict()


class ConstantEventMap(EventMap):
    """A leaf of the tree."""

    def __init__(self, answer: int):
        self.answer = int(answer)

    def map(self, event):
        return self.answer

    def multi_map(self, event):
        return {self.answer}

    def to_dict(self):
        return {"type": "constant", "answer": self.answer}

    def __repr__(self):
        return f"ConstantEventMap({self.answer})"


class TableEventMap(EventMap):
    """Dispatches on the value of ``key``; values absent from the table
    are not covered."""

    def __init__(self, key: int, table: Dict[int, EventMap]):
        self.key = int(key)
        self.table = {int(value): child for value, child in table.items()}

    def map(self, event):
        if self.key not in event:
            return None
        child = self.table.get(event[self.key])
        if child is None:
            return None
        return child.map(event)

    def multi_map(self, event):
        if self.key in event:
            child = self.table.get(event[self.key])
            return child.multi_map(event) if child is not None else set()
        ans = set()
        for child in self.table.values():
            ans |= child.multi_map(event)
        return ans

    def to_dict(self):
        return {
            "type": "table",
            "key": self.key,
            "table": {
                value: child.to_dict()
                for value, child in sorted(self.table.items())
            },
        }

    def __repr__(self):
        return f"TableEventMap({self.key}, {self.table!r})"


class SplitEventMap(EventMap):
    """Binary question: is the value of ``key`` one of ``yes_set``?"""

    def __init__(self, key: int, yes_set, yes: EventMap, no: EventMap):
        self.key = int(key)
        self.yes_set = frozenset(int(v) for v in yes_set)
        self.yes = yes
        self.no = no

    def map(self, event):
        if self.key not in event:
            return None
        if event[self.key] in self.yes_set:
            return self.yes.map(event)
        return self.no.map(event)

    def multi_map(self, event):
        if self.key in event:
            if event[self.key] in self.yes_set:
                return self.yes.multi_map(event)
            return self.no.multi_map(event)
        return self.yes.multi_map(event) | self.no.multi_map(event)

    def to_dict(self):
        return {
            "type": "split",
            "key": self.key,
            "yes_set": sorted(self.yes_set),
            "yes": self.yes.to_dict(),
            "no": self.no.to_dict(),
        }

    def __repr__(self):
        return (
            f"SplitEventMap({self.key}, {sorted(self.yes_set)}, "
            f"{self.yes!r}, {self.no!r})"
        )


def event_map_from_dict(d: dict) -> EventMap:
    """Rebuilds a tree from the output of :meth:`EventMap.to_dict`.

    Arguments
    ---------
    d : dict
        A node description with a ``type`` field.

    Returns
    -------
    EventMap
        The rebuilt tree.

    Example
    -------
    >>> event_map_from_dict({"type": "constant", "answer": 4})
    ConstantEventMap(4)
    """
    node_type = d.get("type")
    if node_type == "constant":
        return ConstantEventMap(d["answer"])
    if node_type == "table":
        return TableEventMap(
            d["key"],
            {
                int(value): event_map_from_dict(child)
                for value, child in d["table"].items()
            },
        )
    if node_type == "split":
        return SplitEventMap(
            d["key"],
            d["yes_set"],
            event_map_from_dict(d["yes"]),
            event_map_from_dict(d["no"]),
        )
    raise ValueError(f"Unknown event map node type: {node_type!r}")
