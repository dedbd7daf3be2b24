"""Keyed archives of FSTs.

A text archive holds one record per utterance: the key on its own line,
the FST in OpenFst text format, then an empty line. A record without FST
lines is an FST without states.

Archives are named by specifiers: ``ark:PATH``, ``ark,t:PATH``, ``PATH``
or ``-`` (standard input / output). Files ending in ``.gz`` are
compressed.

Example
-------
>>> parse_specifier("ark,t:graphs.fsts")
'graphs.fsts'
>>> parse_specifier("-")
'-'
"""

import gzip
import re
import sys
from typing import Iterator, List, Optional, Tuple

from traingraphs.k2_integration.utils import (
    fsa_from_openfst_text,
    fsa_to_openfst_text,
)
from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)

SPECIFIER_PATTERN = re.compile(r"^(ark|scp)((?:,[a-z]+)*):")


def parse_specifier(specifier: str) -> str:
    """
    Returns the path of an archive specifier.

    Arguments
    ---------
    specifier: str
        ``ark[,opts]:PATH``, ``PATH`` or ``-``.

    Returns
    -------
    str
        The path, ``-`` for the standard streams.
    """
    match = SPECIFIER_PATTERN.match(specifier)
    if match is None:
        path = specifier
    else:
        if match.group(1) == "scp":
            raise ValueError(
                f"Script files are not supported, use an archive: {specifier}"
            )
        path = specifier[match.end() :]
    if not path:
        raise ValueError(f"Empty path in archive specifier {specifier!r}")
    return path


def _open(path: str, mode: str):
    if path.endswith(".gz"):
        return gzip.open(path, mode + "t", encoding="utf-8")
    return open(path, mode, encoding="utf-8")


def _check_key(key: str):
    if not key or any(c.isspace() for c in key):
        raise ValueError(f"Invalid utterance key {key!r}")


def read_records(lines) -> Iterator[Tuple[str, str]]:
    """
    Splits archive lines into ``(key, fst_text)`` records.

    Example
    -------
    >>> list(read_records(["utt1\\n", "0 1 3 3\\n", "1\\n", "\\n", "utt2\\n", "\\n"]))
    [('utt1', '0 1 3 3\\n1\\n'), ('utt2', '')]
    """
    key, body = None, []
    for line in lines:
        line = line.rstrip("\r\n")
        if key is None:
            if not line.strip():
                continue
            key = line.strip()
            _check_key(key)
            continue
        if line.strip():
            body.append(line + "\n")
        else:
            yield key, "".join(body)
            key, body = None, []
    if key is not None:
        yield key, "".join(body)


class SequentialFstReader:
    """
    Reads ``(key, k2.Fsa)`` pairs of an archive in order.

    Arguments
    ---------
    specifier: str
        The archive, see :func:`parse_specifier`.
    acceptor: bool
        Whether the FSTs are written as acceptors (three or four fields
        per arc).
    """

    def __init__(self, specifier: str, acceptor: bool = False):
        self.path = parse_specifier(specifier)
        self.acceptor = acceptor
        if self.path == "-":
            self._file = sys.stdin
        else:
            self._file = _open(self.path, "r")
        self.num_read = 0

    def __iter__(self):
        for key, text in read_records(self._file):
            try:
                fsa = fsa_from_openfst_text(text, acceptor=self.acceptor)
            except (RuntimeError, ValueError) as e:
                raise ValueError(
                    f"Bad FST for key {key} in {self.path}: {e}"
                ) from e
            self.num_read += 1
            yield key, fsa

    def close(self):
        if self._file is not sys.stdin:
            self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class FstWriter:
    """
    Writes ``(key, k2.Fsa)`` records to an archive.

    Arguments
    ---------
    specifier: str
        The archive, see :func:`parse_specifier`.
    """

    def __init__(self, specifier: str):
        self.path = parse_specifier(specifier)
        if self.path == "-":
            self._file = sys.stdout
        else:
            self._file = _open(self.path, "w")
        self.num_written = 0

    def write(self, key: str, fsa):
        _check_key(key)
        self._file.write(f"{key}\n{fsa_to_openfst_text(fsa)}\n")
        self.num_written += 1

    def close(self):
        if self._file is sys.stdout:
            self._file.flush()
        else:
            self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def read_disambig_symbols(path: Optional[str]) -> List[int]:
    """
    Reads the disambiguation symbols: whitespace separated integers.

    Arguments
    ---------
    path: str
        The file; None or "" gives an empty list.

    Returns
    -------
    List[int]
        The symbols, in file order.
    """
    if not path:
        return []
    with open(path, "r", encoding="utf-8") as f:
        fields = f.read().split()
    try:
        symbols = [int(x) for x in fields]
    except ValueError as e:
        raise ValueError(
            f"Could not read disambiguation symbols from {path}: {e}"
        ) from e
    if any(s <= 0 for s in symbols):
        raise ValueError(f"Disambiguation symbols must be positive in {path}")
    logger.debug(f"Read {len(symbols)} disambiguation symbols from {path}")
    return symbols
