"""Lexicon access: reads the lang directory written by
:func:`traingraphs.k2_integration.prepare_lang.prepare_lang` and turns
transcripts into linear grammars.
"""

import re
from pathlib import Path
from typing import List, Tuple, Union

import torch

from . import k2  # import k2 from ./__init__.py
from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)

EPS = "<eps>"  # epsilon

DISAMBIG_PATTERN: re.Pattern = re.compile(
    r"^#\d+$"
)  # pattern for disambiguation symbols.


class Lexicon(object):
    """
    Phone based lexicon of a lang directory. It maps words to ids and holds
    the lexicon transducer with disambiguation symbols.

    Arguments
    ---------
    lang_dir: str
        Path to the lang directory. It is expected to contain the following
        files:
            - phones.txt
            - words.txt
            - L_disambig.pt

    Example
    -------
    >>> from traingraphs.k2_integration.prepare_lang import prepare_lang

    >>> lang_tmpdir = getfixture('tmpdir')
    >>> lexicon_file = lang_tmpdir.join("lexicon.txt")
    >>> lexicon_file.write("ab a b\\nba b a\\n")
    >>> prepare_lang(lang_tmpdir)
    >>> lexicon = Lexicon(lang_tmpdir)
    >>> lexicon.phones
    [1, 2, 3]
    >>> lexicon.disambig_ids
    [4]
    >>> isinstance(lexicon.L_disambig, k2.Fsa)
    True
    """

    def __init__(self, lang_dir: Union[str, Path]):
        self.lang_dir = lang_dir = Path(lang_dir)
        self.phone_table = k2.SymbolTable.from_file(lang_dir / "phones.txt")
        self.word_table = k2.SymbolTable.from_file(lang_dir / "words.txt")

        if (lang_dir / "L_disambig.pt").exists():
            logger.info(f"Loading compiled {lang_dir}/L_disambig.pt")
            self.L_disambig = k2.Fsa.from_dict(
                torch.load(lang_dir / "L_disambig.pt")
            )
        else:
            raise RuntimeError(
                f"{lang_dir}/L_disambig.pt does not exist. Please make sure "
                f"you have successfully created L_disambig.pt in {lang_dir}"
            )

    @property
    def phones(self) -> List[int]:
        """
        Return a list of phone IDs excluding those from
        disambiguation symbols and epsilon.
        """
        ans = [
            self.phone_table[s]
            for s in self.phone_table.symbols
            if not DISAMBIG_PATTERN.match(s) and s != EPS
        ]
        return sorted(ans)

    @property
    def disambig_ids(self) -> List[int]:
        """Return the phone-side IDs of the disambiguation symbols."""
        ans = [
            self.phone_table[s]
            for s in self.phone_table.symbols
            if DISAMBIG_PATTERN.match(s)
        ]
        return sorted(ans)

    def texts_to_word_ids(self, texts: List[str]) -> List[List[int]]:
        """
        Convert a list of texts into word IDs.

        Arguments
        ---------
        texts: List[str]
            Space separated words, one string per utterance.

        Returns
        -------
        word_ids:
            A list-of-list of word IDs.

        Raises
        ------
        ValueError
            If a text holds a word missing from the word table.
        """
        word_ids_list = []
        for text in texts:
            unknown = [word for word in text.split() if word not in self.word_table]
            if unknown:
                raise ValueError(
                    f"Cannot find the words {unknown} of '{text}' in the lexicon"
                )
            word_ids_list.append([self.word_table[word] for word in text.split()])
        return word_ids_list

    def texts_to_grammars(self, texts: List[str]) -> List[k2.Fsa]:
        """Builds one linear grammar (acceptor over word IDs) per text."""
        return [k2.linear_fsa(ids) for ids in self.texts_to_word_ids(texts)]


def read_lexicon(filename: str) -> List[Tuple[str, List[str]]]:
    """
    Read a lexicon from `filename`.

    Each line in the lexicon contains "word p1 p2 p3 ...".
    That is, the first field is a word and the remaining
    fields are phones. Fields are separated by space(s).

    Arguments
    ---------
    filename: str
        Path to the lexicon.txt

    Returns
    -------
    ans:
        A list of tuples., e.g., [('w', ['p1', 'p2']), ('w1', ['p3, 'p4'])]
    """
    ans = []

    with open(filename, "r", encoding="utf-8") as f:
        whitespace = re.compile("[ \t]+")
        for line in f:
            line = line.strip(" \t\r\n")
            if not line:
                continue
            a = whitespace.split(line)
            if len(a) < 2:
                raise RuntimeError(
                    f"Found bad line {line} in lexicon file {filename}. "
                    "Every line is expected to contain at least 2 fields"
                )
            word = a[0]
            if word == EPS:
                raise RuntimeError(
                    f"Found bad line {line} in lexicon file {filename}. "
                    f"{EPS} should not be a valid word"
                )
            ans.append((word, a[1:]))
    return ans


def write_lexicon(
    filename: Union[str, Path], lexicon: List[Tuple[str, List[str]]]
) -> None:
    """
    Write a lexicon to a file.

    Arguments
    ---------
    filename: str
        Path to the lexicon file to be generated.
    lexicon: List[Tuple[str, List[str]]]
        It can be the return value of :func:`read_lexicon`.
    """
    with open(filename, "w", encoding="utf-8") as f:
        for word, phones in lexicon:
            f.write(f"{word} {' '.join(phones)}\n")
