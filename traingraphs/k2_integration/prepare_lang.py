#!/usr/bin/env python3
""" This module contains functions to prepare the lexicon transducer with
disambiguation symbols from a "word p1 p2 ..." lexicon. It follows the
`prepare_lang.sh` recipe of Kaldi and k2/icefall.
"""


import math
import os
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

import torch

from . import k2  # import k2 from ./__init__.py
from .lexicon import EPS, read_lexicon, write_lexicon
from .utils import build_fsa, save_fst
from traingraphs.utils.logger import get_logger

logger = get_logger(__name__)

Lexicon = List[Tuple[str, List[str]]]


def write_mapping(filename: Union[str, Path], sym2id: Dict[str, int]) -> None:
    """
    Write a symbol to ID mapping to a file.

    NOTE: No need to implement `read_mapping` as it can be done through
      :func:`k2.SymbolTable.from_file`.

    Arguments
    ---------
    filename: str
        Filename to save the mapping.
    sym2id: Dict[str, int]
        A dict mapping symbols to IDs.
    """
    with open(filename, "w", encoding="utf-8") as f:
        for sym, i in sym2id.items():
            f.write(f"{sym} {i}\n")


def get_phones(
    lexicon: Lexicon, sil_phone="SIL", manually_add_sil_to_phones=False
) -> List[str]:
    """
    Get phones from a lexicon.

    Arguments
    ---------
    lexicon: Lexicon
        It is the return value of :func:`read_lexicon`.
    sil_phone: str
        The optional silence phone between words. It should not appear in
        the lexicon, otherwise a ValueError is raised.
    manually_add_sil_to_phones: bool
        If true, add `sil_phone` to the phones.

    Returns
    -------
    sorted_ans: List[str]
        A list of unique phones.
    """
    ans = set()
    if manually_add_sil_to_phones:
        ans.add(sil_phone)
    for word, phones in lexicon:
        if sil_phone in phones:
            raise ValueError(
                f"{sil_phone} should not appear in the lexicon but it is "
                f"found in {word}"
            )
        ans.update(phones)
    return sorted(ans)


def get_words(lexicon: Lexicon) -> List[str]:
    """
    Get the sorted unique words of a lexicon.
    """
    return sorted({word for word, _ in lexicon})


def add_disambig_symbols(lexicon: Lexicon) -> Tuple[Lexicon, int]:
    """
    It adds pseudo-phone disambiguation symbols #1, #2 and so on
    at the ends of phones to ensure that all pronunciations are different,
    and that none is a prefix of another.

    See also add_lex_disambig.pl from kaldi.

    Arguments
    ---------
    lexicon: Lexicon
        It is returned by :func:`read_lexicon`.

    Returns
    -------
    ans:
        The output lexicon with disambiguation symbols
    max_disambig:
        The ID of the max disambiguation symbol that appears
        in the lexicon

    Example
    -------
    >>> lexicon = [("a", ["x"]), ("ab", ["x", "y"]), ("c", ["z"]), ("c2", ["z"])]
    >>> add_disambig_symbols(lexicon)
    ([('a', ['x', '#1']), ('ab', ['x', 'y']), ('c', ['z', '#1']), ('c2', ['z', '#2'])], 2)
    """

    # (1) Work out the count of each phone-sequence in the
    # lexicon.
    count = defaultdict(int)
    for word, phones in lexicon:
        if not phones:
            raise ValueError(f"{word} has an empty pronunciation")
        count[" ".join(phones)] += 1

    # (2) For each left sub-sequence of each phone-sequence, note down
    # that it exists (for identifying prefixes of longer strings).
    issubseq = defaultdict(int)
    for _, phones in lexicon:
        phones = phones.copy()
        phones.pop()
        while phones:
            issubseq[" ".join(phones)] = 1
            phones.pop()

    # (3) For each entry in the lexicon:
    # if the phone sequence is unique and is not a
    # prefix of another word, no disambig symbol.
    # Else output #1, or #2, #3, ... if the same phone-seq
    # has already been assigned a disambig symbol.
    ans = []

    # We start with #1 since #0 has its own purpose
    first_allowed_disambig = 1
    max_disambig = first_allowed_disambig - 1
    last_used_disambig_symbol_of = defaultdict(int)

    for word, phones in lexicon:
        phoneseq = " ".join(phones)
        if issubseq[phoneseq] == 0 and count[phoneseq] == 1:
            ans.append((word, phones))
            continue

        cur_disambig = last_used_disambig_symbol_of[phoneseq]
        if cur_disambig == 0:
            cur_disambig = first_allowed_disambig
        else:
            cur_disambig += 1

        if cur_disambig > max_disambig:
            max_disambig = cur_disambig
        last_used_disambig_symbol_of[phoneseq] = cur_disambig
        phoneseq += f" #{cur_disambig}"
        ans.append((word, phoneseq.split()))
    return ans, max_disambig


def generate_id_map(symbols: List[str]) -> Dict[str, int]:
    """
    Generate ID maps, i.e., map a symbol to a unique ID.

    Arguments
    ---------
    symbols: List[str]
        A list of unique symbols.

    Returns
    -------
    A dict containing the mapping between symbols and IDs.
    """
    return {sym: i for i, sym in enumerate(symbols)}


def add_self_loops(
    arcs: List[List[Any]], disambig_phone: int, disambig_word: int
) -> List[List[Any]]:
    """
    Adds self-loops to states of an FST to propagate disambiguation symbols
    through it. They are added on each state with non-epsilon output symbols
    on at least one arc out of the state.

    See also fstaddselfloops.pl from Kaldi. One difference is that
    Kaldi uses OpenFst style FSTs and it has multiple final states.
    This function uses k2 style FSTs and it does not need to add self-loops
    to the final state.

    Arguments
    ---------
    arcs: List[List[Any]]
        A list-of-list. The sublist contains
        `[src_state, dest_state, label, aux_label, score]`
    disambig_phone: int
        It is the phone ID of the symbol `#0`.
    disambig_word: int
        It is the word ID of the symbol `#0`.

    Returns
    -------
    Return new `arcs` containing self-loops.
    """
    states_needs_self_loops = set()
    for src, _, _, olabel, _ in arcs:
        if olabel != 0:
            states_needs_self_loops.add(src)

    ans = [
        [s, s, disambig_phone, disambig_word, 0]
        for s in sorted(states_needs_self_loops)
    ]
    return arcs + ans


def lexicon_to_fst(
    lexicon: Lexicon,
    phone2id: Dict[str, int],
    word2id: Dict[str, int],
    sil_phone: str = "SIL",
    sil_prob: float = 0.5,
    need_self_loops: bool = False,
) -> k2.Fsa:
    """
    Convert a lexicon to an FST (in k2 format) with optional silence at the
    beginning and end of each word.

    Arguments
    ---------
    lexicon: Lexicon
        The input lexicon. See also :func:`read_lexicon`
    phone2id: Dict[str, int]
        A dict mapping phones to IDs.
    word2id: Dict[str, int]
        A dict mapping words to IDs.
    sil_phone: str
        The silence phone.
    sil_prob: float
        The probability for adding a silence at the beginning and end
        of the word.
    need_self_loops: bool
        If True, add self-loop to states with non-epsilon output symbols
        on at least one arc out of the state. The input label for this
        self loop is `phone2id["#0"]` and the output label is `word2id["#0"]`.

    Returns
    -------
    fsa: k2.Fsa
        An FST representing the given lexicon.
    """
    if not 0.0 < sil_prob < 1.0:
        raise ValueError(f"sil_prob must be in (0, 1), got {sil_prob}")
    # CAUTION: we use score, i.e, negative cost.
    sil_score = math.log(sil_prob)
    no_sil_score = math.log(1.0 - sil_prob)

    start_state = 0
    loop_state = 1  # words enter and leave from here
    sil_state = 2  # words terminate here when followed by silence; this state
    # has a silence transition to loop_state.
    next_state = 3  # the next un-allocated state, will be incremented as we go.
    arcs = []

    assert phone2id[EPS] == 0
    assert word2id[EPS] == 0

    eps = 0

    sil_phone_id = phone2id[sil_phone]

    arcs.append([start_state, loop_state, eps, eps, no_sil_score])
    arcs.append([start_state, sil_state, eps, eps, sil_score])
    arcs.append([sil_state, loop_state, sil_phone_id, eps, 0])

    for word, phones in lexicon:
        cur_state = loop_state

        word = word2id[word]
        phones = [phone2id[i] for i in phones]

        for i in range(len(phones) - 1):
            w = word if i == 0 else eps
            arcs.append([cur_state, next_state, phones[i], w, 0])

            cur_state = next_state
            next_state += 1

        # now for the last phone of this word
        # It has two out-going arcs, one to the loop state,
        # the other one to the sil_state.
        i = len(phones) - 1
        w = word if i == 0 else eps
        arcs.append([cur_state, loop_state, phones[i], w, no_sil_score])
        arcs.append([cur_state, sil_state, phones[i], w, sil_score])

    if need_self_loops:
        arcs = add_self_loops(
            arcs, disambig_phone=phone2id["#0"], disambig_word=word2id["#0"],
        )

    final_state = next_state
    arcs.append([loop_state, final_state, -1, -1, 0])
    return build_fsa(arcs, final_state)


def lexicon_to_fst_no_sil(
    lexicon: Lexicon,
    phone2id: Dict[str, int],
    word2id: Dict[str, int],
    need_self_loops: bool = False,
) -> k2.Fsa:
    """
    Convert a lexicon to an FST (in k2 format).

    Arguments
    ---------
    lexicon: Lexicon
        The input lexicon. See also :func:`read_lexicon`
    phone2id: Dict[str, int]
        A dict mapping phones to IDs.
    word2id: Dict[str, int]
        A dict mapping words to IDs.
    need_self_loops: bool
        If True, add self-loop to states with non-epsilon output symbols
        on at least one arc out of the state. The input label for this
        self loop is `phone2id["#0"]` and the output label is `word2id["#0"]`.

    Returns
    -------
    fsa: k2.Fsa
        An FST representing the given lexicon.
    """
    loop_state = 0  # words enter and leave from here
    next_state = 1  # the next un-allocated state, will be incremented as we go

    arcs = []

    assert phone2id[EPS] == 0
    assert word2id[EPS] == 0

    eps = 0

    for word, phones in lexicon:
        cur_state = loop_state

        word = word2id[word]
        phones = [phone2id[i] for i in phones]

        for i in range(len(phones) - 1):
            w = word if i == 0 else eps
            arcs.append([cur_state, next_state, phones[i], w, 0])

            cur_state = next_state
            next_state += 1

        # now for the last phone of this word
        i = len(phones) - 1
        w = word if i == 0 else eps
        arcs.append([cur_state, loop_state, phones[i], w, 0])

    if need_self_loops:
        arcs = add_self_loops(
            arcs, disambig_phone=phone2id["#0"], disambig_word=word2id["#0"],
        )

    final_state = next_state
    arcs.append([loop_state, final_state, -1, -1, 0])
    return build_fsa(arcs, final_state)


def prepare_lang(lang_dir, sil_phone="SIL", sil_prob=0.5, cache=True):
    """
    This function takes as input a lexicon file "$lang_dir/lexicon.txt"
    consisting of words and phones and does the following:

    1. Add disambiguation symbols to the lexicon and generate lexicon_disambig.txt

    2. Generate phones.txt, the phone table mapping a phone to a unique integer.

    3. Generate words.txt, the word table mapping a word to a unique integer.

    4. Generate L_disambig.pt, in k2 format, and L_disambig.fst.txt, the same
       transducer in OpenFst text format. Either can be given to
       compile-train-graphs-fsts.

    5. Generate disambig.int, the phone IDs of the disambiguation symbols.

    Arguments
    ---------
    lang_dir: str
        The directory to store the output files and read the input file lexicon.txt.
    sil_phone: str
        The silence phone. Default is "SIL".
    sil_prob: float
        The probability for adding a silence at the beginning and end of the word.
        Default is 0.5; 0 means no optional silence.
    cache: bool
        Whether or not to skip the preparation when L_disambig.pt is newer
        than lexicon.txt.

    Example
    -------
    >>> from traingraphs.k2_integration.prepare_lang import prepare_lang

    >>> # Create a small lexicon containing only two words and write it to a file.
    >>> lang_tmpdir = getfixture('tmpdir')
    >>> lexicon_sample = '''hello h e l o\\nworld w o r l d'''
    >>> lexicon_file = lang_tmpdir.join("lexicon.txt")
    >>> lexicon_file.write(lexicon_sample)

    >>> prepare_lang(lang_tmpdir)
    >>> for expected_file in ["phones.txt", "words.txt", "L_disambig.pt", "disambig.int"]:
    ...     assert os.path.exists(os.path.join(lang_tmpdir, expected_file))
    """

    out_dir = Path(lang_dir)
    lexicon_filename = out_dir / "lexicon.txt"

    # if source lexicon_filename has been re-created (only use 'L_disambig.pt' for date modification query)
    if (
        cache
        and (out_dir / "L_disambig.pt").exists()
        and (out_dir / "L_disambig.pt").stat().st_mtime
        > lexicon_filename.stat().st_mtime
    ):
        logger.warning(
            f"Skipping lang preparation of '{out_dir}'."
            " Pass cache=False if this is not what you want."
        )
        return

    outputs = [
        "L_disambig.pt",
        "L_disambig.fst.txt",
        "phones.txt",
        "words.txt",
        "lexicon_disambig.txt",
        "disambig.int",
    ]
    for f in outputs:
        if (out_dir / f).exists():
            os.makedirs(out_dir / "backup", exist_ok=True)
            logger.debug(f"Backing up {out_dir / f} to {out_dir}/backup/{f}")
            os.replace(out_dir / f, out_dir / "backup" / f)

    lexicon = read_lexicon(str(lexicon_filename))
    phones = get_phones(
        lexicon, sil_phone=sil_phone, manually_add_sil_to_phones=sil_prob != 0
    )
    words = get_words(lexicon)

    lexicon_disambig, max_disambig = add_disambig_symbols(lexicon)

    disambig_symbols = [f"#{i}" for i in range(max_disambig + 1)]
    for disambig in disambig_symbols:
        if disambig in phones:
            raise ValueError(f"{disambig} is a phone of the lexicon")
    if EPS in phones:
        raise ValueError(f"{EPS} is a phone of the lexicon")
    phones = [EPS] + phones + disambig_symbols

    for reserved in [EPS, "#0", "<s>", "</s>"]:
        if reserved in words:
            raise ValueError(f"{reserved} is a word of the lexicon")
    words = [EPS] + words + ["#0", "<s>", "</s>"]

    phone2id = generate_id_map(phones)
    word2id = generate_id_map(words)

    logger.info(
        f"Saving phones.txt, words.txt, lexicon_disambig.txt to '{out_dir}'"
    )
    write_mapping(out_dir / "phones.txt", phone2id)
    write_mapping(out_dir / "words.txt", word2id)
    write_lexicon(out_dir / "lexicon_disambig.txt", lexicon_disambig)
    with open(out_dir / "disambig.int", "w", encoding="utf-8") as f:
        for disambig in disambig_symbols:
            f.write(f"{phone2id[disambig]}\n")

    if sil_prob != 0:
        L_disambig = lexicon_to_fst(
            lexicon_disambig,
            phone2id=phone2id,
            word2id=word2id,
            sil_phone=sil_phone,
            sil_prob=sil_prob,
            need_self_loops=True,
        )
    else:
        L_disambig = lexicon_to_fst_no_sil(
            lexicon_disambig,
            phone2id=phone2id,
            word2id=word2id,
            need_self_loops=True,
        )

    logger.info(f"Saving L_disambig.pt, L_disambig.fst.txt to '{out_dir}'")
    torch.save(L_disambig.as_dict(), out_dir / "L_disambig.pt")
    save_fst(L_disambig, out_dir / "L_disambig.fst.txt")
