from types import SimpleNamespace

import pytest


def pytest_addoption(parser):
    parser.addoption("--device", action="store", default="cpu")


def pytest_generate_tests(metafunc):
    # This is called for every test. Only get/set command line arguments
    # if the argument is specified in the list of test "fixturenames".
    option_value = metafunc.config.option.device
    if "device" in metafunc.fixturenames and option_value is not None:
        metafunc.parametrize("device", [option_value])


@pytest.fixture
def ab_setup():
    """Triphone setup over the phones a=1, b=2 and sil=3, with the
    disambiguation symbols #0=4 and #1=5 and two words:
    AB=1 ("a b #1") and BA=2 ("b a")."""
    from traingraphs.hmm import HmmTopology, TransitionModel
    from traingraphs.k2_integration.utils import build_fsa
    from traingraphs.tree import ContextDependency

    ctx_dep = ContextDependency.phone_position_tree(3, 1, [1, 2, 3])
    topo = HmmTopology.left_to_right([1, 2, 3], num_states=3, self_loop_prob=0.75)
    trans_model = TransitionModel.from_tree(ctx_dep, topo)
    lex_fst = build_fsa(
        [
            [0, 1, 1, 1, 0.0],
            [1, 2, 2, 0, 0.0],
            [2, 0, 5, 0, 0.0],
            [0, 3, 2, 2, 0.0],
            [3, 0, 1, 0, 0.0],
            [0, 4, -1, -1, 0.0],
        ],
        4,
    )
    return SimpleNamespace(
        ctx_dep=ctx_dep,
        topo=topo,
        trans_model=trans_model,
        lex_fst=lex_fst,
        disambig_syms=[4, 5],
    )


@pytest.fixture
def sil_setup(tmp_path):
    """The words AB=1 ("a b") and BA=2 ("b a") prepared with optional
    silence (probability 0.5) by prepare_lang: SIL=1, a=2, b=3 and #0=4."""
    from traingraphs.hmm import HmmTopology, TransitionModel
    from traingraphs.k2_integration.lexicon import Lexicon
    from traingraphs.k2_integration.prepare_lang import prepare_lang
    from traingraphs.tree import ContextDependency

    lang_dir = tmp_path / "lang"
    lang_dir.mkdir()
    (lang_dir / "lexicon.txt").write_text("ab a b\nba b a\n", encoding="utf-8")
    prepare_lang(lang_dir, sil_prob=0.5)
    lexicon = Lexicon(lang_dir)

    ctx_dep = ContextDependency.phone_position_tree(3, 1, lexicon.phones)
    topo = HmmTopology.left_to_right(
        lexicon.phones, num_states=3, self_loop_prob=0.75
    )
    return SimpleNamespace(
        ctx_dep=ctx_dep,
        topo=topo,
        trans_model=TransitionModel.from_tree(ctx_dep, topo),
        lex_fst=lexicon.L_disambig,
        disambig_syms=lexicon.disambig_ids,
    )


collect_ignore = ["setup.py"]
try:
    import k2  # noqa: F401
except ImportError:
    collect_ignore.extend(
        [
            "traingraphs/k2_integration/",
            "traingraphs/dataio/",
            "traingraphs/batch_driver.py",
            "traingraphs/bin/",
            "tests/unittests/test_k2.py",
            "tests/unittests/test_k2_utils.py",
            "tests/unittests/test_context_fst.py",
            "tests/unittests/test_hmm_transducer.py",
            "tests/unittests/test_graph_compiler.py",
            "tests/unittests/test_tables.py",
            "tests/unittests/test_batch_driver.py",
            "tests/unittests/test_compile_train_graphs_fsts.py",
        ]
    )
