import math

import pytest


def test_hmm_fragment(ab_setup):
    from traingraphs.hmm import HmmState, HmmTopology, TransitionModel
    from traingraphs.k2_integration.hmm_transducer import (
        ENTRY,
        EXIT,
        GraphCompilationError,
        hmm_fragment,
    )

    # no self-loops; left-to-right forward transitions cost nothing
    arcs = hmm_fragment(ab_setup.trans_model, 2, [3, 4, 5])
    assert [arc[:3] for arc in arcs] == [(ENTRY, 1, 8), (1, 2, 10), (2, EXIT, 12)]
    assert [arc[3] for arc in arcs] == pytest.approx([0.0, 0.0, 0.0], abs=1e-6)

    # pdf 0 belongs to phone 1
    with pytest.raises(GraphCompilationError):
        hmm_fragment(ab_setup.trans_model, 2, [0, 4, 5])

    # a skip transition, and a second state going back to the first one
    topo = HmmTopology(
        [
            (
                [1],
                [
                    HmmState(0, [(0, 0.5), (1, 0.25), (2, 0.25)]),
                    HmmState(1, [(2, 1.0)]),
                    HmmState(None, []),
                ],
            ),
            (
                [2],
                [
                    HmmState(0, [(0, 0.5), (1, 0.5)]),
                    HmmState(1, [(0, 0.5), (2, 0.5)]),
                    HmmState(None, []),
                ],
            ),
        ]
    )
    trans_model = TransitionModel(topo, [(1, 0, 0), (1, 1, 1), (2, 0, 2), (2, 1, 3)])
    arcs = hmm_fragment(trans_model, 1, [0, 1])
    assert [arc[:3] for arc in arcs] == [(ENTRY, 1, 2), (ENTRY, EXIT, 3), (1, EXIT, 4)]
    assert [arc[3] for arc in arcs] == pytest.approx(
        [math.log(0.5), math.log(0.5), 0.0]
    )
    arcs = hmm_fragment(trans_model, 1, [0, 1], trans_prob_scale=0.0)
    assert all(score == 0.0 for _, _, _, score in arcs)

    arcs = hmm_fragment(trans_model, 2, [2, 3])
    assert [arc[:3] for arc in arcs] == [
        (ENTRY, 1, 6),
        (0, 1, 6),
        (1, 0, 7),
        (1, EXIT, 8),
    ]


def test_get_h_transducer(ab_setup):
    from traingraphs.k2_integration.context_fst import ILabelTable
    from traingraphs.k2_integration.hmm_transducer import get_h_transducer
    from traingraphs.k2_integration.utils import fsa_arcs

    table = ILabelTable()
    window = table.index((0, 1, 2))
    disambig = table.index((-5,))
    cache = {}
    H = get_h_transducer(
        [0, window, disambig, window],
        table,
        ab_setup.ctx_dep,
        ab_setup.trans_model,
        ab_setup.disambig_syms,
        cache=cache,
    )
    arcs = fsa_arcs(H)
    # loop state, HMM states 1 and 2, final state
    assert H.shape[0] == 4
    assert list(cache) == [(1, (0, 1, 2))]

    # #1 is the second disambiguation symbol
    assert (0, 0, 20, [disambig], 0.0) in arcs
    entry = [arc for arc in arcs if arc.aux_labels == [window]]
    assert [(arc.src, arc.label) for arc in entry] == [(0, 2)]
    assert sorted(arc.label for arc in arcs if arc.dst == 0) == [6, 20]
    assert [arc.label for arc in arcs if arc.label == -1] == [-1]

    # forward transition-ids only
    tids = {arc.label for arc in arcs} - {-1, 20}
    assert tids == {2, 4, 6}
    assert all(arc.src != arc.dst for arc in arcs if arc.label != 20)


def test_get_h_transducer_errors(ab_setup):
    from traingraphs.hmm import HmmTopology, TransitionModel
    from traingraphs.k2_integration.context_fst import ILabelTable
    from traingraphs.k2_integration.hmm_transducer import (
        GraphCompilationError,
        get_h_transducer,
    )
    from traingraphs.tree import ContextDependency

    table = ILabelTable()
    unknown_disambig = table.index((-7,))
    unknown_phone = table.index((0, 9, 0))
    with pytest.raises(GraphCompilationError):
        get_h_transducer(
            [unknown_disambig],
            table,
            ab_setup.ctx_dep,
            ab_setup.trans_model,
            ab_setup.disambig_syms,
        )
    with pytest.raises(GraphCompilationError):
        get_h_transducer(
            [unknown_phone], table, ab_setup.ctx_dep, ab_setup.trans_model
        )

    # the tree does not cover phone 3
    ctx_dep = ContextDependency.phone_position_tree(3, 1, [1, 2])
    topo = HmmTopology.left_to_right([1, 2, 3])
    trans_model = TransitionModel.from_tree(ctx_dep, topo)
    with pytest.raises(GraphCompilationError):
        get_h_transducer([table.index((0, 3, 0))], table, ctx_dep, trans_model)


def arc_set(fsa):
    from traingraphs.k2_integration.utils import fsa_arcs

    return {
        (arc.src, arc.dst, arc.label, tuple(arc.aux_labels)): arc.score
        for arc in fsa_arcs(fsa)
    }


def test_add_hmm_self_loops(ab_setup):
    from traingraphs.k2_integration.hmm_transducer import add_hmm_self_loops
    from traingraphs.k2_integration.utils import build_fsa

    loop, forward = math.log(0.75), math.log(0.25)
    graph = build_fsa(
        [[0, 1, 2, 1, -1.0], [1, 2, 4, 0, 0.0], [2, 3, -1, -1, 0.0]], 3
    )
    arcs = arc_set(add_hmm_self_loops(graph, ab_setup.trans_model))
    assert arcs == pytest.approx(
        {
            (0, 0, 1, (0,)): loop,
            (0, 1, 2, (1,)): -1.0 + forward,
            (1, 1, 3, (0,)): loop,
            (1, 2, 4, (0,)): forward,
            (2, 3, -1, (-1,)): 0.0,
        }
    )

    arcs = arc_set(add_hmm_self_loops(graph, ab_setup.trans_model, 0.0))
    assert arcs[(0, 0, 1, (0,))] == 0.0
    assert arcs[(0, 1, 2, (1,))] == pytest.approx(-1.0)


def test_add_hmm_self_loops_mixed_state(ab_setup):
    from traingraphs.k2_integration.hmm_transducer import add_hmm_self_loops
    from traingraphs.k2_integration.utils import (
        build_fsa,
        empty_graph,
        get_paths,
        is_empty,
    )

    # state 0 leaves through phone a (tid 2) or phone b (tid 8); state 1
    # is final or goes on with phone b
    graph = build_fsa(
        [
            [0, 1, 2, 1, 0.0],
            [0, 1, 8, 2, 0.0],
            [1, 3, -1, -1, 0.0],
            [1, 2, 8, 0, 0.0],
            [2, 3, -1, -1, 0.0],
        ],
        3,
    )
    looped = add_hmm_self_loops(graph, ab_setup.trans_model, self_loop_scale=0.0)
    arcs = arc_set(looped)
    # one new state per transition-state of a state with several ones;
    # the final state is renumbered last
    assert looped.shape[0] == 7
    assert set(arcs) == {
        (0, 1, 2, (1,)),
        (0, 1, 8, (2,)),
        (0, 3, 1, (0,)),
        (3, 3, 1, (0,)),
        (3, 1, 2, (1,)),
        (0, 4, 7, (0,)),
        (4, 4, 7, (0,)),
        (4, 1, 8, (2,)),
        (1, 6, -1, (-1,)),
        (1, 2, 8, (0,)),
        (1, 5, 7, (0,)),
        (5, 5, 7, (0,)),
        (5, 2, 8, (0,)),
        (2, 6, -1, (-1,)),
    }
    # the self-loops add nothing but optional repetitions
    forward = {
        (p.labels, p.words)
        for p in get_paths(looped)
        if not any(ab_setup.trans_model.is_self_loop(t) for t in p.labels)
    }
    assert forward == {(p.labels, p.words) for p in get_paths(graph)}

    assert is_empty(add_hmm_self_loops(empty_graph(), ab_setup.trans_model))
