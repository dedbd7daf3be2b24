import math

import pytest


def test_topology_check():
    from traingraphs.hmm import HmmState, HmmTopology

    final = HmmState(None, [])
    # probabilities do not sum to one
    with pytest.raises(ValueError):
        HmmTopology([([1], [HmmState(0, [(0, 0.5), (1, 0.3)]), final])])
    # the last state emits
    with pytest.raises(ValueError):
        HmmTopology([([1], [HmmState(0, [(1, 1.0)]), HmmState(1, [])])])
    # transition to an unknown state
    with pytest.raises(ValueError):
        HmmTopology([([1], [HmmState(0, [(5, 1.0)]), final])])
    # a self-loop that never exits
    with pytest.raises(ValueError):
        HmmTopology([([1], [HmmState(0, [(0, 1.0)]), final])])
    # the same phone twice
    with pytest.raises(ValueError):
        HmmTopology(
            [
                ([1], [HmmState(0, [(1, 1.0)]), final]),
                ([1, 2], [HmmState(0, [(1, 1.0)]), final]),
            ]
        )


def test_topology_lookup():
    from traingraphs.hmm import HmmTopology

    topo = HmmTopology.left_to_right([2, 1], num_states=2, self_loop_prob=0.25)
    assert topo.phones == [1, 2]
    assert topo.num_pdf_classes(2) == 2
    assert topo.self_loop_prob(1, 1) == 0.25
    assert len(topo.topology_for_phone(1)) == 3
    with pytest.raises(KeyError):
        topo.topology_for_phone(3)

    assert HmmTopology.from_dict(topo.to_dict()) == topo

    no_loops = HmmTopology.left_to_right([1], num_states=2, self_loop_prob=0.0)
    assert no_loops.self_loop_prob(1, 0) == 0.0


def test_transition_model_numbering(ab_setup):
    tm = ab_setup.trans_model
    assert tm.num_transition_states == 9
    assert tm.num_transition_ids == 18
    assert tm.num_pdfs == 9
    assert tm.phones == [1, 2, 3]

    # phone 2, HMM state 1, pdf 4 is the 5th transition-state
    trans_state = tm.tuple_to_transition_state(2, 1, 4)
    assert trans_state == 5
    assert tm.tuple_to_transition_state(2, 1, 0) is None

    tid = tm.pair_to_transition_id(trans_state, 1)
    assert tid == 10
    assert tm.transition_id_to_transition_state(tid) == trans_state
    assert tm.transition_id_to_transition_index(tid) == 1
    assert tm.transition_id_to_phone(tid) == 2
    assert tm.transition_id_to_hmm_state(tid) == 1
    assert tm.transition_id_to_pdf(tid) == 4
    assert not tm.is_self_loop(tid)
    assert tm.is_self_loop(tid - 1)
    assert tm.self_loop_of(trans_state) == tid - 1
    assert tm.is_final(12)
    assert not tm.is_final(10)
    assert tm.pdfs_of_phone(2) == [3, 4, 5]

    with pytest.raises(ValueError):
        tm.transition_id_to_pdf(0)
    with pytest.raises(ValueError):
        tm.transition_id_to_pdf(19)
    with pytest.raises(ValueError):
        tm.pair_to_transition_id(trans_state, 2)


def test_transition_model_log_probs(ab_setup):
    tm = ab_setup.trans_model
    assert tm.get_transition_log_prob(1) == pytest.approx(math.log(0.75))
    assert tm.get_transition_log_prob(2) == pytest.approx(math.log(0.25))
    assert tm.get_non_self_loop_log_prob(1) == pytest.approx(math.log(0.25))
    # a left-to-right state has a single forward transition
    assert tm.get_transition_log_prob_ignoring_self_loops(2) == pytest.approx(0.0)
    with pytest.raises(ValueError):
        tm.get_transition_log_prob_ignoring_self_loops(1)


def test_transition_model_skip_transition():
    from traingraphs.hmm import HmmState, HmmTopology, TransitionModel

    topo = HmmTopology(
        [
            (
                [1],
                [
                    HmmState(0, [(0, 0.5), (1, 0.25), (2, 0.25)]),
                    HmmState(1, [(2, 1.0)]),
                    HmmState(None, []),
                ],
            )
        ]
    )
    tm = TransitionModel(topo, [(1, 0, 0), (1, 1, 1)])
    assert tm.num_transition_ids == 4
    assert tm.get_transition_log_prob_ignoring_self_loops(2) == pytest.approx(
        math.log(0.5)
    )
    assert tm.is_final(3)
    # no self-loop on the second state
    assert tm.self_loop_of(2) is None
    assert tm.get_non_self_loop_log_prob(2) == 0.0


def test_transition_model_from_tree_and_save(tmp_path):
    from traingraphs.hmm import HmmTopology, TransitionModel
    from traingraphs.tree import ContextDependency

    ctx_dep = ContextDependency.monophone([1, 2], num_pdf_classes=2)
    topo = HmmTopology.left_to_right([1, 2], num_states=2)
    tm = TransitionModel.from_tree(ctx_dep, topo)
    assert tm.tuples == [(1, 0, 0), (1, 1, 1), (2, 0, 2), (2, 1, 3)]

    path = tmp_path / "final.yaml"
    tm.save(path)
    loaded = TransitionModel.load(path)
    assert loaded.tuples == tm.tuples
    assert loaded.log_probs == pytest.approx(tm.log_probs)
    assert loaded.topology == tm.topology

    with pytest.raises(ValueError):
        TransitionModel(topo, tm.tuples, log_probs=[0.0])
    # HMM state 2 is the non-emitting final state
    with pytest.raises(ValueError):
        TransitionModel(topo, [(1, 2, 0)])

    bad = tmp_path / "bad.yaml"
    bad.write_text("topology: {}\n", encoding="utf-8")
    with pytest.raises(ValueError):
        TransitionModel.load(bad)
