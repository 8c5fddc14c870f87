from types import SimpleNamespace

import pytest

from longmap.regions import (
    PARENT_TMP_PRI,
    PARENT_UNSET,
    AlignmentExtra,
    Anchor,
    Region,
    SeedFlag,
    alt_score,
    filter_regs,
    filter_strand_retained,
    gen_regs,
    hash64,
    hit_sort,
    mark_alt,
    seg_gen,
    select_sub,
    set_coordinates,
    set_mapq,
    set_parent,
    set_sam_pri,
    split_reg,
    squeeze_anchors,
    sync_regs,
)


def _chain_anchors(rev=False):
    return [
        Anchor.make(0, 9, 9, 10, rev=rev),
        Anchor.make(0, 19, 19, 10, rev=rev),
        Anchor.make(0, 29, 29, 10, rev=rev),
        Anchor.make(0, 99, 59, 10, rev=rev),
    ]


def test_anchor_fields_round_trip():
    a = Anchor.make(3, 100, 50, 15, rev=True, seg_id=2, flags=SeedFlag.IGNORE)
    assert (a.rid, a.tpos, a.qpos, a.q_span, a.rev, a.seg_id) == (3, 100, 50, 15, True, 2)
    assert a.y & SeedFlag.IGNORE
    assert not a.y & SeedFlag.LONG_JOIN


def test_hash64_is_injective_on_sample():
    values = [hash64(k) for k in range(2000)]
    assert len(set(values)) == 2000
    assert all(0 <= v < 2 ** 64 for v in values)
    assert hash64(12345) == hash64(12345)


def test_alt_score():
    assert alt_score(-5, 0.5) == -5
    assert alt_score(100, 0.0) == 100
    assert alt_score(0, 0.5) == 1


def test_gen_regs_order_and_coordinates():
    anchors = _chain_anchors()
    chains = [(20 << 32) | 1, (50 << 32) | 3]
    # first chain uses anchor 0 alone; second uses anchors 1..3
    regs = gen_regs(7, 100, chains, anchors, False)
    assert [r.score for r in regs] == [50, 20]
    assert [r.id for r in regs] == [0, 1]
    assert all(r.parent == PARENT_UNSET and r.div == -1.0 for r in regs)
    best = regs[0]
    assert best.anchor_start == 1 and best.cnt == 3
    assert best.rs == anchors[1].tpos + 1 - 10
    assert best.re == anchors[3].tpos + 1
    assert best.qe == anchors[3].qpos + 1
    assert best.mlen <= best.blen
    assert regs[1].mlen == regs[1].blen == 10


def test_gen_regs_empty():
    assert gen_regs(0, 10, [], [], False) == []


def test_reverse_strand_coordinates_mirror_forward():
    qlen = 200
    fwd = Region(anchor_start=0, cnt=4)
    rev = Region(anchor_start=0, cnt=4)
    set_coordinates(fwd, qlen, _chain_anchors(False), False)
    set_coordinates(rev, qlen, _chain_anchors(True), False)
    assert rev.rev
    assert (rev.qs, rev.qe) == (qlen - fwd.qe, qlen - fwd.qs)
    assert (rev.rs, rev.re) == (fwd.rs, fwd.re)
    qstrand = Region(anchor_start=0, cnt=4)
    set_coordinates(qstrand, qlen, _chain_anchors(True), True)
    assert (qstrand.qs, qstrand.qe) == (fwd.qs, fwd.qe)


def test_split_reg():
    anchors = _chain_anchors()
    r = Region(id=0, parent=0, score=90, anchor_start=0, cnt=4)
    set_coordinates(r, 100, anchors, False)
    r2 = split_reg(r, 2, 100, anchors, False)
    assert r.cnt + r2.cnt == 4
    assert r.score + r2.score == 90
    assert r2.anchor_start == 2
    assert r2.parent == PARENT_TMP_PRI
    assert r.split == 1 and r2.split == 2
    assert r.re <= r2.rs + 10
    assert split_reg(r, 0, 100, anchors, False) is None


def _overlap_regions():
    return [
        Region(qs=0, qe=100, score=100, cnt=10),
        Region(qs=10, qe=90, score=50, cnt=5),
        Region(qs=200, qe=300, score=40, cnt=4),
    ]


def test_set_parent():
    regs = _overlap_regions()
    set_parent(regs, 0.5, 1000, 0, False, 0.15)
    assert [r.parent for r in regs] == [0, 0, 2]
    assert regs[0].subsc == 50
    assert regs[0].n_sub == 0


def test_set_parent_hard_mask():
    regs = _overlap_regions()
    set_parent(regs, 0.5, 1000, 0, True, 0.15)
    assert [r.parent for r in regs] == [0, 0, 2]


def test_hit_sort():
    regs = [Region(score=10, cnt=1), Region(score=30, cnt=1), Region(score=99, cnt=0),
            Region(score=20, cnt=2)]
    out = hit_sort(regs, 0.15)
    assert [r.score for r in out] == [30, 20, 10]


def test_hit_sort_mixed_raises():
    regs = [Region(score=10, cnt=1, p=AlignmentExtra(dp_max=5)), Region(score=30, cnt=1)]
    with pytest.raises(ValueError):
        hit_sort(regs, 0.15)


def test_set_sam_pri():
    regs = [Region(id=0, parent=0), Region(id=1, parent=0), Region(id=2, parent=2)]
    assert set_sam_pri(regs) == 2
    assert [r.sam_pri for r in regs] == [True, False, False]


def test_sync_regs():
    regs = [Region(id=0, parent=0), Region(id=2, parent=0), Region(id=5, parent=2),
            Region(id=6, parent=PARENT_TMP_PRI), Region(id=7, parent=9)]
    sync_regs(regs)
    assert [r.id for r in regs] == [0, 1, 2, 3, 4]
    assert [r.parent for r in regs] == [0, 0, 1, 3, PARENT_UNSET]
    assert regs[0].sam_pri and not regs[3].sam_pri


def test_select_sub_drops_weak_secondary():
    regs = _overlap_regions()
    set_parent(regs, 0.5, 1000, 0, False, 0.15)
    out = select_sub(regs, 0.8, 5, 5, False, 0)
    assert [r.score for r in out] == [100, 40]
    assert [r.parent for r in out] == [0, 1]
    assert [r.sam_pri for r in out] == [True, False]


def test_select_sub_keeps_strong_secondary():
    regs = _overlap_regions()
    set_parent(regs, 0.5, 1000, 0, False, 0.15)
    out = select_sub(regs, 0.4, 5, 5, False, 0)
    assert len(out) == 3
    assert out[1].parent == 0


def test_filter_strand_retained():
    regs = [Region(id=0, parent=0, div=0.01),
            Region(id=1, parent=0, div=0.2, strand_retained=True),
            Region(id=2, parent=0, div=0.03, strand_retained=True)]
    out = filter_strand_retained(regs)
    assert [r.id for r in out] == [0, 2]


def test_filter_regs():
    regs = [Region(cnt=1), Region(cnt=1, inv=True), Region(cnt=5),
            Region(cnt=5, mlen=3, p=AlignmentExtra(dp_max=100))]
    out = filter_regs(regs, 100, 3, 40, 0, 1.0)
    assert out == [regs[1], regs[2]]


def test_squeeze_anchors():
    anchors = [Anchor.make(0, i * 10, i * 10, 5) for i in range(6)]
    originals = list(anchors)
    r0 = Region(anchor_start=4, cnt=2)
    r1 = Region(anchor_start=0, cnt=1)
    total = squeeze_anchors([r0, r1], anchors)
    assert total == 3
    assert len(anchors) == 3
    assert r1.anchor_start == 0 and r0.anchor_start == 1
    assert anchors[1:3] == originals[4:6]
    assert anchors[0] == originals[0]


def test_seg_gen():
    qlens = [50, 60]
    anchors = [Anchor.make(0, 19, 19, 10, seg_id=0), Anchor.make(0, 99, 50 + 29, 10, seg_id=1)]
    regs = [Region(score=40, cnt=2, anchor_start=0)]
    segs = seg_gen(3, qlens, regs, anchors)
    assert len(segs) == 2
    for s, (seg_regs, seg_anchors) in enumerate(segs):
        assert len(seg_regs) == 1 and len(seg_anchors) == 1
        assert seg_regs[0].seg_id == s and seg_regs[0].seg_split
        assert seg_regs[0].cnt == 1 and seg_regs[0].score == 40
    assert segs[1][1][0].qpos == 29
    assert segs[0][1][0].qpos == 19


def test_seg_gen_too_many_segments():
    with pytest.raises(ValueError):
        seg_gen(0, [1] * 256, [], [])


def test_set_mapq():
    regs = [Region(id=0, parent=0, score=1000, score0=1000, cnt=20, rid=0, rs=0),
            Region(id=1, parent=0, score=500, score0=500, cnt=20, rid=0, rs=50),
            Region(id=2, parent=2, score=1000, score0=1000, cnt=20, rid=0, rs=100, inv=True),
            Region(id=3, parent=3, score=900, score0=900, cnt=20, rid=0, rs=200)]
    set_mapq(regs, 40, 2, 0, False)
    assert regs[0].mapq == 60
    assert regs[1].mapq == 0
    assert 0 <= regs[3].mapq <= 60
    assert regs[2].mapq == min(regs[0].mapq, regs[3].mapq)


def test_mark_alt():
    index = SimpleNamespace(n_alt=1, seq=[SimpleNamespace(is_alt=False), SimpleNamespace(is_alt=True)])
    regs = [Region(rid=0), Region(rid=1)]
    mark_alt(index, regs)
    assert [r.is_alt for r in regs] == [False, True]
    index.n_alt = 0
    fresh = [Region(rid=1)]
    mark_alt(index, fresh)
    assert fresh[0].is_alt is False