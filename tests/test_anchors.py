from dataclasses import dataclass
from types import SimpleNamespace

from longmap.anchors import (
    SEED_IGNORE,
    SEED_LONG_JOIN,
    adjust_minier,
    collect_long_gaps,
    filter_bad_seeds,
    filter_bad_seeds_alt,
    fix_bad_ends,
    hplen_back,
    max_stretch,
)
from longmap.index import IndexFlag, MinimizerIndex
from longmap.seqio import encode_nt4


@dataclass
class _A:
    x: int
    y: int


def mk(x, y, span=15, rid=0, rev=False):
    return _A(x=(int(rev) << 63) | (rid << 32) | x, y=(span << 32) | y)


def region(n, start=0, mlen=100000):
    return SimpleNamespace(anchor_start=start, cnt=n, mlen=mlen)


def flags(anchors, bit):
    return {i for i, a in enumerate(anchors) if a.y & bit}


def test_collect_long_gaps_diagonal_is_empty():
    anchors = [mk(i * 50, i * 50) for i in range(6)]
    assert collect_long_gaps(anchors, 0, 6, 10) == []


def test_collect_long_gaps_single_gap_is_empty():
    anchors = [mk(0, 0), mk(100, 150), mk(200, 250)]
    assert collect_long_gaps(anchors, 0, 3, 10) == []


def test_collect_long_gaps_finds_positions():
    anchors = [mk(0, 0), mk(100, 120), mk(200, 200), mk(300, 300)]
    assert collect_long_gaps(anchors, 0, 4, 10) == [1, 2]


def test_filter_bad_seeds_marks_compensating_indels():
    anchors = [mk(0, 0), mk(100, 120), mk(200, 200), mk(300, 300)]
    filter_bad_seeds(anchors, 0, 4, 10, 10, 10000, 10)
    assert flags(anchors, SEED_IGNORE) == {1}


def test_filter_bad_seeds_leaves_diagonal_alone():
    anchors = [mk(i * 100, i * 100) for i in range(5)]
    filter_bad_seeds(anchors, 0, 5, 10, 10, 10000, 10)
    assert flags(anchors, SEED_IGNORE) == set()


def test_filter_bad_seeds_respects_extension_length():
    anchors = [mk(0, 0), mk(100, 120), mk(200, 200), mk(300, 300)]
    filter_bad_seeds(anchors, 0, 4, 10, 10, 50, 10)
    assert flags(anchors, SEED_IGNORE) == set()


def test_filter_bad_seeds_alt_joins_close_gaps():
    anchors = [mk(0, 0), mk(100, 140), mk(150, 150), mk(250, 250)]
    filter_bad_seeds_alt(anchors, 0, 4, 30, 1000)
    assert flags(anchors, SEED_IGNORE) == {1}
    assert flags(anchors, SEED_LONG_JOIN) == {2}


def test_filter_bad_seeds_alt_far_gaps_untouched():
    anchors = [mk(0, 0), mk(100, 140), mk(150, 150), mk(250, 250)]
    filter_bad_seeds_alt(anchors, 0, 4, 30, 5)
    assert flags(anchors, SEED_IGNORE) == set()
    assert flags(anchors, SEED_LONG_JOIN) == set()


def test_fix_bad_ends_short_chain_unchanged():
    anchors = [mk(0, 0), mk(500, 10)]
    assert fix_bad_ends(region(2), anchors, 500, 1000) == (0, 2)


def test_fix_bad_ends_diagonal_unchanged():
    anchors = [mk(i * 20, i * 20) for i in range(8)]
    assert fix_bad_ends(region(8), anchors, 500, 1000) == (0, 8)


def test_fix_bad_ends_trims_bad_first_anchor():
    anchors = [mk(0, 0), mk(100, 30)] + [mk(100 + i * 20, 30 + i * 20) for i in range(1, 6)]
    start, cnt = fix_bad_ends(region(len(anchors)), anchors, 500, 1000)
    assert start == 1
    assert start + cnt == len(anchors)


def test_max_stretch_picks_best_run():
    anchors = [mk(0, 0, 5), mk(10, 10, 5), mk(20, 20, 5),
               mk(100, 50, 5), mk(110, 60, 5), mk(120, 70, 5), mk(130, 80, 5)]
    assert max_stretch(region(7), anchors) == (3, 4)


def test_max_stretch_single_anchor():
    anchors = [mk(0, 0), mk(10, 10)]
    assert max_stretch(region(1, start=1), anchors) == (1, 1)


def test_hplen_back():
    mi = MinimizerIndex(10, 5)
    mi.add_sequence("r", "AAACGT")
    assert hplen_back(mi, 0, 2) == 3
    assert hplen_back(mi, 0, 3) == 1


def test_adjust_minier_plain():
    mi = MinimizerIndex(10, 15)
    mi.add_sequence("r", "ACGT" * 20)
    qseq = encode_nt4("ACGT" * 10)
    r, q = adjust_minier(mi, [qseq, qseq], mk(40, 30))
    assert (r, q) == (40 - 7, 30 - 7)


def test_adjust_minier_hpc():
    mi = MinimizerIndex(10, 5, flag=IndexFlag.HPC)
    mi.add_sequence("r", "AAAACGT")
    qseq = encode_nt4("GGAAAT")
    r, q = adjust_minier(mi, [qseq, qseq], mk(3, 4))
    assert (r, q) == (0, 2)