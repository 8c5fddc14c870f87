import re

import pytest

from longmap.cigar import (
    CigarOp,
    append_cigar,
    cigar_to_string,
    count_gaps,
    event_identity,
    find_zdrop,
    fix_cigar,
    gen_simple_mat,
    gen_ts_mat,
    recal_max_dp,
    update_cigar_eqx,
    update_dp_max,
    update_extra,
)
from longmap.regions import AlignmentExtra, Region

OPS = "MIDNSHP=XB"


def enc(text):
    return [int(n) << 4 | OPS.index(op) for n, op in re.findall(r"(\d+)(\D)", text)]


def make_region(cigar_text, qlen, tlen, rev=False):
    return Region(qs=0, qe=qlen, rs=0, re=tlen, rev=rev,
                  p=AlignmentExtra(cigar=enc(cigar_text)))


@pytest.mark.parametrize("text", ["10M2I", "3M1D4M", "5=1X2N7M"])
def test_cigar_to_string_round_trip(text):
    assert cigar_to_string(enc(text)) == text


def test_cigar_op_codes_match_letters():
    cigar = [
        3 << 4 | int(CigarOp.EQ_MATCH),
        1 << 4 | int(CigarOp.X_MISMATCH),
        2 << 4 | int(CigarOp.N_SKIP),
        4 << 4 | int(CigarOp.MATCH),
    ]
    assert cigar_to_string(cigar) == "3=1X2N4M"


def test_gen_simple_mat():
    mat = gen_simple_mat(5, 2, 4, 1)
    assert len(mat) == 25
    for i in range(4):
        for j in range(4):
            assert mat[i * 5 + j] == (2 if i == j else -4)
        assert mat[i * 5 + 4] == -1
    assert all(mat[20 + j] == -1 for j in range(5))


def test_gen_ts_mat_transitions():
    mat = gen_ts_mat(5, 2, 4, 3, 1)
    assert mat[0 * 5 + 2] == -3
    assert mat[2 * 5 + 0] == -3
    assert mat[1 * 5 + 3] == -3
    assert mat[3 * 5 + 1] == -3
    assert mat[0 * 5 + 1] == -4


def test_gen_ts_mat_requires_five():
    with pytest.raises(ValueError):
        gen_ts_mat(4, 2, 4, 3, 1)


def test_find_zdrop_no_drop_on_perfect_match():
    seq = bytes([0, 1, 2, 3])
    mat = gen_simple_mat(5, 1, 2, 1)
    zdrop, t_range, q_range = find_zdrop(enc("4M"), seq, seq, mat, 4, 2)
    assert zdrop == 0
    assert t_range == (-1, -1)
    assert q_range == (-1, -1)


def test_find_zdrop_trailing_mismatches():
    qseq = bytes([0, 0, 0, 0, 1, 1, 1, 1])
    tseq = bytes([0, 0, 0, 0, 2, 2, 2, 2])
    mat = gen_simple_mat(5, 1, 2, 1)
    zdrop, t_range, q_range = find_zdrop(enc("8M"), qseq, tseq, mat, 4, 2)
    assert zdrop == 8
    assert t_range == (3, 7)
    assert q_range == (3, 7)


def test_fix_cigar_left_aligns_insertion():
    qseq = bytes([1, 0, 0, 0, 2])
    tseq = bytes([1, 0, 0, 2])
    r = make_region("3M1I1M", 5, 4)
    shifts = fix_cigar(r, qseq, tseq)
    assert shifts == (0, 0)
    assert cigar_to_string(r.p.cigar) == "1M1I3M"


def test_fix_cigar_drops_leading_insertion():
    r = make_region("2I3M", 5, 3)
    shifts = fix_cigar(r, bytes(5), bytes(3))
    assert shifts == (2, 0)
    assert r.qs == 2
    assert cigar_to_string(r.p.cigar) == "3M"


def test_fix_cigar_leading_insertion_reverse_moves_end():
    r = make_region("2I3M", 5, 3, rev=True)
    fix_cigar(r, bytes(5), bytes(3))
    assert r.qs == 0
    assert r.qe == 3


def test_fix_cigar_drops_leading_deletion():
    r = make_region("2D3M", 3, 5)
    assert fix_cigar(r, bytes(3), bytes(5)) == (0, 2)
    assert r.rs == 2


def test_fix_cigar_merges_alternating_gaps():
    r = make_region("1M2I3D4I1M", 8, 5)
    fix_cigar(r, bytes(8), bytes(5))
    assert cigar_to_string(r.p.cigar) == "1M6I3D1M"


def test_fix_cigar_rejects_inconsistent_span():
    r = make_region("3M1I", 10, 3)
    with pytest.raises(ValueError):
        fix_cigar(r, bytes(10), bytes(3))


def test_update_cigar_eqx_splits_runs():
    qseq = bytes([0, 1, 2, 3])
    tseq = bytes([0, 1, 3, 3])
    r = make_region("4M", 4, 4)
    update_cigar_eqx(r, qseq, tseq)
    assert cigar_to_string(r.p.cigar) == "2=1X1="
    assert sum(c >> 4 for c in r.p.cigar) == 4


def test_update_cigar_eqx_keeps_gaps():
    qseq = bytes([0, 1, 1, 2])
    tseq = bytes([0, 1, 2])
    r = make_region("2M1I1M", 4, 3)
    update_cigar_eqx(r, qseq, tseq)
    ops = [OPS[c & 0xF] for c in r.p.cigar]
    assert "M" not in ops
    assert "I" in ops


def test_update_extra_perfect_match():
    seq = bytes([0, 1, 2, 3])
    mat = gen_simple_mat(5, 2, 4, 1)
    r = make_region("4M", 4, 4)
    update_extra(r, seq, seq, mat, 4, 2, False, True)
    assert r.mlen == r.blen == 4
    assert r.p.dp_max > 0
    assert r.p.n_ambi == 0


def test_update_extra_counts_ambiguous_bases():
    qseq = bytes([0, 4, 2, 3])
    tseq = bytes([0, 1, 2, 3])
    mat = gen_simple_mat(5, 2, 4, 1)
    r = make_region("4M", 4, 4)
    update_extra(r, qseq, tseq, mat, 4, 2, False, True)
    assert r.p.n_ambi == 1
    assert r.blen == 3
    assert r.mlen == 3


def test_update_extra_eqx():
    qseq = bytes([0, 1, 2, 3])
    tseq = bytes([0, 1, 3, 3])
    mat = gen_simple_mat(5, 2, 4, 1)
    r = make_region("4M", 4, 4)
    update_extra(r, qseq, tseq, mat, 4, 2, True, False)
    assert all(OPS[c & 0xF] in "=X" for c in r.p.cigar)
    assert r.mlen == r.blen - 1


def test_update_extra_without_alignment_is_noop():
    r = Region(qs=0, qe=4, rs=0, re=4)
    update_extra(r, bytes(4), bytes(4), gen_simple_mat(5, 2, 4, 1), 4, 2, False, True)
    assert r.p is None
    assert r.mlen == 0


def test_append_cigar_creates_and_merges():
    r = Region()
    append_cigar(r, enc("3M"))
    assert cigar_to_string(r.p.cigar) == "3M"
    append_cigar(r, enc("2M1I"))
    assert cigar_to_string(r.p.cigar) == "5M1I"
    append_cigar(r, [])
    assert len(r.p.cigar) == 2


def test_count_gaps():
    r = make_region("3M2I1M3D", 6, 7)
    assert count_gaps(r) == (5, 2)
    assert count_gaps(Region()) == (-1, -1)


def test_event_identity():
    assert event_identity(Region()) == -1.0
    r = Region(mlen=10, blen=10, p=AlignmentExtra(cigar=enc("10M")))
    assert event_identity(r) == 1.0


def test_recal_max_dp_unaligned():
    assert recal_max_dp(Region(), 1.0, 2) == -1


def test_recal_max_dp_gaps_lower_score():
    plain = Region(mlen=10, blen=10, p=AlignmentExtra(cigar=enc("10M")))
    gapped = Region(mlen=10, blen=12, p=AlignmentExtra(cigar=enc("5M2I5M")))
    assert recal_max_dp(gapped, 1.0, 2) < recal_max_dp(plain, 1.0, 2)


def test_update_dp_max_single_region_untouched():
    r = Region(qs=0, qe=10, mlen=10, blen=10, p=AlignmentExtra(dp_max=77, cigar=enc("10M")))
    update_dp_max(10, [r], 0.9, 2, 4)
    assert r.p.dp_max == 77


def test_update_dp_max_rescores_close_pair():
    r1 = Region(qs=0, qe=10, mlen=10, blen=10, p=AlignmentExtra(dp_max=20, cigar=enc("10M")))
    r2 = Region(qs=0, qe=10, mlen=9, blen=10, p=AlignmentExtra(dp_max=19, cigar=enc("10M")))
    update_dp_max(10, [r1, r2], 0.9, 2, 4)
    assert r1.p.dp_max >= r2.p.dp_max
    assert r2.p.dp_max >= 0
    assert (r1.p.dp_max, r2.p.dp_max) != (20, 19)


def test_update_dp_max_distant_pair_untouched():
    r1 = Region(qs=0, qe=10, mlen=10, blen=10, p=AlignmentExtra(dp_max=100, cigar=enc("10M")))
    r2 = Region(qs=0, qe=10, mlen=9, blen=10, p=AlignmentExtra(dp_max=10, cigar=enc("10M")))
    update_dp_max(10, [r1, r2], 0.9, 2, 4)
    assert r1.p.dp_max == 100
    assert r2.p.dp_max == 10