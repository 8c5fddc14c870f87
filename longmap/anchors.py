"""Cleaning up the anchors of a chain before base-level alignment."""

from __future__ import annotations

from typing import Optional, Sequence

from longmap.index import IndexFlag
from longmap.regions import Anchor, Region

SEED_LONG_JOIN = 1 << 40
SEED_IGNORE = 1 << 41

_MASK32 = 0xFFFFFFFF


def _i32(x: int) -> int:
    x &= _MASK32
    return x - (1 << 32) if x & 0x80000000 else x


def _span(anchor: Anchor) -> int:
    return (anchor.y >> 32) & 0xFF


def _gap(prev: Anchor, cur: Anchor) -> int:
    """Difference between query and target distances of two anchors."""
    return _i32((_i32(cur.y) - _i32(prev.y)) - (_i32(cur.x) - _i32(prev.x)))


def collect_long_gaps(anchors: Sequence[Anchor], start: int, count: int,
                      min_gap: int) -> list[int]:
    """Offsets (relative to ``start``) of anchors preceded by a gap over ``min_gap``.

    Returns an empty list unless there are at least two such gaps.
    """
    found = [i for i in range(1, count)
             if abs(_gap(anchors[start + i - 1], anchors[start + i])) > min_gap]
    return found if len(found) > 1 else []


def filter_bad_seeds(anchors: Sequence[Anchor], start: int, count: int, min_gap: int,
                     diff_thres: int, max_ext_len: int, max_ext_cnt: int) -> None:
    """Mark anchors inside runs of compensating insertions and deletions as ignored."""
    gaps = collect_long_gaps(anchors, start, count, min_gap)
    if not gaps:
        return
    n = len(gaps)
    best, max_st, max_en = 0, -1, -1
    k = 0
    while True:
        if k == n or k >= max_en:
            if max_en > 0:
                for i in range(gaps[max_st], gaps[max_en]):
                    anchors[start + i].y |= SEED_IGNORE
            best, max_st, max_en = 0, -1, -1
            if k == n:
                break
        i = gaps[k]
        n_ins = n_del = 0
        gap = _gap(anchors[start + i - 1], anchors[start + i])
        if gap > 0:
            n_ins += gap
        else:
            n_del -= gap
        qs = _i32(anchors[start + i - 1].y)
        rs = _i32(anchors[start + i - 1].x)
        max_diff, max_diff_l = 0, -1
        for l in range(k + 1, min(n, k + max_ext_cnt + 1)):
            j = gaps[l]
            cur = anchors[start + j]
            if _i32(cur.y) - qs > max_ext_len or _i32(cur.x) - rs > max_ext_len:
                break
            gap = _gap(anchors[start + j - 1], cur)
            if gap > 0:
                n_ins += gap
            else:
                n_del -= gap
            diff = n_ins + n_del - abs(n_ins - n_del)
            if max_diff < diff:
                max_diff, max_diff_l = diff, l
        if max_diff > diff_thres and max_diff > best:
            best, max_st, max_en = max_diff, k, max_diff_l
        k += 1


def filter_bad_seeds_alt(anchors: Sequence[Anchor], start: int, count: int, min_gap: int,
                         max_ext: int) -> None:
    """Join closely spaced long gaps: ignore the anchors between them."""
    gaps = collect_long_gaps(anchors, start, count, min_gap)
    if not gaps:
        return
    n = len(gaps)
    k = 0
    while k < n:
        i = gaps[k]
        gap1 = abs(_gap(anchors[start + i - 1], anchors[start + i]))
        re1 = _i32(anchors[start + i].x)
        qe1 = _i32(anchors[start + i].y)
        l = k + 1
        while l < n:
            j = gaps[l]
            cur, prev = anchors[start + j], anchors[start + j - 1]
            if _i32(cur.y) - qe1 > max_ext or _i32(cur.x) - re1 > max_ext:
                break
            gap2 = abs(_gap(prev, cur))
            q_span_pre = _span(prev)
            rs2 = _i32(prev.x) + q_span_pre
            qs2 = _i32(prev.y) + q_span_pre
            m = min(rs2 - re1, qs2 - qe1)
            if m > gap1 + gap2:
                break
            re1 = _i32(cur.x)
            qe1 = _i32(cur.y)
            gap1 = gap2
            l += 1
        if l > k + 1:
            end = gaps[l - 1]
            for j in range(gaps[k], end):
                anchors[start + j].y |= SEED_IGNORE
            anchors[start + end].y |= SEED_LONG_JOIN
        k = l


def fix_bad_ends(region: Region, anchors: Sequence[Anchor], bw: int,
                 min_match: int) -> tuple[int, int]:
    """Trim poorly placed anchors at both chain ends; return ``(start, count)``."""
    r_as, r_cnt = region.anchor_start, region.cnt
    new_as, new_cnt = r_as, r_cnt
    if r_cnt < 3:
        return new_as, new_cnt
    m = l = _span(anchors[r_as])
    for i in range(r_as + 1, r_as + r_cnt - 1):
        a, p = anchors[i], anchors[i - 1]
        q_span = _span(a)
        if a.y & SEED_LONG_JOIN:
            break
        lr = _i32(a.x) - _i32(p.x)
        lq = _i32(a.y) - _i32(p.y)
        lo, hi = min(lr, lq), max(lr, lq)
        if hi - lo > l >> 1:
            new_as = i
        l += lo
        m += min(lo, q_span)
        if l >= bw << 1 or (m >= min_match and m >= bw) or m >= region.mlen >> 1:
            break
    new_cnt = r_as + r_cnt - new_as
    m = l = _span(anchors[r_as + r_cnt - 1])
    for i in range(r_as + r_cnt - 2, new_as, -1):
        a, nxt = anchors[i], anchors[i + 1]
        q_span = _span(nxt)
        if nxt.y & SEED_LONG_JOIN:
            break
        lr = _i32(nxt.x) - _i32(a.x)
        lq = _i32(nxt.y) - _i32(a.y)
        lo, hi = min(lr, lq), max(lr, lq)
        if hi - lo > l >> 1:
            new_cnt = i + 1 - new_as
        l += lo
        m += min(lo, q_span)
        if l >= bw << 1 or (m >= min_match and m >= bw) or m >= region.mlen >> 1:
            break
    return new_as, new_cnt


def max_stretch(region: Region, anchors: Sequence[Anchor]) -> tuple[int, int]:
    """The best-scoring gap-free run of anchors in a chain as ``(start, count)``."""
    r_as, r_cnt = region.anchor_start, region.cnt
    if r_cnt < 2:
        return r_as, r_cnt
    max_score, max_i, max_len = -1, -1, 0
    score, length = _span(anchors[r_as]), 1
    end = r_as + r_cnt
    for i in range(r_as + 1, end):
        a, p = anchors[i], anchors[i - 1]
        q_span = _span(a)
        lr = _i32(a.x) - _i32(p.x)
        lq = _i32(a.y) - _i32(p.y)
        if lq == lr:
            score += min(lq, q_span)
            length += 1
        else:
            if score > max_score:
                max_score, max_len, max_i = score, length, i - length
            score, length = q_span, 1
    if score > max_score:
        max_len, max_i = length, end - length
    return max_i, max_len


def hplen_back(index, rid: int, x: int) -> int:
    """Length of the homopolymer ending at position ``x`` of reference ``rid``."""
    off0 = index.seq[rid].offset
    off = off0 + x
    bases = index.bases
    c = bases[off]
    i = off - 1
    while i >= off0 and bases[i] == c:
        i -= 1
    return off - i


def adjust_minier(index, qseqs: Sequence[Sequence[int]], anchor: Anchor) -> tuple[int, int]:
    """Reference and query positions where alignment should start for an anchor."""
    if index.flag & IndexFlag.HPC:
        qseq: Optional[Sequence[int]] = qseqs[anchor.x >> 63]
        q = _i32(anchor.y)
        c = qseq[q]
        i = q - 1
        while i > 0 and qseq[i] == c:
            i -= 1
        q = i + 1
        rid = (anchor.x >> 32) & 0x7FFFFFFF
        hp = hplen_back(index, rid, _i32(anchor.x))
        return _i32(anchor.x) + 1 - hp, q
    half = index.k >> 1
    return _i32(anchor.x) - half, _i32(anchor.y) - half