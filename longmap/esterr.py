"""Estimating sequence divergence of regions from minimizer matches."""

from __future__ import annotations

import warnings
from typing import Sequence

from longmap.regions import Anchor, Region

_MASK32 = 0xFFFFFFFF


def _i32(x: int) -> int:
    x &= _MASK32
    return x - (1 << 32) if x & 0x80000000 else x


def _for_qpos(qlen: int, anchor: Anchor) -> int:
    """Query position of an anchor on the forward strand of the query."""
    x = anchor.qpos
    if anchor.rev:
        x = qlen - 1 - (x + 1 - anchor.q_span)
    return x


def _mini_idx(qlen: int, anchor: Anchor, mini_pos: Sequence[int]) -> int:
    x = _for_qpos(qlen, anchor)
    lo, hi = 0, len(mini_pos) - 1
    while lo <= hi:
        mid = (lo + hi) >> 1
        y = _i32(mini_pos[mid])
        if y < x:
            lo = mid + 1
        elif y > x:
            hi = mid - 1
        else:
            return mid
    return -1


def estimate_divergence(index, qlen: int, regions: Sequence[Region], anchors: Sequence[Anchor],
                        mini_pos: Sequence[int]) -> None:
    """Set ``div`` of each region from the fraction of query minimizers it hits.

    ``mini_pos`` holds the query minimizers, sorted by position, each as
    ``span << 32 | position``.
    """
    n = len(mini_pos)
    if n == 0:
        return
    avg_k = sum((p >> 32) & 0xFF for p in mini_pos) / n
    for r in regions:
        r.div = -1.0
        if r.cnt == 0:
            continue
        chain = list(anchors[r.anchor_start:r.anchor_start + r.cnt])
        if r.rev:
            chain.reverse()
        st = _mini_idx(qlen, chain[0], mini_pos)
        if st < 0:
            warnings.warn("logic inconsistency in divergence estimation", RuntimeWarning,
                          stacklevel=2)
            continue
        en = st
        l_ref = index.seq[r.rid].len
        k = n_match = 1
        for j in range(st + 1, n):
            if k >= r.cnt:
                break
            if _for_qpos(qlen, chain[k]) == _i32(mini_pos[j]):
                k += 1
                en = j
                n_match += 1
        n_tot = en - st + 1
        if r.qs > avg_k and r.rs > avg_k:
            n_tot += 1
        if qlen - r.qs > avg_k and l_ref - r.re > avg_k:
            n_tot += 1
        r.div = 0.0 if n_match >= n_tot else 1.0 - (n_match / n_tot) ** (1.0 / avg_k)