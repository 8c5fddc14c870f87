"""CIGAR operations and base-level alignment bookkeeping of regions."""

from __future__ import annotations

import enum
import math
from typing import Optional, Sequence

from longmap.regions import AlignmentExtra, Region

CIGAR_STR = "MIDNSHP=XB"


class CigarOp(enum.IntEnum):
    """CIGAR operation codes; an encoded operation is ``length << 4 | op``."""

    MATCH = 0
    INS = 1
    DEL = 2
    N_SKIP = 3
    SOFT_CLIP = 4
    HARD_CLIP = 5
    PADDING = 6
    EQ_MATCH = 7
    X_MISMATCH = 8


def _enc(op: int, length: int) -> int:
    return length << 4 | op


def cigar_to_string(cigar: Sequence[int]) -> str:
    """Render encoded CIGAR operations as text, e.g. ``10M2I``."""
    return "".join(f"{c >> 4}{CIGAR_STR[c & 0xF]}" for c in cigar)


def gen_simple_mat(m: int, a: int, b: int, sc_ambi: int) -> list[int]:
    """An ``m``×``m`` scoring matrix: ``a`` on matches, ``-b`` on mismatches.

    The last row and column score the ambiguous base with ``-sc_ambi``.
    """
    a = abs(a)
    b = -b if b > 0 else b
    sc_ambi = -sc_ambi if sc_ambi > 0 else sc_ambi
    mat = [0] * (m * m)
    for i in range(m - 1):
        for j in range(m - 1):
            mat[i * m + j] = a if i == j else b
        mat[i * m + m - 1] = sc_ambi
    for j in range(m):
        mat[(m - 1) * m + j] = sc_ambi
    return mat


def gen_ts_mat(m: int, a: int, b: int, transition: int, sc_ambi: int) -> list[int]:
    """A nucleotide matrix that scores transitions (A<->G, C<->T) separately."""
    if m != 5:
        raise ValueError("a transition matrix must be 5x5")
    mat = gen_simple_mat(m, a, b, sc_ambi)
    transition = -transition if transition > 0 else transition
    mat[0 * m + 2] = transition
    mat[1 * m + 3] = transition
    mat[2 * m + 0] = transition
    mat[3 * m + 1] = transition
    return mat


def find_zdrop(cigar: Sequence[int], qseq: Sequence[int], tseq: Sequence[int],
               mat: Sequence[int], q: int, e: int) -> tuple[int, tuple[int, int], tuple[int, int]]:
    """Largest score drop along an alignment and where it happens.

    Returns ``(max_zdrop, (t_start, t_end), (q_start, q_end))``; the ranges
    are ``(-1, -1)`` when the score never drops.
    """
    score = 0
    best: Optional[int] = None
    best_i = best_j = -1
    max_zdrop = 0
    t_range = (-1, -1)
    q_range = (-1, -1)
    i = j = 0

    def update(sc: int, ii: int, jj: int) -> None:
        nonlocal best, best_i, best_j, max_zdrop, t_range, q_range
        if best is not None and sc < best:
            diff = abs((ii - best_i) - (jj - best_j))
            z = best - sc - diff * e
            if z > max_zdrop:
                max_zdrop = z
                t_range = (best_i, ii)
                q_range = (best_j, jj)
        else:
            best, best_i, best_j = sc, ii, jj

    for c in cigar:
        op, length = c & 0xF, c >> 4
        if op == CigarOp.MATCH:
            for l in range(length):
                score += mat[tseq[i + l] * 5 + qseq[j + l]]
                update(score, i + l, j + l)
            i += length
            j += length
        elif op in (CigarOp.INS, CigarOp.DEL, CigarOp.N_SKIP):
            score -= q + e * length
            if op == CigarOp.INS:
                j += length
            else:
                i += length
            update(score, i, j)
    return max_zdrop, t_range, q_range


def fix_cigar(region: Region, qseq: Sequence[int], tseq: Sequence[int]) -> tuple[int, int]:
    """Left-align indels, merge I/D runs and drop a leading I or D.

    Returns how far the query and target starts moved ``(qshift, tshift)``.
    """
    p = region.p
    if p is None or len(p.cigar) <= 1:
        return 0, 0
    cig = p.cigar
    n = len(cig)
    toff = qoff = 0
    to_shrink = False
    for k in range(n):
        op, length = cig[k] & 0xF, cig[k] >> 4
        if length == 0:
            to_shrink = True
        if op == CigarOp.MATCH:
            toff += length
            qoff += length
        elif op in (CigarOp.INS, CigarOp.DEL):
            if 0 < k < n - 1 and cig[k - 1] & 0xF == 0 and cig[k + 1] & 0xF == 0:
                prev_len = cig[k - 1] >> 4
                seq, off = (qseq, qoff) if op == CigarOp.INS else (tseq, toff)
                l = 0
                while l < prev_len and seq[off - 1 - l] == seq[off + length - 1 - l]:
                    l += 1
                if l > 0:
                    cig[k - 1] -= l << 4
                    cig[k + 1] += l << 4
                    qoff -= l
                    toff -= l
                if l == prev_len:
                    to_shrink = True
            if op == CigarOp.INS:
                qoff += length
            else:
                toff += length
        elif op == CigarOp.N_SKIP:
            toff += length
    if qoff != region.qe - region.qs or toff != region.re - region.rs:
        raise ValueError("CIGAR does not span the region")

    k = 0
    while k < n - 2:
        op_k = cig[k] & 0xF
        if op_k > 0 and op_k + (cig[k + 1] & 0xF) == 3:
            sums = [0] * 16
            l = k
            while l < n:
                op = cig[l] & 0xF
                if op in (CigarOp.INS, CigarOp.DEL) or cig[l] >> 4 == 0:
                    sums[op] += cig[l] >> 4
                else:
                    break
                l += 1
            if sums[1] > 0 and sums[2] > 0 and l - k > 2:
                cig[k] = _enc(CigarOp.INS, sums[1])
                cig[k + 1] = _enc(CigarOp.DEL, sums[2])
                for kk in range(k + 2, l):
                    cig[kk] &= 0xF
                to_shrink = True
            k = l
        k += 1

    if to_shrink:
        merged: list[int] = []
        for c in cig:
            if c >> 4 == 0:
                continue
            if merged and merged[-1] & 0xF == c & 0xF:
                merged[-1] += c >> 4 << 4
            else:
                merged.append(c)
        cig[:] = merged

    qshift = tshift = 0
    if cig and cig[0] & 0xF in (CigarOp.INS, CigarOp.DEL):
        l = cig[0] >> 4
        if cig[0] & 0xF == CigarOp.INS:
            if region.rev:
                region.qe -= l
            else:
                region.qs += l
            qshift = l
        else:
            region.rs += l
            tshift = l
        del cig[0]
    return qshift, tshift


def _runs(qseq: Sequence[int], tseq: Sequence[int], qoff: int, toff: int, length: int):
    """Yield ``(is_equal, run_length)`` over a gap-free stretch."""
    while length > 0:
        l = 0
        while l < length and qseq[qoff + l] == tseq[toff + l]:
            l += 1
        if l > 0:
            yield True, l
        length -= l
        qoff += l
        toff += l
        l = 0
        while l < length and qseq[qoff + l] != tseq[toff + l]:
            l += 1
        if l > 0:
            yield False, l
        length -= l
        qoff += l
        toff += l


def update_cigar_eqx(region: Region, qseq: Sequence[int], tseq: Sequence[int]) -> None:
    """Replace ``M`` operations with ``=`` and ``X`` runs."""
    p = region.p
    if p is None:
        return
    n_eqx = n_m = 0
    new: list[int] = []
    toff = qoff = 0
    for c in p.cigar:
        op, length = c & 0xF, c >> 4
        if op == CigarOp.MATCH:
            for equal, l in _runs(qseq, tseq, qoff, toff, length):
                n_eqx += 1
                new.append(_enc(CigarOp.EQ_MATCH if equal else CigarOp.X_MISMATCH, l))
            n_m += 1
            qoff += length
            toff += length
            continue
        if op == CigarOp.INS:
            qoff += length
        elif op in (CigarOp.DEL, CigarOp.N_SKIP):
            toff += length
        new.append(c)
    if n_eqx == n_m:
        p.cigar = [_enc(CigarOp.EQ_MATCH, c >> 4) if c & 0xF == CigarOp.MATCH else c
                   for c in p.cigar]
    else:
        p.cigar = new


def update_extra(region: Region, qseq: Sequence[int], tseq: Sequence[int], mat: Sequence[int],
                 q: int, e: int, is_eqx: bool, log_gap: bool) -> None:
    """Tidy the CIGAR and compute aligned lengths, ambiguity counts and ``dp_max``."""
    p = region.p
    if p is None:
        return
    qshift, tshift = fix_cigar(region, qseq, tseq)
    qseq = qseq[qshift:]
    tseq = tseq[tshift:]
    region.blen = region.mlen = 0
    s = best = 0.0
    toff = qoff = 0
    for c in p.cigar:
        op, length = c & 0xF, c >> 4
        if op == CigarOp.MATCH:
            n_ambi = n_diff = 0
            for cq, ct in zip(qseq[qoff:qoff + length], tseq[toff:toff + length]):
                if ct > 3 or cq > 3:
                    n_ambi += 1
                elif ct != cq:
                    n_diff += 1
                s += mat[ct * 5 + cq]
                if s < 0:
                    s = 0.0
                else:
                    best = max(best, s)
            region.blen += length - n_ambi
            region.mlen += length - (n_ambi + n_diff)
            p.n_ambi += n_ambi
            toff += length
            qoff += length
        elif op in (CigarOp.INS, CigarOp.DEL):
            if op == CigarOp.INS:
                gap = qseq[qoff:qoff + length]
                qoff += length
            else:
                gap = tseq[toff:toff + length]
                toff += length
            n_ambi = sum(1 for c2 in gap if c2 > 3)
            region.blen += length - n_ambi
            p.n_ambi += n_ambi
            s -= q + e * math.log2(1.0 + length) if log_gap else q + e
            if s < 0:
                s = 0.0
        elif op == CigarOp.N_SKIP:
            toff += length
    p.dp_max = int(best + .499)
    if qoff != region.qe - region.qs or toff != region.re - region.rs:
        raise ValueError("CIGAR does not span the region")
    if is_eqx:
        update_cigar_eqx(region, qseq, tseq)


def append_cigar(region: Region, cigar: Sequence[int]) -> None:
    """Append operations to the region's CIGAR, merging at the boundary."""
    if not cigar:
        return
    if region.p is None:
        region.p = AlignmentExtra()
    cig = region.p.cigar
    if cig and cig[-1] & 0xF == cigar[0] & 0xF:
        cig[-1] += cigar[0] >> 4 << 4
        cig.extend(cigar[1:])
    else:
        cig.extend(cigar)


def count_gaps(region: Region) -> tuple[int, int]:
    """Total gap length and number of gap openings; ``(-1, -1)`` if unaligned."""
    if region.p is None:
        return -1, -1
    n_gap = n_gapo = 0
    for c in region.p.cigar:
        if c & 0xF in (CigarOp.INS, CigarOp.DEL):
            n_gapo += 1
            n_gap += c >> 4
    return n_gap, n_gapo


def event_identity(region: Region) -> float:
    """Identity counting each gap opening as one event; -1 if unaligned."""
    if region.p is None:
        return -1.0
    n_gap, n_gapo = count_gaps(region)
    return region.mlen / (region.blen + region.p.n_ambi - n_gap + n_gapo)


def recal_max_dp(region: Region, b2: float, match_sc: int) -> int:
    """Rescore the alignment with mismatch penalty ``b2`` and log gap costs."""
    if region.p is None:
        return -1
    n_gap = 0
    gap_cost = 0.0
    for c in region.p.cigar:
        if c & 0xF in (CigarOp.INS, CigarOp.DEL):
            length = c >> 4
            gap_cost += b2 + math.log2(1.0 + length)
            n_gap += length
    n_mis = region.blen + region.p.n_ambi - region.mlen - n_gap
    return int(match_sc * (region.mlen - b2 * n_mis - gap_cost) + .499)


def update_dp_max(qlen: int, regions: Sequence[Region], frac: float, a: int, b: int) -> None:
    """Rescore ``dp_max`` of all regions when the two best are close."""
    if len(regions) < 2:
        return
    best = second = best_i = -1
    for i, r in enumerate(regions):
        if r.p is None:
            continue
        if r.p.dp_max > best:
            second, best, best_i = best, r.p.dp_max, i
        elif r.p.dp_max > second:
            second = r.p.dp_max
    if best_i < 0 or best < 0 or second < 0:
        return
    top = regions[best_i]
    if top.qe - top.qs < qlen * frac:
        return
    if second < best * frac:
        return
    div = max(1.0 - event_identity(top), 0.02)
    b2 = 0.5 / div
    if b2 * a < b:
        b2 = a / b
    for r in regions:
        if r.p is None:
            continue
        r.p.dp_max = max(recal_max_dp(r, b2, a), 0)