"""Mapping regions (hits) built from chains of anchors, and their bookkeeping."""

from __future__ import annotations

import dataclasses
import enum
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

MASK64 = (1 << 64) - 1
MASK32 = 0xFFFFFFFF
PARENT_UNSET = -1
PARENT_TMP_PRI = -2
MAX_SEG = 255
SEED_SEG_SHIFT = 48


class SeedFlag(enum.IntFlag):
    """Flags stored in the upper bits of an anchor's ``y`` word."""

    LONG_JOIN = 1 << 40
    IGNORE = 1 << 41
    TANDEM = 1 << 42
    SELF = 1 << 43
    SEG_MASK = 0xFF << SEED_SEG_SHIFT


def _i32(x: int) -> int:
    x &= MASK32
    return x - (1 << 32) if x & 0x80000000 else x


@dataclass
class Anchor:
    """A seed hit: ``x`` = strand|rid|target end, ``y`` = flags|span|query end."""

    x: int
    y: int

    @classmethod
    def make(cls, rid: int, tpos: int, qpos: int, q_span: int, rev: bool = False,
             seg_id: int = 0, flags: int = 0) -> "Anchor":
        x = (int(bool(rev)) << 63) | ((rid & 0x7FFFFFFF) << 32) | (tpos & MASK32)
        y = (int(flags) | (seg_id & 0xFF) << SEED_SEG_SHIFT | (q_span & 0xFF) << 32 | (qpos & MASK32)) & MASK64
        return cls(x, y)

    @property
    def rev(self) -> bool:
        return bool(self.x >> 63)

    @property
    def rid(self) -> int:
        return (self.x >> 32) & 0x7FFFFFFF

    @property
    def tpos(self) -> int:
        return _i32(self.x)

    @property
    def qpos(self) -> int:
        return _i32(self.y)

    @property
    def q_span(self) -> int:
        return (self.y >> 32) & 0xFF

    @property
    def seg_id(self) -> int:
        return (self.y & SeedFlag.SEG_MASK) >> SEED_SEG_SHIFT


@dataclass
class AlignmentExtra:
    """Base-level alignment details of a region."""

    dp_score: int = 0
    dp_max: int = 0
    dp_max2: int = 0
    n_ambi: int = 0
    trans_strand: int = 0
    cigar: list[int] = field(default_factory=list)


@dataclass
class Region:
    """A hit: a chain of anchors and, after alignment, its base-level extra."""

    id: int = 0
    cnt: int = 0
    rid: int = 0
    score: int = 0
    qs: int = 0
    qe: int = 0
    rs: int = 0
    re: int = 0
    parent: int = 0
    subsc: int = 0
    anchor_start: int = 0
    mlen: int = 0
    blen: int = 0
    n_sub: int = 0
    score0: int = 0
    mapq: int = 0
    split: int = 0
    rev: bool = False
    inv: bool = False
    sam_pri: bool = False
    proper_frag: bool = False
    pe_thru: bool = False
    seg_split: bool = False
    seg_id: int = 0
    split_inv: bool = False
    is_alt: bool = False
    strand_retained: bool = False
    hash: int = 0
    div: float = -1.0
    p: Optional[AlignmentExtra] = None


def hash64(key: int) -> int:
    """Invertible 64-bit integer hash."""
    key &= MASK64
    key = (~key + (key << 21)) & MASK64
    key ^= key >> 24
    key = (key + (key << 3) + (key << 8)) & MASK64
    key ^= key >> 14
    key = (key + (key << 2) + (key << 4)) & MASK64
    key ^= key >> 28
    key = (key + (key << 31)) & MASK64
    return key


def alt_score(score: int, alt_diff_frac: float) -> int:
    """Score penalised for hitting an ALT contig."""
    if score < 0:
        return score
    score = int(score * (1.0 - alt_diff_frac) + .499)
    return score if score > 0 else 1


def _cal_fuzzy_len(r: Region, anchors: Sequence[Anchor]) -> None:
    r.mlen = r.blen = 0
    if r.cnt <= 0:
        return
    first = anchors[r.anchor_start]
    r.mlen = r.blen = first.q_span
    chain = anchors[r.anchor_start:r.anchor_start + r.cnt]
    for prev, cur in zip(chain, chain[1:]):
        span = cur.q_span
        tl = cur.tpos - prev.tpos
        ql = cur.qpos - prev.qpos
        r.blen += max(tl, ql)
        r.mlen += span if tl > span and ql > span else min(tl, ql)


def set_coordinates(region: Region, qlen: int, anchors: Sequence[Anchor], is_qstrand: bool) -> None:
    """Set strand, contig and query/target coordinates from the region's anchors."""
    first = anchors[region.anchor_start]
    last = anchors[region.anchor_start + region.cnt - 1]
    q_span = first.q_span
    region.rev = first.rev
    region.rid = first.rid
    region.rs = first.tpos + 1 - q_span if first.tpos + 1 > q_span else 0
    region.re = last.tpos + 1
    if not region.rev or is_qstrand:
        region.qs = first.qpos + 1 - q_span
        region.qe = last.qpos + 1
    else:
        region.qs = qlen - (last.qpos + 1)
        region.qe = qlen - (first.qpos + 1 - q_span)
    _cal_fuzzy_len(region, anchors)


def gen_regs(hash_seed: int, qlen: int, chains: Sequence[int], anchors: Sequence[Anchor],
             is_qstrand: bool) -> list[Region]:
    """Turn chains (``score<<32 | n_anchors``) into regions ordered by score."""
    z = []
    k = 0
    for u in chains:
        a = anchors[k]
        h = hash64(((hash64(a.x) + hash64(a.y)) & MASK64) ^ hash_seed) & MASK32
        cnt = _i32(u)
        z.append(((u ^ h) & MASK64, (k << 32 | (cnt & MASK32)) & MASK64))
        k += cnt
    z.sort(reverse=True)
    regions = []
    for i, (x, y) in enumerate(z):
        r = Region(id=i, parent=PARENT_UNSET, score=x >> 32, score0=x >> 32, hash=x & MASK32,
                   cnt=_i32(y), anchor_start=y >> 32, div=-1.0)
        set_coordinates(r, qlen, anchors, is_qstrand)
        regions.append(r)
    return regions


def mark_alt(index, regions: Sequence[Region]) -> None:
    """Flag regions that land on ALT contigs of ``index``."""
    if index.n_alt == 0:
        return
    for r in regions:
        if index.seq[r.rid].is_alt:
            r.is_alt = True


def split_reg(region: Region, n: int, qlen: int, anchors: Sequence[Anchor],
              is_qstrand: bool) -> Optional[Region]:
    """Split off the anchors from position ``n`` onwards into a new region."""
    if n <= 0 or n >= region.cnt:
        return None
    r2 = dataclasses.replace(region, id=-1, sam_pri=False, p=None, split_inv=False,
                             cnt=region.cnt - n)
    r2.score = int(region.score * (r2.cnt / region.cnt) + .499)
    r2.anchor_start = region.anchor_start + n
    if region.parent == region.id:
        r2.parent = PARENT_TMP_PRI
    set_coordinates(r2, qlen, anchors, is_qstrand)
    region.cnt -= r2.cnt
    region.score -= r2.score
    set_coordinates(region, qlen, anchors, is_qstrand)
    region.split |= 1
    r2.split |= 2
    return r2


def set_parent(regions: Sequence[Region], mask_level: float, mask_len: int, sub_diff: int,
               hard_mask_level: bool, alt_diff_frac: float) -> None:
    """Mark each region as primary or as secondary to an overlapping primary."""
    n = len(regions)
    if n <= 0:
        return
    for i, r in enumerate(regions):
        r.id = i
    primaries = [0]
    regions[0].parent = 0
    for i in range(1, n):
        ri = regions[i]
        si, ei = ri.qs, ri.qe
        uncov_len = 0
        if not hard_mask_level:
            cov = sorted((max(rp.qs, si), min(rp.qe, ei))
                         for rp in (regions[w] for w in primaries)
                         if not (rp.qe <= si or rp.qs >= ei))
            if not cov:
                primaries.append(i)
                ri.parent = i
                ri.n_sub = 0
                continue
            x = si
            for s, e in cov:
                if s > x:
                    uncov_len += s - x
                x = max(x, e)
            if ei > x:
                uncov_len += ei - x
        for w in primaries:
            rp = regions[w]
            sj, ej = rp.qs, rp.qe
            if ej <= si or sj >= ei:
                continue
            lo = min(ej - sj, ei - si)
            hi = max(ej - sj, ei - si)
            if si < sj:
                ol = 0 if ei < sj else (ei - sj if ei < ej else ej - sj)
            else:
                ol = 0 if ej < si else (ej - si if ej < ei else ei - si)
            if ol / lo - uncov_len / hi > mask_level and uncov_len <= mask_len:
                cnt_sub = False
                sci = ri.score
                ri.parent = rp.parent
                if not rp.is_alt and ri.is_alt:
                    sci = alt_score(sci, alt_diff_frac)
                rp.subsc = max(rp.subsc, sci)
                if ri.cnt >= rp.cnt:
                    cnt_sub = True
                if rp.p and ri.p and (rp.rid != ri.rid or rp.rs != ri.rs or rp.re != ri.re or ol != lo):
                    sci = ri.p.dp_max
                    if not rp.is_alt and ri.is_alt:
                        sci = alt_score(sci, alt_diff_frac)
                    rp.p.dp_max2 = max(rp.p.dp_max2, sci)
                    if rp.p.dp_max - ri.p.dp_max <= sub_diff:
                        cnt_sub = True
                if cnt_sub:
                    rp.n_sub += 1
                break
        else:
            primaries.append(i)
            ri.parent = i
            ri.n_sub = 0


def hit_sort(regions: Sequence[Region], alt_diff_frac: float) -> list[Region]:
    """Drop soft-deleted regions and order the rest by score, best first."""
    regions = list(regions)
    if len(regions) <= 1:
        return regions
    keyed = []
    has_cigar = no_cigar = False
    for i, r in enumerate(regions):
        if r.inv or r.cnt > 0:
            if r.p:
                score, has_cigar = r.p.dp_max, True
            else:
                score, no_cigar = r.score, True
            if r.is_alt:
                score = alt_score(score, alt_diff_frac)
            keyed.append((((score & MASK32) << 32) | (r.hash & MASK32), i))
        else:
            r.p = None
    if has_cigar and no_cigar:
        raise ValueError("regions with and without base alignment cannot be sorted together")
    keyed.sort(reverse=True)
    return [regions[i] for _, i in keyed]


def set_sam_pri(regions: Sequence[Region]) -> int:
    """Mark the first primary as the SAM primary; return the number of primaries."""
    n_pri = 0
    for r in regions:
        if r.id == r.parent:
            n_pri += 1
            r.sam_pri = n_pri == 1
        else:
            r.sam_pri = False
    return n_pri


def sync_regs(regions: Sequence[Region]) -> None:
    """Renumber ids to list positions and remap parents accordingly."""
    if not regions:
        return
    position = {r.id: i for i, r in enumerate(regions) if r.id >= 0}
    for i, r in enumerate(regions):
        r.id = i
        if r.parent == PARENT_TMP_PRI:
            r.parent = i
        elif r.parent >= 0 and r.parent in position:
            r.parent = position[r.parent]
        else:
            r.parent = PARENT_UNSET
    set_sam_pri(regions)


def select_sub(regions: Sequence[Region], pri_ratio: float, min_diff: int, best_n: int,
               check_strand: bool, min_strand_sc: int) -> list[Region]:
    """Keep primaries and the best secondaries; return the retained regions."""
    r = list(regions)
    if not (pri_ratio > 0.0 and r):
        return r
    n = len(r)
    k = n_2nd = 0
    for i in range(n):
        ri = r[i]
        p = ri.parent
        if p == i or ri.inv:
            r[k] = ri
            k += 1
        elif (ri.score >= r[p].score * pri_ratio or ri.score + min_diff >= r[p].score) and n_2nd < best_n:
            rp = r[p]
            if not (ri.qs == rp.qs and ri.qe == rp.qe and ri.rid == rp.rid and ri.rs == rp.rs and ri.re == rp.re):
                r[k] = ri
                k += 1
                n_2nd += 1
        elif check_strand and n_2nd < best_n and ri.score > min_strand_sc and ri.rev != r[p].rev:
            ri.strand_retained = True
            r[k] = ri
            k += 1
            n_2nd += 1
    kept = r[:k]
    if k != n:
        sync_regs(kept)
    return kept


def filter_strand_retained(regions: Sequence[Region]) -> list[Region]:
    """Drop strand-retained secondaries that diverge much more than their primary."""
    r = list(regions)
    k = 0
    for i in range(len(r)):
        ri = r[i]
        p = ri.parent
        if not ri.strand_retained or ri.div < r[p].div * 5.0 or ri.div < 0.01:
            r[k] = ri
            k += 1
    return r[:k]


def filter_regs(regions: Sequence[Region], qlen: int, min_cnt: int, min_chain_score: int,
                min_dp_max: int, max_clip_ratio: float) -> list[Region]:
    """Drop regions with too few anchors or a poor base-level alignment."""
    kept = []
    for r in regions:
        flt = not r.inv and not r.seg_split and r.cnt < min_cnt
        if r.p:
            if r.mlen < min_chain_score:
                flt = True
            elif r.p.dp_max < min_dp_max:
                flt = True
            elif r.qs > qlen * max_clip_ratio and qlen - r.qe > qlen * max_clip_ratio:
                flt = True
        if not flt:
            kept.append(r)
    return kept


def squeeze_anchors(regions: Sequence[Region], anchors: list[Anchor]) -> int:
    """Keep only anchors referenced by regions, packed in order; return their count."""
    packed: list[Anchor] = []
    for _, i in sorted((r.anchor_start, i) for i, r in enumerate(regions)):
        r = regions[i]
        chunk = anchors[r.anchor_start:r.anchor_start + r.cnt]
        r.anchor_start = len(packed)
        packed.extend(chunk)
    anchors[:] = packed
    return len(packed)


def seg_gen(hash_seed: int, qlens: Sequence[int], regions: Sequence[Region],
            anchors: Sequence[Anchor]) -> list[tuple[list[Region], list[Anchor]]]:
    """Split regions of concatenated segments into per-segment regions.

    Returns, for each segment, its regions and the anchors they refer to.
    """
    n_segs = len(qlens)
    if n_segs > MAX_SEG:
        raise ValueError(f"at most {MAX_SEG} segments are supported")
    acc_qlen = [0] * n_segs
    for s in range(1, n_segs):
        acc_qlen[s] = acc_qlen[s - 1] + qlens[s - 1]
    qlen_sum = acc_qlen[-1] + qlens[-1] if n_segs else 0

    chains = [[(r.score << 32) & MASK64 for r in regions] for _ in range(n_segs)]
    seg_anchors: list[list[Anchor]] = [[] for _ in range(n_segs)]
    for i, r in enumerate(regions):
        for a in anchors[r.anchor_start:r.anchor_start + r.cnt]:
            sid = a.seg_id
            chains[sid][i] += 1
            shift = qlen_sum - (qlens[sid] + acc_qlen[sid]) if a.rev else acc_qlen[sid]
            seg_anchors[sid].append(Anchor(a.x, (a.y - shift) & MASK64))

    result = []
    for s in range(n_segs):
        u = [c for c in chains[s] if _i32(c) != 0]
        regs = gen_regs(hash_seed, qlens[s], u, seg_anchors[s], False)
        for r in regs:
            r.seg_split = True
            r.seg_id = s
        result.append((regs, seg_anchors[s]))
    return result


def _trunc(v: float) -> int:
    return int(v) if math.isfinite(v) else 0


def _log(v: float) -> float:
    if v > 0:
        return math.log(v)
    return -math.inf if v == 0 else math.nan


def _set_inv_mapq(regions: Sequence[Region]) -> None:
    n = len(regions)
    if n < 3 or not any(r.inv for r in regions):
        return
    aux = sorted((((r.rid & MASK32) << 32) | (r.rs & MASK32), i)
                 for i, r in enumerate(regions) if r.parent == i or r.parent < 0)
    for j in range(1, len(aux) - 1):
        inv = regions[aux[j][1]]
        if inv.inv:
            left = regions[aux[j - 1][1]]
            right = regions[aux[j + 1][1]]
            inv.mapq = min(left.mapq, right.mapq)


def set_mapq(regions: Sequence[Region], min_chain_sc: int, match_sc: int, rep_len: int,
             is_sr: bool) -> None:
    """Compute mapping quality for every region."""
    q_coef = 40.0
    if not regions:
        return
    sum_sc = sum(r.score for r in regions if r.parent == r.id)
    denom = sum_sc + rep_len
    uniq_ratio = sum_sc / denom if denom else math.nan
    for r in regions:
        if r.inv:
            r.mapq = 0
        elif r.parent == r.id:
            pen_s1 = (1.0 if r.score > 100 else 0.01 * r.score) * uniq_ratio
            pen_cm = 1.0 if r.cnt > 10 else 0.1 * r.cnt
            pen_cm = pen_s1 if pen_s1 < pen_cm else pen_cm
            subsc = max(r.subsc, min_chain_sc)
            if r.p and r.p.dp_max2 > 0 and r.p.dp_max > 0:
                identity = r.mlen / r.blen
                x = r.p.dp_max2 * subsc / r.p.dp_max / r.score0
                mapq = _trunc(identity * pen_cm * q_coef * (1.0 - x * x) * _log(r.p.dp_max / match_sc))
                if not is_sr:
                    mapq_alt = _trunc(6.02 * identity * identity * (r.p.dp_max - r.p.dp_max2) / match_sc + .499)
                    mapq = min(mapq, mapq_alt)
            else:
                x = subsc / r.score0
                if r.p:
                    identity = r.mlen / r.blen
                    mapq = _trunc(identity * pen_cm * q_coef * (1.0 - x) * _log(r.p.dp_max / match_sc))
                else:
                    mapq = _trunc(pen_cm * q_coef * (1.0 - x) * _log(r.score))
            mapq -= _trunc(4.343 * math.log(r.n_sub + 1) + .499)
            mapq = max(mapq, 0)
            r.mapq = min(mapq, 60)
            if r.p and r.p.dp_max > r.p.dp_max2 and r.mapq == 0:
                r.mapq = 1
        else:
            r.mapq = 0
    _set_inv_mapq(regions)