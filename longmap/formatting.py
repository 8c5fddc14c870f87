"""PAF and SAM output of mapping regions, with cs and MD difference strings."""

from __future__ import annotations

import enum
import math
import re
from typing import Optional, Sequence

from longmap.cigar import CIGAR_STR, CigarOp, event_identity
from longmap.regions import Region
from longmap.seqio import SeqRecord, encode_nt4, qname_len, reverse_complement

MAX_BAM_CIGAR_OP = 65535
PROGRAM = "longmap"

_UPPER = "ACGTN"
_LOWER = "acgtn"
_MATCH_OPS = (CigarOp.MATCH, CigarOp.EQ_MATCH, CigarOp.X_MISMATCH)
_ID_FIELD = re.compile(r"[^\t\n]*")


class OutputFlag(enum.IntFlag):
    """Options that change what the PAF and SAM writers emit."""

    OUT_CG = 0x1
    OUT_CS = 0x2
    OUT_CS_LONG = 0x4
    OUT_MD = 0x8
    QSTRAND = 0x10
    COPY_COMMENT = 0x20
    SOFTCLIP = 0x40
    SECONDARY_SEQ = 0x80
    LONG_CIGAR = 0x100


def _unescape(text: str) -> str:
    out = []
    chars = iter(text)
    for c in chars:
        if c == "\\":
            nxt = next(chars, "")
            if nxt == "t":
                out.append("\t")
            elif nxt == "\\":
                out.append("\\")
        else:
            out.append(c)
    return "".join(out)


def _parse_rg(rg: str) -> tuple[str, str]:
    if not rg.startswith("@RG"):
        raise ValueError("the read group line is not started with @RG")
    if "\t" in rg:
        raise ValueError("the read group line contained literal <tab> characters"
                         " -- replace with escaped tabs: \\t")
    line = _unescape(rg)
    pos = line.find("\tID:")
    if pos < 0:
        raise ValueError("no ID within the read group line")
    rg_id = _ID_FIELD.match(line, pos + 4).group(0)
    if len(rg_id) > 255:
        raise ValueError("@RG:ID is longer than 255 characters")
    return line, rg_id


def read_group_id(rg: str) -> str:
    """The ID of a read-group line given with escaped tabs (``\\t``)."""
    return _parse_rg(rg)[1]


def sam_header(index=None, rg: Optional[str] = None, version: Optional[str] = None,
               args: Sequence[str] = ()) -> str:
    """SAM header text: @HD, one @SQ per reference, optional @RG, and @PG."""
    lines = ["@HD\tVN:1.6\tSO:unsorted\tGO:query\n"]
    if index is not None:
        lines.extend(f"@SQ\tSN:{s.name}\tLN:{s.len}\n" for s in index.seq)
    if rg is not None:
        lines.append(_parse_rg(rg)[0] + "\n")
    pg = f"@PG\tID:{PROGRAM}\tPN:{PROGRAM}"
    if version is not None:
        pg += f"\tVN:{version}"
    if args:
        pg += f"\tCL:{PROGRAM}" + "".join(f" {a}" for a in args)
    lines.append(pg + "\n")
    return "".join(lines)


def _fmt_div(x: float) -> str:
    return "0" if x == 0.0 else f"{x:.4f}"


def _identity(region: Region) -> float:
    try:
        return event_identity(region)
    except ZeroDivisionError:
        return math.nan if region.mlen == 0 else math.copysign(math.inf, region.mlen)


def format_tags(region: Region) -> str:
    """The optional tags shared by PAF and SAM lines, each preceded by a tab."""
    r = region
    if r.id == r.parent:
        kind = "I" if r.inv else "P"
    else:
        kind = "i" if r.inv else "S"
    out = []
    if r.p is not None:
        out.append(f"\tNM:i:{r.blen - r.mlen + r.p.n_ambi}\tms:i:{r.p.dp_max}"
                   f"\tAS:i:{r.p.dp_score}\tnn:i:{r.p.n_ambi}")
        if r.p.trans_strand in (1, 2):
            out.append(f"\tts:A:{'?+-?'[r.p.trans_strand]}")
    out.append(f"\ttp:A:{kind}\tcm:i:{r.cnt}\ts1:i:{r.score}")
    if r.parent == r.id:
        out.append(f"\ts2:i:{r.subsc}")
    if r.p is not None:
        out.append(f"\tde:f:{_fmt_div(1.0 - _identity(r))}")
    elif 0.0 <= r.div <= 1.0:
        out.append(f"\tdv:f:{_fmt_div(r.div)}")
    if r.split:
        out.append(f"\tzd:i:{r.split}")
    return "".join(out)


def _aligned_codes(index, region: Region, seq: str, is_qstrand: bool) -> tuple[bytes, bytes]:
    r = region
    tseq = index.getseq2(bool(r.rev) and is_qstrand, r.rid, r.rs, r.re)
    qseq = encode_nt4(seq[r.qs:r.qe])
    if not is_qstrand and r.rev:
        qseq = bytes(4 if c >= 4 else 3 - c for c in reversed(qseq))
    return tseq, qseq


def _check_op(op: int) -> None:
    if not (CigarOp.MATCH <= op <= CigarOp.N_SKIP or op in (CigarOp.EQ_MATCH, CigarOp.X_MISMATCH)):
        raise ValueError(f"unsupported CIGAR operation {op}")


def _check_span(region: Region, q_off: int, t_off: int) -> None:
    if t_off != region.re - region.rs or q_off != region.qe - region.qs:
        raise ValueError("CIGAR does not span the region")


def _cs_core(region: Region, tseq: bytes, qseq: bytes, no_iden: bool) -> str:
    out: list[str] = []
    q_off = t_off = 0

    def flush(run: list[str]) -> None:
        if run:
            out.append(f":{len(run)}" if no_iden else "=" + "".join(run))
            run.clear()

    for c in region.p.cigar:
        op, length = c & 0xF, c >> 4
        _check_op(op)
        if op in _MATCH_OPS:
            run: list[str] = []
            for qc, tc in zip(qseq[q_off:q_off + length], tseq[t_off:t_off + length]):
                if qc != tc:
                    flush(run)
                    out.append(f"*{_LOWER[tc]}{_LOWER[qc]}")
                else:
                    run.append(_UPPER[qc])
            flush(run)
            q_off += length
            t_off += length
        elif op == CigarOp.INS:
            out.append("+" + "".join(_LOWER[x] for x in qseq[q_off:q_off + length]))
            q_off += length
        elif op == CigarOp.DEL:
            out.append("-" + "".join(_LOWER[x] for x in tseq[t_off:t_off + length]))
            t_off += length
        else:
            if length < 2:
                raise ValueError("an intron must be at least 2 bases long")
            out.append(f"~{_LOWER[tseq[t_off]]}{_LOWER[tseq[t_off + 1]]}{length}"
                       f"{_LOWER[tseq[t_off + length - 2]]}{_LOWER[tseq[t_off + length - 1]]}")
            t_off += length
    _check_span(region, q_off, t_off)
    return "".join(out)


def _md_core(region: Region, tseq: bytes, qseq: bytes) -> str:
    out: list[str] = []
    q_off = t_off = 0
    l_md = 0
    for c in region.p.cigar:
        op, length = c & 0xF, c >> 4
        _check_op(op)
        if op in _MATCH_OPS:
            for qc, tc in zip(qseq[q_off:q_off + length], tseq[t_off:t_off + length]):
                if qc != tc:
                    out.append(f"{l_md}{_UPPER[tc]}")
                    l_md = 0
                else:
                    l_md += 1
            q_off += length
            t_off += length
        elif op == CigarOp.INS:
            q_off += length
        elif op == CigarOp.DEL:
            out.append(f"{l_md}^" + "".join(_UPPER[x] for x in tseq[t_off:t_off + length]))
            l_md = 0
            t_off += length
        else:
            t_off += length
    if l_md > 0:
        out.append(str(l_md))
    _check_span(region, q_off, t_off)
    return "".join(out)


def _cs_or_md(index, region: Region, seq: str, no_iden: bool, is_md: bool,
              is_qstrand: bool) -> str:
    if region.p is None:
        return ""
    tseq, qseq = _aligned_codes(index, region, seq, is_qstrand)
    if is_md:
        return _md_core(region, tseq, qseq)
    return _cs_core(region, tseq, qseq, no_iden)


def gen_cs(index, region: Region, seq: str, no_iden: bool = False,
           is_qstrand: bool = False) -> str:
    """The cs difference string of an aligned region; empty if unaligned."""
    return _cs_or_md(index, region, seq, no_iden, False, is_qstrand)


def gen_md(index, region: Region, seq: str, is_qstrand: bool = False) -> str:
    """The MD string of an aligned region; empty if unaligned."""
    return _cs_or_md(index, region, seq, False, True, is_qstrand)


def _diff_tag(index, record: SeqRecord, region: Region, opt_flag: int, is_qstrand: bool) -> str:
    is_md = bool(opt_flag & OutputFlag.OUT_MD)
    body = _cs_or_md(index, region, record.seq, not opt_flag & OutputFlag.OUT_CS_LONG,
                     is_md, is_qstrand)
    return ("\tMD:Z:" if is_md else "\tcs:Z:") + body


def write_paf(index, record: SeqRecord, region: Optional[Region], opt_flag: int = 0,
              rep_len: int = -1) -> str:
    """One PAF line (without newline) for ``region``; unmapped if it is None."""
    l_seq = len(record.seq)
    if region is None:
        line = f"{record.name}\t{l_seq}\t0\t0\t*\t*\t0\t0\t0\t0\t0\t0"
        if rep_len >= 0:
            line += f"\trl:i:{rep_len}"
        return line
    r = region
    ref = index.seq[r.rid]
    out = [f"{record.name}\t{l_seq}\t{r.qs}\t{r.qe}\t{'+-'[int(r.rev)]}\t"]
    out.append(ref.name if ref.name is not None else str(r.rid))
    out.append(f"\t{ref.len}")
    if opt_flag & OutputFlag.QSTRAND and r.rev:
        out.append(f"\t{ref.len - r.re}\t{ref.len - r.rs}")
    else:
        out.append(f"\t{r.rs}\t{r.re}")
    out.append(f"\t{r.mlen}\t{r.blen}\t{r.mapq}")
    out.append(format_tags(r))
    if rep_len >= 0:
        out.append(f"\trl:i:{rep_len}")
    if r.p is not None and opt_flag & OutputFlag.OUT_CG:
        out.append("\tcg:Z:" + "".join(f"{c >> 4}{CIGAR_STR[c & 0xF]}" for c in r.p.cigar))
    if r.p is not None and opt_flag & (OutputFlag.OUT_CS | OutputFlag.OUT_MD):
        out.append(_diff_tag(index, record, r, opt_flag, bool(opt_flag & OutputFlag.QSTRAND)))
    if opt_flag & OutputFlag.COPY_COMMENT and record.comment:
        out.append(f"\t{record.comment}")
    return "".join(out)


def _sam_pri(regions: Sequence[Region]) -> Optional[Region]:
    for r in regions:
        if r.sam_pri:
            return r
    if regions:
        raise ValueError("a segment with regions has no SAM primary")
    return None


def _sam_seq(text: str, rev: bool, comp: bool) -> str:
    if not rev:
        return text
    return reverse_complement(text) if comp else text[::-1]


def _sam_cigar(flag: int, in_tag: bool, qlen: int, r: Region, opt_flag: int) -> str:
    if r.p is None:
        return "*"
    clip0 = qlen - r.qe if r.rev else r.qs
    clip1 = r.qs if r.rev else qlen - r.qe
    hard = bool((flag & 0x800 or (flag & 0x100 and opt_flag & OutputFlag.SECONDARY_SEQ))
                and not opt_flag & OutputFlag.SOFTCLIP)
    if in_tag:
        code = CigarOp.HARD_CLIP if hard else CigarOp.SOFT_CLIP
        vals = []
        if clip0:
            vals.append(clip0 << 4 | code)
        vals.extend(r.p.cigar)
        if clip1:
            vals.append(clip1 << 4 | code)
        return "\tCG:B:I" + "".join(f",{v}" for v in vals)
    if not (clip0 < qlen and clip1 < qlen):
        raise ValueError("clipping is longer than the query")
    ch = "H" if hard else "S"
    out = []
    if clip0:
        out.append(f"{clip0}{ch}")
    out.extend(f"{c >> 4}{CIGAR_STR[c & 0xF]}" for c in r.p.cigar)
    if clip1:
        out.append(f"{clip1}{ch}")
    return "".join(out)


def write_sam(index, record: SeqRecord, seg_idx: int, reg_idx: int,
              regss: Sequence[Sequence[Region]], opt_flag: int = 0, rep_len: int = -1,
              rg_id: Optional[str] = None) -> str:
    """One SAM line (without newline) for region ``reg_idx`` of segment ``seg_idx``.

    ``regss`` holds the regions of every segment of the fragment; an
    out-of-range ``reg_idx`` writes the segment as unmapped.
    """
    n_seg = len(regss)
    regs = regss[seg_idx]
    n_regs = len(regs)
    r = regs[reg_idx] if 0 <= reg_idx < n_regs else None
    l_seq = len(record.seq)

    r_prev = r_next = None
    if n_seg > 1:
        r_next = _sam_pri(regss[(seg_idx + 1) % n_seg])
        if n_seg > 2:
            for i in range(1, n_seg):
                prev_sid = (seg_idx + n_seg - i) % n_seg
                if regss[prev_sid]:
                    r_prev = _sam_pri(regss[prev_sid])
                    break
        else:
            r_prev = r_next

    out = [record.name[:qname_len(record.name)] if n_seg > 1 else record.name]

    flag = 0x1 if n_seg > 1 else 0
    if r is None:
        flag |= 0x4
    else:
        if r.rev:
            flag |= 0x10
        if r.parent != r.id:
            flag |= 0x100
        elif not r.sam_pri:
            flag |= 0x800
    if n_seg > 1:
        if r is not None and r.proper_frag:
            flag |= 0x2
        if seg_idx == 0:
            flag |= 0x40
        elif seg_idx == n_seg - 1:
            flag |= 0x80
        if r_next is None:
            flag |= 0x8
        elif r_next.rev:
            flag |= 0x20
    out.append(f"\t{flag}")

    this_rid = this_pos = -1
    cigar_in_tag = False
    if r is None:
        if r_prev is not None:
            this_rid, this_pos = r_prev.rid, r_prev.rs
            out.append(f"\t{index.seq[this_rid].name}\t{this_pos + 1}\t0\t*")
        else:
            out.append("\t*\t0\t0\t*")
    else:
        this_rid, this_pos = r.rid, r.rs
        out.append(f"\t{index.seq[r.rid].name}\t{r.rs + 1}\t{r.mapq}\t")
        if opt_flag & OutputFlag.LONG_CIGAR and r.p is not None \
                and len(r.p.cigar) > MAX_BAM_CIGAR_OP - 2:
            n_cigar = len(r.p.cigar) + (r.qs != 0) + (r.qe != l_seq)
            cigar_in_tag = n_cigar > MAX_BAM_CIGAR_OP
        if cigar_in_tag:
            if flag & 0x900 == 0 or opt_flag & OutputFlag.SOFTCLIP:
                slen = l_seq
            elif flag & 0x100 and not opt_flag & OutputFlag.SECONDARY_SEQ:
                slen = 0
            else:
                slen = r.qe - r.qs
            out.append(f"{slen}S{r.re - r.rs}N")
        else:
            out.append(_sam_cigar(flag, False, l_seq, r, opt_flag))

    if n_seg > 1:
        tlen = 0
        if this_rid >= 0 and r_next is not None:
            if this_rid == r_next.rid:
                if r is not None:
                    this_pos5 = r.re - 1 if r.rev else this_pos
                    next_pos5 = r_next.re - 1 if r_next.rev else r_next.rs
                    tlen = next_pos5 - this_pos5
                out.append("\t=\t")
            else:
                out.append(f"\t{index.seq[r_next.rid].name}\t")
            out.append(f"{r_next.rs + 1}\t")
        elif r_next is not None:
            out.append(f"\t{index.seq[r_next.rid].name}\t{r_next.rs + 1}\t")
        elif this_rid >= 0:
            out.append(f"\t=\t{this_pos + 1}\t")
        else:
            out.append("\t*\t0\t")
        if tlen > 0:
            tlen += 1
        elif tlen < 0:
            tlen -= 1
        out.append(f"{tlen}\t")
    else:
        out.append("\t*\t0\t0\t")

    qual = record.qual
    if r is None:
        out.append(record.seq + "\t" + (qual if qual else "*"))
    elif flag & 0x900 == 0 or opt_flag & OutputFlag.SOFTCLIP:
        out.append(_sam_seq(record.seq, r.rev, True) + "\t"
                   + (_sam_seq(qual, r.rev, False) if qual else "*"))
    elif flag & 0x100 and not opt_flag & OutputFlag.SECONDARY_SEQ:
        out.append("*\t*")
    else:
        out.append(_sam_seq(record.seq[r.qs:r.qe], r.rev, True) + "\t"
                   + (_sam_seq(qual[r.qs:r.qe], r.rev, False) if qual else "*"))

    if rg_id:
        out.append(f"\tRG:Z:{rg_id}")
    if n_seg > 2:
        out.append(f"\tFI:i:{seg_idx}")
    if r is not None:
        out.append(format_tags(r))
        if r.parent == r.id and r.p is not None and n_regs > 1:
            others = [q for i, q in enumerate(regs)
                      if i != reg_idx and q.parent == q.id and q.p is not None]
            if others:
                out.append("\tSA:Z:")
                for q in others:
                    l_i = l_d = 0
                    if q.qe - q.qs < q.re - q.rs:
                        l_m = q.qe - q.qs
                        l_d = (q.re - q.rs) - l_m
                    else:
                        l_m = q.re - q.rs
                        l_i = (q.qe - q.qs) - l_m
                    clip5 = l_seq - q.qe if q.rev else q.qs
                    clip3 = q.qs if q.rev else l_seq - q.qe
                    out.append(f"{index.seq[q.rid].name},{q.rs + 1},{'+-'[int(q.rev)]},")
                    for n, ch in ((clip5, "S"), (l_m, "M"), (l_i, "I"), (l_d, "D"), (clip3, "S")):
                        if n:
                            out.append(f"{n}{ch}")
                    out.append(f",{q.mapq},{q.blen - q.mlen + q.p.n_ambi};")
        if r.p is not None and opt_flag & (OutputFlag.OUT_CS | OutputFlag.OUT_MD):
            out.append(_diff_tag(index, record, r, opt_flag, False))
        if cigar_in_tag:
            out.append(_sam_cigar(flag, True, l_seq, r, opt_flag))
    if rep_len >= 0:
        out.append(f"\trl:i:{rep_len}")
    if opt_flag & OutputFlag.COPY_COMMENT and record.comment:
        out.append(f"\t{record.comment}")
    return "".join(out)