"""A minimizer index over a set of reference sequences."""

from __future__ import annotations

import bisect
import enum
import gzip
import io
import itertools
import os
import re
import struct
import sys
import warnings
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, Iterator, Optional

from longmap.seqio import encode_nt4

IDX_MAGIC = b"MMI\x02"
INT32_MAX = 2147483647
MASK32 = 0xFFFFFFFF

_ATOL = re.compile(r"\s*([+-]?\d+)")


class IndexFlag(enum.IntFlag):
    """Options an index was built with."""

    HPC = 0x1
    NO_SEQ = 0x2
    NO_NAME = 0x4


@dataclass
class IndexSeq:
    """One reference sequence held by the index."""

    name: Optional[str]
    offset: int
    len: int
    is_alt: bool = False


@dataclass
class Interval:
    """A BED interval on a reference sequence."""

    st: int
    en: int
    max: int = -1
    score: int = -1
    strand: int = 0


@dataclass
class _Bucket:
    pending: list[tuple[int, int]] = field(default_factory=list)
    positions: list[int] = field(default_factory=list)
    # key (minimizer >> b) -> (is_singleton, value)
    table: dict[int, tuple[bool, int]] = field(default_factory=dict)


def _atol(text: str) -> int:
    m = _ATOL.match(text)
    return int(m.group(1)) if m else 0


def _open_lines(path: Optional[str]) -> Iterator[str]:
    if path is None or path == "-":
        raw = sys.stdin.buffer
        owns = False
    else:
        raw = open(path, "rb")
        owns = True
    try:
        buffered = raw if hasattr(raw, "peek") else io.BufferedReader(raw)
        if buffered.peek(2)[:2] == b"\x1f\x8b":
            buffered = gzip.GzipFile(fileobj=buffered, mode="rb")
        for line in buffered:
            yield line.decode("latin-1").rstrip("\r\n")
    finally:
        if owns:
            raw.close()


class MinimizerIndex:
    """Reference sequences and a bucketed hash table of their minimizers.

    Minimizers are ``(x, y)`` pairs where ``x >> 8`` is the hashed k-mer and
    ``y`` its encoded position.
    """

    def __init__(self, w: int, k: int, b: int = 14, flag: int = 0) -> None:
        if k * 2 < b:
            b = k * 2
        if w < 1:
            w = 1
        self.w = w
        self.k = k
        self.b = b
        self.flag = IndexFlag(flag)
        self.seq: list[IndexSeq] = []
        self.bases = bytearray()
        self.n_alt = 0
        self.index = 0
        self.intervals: Optional[list[list[Interval]]] = None
        self._sum_len = 0
        self._names: Optional[dict[str, int]] = None
        self._buckets = [_Bucket() for _ in range(1 << b)]

    @property
    def n_seq(self) -> int:
        return len(self.seq)

    def add_sequence(self, name: Optional[str], seq: str) -> int:
        """Store a reference sequence; return its id."""
        rid = len(self.seq)
        if self.flag & IndexFlag.NO_NAME:
            name = None
        self.seq.append(IndexSeq(name=name, offset=self._sum_len, len=len(seq)))
        if not self.flag & IndexFlag.NO_SEQ:
            self.bases.extend(encode_nt4(seq))
        self._sum_len += len(seq)
        if self._names is not None and name is not None and name not in self._names:
            self._names[name] = rid
        return rid

    def add_minimizers(self, minimizers: Iterable[tuple[int, int]]) -> None:
        """Queue minimizers for indexing; call :meth:`finalize` afterwards."""
        mask = (1 << self.b) - 1
        for x, y in minimizers:
            self._buckets[(x >> 8) & mask].pending.append((x, y))

    def finalize(self) -> None:
        """Sort queued minimizers and build the hash tables."""
        for bucket in self._buckets:
            if not bucket.pending:
                continue
            bucket.pending.sort(key=lambda t: t[0])
            for hv, group in itertools.groupby(bucket.pending, key=lambda t: t[0] >> 8):
                items = list(group)
                key = hv >> self.b
                if key in bucket.table:
                    raise RuntimeError("minimizer is already indexed")
                if len(items) == 1:
                    bucket.table[key] = (True, items[0][1])
                else:
                    start = len(bucket.positions)
                    bucket.positions.extend(sorted(y for _, y in items))
                    bucket.table[key] = (False, start << 32 | len(items))
            bucket.pending = []

    def get(self, minimizer: int) -> list[int]:
        """Positions of a hashed minimizer; empty if it is not indexed."""
        bucket = self._buckets[minimizer & ((1 << self.b) - 1)]
        entry = bucket.table.get(minimizer >> self.b)
        if entry is None:
            return []
        single, val = entry
        if single:
            return [val]
        start, n = val >> 32, val & MASK32
        return bucket.positions[start:start + n]

    def index_names(self) -> bool:
        """Build the name lookup; return whether duplicate names exist."""
        if self._names is not None:
            return False
        names: dict[str, int] = {}
        has_dup = False
        for i, s in enumerate(self.seq):
            if s.name is None:
                continue
            if s.name in names:
                has_dup = True
            else:
                names[s.name] = i
        self._names = names
        if has_dup:
            warnings.warn("some database sequences have identical sequence names",
                          RuntimeWarning, stacklevel=2)
        return has_dup

    def name2id(self, name: str) -> Optional[int]:
        """Id of the sequence called ``name``, or None if there is none."""
        if self._names is None:
            raise RuntimeError("sequence names have not been indexed")
        return self._names.get(name)

    def _check_range(self, rid: int, st: int, en: int) -> tuple[IndexSeq, int]:
        if rid < 0 or rid >= len(self.seq) or st >= self.seq[rid].len:
            raise IndexError(f"region {rid}:{st}-{en} is outside the index")
        s = self.seq[rid]
        return s, min(en, s.len)

    def getseq(self, rid: int, st: int, en: int) -> bytes:
        """Bases ``[st, en)`` of sequence ``rid`` as 0-4 codes."""
        s, en = self._check_range(rid, st, en)
        return bytes(self.bases[s.offset + st:s.offset + en])

    def getseq_rev(self, rid: int, st: int, en: int) -> bytes:
        """Bases ``[st, en)`` of the reverse complement of sequence ``rid``."""
        s, en = self._check_range(rid, st, en)
        st1 = s.offset + (s.len - en)
        en1 = s.offset + (s.len - st)
        return bytes(3 - c if c < 4 else c for c in reversed(self.bases[st1:en1]))

    def getseq2(self, is_rev: bool, rid: int, st: int, en: int) -> bytes:
        """:meth:`getseq_rev` if ``is_rev`` else :meth:`getseq`."""
        return self.getseq_rev(rid, st, en) if is_rev else self.getseq(rid, st, en)

    def cal_max_occ(self, f: float) -> int:
        """Occurrence threshold above which the top ``f`` fraction of minimizers lie."""
        if f <= 0.0:
            return INT32_MAX
        counts = sorted(1 if single else val & MASK32
                        for bucket in self._buckets
                        for single, val in bucket.table.values())
        if not counts:
            return INT32_MAX
        return counts[int((1.0 - f) * len(counts))] + 1

    def dump(self, fp: BinaryIO) -> None:
        """Write the index in binary form."""
        fp.write(IDX_MAGIC)
        fp.write(struct.pack("<5I", self.w, self.k, self.b, len(self.seq), int(self.flag)))
        for s in self.seq:
            name = (s.name or "").encode("latin-1")
            length = len(name) & 0xFF
            fp.write(struct.pack("<B", length))
            fp.write(name[:length])
            fp.write(struct.pack("<I", s.len))
        for bucket in self._buckets:
            fp.write(struct.pack("<i", len(bucket.positions)))
            fp.write(struct.pack(f"<{len(bucket.positions)}Q", *bucket.positions))
            fp.write(struct.pack("<I", len(bucket.table)))
            for key, (single, val) in bucket.table.items():
                fp.write(struct.pack("<QQ", key << 1 | int(single), val))
        if not self.flag & IndexFlag.NO_SEQ:
            n_words = (self._sum_len + 7) // 8
            padded = bytes(self.bases) + bytes(n_words * 8 - len(self.bases))
            words = (sum(c << (4 * j) for j, c in enumerate(padded[i * 8:i * 8 + 8]))
                     for i in range(n_words))
            fp.write(struct.pack(f"<{n_words}I", *words))
        fp.flush()

    def read_alt(self, path: Optional[str]) -> int:
        """Mark the sequences listed in ``path`` as ALT contigs; return how many."""
        if self._names is None:
            self.index_names()
        n_alt = 0
        for line in _open_lines(path):
            name = re.split(r"\s", line, maxsplit=1)[0]
            rid = self.name2id(name)
            if rid is not None:
                self.seq[rid].is_alt = True
                n_alt += 1
        self.n_alt = n_alt
        return n_alt

    def read_bed(self, path: Optional[str], read_junc: bool) -> None:
        """Load BED intervals; with ``read_junc``, BED12 blocks give introns."""
        if self._names is None:
            self.index_names()
        intervals: list[list[Interval]] = [[] for _ in self.seq]
        for line in _open_lines(path):
            rid: Optional[int] = None
            st = en = -1
            score, strand, n_blk = -1, 0, 0
            bl = bs = ""
            last = 0
            for i, text in enumerate(line.split("\t")):
                last = i
                if i == 0:
                    rid = self.name2id(text)
                    if rid is None:
                        break
                elif i == 1:
                    st = _atol(text)
                    if st < 0:
                        break
                elif i == 2:
                    en = _atol(text)
                    if en < 0:
                        break
                elif i == 4:
                    score = _atol(text)
                elif i == 5:
                    strand = 1 if text[:1] == "+" else -1 if text[:1] == "-" else 0
                elif i == 9:
                    if not text or text[0] not in "0123456789":
                        break
                    n_blk = _atol(text)
                elif i == 10:
                    bl = text
                elif i == 11:
                    bs = text
                    break
            if rid is None or st < 0 or st >= en:
                continue
            target = intervals[rid]
            if last >= 11 and read_junc:
                starts = [_atol(x) for x in bs.split(",")]
                sizes = [_atol(x) for x in bl.split(",")]

                def block(j: int) -> tuple[int, int]:
                    return (starts[j] if j < len(starts) else 0,
                            sizes[j] if j < len(sizes) else 0)

                b_st, b_sz = block(0)
                end = st + b_st + b_sz
                for j in range(1, n_blk):
                    b_st, b_sz = block(j)
                    intron = Interval(st=end, en=st + b_st, score=score, strand=strand)
                    end = st + b_st + b_sz
                    if intron.en > intron.st:
                        target.append(intron)
            else:
                target.append(Interval(st=st, en=en, score=score, strand=strand))
        for ivs in intervals:
            ivs.sort(key=lambda iv: iv.st)
        self.intervals = intervals

    def bed_junc(self, ctg: int, st: int, en: int) -> bytearray:
        """Splice-site marks for ``[st, en)``: 1/2 donor/acceptor on +, 8/4 on -."""
        marks = bytearray(max(en - st, 0))
        if self.intervals is None or ctg < 0 or ctg >= len(self.intervals):
            return marks
        ivs = self.intervals[ctg]
        left = bisect.bisect_left(ivs, st, key=lambda iv: iv.st)
        for iv in ivs[left:]:
            if st <= iv.st and en >= iv.en and iv.strand != 0:
                if iv.strand > 0:
                    marks[iv.st - st] |= 1
                    marks[iv.en - 1 - st] |= 2
                else:
                    marks[iv.st - st] |= 8
                    marks[iv.en - 1 - st] |= 4
        return marks


def _read_exact(fp: BinaryIO, n: int) -> bytes:
    data = fp.read(n)
    if len(data) != n:
        raise ValueError("truncated index file")
    return data


def load_index(fp: BinaryIO) -> Optional[MinimizerIndex]:
    """Read an index written by :meth:`MinimizerIndex.dump`; None if not one."""
    magic = fp.read(4)
    if magic != IDX_MAGIC:
        return None
    header = fp.read(20)
    if len(header) != 20:
        return None
    w, k, b, n_seq, flag = struct.unpack("<5I", header)
    mi = MinimizerIndex(w, k, b, flag)
    sum_len = 0
    for _ in range(n_seq):
        (length,) = struct.unpack("<B", _read_exact(fp, 1))
        name = _read_exact(fp, length).decode("latin-1") if length else None
        (seq_len,) = struct.unpack("<I", _read_exact(fp, 4))
        mi.seq.append(IndexSeq(name=name, offset=sum_len, len=seq_len))
        sum_len += seq_len
    mi._sum_len = sum_len
    for bucket in mi._buckets:
        (n,) = struct.unpack("<i", _read_exact(fp, 4))
        bucket.positions = list(struct.unpack(f"<{n}Q", _read_exact(fp, 8 * n)))
        (size,) = struct.unpack("<I", _read_exact(fp, 4))
        for _ in range(size):
            key, val = struct.unpack("<QQ", _read_exact(fp, 16))
            if key >> 1 in bucket.table:
                raise ValueError("duplicate key in index file")
            bucket.table[key >> 1] = (bool(key & 1), val)
    if not mi.flag & IndexFlag.NO_SEQ:
        n_words = (sum_len + 7) // 8
        words = struct.unpack(f"<{n_words}I", _read_exact(fp, 4 * n_words))
        bases = bytearray((word >> (4 * j)) & 0xF for word in words for j in range(8))
        mi.bases = bases[:sum_len]
    return mi


def is_index_file(path: str) -> int:
    """Size of ``path`` if it is a prebuilt index, otherwise 0."""
    if path == "-":
        return 0
    size = os.path.getsize(path)
    if size >= 4:
        with open(path, "rb") as fh:
            if fh.read(4) == IDX_MAGIC:
                return size
    return 0