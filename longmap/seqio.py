"""Reading FASTA/FASTQ records and basic sequence helpers."""

from __future__ import annotations

import dataclasses
import gzip
import io
import sys
import warnings
from dataclasses import dataclass
from typing import IO, Iterable, Optional

CHECK_PAIR_THRES = 1000000

_COMP_TABLE = str.maketrans(
    "ABCDGHKMRTUVYabcdghkmrtuvy",
    "TVGHCDMKYAABRtvghcdmkyaabr",
)

_NT4_TABLE = bytearray([4] * 256)
for _i, _c in enumerate("ACGT"):
    _NT4_TABLE[ord(_c)] = _i
    _NT4_TABLE[ord(_c.lower())] = _i
_NT4_TABLE[ord("U")] = 3
_NT4_TABLE[ord("u")] = 3
_NT4_TABLE = bytes(_NT4_TABLE)

_U_TO_T = str.maketrans("uU", "tT")


class _MalformedRecord(Exception):
    """A FASTQ record whose quality string does not match its sequence."""


@dataclass
class SeqRecord:
    """One sequence read from a FASTA/FASTQ file."""

    name: str
    seq: str
    qual: Optional[str] = None
    comment: Optional[str] = None
    rid: int = 0


def qname_len(name: str) -> int:
    """Length of a read name without a trailing ``/<digit>`` mate suffix."""
    n = len(name)
    if n >= 3 and name[-1].isdigit() and name[-1] in "0123456789" and name[-2] == "/":
        return n - 2
    return n


def qname_same(name1: str, name2: str) -> bool:
    """Whether two read names are equal once mate suffixes are removed."""
    l1, l2 = qname_len(name1), qname_len(name2)
    return l1 == l2 and name1[:l1] == name2[:l2]


def reverse_complement(seq: str) -> str:
    """Reverse complement of a nucleotide string, IUPAC codes included."""
    return seq.translate(_COMP_TABLE)[::-1]


def revcomp_record(record: SeqRecord) -> SeqRecord:
    """A copy of ``record`` on the opposite strand, qualities reversed."""
    qual = record.qual[::-1] if record.qual is not None else None
    return dataclasses.replace(record, seq=reverse_complement(record.seq), qual=qual)


def encode_nt4(seq: str) -> bytes:
    """Encode a nucleotide string as codes 0-3 for A/C/G/T and 4 otherwise."""
    return seq.encode("latin-1", errors="replace").translate(_NT4_TABLE)


def _open_stream(path: Optional[str]) -> io.TextIOBase:
    if path is None or path == "-":
        raw = sys.stdin.buffer
    else:
        raw = open(path, "rb")
    buffered: IO[bytes] = raw if hasattr(raw, "peek") else io.BufferedReader(raw)
    if buffered.peek(2)[:2] == b"\x1f\x8b":
        buffered = gzip.GzipFile(fileobj=buffered, mode="rb")
    return io.TextIOWrapper(buffered, encoding="latin-1", newline="")


class SeqReader:
    """Reads FASTA or FASTQ records, plain or gzip-compressed."""

    def __init__(self, path: Optional[str]) -> None:
        self._stream = _open_stream(path)
        self._owns = path is not None and path != "-"
        self._pending: Optional[str] = None
        self._stash: Optional[SeqRecord] = None
        self._at_end = False

    def close(self) -> None:
        if self._owns:
            self._stream.close()
        else:
            self._stream.detach()

    def __enter__(self) -> "SeqReader":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _readline(self) -> Optional[str]:
        line = self._stream.readline()
        if not line:
            return None
        return line.rstrip("\r\n")

    def _find_header(self) -> Optional[str]:
        if self._pending is not None:
            header, self._pending = self._pending, None
            return header
        while True:
            line = self._readline()
            if line is None:
                self._at_end = True
                return None
            if line[:1] in (">", "@"):
                return line

    def _next(self, with_qual: bool, with_comment: bool) -> Optional[SeqRecord]:
        header = self._find_header()
        if header is None:
            return None
        body = header[1:]
        cut = next((i for i, c in enumerate(body) if c.isspace()), -1)
        if cut >= 0:
            name, comment = body[:cut], body[cut + 1:]
        else:
            name, comment = body, ""
        seq_parts = []
        qual: Optional[str] = None
        while True:
            line = self._readline()
            if line is None:
                self._at_end = True
                break
            if line[:1] in (">", "@"):
                self._pending = line
                break
            if line[:1] == "+":
                seq_len = sum(map(len, seq_parts))
                qual_parts = []
                qual_len = 0
                while qual_len < seq_len:
                    qline = self._readline()
                    if qline is None:
                        self._at_end = True
                        break
                    qual_parts.append(qline)
                    qual_len += len(qline)
                qual = "".join(qual_parts)
                if len(qual) != seq_len:
                    raise _MalformedRecord(name)
                break
            seq_parts.append(line)
        if not name:
            warnings.warn("empty sequence name in the input", RuntimeWarning, stacklevel=3)
        return SeqRecord(
            name=name,
            seq="".join(seq_parts).translate(_U_TO_T),
            qual=qual if with_qual and qual else None,
            comment=comment if with_comment and comment else None,
        )

    def read(self, chunk_size: int, with_qual: bool = True, with_comment: bool = False,
             frag_mode: bool = False) -> list[SeqRecord]:
        """Read records until their total length reaches ``chunk_size``.

        In fragment mode, records whose names match the last one read are
        kept together in the same chunk.
        """
        out: list[SeqRecord] = []
        size = 0
        if self._stash is not None:
            out.append(self._stash)
            size = len(self._stash.seq)
            self._stash = None
        try:
            while (rec := self._next(with_qual, with_comment)) is not None:
                out.append(rec)
                size += len(rec.seq)
                if size >= chunk_size:
                    if frag_mode and len(out[-1].seq) < CHECK_PAIR_THRES:
                        while (rec := self._next(with_qual, with_comment)) is not None:
                            if qname_same(rec.name, out[-1].name):
                                out.append(rec)
                            else:
                                self._stash = rec
                                break
                    break
        except _MalformedRecord:
            if out:
                msg = f"failed to parse the FASTA/FASTQ record next to '{out[-1].name}'. Continue anyway."
            else:
                msg = "failed to parse the first FASTA/FASTQ record. Continue anyway."
            warnings.warn(msg, RuntimeWarning, stacklevel=2)
        return out

    def eof(self) -> bool:
        """Whether no further records remain."""
        if self._stash is not None:
            return False
        if self._pending is None and not self._at_end:
            header = self._find_header()
            self._pending = header
        return self._pending is None


def read_fragments(readers: Iterable[SeqReader], chunk_size: int, with_qual: bool = True,
                   with_comment: bool = False) -> list[SeqRecord]:
    """Read one record from each reader in turn until ``chunk_size`` is reached."""
    readers = list(readers)
    out: list[SeqRecord] = []
    if not readers:
        return out
    size = 0
    while True:
        batch = []
        for reader in readers:
            try:
                rec = reader._next(with_qual, with_comment)
            except _MalformedRecord:
                rec = None
            if rec is not None:
                batch.append(rec)
        if len(batch) < len(readers):
            if batch:
                warnings.warn("query files have different number of records; extra records skipped.",
                              RuntimeWarning, stacklevel=2)
            break
        out.extend(batch)
        size += sum(len(r.seq) for r in batch)
        if size >= chunk_size:
            break
    return out