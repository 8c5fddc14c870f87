# longmap

Pure-Python building blocks for mapping long nucleotide reads against a
reference: reading sequences, holding a minimizer index, keeping track of
hits, tidying CIGAR strings and writing PAF and SAM. It uses only the
standard library.

## Modules

- `longmap.seqio` — `SeqReader` reads FASTA or FASTQ, plain or
  gzip-compressed (a path of `"-"` or `None` reads standard input), in
  chunks of a given total length; `read_fragments` reads one record from
  each of several readers in turn. Also `qname_len`, `qname_same`,
  `reverse_complement`, `revcomp_record` and `encode_nt4` (bases as codes
  0–3 for A/C/G/T, 4 otherwise). Records are `SeqRecord` dataclasses.
- `longmap.index` — `MinimizerIndex` stores reference sequences and a
  bucketed table of minimizers supplied by the caller. It offers name lookup
  (`index_names`, `name2id`), base retrieval on either strand (`getseq`,
  `getseq_rev`, `getseq2`), an occurrence cut-off (`cal_max_occ`), ALT-contig
  marking (`read_alt`), BED and BED12 intron loading (`read_bed`) with
  splice-site marks (`bed_junc`), and a binary format (`dump`, `load_index`,
  `is_index_file`).
- `longmap.regions` — `Anchor` and `Region` dataclasses and the functions
  that turn chains into hits (`gen_regs`, `split_reg`, `seg_gen`), mark
  primaries and secondaries (`set_parent`, `sync_regs`, `set_sam_pri`),
  order and filter them (`hit_sort`, `select_sub`, `filter_regs`,
  `filter_strand_retained`, `squeeze_anchors`) and assign mapping
  qualities (`set_mapq`).
- `longmap.cigar` — `CigarOp`, `cigar_to_string`, scoring matrices
  (`gen_simple_mat`, `gen_ts_mat`), Z-drop search (`find_zdrop`), indel
  left-alignment (`fix_cigar`), `=`/`X` expansion (`update_cigar_eqx`),
  per-region statistics (`update_extra`, `count_gaps`, `event_identity`)
  and rescoring (`recal_max_dp`, `update_dp_max`).
- `longmap.anchors` — clean up a chain's anchors before alignment
  (`collect_long_gaps`, `filter_bad_seeds`, `filter_bad_seeds_alt`,
  `fix_bad_ends`, `max_stretch`, `adjust_minier`, `hplen_back`).
- `longmap.esterr` — `estimate_divergence` sets each region's `div` from
  the query minimizers it matches.
- `longmap.formatting` — `write_paf` and `write_sam` lines, `sam_header`,
  `format_tags`, `gen_cs`, `gen_md`, `read_group_id`, with behaviour
  switched by `OutputFlag`.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
from longmap.seqio import SeqReader
from longmap.index import MinimizerIndex, load_index

index = MinimizerIndex(w=10, k=15, b=14, flag=0)
with SeqReader("ref.fa") as reader:
    for record in reader.read(1 << 30, with_qual=False,
                              with_comment=False, frag_mode=False):
        index.add_sequence(record.name, record.seq)
index.finalize()

index.index_names()
print(index.name2id("chr1"))   # sequence id, or None
print(index.getseq(0, 0, 20))  # bytes of codes 0..4 (A, C, G, T, N)

with open("ref.mmi", "wb") as out:
    index.dump(out)
with open("ref.mmi", "rb") as fh:
    same = load_index(fh)
```

Writing an unmapped read as PAF:

```python
from longmap.formatting import write_paf
from longmap.seqio import SeqRecord

print(write_paf(index, SeqRecord(name="read1", seq="ACGT"), None))
```

Errors are raised as exceptions (`ValueError` for malformed CIGARs,
read-group lines or index files, `IndexError` for out-of-range sequence
requests); recoverable problems in input files are reported as
`RuntimeWarning`.

## What the package does not do

- It does not compute minimizers from sequences; they are passed to
  `MinimizerIndex.add_minimizers` by the caller.
- It does not find seed hits, chain anchors, or pair mates.
- It has no base-level alignment kernel: CIGARs are taken as given and only
  tidied, rescored and reported.
- It has no command-line program; it is used as a library.