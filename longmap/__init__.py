"""Building blocks for mapping long reads: sequence I/O, a minimizer index, hits, CIGARs and PAF/SAM output."""

__version__ = "0.1.0"

__all__ = ["seqio", "regions", "index", "cigar", "esterr", "formatting", "anchors"]