[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "longmap"
version = "0.1.0"
description = "Building blocks for a long-read sequence mapper: FASTA/FASTQ reading, a minimizer index, hit bookkeeping, CIGAR handling and PAF/SAM output"
requires-python = ">=3.10"
dependencies = []
keywords = ["bioinformatics", "sequence alignment", "minimizer", "PAF", "SAM", "CIGAR", "FASTQ"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Bio-Informatics",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["longmap"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
