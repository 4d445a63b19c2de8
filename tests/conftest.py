# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for transcript adapter trimming tests.

This module provides shared fixtures for testing trim_transcript_adapters.py:
small Trinity-style FASTA files, blastn tabular scan files, ranges ledgers and
TransDecoder peptide files written to a temporary directory.
"""

import random
import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the modules we're testing
from trim_transcript_adapters import AdapterCatalog, BaselineSet, TranscriptBaseline

ADAPTER_SPEC = "NGB00360:58 NGB00362:61"


def random_sequence(length: int, seed: int = 0) -> str:
    """Deterministic pseudo-random nucleotide string."""
    rng = random.Random(seed)
    return "".join(rng.choice("ACGT") for _ in range(length))


def scan_line(  # noqa: PLR0913
    transcript: str,
    adapter: str,
    t_start: int,
    t_end: int,
    a_start: int,
    a_end: int,
    db_prefix: str = "gnl|uv|",
) -> str:
    """One blastn -outfmt 6 record against a UniVec entry."""
    aln_len = abs(t_end - t_start) + 1
    return (
        f"{transcript}\t{db_prefix}{adapter}.1:1-58\t100.00\t{aln_len}\t0\t0\t"
        f"{t_start}\t{t_end}\t{a_start}\t{a_end}\t1e-20\t{aln_len * 1.0:.1f}\n"
    )


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def catalog() -> AdapterCatalog:
    return AdapterCatalog.from_spec(ADAPTER_SPEC)


@pytest.fixture
def baselines_500() -> BaselineSet:
    """Three fresh 500 bp transcripts."""
    baselines = BaselineSet()
    for name in ("tx1", "tx2", "tx3"):
        baselines.transcripts[name] = TranscriptBaseline.fresh(500)
    return baselines


@pytest.fixture
def transcripts() -> dict[str, str]:
    """Name -> sequence for a small assembly."""
    return {
        "TRINITY_DN1_c0_g1_i1": random_sequence(500, seed=1),
        "TRINITY_DN2_c0_g1_i1": random_sequence(500, seed=2),
        "TRINITY_DN3_c0_g1_i1": random_sequence(300, seed=3),
    }


@pytest.fixture
def write_fasta(temp_dir: Path) -> Callable[..., Path]:
    """Write Trinity-style two-line FASTA records; `lengths` overrides len=."""

    def _write(
        records: dict[str, str],
        name: str = "transcripts.fasta",
        lengths: dict[str, int] | None = None,
        with_len: bool = True,  # noqa: FBT001, FBT002
    ) -> Path:
        lengths = lengths or {}
        path = temp_dir / name
        with open(path, "w") as f:
            for tname, seq in records.items():
                if with_len:
                    declared = lengths.get(tname, len(seq))
                    f.write(f">{tname} len={declared} path=[0:0-{len(seq) - 1}]\n")
                else:
                    f.write(f">{tname} some description\n")
                f.write(f"{seq}\n")
        return path

    return _write


@pytest.fixture
def write_text(temp_dir: Path) -> Callable[[str, str], Path]:
    """Write arbitrary text (scan files, ranges ledgers, pep files)."""

    def _write(name: str, text: str) -> Path:
        path = temp_dir / name
        path.write_text(text)
        return path

    return _write


@pytest.fixture
def read_fasta() -> Callable[[Path], dict[str, tuple[str, str]]]:
    """Parse a two-line FASTA into name -> (header, sequence)."""

    def _read(path: Path) -> dict[str, tuple[str, str]]:
        out: dict[str, tuple[str, str]] = {}
        lines = path.read_text().splitlines()
        for header, seq in zip(lines[::2], lines[1::2]):
            assert header.startswith(">")
            out[header[1:].split()[0]] = (header[1:], seq)
        return out

    return _read


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
