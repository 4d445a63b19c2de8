#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Trim adapter contamination out of assembled transcripts (e.g. Trinity output)
using a tabular BLAST scan of the transcripts against UniVec.

Three passes, strictly in order:
  1. baseline: transcript lengths from the FASTA (verified against `len=`),
     or coordinates inherited from a previous round's ranges ledger
  2. scan: every alignment hit against a listed adapter is classified as a
     5' cut, a 3' cut or ignored, and folded into a per-transcript keep window
  3. rewrite: the FASTA is streamed again and each transcript is cut to its
     window, subject to minimum length and (optionally) CDS preservation

Example scan command (from the NCBI TSA submission guidelines):

    blastn -task blastn -reward 1 -penalty -5 -gapopen 3 -gapextend 3 \\
        -dust yes -soft_masking true -evalue 700 -searchsp 1750000000000 \\
        -outfmt 6 -db UniVec -query transcripts.fasta -out scan.fmt6

UniVec must be formatted with `-parse_seqids` so hit names look like
`gnl|uv|NGB00360.1:1-58`.
"""

from __future__ import annotations

import argparse
import re
import sys
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, NamedTuple, TextIO

import pysam
from loguru import logger
from pydantic import Field, ValidationInfo, field_validator
from pydantic.dataclasses import dataclass as pydantic_dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# One end of the alignment must be within this many bases of a transcript end
CLOSE_MRNA_END: int = 15

# Relaxed mode: alignment reaches within this many bases of the adapter's 3' end
CLOSE_ADAPTER_END: int = 10

# Internal hits are accepted when the adapter match is this close to full length
FULL_ADAPTER_SLACK: int = 2

# Diagnostic thresholds for the run summary
SHORT_OUTPUT_LEN: int = 200
LARGE_TRIM_DELTA: int = 100

DEFAULT_RANGES_FMT: str = "%-40s %6d %6d %6d %s"
DEFAULT_ADAPTER_MARKER: str = "uv"

LEDGER_COMMENT: str = "#"
SCAN_COMMENT: str = "#"

# blastn -outfmt 6: qseqid sseqid pident length mismatch gapopen qstart qend sstart send ...
MIN_SCAN_FIELDS: int = 10

# Emit a progress debug line after this many transcripts or scan records
DEBUG_EVERY: int = 100_000

LEN_MARKER = re.compile(r"(\s)len=(\d+)")


# ------------------------------- DATA TYPES -------------------------------- #


class ProcessingMode(Enum):
    """How a run treats headers and coordinates. Chosen once from the config."""

    NORMAL = auto()  # rewrite len= in headers
    CDS = auto()  # as NORMAL, plus CDS veto from a TransDecoder pep/cds file
    LEDGER = auto()  # headers untouched, trims recorded in a ranges ledger


@dataclass(frozen=True)
class TrimPolicy:
    """Knobs consulted by the rewrite pass."""

    min_len: int = 0  # drop transcripts trimmed below this length
    drop_proteinless: bool = False  # CDS mode only: drop transcripts with no ORF call
    ranges_fmt: str = DEFAULT_RANGES_FMT  # printf-style ledger record layout


@dataclass(frozen=True)
class AdapterCatalog:
    """Adapter identifier -> adapter reference length, for the adapters to act on."""

    lengths: Mapping[str, int]

    @classmethod
    def from_spec(cls, spec: str) -> AdapterCatalog:
        """
        Parse a whitespace-delimited list like "NGB00360:58 NGB00362:61".

        Tokens that do not parse to a positive length are skipped without
        complaint; hits against them are then ignored like any unlisted adapter.
        """
        lengths: dict[str, int] = {}
        for token in spec.split():
            name, sep, raw_len = token.partition(":")
            if not sep or not name:
                continue
            try:
                length = int(raw_len)
            except ValueError:
                continue
            if length <= 0:
                continue
            lengths[name] = length
        return cls(MappingProxyType(lengths))

    def length_of(self, adapter_id: str) -> int | None:
        return self.lengths.get(adapter_id)

    def __len__(self) -> int:
        return len(self.lengths)


@dataclass(frozen=True)
class TranscriptBaseline:
    """
    Where a transcript sits in its original (as-assembled) coordinate space.

    `current_start`/`current_stop` are 1-based inclusive bounds in original
    coordinates of the sequence as it exists going into this run.
    """

    original_length: int
    current_start: int
    current_stop: int
    remainder: str = ""

    @property
    def current_length(self) -> int:
        return self.current_stop - self.current_start + 1

    @classmethod
    def fresh(cls, length: int) -> TranscriptBaseline:
        return cls(original_length=length, current_start=1, current_stop=length)


@dataclass
class BaselineSet:
    """All baselines for a run, plus ledger comment lines to carry forward."""

    transcripts: dict[str, TranscriptBaseline] = field(default_factory=dict)
    comments: list[str] = field(default_factory=list)

    def __contains__(self, name: object) -> bool:
        return name in self.transcripts

    def __getitem__(self, name: str) -> TranscriptBaseline:
        return self.transcripts[name]

    def __len__(self) -> int:
        return len(self.transcripts)

    def get(self, name: str) -> TranscriptBaseline | None:
        return self.transcripts.get(name)


class CdsInterval(NamedTuple):
    """One predicted coding region, 1-based inclusive, current-round coordinates."""

    lo: int
    hi: int

    def outside(self, keep_lo: int, keep_hi: int) -> bool:
        """True when no base of the interval survives the keep window."""
        return self.lo > keep_hi or self.hi < keep_lo

    def inside(self, keep_lo: int, keep_hi: int) -> bool:
        return keep_lo <= self.lo and self.hi <= keep_hi


@dataclass
class CdsIndex:
    """Per-transcript CDS intervals from a TransDecoder pep/cds file."""

    ranges: dict[str, list[CdsInterval]] = field(default_factory=dict)
    total: int = 0
    multiples: int = 0

    def add(self, transcript: str, interval: CdsInterval) -> None:
        self.total += 1
        if transcript in self.ranges:
            self.ranges[transcript].append(interval)
            self.multiples += 1
        else:
            self.ranges[transcript] = [interval]

    def intervals_for(self, transcript: str) -> list[CdsInterval]:
        return self.ranges.get(transcript, [])


class CdsVerdict(Enum):
    """Outcome of checking a keep window against a transcript's CDS calls."""

    INTACT = auto()  # every interval survives whole
    CUT = auto()  # at least one interval is partially trimmed
    DESTROYED = auto()  # some interval lies entirely outside the window
    NO_PROTEIN = auto()  # no interval known for this transcript


class AlignmentHit(NamedTuple):
    """One record of a tabular (blastn -outfmt 6) scan file."""

    transcript: str
    target: str
    # carried as text; classification never reads them
    identity: str
    aln_length: str
    mismatches: str
    gaps: str
    t_start: int
    t_end: int
    a_start: int
    a_end: int

    @staticmethod
    def from_line(line: str) -> AlignmentHit:
        """Parse a whitespace-delimited scan record; trailing fields are ignored."""
        fields = line.split()
        if len(fields) < MIN_SCAN_FIELDS:
            msg = (
                f"Scan record has {len(fields)} fields, expected at least "
                f"{MIN_SCAN_FIELDS}: {line.rstrip()!r}"
            )
            logger.error(msg)
            raise ValueError(msg)
        try:
            return AlignmentHit(
                transcript=fields[0],
                target=fields[1],
                identity=fields[2],
                aln_length=fields[3],
                mismatches=fields[4],
                gaps=fields[5],
                t_start=int(fields[6]),
                t_end=int(fields[7]),
                a_start=int(fields[8]),
                a_end=int(fields[9]),
            )
        except ValueError as e:
            msg = f"Scan record has non-integer alignment coordinates: {line.rstrip()!r}"
            logger.error(msg)
            raise ValueError(msg) from e

    @property
    def is_reversed(self) -> bool:
        """Adapter aligns to the transcript's reverse strand."""
        return (self.t_end - self.t_start) * (self.a_end - self.a_start) < 0

    @property
    def adapter_reach(self) -> int:
        """The 3'-most adapter coordinate covered by the alignment."""
        return max(self.a_start, self.a_end)


class HitClass(Enum):
    """Closed set of outcomes for one alignment hit, with the window side it moves."""

    FIVE_PRIME_END = auto()
    THREE_PRIME_END = auto()
    FIVE_PRIME_INTERNAL = auto()
    THREE_PRIME_INTERNAL = auto()
    IGNORED = auto()

    @property
    def trims_lo(self) -> bool:
        return self in (HitClass.FIVE_PRIME_END, HitClass.FIVE_PRIME_INTERNAL)

    @property
    def trims_hi(self) -> bool:
        return self in (HitClass.THREE_PRIME_END, HitClass.THREE_PRIME_INTERNAL)


@dataclass
class ScanStats:
    """Counters for the classification pass."""

    records: int = 0
    lo_end: int = 0
    hi_end: int = 0
    lo_mid: int = 0
    hi_mid: int = 0
    weak: int = 0
    unlisted_adapter: int = 0
    unknown_transcript: int = 0
    extrapolated: int = 0

    def count(self, hit_class: HitClass) -> None:
        match hit_class:
            case HitClass.FIVE_PRIME_END:
                self.lo_end += 1
            case HitClass.THREE_PRIME_END:
                self.hi_end += 1
            case HitClass.FIVE_PRIME_INTERNAL:
                self.lo_mid += 1
            case HitClass.THREE_PRIME_INTERNAL:
                self.hi_mid += 1
            case HitClass.IGNORED:
                self.weak += 1

    def summary(self) -> str:
        return (
            f"adapter cuts at: end (lo {self.lo_end} hi {self.hi_end}) "
            f"mid (lo {self.lo_mid} hi {self.hi_mid}) | weak hits ignored: {self.weak} | "
            f"unlisted adapter: {self.unlisted_adapter} | unknown transcript: "
            f"{self.unknown_transcript} | relaxed extrapolations: {self.extrapolated}"
        )


@dataclass
class RewriteStats:
    """Counters for the rewrite pass. Diagnostic only."""

    read: int = 0
    wrote: int = 0
    trimmed: int = 0
    short_output: int = 0  # written with length < SHORT_OUTPUT_LEN
    large_delta: int = 0  # written with more than LARGE_TRIM_DELTA bases removed
    cds_cut: int = 0
    cds_drop: int = 0
    len_drop: int = 0
    noprot_drop: int = 0
    trimmed_lo: int = 0  # 5' only
    trimmed_hi: int = 0  # 3' only
    trimmed_both: int = 0

    @property
    def dropped(self) -> int:
        return self.cds_drop + self.len_drop + self.noprot_drop

    def summary(self) -> str:
        return (
            f"Read: {self.read} | Wrote: {self.wrote} | Trimmed: {self.trimmed} | "
            f"newlen<{SHORT_OUTPUT_LEN}: {self.short_output} | "
            f"deltaLen>{LARGE_TRIM_DELTA}: {self.large_delta} | cds_cut: {self.cds_cut} | "
            f"cds_drop: {self.cds_drop} | len_drop: {self.len_drop} | "
            f"noprot_drop: {self.noprot_drop} | trim_lo: {self.trimmed_lo} | "
            f"trim_hi: {self.trimmed_hi} | trim_both: {self.trimmed_both}"
        )


# ----------------------------- CONFIGURATION ------------------------------- #


@pydantic_dataclass(frozen=True)
class RunConfig:
    """Validated run configuration. Field order matters to the cross-field checks."""

    infile: Path
    scanfile: Path
    outfile: Path
    adapters: str = Field(min_length=1)
    pepfile: Path | None = None
    in_ranges: Path | None = None
    out_ranges: Path | None = Field(default=None, validate_default=True)
    ranges_fmt: str = DEFAULT_RANGES_FMT
    min_len: int = Field(default=0, ge=0)
    drop_nopep: bool = Field(default=False, validate_default=True)
    relaxed: bool = False
    adapter_marker: str = Field(default=DEFAULT_ADAPTER_MARKER, min_length=1)

    @field_validator("adapters")
    @classmethod
    def adapters_not_blank(cls, v: str) -> str:
        if not v.split():
            msg = "adapters must list at least one identifier:length token"
            raise ValueError(msg)
        return v

    @field_validator("in_ranges")
    @classmethod
    def in_ranges_excludes_pepfile(cls, v: Path | None, info: ValidationInfo) -> Path | None:
        if v is not None and info.data.get("pepfile") is not None:
            msg = "pepfile cannot be combined with in_ranges/out_ranges"
            raise ValueError(msg)
        return v

    @field_validator("out_ranges")
    @classmethod
    def out_ranges_consistent(cls, v: Path | None, info: ValidationInfo) -> Path | None:
        if v is not None and info.data.get("pepfile") is not None:
            msg = "pepfile cannot be combined with in_ranges/out_ranges"
            raise ValueError(msg)
        if v is None and info.data.get("in_ranges") is not None:
            msg = "in_ranges requires out_ranges (but not vice versa)"
            raise ValueError(msg)
        return v

    @field_validator("ranges_fmt")
    @classmethod
    def ranges_fmt_formats_a_record(cls, v: str) -> str:
        if "\n" in v:
            msg = "ranges_fmt must not contain a line feed"
            raise ValueError(msg)
        try:
            v % ("name", 1, 1, 1, "")
        except (TypeError, ValueError) as e:
            msg = f"ranges_fmt cannot format (name, start, stop, original_length, remainder): {e}"
            raise ValueError(msg) from e
        return v

    @field_validator("drop_nopep")
    @classmethod
    def drop_nopep_requires_pepfile(cls, v: bool, info: ValidationInfo) -> bool:  # noqa: FBT001
        if v and info.data.get("pepfile") is None:
            msg = "drop_nopep requires pepfile"
            raise ValueError(msg)
        return v

    @property
    def mode(self) -> ProcessingMode:
        if self.pepfile is not None:
            return ProcessingMode.CDS
        if self.out_ranges is not None:
            return ProcessingMode.LEDGER
        return ProcessingMode.NORMAL

    def policy(self) -> TrimPolicy:
        return TrimPolicy(
            min_len=self.min_len,
            drop_proteinless=self.drop_nopep,
            ranges_fmt=self.ranges_fmt,
        )

    def describe(self) -> str:
        parts = [
            f"mode: {self.mode.name}",
            f"infile: {self.infile}",
            f"outfile: {self.outfile}",
            f"scanfile: {self.scanfile}",
            f"adapters: {self.adapters}",
        ]
        if self.pepfile is not None:
            parts.append(f"pepfile: {self.pepfile}")
        if self.in_ranges is not None:
            parts.append(f"inranges: {self.in_ranges}")
        if self.out_ranges is not None:
            parts.append(f"outranges: {self.out_ranges}")
        parts += [
            f"minlen: {self.min_len}",
            f"relaxed: {self.relaxed}",
            f"drop_nopep: {'yes' if self.drop_nopep else 'no'}",
            f"ranges_fmt: {self.ranges_fmt!r}",
            f"adapter_marker: {self.adapter_marker}",
        ]
        return " | ".join(parts)


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ---------------------------- FASTA UTILITIES ------------------------------ #


def full_header(record: pysam.FastxRecord) -> str:
    """Header text without the leading '>' as it appeared in the file."""
    if record.comment:
        return f"{record.name} {record.comment}"
    return record.name


def read_raw_headers(lines: Iterable[str]) -> dict[str, str]:
    """
    Name -> header text exactly as written (without '>' and line ending).

    FastxRecord splits name from comment and loses the separator, so output
    headers are taken from here.
    """
    headers: dict[str, str] = {}
    for line in lines:
        if line.startswith(">"):
            header = line[1:].rstrip("\r\n")
            name = header.split(None, 1)[0] if header.strip() else ""
            headers[name] = header
    return headers


def declared_length(header: str) -> int:
    """Return the `len=` value of a Trinity header."""
    match = LEN_MARKER.search(header)
    if match is None:
        msg = f"Trinity fasta header lacks len= component. Line:\n>{header}"
        logger.error(msg)
        raise ValueError(msg)
    return int(match.group(2))


def replace_length(header: str, new_len: int) -> str:
    """Substitute the first `len=` value, leaving every other field as it was."""
    return LEN_MARKER.sub(lambda m: f"{m.group(1)}len={new_len}", header, count=1)


def write_fasta_record(out: TextIO, header: str, sequence: str) -> None:
    out.write(f">{header}\n{sequence}\n")


# ---------------------------- BASELINE LOADING ----------------------------- #


def baseline_from_fasta(records: Iterable[pysam.FastxRecord]) -> BaselineSet:
    """
    Fresh baselines: every transcript starts at 1 and stops at its length.
    The declared `len=` must agree with the sequence actually present.
    """
    baselines = BaselineSet()
    for record in records:
        header = full_header(record)
        seqlen = declared_length(header)
        real_seqlen = len(record.sequence or "")
        if real_seqlen != seqlen:
            msg = (
                f"Fatal input error: {record.name} has len={seqlen} "
                f"but actual length is {real_seqlen}"
            )
            logger.error(msg)
            raise ValueError(msg)
        if record.name in baselines:
            logger.warning(f"Duplicate transcript name '{record.name}'; last record wins.")
        baselines.transcripts[record.name] = TranscriptBaseline.fresh(seqlen)
    return baselines


def parse_ledger_record(line: str) -> tuple[str, TranscriptBaseline]:
    """
    Parse `name start stop original_length [remainder]`.
    The remainder is carried forward untouched.
    """
    fields = line.rstrip("\r\n").split(None, 4)
    if len(fields) < 4:  # noqa: PLR2004
        msg = f"Ranges record needs name, start, stop and original_length: {line.rstrip()!r}"
        logger.error(msg)
        raise ValueError(msg)
    name = fields[0]
    try:
        start, stop, original = (int(v) for v in fields[1:4])
    except ValueError as e:
        msg = f"Ranges record has non-integer coordinates: {line.rstrip()!r}"
        logger.error(msg)
        raise ValueError(msg) from e
    if not 1 <= start <= stop <= original:
        msg = (
            f"Ranges record for '{name}' violates 1 <= start <= stop <= original_length: "
            f"start={start}, stop={stop}, original_length={original}"
        )
        logger.error(msg)
        raise ValueError(msg)
    remainder = fields[4] if len(fields) > 4 else ""  # noqa: PLR2004
    return name, TranscriptBaseline(
        original_length=original,
        current_start=start,
        current_stop=stop,
        remainder=remainder,
    )


def baseline_from_ledger(lines: Iterable[str]) -> BaselineSet:
    """Inherit baselines from a previous round's ranges ledger."""
    baselines = BaselineSet()
    for line in lines:
        if line.startswith(LEDGER_COMMENT):
            baselines.comments.append(line if line.endswith("\n") else f"{line}\n")
            continue
        if not line.strip():
            continue
        name, baseline = parse_ledger_record(line)
        baselines.transcripts[name] = baseline
    return baselines


def format_ledger_record(
    fmt: str,
    name: str,
    baseline: TranscriptBaseline,
    keep_lo: int,
    keep_hi: int,
) -> str:
    """
    Compose the relative keep window with the prior absolute window.
    Returned text carries its own trailing newline.
    """
    new_start = baseline.current_start + keep_lo - 1
    new_stop = baseline.current_start + keep_hi - 1
    return (fmt % (name, new_start, new_stop, baseline.original_length, baseline.remainder)) + "\n"


# ------------------------------- CDS INDEX --------------------------------- #


def parse_cds_header(header: str) -> tuple[str, CdsInterval]:
    """
    Pull (transcript, interval) out of a TransDecoder header such as

        TRINITY_DN1_c0_g1_i1.p1 ... TRINITY_DN1_c0_g1_i1:87-593(+)

    The transcript is the text before the first '.'; the interval is the last
    ':'-delimited piece, up to the strand marker.
    """
    transcript = header.split(".", 1)[0]
    end_piece = header.split(":")[-1]
    cds_range = end_piece.split("(", 1)[0]
    lo_text, sep, hi_text = cds_range.partition("-")
    try:
        if not sep:
            raise ValueError(cds_range)
        lo, hi = int(lo_text), int(hi_text)
    except ValueError as e:
        msg = f"CDS header lacks a lo-hi range before the strand marker: >{header}"
        logger.error(msg)
        raise ValueError(msg) from e
    # minus-strand calls are reported high-to-low
    return transcript, CdsInterval(min(lo, hi), max(lo, hi))


def load_cds_index(records: Iterable[pysam.FastxRecord]) -> CdsIndex:
    index = CdsIndex()
    for record in records:
        transcript, interval = parse_cds_header(full_header(record))
        index.add(transcript, interval)
    return index


def check_cds(intervals: Sequence[CdsInterval], keep_lo: int, keep_hi: int) -> tuple[CdsVerdict, int]:
    """
    Check a keep window against CDS intervals.

    Returns the verdict plus the number of intervals found partially cut
    before the verdict was reached.
    """
    if not intervals:
        return CdsVerdict.NO_PROTEIN, 0
    cuts = 0
    for interval in intervals:
        if interval.outside(keep_lo, keep_hi):
            return CdsVerdict.DESTROYED, cuts
        if not interval.inside(keep_lo, keep_hi):
            cuts += 1
    return (CdsVerdict.CUT if cuts else CdsVerdict.INTACT), cuts


# --------------------------- ADAPTER NAME PARSING -------------------------- #


@dataclass(frozen=True)
class UniVecNameParser:
    """
    Resolve the adapter identifier from a UniVec hit name.

    Depending on how the database was formatted the name may look like
    `gnl|uv|NGB00360.1:1-58`, `uv:NGB00360.1:1-58` or `uv|NGB00360.1:1-58`.
    Everything from the first '.' on is ignored; the identifier starts one
    separator character past the first occurrence of the marker.
    """

    marker: str = DEFAULT_ADAPTER_MARKER
    separator_width: int = 1

    def parse(self, target: str) -> str:
        front_part = target.split(".", 1)[0]
        first = front_part.find(self.marker)
        if first == -1:
            msg = (
                f'Adapter name in blastn output does not look like "<something>{self.marker}|name.<something>". '
                f"Is: {target}"
            )
            logger.error(msg)
            raise ValueError(msg)
        return front_part[first + len(self.marker) + self.separator_width :]


# ------------------------- ALIGNMENT CLASSIFICATION ------------------------ #


class TrimWindows:
    """
    Accumulated keep windows, in current-round coordinates.

    Updates only ever shrink a window (lo rises, hi falls), so the result is
    the intersection of every hit's surviving region in any order.
    """

    def __init__(self) -> None:
        self.lo: dict[str, int] = {}
        self.hi: dict[str, int] = {}

    def assign_lo(self, name: str, value: int) -> None:
        """`value` is the first base to KEEP."""
        current = self.lo.get(name)
        if current is None or value > current:
            self.lo[name] = value

    def assign_hi(self, name: str, value: int) -> None:
        """`value` is the last base to KEEP."""
        current = self.hi.get(name)
        if current is None or value < current:
            self.hi[name] = value

    def window(self, name: str, current_length: int) -> tuple[int, int]:
        """(keep_lo, keep_hi), defaulting to the whole transcript."""
        return self.lo.get(name, 1), self.hi.get(name, current_length)

    def __contains__(self, name: object) -> bool:
        return name in self.lo or name in self.hi

    def __len__(self) -> int:
        return len(self.lo.keys() | self.hi.keys())


def extrapolate_hit(
    t_start: int,
    t_end: int,
    a_start: int,
    a_end: int,
    adapter_len: int,
    current_length: int,
) -> tuple[int, int] | None:
    """
    Relaxed mode: when the alignment reaches within CLOSE_ADAPTER_END of the
    adapter's 3' end, pretend it covered the whole adapter.

    Returns the extrapolated (t_start, t_end) clamped to [1, current_length],
    or None when the hit is not close enough to the adapter end.
    """
    if adapter_len - max(a_start, a_end) + 1 > CLOSE_ADAPTER_END:
        return None
    if (t_end - t_start) * (a_end - a_start) < 0:
        new_start = t_start - (adapter_len - a_start)
        new_end = new_start + adapter_len - 1
    else:
        new_end = t_end + (adapter_len - a_end)
        new_start = new_end - adapter_len + 1
    return max(1, new_start), min(current_length, new_end)


def classify_hit(
    t_start: int,
    t_end: int,
    adapter_reach: int,
    adapter_len: int,
    current_length: int,
    reversed_: bool,  # noqa: FBT001
) -> tuple[HitClass, int | None]:
    """
    Decide which side of the transcript a hit trims, and where.

    For Illumina adapters the ends SHOULD look like this:

        ---------------> transcript
        --->       <---  adapters

    so a flipped adapter marks the high limit. Returns the class and the new
    keep_lo (5' classes) or keep_hi (3' classes); None when ignored.
    """
    if t_start < CLOSE_MRNA_END:
        return HitClass.FIVE_PRIME_END, max(t_start, t_end) + 1
    if current_length - t_end < CLOSE_MRNA_END:
        return HitClass.THREE_PRIME_END, min(t_start, t_end) - 1
    if adapter_len - FULL_ADAPTER_SLACK <= adapter_reach:
        # somewhere internal: orientation decides the side
        if reversed_:
            return HitClass.THREE_PRIME_INTERNAL, min(t_start, t_end) - 1
        return HitClass.FIVE_PRIME_INTERNAL, max(t_start, t_end) + 1
    return HitClass.IGNORED, None


def fold_hit(  # noqa: PLR0913
    hit: AlignmentHit,
    catalog: AdapterCatalog,
    baselines: BaselineSet,
    windows: TrimWindows,
    name_parser: UniVecNameParser,
    stats: ScanStats,
    relaxed: bool = False,  # noqa: FBT001, FBT002
) -> HitClass | None:
    """Classify one hit and fold it into `windows`. None when the hit is skipped."""
    adapter_id = name_parser.parse(hit.target)
    adapter_len = catalog.length_of(adapter_id)
    if adapter_len is None:
        stats.unlisted_adapter += 1
        return None

    baseline = baselines.get(hit.transcript)
    if baseline is None:
        stats.unknown_transcript += 1
        logger.warning(
            f"Scan hit for '{hit.transcript}' which is not in the baseline; ignoring it.",
        )
        return None
    current_length = baseline.current_length

    t_start, t_end = hit.t_start, hit.t_end
    reversed_ = hit.is_reversed
    if relaxed:
        extrapolated = extrapolate_hit(
            t_start, t_end, hit.a_start, hit.a_end, adapter_len, current_length
        )
        if extrapolated is not None:
            stats.extrapolated += 1
            logger.trace(
                f"Extrapolated {adapter_id} hit on '{hit.transcript}': "
                f"({t_start}, {t_end}) -> {extrapolated}",
            )
            t_start, t_end = extrapolated

    hit_class, coord = classify_hit(
        t_start, t_end, hit.adapter_reach, adapter_len, current_length, reversed_
    )
    stats.count(hit_class)
    if hit_class.trims_lo:
        assert coord is not None
        windows.assign_lo(hit.transcript, coord)
    elif hit_class.trims_hi:
        assert coord is not None
        windows.assign_hi(hit.transcript, coord)
    logger.trace(f"{hit.transcript} vs {adapter_id}: {hit_class.name} ({coord})")
    return hit_class


def scan_alignments(
    lines: Iterable[str],
    catalog: AdapterCatalog,
    baselines: BaselineSet,
    name_parser: UniVecNameParser | None = None,
    relaxed: bool = False,  # noqa: FBT001, FBT002
) -> tuple[TrimWindows, ScanStats]:
    """Fold every scan record into per-transcript keep windows."""
    name_parser = name_parser or UniVecNameParser()
    windows = TrimWindows()
    stats = ScanStats()
    for line in lines:
        if not line.strip() or line.startswith(SCAN_COMMENT):
            continue
        stats.records += 1
        if stats.records % DEBUG_EVERY == 0:
            logger.debug(f"Progress: scan records={stats.records}, windows={len(windows)}")
        fold_hit(
            AlignmentHit.from_line(line),
            catalog,
            baselines,
            windows,
            name_parser,
            stats,
            relaxed=relaxed,
        )
    return windows, stats


# ------------------------------ REWRITE PASS ------------------------------- #


def process_transcripts(  # noqa: C901, PLR0912, PLR0913
    records: Iterable[pysam.FastxRecord],
    out: TextIO,
    baselines: BaselineSet,
    windows: TrimWindows,
    policy: TrimPolicy,
    mode: ProcessingMode = ProcessingMode.NORMAL,
    cds: CdsIndex | None = None,
    ledger_out: TextIO | None = None,
    raw_headers: Mapping[str, str] | None = None,
) -> RewriteStats:
    """
    Stream transcripts -> trimmed transcripts.

    Processing behavior:
    - Transcripts whose window leaves fewer than max(min_len, 1) bases are dropped
    - CDS mode: a transcript is dropped if the window loses a whole CDS interval,
      or (drop_proteinless) if it has no CDS call; partial cuts are only counted
    - NORMAL/CDS modes rewrite `len=` in the header
    - LEDGER mode leaves the header alone and writes a ranges record instead

    Headers are written from `raw_headers` (see read_raw_headers) so that
    everything but `len=` comes out byte-for-byte.

    Returns:
        RewriteStats for the run
    """
    assert mode is not ProcessingMode.CDS or cds is not None, "CDS mode requires a CDS index"
    assert mode is not ProcessingMode.LEDGER or ledger_out is not None, (
        "LEDGER mode requires an output ledger"
    )

    stats = RewriteStats()
    min_len = max(1, policy.min_len)

    if ledger_out is not None:
        ledger_out.writelines(baselines.comments)

    for record in records:
        stats.read += 1
        if stats.read % DEBUG_EVERY == 0:
            logger.debug(f"Progress: read={stats.read}, wrote={stats.wrote}, dropped={stats.dropped}")

        name = record.name
        baseline = baselines.get(name)
        if baseline is None:
            msg = f"Transcript '{name}' has no baseline (not in the ranges file?)"
            logger.error(msg)
            raise ValueError(msg)
        current_length = baseline.current_length
        sequence = record.sequence or ""
        if mode is ProcessingMode.LEDGER and len(sequence) != current_length:
            msg = (
                f"Fatal input error: {name} is {len(sequence)} bases but its ranges "
                f"record spans {current_length}"
            )
            logger.error(msg)
            raise ValueError(msg)

        keep_lo, keep_hi = windows.window(name, current_length)
        new_len = keep_hi - keep_lo + 1
        cut_lo = keep_lo > 1
        cut_hi = keep_hi < current_length
        if cut_lo and cut_hi:
            stats.trimmed_both += 1
        elif cut_lo:
            stats.trimmed_lo += 1
        elif cut_hi:
            stats.trimmed_hi += 1

        if new_len < min_len:
            stats.len_drop += 1
            logger.debug(
                f"Dropping short transcript '{name}': window [{keep_lo}, {keep_hi}] "
                f"leaves {new_len} < min_len={min_len}",
            )
            continue

        if mode is ProcessingMode.CDS:
            verdict, cuts = check_cds(cds.intervals_for(name), keep_lo, keep_hi)
            stats.cds_cut += cuts
            match verdict:
                case CdsVerdict.DESTROYED:
                    stats.cds_drop += 1
                    logger.debug(
                        f"Dropping '{name}': window [{keep_lo}, {keep_hi}] removes a whole CDS",
                    )
                    continue
                case CdsVerdict.NO_PROTEIN if policy.drop_proteinless:
                    stats.noprot_drop += 1
                    logger.debug(f"Dropping '{name}': no CDS call and drop_nopep is set")
                    continue

        header = raw_headers.get(name) if raw_headers is not None else None
        if header is None:
            header = full_header(record)
        if mode is ProcessingMode.LEDGER:
            ledger_out.write(
                format_ledger_record(policy.ranges_fmt, name, baseline, keep_lo, keep_hi)
            )
        else:
            header = replace_length(header, new_len)

        write_fasta_record(out, header, sequence[keep_lo - 1 : keep_lo - 1 + new_len])
        stats.wrote += 1

        # only counted for transcripts which were written
        if current_length - new_len > LARGE_TRIM_DELTA:
            stats.large_delta += 1
        if new_len != current_length:
            stats.trimmed += 1
        if new_len < SHORT_OUTPUT_LEN:
            stats.short_output += 1

    assert stats.read == stats.wrote + stats.dropped, (
        f"Transcript count inconsistency: read={stats.read}, wrote={stats.wrote}, "
        f"dropped={stats.dropped}"
    )
    return stats


# -------------------------------- PIPELINE --------------------------------- #


def load_baselines(config: RunConfig) -> BaselineSet:
    if config.in_ranges is not None:
        logger.info(f"Obtaining range data from: {config.in_ranges}")
        with open(config.in_ranges) as handle:
            return baseline_from_ledger(handle)
    logger.info(f"Obtaining sequence lengths from: {config.infile}")
    with pysam.FastxFile(str(config.infile)) as fasta:
        return baseline_from_fasta(fasta)


def run(config: RunConfig) -> RewriteStats:
    """Run all three passes for one validated configuration."""
    mode = config.mode
    catalog = AdapterCatalog.from_spec(config.adapters)
    logger.debug(f"Adapter catalog: {dict(catalog.lengths)}")

    baselines = load_baselines(config)
    logger.info(f"Baselines loaded for {len(baselines)} transcripts")

    cds = None
    if mode is ProcessingMode.CDS:
        logger.info(f"Processing pepfile: {config.pepfile}")
        with pysam.FastxFile(str(config.pepfile)) as pep:
            cds = load_cds_index(pep)
        logger.info(
            f"CDS ranges: {cds.total}, 2nd or higher CDS range for transcript: {cds.multiples}",
        )

    logger.info(f"Processing scanfile: {config.scanfile}")
    with open(config.scanfile) as scan:
        windows, scan_stats = scan_alignments(
            scan,
            catalog,
            baselines,
            name_parser=UniVecNameParser(marker=config.adapter_marker),
            relaxed=config.relaxed,
        )
    logger.info(scan_stats.summary())

    logger.info(f"Processing {config.infile}")
    with open(config.infile) as handle:
        raw_headers = read_raw_headers(handle)
    with pysam.FastxFile(str(config.infile)) as fasta, open(config.outfile, "w") as out:
        if mode is ProcessingMode.LEDGER:
            with open(config.out_ranges, "w") as ledger_out:
                return process_transcripts(
                    fasta,
                    out,
                    baselines,
                    windows,
                    config.policy(),
                    mode,
                    ledger_out=ledger_out,
                    raw_headers=raw_headers,
                )
        return process_transcripts(
            fasta, out, baselines, windows, config.policy(), mode, cds=cds, raw_headers=raw_headers
        )


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Trim adapters out of a Trinity transcriptome assembly using a blastn\n"
            "(-outfmt 6) scan of the transcripts against UniVec.\n"
            "Fasta files must have one header line and one sequence line per record.\n"
            "Warning: blastn reports one hit per adapter even when several copies are\n"
            "present; if an adapter remains, run another cycle."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )

    # I/O
    p.add_argument(
        "-i",
        "--infile",
        required=True,
        help="Transcriptome assembly FASTA (Trinity headers unless --in-ranges is used)",
    )
    p.add_argument(
        "-s",
        "--scanfile",
        required=True,
        help="blastn -outfmt 6 scan of UniVec against --infile",
    )
    p.add_argument(
        "-o",
        "--outfile",
        required=True,
        help="Output FASTA",
    )
    p.add_argument(
        "-a",
        "--adapters",
        required=True,
        help='Space delimited adapters to act on, like "NGB00360:58 NGB00362:61"',
    )

    # CDS protection
    cds_group = p.add_argument_group("CDS Protection")
    cds_group.add_argument(
        "--pepfile",
        default=None,
        help=(
            "TransDecoder peptide (or cds) file for --infile. A transcript is dropped\n"
            "if trimming would remove a whole CDS. Not combinable with ranges files."
        ),
    )
    cds_group.add_argument(
        "--drop-nopep",
        action="store_true",
        help="Drop transcripts that have no protein (requires --pepfile)",
    )

    # Ranges ledger
    ranges_group = p.add_argument_group("Ranges Ledger")
    ranges_group.add_argument(
        "--in-ranges",
        default=None,
        help=(
            "Ranges file from a previous round. Trims are applied to its start/stop\n"
            "values and written to --out-ranges; FASTA headers are left unchanged."
        ),
    )
    ranges_group.add_argument(
        "--out-ranges",
        default=None,
        help="Output ranges file (required with --in-ranges, allowed without)",
    )
    ranges_group.add_argument(
        "--ranges-fmt",
        default=DEFAULT_RANGES_FMT,
        help=(
            "printf-style layout for: name start stop original_length remainder\n"
            f"(default: '{DEFAULT_RANGES_FMT}', no line feed)"
        ).replace("%", "%%"),
    )

    # Trimming policy
    p.add_argument(
        "--min-len",
        type=int,
        default=0,
        help="Drop a transcript if it is trimmed below this length",
    )
    p.add_argument(
        "--relaxed",
        action="store_true",
        help=(
            "When a hit reaches within 10bp of the adapter's 3' end, extrapolate it\n"
            "to the full adapter length before testing the transcript ends."
        ),
    )
    p.add_argument(
        "--adapter-marker",
        default=DEFAULT_ADAPTER_MARKER,
        help="Token preceding the adapter identifier in scan hit names (default: uv)",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting adapter trimming run.")

    try:
        config = RunConfig(
            infile=args.infile,
            scanfile=args.scanfile,
            outfile=args.outfile,
            adapters=args.adapters,
            pepfile=args.pepfile,
            in_ranges=args.in_ranges,
            out_ranges=args.out_ranges,
            ranges_fmt=args.ranges_fmt,
            min_len=args.min_len,
            drop_nopep=bool(args.drop_nopep),
            relaxed=bool(args.relaxed),
            adapter_marker=args.adapter_marker,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    logger.info(f"Command line arguments were: {config.describe()}")

    try:
        stats = run(config)
    except (OSError, ValueError) as e:
        logger.error(f"Adapter trimming failed: {e}")
        sys.exit(1)

    logger.success(f"Done. {stats.summary()}")


if __name__ == "__main__":
    main()
