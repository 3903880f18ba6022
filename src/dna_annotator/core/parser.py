from __future__ import annotations

import gzip
import logging
import re
import zipfile
import zlib
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from dna_annotator.core import vcf
from dna_annotator.core.exceptions import FormatDetectionFailure, ImportCancelled, NoValidRecords
from dna_annotator.core.models import GenotypeRecord, ParseReport
from dna_annotator.core.utils import normalize_chrom

DELIMITERS = ["\t", ",", ";", " "]
SAMPLE_LINES = 50
HEURISTIC_LINES = 30
HEURISTIC_COLUMNS = 10
MIN_HEURISTIC_MATCHES = 5
ROLE_ORDER = ("rs_id", "genotype", "chromosome", "position")
DEFAULT_COLUMNS = {"rs_id": 0, "chromosome": 1, "position": 2, "genotype": 3}
HEADER_ALIASES = {
    "rs_id": ["rsid", "snp", "rs#", "rs_id", "id"],
    "chromosome": ["chromosome", "chrom", "chr"],
    "position": ["position", "pos", "bp", "location"],
    "genotype": ["genotype", "result", "allele", "alleles", "call", "variant"],
}
ROLE_PATTERNS = {
    "rs_id": re.compile(r"^rs\d+$", re.IGNORECASE),
    "chromosome": re.compile(r"^(chr)?([1-9]|1[0-9]|2[0-2]|X|Y|MT?)$", re.IGNORECASE),
    "position": re.compile(r"^\d+$"),
    "genotype": re.compile(r"^[ACGT-]{1,2}$", re.IGNORECASE),
}
ARCHIVE_EXTENSIONS = (".csv", ".txt", ".tsv")
ARCHIVE_KEYWORDS = ("dna", "genome", "genetic", "genotype", "raw", "myheritage")
GZIP_MAGIC = b"\x1f\x8b"
_LINE_RE = re.compile(r"\r?\n")
_GT_SPLIT_RE = re.compile(r"[/|]")


@dataclass
class DelimiterScore:
    delimiter: str
    modal_columns: int
    agreement: int


@dataclass
class ColumnMapping:
    rs_id: int | None = None
    chromosome: int | None = None
    position: int | None = None
    genotype: int | None = None
    allele2: int | None = None

    def as_dict(self) -> dict[str, int | None]:
        columns = {
            "rs_id": self.rs_id,
            "chromosome": self.chromosome,
            "position": self.position,
            "genotype": self.genotype,
        }
        if self.allele2 is not None:
            columns["allele2"] = self.allele2
        return columns


@dataclass
class DetectionResult:
    records: list[GenotypeRecord]
    errors: int
    delimiter: str
    columns: ColumnMapping
    header_line: int | None = None
    lines_seen: int = 0
    source_format: str = "delimited"

    def report(self) -> ParseReport:
        return ParseReport(
            lines_seen=self.lines_seen,
            records=len(self.records),
            errors=self.errors,
            delimiter=self.delimiter,
            columns=self.columns.as_dict(),
            header_line=self.header_line,
            source_format=self.source_format,
        )


def _clean_field(value: str) -> str:
    return value.strip().strip('"').strip("'").strip()


def split_fields(line: str, delimiter: str) -> list[str]:
    if delimiter == " ":
        parts = re.split(r" +", line.strip())
    else:
        parts = line.split(delimiter)
    return [_clean_field(part) for part in parts]


def score_delimiters(sample: list[str]) -> list[DelimiterScore]:
    scores: list[DelimiterScore] = []
    for delimiter in DELIMITERS:
        counts = Counter(len(split_fields(line, delimiter)) for line in sample)
        if not counts:
            scores.append(DelimiterScore(delimiter, 0, 0))
            continue
        modal_columns, agreement = counts.most_common(1)[0]
        scores.append(DelimiterScore(delimiter, modal_columns, agreement))
    return scores


def choose_delimiter(scores: list[DelimiterScore]) -> str:
    best: DelimiterScore | None = None
    for score in scores:
        if score.modal_columns < 3:
            continue
        if best is None or score.agreement > best.agreement:
            best = score
    return best.delimiter if best else "\t"


def detect_delimiter(sample: list[str]) -> str:
    return choose_delimiter(score_delimiters(sample))


def _match_header(fields: list[str]) -> ColumnMapping | None:
    lowered = [value.lower() for value in fields]
    mapping = ColumnMapping()
    taken: set[int] = set()
    for role, aliases in HEADER_ALIASES.items():
        for index, value in enumerate(lowered):
            if index not in taken and value in aliases:
                setattr(mapping, role, index)
                taken.add(index)
                break
    if mapping.genotype is None and "allele1" in lowered and "allele2" in lowered:
        mapping.genotype = lowered.index("allele1")
        mapping.allele2 = lowered.index("allele2")

    if mapping.rs_id is None:
        return None
    if mapping.genotype is not None:
        return mapping
    if mapping.chromosome is not None and mapping.position is not None:
        return mapping
    return None


def find_header(sample: list[str], delimiter: str) -> tuple[int, ColumnMapping] | None:
    for index, line in enumerate(sample):
        mapping = _match_header(split_fields(line, delimiter))
        if mapping is not None:
            return index, mapping
    return None


def infer_columns(sample: list[str], delimiter: str) -> ColumnMapping:
    counts = {role: [0] * HEURISTIC_COLUMNS for role in ROLE_PATTERNS}
    for line in sample[:HEURISTIC_LINES]:
        for column, value in enumerate(split_fields(line, delimiter)[:HEURISTIC_COLUMNS]):
            for role, pattern in ROLE_PATTERNS.items():
                if pattern.match(value):
                    counts[role][column] += 1

    assigned: dict[str, int] = {}
    for role in ROLE_ORDER:
        best_column = None
        best_count = MIN_HEURISTIC_MATCHES
        for column, count in enumerate(counts[role]):
            if column in assigned.values():
                continue
            if count > best_count:
                best_column, best_count = column, count
        if best_column is not None:
            assigned[role] = best_column

    if not assigned:
        return ColumnMapping(**DEFAULT_COLUMNS)
    for role in ROLE_ORDER:
        if role not in assigned and DEFAULT_COLUMNS[role] not in assigned.values():
            assigned[role] = DEFAULT_COLUMNS[role]
    return ColumnMapping(**assigned)


def _field(fields: list[str], index: int | None) -> str:
    if index is None or index >= len(fields):
        return ""
    return fields[index]


def _ancestry_allele(value: str) -> str:
    return "-" if value in {"0", ""} else value


def build_record(fields: list[str], mapping: ColumnMapping) -> GenotypeRecord | None:
    rs_id = _field(fields, mapping.rs_id)
    chrom_raw = _field(fields, mapping.chromosome)
    pos_raw = _field(fields, mapping.position)
    genotype = _field(fields, mapping.genotype)
    if mapping.allele2 is not None:
        allele2 = _field(fields, mapping.allele2)
        if genotype or allele2:
            genotype = _ancestry_allele(genotype) + _ancestry_allele(allele2)
    elif not genotype and mapping.genotype is not None:
        genotype = _field(fields, mapping.genotype + 1)

    position = int(pos_raw) if pos_raw.isdigit() and int(pos_raw) > 0 else None
    try:
        return GenotypeRecord(
            rs_id=rs_id or None,
            chromosome=normalize_chrom(chrom_raw) if chrom_raw else None,
            position=position,
            genotype=genotype.upper(),
        )
    except ValidationError:
        return None


def detect(
    text: str,
    *,
    chunk_size: int = 1000,
    on_progress: Callable[[int, int], None] | None = None,
    cancel_check: Callable[[], bool] | None = None,
) -> DetectionResult:
    lines = _LINE_RE.split(text)
    data_lines = [line for line in lines if line.strip() and not line.lstrip().startswith("#")]
    sample = data_lines[:SAMPLE_LINES]

    delimiter = detect_delimiter(sample)
    header = find_header(sample, delimiter)
    if header is not None:
        header_index, mapping = header
        body = data_lines[header_index + 1 :]
    else:
        header_index = None
        mapping = infer_columns(sample, delimiter)
        body = data_lines
    logging.info(
        "Genotype layout: delimiter=%r header=%s columns=%s",
        delimiter,
        "yes" if header_index is not None else "no",
        mapping.as_dict(),
    )

    records: list[GenotypeRecord] = []
    errors = 0
    total = len(body)
    for start in range(0, total, chunk_size):
        if cancel_check and cancel_check():
            raise ImportCancelled("Genotype parsing cancelled.")
        for line in body[start : start + chunk_size]:
            record = build_record(split_fields(line, delimiter), mapping)
            if record is None:
                errors += 1
                continue
            records.append(record)
        if on_progress:
            on_progress(min(start + chunk_size, total), total)

    if not records:
        raise NoValidRecords(delimiter=delimiter, columns=mapping.as_dict(), errors=errors)
    if errors:
        logging.info("Skipped %s genotype lines that did not form a valid record", errors)
    return DetectionResult(
        records=records,
        errors=errors,
        delimiter=delimiter,
        columns=mapping,
        header_line=header_index,
        lines_seen=len(lines),
    )


def is_vcf_text(text: str) -> bool:
    return text.lstrip("\ufeff").startswith("##fileformat=VCF")


def _genotype_from_gt(record: vcf.VcfRecord, gt: str | None) -> str | None:
    if not gt or gt == ".":
        return None
    alleles = [record.ref] + record.alt_alleles
    bases: list[str] = []
    for call in _GT_SPLIT_RE.split(gt):
        if call == ".":
            bases.append("-")
            continue
        if not call.isdigit() or int(call) >= len(alleles):
            return None
        bases.append(alleles[int(call)])
    return "".join(bases)


def parse_vcf_genotypes(
    text: str,
    *,
    on_progress: Callable[[int, int], None] | None = None,
    cancel_check: Callable[[], bool] | None = None,
    chunk_size: int = 1000,
) -> DetectionResult:
    lines = _LINE_RE.split(text)
    header = vcf.parse_header(lines)
    sample_name = header.samples[0] if header.samples else None
    records: list[GenotypeRecord] = []
    errors = 0
    total = len(lines)

    for index, line in enumerate(lines, start=1):
        if cancel_check and index % chunk_size == 0 and cancel_check():
            raise ImportCancelled("Genotype parsing cancelled.")
        if on_progress and index % chunk_size == 0:
            on_progress(index, total)
        if not line.strip() or line.startswith("#"):
            continue
        parsed = vcf.parse_record(line, header.samples)
        if parsed is None or sample_name is None or not parsed.samples:
            errors += 1
            continue
        gt = parsed.samples.get(sample_name, {}).get("GT")
        genotype = _genotype_from_gt(parsed, gt if isinstance(gt, str) else None)
        rs_id = parsed.id if parsed.id and parsed.id.lower().startswith("rs") else None
        try:
            records.append(
                GenotypeRecord(
                    rs_id=rs_id,
                    chromosome=normalize_chrom(parsed.chrom),
                    position=parsed.pos if parsed.pos > 0 else None,
                    genotype=(genotype or "").upper(),
                )
            )
        except ValidationError:
            errors += 1
    if on_progress:
        on_progress(total, total)

    columns = ColumnMapping(rs_id=2, chromosome=0, position=1, genotype=9)
    if not records:
        raise NoValidRecords(delimiter="\t", columns=columns.as_dict(), errors=errors)
    return DetectionResult(
        records=records,
        errors=errors,
        delimiter="\t",
        columns=columns,
        header_line=None,
        lines_seen=total,
        source_format="vcf",
    )


def parse_genotype_text(
    text: str,
    *,
    chunk_size: int = 1000,
    on_progress: Callable[[int, int], None] | None = None,
    cancel_check: Callable[[], bool] | None = None,
) -> DetectionResult:
    if is_vcf_text(text):
        return parse_vcf_genotypes(text, on_progress=on_progress, cancel_check=cancel_check, chunk_size=chunk_size)
    return detect(text, chunk_size=chunk_size, on_progress=on_progress, cancel_check=cancel_check)


def select_archive_member(names: list[str]) -> str | None:
    candidates = [
        name for name in names if not name.endswith("/") and not name.startswith("__MACOSX/")
    ]
    for extension in ARCHIVE_EXTENSIONS:
        for keyword in ARCHIVE_KEYWORDS:
            for name in candidates:
                lower = name.lower()
                if lower.endswith(extension) and keyword in lower:
                    return name
    for name in candidates:
        if name.lower().endswith(ARCHIVE_EXTENSIONS):
            return name
    return candidates[0] if candidates else None


def _read_zip_member(path: Path, member: str | None) -> bytes:
    with zipfile.ZipFile(path) as zip_file:
        names = [name for name in zip_file.namelist() if not name.endswith("/")]
        if member is None:
            member = select_archive_member(names)
        if member is None:
            raise ValueError("Zip file does not contain a raw data export.")
        if member not in names:
            raise ValueError(f"Zip file has no member named {member}.")
        logging.info("Reading %s from %s", member, path.name)
        return zip_file.read(member)


def read_genotype_text(path: Path, member: str | None = None) -> str:
    with path.open("rb") as handle:
        magic = handle.read(4)
    try:
        if magic.startswith(GZIP_MAGIC):
            with gzip.open(path, "rb") as handle:
                data = handle.read()
        elif zipfile.is_zipfile(path):
            data = _read_zip_member(path, member)
        else:
            data = path.read_bytes()
        if data.startswith(GZIP_MAGIC):
            data = gzip.decompress(data)
    except (EOFError, gzip.BadGzipFile, zipfile.BadZipFile, zlib.error) as exc:
        raise FormatDetectionFailure(f"{path.name} could not be decompressed: {exc}") from exc
    return data.decode("utf-8", errors="replace").lstrip("\ufeff")
