from __future__ import annotations

import gzip
import io
import logging
import re
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from dna_annotator.core.exceptions import ImportCancelled, ReferenceParseFailure
from dna_annotator.core.index import InMemoryIndex
from dna_annotator.core.models import ClinicalSignificance, ClinVarEntry, GeneCondition
from dna_annotator.core.utils import normalize_chrom
from dna_annotator.core.vcf import Value, VcfRecord

CLINVAR_FTP = "https://ftp.ncbi.nlm.nih.gov/pub/clinvar"
SUMMARY_COLUMNS = [
    "AlleleID",
    "ClinicalSignificance",
    "GeneID",
    "GeneSymbol",
    "RS# (dbSNP)",
    "PhenotypeList",
    "Chromosome",
    "Start",
    "Stop",
    "ReferenceAllele",
    "AlternateAllele",
]
MISSING_VALUES = {"", "-", "na", "-1"}
UNINFORMATIVE_CONDITIONS = {"not provided", "not specified", "see cases"}

# Strongest call first; a combined value resolves to its earliest member here.
SIGNIFICANCE_PRECEDENCE = [
    ClinicalSignificance.PATHOGENIC,
    ClinicalSignificance.LIKELY_PATHOGENIC,
    ClinicalSignificance.UNCERTAIN_SIGNIFICANCE,
    ClinicalSignificance.BENIGN,
    ClinicalSignificance.LIKELY_BENIGN,
    ClinicalSignificance.UNKNOWN,
]
_COMPONENT_SPLIT_RE = re.compile(r"[/,;|]")


@dataclass(frozen=True)
class ReferenceFormat:
    name: str
    files: tuple[str, ...]
    compressed: bool


REFERENCE_FORMATS = [
    ReferenceFormat("vcf-uncompressed", ("clinvar.vcf",), False),
    ReferenceFormat("tab-delimited-uncompressed", ("variant_summary.txt",), False),
    ReferenceFormat("vcf", ("clinvar.vcf.gz", "clinvar.vcf.gz.tbi"), True),
    ReferenceFormat("tab-delimited", ("variant_summary.txt.gz",), True),
]

DOWNLOAD_URLS = {
    "variant_summary.txt.gz": f"{CLINVAR_FTP}/tab_delimited/variant_summary.txt.gz",
    "clinvar.vcf.gz": f"{CLINVAR_FTP}/vcf_GRCh37/clinvar.vcf.gz",
    "clinvar.vcf.gz.tbi": f"{CLINVAR_FTP}/vcf_GRCh37/clinvar.vcf.gz.tbi",
}
UNCOMPRESSED_SOURCES = {
    "variant_summary.txt": "variant_summary.txt.gz",
    "clinvar.vcf": "clinvar.vcf.gz",
}


def _classify_component(value: str) -> ClinicalSignificance:
    text = value.lower().replace("_", " ").strip()
    if not text:
        return ClinicalSignificance.UNKNOWN
    if "conflicting" in text:
        return ClinicalSignificance.UNCERTAIN_SIGNIFICANCE
    if "likely pathogenic" in text:
        return ClinicalSignificance.LIKELY_PATHOGENIC
    if "pathogenic" in text and "likely" not in text and "not" not in text:
        return ClinicalSignificance.PATHOGENIC
    if "uncertain" in text or "vus" in text:
        return ClinicalSignificance.UNCERTAIN_SIGNIFICANCE
    if "likely benign" in text:
        return ClinicalSignificance.LIKELY_BENIGN
    if "benign" in text and "likely" not in text:
        return ClinicalSignificance.BENIGN
    return ClinicalSignificance.UNKNOWN


def normalize_clinical_significance(value: str | None) -> ClinicalSignificance:
    """Map a free-text ClinVar significance onto the six-value enum.

    Combined values such as ``Pathogenic/Likely_pathogenic`` are split into
    their components and the strongest component wins, so the result never
    degrades a plain pathogenic call into a likely one.
    """
    if not value:
        return ClinicalSignificance.UNKNOWN
    found = {_classify_component(part) for part in _COMPONENT_SPLIT_RE.split(value)}
    for significance in SIGNIFICANCE_PRECEDENCE:
        if significance in found:
            return significance
    return ClinicalSignificance.UNKNOWN


def _info_text(value: Value, joiner: str) -> str | None:
    if value is None or value is True or value is False:
        return None
    if isinstance(value, list):
        parts = [str(item) for item in value if item]
        return joiner.join(parts) if parts else None
    return str(value) or None


def entry_from_record(record: VcfRecord) -> ClinVarEntry:
    info = record.info
    gene_info = _info_text(info.get("GENEINFO"), "|")
    condition = _info_text(info.get("CLNDN"), ",")
    rs_raw = _info_text(info.get("RS"), ",")
    rs_id = None
    if rs_raw:
        first = rs_raw.split(",", 1)[0]
        rs_id = first if first.startswith("rs") else f"rs{first}"
    return ClinVarEntry(
        id=record.id,
        rs_id=rs_id,
        ref=record.ref,
        alt=record.alt,
        gene_symbol=gene_info.split(":", 1)[0] if gene_info else None,
        clinical_significance=normalize_clinical_significance(_info_text(info.get("CLNSIG"), "/")),
        condition=condition.replace("_", " ") if condition else None,
        chromosome=normalize_chrom(record.chrom),
        position=record.pos,
    )


def _open_text(path: Path):
    if path.suffix.lower() == ".gz":
        raw = path.open("rb")
        gz = gzip.GzipFile(fileobj=raw, mode="rb")
        text = io.TextIOWrapper(gz, encoding="utf-8", errors="replace")
        text._raw_file = raw  # type: ignore[attr-defined]
        text._gzip_handle = gz  # type: ignore[attr-defined]
        return text
    return path.open("r", encoding="utf-8", errors="replace")


def _close_text(handle: io.TextIOBase) -> None:
    raw = getattr(handle, "_raw_file", None)
    gz = getattr(handle, "_gzip_handle", None)
    try:
        handle.close()
    finally:
        if gz is not None:
            gz.close()
        if raw is not None:
            raw.close()


def _field_at(parts: list[str], index: int | None) -> str | None:
    if index is None or index >= len(parts):
        return None
    value = parts[index].strip()
    if value.lower() in MISSING_VALUES:
        return None
    return value


def _split_conditions(value: str | None) -> list[str]:
    if not value:
        return []
    conditions = []
    for part in value.split("|"):
        part = part.strip()
        if part and part.lower() not in UNINFORMATIVE_CONDITIONS and part not in conditions:
            conditions.append(part)
    return conditions


def parse_variant_summary(
    lines: Iterable[str],
    *,
    record_cap: int = 10000,
    assembly: str | None = "GRCh37",
    source: str = "tab-delimited",
    cancel_check: Callable[[], bool] | None = None,
) -> InMemoryIndex:
    iterator = iter(lines)
    header: list[str] | None = None
    for line in iterator:
        if line.strip():
            header = [name.strip() for name in line.lstrip("#").rstrip("\r\n").split("\t")]
            break
    if not header:
        raise ReferenceParseFailure(source, "variant_summary has no header line")

    columns = {name: header.index(name) if name in header else None for name in SUMMARY_COLUMNS}
    missing = [name for name, index in columns.items() if index is None]
    if len(missing) == len(SUMMARY_COLUMNS):
        raise ReferenceParseFailure(source, "header does not contain any ClinVar variant_summary columns")
    if missing:
        logging.warning("variant_summary is missing columns: %s", ", ".join(missing))
    assembly_idx = header.index("Assembly") if "Assembly" in header else None

    index = InMemoryIndex(source=source)
    skipped = 0
    for line_number, line in enumerate(iterator, start=2):
        if len(index) >= record_cap:
            logging.info("variant_summary ingestion capped at %s records", record_cap)
            break
        if cancel_check and line_number % 1000 == 0 and cancel_check():
            raise ImportCancelled("ClinVar load cancelled.")
        if not line.strip():
            continue
        parts = line.rstrip("\r\n").split("\t")
        if assembly and assembly_idx is not None:
            row_assembly = _field_at(parts, assembly_idx)
            if row_assembly and not row_assembly.upper().startswith(assembly.upper()):
                continue

        allele_id = _field_at(parts, columns["AlleleID"])
        rs_raw = _field_at(parts, columns["RS# (dbSNP)"])
        rs_id = None
        if rs_raw:
            rs_id = rs_raw if rs_raw.startswith("rs") else f"rs{rs_raw}"
        if not allele_id and not rs_id:
            skipped += 1
            continue

        chrom = _field_at(parts, columns["Chromosome"])
        start = _field_at(parts, columns["Start"])
        gene = _field_at(parts, columns["GeneSymbol"])
        phenotypes = _field_at(parts, columns["PhenotypeList"])
        conditions = _split_conditions(phenotypes)
        entry = ClinVarEntry(
            id=allele_id,
            rs_id=rs_id,
            ref=_field_at(parts, columns["ReferenceAllele"]),
            alt=_field_at(parts, columns["AlternateAllele"]),
            gene_symbol=gene,
            clinical_significance=normalize_clinical_significance(_field_at(parts, columns["ClinicalSignificance"])),
            condition="; ".join(conditions) if conditions else phenotypes,
            chromosome=normalize_chrom(chrom) if chrom else None,
            position=int(start) if start and start.isdigit() else None,
        )
        index.add(entry)
        if gene:
            gene_id = _field_at(parts, columns["GeneID"])
            for condition in conditions:
                index.add_gene_condition(gene, GeneCondition(gene_id=gene_id, condition=condition))

    if skipped:
        logging.debug("variant_summary: skipped %s rows without AlleleID or rsID", skipped)
    return index


def load_variant_summary(
    path: Path,
    *,
    record_cap: int = 10000,
    assembly: str | None = "GRCh37",
    source: str = "tab-delimited",
) -> InMemoryIndex:
    handle = _open_text(path)
    try:
        return parse_variant_summary(handle, record_cap=record_cap, assembly=assembly, source=source)
    except (EOFError, gzip.BadGzipFile, zlib.error, UnicodeError) as exc:
        raise ReferenceParseFailure(source, f"{path.name} is not readable: {exc}") from exc
    finally:
        _close_text(handle)


def download_instructions(missing_files: Iterable[str], clinvar_dir: Path) -> list[str]:
    lines: list[str] = []
    for name in dict.fromkeys(missing_files):
        target = clinvar_dir / name
        if name in DOWNLOAD_URLS:
            lines.append(f"curl -L -o {target} {DOWNLOAD_URLS[name]}")
        elif name in UNCOMPRESSED_SOURCES:
            url = DOWNLOAD_URLS[UNCOMPRESSED_SOURCES[name]]
            lines.append(f"curl -L {url} | gunzip > {target}")
    return lines
