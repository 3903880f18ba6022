from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Union

Value = Union[str, list, bool, None]

RESERVED_ENCODING = {
    "%": "%25",
    ":": "%3A",
    ";": "%3B",
    "=": "%3D",
    ",": "%2C",
    "\r": "%0D",
    "\n": "%0A",
    "\t": "%09",
}
_ENCODE_TABLE = str.maketrans(RESERVED_ENCODING)
_DECODING = {code: char for char, code in RESERVED_ENCODING.items()}
_DECODE_RE = re.compile(r"%(3A|3B|3D|25|2C|0D|0A|09)", re.IGNORECASE)

_INFO_KEY_RE = re.compile(r"^([A-Za-z][0-9A-Za-z.]*|1000G)$")
_CONTIG_RE = re.compile(r"^[0-9A-Za-z!#$%&+./:;?@^_|~-][0-9A-Za-z!#$%&*+./:;=?@^_|~-]*$")
_CONTIG_FORBIDDEN_RE = re.compile(r"[\\,\"'(){}<>]")
_REF_RE = re.compile(r"^[ACGTNacgtn]+$")
_ALT_RE = re.compile(r"^([ACGTNacgtn]+|\*|\.|<[^<>]+>)$")

SYMBOLIC_TYPES = ("DEL", "INS", "DUP", "INV", "CNV", "BND")
FIXED_COLUMNS = ["CHROM", "POS", "ID", "REF", "ALT", "QUAL", "FILTER", "INFO"]
_STRUCTURED_HEADERS = {
    "contig": "contigs",
    "INFO": "infos",
    "FORMAT": "formats",
    "FILTER": "filters",
    "ALT": "alts",
}


@dataclass
class VcfRecord:
    chrom: str
    pos: int
    ref: str
    id: str | None = None
    alt: str | None = None
    qual: float | None = None
    filter: list[str] | None = None
    info: dict[str, Value] = field(default_factory=dict)
    samples: dict[str, dict[str, Value]] | None = None

    @property
    def alt_alleles(self) -> list[str]:
        if not self.alt:
            return []
        return self.alt.split(",")

    @property
    def is_valid(self) -> bool:
        return validate_record(self).is_valid


@dataclass
class VcfHeader:
    file_format: str | None = None
    meta: dict[str, list[str]] = field(default_factory=dict)
    contigs: list[dict[str, str]] = field(default_factory=list)
    infos: dict[str, dict[str, str]] = field(default_factory=dict)
    formats: dict[str, dict[str, str]] = field(default_factory=dict)
    filters: dict[str, dict[str, str]] = field(default_factory=dict)
    alts: dict[str, dict[str, str]] = field(default_factory=dict)
    samples: list[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


def encode_special_chars(value: str) -> str:
    return value.translate(_ENCODE_TABLE)


def decode_special_chars(value: str) -> str:
    return _DECODE_RE.sub(lambda match: _DECODING["%" + match.group(1).upper()], value)


def is_valid_info_format_key(key: str) -> bool:
    return bool(_INFO_KEY_RE.match(key))


def is_valid_contig_name(name: str) -> bool:
    if not name or name[0] in "*=":
        return False
    if _CONTIG_FORBIDDEN_RE.search(name):
        return False
    return bool(_CONTIG_RE.match(name))


def is_valid_alt_allele(allele: str) -> bool:
    return bool(_ALT_RE.match(allele))


def symbolic_allele_type(allele: str) -> str | None:
    """Return the reserved structural type of a symbolic ALT such as <DEL:ME:ALU>."""
    if not (allele.startswith("<") and allele.endswith(">")):
        return None
    base = allele[1:-1].split(":", 1)[0]
    if base in SYMBOLIC_TYPES:
        return base
    return None


def parse_info_field(raw: str | None) -> dict[str, Value]:
    info: dict[str, Value] = {}
    if raw is None or raw.strip() in {"", "."}:
        return info
    for item in raw.split(";"):
        if not item:
            continue
        if "=" in item:
            key, value = item.split("=", 1)
        else:
            key, value = item, None
        if not is_valid_info_format_key(key):
            logging.warning("Skipping INFO entry with invalid key %r", key)
            continue
        if value is None:
            info[key] = True
        elif "," in value:
            info[key] = [decode_special_chars(part) for part in value.split(",")]
        else:
            info[key] = decode_special_chars(value)
    return info


def serialize_info_field(info: dict[str, Value]) -> str:
    parts: list[str] = []
    for key, value in info.items():
        if value is True:
            parts.append(key)
        elif value is False or value is None:
            continue
        elif isinstance(value, list):
            joined = ",".join("." if item is None else encode_special_chars(str(item)) for item in value)
            parts.append(f"{key}={joined}")
        else:
            parts.append(f"{key}={encode_special_chars(str(value))}")
    if not parts:
        return "."
    return ";".join(parts)


def _parse_sample_value(key: str, raw: str) -> Value:
    if key == "GT":
        return raw
    if raw == ".":
        return None
    if "," in raw:
        return [None if part == "." else decode_special_chars(part) for part in raw.split(",")]
    return decode_special_chars(raw)


def _serialize_sample_value(key: str, value: Value) -> str:
    if value is None:
        return "."
    if key == "GT":
        return str(value)
    if isinstance(value, list):
        return ",".join("." if item is None else encode_special_chars(str(item)) for item in value)
    return encode_special_chars(str(value))


def _format_keys(samples: Iterable[dict[str, Value]]) -> list[str]:
    seen: dict[str, None] = {}
    for sample in samples:
        for key in sample:
            seen.setdefault(key, None)
    keys = list(seen)
    if "GT" in seen:
        keys.remove("GT")
        keys.insert(0, "GT")
    return keys


def _format_qual(qual: float | None) -> str:
    if qual is None:
        return "."
    if float(qual).is_integer():
        return str(int(qual))
    return repr(float(qual))


def parse_record(line: str, sample_names: Iterable[str] = ()) -> VcfRecord | None:
    line = line.rstrip("\r\n")
    if not line.strip() or line.startswith("#"):
        return None
    fields = line.split("\t")
    if len(fields) < 8:
        return None

    chrom, pos_raw, id_raw, ref, alt_raw, qual_raw, filter_raw, info_raw = fields[:8]
    try:
        pos = int(pos_raw)
    except ValueError:
        logging.debug("Skipping VCF line with non-numeric POS %r", pos_raw)
        return None

    qual: float | None = None
    if qual_raw != ".":
        try:
            qual = float(qual_raw)
        except ValueError:
            logging.warning("Ignoring non-numeric QUAL %r at %s:%s", qual_raw, chrom, pos)

    record = VcfRecord(
        chrom=chrom,
        pos=pos,
        ref=ref,
        id=None if id_raw == "." else id_raw,
        alt=None if alt_raw == "." else alt_raw,
        qual=qual,
        filter=None if filter_raw == "." else filter_raw.split(";"),
        info=parse_info_field(info_raw),
    )

    names = list(sample_names)
    if names and len(fields) > 9:
        format_keys = fields[8].split(":")
        samples: dict[str, dict[str, Value]] = {}
        for offset, name in enumerate(names):
            column = 9 + offset
            if column >= len(fields):
                break
            values = fields[column].split(":")
            samples[name] = {
                key: _parse_sample_value(key, values[idx] if idx < len(values) else ".")
                for idx, key in enumerate(format_keys)
            }
        record.samples = samples
    return record


def serialize_record(record: VcfRecord) -> str:
    fields = [
        record.chrom,
        str(record.pos),
        record.id or ".",
        record.ref,
        record.alt or ".",
        _format_qual(record.qual),
        ";".join(record.filter) if record.filter else ".",
        serialize_info_field(record.info),
    ]
    if record.samples:
        keys = _format_keys(record.samples.values())
        fields.append(":".join(keys))
        for sample in record.samples.values():
            fields.append(":".join(_serialize_sample_value(key, sample.get(key)) for key in keys))
    return "\t".join(fields)


def parse_header_structure(text: str) -> dict[str, str] | None:
    """Parse a ``<ID=x,Description="a, \\"b\\"">`` block into an ordered dict.

    Commas and equals signs inside double quotes are literal and a backslash
    escapes the next character. Quotes are removed from the returned values.
    """
    text = text.strip()
    if not (text.startswith("<") and text.endswith(">")):
        return None

    result: dict[str, str] = {}
    key: list[str] = []
    value: list[str] = []
    in_key = True
    in_quotes = False
    escaped = False

    def flush() -> None:
        name = "".join(key).strip()
        if name:
            result[name] = "".join(value)
        key.clear()
        value.clear()

    for char in text[1:-1]:
        if escaped:
            value.append(char)
            escaped = False
            continue
        if in_key:
            if char == "=":
                in_key = False
            elif char == ",":
                flush()
            else:
                key.append(char)
            continue
        if in_quotes and char == "\\":
            escaped = True
        elif char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            flush()
            in_key = True
        else:
            value.append(char)
    if in_quotes:
        logging.warning("Unterminated quote in VCF header structure %r", text)
    flush()
    return result


def quote_header_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_header_structure(fields: dict[str, object], quoted: Iterable[str] = ("Description", "Source", "Version")) -> str:
    quoted_keys = set(quoted)
    parts: list[str] = []
    for key, value in fields.items():
        if value is None:
            continue
        text = str(value)
        parts.append(f"{key}={quote_header_value(text) if key in quoted_keys else text}")
    return "<" + ",".join(parts) + ">"


def parse_header(lines: Iterable[str]) -> VcfHeader:
    header = VcfHeader()
    for line in lines:
        line = line.rstrip("\r\n")
        if line.startswith("##"):
            key, sep, value = line[2:].partition("=")
            if not sep:
                continue
            if key == "fileformat":
                header.file_format = value
                continue
            attribute = _STRUCTURED_HEADERS.get(key)
            if attribute is None:
                header.meta.setdefault(key, []).append(value)
                continue
            structure = parse_header_structure(value)
            if structure is None:
                logging.warning("Malformed ##%s header line skipped", key)
                continue
            if attribute == "contigs":
                header.contigs.append(structure)
            else:
                getattr(header, attribute)[structure.get("ID", "")] = structure
        elif line.startswith("#"):
            columns = line[1:].split("\t")
            if columns and columns[0] == "CHROM":
                header.samples = columns[9:]
            break
        elif line.strip():
            break
    return header


def validate_record(record: VcfRecord) -> ValidationResult:
    errors: list[str] = []
    if not record.chrom:
        errors.append("CHROM is required")
    elif not is_valid_contig_name(record.chrom):
        errors.append(f"Invalid contig name: {record.chrom}")
    if record.pos is None or record.pos < 1:
        errors.append("POS must be a positive integer")
    if not record.ref:
        errors.append("REF is required")
    elif not _REF_RE.match(record.ref):
        errors.append(f"Invalid REF allele: {record.ref}")
    for allele in record.alt_alleles:
        if not is_valid_alt_allele(allele):
            errors.append(f"Invalid ALT allele: {allele}")
    for key in record.info:
        if not is_valid_info_format_key(key):
            errors.append(f"Invalid INFO key: {key}")
    return ValidationResult(is_valid=not errors, errors=errors)


def iter_records(lines: Iterable[str]) -> Iterator[VcfRecord]:
    sample_names: list[str] = []
    for line in lines:
        if line.startswith("#"):
            if line.startswith("#CHROM"):
                sample_names = line.rstrip("\r\n")[1:].split("\t")[9:]
            continue
        record = parse_record(line, sample_names)
        if record is not None:
            yield record
