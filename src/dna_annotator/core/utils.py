from __future__ import annotations

import uuid
from datetime import date, datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def safe_uuid() -> str:
    return str(uuid.uuid4())


def vcf_file_date(day: date | None = None) -> str:
    day = day or datetime.now(timezone.utc).date()
    return day.strftime("%Y%m%d")


def strip_chr_prefix(raw: str) -> str:
    value = raw.strip()
    if value[:3].lower() == "chr":
        return value[3:]
    return value


def normalize_chrom(raw: str) -> str:
    value = strip_chr_prefix(raw).upper()
    if value in {"23", "X"}:
        return "X"
    if value in {"24", "Y"}:
        return "Y"
    if value in {"25", "MT", "M"}:
        return "MT"
    return value


def toggle_chr_prefix(chrom: str) -> str:
    if chrom[:3].lower() == "chr":
        return chrom[3:]
    return f"chr{chrom}"


def position_key(chrom: str, pos: int) -> str:
    return f"{chrom}:{pos}"
