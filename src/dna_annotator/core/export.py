from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, Sequence

from dna_annotator.core.models import AnnotatedVariant, ClinicalSignificance
from dna_annotator.core.utils import vcf_file_date
from dna_annotator.core.vcf import (
    FIXED_COLUMNS,
    VcfRecord,
    format_header_structure,
    is_valid_contig_name,
    is_valid_info_format_key,
    serialize_record,
    validate_record,
)

VCF_VERSION = "VCFv4.3"
GRCH37_CONTIG_LENGTHS = {
    "1": 249250621,
    "2": 243199373,
    "3": 198022430,
    "4": 191154276,
    "5": 180915260,
    "6": 171115067,
    "7": 159138663,
    "8": 146364022,
    "9": 141213431,
    "10": 135534747,
    "11": 135006516,
    "12": 133851895,
    "13": 115169878,
    "14": 107349540,
    "15": 102531392,
    "16": 90354753,
    "17": 81195210,
    "18": 78077248,
    "19": 59128983,
    "20": 63025520,
    "21": 48129895,
    "22": 51304566,
    "X": 155270560,
    "Y": 59373566,
    "MT": 16569,
}
ANNOTATION_INFO_FIELDS = [
    {"ID": "GENE", "Number": "1", "Type": "String", "Description": "Gene symbol reported by ClinVar"},
    {"ID": "CLNSIG", "Number": "1", "Type": "String", "Description": "Normalized ClinVar clinical significance"},
    {"ID": "CLNDN", "Number": ".", "Type": "String", "Description": "Condition associated with the variant"},
]
GENOTYPE_FORMAT_FIELDS = [
    {"ID": "GT", "Number": "1", "Type": "String", "Description": "Genotype"},
]


def build_header(
    *,
    source: str,
    contigs: Iterable[dict] = (),
    info_fields: Iterable[dict] = (),
    format_fields: Iterable[dict] = (),
    samples: Sequence[str] = (),
    file_date: date | None = None,
) -> str:
    lines = [
        f"##fileformat={VCF_VERSION}",
        f"##fileDate={vcf_file_date(file_date)}",
        f"##source={source}",
    ]
    for contig in contigs:
        if not is_valid_contig_name(str(contig.get("ID", ""))):
            logging.warning("Skipping invalid contig name in VCF header: %r", contig.get("ID"))
            continue
        lines.append("##contig=" + format_header_structure(contig, quoted=("species",)))
    for kind, fields in (("INFO", info_fields), ("FORMAT", format_fields)):
        for definition in fields:
            if not is_valid_info_format_key(str(definition.get("ID", ""))):
                logging.warning("Skipping invalid %s ID in VCF header: %r", kind, definition.get("ID"))
                continue
            lines.append(f"##{kind}=" + format_header_structure(definition))

    columns = list(FIXED_COLUMNS)
    if samples:
        columns.append("FORMAT")
        columns.extend(samples)
    lines.append("#" + "\t".join(columns))
    return "\n".join(lines)


def genotype_to_gt(genotype: str, ref: str, alt: str | None) -> str:
    alleles = [ref.upper()] + [allele.upper() for allele in (alt or "").split(",") if allele]
    calls = []
    for base in genotype.upper():
        if base in alleles:
            calls.append(str(alleles.index(base)))
        else:
            calls.append(".")
    if not calls:
        return "./."
    return "/".join(calls)


def annotated_variant_to_record(variant: AnnotatedVariant, sample_name: str | None = None) -> VcfRecord | None:
    if not variant.chromosome or not variant.position:
        return None
    ref = variant.ref or "N"
    info: dict = {}
    if variant.gene:
        info["GENE"] = variant.gene
    if variant.clinical_significance is not ClinicalSignificance.UNKNOWN:
        info["CLNSIG"] = variant.clinical_significance.value
    if variant.condition:
        info["CLNDN"] = variant.condition
    record = VcfRecord(
        chrom=variant.chromosome,
        pos=variant.position,
        ref=ref,
        id=variant.rs_id,
        alt=variant.alt,
        info=info,
    )
    if sample_name:
        record.samples = {sample_name: {"GT": genotype_to_gt(variant.genotype, ref, variant.alt)}}
    return record


def export_annotated_vcf(
    variants: Iterable[AnnotatedVariant],
    *,
    sample_name: str,
    source: str,
    file_date: date | None = None,
) -> str:
    records: list[VcfRecord] = []
    skipped = 0
    for variant in variants:
        record = annotated_variant_to_record(variant, sample_name)
        if record is None:
            skipped += 1
            continue
        result = validate_record(record)
        if not result.is_valid:
            logging.warning("Exporting non-conformant record %s:%s: %s", record.chrom, record.pos, "; ".join(result.errors))
        records.append(record)
    if skipped:
        logging.info("VCF export skipped %s variants without a chromosome and position", skipped)

    used_contigs = dict.fromkeys(record.chrom for record in records)
    contigs = [
        {"ID": name, "length": GRCH37_CONTIG_LENGTHS.get(name), "assembly": "GRCh37"}
        for name in used_contigs
    ]
    header = build_header(
        source=source,
        contigs=contigs,
        info_fields=ANNOTATION_INFO_FIELDS,
        format_fields=GENOTYPE_FORMAT_FIELDS,
        samples=[sample_name],
        file_date=file_date,
    )
    body = [serialize_record(record) for record in records]
    return "\n".join([header, *body]) + "\n"
