from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from pathlib import Path
from typing import Callable

from dna_annotator.core.annotator import AnnotationSession, ProgressCallback
from dna_annotator.core.loader import ReferenceDataLoader
from dna_annotator.core.models import AnnotatedVariant, AnnotationSummary, ClinicalSignificance
from dna_annotator.core.parser import parse_genotype_text, read_genotype_text
from dna_annotator.core.settings import AnnotatorSettings
from dna_annotator.core.utils import safe_uuid, utc_now_iso


def _is_match(variant: AnnotatedVariant) -> bool:
    return (
        variant.gene is not None
        or variant.clinvar_id is not None
        or variant.clinical_significance is not ClinicalSignificance.UNKNOWN
    )


def format_error(exc: Exception) -> str:
    message = str(exc).strip()
    if not message:
        message = exc.__class__.__name__
    return message[:500]


async def annotate_genotype_file(
    *,
    file_path: Path,
    settings: AnnotatorSettings,
    clinvar_dir: Path | None = None,
    zip_member: str | None = None,
    loader: ReferenceDataLoader | None = None,
    on_stage: Callable[[str], None] | None = None,
    on_progress: ProgressCallback | None = None,
    cancel_check: Callable[[], bool] | None = None,
) -> AnnotationSummary:
    run_id = safe_uuid()
    annotated_at = utc_now_iso()

    if on_stage:
        on_stage("Reading genotype file...")
    read_start = time.monotonic()
    text = await asyncio.to_thread(read_genotype_text, file_path, zip_member)

    if on_stage:
        on_stage("Detecting file layout...")
    detection = await asyncio.to_thread(
        parse_genotype_text,
        text,
        chunk_size=settings.parse_chunk_size,
        cancel_check=cancel_check,
    )
    del text
    logging.info(
        "Parsed %s genotype records in %.2fs (%s lines skipped)",
        len(detection.records),
        time.monotonic() - read_start,
        detection.errors,
    )

    async with AnnotationSession(settings, clinvar_dir=clinvar_dir, loader=loader) as session:
        if on_stage:
            on_stage("Loading ClinVar reference data...")
        load_start = time.monotonic()
        index = await session.load_reference()
        reference_source = index.source
        logging.info("Loaded ClinVar %s in %.2fs", reference_source, time.monotonic() - load_start)

        if on_stage:
            on_stage("Annotating variants...")
        annotate_start = time.monotonic()
        variants = await session.annotate(detection.records, on_progress=on_progress, cancel_check=cancel_check)
        logging.info("Annotated %s variants in %.2fs", len(variants), time.monotonic() - annotate_start)

    counts = Counter(variant.clinical_significance.value for variant in variants)
    matched = sum(1 for variant in variants if _is_match(variant))
    if on_stage:
        on_stage("Done.")
    return AnnotationSummary(
        run_id=run_id,
        source=file_path.name,
        annotated_at=annotated_at,
        reference_source=reference_source,
        parse_report=detection.report(),
        matched=matched,
        significance_counts=dict(counts),
        variants=variants,
    )
