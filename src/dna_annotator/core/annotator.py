from __future__ import annotations

import logging
import math
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Sequence

from dna_annotator.core.exceptions import AnnotatorError, ImportCancelled
from dna_annotator.core.index import GeneConditionTable, VariantIndex
from dna_annotator.core.loader import ReferenceDataLoader
from dna_annotator.core.models import AnnotatedVariant, ClinVarEntry, GenotypeRecord
from dna_annotator.core.settings import AnnotatorSettings, resolve_clinvar_dir
from dna_annotator.core.utils import position_key

ProgressCallback = Callable[[int, str, int], None]


class QueryCache:
    """Insertion-ordered cache of position lookups with bulk eviction."""

    def __init__(self, high_water: int = 10000, evict_fraction: float = 0.1) -> None:
        self.high_water = high_water
        self.evict_fraction = evict_fraction
        self._entries: OrderedDict[str, list[ClinVarEntry]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        return list(self._entries)

    def get(self, key: str) -> list[ClinVarEntry] | None:
        return self._entries.get(key)

    def put(self, key: str, entries: list[ClinVarEntry]) -> None:
        if key in self._entries:
            self._entries[key] = list(entries)
            return
        self._entries[key] = list(entries)
        if len(self._entries) > self.high_water:
            self._evict()

    def _evict(self) -> None:
        count = max(1, math.ceil(len(self._entries) * self.evict_fraction))
        for _ in range(min(count, len(self._entries))):
            self._entries.popitem(last=False)
        logging.debug("Query cache evicted %s oldest entries", count)

    def clear(self) -> None:
        self._entries.clear()


def _describe(record: GenotypeRecord) -> str:
    if record.rs_id:
        return record.rs_id
    return f"{record.chromosome}:{record.position}"


def best_entry(record: GenotypeRecord, entries: Sequence[ClinVarEntry]) -> ClinVarEntry:
    rs_id = record.rs_id.lower() if record.rs_id else None
    genotype = record.genotype.upper()

    def rank(item: tuple[int, ClinVarEntry]) -> tuple[bool, bool, int, int]:
        order, entry = item
        rs_match = rs_id is not None and entry.rs_id is not None and entry.rs_id.lower() == rs_id
        alt_match = bool(entry.alt) and any(
            allele and allele.upper() in genotype for allele in (entry.alt or "").split(",")
        )
        distance = 0
        if record.position is not None and entry.position is not None:
            distance = abs(entry.position - record.position)
        return (not rs_match, not alt_match, distance, order)

    return min(enumerate(entries), key=rank)[1]


class AnnotationMatcher:
    def __init__(
        self,
        cache: QueryCache | None = None,
        *,
        batch_size: int = 100,
        gene_conditions: GeneConditionTable | None = None,
    ) -> None:
        self.cache = cache if cache is not None else QueryCache()
        self.batch_size = batch_size
        self.gene_conditions = gene_conditions

    async def annotate(
        self,
        records: Sequence[GenotypeRecord],
        index: VariantIndex,
        on_progress: ProgressCallback | None = None,
        cancel_check: Callable[[], bool] | None = None,
    ) -> list[AnnotatedVariant]:
        records = list(records)
        total = len(records)
        table = self.gene_conditions if self.gene_conditions is not None else index.gene_conditions
        annotated: list[AnnotatedVariant] = []
        for start in range(0, total, self.batch_size):
            if cancel_check and cancel_check():
                raise ImportCancelled("Annotation cancelled.")
            for record in records[start : start + self.batch_size]:
                annotated.append(await self._annotate_record(record, index, table))
            self._emit_progress(on_progress, len(annotated), total)
        return annotated

    async def _annotate_record(
        self,
        record: GenotypeRecord,
        index: VariantIndex,
        table: GeneConditionTable,
    ) -> AnnotatedVariant:
        try:
            entries = await self._lookup(record, index)
        except AnnotatorError as exc:
            logging.debug("Lookup failed for %s: %s", _describe(record), exc)
            entries = []
        if not entries:
            return AnnotatedVariant.unmatched(record)

        entry = best_entry(record, entries)
        associated = table.get(entry.gene_symbol) if entry.gene_symbol else None
        return AnnotatedVariant(
            **record.model_dump(),
            gene=entry.gene_symbol,
            clinical_significance=entry.clinical_significance,
            condition=entry.condition,
            associated_genes=list(associated) if associated else None,
            ref=entry.ref,
            alt=entry.alt,
            clinvar_id=entry.id,
        )

    async def _lookup(self, record: GenotypeRecord, index: VariantIndex) -> list[ClinVarEntry]:
        if record.rs_id:
            entries = await index.lookup_by_rsid(record.rs_id)
            if entries:
                return entries
        if record.chromosome and record.position:
            key = position_key(record.chromosome, record.position)
            cached = self.cache.get(key)
            if cached is not None:
                return cached
            entries = await index.lookup_by_position(record.chromosome, record.position)
            self.cache.put(key, entries)
            return entries
        return []

    @staticmethod
    def _emit_progress(on_progress: ProgressCallback | None, processed: int, total: int) -> None:
        if on_progress is None:
            return
        try:
            on_progress(processed, f"Annotated {processed} of {total} variants", total)
        except Exception:
            logging.exception("Progress callback raised; continuing annotation")


class AnnotationSession:
    """Owns the query cache and the reference index for one analysis run.

    Use as ``async with``; leaving the block clears the cache and closes the
    index, which shuts down any query worker behind it.
    """

    def __init__(
        self,
        settings: AnnotatorSettings,
        *,
        clinvar_dir: Path | None = None,
        loader: ReferenceDataLoader | None = None,
        index: VariantIndex | None = None,
        gene_conditions: GeneConditionTable | None = None,
    ) -> None:
        self.settings = settings
        self.cache = QueryCache(settings.cache_high_water, settings.cache_evict_fraction)
        self.matcher = AnnotationMatcher(
            self.cache,
            batch_size=settings.batch_size,
            gene_conditions=gene_conditions,
        )
        if loader is None and index is None:
            loader = ReferenceDataLoader(clinvar_dir or resolve_clinvar_dir(settings), settings)
        self.loader = loader
        self.index = index

    async def __aenter__(self) -> "AnnotationSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def load_reference(self) -> VariantIndex:
        if self.index is None:
            self.index = await self.loader.load()
        return self.index

    async def annotate(
        self,
        records: Sequence[GenotypeRecord],
        on_progress: ProgressCallback | None = None,
        cancel_check: Callable[[], bool] | None = None,
    ) -> list[AnnotatedVariant]:
        index = await self.load_reference()
        return await self.matcher.annotate(records, index, on_progress=on_progress, cancel_check=cancel_check)

    async def close(self) -> None:
        self.cache.clear()
        index, self.index = self.index, None
        if index is not None:
            await index.close()
