from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from dna_annotator.core.clinvar import REFERENCE_FORMATS, ReferenceFormat, load_variant_summary
from dna_annotator.core.exceptions import (
    ReferenceDataUnavailable,
    ReferenceParseFailure,
    WorkerError,
)
from dna_annotator.core.index import VariantIndex, WorkerBackedIndex
from dna_annotator.core.settings import AnnotatorSettings
from dna_annotator.core.worker import WorkerClient


@dataclass
class LoadOutcome:
    format_name: str
    index: VariantIndex | None = None
    missing: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def attempted(self) -> bool:
        return not self.missing


class ReferenceDataLoader:
    """Loads the first available ClinVar container in priority order.

    Every file a format needs is probed before that format is parsed. A format
    whose files exist but fail to load is logged and skipped, never retried.
    """

    def __init__(
        self,
        clinvar_dir: Path,
        settings: AnnotatorSettings,
        *,
        formats: list[ReferenceFormat] | None = None,
        worker_factory: Callable[[], WorkerClient] | None = None,
    ) -> None:
        self.clinvar_dir = clinvar_dir
        self.settings = settings
        self.formats = list(formats or REFERENCE_FORMATS)
        self.attempts: list[LoadOutcome] = []
        self._worker_factory = worker_factory or self._default_worker
        self._strategies: dict[str, Callable[[ReferenceFormat], Awaitable[VariantIndex]]] = {
            "vcf-uncompressed": self._load_uncompressed_vcf,
            "tab-delimited-uncompressed": self._load_summary,
            "vcf": self._load_indexed_vcf,
            "tab-delimited": self._load_summary,
        }

    def _default_worker(self) -> WorkerClient:
        return WorkerClient(
            init_timeout=self.settings.worker_init_timeout,
            request_timeout=self.settings.worker_request_timeout,
            compressed_window=self.settings.compressed_window,
            uncompressed_window=self.settings.uncompressed_window,
        )

    async def probe(self, reference_format: ReferenceFormat) -> list[str]:
        missing: list[str] = []
        for name in reference_format.files:
            exists = await asyncio.to_thread((self.clinvar_dir / name).is_file)
            if not exists:
                missing.append(name)
        return missing

    async def try_format(self, reference_format: ReferenceFormat) -> LoadOutcome:
        missing = await self.probe(reference_format)
        if missing:
            logging.debug("ClinVar %s not available, missing %s", reference_format.name, ", ".join(missing))
            return LoadOutcome(reference_format.name, missing=missing)
        strategy = self._strategies[reference_format.name]
        try:
            index = await strategy(reference_format)
        except (ReferenceParseFailure, WorkerError, OSError, ValueError) as exc:
            message = str(exc).strip() or exc.__class__.__name__
            logging.warning("ClinVar %s could not be loaded, trying next format: %s", reference_format.name, message)
            return LoadOutcome(reference_format.name, error=message)
        return LoadOutcome(reference_format.name, index=index)

    async def load(self) -> VariantIndex:
        self.attempts = []
        for reference_format in self.formats:
            outcome = await self.try_format(reference_format)
            self.attempts.append(outcome)
            if outcome.index is not None:
                logging.info("Using ClinVar %s from %s", reference_format.name, self.clinvar_dir)
                return outcome.index

        failures = {outcome.format_name: outcome.error for outcome in self.attempts if outcome.error}
        if failures:
            raise ReferenceParseFailure(
                "reference data",
                "every available format failed to load",
                failures,
            )
        missing: list[str] = []
        for outcome in self.attempts:
            missing.extend(name for name in outcome.missing if name not in missing)
        raise ReferenceDataUnavailable(missing)

    async def _load_summary(self, reference_format: ReferenceFormat) -> VariantIndex:
        path = self.clinvar_dir / reference_format.files[0]
        index = await asyncio.to_thread(
            load_variant_summary,
            path,
            record_cap=self.settings.summary_record_cap,
            assembly=self.settings.assembly,
            source=reference_format.name,
        )
        if len(index) == 0:
            raise ReferenceParseFailure(reference_format.name, f"{path.name} contains no usable rows")
        logging.info("Loaded %s ClinVar entries from %s", len(index), path.name)
        return index

    async def _start_worker(
        self,
        reference_format: ReferenceFormat,
        load: Callable[[WorkerClient], Awaitable[object]],
    ) -> VariantIndex:
        client = self._worker_factory()
        try:
            await client.start()
            response = await load(client)
        except (Exception, asyncio.CancelledError):
            await client.close()
            raise
        if getattr(response, "variant_count", None) == 0:
            await client.close()
            raise ReferenceParseFailure(reference_format.name, "no variant records found")
        return WorkerBackedIndex(client, source=reference_format.name)

    async def _load_uncompressed_vcf(self, reference_format: ReferenceFormat) -> VariantIndex:
        path = self.clinvar_dir / reference_format.files[0]
        return await self._start_worker(reference_format, lambda client: client.load_uncompressed_vcf(path))

    async def _load_indexed_vcf(self, reference_format: ReferenceFormat) -> VariantIndex:
        path = self.clinvar_dir / reference_format.files[0]
        index_path = self.clinvar_dir / reference_format.files[1]
        return await self._start_worker(reference_format, lambda client: client.load_vcf(path, index_path))
