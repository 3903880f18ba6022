from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Mapping, Sequence

from dna_annotator.core.exceptions import IndexQueryFailure
from dna_annotator.core.models import ClinVarEntry, GeneCondition
from dna_annotator.core.utils import normalize_chrom

if TYPE_CHECKING:
    from dna_annotator.core.worker import WorkerClient

GeneConditionTable = Mapping[str, Sequence[GeneCondition]]


class VariantIndex(ABC):
    """Read-only lookup of ClinVar entries for one annotation session."""

    source = "unknown"

    @property
    def gene_conditions(self) -> GeneConditionTable:
        return {}

    @abstractmethod
    async def lookup_by_rsid(self, rs_id: str) -> list[ClinVarEntry]:
        raise NotImplementedError

    @abstractmethod
    async def lookup_by_position(self, chromosome: str, position: int) -> list[ClinVarEntry]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryIndex(VariantIndex):
    def __init__(self, *, source: str = "tab-delimited") -> None:
        self.source = source
        self._by_rsid: dict[str, list[ClinVarEntry]] = {}
        self._by_position: dict[tuple[str, int], list[ClinVarEntry]] = {}
        self._gene_conditions: dict[str, list[GeneCondition]] = {}
        self._count = 0

    def __len__(self) -> int:
        return self._count

    @property
    def gene_conditions(self) -> GeneConditionTable:
        return self._gene_conditions

    def add(self, entry: ClinVarEntry) -> None:
        if entry.rs_id:
            self._by_rsid.setdefault(entry.rs_id.lower(), []).append(entry)
        if entry.chromosome and entry.position:
            key = (normalize_chrom(entry.chromosome), entry.position)
            self._by_position.setdefault(key, []).append(entry)
        self._count += 1

    def add_gene_condition(self, gene: str, condition: GeneCondition) -> None:
        known = self._gene_conditions.setdefault(gene, [])
        if condition not in known:
            known.append(condition)

    async def lookup_by_rsid(self, rs_id: str) -> list[ClinVarEntry]:
        return list(self._by_rsid.get(rs_id.lower(), []))

    async def lookup_by_position(self, chromosome: str, position: int) -> list[ClinVarEntry]:
        return list(self._by_position.get((normalize_chrom(chromosome), position), []))

    async def close(self) -> None:
        self._by_rsid.clear()
        self._by_position.clear()
        self._gene_conditions.clear()
        self._count = 0


def position_candidates(position: int) -> list[int]:
    candidates = [position]
    if position > 1:
        candidates.append(position - 1)
    candidates.append(position + 1)
    return candidates


class WorkerBackedIndex(VariantIndex):
    def __init__(self, client: "WorkerClient", *, source: str) -> None:
        self.source = source
        self._client = client

    @property
    def implementation(self) -> str | None:
        return self._client.implementation

    async def lookup_by_rsid(self, rs_id: str) -> list[ClinVarEntry]:
        return []

    async def lookup_by_position(self, chromosome: str, position: int) -> list[ClinVarEntry]:
        for candidate in position_candidates(position):
            try:
                return await self._client.query(chromosome, candidate)
            except IndexQueryFailure as exc:
                logging.debug("Query %s:%s failed, trying next position: %s", chromosome, candidate, exc)
        return []

    async def close(self) -> None:
        await self._client.close()
