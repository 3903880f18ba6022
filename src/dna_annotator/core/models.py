from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ClinicalSignificance(str, Enum):
    PATHOGENIC = "pathogenic"
    LIKELY_PATHOGENIC = "likely_pathogenic"
    UNCERTAIN_SIGNIFICANCE = "uncertain_significance"
    LIKELY_BENIGN = "likely_benign"
    BENIGN = "benign"
    UNKNOWN = "unknown"


class GenotypeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    rs_id: str | None = None
    chromosome: str | None = None
    position: int | None = Field(default=None, ge=1)
    genotype: str

    @model_validator(mode="after")
    def _check_locator(self) -> "GenotypeRecord":
        if not self.genotype:
            raise ValueError("genotype must not be empty")
        if not self.rs_id and not (self.chromosome and self.position):
            raise ValueError("record needs an rsID or a chromosome and position")
        return self


class ClinVarEntry(BaseModel):
    id: str | None = None
    rs_id: str | None = None
    ref: str | None = None
    alt: str | None = None
    gene_symbol: str | None = None
    clinical_significance: ClinicalSignificance = ClinicalSignificance.UNKNOWN
    condition: str | None = None
    chromosome: str | None = None
    position: int | None = None


class GeneCondition(BaseModel):
    gene_id: str | None = None
    condition: str


class AnnotatedVariant(BaseModel):
    rs_id: str | None = None
    chromosome: str | None = None
    position: int | None = None
    genotype: str
    gene: str | None = None
    clinical_significance: ClinicalSignificance = ClinicalSignificance.UNKNOWN
    condition: str | None = None
    associated_genes: list[GeneCondition] | None = None
    ref: str | None = None
    alt: str | None = None
    clinvar_id: str | None = None

    @classmethod
    def unmatched(cls, record: GenotypeRecord) -> "AnnotatedVariant":
        return cls(**record.model_dump())


class ParseReport(BaseModel):
    lines_seen: int
    records: int
    errors: int
    delimiter: str
    columns: dict[str, int | None]
    header_line: int | None = None
    source_format: str = "delimited"


class AnnotationSummary(BaseModel):
    run_id: str
    source: str
    annotated_at: str
    reference_source: str
    parse_report: ParseReport
    matched: int
    significance_counts: dict[str, int] = Field(default_factory=dict)
    variants: list[AnnotatedVariant] = Field(default_factory=list)


class WorkerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    message_id: str = Field(alias="messageId")
    file_url: str | None = Field(default=None, alias="fileUrl")
    index_url: str | None = Field(default=None, alias="indexUrl")
    params: dict[str, Any] | None = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class WorkerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    message_id: str | None = Field(default=None, alias="messageId")
    results: list[dict] | None = None
    error: str | None = None
    implementation: str | None = None
    variant_count: int | None = Field(default=None, alias="variantCount")
    status: str | None = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
