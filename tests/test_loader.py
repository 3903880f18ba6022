import asyncio
import gzip
import shutil
from pathlib import Path

import pytest

from dna_annotator.core.exceptions import ReferenceDataUnavailable, ReferenceParseFailure, WorkerInitTimeout
from dna_annotator.core.index import WorkerBackedIndex
from dna_annotator.core.loader import ReferenceDataLoader
from dna_annotator.core.models import ClinicalSignificance, WorkerResponse
from dna_annotator.core.settings import AnnotatorSettings

FIXTURES = Path(__file__).parent / "fixtures"


def _settings(clinvar_dir: Path) -> AnnotatorSettings:
    return AnnotatorSettings(clinvar_dir=str(clinvar_dir))


def _write_gzip(source: Path, target: Path) -> None:
    target.write_bytes(gzip.compress(source.read_bytes()))


class FakeWorker:
    def __init__(self, variant_count: int = 0, fail_start: bool = False) -> None:
        self.variant_count = variant_count
        self.fail_start = fail_start
        self.closed = False
        self.implementation = None

    async def start(self) -> str:
        if self.fail_start:
            raise WorkerInitTimeout("worker did not report ready")
        self.implementation = "simple"
        return "simple"

    async def load_uncompressed_vcf(self, path: Path) -> WorkerResponse:
        return WorkerResponse(type="result", status="loaded", variant_count=self.variant_count)

    async def load_vcf(self, path: Path, index_path: Path) -> WorkerResponse:
        return WorkerResponse(type="result", status="loaded", variant_count=self.variant_count)

    async def close(self) -> None:
        self.closed = True


def test_uncompressed_summary_preferred_over_gzip(tmp_path: Path) -> None:
    shutil.copy(FIXTURES / "variant_summary_sample.txt", tmp_path / "variant_summary.txt")
    _write_gzip(FIXTURES / "variant_summary_sample.txt", tmp_path / "variant_summary.txt.gz")

    loader = ReferenceDataLoader(tmp_path, _settings(tmp_path))
    index = asyncio.run(loader.load())
    assert index.source == "tab-delimited-uncompressed"
    assert [outcome.format_name for outcome in loader.attempts] == ["vcf-uncompressed", "tab-delimited-uncompressed"]
    assert loader.attempts[0].missing == ["clinvar.vcf"]


def test_gzip_summary_loaded(tmp_path: Path) -> None:
    _write_gzip(FIXTURES / "variant_summary_sample.txt", tmp_path / "variant_summary.txt.gz")

    index = asyncio.run(ReferenceDataLoader(tmp_path, _settings(tmp_path)).load())
    assert index.source == "tab-delimited"
    entries = asyncio.run(index.lookup_by_rsid("rs429358"))
    assert entries[0].clinical_significance is ClinicalSignificance.PATHOGENIC


def test_empty_directory_lists_every_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ReferenceDataUnavailable) as excinfo:
        asyncio.run(ReferenceDataLoader(tmp_path, _settings(tmp_path)).load())
    assert excinfo.value.missing_files == [
        "clinvar.vcf",
        "variant_summary.txt",
        "clinvar.vcf.gz",
        "clinvar.vcf.gz.tbi",
        "variant_summary.txt.gz",
    ]


def test_index_without_compressed_vcf_is_missing(tmp_path: Path) -> None:
    (tmp_path / "clinvar.vcf.gz.tbi").write_bytes(b"")
    loader = ReferenceDataLoader(tmp_path, _settings(tmp_path))
    with pytest.raises(ReferenceDataUnavailable):
        asyncio.run(loader.load())
    assert loader.attempts[2].missing == ["clinvar.vcf.gz"]


def test_broken_format_falls_through(tmp_path: Path) -> None:
    (tmp_path / "variant_summary.txt").write_text("<html>\n<body>Not Found</body>\n")
    _write_gzip(FIXTURES / "variant_summary_sample.txt", tmp_path / "variant_summary.txt.gz")

    loader = ReferenceDataLoader(tmp_path, _settings(tmp_path))
    index = asyncio.run(loader.load())
    assert index.source == "tab-delimited"
    assert loader.attempts[1].format_name == "tab-delimited-uncompressed"
    assert loader.attempts[1].error


def test_every_available_format_failing(tmp_path: Path) -> None:
    (tmp_path / "variant_summary.txt").write_text("<html>\n")
    (tmp_path / "variant_summary.txt.gz").write_bytes(b"not gzip data")

    with pytest.raises(ReferenceParseFailure) as excinfo:
        asyncio.run(ReferenceDataLoader(tmp_path, _settings(tmp_path)).load())
    assert set(excinfo.value.failures) == {"tab-delimited-uncompressed", "tab-delimited"}


def test_missing_files_are_never_parsed(tmp_path: Path) -> None:
    shutil.copy(FIXTURES / "variant_summary_sample.txt", tmp_path / "variant_summary.txt")

    class RecordingLoader(ReferenceDataLoader):
        async def _load_uncompressed_vcf(self, reference_format):
            raise AssertionError("clinvar.vcf is absent and must not be opened")

    index = asyncio.run(RecordingLoader(tmp_path, _settings(tmp_path)).load())
    assert index.source == "tab-delimited-uncompressed"


def test_empty_vcf_falls_through_and_closes_worker(tmp_path: Path) -> None:
    (tmp_path / "clinvar.vcf").write_text("##fileformat=VCFv4.1\n")
    shutil.copy(FIXTURES / "variant_summary_sample.txt", tmp_path / "variant_summary.txt")
    workers = []

    def factory() -> FakeWorker:
        worker = FakeWorker(variant_count=0)
        workers.append(worker)
        return worker

    loader = ReferenceDataLoader(tmp_path, _settings(tmp_path), worker_factory=factory)
    index = asyncio.run(loader.load())
    assert index.source == "tab-delimited-uncompressed"
    assert workers[0].closed
    assert "no variant records" in loader.attempts[0].error


def test_worker_start_failure_falls_through(tmp_path: Path) -> None:
    (tmp_path / "clinvar.vcf").write_text("##fileformat=VCFv4.1\n")
    shutil.copy(FIXTURES / "variant_summary_sample.txt", tmp_path / "variant_summary.txt")
    worker = FakeWorker(fail_start=True)

    loader = ReferenceDataLoader(tmp_path, _settings(tmp_path), worker_factory=lambda: worker)
    index = asyncio.run(loader.load())
    assert index.source == "tab-delimited-uncompressed"
    assert worker.closed


def test_uncompressed_vcf_uses_worker(tmp_path: Path) -> None:
    shutil.copy(FIXTURES / "clinvar_sample.vcf", tmp_path / "clinvar.vcf")

    async def run() -> None:
        index = await ReferenceDataLoader(tmp_path, _settings(tmp_path)).load()
        try:
            assert isinstance(index, WorkerBackedIndex)
            assert index.source == "vcf-uncompressed"
            assert index.implementation == "simple"
            entries = await index.lookup_by_position("19", 45411941)
            assert entries[0].gene_symbol == "APOE"
            assert await index.lookup_by_rsid("rs429358") == []
        finally:
            await index.close()

    asyncio.run(run())


def _corrupt_gzip() -> bytes:
    return b"\x1f\x8b\x08\x00\x00\x00\x00\x00\x00\x03" + b"\xff" * 64


def test_corrupt_deflate_stream_is_a_parse_failure(tmp_path: Path) -> None:
    (tmp_path / "variant_summary.txt.gz").write_bytes(_corrupt_gzip())

    loader = ReferenceDataLoader(tmp_path, _settings(tmp_path))
    with pytest.raises(ReferenceParseFailure) as excinfo:
        asyncio.run(loader.load())
    assert "tab-delimited" in excinfo.value.failures
    assert "not readable" in loader.attempts[-1].error
