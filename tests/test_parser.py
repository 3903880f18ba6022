import gzip
import zipfile
from pathlib import Path

import pytest

from dna_annotator.core.exceptions import FormatDetectionFailure, ImportCancelled, NoValidRecords
from dna_annotator.core.models import GenotypeRecord
from dna_annotator.core.parser import (
    choose_delimiter,
    detect,
    find_header,
    infer_columns,
    parse_genotype_text,
    read_genotype_text,
    score_delimiters,
    select_archive_member,
)

FIXTURES = Path(__file__).parent / "fixtures"


def test_detect_tab_header() -> None:
    result = detect("rsid\tchromosome\tposition\tgenotype\nrs123\t1\t10000\tAA\n")
    assert result.records == [GenotypeRecord(rs_id="rs123", chromosome="1", position=10000, genotype="AA")]
    assert result.errors == 0
    assert result.delimiter == "\t"
    assert result.header_line == 0


def test_parse_ancestry_file() -> None:
    text = (FIXTURES / "ancestry_sample.txt").read_text(encoding="utf-8")
    result = detect(text)

    assert result.delimiter == "\t"
    assert result.columns.allele2 == 4
    assert len(result.records) == 5
    assert result.errors == 1
    genotypes = {record.rs_id: record.genotype for record in result.records}
    assert genotypes["rs429358"] == "CT"
    assert genotypes["rs1801133"] == "--"
    assert result.records[0].chromosome == "2"


def test_parse_23andme_without_header_row() -> None:
    text = (FIXTURES / "twentythree_sample.txt").read_text(encoding="utf-8")
    result = detect(text)

    assert result.header_line is None
    assert result.columns.as_dict() == {"rs_id": 0, "chromosome": 1, "position": 2, "genotype": 3}
    assert len(result.records) == 10
    mito = [record for record in result.records if record.rs_id == "i4000001"][0]
    assert mito.chromosome == "MT"
    assert mito.genotype == "C"


def test_parse_myheritage_csv() -> None:
    text = (FIXTURES / "myheritage_sample.csv").read_text(encoding="utf-8")
    result = detect(text)

    assert result.delimiter == ","
    assert len(result.records) == 6
    assert result.records[3] == GenotypeRecord(rs_id="rs429358", chromosome="19", position=45411941, genotype="TC")


def test_delimiter_ties_go_to_tab() -> None:
    sample = ["a\tb\tc,d,e"] * 5
    scores = score_delimiters(sample)
    assert {score.delimiter: score.agreement for score in scores}["\t"] == 5
    assert {score.delimiter: score.agreement for score in scores}[","] == 5
    assert choose_delimiter(scores) == "\t"
    assert choose_delimiter(score_delimiters([])) == "\t"


def test_higher_agreement_delimiter_wins() -> None:
    sample = ["rs1;1;100;AA", "rs2;1;200;AG", "rs3;2;300;GG", "odd\tline\there"]
    assert choose_delimiter(score_delimiters(sample)) == ";"


def test_header_needs_rsid_and_genotype_or_coordinates() -> None:
    assert find_header(["snp,chr,bp"], ",") is not None
    assert find_header(["id,call"], ",") is not None
    assert find_header(["chromosome,position,genotype"], ",") is None


def test_infer_columns_uses_content_patterns() -> None:
    sample = [f"x{i}\t{i * 100 + 5}\tchr{i % 22 + 1}\trs{i}\tAG" for i in range(1, 12)]
    columns = infer_columns(sample, "\t")
    assert columns.rs_id == 3
    assert columns.genotype == 4
    assert columns.chromosome == 2
    assert columns.position == 1


def test_infer_columns_falls_back_to_positional() -> None:
    columns = infer_columns(["a\tb\tc\td"] * 3, "\t")
    assert columns.as_dict() == {"rs_id": 0, "chromosome": 1, "position": 2, "genotype": 3}


def test_empty_genotype_uses_next_column() -> None:
    text = "rsid\tchromosome\tposition\tgenotype\textra\nrs5\t1\t500\t\tGT\n"
    result = detect(text)
    assert result.records[0].genotype == "GT"


def test_invalid_rows_are_counted_not_fatal() -> None:
    text = "rsid,chromosome,position,genotype\nrs1,1,100,AA\n,,,\n,1,,GG\nrs2,2,200,CT\n"
    result = detect(text)
    assert [record.rs_id for record in result.records] == ["rs1", "rs2"]
    assert result.errors == 2


def test_no_valid_records_names_layout() -> None:
    with pytest.raises(NoValidRecords) as excinfo:
        detect("rsid,chromosome,position,genotype\n,,,\n")
    assert isinstance(excinfo.value, FormatDetectionFailure)
    assert excinfo.value.delimiter == ","
    assert excinfo.value.columns["genotype"] == 3
    assert excinfo.value.errors == 1


def test_progress_reported_per_chunk() -> None:
    rows = "".join(f"rs{i}\t1\t{i}\tAA\n" for i in range(1, 2501))
    calls = []
    detect("rsid\tchromosome\tposition\tgenotype\n" + rows, chunk_size=1000, on_progress=lambda done, total: calls.append((done, total)))
    assert calls == [(1000, 2500), (2000, 2500), (2500, 2500)]


def test_detect_cancelled() -> None:
    rows = "".join(f"rs{i}\t1\t{i}\tAA\n" for i in range(1, 1100))
    with pytest.raises(ImportCancelled):
        detect(rows, cancel_check=lambda: True)


def test_vcf_genotype_input() -> None:
    text = (
        "##fileformat=VCFv4.2\n"
        "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\tFORMAT\tME\n"
        "19\t45411941\trs429358\tT\tC\t.\tPASS\t.\tGT\t0/1\n"
        "19\t45412079\trs7412\tC\t.\t.\tPASS\t.\tGT\t0/0\n"
        "chr1\t11856378\t.\tG\tA\t.\tPASS\t.\tGT\t1|1\n"
    )
    result = parse_genotype_text(text)
    assert result.source_format == "vcf"
    assert [record.genotype for record in result.records] == ["TC", "CC", "AA"]
    assert result.records[2].rs_id is None
    assert result.records[2].chromosome == "1"


def test_select_archive_member() -> None:
    names = ["readme.pdf", "export/notes.txt", "export/MyHeritage_raw_dna_data.csv", "__MACOSX/._x.csv"]
    assert select_archive_member(names) == "export/MyHeritage_raw_dna_data.csv"
    assert select_archive_member(["a.pdf", "b.tsv"]) == "b.tsv"
    assert select_archive_member(["folder/", "data.bin"]) == "data.bin"
    assert select_archive_member([]) is None


def test_read_genotype_text_from_zip_and_gzip(tmp_path: Path) -> None:
    content = (FIXTURES / "ancestry_sample.txt").read_text(encoding="utf-8")

    zip_path = tmp_path / "export.zip"
    with zipfile.ZipFile(zip_path, "w") as archive:
        archive.writestr("README.pdf", "not this one")
        archive.writestr("AncestryDNA.txt", content)
    assert read_genotype_text(zip_path) == content

    gz_path = tmp_path / "genome.txt.gz"
    gz_path.write_bytes(gzip.compress(content.encode("utf-8")))
    assert read_genotype_text(gz_path) == content

    with pytest.raises(ValueError):
        read_genotype_text(zip_path, member="missing.txt")


def test_corrupt_gzip_input_is_a_detection_failure(tmp_path: Path) -> None:
    path = tmp_path / "genome.txt.gz"
    path.write_bytes(b"\x1f\x8b\x08\x00\x00\x00\x00\x00\x00\x03" + b"\xff" * 64)
    with pytest.raises(FormatDetectionFailure) as excinfo:
        read_genotype_text(path)
    assert "genome.txt.gz" in str(excinfo.value)

    truncated = tmp_path / "cut.txt.gz"
    truncated.write_bytes(gzip.compress(b"rsid\tchromosome\tposition\tgenotype\n" * 50)[:-12])
    with pytest.raises(FormatDetectionFailure):
        read_genotype_text(truncated)
