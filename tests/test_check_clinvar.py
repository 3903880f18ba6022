import shutil
from pathlib import Path

from dna_annotator.constants import CLINVAR_DIR_ENV
from dna_annotator.tools import check_clinvar

FIXTURES = Path(__file__).parent / "fixtures"


def test_reports_first_available_format(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv(CLINVAR_DIR_ENV, raising=False)
    shutil.copy(FIXTURES / "variant_summary_sample.txt", tmp_path / "variant_summary.txt")
    (tmp_path / "variant_summary.txt.gz").write_bytes(b"")

    assert check_clinvar.main(["--clinvar-dir", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    lines = out.splitlines()
    assert lines[1].startswith("1. vcf-uncompressed")
    assert "missing clinvar.vcf" in lines[1]
    assert lines[2].endswith("available (will be used)")
    assert lines[4].endswith("available")


def test_env_override_and_instructions(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    empty = tmp_path / "clinvar-empty"
    empty.mkdir()
    monkeypatch.setenv(CLINVAR_DIR_ENV, str(empty))

    assert check_clinvar.main([]) == 1
    out = capsys.readouterr().out
    assert f"ClinVar directory: {empty.resolve()}" in out
    assert "variant_summary.txt.gz" in out
    assert "clinvar.vcf.gz.tbi" in out
