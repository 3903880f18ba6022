from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dna_annotator.constants import APP_NAME, LOG_FILENAME, SOURCE_NAME
from dna_annotator.core.clinvar import download_instructions
from dna_annotator.core.exceptions import (
    FormatDetectionFailure,
    ImportCancelled,
    ReferenceDataUnavailable,
    ReferenceParseFailure,
)
from dna_annotator.core.export import export_annotated_vcf
from dna_annotator.core.importer import annotate_genotype_file, format_error
from dna_annotator.core.settings import default_log_dir, load_settings, resolve_clinvar_dir, save_settings


def _setup_logging(log_dir: Path) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / LOG_FILENAME
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler(sys.stderr)],
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dna-annotator",
        description=f"{APP_NAME}: annotate a raw genotype export with ClinVar clinical significance.",
    )
    parser.add_argument("input", help="Genotype export (.txt, .csv, .tsv, .vcf, optionally .zip or .gz)")
    parser.add_argument("--clinvar-dir", help="Directory holding clinvar.vcf[.gz] or variant_summary.txt[.gz]")
    parser.add_argument("--zip-member", help="Archive member to read when the input is a zip file")
    parser.add_argument("--output", help="Write results here instead of stdout")
    parser.add_argument("--format", choices=["json", "vcf"], default="json", help="Output format (default: json)")
    parser.add_argument("--sample-name", default="SAMPLE", help="Sample column name for VCF output")
    parser.add_argument("--log-dir", help="Directory for the log file")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings, first_run = load_settings()
    if first_run:
        save_settings(settings)
    if args.clinvar_dir:
        settings.clinvar_dir = args.clinvar_dir
    clinvar_dir = Path(args.clinvar_dir).expanduser().resolve() if args.clinvar_dir else resolve_clinvar_dir(settings)

    _setup_logging(Path(args.log_dir).expanduser() if args.log_dir else default_log_dir())

    input_path = Path(args.input).expanduser().resolve()
    if not input_path.exists():
        print(f"Input file not found: {input_path}", file=sys.stderr)
        return 2

    last_percent = -1

    def on_progress(processed: int, message: str, total: int) -> None:
        nonlocal last_percent
        percent = int(processed * 100 / total) if total else 100
        if percent == last_percent:
            return
        last_percent = percent
        print(f"[{percent:3d}%] {message}", file=sys.stderr)

    def on_stage(message: str) -> None:
        print(message, file=sys.stderr)

    try:
        summary = asyncio.run(
            annotate_genotype_file(
                file_path=input_path,
                settings=settings,
                clinvar_dir=clinvar_dir,
                zip_member=args.zip_member,
                on_stage=on_stage,
                on_progress=on_progress,
            )
        )
    except ReferenceDataUnavailable as exc:
        logging.error("Annotation failed: %s", format_error(exc))
        print(str(exc), file=sys.stderr)
        print(f"Download the ClinVar files into {clinvar_dir}:", file=sys.stderr)
        for line in download_instructions(exc.missing_files, clinvar_dir):
            print(f"  {line}", file=sys.stderr)
        return 1
    except (FormatDetectionFailure, ReferenceParseFailure, ImportCancelled, ValueError) as exc:
        logging.error("Annotation failed: %s", format_error(exc))
        print(format_error(exc), file=sys.stderr)
        return 1

    if args.format == "vcf":
        output = export_annotated_vcf(summary.variants, sample_name=args.sample_name, source=SOURCE_NAME)
    else:
        output = summary.model_dump_json(indent=2)

    if args.output:
        output_path = Path(args.output).expanduser().resolve()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(output)
        print(f"Wrote {len(summary.variants)} annotated variants to {output_path}", file=sys.stderr)
    else:
        sys.stdout.write(output)
        if not output.endswith("\n"):
            sys.stdout.write("\n")

    print(
        f"Records: {summary.parse_report.records} (skipped {summary.parse_report.errors})\n"
        f"ClinVar source: {summary.reference_source}\n"
        f"Matched: {summary.matched}",
        file=sys.stderr,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
