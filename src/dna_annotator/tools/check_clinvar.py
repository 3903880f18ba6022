from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from dna_annotator.core.clinvar import REFERENCE_FORMATS, ReferenceFormat, download_instructions
from dna_annotator.core.loader import ReferenceDataLoader
from dna_annotator.core.settings import load_settings, resolve_clinvar_dir


async def _probe_all(loader: ReferenceDataLoader) -> list[tuple[ReferenceFormat, list[str]]]:
    results = []
    for reference_format in REFERENCE_FORMATS:
        results.append((reference_format, await loader.probe(reference_format)))
    return results


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Report which ClinVar reference formats are available.")
    parser.add_argument("--clinvar-dir", help="Directory to check (default: configured ClinVar directory)")
    args = parser.parse_args(argv)

    settings, _ = load_settings()
    if args.clinvar_dir:
        clinvar_dir = Path(args.clinvar_dir).expanduser().resolve()
    else:
        clinvar_dir = resolve_clinvar_dir(settings)

    loader = ReferenceDataLoader(clinvar_dir, settings)
    results = asyncio.run(_probe_all(loader))

    print(f"ClinVar directory: {clinvar_dir}")
    selected = None
    for priority, (reference_format, missing) in enumerate(results, start=1):
        if missing:
            status = "missing " + ", ".join(missing)
        else:
            status = "available"
            if selected is None:
                selected = reference_format
                status += " (will be used)"
        print(f"{priority}. {reference_format.name:<28} {status}")

    if selected is not None:
        return 0

    print("No ClinVar reference data found. To fetch the smallest usable set:")
    for line in download_instructions(["variant_summary.txt.gz"], clinvar_dir):
        print(f"  {line}")
    print("Or, for coordinate lookups:")
    for line in download_instructions(["clinvar.vcf.gz", "clinvar.vcf.gz.tbi"], clinvar_dir):
        print(f"  {line}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
