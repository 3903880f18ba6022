from __future__ import annotations


class AnnotatorError(Exception):
    """Base class for errors surfaced by the annotation engine."""


class ImportCancelled(AnnotatorError):
    pass


class FormatDetectionFailure(AnnotatorError):
    pass


class NoValidRecords(FormatDetectionFailure):
    def __init__(self, *, delimiter: str, columns: dict[str, int | None], errors: int) -> None:
        self.delimiter = delimiter
        self.columns = dict(columns)
        self.errors = errors
        shown = "TAB" if delimiter == "\t" else repr(delimiter)
        mapping = ", ".join(f"{role}={index}" for role, index in self.columns.items())
        super().__init__(
            f"No valid genotype records found (delimiter {shown}, columns {mapping}, "
            f"{errors} lines skipped)."
        )


class ReferenceDataUnavailable(AnnotatorError):
    def __init__(self, missing_files: list[str]) -> None:
        self.missing_files = list(missing_files)
        super().__init__("No ClinVar reference data found. Missing files: " + ", ".join(self.missing_files))


class ReferenceParseFailure(AnnotatorError):
    def __init__(self, format_name: str, reason: str, failures: dict[str, str] | None = None) -> None:
        self.format_name = format_name
        self.reason = reason
        self.failures = dict(failures or {})
        super().__init__(f"Could not load ClinVar {format_name}: {reason}")


class WorkerError(AnnotatorError):
    pass


class IndexQueryFailure(WorkerError):
    pass


class WorkerInitTimeout(WorkerError):
    pass


class WorkerTerminated(WorkerError):
    pass
