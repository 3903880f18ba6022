from __future__ import annotations

import asyncio
import gzip
import logging
import multiprocessing
import threading
from pathlib import Path
from typing import Any, Callable

import pysam
from pydantic import ValidationError

from dna_annotator.core.clinvar import entry_from_record
from dna_annotator.core.exceptions import IndexQueryFailure, WorkerInitTimeout, WorkerTerminated
from dna_annotator.core.models import ClinVarEntry, WorkerRequest, WorkerResponse
from dna_annotator.core.utils import safe_uuid, toggle_chr_prefix
from dna_annotator.core.vcf import parse_record


def _open_vcf_text(path: Path):
    if path.suffix.lower() in {".gz", ".bgz"}:
        return gzip.open(path, "rt", encoding="utf-8", errors="replace")
    return path.open("r", encoding="utf-8", errors="replace")


class QueryWorkerState:
    """Reference data held by the query worker and the handlers for each message type.

    ``handle`` never raises: any failure becomes an ``error`` envelope so the
    caller can move on to its next candidate position.
    """

    def __init__(self, *, compressed_window: int = 10, uncompressed_window: int = 25) -> None:
        self.compressed_window = compressed_window
        self.uncompressed_window = uncompressed_window
        self.window = compressed_window
        self._tabix: pysam.TabixFile | None = None
        self._positions: dict[str, dict[int, list[str]]] = {}
        self._sample_names: list[str] = []
        self._handlers: dict[str, Callable[[dict], dict[str, Any]]] = {
            "loadVCF": self._load_vcf,
            "loadUncompressedVCF": self._load_uncompressed_vcf,
            "query": self._query,
            "cleanup": self._cleanup,
            "getImplementation": self._get_implementation,
        }

    @property
    def implementation(self) -> str:
        return "tabix" if self._tabix is not None else "simple"

    @property
    def loaded(self) -> bool:
        return self._tabix is not None or bool(self._positions)

    def handle(self, message: dict) -> dict:
        message_id = message.get("messageId")
        kind = message.get("type")
        handler = self._handlers.get(kind)
        if handler is None:
            return WorkerResponse(type="error", messageId=message_id, error=f"Unknown message type: {kind}").to_wire()
        try:
            payload = handler(message)
        except Exception as exc:
            logging.warning("Query worker %s failed: %s", kind, exc)
            error = str(exc).strip() or exc.__class__.__name__
            return WorkerResponse(type="error", messageId=message_id, error=error).to_wire()
        return WorkerResponse(type="result", messageId=message_id, **payload).to_wire()

    def _scan(self, path: Path) -> int:
        positions: dict[str, dict[int, list[str]]] = {}
        count = 0
        with _open_vcf_text(path) as handle:
            for line in handle:
                if line.startswith("#"):
                    if line.startswith("#CHROM"):
                        self._sample_names = line.rstrip("\r\n")[1:].split("\t")[9:]
                    continue
                parts = line.split("\t", 2)
                if len(parts) < 3:
                    continue
                try:
                    pos = int(parts[1])
                except ValueError:
                    continue
                positions.setdefault(parts[0], {}).setdefault(pos, []).append(line.rstrip("\r\n"))
                count += 1
        self._positions = positions
        return count

    def _load_vcf(self, message: dict) -> dict[str, Any]:
        self._cleanup(message)
        file_path = Path(message["fileUrl"])
        index_path = message.get("indexUrl")
        self.window = self.compressed_window
        try:
            self._tabix = pysam.TabixFile(str(file_path), index=index_path)
        except (OSError, ValueError) as exc:
            logging.warning("Tabix reader unavailable for %s (%s); scanning it into memory", file_path.name, exc)
            count = self._scan(file_path)
            return {"status": "loaded", "implementation": self.implementation, "variant_count": count}
        self._sample_names = []
        for line in self._tabix.header:
            if line.startswith("#CHROM"):
                self._sample_names = line[1:].split("\t")[9:]
        logging.info("Opened %s with tabix index", file_path.name)
        return {"status": "loaded", "implementation": self.implementation}

    def _load_uncompressed_vcf(self, message: dict) -> dict[str, Any]:
        self._cleanup(message)
        file_path = Path(message["fileUrl"])
        self.window = self.uncompressed_window
        count = self._scan(file_path)
        logging.info("Indexed %s variants from %s in memory", count, file_path.name)
        return {"status": "loaded", "implementation": self.implementation, "variant_count": count}

    def _fetch(self, chrom: str, pos: int) -> list[str]:
        if self._tabix is not None:
            if chrom not in self._tabix.contigs:
                return []
            start = max(pos - self.window - 1, 0)
            return list(self._tabix.fetch(chrom, start, pos + self.window))
        by_pos = self._positions.get(chrom)
        if not by_pos:
            return []
        lines: list[str] = []
        for candidate in range(pos - self.window, pos + self.window + 1):
            lines.extend(by_pos.get(candidate, ()))
        return lines

    def _query(self, message: dict) -> dict[str, Any]:
        if not self.loaded:
            raise RuntimeError("No reference VCF has been loaded.")
        params = message.get("params") or {}
        chrom = str(params.get("chr", "")).strip()
        if not chrom:
            raise ValueError("Query is missing a chromosome.")
        pos = int(params["pos"])

        lines = self._fetch(chrom, pos) + self._fetch(toggle_chr_prefix(chrom), pos)
        entries: list[ClinVarEntry] = []
        for line in lines:
            record = parse_record(line, self._sample_names)
            if record is not None:
                entries.append(entry_from_record(record))
        entries.sort(key=lambda entry: abs((entry.position or pos) - pos))
        return {"results": [entry.model_dump(mode="json") for entry in entries]}

    def _cleanup(self, message: dict) -> dict[str, Any]:
        self.close()
        return {"status": "cleaned"}

    def _get_implementation(self, message: dict) -> dict[str, Any]:
        return {"implementation": self.implementation}

    def close(self) -> None:
        if self._tabix is not None:
            self._tabix.close()
            self._tabix = None
        self._positions = {}
        self._sample_names = []


def serve(conn, compressed_window: int = 10, uncompressed_window: int = 25) -> None:
    state = QueryWorkerState(compressed_window=compressed_window, uncompressed_window=uncompressed_window)
    conn.send({"type": "ready", "implementation": state.implementation})
    try:
        while True:
            try:
                message = conn.recv()
            except EOFError:
                break
            conn.send(state.handle(message))
    finally:
        state.close()
        conn.close()


class WorkerClient:
    """Async handle to a query worker process.

    Requests carry a ``messageId``; a reader thread hands each response back to
    the event loop, which resolves the matching future.
    """

    def __init__(
        self,
        *,
        init_timeout: float = 30.0,
        request_timeout: float | None = 60.0,
        compressed_window: int = 10,
        uncompressed_window: int = 25,
    ) -> None:
        self.init_timeout = init_timeout
        self.request_timeout = request_timeout
        self.compressed_window = compressed_window
        self.uncompressed_window = uncompressed_window
        self.implementation: str | None = None
        self._process = None
        self._conn = None
        self._reader: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Future | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._closed = False

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.is_alive() and not self._closed

    async def start(self) -> str | None:
        self._loop = asyncio.get_running_loop()
        context = multiprocessing.get_context("spawn")
        parent_conn, child_conn = context.Pipe()
        self._process = context.Process(
            target=serve,
            args=(child_conn, self.compressed_window, self.uncompressed_window),
            name="dna-annotator-query-worker",
            daemon=True,
        )
        self._ready = self._loop.create_future()
        self._process.start()
        child_conn.close()
        self._conn = parent_conn
        self._reader = threading.Thread(target=self._read_loop, name="dna-annotator-worker-reader", daemon=True)
        self._reader.start()

        try:
            self.implementation = await asyncio.wait_for(self._ready, timeout=self.init_timeout)
        except asyncio.TimeoutError as exc:
            logging.error("Query worker did not report ready within %.0fs; terminating it", self.init_timeout)
            self._closed = True
            await asyncio.to_thread(self._terminate)
            raise WorkerInitTimeout(f"Query worker did not start within {self.init_timeout:.0f}s.") from exc
        logging.info("Query worker started (pid %s, %s)", self._process.pid, self.implementation)
        return self.implementation

    def _read_loop(self) -> None:
        conn = self._conn
        loop = self._loop
        while True:
            try:
                message = conn.recv()
            except (EOFError, OSError):
                break
            try:
                loop.call_soon_threadsafe(self._dispatch, message)
            except RuntimeError:
                return
        try:
            loop.call_soon_threadsafe(self._fail_pending, WorkerTerminated("Query worker exited."))
        except RuntimeError:
            return

    def _dispatch(self, message: dict) -> None:
        if message.get("type") == "ready":
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(message.get("implementation"))
            return
        future = self._pending.pop(message.get("messageId"), None)
        if future is None or future.done():
            logging.debug("Dropping worker response for unknown message %s", message.get("messageId"))
            return
        try:
            response = WorkerResponse.model_validate(message)
        except ValidationError as exc:
            future.set_exception(IndexQueryFailure(f"Malformed worker response: {exc}"))
            return
        if response.type == "error":
            future.set_exception(IndexQueryFailure(response.error or "Query worker request failed."))
        else:
            future.set_result(response)

    def _fail_pending(self, exc: Exception) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(exc)
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)

    async def request(self, message_type: str, *, timeout: float | None = None, **fields: Any) -> WorkerResponse:
        if self._conn is None or self._closed:
            raise WorkerTerminated("Query worker is not running.")
        request = WorkerRequest(type=message_type, messageId=safe_uuid(), **fields)
        future = self._loop.create_future()
        self._pending[request.message_id] = future
        try:
            self._conn.send(request.to_wire())
        except (OSError, ValueError) as exc:
            self._pending.pop(request.message_id, None)
            raise WorkerTerminated("Query worker pipe is closed.") from exc
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._pending.pop(request.message_id, None)
            raise IndexQueryFailure(f"{message_type} timed out after {timeout:.0f}s.") from exc

    async def load_vcf(self, file_path: Path, index_path: Path) -> WorkerResponse:
        return await self.request("loadVCF", fileUrl=str(file_path), indexUrl=str(index_path))

    async def load_uncompressed_vcf(self, file_path: Path) -> WorkerResponse:
        return await self.request("loadUncompressedVCF", fileUrl=str(file_path))

    async def query(self, chromosome: str, position: int) -> list[ClinVarEntry]:
        response = await self.request(
            "query",
            timeout=self.request_timeout,
            params={"chr": chromosome, "pos": position},
        )
        try:
            return [ClinVarEntry.model_validate(item) for item in response.results or []]
        except ValidationError as exc:
            raise IndexQueryFailure(f"Malformed query result for {chromosome}:{position}: {exc}") from exc

    async def get_implementation(self) -> str | None:
        response = await self.request("getImplementation", timeout=self.request_timeout)
        self.implementation = response.implementation
        return self.implementation

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._conn is not None and self._process is not None and self._process.is_alive():
            try:
                self._conn.send(WorkerRequest(type="cleanup", messageId=safe_uuid()).to_wire())
            except (OSError, ValueError) as exc:
                logging.debug("Could not send cleanup to query worker: %s", exc)
        self._fail_pending(WorkerTerminated("Query worker terminated."))
        await asyncio.to_thread(self._terminate)

    def _terminate(self) -> None:
        if self._process is not None:
            if self._process.is_alive():
                self._process.terminate()
            self._process.join(timeout=5)
        if self._reader is not None:
            self._reader.join(timeout=2)
        if self._conn is not None:
            self._conn.close()
            self._conn = None
