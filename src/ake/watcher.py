"""File-drop watcher: stage new files in object storage and queue ingestion jobs."""

import asyncio
import hashlib
import logging
import mimetypes
import threading
from pathlib import Path

from rich.console import Console
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .ingest.parsers import PARSERS
from .ingest.processor import IngestionService
from .storage.objects import LocalObjectStorage
from .workers import FileIngestionJob, Worker

logger = logging.getLogger(__name__)
console = Console()

SUPPORTED_EXTENSIONS = set(PARSERS)


def object_key_for(owner_id: str, path: Path, data: bytes) -> str:
    digest = hashlib.sha256(data).hexdigest()[:16]
    return f"{owner_id}/{digest}/{path.name}"


async def stage_file(
    ingestion: IngestionService,
    storage: LocalObjectStorage,
    owner_id: str,
    path: str | Path,
) -> FileIngestionJob:
    """Copy a local file into object storage and register it as a knowledge item."""
    path = Path(path)
    data = await asyncio.to_thread(path.read_bytes)
    mime_type = mimetypes.guess_type(path.name)[0] or ""
    key = object_key_for(owner_id, path, data)
    await asyncio.to_thread(storage.put_object, key, data, mime_type)
    item_id = await ingestion.create_file_item(owner_id, path.name, key, mime_type)
    return FileIngestionJob(
        owner_id=owner_id,
        item_id=item_id,
        object_key=key,
        file_name=path.name,
        mime_type=mime_type,
    )


class DropHandler(FileSystemEventHandler):
    """Collects file events and debounces them."""

    def __init__(self, debounce: float = 5.0):
        super().__init__()
        self._pending: set[str] = set()
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._debounce = debounce
        self._callback = None

    def set_callback(self, callback):
        self._callback = callback

    def _is_supported(self, path: str) -> bool:
        return Path(path).suffix.lower() in SUPPORTED_EXTENSIONS

    def on_created(self, event):
        if not event.is_directory and self._is_supported(event.src_path):
            self._add(event.src_path)

    def on_modified(self, event):
        if not event.is_directory and self._is_supported(event.src_path):
            self._add(event.src_path)

    def _add(self, path: str):
        with self._lock:
            self._pending.add(path)
            console.print(f"  [dim]Detected: {Path(path).name}[/]")
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self._flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self):
        self._flush()

    def _flush(self):
        with self._lock:
            paths = sorted(self._pending)
            self._pending.clear()
        if paths and self._callback:
            self._callback(paths)


class DropWatcher:
    """Watches the drop directory and feeds staged files to the worker."""

    def __init__(
        self,
        ingestion: IngestionService,
        storage: LocalObjectStorage,
        worker: Worker,
        owner_id: str,
        drop_path: str | Path,
        debounce: float = 5.0,
    ):
        self.ingestion = ingestion
        self.storage = storage
        self.worker = worker
        self.owner_id = owner_id
        self.drop_path = Path(drop_path)
        self.handler = DropHandler(debounce=debounce)
        self.handler.set_callback(self._schedule_batch)
        self.observer = Observer()
        self._loop: asyncio.AbstractEventLoop | None = None

    def _schedule_batch(self, paths: list[str]):
        # Called from the debounce timer thread
        if self._loop is None:
            logger.warning(f"Dropped {len(paths)} file event(s): watcher not running")
            return
        asyncio.run_coroutine_threadsafe(self.process_batch(paths), self._loop)

    async def process_batch(self, paths: list[str]) -> int:
        """Stage each file and dispatch a file job. Returns how many were queued."""
        console.print(f"\n[bold blue]Staging {len(paths)} file(s)...[/]")
        queued = 0
        for p in paths:
            try:
                job = await stage_file(self.ingestion, self.storage, self.owner_id, p)
            except OSError as e:
                console.print(f"  [red]✗ Failed to stage {Path(p).name}: {e}[/]")
                continue
            await self.worker.dispatch(job)
            console.print(f"  [green]✓ Queued: {Path(p).name}[/]")
            queued += 1
        return queued

    async def run(self, stop_event: asyncio.Event | None = None):
        """Watch and process jobs until ``stop_event`` is set or Ctrl+C."""
        stop_event = stop_event or asyncio.Event()
        self._loop = asyncio.get_running_loop()
        self.drop_path.mkdir(parents=True, exist_ok=True)
        self.observer.schedule(self.handler, str(self.drop_path), recursive=True)
        self.observer.start()
        console.print(f"[bold]Watching {self.drop_path} for new files... (Ctrl+C to stop)[/]")
        try:
            await self.worker.run(stop_event)
        finally:
            self.observer.stop()
            self.observer.join()
            self._loop = None
            console.print("[green]✓ Watcher stopped.[/]")
