"""
Archive pipeline - orchestrates the complete workflow for one archive.

Workflow:
1. Resolve: render the archive name, create the temp directory, resolve
   database selectors and directories against the live sources
2. Dump and compress: stream every dump into the archive file
3. Encrypt (if the archive names a recipe)
4. Deliver to every destination, concurrently and independently
5. Cleanup temporary files (always)
"""

import logging
import os
import shutil
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from archivist.models import ArchiveDefinition, BackupConfiguration, ConfigurationError
from archivist.utils.formatting import format_size
from archivist.utils.process import BackupCancelled, CancellationToken, ProcessRunner
from .compression import ArchiveEntry, create_archive, get_archive_size, CompressionError
from .encryption import Encryptor, EncryptionError
from .report import (
    ArchiveOutcome, DestinationOutcome,
    STATUS_SUCCESS, STATUS_PARTIAL, STATUS_FAILED, STATUS_CANCELLED
)
from .sources import (
    create_source, disambiguate_paths, DirectorySourceAdapter, SelectorResolutionError, SourceError
)
from .storage import create_destination, DeliveryError
from .templating import TemplateContext, render


logger = logging.getLogger(__name__)

STAGE_RESOLVING = 'resolving'
STAGE_DUMPING = 'dumping'
STAGE_COMPRESSING = 'compressing'
STAGE_ENCRYPTING = 'encrypting'
STAGE_DELIVERING = 'delivering'
STAGE_CLEANUP = 'cleanup'


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ArchivePipeline:
    """
    Runs one archive definition from sources to destinations.
    """

    def __init__(
        self,
        archive: ArchiveDefinition,
        configuration: BackupConfiguration,
        working_directory: str,
        run_id: str,
        clock: Optional[Callable[[], datetime]] = None,
        cancellation: Optional[CancellationToken] = None,
        command_timeout: Optional[float] = None,
        delivery_retries: int = 0,
        delivery_retry_delay: float = 0,
        destination_options: Optional[Dict] = None
    ):
        """
        Args:
            archive: Archive definition to execute
            configuration: Configuration the archive's ids refer to
            working_directory: Shared root for per-archive temp directories
            run_id: Identifier of the coordinator run
            clock: Returns the run timestamp (defaults to UTC now)
            cancellation: Token shared with the coordinator
            command_timeout: Timeout for external programs in seconds
            delivery_retries: Extra attempts per destination after a failure
            delivery_retry_delay: Seconds to wait between attempts
            destination_options: Extra keyword arguments for destination handlers
        """
        self.archive = archive
        self.configuration = configuration
        self.working_directory = working_directory
        self.run_id = run_id
        self.clock = clock or utc_now
        self.cancellation = cancellation or CancellationToken()
        self.runner = ProcessRunner(timeout=command_timeout, cancellation=self.cancellation)
        self.delivery_retries = delivery_retries
        self.delivery_retry_delay = delivery_retry_delay
        self.destination_options = destination_options or {}

        self.outcome = None
        self.stage = None
        self.timestamp = None
        self.rendered_name = None
        self.temp_dir = None
        self.entries: List[ArchiveEntry] = []
        self.archive_path = None
        self.deliverable_path = None
        self.logs = []

    def execute(self) -> ArchiveOutcome:
        """
        Execute the archive pipeline.

        Stage errors never escape; they are recorded in the returned outcome.

        Returns:
            ArchiveOutcome with status success, partial, failed or cancelled
        """
        self.outcome = ArchiveOutcome(archive=self.archive.name, started_at=self.clock())
        self._log(f"Starting archive: {self.archive.name}")

        try:
            self._execute_workflow()

        except BackupCancelled:
            self.outcome.status = STATUS_CANCELLED
            self.outcome.failed_stage = self.stage
            self._log(f"Archive cancelled during {self.stage}")

        except (ConfigurationError, SourceError, CompressionError, EncryptionError, DeliveryError) as e:
            self._fail(e)

        except Exception as e:
            logger.exception(f"Unexpected error in archive {self.archive.name}")
            self._fail(e)

        finally:
            self.stage = STAGE_CLEANUP
            self._cleanup()
            self.outcome.completed_at = self.clock()
            self.outcome.logs = list(self.logs)

        return self.outcome

    def _fail(self, error: Exception):
        self.outcome.status = STATUS_FAILED
        self.outcome.failed_stage = self.stage
        self.outcome.error = str(error)
        self._log(f"Archive failed during {self.stage}: {error}")

    def _execute_workflow(self):
        """Execute the main pipeline stages in order."""
        # Step 1: Resolve
        self._enter(STAGE_RESOLVING)
        self._resolve()

        # Step 2: Dump and compress
        self._enter(STAGE_DUMPING)
        self._log(f"Dumping {len(self.entries)} entries (format: {self.archive.compression})")
        self.archive_path = self._create_archive()
        self.deliverable_path = self.archive_path
        self._log(
            f"Archive created: {os.path.basename(self.archive_path)} "
            f"({format_size(get_archive_size(self.archive_path))})"
        )

        # Step 3: Encrypt
        if self.archive.encryption:
            self._enter(STAGE_ENCRYPTING)
            recipe = self.configuration.encryption(self.archive.encryption)
            self.deliverable_path = Encryptor(self.runner).encrypt(recipe, self.archive_path)
            self._log(f"Encrypted with recipe '{recipe.id}': {os.path.basename(self.deliverable_path)}")
        else:
            self._log("No encryption configured, skipping")

        self.outcome.file_name = os.path.basename(self.deliverable_path)
        self.outcome.file_size_bytes = get_archive_size(self.deliverable_path)

        # Step 4: Deliver
        self._enter(STAGE_DELIVERING)
        self.outcome.destinations = self._deliver()
        self._set_delivery_status()

    def _enter(self, stage: str):
        self.cancellation.check()
        self.stage = stage

    def _resolve(self):
        """
        Render the name once and resolve every selector against live sources.

        Raises:
            SelectorResolutionError: If the archive selects nothing
        """
        self.timestamp = self.outcome.started_at
        context = TemplateContext(timestamp=self.timestamp, archive=self.archive.name)
        self.rendered_name = render(self.archive.name, context)
        self.outcome.name = self.rendered_name
        self._log(f"Archive name: {self.rendered_name}")

        os.makedirs(self.working_directory, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix=f"{self.rendered_name}.{self.run_id}.", dir=self.working_directory)
        self._log(f"Temporary directory: {self.temp_dir}")

        entries = []
        for selection in self.archive.databases:
            source = self.configuration.database(selection.db_id)
            handler = create_source(source, self.runner)
            units = handler.enumerate(selection.selectors)
            self._log(f"Database '{source.id}' ({source.kind}): {', '.join(units)}")
            entries.extend(handler.dump(unit) for unit in units)

        for directory in self.archive.directories:
            adapter = DirectorySourceAdapter(directory)
            for unit in adapter.enumerate():
                entries.append(adapter.dump(unit))
            self._log(f"Directory: {directory.path}")

        if not entries:
            raise SelectorResolutionError(self.archive.name, "Archive selects no databases or directories")

        self.entries = disambiguate_paths(entries)

    def _create_archive(self) -> str:
        archive_base = os.path.join(self.temp_dir, self.rendered_name)
        try:
            return create_archive(
                self.entries,
                archive_base,
                self.archive.compression,
                mtime=int(self.timestamp.timestamp())
            )
        except CompressionError:
            self.stage = STAGE_COMPRESSING
            raise
        except ValueError as e:
            self.stage = STAGE_COMPRESSING
            raise CompressionError(str(e))

    def _deliver(self) -> List[DestinationOutcome]:
        """Deliver the finished file to every destination concurrently."""
        destination_ids = list(self.archive.destinations)
        file_name = self.outcome.file_name

        with ThreadPoolExecutor(max_workers=len(destination_ids), thread_name_prefix='deliver') as pool:
            futures = [
                pool.submit(self._deliver_one, destination_id, file_name)
                for destination_id in destination_ids
            ]
            return [future.result() for future in futures]

    def _deliver_one(self, destination_id: str, file_name: str) -> DestinationOutcome:
        destination = self.configuration.destination(destination_id)
        outcome = DestinationOutcome(destination_id=destination_id, kind=destination.kind, success=False)

        try:
            handler = create_destination(destination, **self.destination_options.get(destination.kind, {}))
        except DeliveryError as e:
            outcome.error = str(e)
            self._log(f"Destination '{destination_id}' unavailable: {e}")
            return outcome

        while True:
            outcome.attempts += 1
            try:
                outcome.location = handler.deliver(
                    self.deliverable_path, file_name, cancellation_check=self.cancellation.check
                )
                outcome.success = True
                outcome.error = None
                self._log(f"Delivered to '{destination_id}': {outcome.location}")
                return outcome
            except DeliveryError as e:
                outcome.error = str(e)
                if outcome.attempts > self.delivery_retries:
                    self._log(f"Delivery to '{destination_id}' failed: {e}")
                    return outcome
                self._log(f"Delivery to '{destination_id}' failed (attempt {outcome.attempts}), retrying: {e}")
                time.sleep(self.delivery_retry_delay)
                self.cancellation.check()

    def _set_delivery_status(self):
        destinations = self.outcome.destinations
        delivered = [d for d in destinations if d.success]

        if len(delivered) == len(destinations):
            self.outcome.status = STATUS_SUCCESS
            self._log("Archive completed successfully")
        elif delivered:
            self.outcome.status = STATUS_PARTIAL
            self.outcome.error = '; '.join(d.error for d in destinations if not d.success)
            self._log(f"Archive partially delivered, failed: {', '.join(self.outcome.failed_destinations)}")
        else:
            self.outcome.status = STATUS_FAILED
            self.outcome.failed_stage = STAGE_DELIVERING
            self.outcome.error = '; '.join(d.error for d in destinations)
            self._log("Archive could not be delivered to any destination")

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = utc_now().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[{self.archive.name}] {message}")
