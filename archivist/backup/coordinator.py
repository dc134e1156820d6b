"""
Run coordinator - executes every archive of a configuration.

Archives are independent: each gets its own pipeline and temp directory
under the shared working directory, and one archive's failure never stops
the others. The coordinator returns a RunReport covering all of them.
"""

import logging
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from archivist.models import ArchiveDefinition, BackupConfiguration, ConfigurationError
from archivist.utils.process import CancellationToken
from .executor import ArchivePipeline, utc_now
from .report import ArchiveOutcome, RunReport, STATUS_CANCELLED
from .templating import validate_template


logger = logging.getLogger(__name__)


class RunCoordinator:
    """
    Fans the archive pipeline out over the archives of a configuration.
    """

    def __init__(
        self,
        configuration: BackupConfiguration,
        working_directory: Optional[str] = None,
        max_workers: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
        history=None,
        command_timeout: Optional[float] = None,
        delivery_retries: int = 0,
        delivery_retry_delay: float = 0,
        destination_options: Optional[Dict] = None
    ):
        """
        Args:
            configuration: Loaded backup configuration
            working_directory: Root for temp directories (defaults to the
                configuration's working directory)
            max_workers: Archives run concurrently (1 runs them in order)
            clock: Source of run timestamps
            history: Optional HistoryStore receiving every outcome
        """
        self.configuration = configuration
        self.working_directory = working_directory or configuration.working_directory
        self.max_workers = max(1, max_workers)
        self.clock = clock or utc_now
        self.history = history
        self.command_timeout = command_timeout
        self.delivery_retries = delivery_retries
        self.delivery_retry_delay = delivery_retry_delay
        self.destination_options = destination_options or {}
        self.cancellation = CancellationToken()
        self.run_id = None

    def cancel(self):
        """Cancel running archives and skip the ones not started yet."""
        logger.info("Cancellation requested")
        self.cancellation.cancel()

    def select(self, names: Optional[Iterable[str]] = None) -> List[ArchiveDefinition]:
        """
        Pick archives by name template.

        Raises:
            ConfigurationError: If a requested name is not configured
        """
        archives = list(self.configuration.archives)
        if not names:
            return archives

        selected = []
        for name in names:
            matches = [a for a in archives if a.name == name]
            if not matches:
                raise ConfigurationError(f"Archive not found: {name}")
            selected.extend(m for m in matches if m not in selected)
        return selected

    def run(self, names: Optional[Iterable[str]] = None) -> RunReport:
        """
        Execute archives and aggregate their outcomes.

        Args:
            names: Optional archive name templates to run (default: all)

        Returns:
            RunReport with one outcome per archive

        Raises:
            ConfigReferenceError: If any archive references an undeclared id
            ConfigurationError: If the working directory is missing or a name template is invalid
        """
        # Fatal configuration problems stop the run before any archive starts
        self.configuration.validate()
        archives = self.select(names)
        for archive in archives:
            validate_template(archive.name)

        if not self.working_directory:
            raise ConfigurationError("No working directory configured")
        try:
            os.makedirs(self.working_directory, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Unable to create working directory {self.working_directory}: {e}")

        self.run_id = uuid.uuid4().hex[:12]
        report = RunReport(run_id=self.run_id, started_at=self.clock())
        logger.info(f"Run {self.run_id}: {len(archives)} archive(s), working directory {self.working_directory}")

        if self.max_workers == 1:
            outcomes = [self._run_archive(archive) for archive in archives]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='archive') as pool:
                outcomes = list(pool.map(self._run_archive, archives))

        report.archives = outcomes
        report.completed_at = self.clock()

        if self.history is not None:
            self._record_history(outcomes)

        for line in report.summary_lines():
            logger.info(line)

        return report

    def _run_archive(self, archive: ArchiveDefinition) -> ArchiveOutcome:
        if self.cancellation.cancelled:
            outcome = ArchiveOutcome(archive=archive.name, status=STATUS_CANCELLED)
        else:
            pipeline = ArchivePipeline(
                archive,
                self.configuration,
                self.working_directory,
                self.run_id,
                clock=self.clock,
                cancellation=self.cancellation,
                command_timeout=self.command_timeout,
                delivery_retries=self.delivery_retries,
                delivery_retry_delay=self.delivery_retry_delay,
                destination_options=self.destination_options
            )
            outcome = pipeline.execute()

        return outcome

    def _record_history(self, outcomes: List[ArchiveOutcome]):
        for outcome in outcomes:
            try:
                self.history.record(self.run_id, outcome)
            except Exception as e:
                # History is informational, a broken store must not fail the run
                logger.error(f"Failed to record history for {outcome.archive}: {e}")


def run(configuration: BackupConfiguration, working_directory: Optional[str] = None, **options) -> RunReport:
    """
    Run every archive of a configuration.

    Args:
        configuration: Loaded backup configuration
        working_directory: Root for temp directories
        **options: Passed to RunCoordinator

    Returns:
        RunReport with the outcome of each archive
    """
    return RunCoordinator(configuration, working_directory, **options).run()
