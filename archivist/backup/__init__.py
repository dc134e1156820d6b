"""
Backup module for archivist.

This module handles the archive execution pipeline including:
- Name templates
- Source enumeration and dumping (databases and directories)
- Compression
- Encryption through external programs
- Delivery (directory, S3 and SSH)
- Run coordination
"""

from .coordinator import RunCoordinator, run
from .executor import ArchivePipeline
from .sources import create_source, DirectorySourceAdapter
from .compression import create_archive
from .encryption import Encryptor
from .storage import create_destination, DirectoryDestination, S3Destination, SSHDestination
from .report import ArchiveOutcome, RunReport

__all__ = [
    'RunCoordinator',
    'run',
    'ArchivePipeline',
    'create_source',
    'DirectorySourceAdapter',
    'create_archive',
    'Encryptor',
    'create_destination',
    'DirectoryDestination',
    'S3Destination',
    'SSHDestination',
    'ArchiveOutcome',
    'RunReport'
]
