from .file_guard import FileLockedError, wait_until_unlocked
from .orchestrator import IngestionOrchestrator
from .run_lock import SubjectBusyError, subject_run_lock
from .workbook import ExportFormatError, read_export_rows

__all__ = [
    "IngestionOrchestrator",
    "FileLockedError",
    "wait_until_unlocked",
    "SubjectBusyError",
    "subject_run_lock",
    "ExportFormatError",
    "read_export_rows",
]
