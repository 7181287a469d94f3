"""Job-Sync: offline-first synchronization for the job application tracker."""

__version__ = "0.1.0"
