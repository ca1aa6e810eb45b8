class TokenLedgerError(Exception):
    """
    base class for every error raised by tokenledger.
    """


class LineDecodeError(TokenLedgerError):
    """
    a single log line is not a usable JSON object. Always absorbed
    by the scanner, never propagated out of a file scan.
    """


class FileScanError(TokenLedgerError):
    """
    a log file could not be opened or read. The file is skipped
    and the sync run continues with the remaining files.
    """

    def __init__(self, path: "str", reason: "str") -> "None":
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class CatastrophicSyncError(TokenLedgerError):
    """
    a condition that fails the whole sync run. Batches committed
    before the failure are kept, and the run can be retried.
    """

    retryable: "bool" = True


class LogDirectoryError(CatastrophicSyncError):
    """
    the log directory is missing or unreadable.
    """


class StorageError(CatastrophicSyncError):
    """
    the persistence layer could not be written or read.
    """


class SyncInProgressError(TokenLedgerError):
    """
    a sync was requested while another run is still active.
    """


class StatisticsUnavailableError(TokenLedgerError):
    """
    a statistics query failed and there is no last known-good
    result to fall back on.
    """
