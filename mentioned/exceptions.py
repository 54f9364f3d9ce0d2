from typing import List, Optional

class ScanError(Exception):
    pass

class InputValidationError(ScanError):
    """Scan request rejected before any provider was called."""

    def __init__(self, issues: List[dict]):
        self.issues = issues
        summary = "; ".join(f"{i['field']}: {i['message']}" for i in issues)
        super().__init__(summary or "invalid scan input")

class ProfileValidationError(InputValidationError):
    pass

class ProviderError(ScanError):
    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")

class PipelineError(ScanError):
    """Fatal failure inside one phase of the scan pipeline."""

    retryable = False

    def __init__(self, phase: Optional[str], message: str):
        self.phase = phase
        super().__init__(message)

class NoUsableQueriesError(PipelineError):
    def __init__(self, message: str = "no usable queries survived validation"):
        super().__init__("queries", message)

class AllProvidersFailedError(PipelineError):
    retryable = True

    def __init__(self, failures: int):
        self.failures = failures
        super().__init__("providers", f"all {failures} provider calls failed")

class StoreTimeoutError(PipelineError):
    """A store call outlived STORE_TIMEOUT_SECS; the phase is whichever one was running."""

    retryable = True

    def __init__(self, operation: str, seconds: float):
        self.operation = operation
        super().__init__(None, f"store call {operation} timed out after {seconds:g}s")

class RetryableScanError(ScanError):
    """Raised to the queue worker when the job should be attempted again."""

    def __init__(self, scan_id: str, cause: BaseException):
        self.scan_id = scan_id
        self.cause = cause
        super().__init__(f"scan {scan_id} will be retried: {cause}")

class StrategyError(ScanError):
    pass
