class CaptureError(Exception):
    """Base class for capture-run failures."""


class NoContentExtracted(CaptureError):
    def __init__(self, source: str = ""):
        self.source = source
        super().__init__("No conversation content extracted" + (f" ({source})" if source else ""))


class AttachmentDownloadFailed(CaptureError):
    """Required attachments could not be materialized from any candidate URL."""

    def __init__(self, failures: list[str]):
        self.failures = list(failures)
        preview = "; ".join(self.failures[:3])
        more = f"; {len(self.failures) - 3} more failed" if len(self.failures) > 3 else ""
        super().__init__(f"Attachment download failed: {preview}{more}")


class UnresolvedInlineReference(CaptureError):
    """The transcript names a file for which no URL was ever observed."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name} (only a file name was recognized, no downloadable link)")


class NetworkSettleTimeout(CaptureError):
    def __init__(self, in_flight: int, records: int):
        self.in_flight = in_flight
        self.records = records
        super().__init__(f"network settle timeout (in_flight={in_flight}, records={records})")


class WarmupEvidenceTimeout(CaptureError):
    def __init__(self, observed: int, target: int):
        self.observed = observed
        self.target = target
        super().__init__(f"file-url evidence timeout (observed={observed}, target={target})")
