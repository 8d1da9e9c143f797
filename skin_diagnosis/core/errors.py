"""
Exceptions raised by the diagnosis pipeline.
Every error carries a stable reason code that ends up in the result payload.
"""


class DiagnosisError(Exception):
    """Hard stop in the pipeline, identified by a reason code."""

    reason = "postprocess_failed"

    def __init__(self, reason: str | None = None, message: str | None = None):
        if reason:
            self.reason = reason
        super().__init__(message or self.reason)


class DecodeError(DiagnosisError):
    """Image bytes are missing or could not be decoded."""

    reason = "decode_failed"


class SkinRoiError(DiagnosisError):
    """No usable skin component was found."""

    reason = "skin_roi_not_found"
