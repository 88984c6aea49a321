"""Validation gates that stop a run before it produces a degenerate report."""

from ndaflow.pipeline.stages.base import ValidationFailed

# Average OCR confidence (0-100) below which the text is not worth analysing
OCR_CRITICAL_CONFIDENCE = 60


def empty_document() -> ValidationFailed:
    return ValidationFailed(
        code="EMPTY_DOCUMENT",
        reason="We couldn't extract any text from this document.",
        suggestion="Try uploading a different file format or check that the PDF isn't encrypted.",
    )


def no_chunks() -> ValidationFailed:
    return ValidationFailed(
        code="NO_CHUNKS",
        reason="The document couldn't be processed into analyzable sections.",
        suggestion="Try a different document or file format.",
    )


def zero_clauses() -> ValidationFailed:
    return ValidationFailed(
        code="ZERO_CLAUSES",
        reason="We couldn't find any clauses in this document.",
        suggestion="Check that the file contains actual contract text, not just headers or images.",
    )


def ocr_unusable(confidence: float) -> ValidationFailed:
    return ValidationFailed(
        code="OCR_UNUSABLE",
        reason=f"The scanned pages could not be read reliably (confidence {confidence:.0f}%).",
        suggestion="Upload a higher quality scan or a text-based PDF.",
    )
