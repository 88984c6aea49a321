import re
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel

from ndaflow.pipeline.stages import gates
from ndaflow.pipeline.stages.base import Stage, StageContext, StageOutcome, StepSpec, Success, ValidationFailed
from ndaflow.pipeline.state import StageName
from ndaflow.providers.base import DocumentSource, SourceDocument
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


class ExtractResult(BaseModel):
    title: str
    text: str
    character_count: int
    page_count: int
    source: Literal["text", "ocr"]


def normalize_text(text: str) -> str:
    text = _CONTROL_CHARS.sub("", text.replace("\r\n", "\n").replace("\r", "\n"))
    return _EXCESS_BLANK_LINES.sub("\n\n", text).strip()


class ExtractStage(Stage):
    """Produce the normalized document text, from OCR output when there is one."""

    name = StageName.EXTRACT
    progress_range = (0, 15)
    result_model = ExtractResult

    def __init__(self, source: DocumentSource):
        self.source = source

    async def load(self, context: StageContext) -> SourceDocument:
        return await self.source.load(context.tenant_id, context.document_id)

    async def requires_ocr(self, context: StageContext) -> bool:
        """Pre-analysis: whether the document is scanned or image-only."""
        document = await self.load(context)
        return document.requires_ocr

    async def plan(self, context: StageContext) -> List[StepSpec]:
        return [StepSpec(key="extract", label="Parsing document")]

    async def execute(self, context: StageContext) -> StageOutcome:
        document = await self.load(context)
        ocr_output = context.input(StageName.OCR)

        if ocr_output.get("text"):
            text, source = normalize_text(ocr_output["text"]), "ocr"
        else:
            text, source = normalize_text(document.text), "text"

        if not text:
            LOGGER.warning(
                "Extraction produced no text",
                extra={"analysis_id": str(context.analysis_id), "mime_type": document.mime_type},
            )
            return gates.empty_document()

        return Success(
            result={
                "title": document.file_name,
                "text": text,
                "character_count": len(text),
                "page_count": document.page_count,
                "source": source,
            },
            progress_delta=1.0,
            message=f"Extracted {len(text):,} characters",
        )

    def merge(self, context: StageContext, step_outputs: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        return dict(step_outputs["extract"])

    def validate(self, output: Dict[str, Any]) -> Optional[ValidationFailed]:
        if not output.get("text"):
            return gates.empty_document()
        return None
