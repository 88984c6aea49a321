from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel

from ndaflow.pipeline.stages import gates
from ndaflow.pipeline.stages.base import Stage, StageContext, StageOutcome, StepSpec, Success, ValidationFailed
from ndaflow.pipeline.state import StageName
from ndaflow.providers.base import DocumentSource, OcrEngine, OcrPage
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class OcrResult(BaseModel):
    pages: List[OcrPage]


class OcrStage(Stage):
    """Recognize text on scanned pages, a few pages per step."""

    name = StageName.OCR
    progress_range = (0, 10)
    result_model = OcrResult

    def __init__(self, source: DocumentSource, engine: OcrEngine, pages_per_step: int = 5):
        self.source = source
        self.engine = engine
        self.pages_per_step = max(1, pages_per_step)

    async def plan(self, context: StageContext) -> List[StepSpec]:
        document = await self.source.load(context.tenant_id, context.document_id)
        page_count = max(1, document.page_count)
        batches = [
            list(range(first, min(first + self.pages_per_step, page_count + 1)))
            for first in range(1, page_count + 1, self.pages_per_step)
        ]
        return [
            StepSpec(
                key=f"pages-{pages[0]}-{pages[-1]}",
                label=f"Running OCR on pages {pages[0]}-{pages[-1]} of {page_count}",
                provider="ocr",
                params={"pages": pages, "batch_count": len(batches)},
            )
            for pages in batches
        ]

    async def execute(self, context: StageContext) -> StageOutcome:
        document = await self.source.load(context.tenant_id, context.document_id)
        pages = list(context.step.params["pages"])
        recognized = await self.engine.recognize(document, pages)

        return Success(
            result={"pages": [page.model_dump() for page in recognized]},
            progress_delta=1.0 / context.step.params["batch_count"],
        )

    def merge(self, context: StageContext, step_outputs: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        pages = sorted(
            (page for output in step_outputs.values() for page in output["pages"]),
            key=lambda page: page["page_number"],
        )
        confidences = [page["confidence"] for page in pages if page["text"].strip()]
        average_confidence = sum(confidences) / len(confidences) if confidences else 0.0
        low_confidence_pages = [
            page["page_number"] for page in pages if page["confidence"] < gates.OCR_CRITICAL_CONFIDENCE
        ]
        return {
            "text": "\n\n".join(page["text"] for page in pages if page["text"].strip()),
            "page_count": len(pages),
            "average_confidence": round(average_confidence, 2),
            "low_confidence_pages": low_confidence_pages,
        }

    def validate(self, output: Dict[str, Any]) -> Optional[ValidationFailed]:
        if not output["text"].strip():
            return gates.empty_document()
        if output["average_confidence"] < gates.OCR_CRITICAL_CONFIDENCE:
            LOGGER.warning(
                "OCR confidence below critical threshold",
                extra={"average_confidence": output["average_confidence"]},
            )
            return gates.ocr_unusable(output["average_confidence"])
        return None
