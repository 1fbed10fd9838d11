from fastapi import APIRouter, HTTPException
from loguru import logger

from chatledger.deps import metrics, repo, router as conversation
from chatledger.models.schemas import (
    Entry,
    InboundMessage,
    MessageRequest,
    MessageResponse,
    OcrRequest,
)

router = APIRouter()


def _as_list(reply: str | list[str]) -> list[str]:
    return reply if isinstance(reply, list) else [reply]


@router.post("/messages", response_model=MessageResponse)
async def post_message(request: MessageRequest):
    logger.info("Message from {}: {}", request.user_id, request.text)
    reply = await conversation.resolve(InboundMessage(**request.model_dump()))
    return MessageResponse(messages=_as_list(reply))


@router.post("/ocr/{user_id}", response_model=MessageResponse)
async def post_ocr(user_id: str, request: OcrRequest):
    if not request.candidates:
        raise HTTPException(status_code=400, detail="No candidates to review")
    logger.info("OCR candidates for {}: {}", user_id, len(request.candidates))
    reply = await conversation.offer_ocr_candidates(user_id, request.candidates)
    return MessageResponse(messages=_as_list(reply))


@router.get("/metrics/strategies")
def strategy_stats():
    return metrics.strategy_stats()


@router.get("/entries/{user_id}", response_model=list[Entry])
def list_entries(user_id: str, type: str | None = None):
    if type not in (None, "expense", "income"):
        raise HTTPException(status_code=400, detail="type must be expense or income")
    return repo.list_entries(user_id, entry_type=type)
