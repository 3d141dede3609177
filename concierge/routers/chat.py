from fastapi import APIRouter, Depends

from concierge.dependencies import get_pipeline
from concierge.logging_config import get_logger
from concierge.schemas.chat import ChatRequest, ChatResponse, LanguageInfo
from concierge.services.chat_pipeline import ChatPipeline

router = APIRouter()

logger = get_logger("chat_router")


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, pipeline: ChatPipeline = Depends(get_pipeline)):
    """Answer one guest message within its session."""
    reply = await pipeline.handle(request.message, request.sessionId)
    logger.info(
        "Chat handled",
        extra={
            "context": {
                "session_id": reply.session_id,
                "response_type": reply.response_type,
                "language": reply.language,
            }
        },
    )
    return ChatResponse(
        message=reply.message,
        sessionId=reply.session_id,
        language=LanguageInfo(detected=reply.language, confidence=reply.language_confidence),
        responseType=reply.response_type,
        topic=reply.topic,
    )
