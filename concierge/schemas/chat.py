from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class ChatRequest(BaseModel):
    message: str = ""
    sessionId: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("sessionId", "session_id"),
    )


class LanguageInfo(BaseModel):
    detected: str
    confidence: str


class ChatResponse(BaseModel):
    message: str
    sessionId: str
    language: LanguageInfo
    responseType: str
    topic: Optional[str] = None
