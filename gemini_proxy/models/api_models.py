from enum import Enum
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import List, Dict, Any, Literal, Optional

# --- Canonical conversation shapes (what goes upstream) ---

class TextPart(BaseModel):
    text: str = ""

class Message(BaseModel):
    role: Literal["user", "model"]
    parts: List[TextPart]

    @property
    def text(self) -> str:
        return " ".join(p.text for p in self.parts if p.text)

class GenerationOptions(BaseModel):
    temperature: float = 0.7
    max_output_tokens: int = Field(1024, alias="maxOutputTokens", gt=0)
    top_k: int = Field(40, alias="topK")
    top_p: float = Field(0.95, alias="topP")
    model_config = ConfigDict(populate_by_name=True)

class FinishReason(str, Enum):
    STOP = "STOP"
    SAFETY = "SAFETY"
    RECITATION = "RECITATION"
    OTHER = "OTHER"

    @classmethod
    def from_upstream(cls, value: Any) -> "FinishReason":
        if isinstance(value, str) and value in cls.__members__:
            return cls[value]
        return cls.OTHER

class GenerationResult(BaseModel):
    text: str
    finish_reason: FinishReason = Field(FinishReason.STOP, alias="finishReason")
    usage: Dict[str, Any] = Field(default_factory=dict)
    safety_ratings: List[Dict[str, Any]] = Field(default_factory=list, alias="safetyRatings")
    model_config = ConfigDict(populate_by_name=True)

# --- Inbound payload (lenient: normalization decides, not parsing) ---

class ChatRequestModel(BaseModel):
    history: Any = None
    prompt: Any = Field(None, validation_alias=AliasChoices("prompt", "message", "query"))
    system_instruction: Any = Field(
        None,
        validation_alias=AliasChoices("systemInstruction", "system_instruction", "systemPrompt"),
    )
    temperature: Any = None
    max_tokens: Any = Field(None, validation_alias=AliasChoices("maxTokens", "max_tokens", "maxOutputTokens"))
    # 旧版客户端：OpenAI 风格的 messages 数组
    messages: Any = None
    model_config = ConfigDict(extra="ignore")

# --- Outbound (to caller) ---

class ChatResponse(BaseModel):
    text: str

class ChatResponseData(BaseModel):
    message: str
    finish_reason: str = Field(alias="finishReason")
    usage: Dict[str, Any] = Field(default_factory=dict)
    safety_ratings: List[Dict[str, Any]] = Field(default_factory=list, alias="safetyRatings")
    timestamp: str
    model_config = ConfigDict(populate_by_name=True)

class EnvelopedChatResponse(BaseModel):
    success: Literal[True] = True
    data: ChatResponseData

class ErrorBody(BaseModel):
    error: str
    code: str
    details: Optional[str] = None

class EnvelopedErrorDetail(BaseModel):
    message: str
    code: int
    kind: str
    timestamp: str
    details: Optional[str] = None

class EnvelopedErrorResponse(BaseModel):
    success: Literal[False] = False
    error: EnvelopedErrorDetail
