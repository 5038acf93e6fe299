import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel

from kiosk.config import OPENAI_API_KEY, OPENAI_MODEL

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai")

FALLBACK_SUGGESTION = "Que tal adicionar um delicioso caldo de cana geladinho?"

SUGGESTION_PROMPT = (
    "Você é um Chef de Pastelaria especialista em vendas. "
    "Responda apenas o texto da sugestão."
)
CHAT_PROMPT = (
    "Você é o Chef da 'Pastelaria Kiosk Pro'. Seu tom é amigável, prestativo e brasileiro. "
    "Responda dúvidas sobre o cardápio e ajude a escolher. "
    "Seja curto e objetivo (máximo 2 frases)."
)

_client = None


def get_client() -> AsyncOpenAI:
    global _client
    if _client is None:
        if not OPENAI_API_KEY:
            raise HTTPException(status_code=503, detail="AI service unavailable")
        _client = AsyncOpenAI(api_key=OPENAI_API_KEY)
    return _client


async def complete(system: str, user: str, max_tokens: int, temperature: Optional[float] = None) -> str:
    kwargs = {}
    if temperature is not None:
        kwargs["temperature"] = temperature
    completion = await get_client().chat.completions.create(
        model=OPENAI_MODEL,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        max_tokens=max_tokens,
        **kwargs,
    )
    return completion.choices[0].message.content or ""


class SuggestionRequest(BaseModel):
    prompt: Optional[str] = None


class ChatRequest(BaseModel):
    message: Optional[str] = None


@router.post("/suggestion")
async def suggestion(request: SuggestionRequest):
    get_client()
    if not request.prompt:
        raise HTTPException(status_code=400, detail="Prompt is required")
    try:
        text = await complete(SUGGESTION_PROMPT, request.prompt, max_tokens=100, temperature=0.7)
    except OpenAIError as exc:
        # an upsell line is optional, the kiosk must keep going
        logger.warning("Suggestion failed, using fallback: %s", exc)
        text = FALLBACK_SUGGESTION
    return {"text": text}


@router.post("/chat")
async def chat(request: ChatRequest):
    get_client()
    if not request.message:
        raise HTTPException(status_code=400, detail="Message is required")
    try:
        text = await complete(CHAT_PROMPT, request.message, max_tokens=150)
    except OpenAIError as exc:
        logger.error("Chat failed: %s", exc)
        raise HTTPException(status_code=500, detail="The chef is busy in the kitchen (connection error).")
    return {"text": text}
