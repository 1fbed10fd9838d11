import asyncio
import json
from dataclasses import dataclass

from loguru import logger
from openai import AsyncOpenAI
from pydantic import ValidationError

from chatledger.llm.prompts import SYSTEM_PROMPT
from chatledger.models.schemas import ResolvedIntent, UserContext

MODEL_ERROR = "model_error"
MODEL_TIMEOUT = "model_timeout"
NOT_CONFIGURED = "not_configured"


@dataclass
class ModelResult:
    intent: ResolvedIntent | None = None
    error: str | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.intent is not None


def strip_fences(raw: str) -> str:
    raw = raw.strip()
    # Strip markdown code fences if present
    if raw.startswith("```"):
        lines = raw.split("\n")
        lines = [l for l in lines if not l.startswith("```")]
        raw = "\n".join(lines)
    return raw.strip()


def parse_model_output(raw: str) -> ModelResult:
    try:
        data = json.loads(strip_fences(raw))
        return ModelResult(intent=ResolvedIntent.model_validate(data))
    except json.JSONDecodeError as e:
        logger.error("Failed to parse LLM response as JSON: {}", e)
        return ModelResult(error=MODEL_ERROR, detail=f"invalid JSON: {e}")
    except ValidationError as e:
        logger.error("LLM response does not match intent schema: {}", e)
        return ModelResult(error=MODEL_ERROR, detail="schema mismatch")


def context_message(context: UserContext) -> str | None:
    parts = []
    if context.recent_categories:
        parts.append("Categories this user uses: " + ", ".join(context.recent_categories))
    if context.recent_payment_methods:
        parts.append("Payment methods this user uses: " + ", ".join(context.recent_payment_methods))
    return "\n".join(parts) or None


class IntentParser:
    def __init__(self, api_key: str, model: str, base_url: str = "https://openrouter.ai/api/v1",
                 timeout: float = 15.0):
        self.client = AsyncOpenAI(base_url=base_url, api_key=api_key) if api_key else None
        self.model = model
        self.timeout = timeout

    async def parse(self, text: str, context: UserContext, quoted_text: str | None = None) -> ModelResult:
        if self.client is None:
            logger.warning("OPENROUTER_API_KEY not set, free-text parsing disabled")
            return ModelResult(error=NOT_CONFIGURED)

        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        context_text = context_message(context)
        if context_text:
            messages.append({"role": "system", "content": context_text})
        if quoted_text:
            messages.append({"role": "system", "content": f"The user is replying to this message:\n{quoted_text}"})
        messages.append({"role": "user", "content": text})

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=0.1,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error("LLM request timed out after {}s", self.timeout)
            return ModelResult(error=MODEL_TIMEOUT)
        except Exception as e:
            logger.error("LLM request failed: {}", e)
            return ModelResult(error=MODEL_ERROR, detail=str(e))

        raw = response.choices[0].message.content or ""
        logger.debug("LLM raw response: {}", raw)
        return parse_model_output(raw)
