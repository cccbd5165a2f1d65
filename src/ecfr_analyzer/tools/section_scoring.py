"""
LLM scoring of one regulation section.
Structured output: summary + antiquated / business-unfriendly scores on a 1-100 scale.
Transient LLM failures are retried with exponential backoff; whatever is still
failing after the last attempt propagates and the caller counts it per item.
"""
import logging
import httpx
import openai
from pydantic import BaseModel, Field
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI
from tenacity import Retrying, stop_after_attempt, wait_exponential, retry_if_exception_type
from ecfr_analyzer.config import settings

logger = logging.getLogger(__name__)

TRANSIENT_LLM_ERRORS = (
    TimeoutError,
    httpx.TimeoutException,
    httpx.TransportError,
    openai.APIConnectionError,     # includes APITimeoutError
    openai.RateLimitError,
    openai.InternalServerError,
)


# ── Structured output schema ─────────────────────────────────────────────────

class SectionScores(BaseModel):
    """Analysis of a single CFR section."""
    summary: str = Field(description="2-3 sentence plain-language summary of the section")
    antiquated_score: int = Field(ge=1, le=100, description="1 = modern, 100 = extremely antiquated")
    antiquated_explanation: str = Field("", description="Why the section received its antiquated score")
    business_unfriendly_score: int = Field(ge=1, le=100, description="1 = business-friendly, 100 = extremely burdensome")
    business_unfriendly_explanation: str = Field("", description="Why the section received its business score")


_PROMPT = ChatPromptTemplate.from_messages([
    ("system", "{system_prompt}"),
    ("human",
     "Section: {heading}\n\n"
     "TEXT:\n{content}"),
])


# ── Score bands used when the model omits an explanation ─────────────────────

def antiquated_band(score: int) -> str:
    if score <= 20:
        return "Modern and current regulation"
    if score <= 40:
        return "Mostly current with minor outdated elements"
    if score <= 60:
        return "Moderately outdated, could benefit from updates"
    if score <= 80:
        return "Significantly outdated, needs modernization"
    return "Extremely antiquated, urgently needs revision"


def business_band(score: int) -> str:
    if score <= 20:
        return "Business-friendly with minimal burden"
    if score <= 40:
        return "Light regulatory burden"
    if score <= 60:
        return "Moderate compliance requirements"
    if score <= 80:
        return "Significant burden on businesses"
    return "Extremely burdensome for businesses"


class SectionScorer:
    """Callable wrapper around the structured LLM chain. One instance per worker."""

    def __init__(self, llm=None, model: str | None = None, temperature: float | None = None,
                 max_attempts: int | None = None, backoff_seconds: float = 2.0):
        self.model = model or settings.llm_default_model
        self.temperature = settings.llm_temperature if temperature is None else temperature
        if llm is None:
            if not settings.llm_api_key:
                raise RuntimeError("LLM_API_KEY is not configured")
            llm = ChatOpenAI(
                model=self.model,
                temperature=self.temperature,
                max_tokens=settings.llm_max_tokens,
                timeout=settings.llm_timeout_seconds,
                max_retries=0,
                api_key=settings.llm_api_key,
                base_url=settings.llm_api_url,
            )
        self._chain = _PROMPT | llm.with_structured_output(SectionScores)
        self._max_attempts = max_attempts or settings.llm_max_attempts
        self._backoff = backoff_seconds

    @property
    def metadata(self) -> dict:
        return {"model": self.model, "temperature": self.temperature}

    def score(self, heading: str, content: str) -> SectionScores:
        inputs = {
            "system_prompt": settings.analysis_system_prompt,
            "heading": heading,
            "content": content[: settings.analysis_max_chars],
        }
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, min=self._backoff, max=30),
            retry=retry_if_exception_type(TRANSIENT_LLM_ERRORS),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("LLM retry %d for section '%s'", attempt.retry_state.attempt_number, heading)
                result: SectionScores = self._chain.invoke(inputs)
        if result is None:
            raise ValueError(f"LLM returned no structured output for section '{heading}'")
        return result


def with_fallback_explanations(scores: SectionScores) -> SectionScores:
    updates = {}
    if not scores.antiquated_explanation.strip():
        updates["antiquated_explanation"] = antiquated_band(scores.antiquated_score)
    if not scores.business_unfriendly_explanation.strip():
        updates["business_unfriendly_explanation"] = business_band(scores.business_unfriendly_score)
    return scores.model_copy(update=updates) if updates else scores
