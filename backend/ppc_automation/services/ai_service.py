"""
AI Service — Multi-provider AI (OpenAI GPT, Anthropic Claude) used to judge
whether a customer search term is relevant to the advertised product.
Batches round-robin across a pool of API keys; transient provider errors are
retried with exponential backoff, and anything unclassifiable is UNKNOWN.
"""

import asyncio
import enum
import json
import logging
import re
from typing import Awaitable, Callable, Optional

import anthropic
import openai
from openai import AsyncOpenAI
from anthropic import AsyncAnthropic

from ppc_automation.config import MissingCredentialsError, get_settings

logger = logging.getLogger(__name__)

RELEVANCE_SYSTEM_PROMPT = """You are an Amazon PPC expert. Your task is to determine if a customer's \
search term is relevant for selling a specific product. A search term is relevant if a customer \
searching for it would likely be satisfied to see this product."""

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504, 529}


class Relevance(str, enum.Enum):
    RELEVANT = "RELEVANT"
    NOT_RELEVANT = "NOT_RELEVANT"
    UNKNOWN = "UNKNOWN"


def _parse_model_id(model_id: Optional[str]) -> tuple[str, str]:
    """Parse 'provider:model' into (provider, model). Fallback to configured default."""
    model_id = model_id or get_settings().ai_model
    if ":" in model_id:
        p, m = model_id.split(":", 1)
        return (p.strip().lower(), m.strip())
    return ("openai", model_id.strip())


def is_transient_error(error: Exception) -> bool:
    """Rate limit, overload, unavailable or connection failure."""
    if isinstance(error, (openai.APIConnectionError, anthropic.APIConnectionError)):
        return True
    status = getattr(error, "status_code", None)
    if status in TRANSIENT_STATUS_CODES:
        return True
    message = str(error)
    return "overloaded" in message.lower() or "UNAVAILABLE" in message


class AIService:
    """Completion client for one provider + API key."""

    def __init__(
        self,
        model_id: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        anthropic_api_key: Optional[str] = None,
    ):
        self.provider, self.model = _parse_model_id(model_id)
        self._openai_client: Optional[AsyncOpenAI] = None
        self._anthropic_client: Optional[AsyncAnthropic] = None

        if self.provider == "openai":
            if not openai_api_key:
                raise MissingCredentialsError("OPENAI_API_KEYS not configured.")
            self._openai_client = AsyncOpenAI(api_key=openai_api_key)
        elif self.provider == "anthropic":
            if not anthropic_api_key:
                raise MissingCredentialsError("ANTHROPIC_API_KEYS not configured.")
            self._anthropic_client = AsyncAnthropic(api_key=anthropic_api_key)
        else:
            raise ValueError(f"Unknown AI provider: {self.provider}")

    async def _completion(
        self,
        messages: list[dict],
        temperature: float = 0.0,
        max_tokens: int = 2000,
        json_response: bool = False,
    ) -> str:
        """Call the appropriate provider's completion API."""
        if self.provider == "openai":
            kwargs = dict(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            if json_response:
                kwargs["response_format"] = {"type": "json_object"}
            response = await self._openai_client.chat.completions.create(**kwargs)
            return response.choices[0].message.content or ""

        # Anthropic: convert messages to their format
        system = ""
        anthropic_messages = []
        for m in messages:
            role = m.get("role", "user")
            content = m.get("content", "")
            if role == "system":
                system += content + "\n\n" if content else ""
            else:
                anthropic_messages.append({"role": "user" if role == "user" else "assistant", "content": content})

        response = await self._anthropic_client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            system=system.strip() if system else anthropic.NOT_GIVEN,
            messages=anthropic_messages,
        )
        if response.content and response.content[0].type == "text":
            return response.content[0].text
        return ""


def _product_block(product: dict) -> str:
    bullets = "\n".join(f"- {b}" for b in product.get("bullet_points") or [])
    return f'Product Title: "{product.get("title") or ""}"\nProduct Bullets:\n{bullets}'


def build_single_prompt(product: dict, term: str) -> list[dict]:
    return [
        {"role": "system", "content": RELEVANCE_SYSTEM_PROMPT + " Answer ONLY with 'YES' or 'NO'."},
        {"role": "user", "content": (
            f"{_product_block(product)}\n\nCustomer Search Term: \"{term}\"\n\nIs this search term relevant?"
        )},
    ]


def build_batch_prompt(product: dict, terms: list[str]) -> list[dict]:
    listed = "\n".join(f"- {json.dumps(t)}" for t in terms)
    return [
        {"role": "system", "content": RELEVANCE_SYSTEM_PROMPT + (
            ' Respond with JSON only: {"results": [{"term": "<search term>", "relevant": true|false}]}'
            " with exactly one entry per search term, copying each term verbatim."
        )},
        {"role": "user", "content": f"{_product_block(product)}\n\nCustomer Search Terms:\n{listed}"},
    ]


def parse_single_answer(text: str) -> Relevance:
    answer = (text or "").strip().upper()
    if re.match(r"^\W*NO\b", answer):
        return Relevance.NOT_RELEVANT
    if re.match(r"^\W*YES\b", answer):
        return Relevance.RELEVANT
    return Relevance.UNKNOWN


def parse_batch_answer(text: str, terms: list[str]) -> dict[str, Relevance]:
    """Map each requested term to a verdict; terms the model skipped stay UNKNOWN."""
    verdicts = {t: Relevance.UNKNOWN for t in terms}
    cleaned = re.sub(r"^```(?:json)?|```$", "", (text or "").strip(), flags=re.MULTILINE).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.warning(f"Relevance batch returned non-JSON output: {cleaned[:200]}")
        return verdicts
    results = data.get("results") if isinstance(data, dict) else data
    by_lower = {t.lower(): t for t in terms}
    for item in results or []:
        if not isinstance(item, dict):
            continue
        term = by_lower.get(str(item.get("term", "")).strip().lower())
        relevant = item.get("relevant")
        if term is None or not isinstance(relevant, bool):
            continue
        verdicts[term] = Relevance.RELEVANT if relevant else Relevance.NOT_RELEVANT
    return verdicts


class RelevanceClassifier:
    """
    Classifies search terms against a product using a pool of AIService clients.
    Each batch goes to the next client in the pool; a fixed delay separates batches.
    Only transient errors are retried. Exhausted retries or a non-transient error
    leave the affected terms UNKNOWN, and UNKNOWN is never negated.
    """

    def __init__(
        self,
        services: list[AIService],
        batch_size: int = 20,
        batch_delay: float = 1.0,
        max_retries: int = 3,
        initial_retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not services:
            raise MissingCredentialsError("No AI API keys configured for relevance classification.")
        self.services = services
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self.max_retries = max(0, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self._sleep = sleep
        self._next_service = 0
        self._batches_sent = 0

    def _pick_service(self) -> AIService:
        service = self.services[self._next_service % len(self.services)]
        self._next_service += 1
        return service

    async def _with_retry(self, call: Callable[[AIService], Awaitable[str]], service: AIService) -> str:
        """One call plus up to max_retries retries on transient provider errors."""
        delay = self.initial_retry_delay
        attempt = 0
        while True:
            try:
                return await call(service)
            except Exception as e:
                attempt += 1
                if not is_transient_error(e) or attempt > self.max_retries:
                    raise
                logger.warning(
                    f"[AI Negation] Provider busy ({e}). Retrying in {delay:.1f}s "
                    f"(retry {attempt}/{self.max_retries})"
                )
                await self._sleep(delay)
                delay *= 2

    async def _pace(self):
        if self._batches_sent:
            await self._sleep(self.batch_delay)
        self._batches_sent += 1

    async def classify_batch(self, product: dict, terms: list[str]) -> dict[str, Relevance]:
        await self._pace()
        service = self._pick_service()
        messages = build_batch_prompt(product, terms)
        try:
            text = await self._with_retry(
                lambda s: s._completion(messages, json_response=True), service,
            )
        except Exception as e:
            logger.error(f"[AI Negation] Batch classification failed for {len(terms)} term(s): {e}")
            return {t: Relevance.UNKNOWN for t in terms}
        return parse_batch_answer(text, terms)

    async def classify_single(self, product: dict, term: str) -> Relevance:
        await self._pace()
        service = self._pick_service()
        messages = build_single_prompt(product, term)
        try:
            text = await self._with_retry(lambda s: s._completion(messages, max_tokens=5), service)
        except Exception as e:
            logger.error(f"[AI Negation] Classification failed for term \"{term}\": {e}")
            return Relevance.UNKNOWN
        return parse_single_answer(text)

    async def classify(
        self, product: dict, terms: list[str], mode: str = "batch", batch_size: Optional[int] = None,
    ) -> dict[str, Relevance]:
        """Classify all terms for one product, batch_size terms per call (or one per call in single mode)."""
        size = max(1, batch_size or self.batch_size)
        verdicts: dict[str, Relevance] = {}
        if mode == "single":
            for term in terms:
                verdicts[term] = await self.classify_single(product, term)
            return verdicts
        for start in range(0, len(terms), size):
            verdicts.update(await self.classify_batch(product, terms[start:start + size]))
        return verdicts


def create_relevance_classifier(model_id: Optional[str] = None) -> RelevanceClassifier:
    """Build a classifier with one client per configured key for the model's provider."""
    settings = get_settings()
    provider, _ = _parse_model_id(model_id)
    keys = settings.openai_key_pool if provider == "openai" else settings.anthropic_key_pool
    services = [
        AIService(
            model_id=model_id or settings.ai_model,
            openai_api_key=key if provider == "openai" else None,
            anthropic_api_key=key if provider == "anthropic" else None,
        )
        for key in keys
    ]
    return RelevanceClassifier(
        services,
        batch_size=settings.ai_batch_size,
        batch_delay=settings.ai_batch_delay_seconds,
        max_retries=settings.ai_max_retries,
        initial_retry_delay=settings.ai_retry_initial_delay_seconds,
    )
