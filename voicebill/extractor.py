"""Structured item extraction from transcribed text."""

import json
import logging
import re
from decimal import Decimal
from typing import Any, Optional

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import ExtractionConfig
from .errors import ErrorKind, PipelineError
from .models import ParsedItem
from .service import map_service_error

logger = logging.getLogger(__name__)

STAGE = "extraction"

SYSTEM_PROMPT = """You extract one invoice line item from a shopkeeper's spoken words.
The text is a speech transcription in Hindi, English, Marathi or Hinglish.
Handle Hindi and English number words, units (kg, liter, packet, piece) and
price words (rupay, rupees, rs).

Return ONLY a JSON object, no markdown and no explanation, with fields:
{"item": string, "quantity": number, "price": number, "confidence": number, "unit": string}

Rules:
1. "price" is the price per unit. If no price is said, set it to 0 and lower the confidence.
2. If the quantity is missing or ambiguous, set it to 1 and lower the confidence.
3. "confidence" is your certainty between 0.0 and 1.0.
4. Capitalize the item name. Default the unit to "piece" when unclear.
5. Give your best effort even if the text is incomplete."""

EXAMPLES = [
    (
        "do bread pachas rupay",
        {"item": "Bread", "quantity": 2, "price": 50, "confidence": 0.95, "unit": "piece"},
    ),
    (
        "teen kilo aloo sau rupay",
        {"item": "Aloo", "quantity": 3, "price": 100, "confidence": 0.92, "unit": "kg"},
    ),
    (
        "2 Maggi 20 rupees",
        {"item": "Maggi", "quantity": 2, "price": 20, "confidence": 0.98, "unit": "piece"},
    ),
    (
        "paanch litre doodh",
        {"item": "Doodh", "quantity": 5, "price": 0, "confidence": 0.7, "unit": "liter"},
    ),
    (
        "biscuit das rupay",
        {"item": "Biscuit", "quantity": 1, "price": 10, "confidence": 0.75, "unit": "packet"},
    ),
]

_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


def build_messages(text: str) -> list[dict[str, str]]:
    """Build the chat messages for one extraction request."""
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    for utterance, reply in EXAMPLES:
        messages.append({"role": "user", "content": utterance})
        messages.append({"role": "assistant", "content": json.dumps(reply)})
    messages.append({"role": "user", "content": text})
    return messages


def strip_code_fences(raw: str) -> str:
    """Remove markdown fences and any prose around the outermost JSON object."""
    cleaned = _CODE_FENCE.sub("", raw).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start >= 0 and end > start:
        cleaned = cleaned[start : end + 1]
    return cleaned


class ExtractionReply(BaseModel):
    """Schema of the JSON object returned by the extraction service."""

    model_config = ConfigDict(extra="ignore")

    item: str
    quantity: Optional[Decimal] = Decimal(1)
    price: Optional[Decimal] = Decimal(0)
    confidence: Decimal = Field(ge=0, le=1)
    unit: Optional[str] = None


def _malformed(
    message: str, raw: str, cause: Optional[BaseException] = None
) -> PipelineError:
    return PipelineError(
        ErrorKind.MALFORMED_RESPONSE,
        message,
        cause=cause,
        stage=STAGE,
        raw_response=raw,
    )


def parse_reply(raw: str) -> ParsedItem:
    """Parse a raw service reply into an item.

    Absent quantity means 1 and absent price means 0. A null or non-positive
    quantity is reported as unknown (None).

    Raises:
        PipelineError: MalformedResponse if the reply is not a JSON object
            matching the expected schema.
    """
    cleaned = strip_code_fences(raw)
    if not cleaned:
        raise _malformed("Service returned an empty reply", raw)

    try:
        data: Any = json.loads(cleaned, parse_float=Decimal)
    except json.JSONDecodeError as e:
        raise _malformed(f"Invalid JSON from service: {e}", raw, e) from e

    if not isinstance(data, dict):
        raise _malformed(f"Expected a JSON object, got {type(data).__name__}", raw)

    try:
        reply = ExtractionReply.model_validate(data)
        quantity = reply.quantity if reply.quantity is not None and reply.quantity > 0 else None
        unit = (reply.unit or "").strip() or None
        return ParsedItem(
            name=reply.item,
            quantity=quantity,
            unit_price=reply.price if reply.price is not None else Decimal(0),
            unit=unit,
            confidence=reply.confidence,
            raw_response=cleaned,
        )
    except ValidationError as e:
        error_detail = e.errors()[0] if e.errors() else {"msg": "Validation failed"}
        field = ".".join(str(p) for p in error_detail.get("loc", ())) or "reply"
        raise _malformed(
            f"Reply does not match the item schema ({field}: {error_detail.get('msg')})",
            raw,
            e,
        ) from e


class ItemExtractor:
    """Turns transcribed text into a ParsedItem using a remote chat model.

    Every reply is surfaced with its confidence. Failures raise PipelineError;
    replies are never dropped silently. When min_confidence is set, a reply
    below it raises LowConfidence.
    """

    def __init__(self, config: ExtractionConfig, client: AsyncOpenAI):
        """Initialize the extractor.

        Args:
            config: Extraction configuration (model, sampling, limits).
            client: Client for the extraction service.
        """
        self.extraction_config = config
        self._client = client

    async def extract(self, text: str) -> ParsedItem:
        """Extract one item from the transcription.

        Raises:
            PipelineError: ServiceError, NetworkTimeout, MalformedResponse or
                LowConfidence.
        """
        text = text.strip()
        if not text:
            raise PipelineError(
                ErrorKind.NO_SPEECH_DETECTED,
                "Nothing to extract from an empty transcription",
                stage=STAGE,
            )

        cfg = self.extraction_config
        request: dict[str, Any] = {
            "model": cfg.model,
            "messages": build_messages(text),
            "temperature": cfg.temperature,
            "top_p": cfg.top_p,
            "max_tokens": cfg.max_tokens,
        }
        if cfg.json_mode:
            request["response_format"] = {"type": "json_object"}

        logger.info(f"Extracting item from: {text[:100]}")
        try:
            response = await self._client.chat.completions.create(**request)
        except openai.OpenAIError as e:
            error = map_service_error(e, STAGE)
            logger.error(f"Extraction request failed: {error}")
            raise error from e

        raw = response.choices[0].message.content if response.choices else None
        if not raw:
            raise _malformed("Service returned an empty response", raw or "")

        logger.debug(f"Raw extraction reply: {raw}")
        try:
            item = parse_reply(raw)
        except PipelineError as e:
            logger.error(f"Could not parse extraction reply: {e.message} | Response: {raw!r}")
            raise

        if item.confidence < Decimal(str(cfg.min_confidence)):
            logger.info(
                f"Extraction confidence {item.confidence} below floor {cfg.min_confidence}"
            )
            raise PipelineError(
                ErrorKind.LOW_CONFIDENCE,
                f"Confidence {item.confidence} is below {cfg.min_confidence}",
                stage=STAGE,
                raw_response=raw,
            )

        logger.info(
            f"Parsed item: {item.name}, qty: {item.quantity}, price: {item.unit_price}, "
            f"unit: {item.unit}, confidence: {item.confidence}"
        )
        return item
