from __future__ import annotations

import base64
import json
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from pocket_budget.core.config import settings
from pocket_budget.core.logging import get_logger, log_event, monotonic_ms
from pocket_budget.modules.ingestion.domain import CanonicalCandidate, CategoryRef, ImageItem
from pocket_budget.modules.ingestion.errors import (
    ApiError,
    ExtractionNotConfigured,
    ImageRejected,
    MalformedResponseError,
    NetworkError,
)

logger = get_logger(__name__)

ACCEPTED_IMAGE_TYPES: tuple[str, ...] = ("image/jpeg", "image/png", "image/webp", "image/heic")

DEFAULT_CATEGORY_NAMES: tuple[str, ...] = (
    "Dining",
    "Transport",
    "Shopping",
    "Entertainment",
    "Medical",
    "Education",
    "Housing",
    "Other",
)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_AMOUNT_NOISE_RE = re.compile(r"[\s,¥￥$€£元]|^(?:RMB|CNY)", re.I)


@dataclass(frozen=True)
class ImageCheck:
    ok: bool
    reason: str | None = None


def validate_image(*, filename: str, content_type: str | None, byte_size: int) -> ImageCheck:
    if (content_type or "").lower() not in ACCEPTED_IMAGE_TYPES:
        return ImageCheck(ok=False, reason=f"File {filename} format not supported, skipped")
    if byte_size <= 0:
        return ImageCheck(ok=False, reason=f"File {filename} is empty, skipped")
    if byte_size > settings.max_image_bytes:
        limit_mb = settings.max_image_bytes // (1024 * 1024)
        return ImageCheck(ok=False, reason=f"File {filename} exceeds {limit_mb}MB limit, skipped")
    return ImageCheck(ok=True)


def build_extraction_prompt(today: date, category_names: Sequence[str]) -> str:
    names = ", ".join(category_names) if category_names else ", ".join(DEFAULT_CATEGORY_NAMES)
    iso_today = today.isoformat()
    return (
        "You are a receipt and bill recognition assistant. The image is a payment app "
        "screenshot (Alipay or WeChat) or a photographed receipt. Extract every expense "
        "record it contains.\n\n"
        f"Today's date is: {iso_today}\n\n"
        "Return JSON in exactly this shape:\n"
        "{\n"
        '  "expenses": [\n'
        "    {\n"
        '      "date": "YYYY-MM-DD",\n'
        '      "time": "HH:mm" or null,\n'
        '      "amount": number (no currency symbol),\n'
        f'      "category": one of [{names}],\n'
        '      "description": string,\n'
        '      "is_essential": true/false\n'
        "    }\n"
        "  ]\n"
        "}\n\n"
        "Rules:\n"
        '1. If the image has no recognizable expense, return {"expenses": []}.\n'
        "2. Amounts are plain numbers without currency symbols.\n"
        f"3. Dates use YYYY-MM-DD. If the date is unclear or shown as today, use {iso_today}; "
        "if shown as yesterday, use the previous day.\n"
        "4. Time uses 24-hour HH:mm when the transaction time is visible, otherwise null.\n"
        "5. Pick the closest category from the list above.\n"
        "6. is_essential is true for food, transport, medical and housing, false for "
        "entertainment and shopping.\n"
        "7. Return JSON only, without markdown code fences or any other text."
    )


def strip_code_fence(text: str) -> str:
    t = (text or "").strip()
    if t.startswith("```json"):
        t = t[7:]
    elif t.startswith("```"):
        t = t[3:]
    if t.endswith("```"):
        t = t[:-3]
    return t.strip()


def parse_extraction_response(body: Any, *, today: date) -> list[dict[str, Any]]:
    """
    Pull the expense list out of a generateContent response body.

    Structural problems (no candidates, no text part, unparsable JSON) raise
    MalformedResponseError. A payload without an ``expenses`` list is a valid
    empty result. Items are normalized one by one; an item whose amount
    cannot be read is dropped without affecting its siblings.
    """
    if not body or not isinstance(body, dict):
        raise MalformedResponseError("Empty response from API")

    candidates = body.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise MalformedResponseError("No candidates in API response")

    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list) or not parts:
        raise MalformedResponseError("No content parts in API response")

    text = next(
        (p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)),
        None,
    )
    if not text:
        raise MalformedResponseError("No text content in API response")

    try:
        parsed = json.loads(strip_code_fence(text))
    except ValueError as e:
        raise MalformedResponseError(f"Failed to parse JSON response: {e}") from e

    if not isinstance(parsed, dict):
        raise MalformedResponseError("Invalid response structure")

    raw_items = parsed.get("expenses")
    if not isinstance(raw_items, list):
        return []

    out: list[dict[str, Any]] = []
    for idx, raw in enumerate(raw_items):
        item = normalize_raw_candidate(raw, today=today)
        if item is None:
            log_event(logger, "ingestion.extract.item_dropped", item_index=idx)
            continue
        out.append(item)
    return out


def normalize_raw_candidate(raw: Any, *, today: date) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None

    amount = coerce_amount(raw.get("amount"))
    if amount is None:
        return None

    date_val = raw.get("date")
    day = today
    if isinstance(date_val, str) and _DATE_RE.match(date_val):
        try:
            day = date.fromisoformat(date_val)
        except ValueError:
            day = today

    time_val = raw.get("time")
    hhmm = time_val if isinstance(time_val, str) and _TIME_RE.match(time_val) else None

    category = raw.get("category")
    description = raw.get("description")
    is_essential = raw.get("is_essential")

    return {
        "date": day,
        "time": hhmm,
        "amount": amount,
        "category": category if isinstance(category, str) else settings.fallback_category_name,
        "description": description if isinstance(description, str) else "",
        "is_essential": is_essential if isinstance(is_essential, bool) else False,
    }


def coerce_amount(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        raw = str(value)
    elif isinstance(value, str):
        raw = _AMOUNT_NOISE_RE.sub("", value.strip())
    else:
        return None
    try:
        amt = Decimal(raw)
    except (InvalidOperation, ValueError):
        return None
    if not amt.is_finite():
        return None
    # Payment apps show outflows as negative numbers.
    return abs(amt)


def resolve_category_id(
    name: str, categories: Sequence[CategoryRef], *, fallback_name: str | None = None
) -> str | None:
    if not categories:
        return None

    normalized = (name or "").strip().lower()

    for c in categories:
        if c.name.lower() == normalized:
            return c.id

    if normalized:
        for c in categories:
            cname = c.name.lower()
            if normalized in cname or cname in normalized:
                return c.id

    fallback = fallback_name if fallback_name is not None else settings.fallback_category_name
    for c in categories:
        if c.name == fallback:
            return c.id
    return categories[0].id


def build_candidates(
    items: Sequence[dict[str, Any]],
    categories: Sequence[CategoryRef],
    *,
    source_image_index: int = 0,
) -> list[CanonicalCandidate]:
    return [
        CanonicalCandidate(
            date=item["date"],
            time=item["time"],
            amount=item["amount"],
            category_id=resolve_category_id(item["category"], categories),
            category_name=item["category"],
            description=item["description"],
            is_essential=item["is_essential"],
            source_image_index=source_image_index,
        )
        for item in items
    ]


class ExtractionClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout_s: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._api_key = api_key if api_key is not None else settings.gemini_api_key
        self._model = model or settings.gemini_model
        self._base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self._timeout_s = float(timeout_s or settings.receipt_ai_timeout_seconds)
        self._http_client = http_client

    @property
    def url(self) -> str:
        return f"{self._base_url}/models/{self._model}:generateContent"

    def build_request_body(
        self, image: ImageItem, category_names: Sequence[str], today: date
    ) -> dict[str, Any]:
        return {
            "contents": [
                {
                    "parts": [
                        {"text": build_extraction_prompt(today, category_names)},
                        {
                            "inline_data": {
                                "mime_type": image.content_type,
                                "data": base64.b64encode(image.body).decode("ascii"),
                            }
                        },
                    ]
                }
            ]
        }

    async def extract(
        self,
        image: ImageItem,
        categories: Sequence[CategoryRef],
        today: date,
        *,
        source_image_index: int = 0,
    ) -> list[CanonicalCandidate]:
        check = validate_image(
            filename=image.filename, content_type=image.content_type, byte_size=image.byte_size
        )
        if not check.ok:
            raise ImageRejected(check.reason or "Invalid image")
        if not self._api_key:
            raise ExtractionNotConfigured(
                "Extraction API key not configured. Set GEMINI_API_KEY in the environment."
            )

        payload = self.build_request_body(image, [c.name for c in categories], today)
        start = time.monotonic()
        log_event(
            logger,
            "ingestion.extract.start",
            image_index=source_image_index,
            filename=image.filename,
            content_type=image.content_type,
            byte_size=image.byte_size,
            model=self._model,
        )

        resp = await self._post(payload)

        if resp.status_code < 200 or resp.status_code >= 300:
            message = _api_error_message(resp)
            log_event(
                logger,
                "ingestion.extract.failure",
                image_index=source_image_index,
                reason="api_error",
                status_code=resp.status_code,
                duration_ms=monotonic_ms(start),
            )
            raise ApiError(message, status_code=resp.status_code)

        try:
            body = resp.json()
        except httpx.HTTPError as e:
            raise MalformedResponseError("Response body could not be read") from e
        except ValueError as e:
            raise MalformedResponseError("Response body is not JSON") from e

        items = parse_extraction_response(body, today=today)
        candidates = build_candidates(items, categories, source_image_index=source_image_index)
        log_event(
            logger,
            "ingestion.extract.finish",
            image_index=source_image_index,
            candidate_count=len(candidates),
            duration_ms=monotonic_ms(start),
        )
        return candidates

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        params = {"key": self._api_key}
        try:
            if self._http_client is not None:
                return await self._http_client.post(
                    self.url, params=params, json=payload, timeout=self._timeout_s
                )
            async with httpx.AsyncClient(follow_redirects=True) as client:
                return await client.post(
                    self.url, params=params, json=payload, timeout=self._timeout_s
                )
        except httpx.TransportError as e:
            log_event(
                logger,
                "ingestion.extract.failure",
                reason="network_error",
                error_type=type(e).__name__,
            )
            raise NetworkError(
                "Network error: Unable to connect to the extraction service. "
                "Please check your network or proxy settings."
            ) from e
        except httpx.DecodingError as e:
            log_event(
                logger,
                "ingestion.extract.failure",
                reason="undecodable_body",
                error_type=type(e).__name__,
            )
            raise MalformedResponseError("Response body could not be decoded") from e
        except httpx.HTTPError as e:
            log_event(
                logger,
                "ingestion.extract.failure",
                reason="request_error",
                error_type=type(e).__name__,
            )
            raise NetworkError(f"Request to the extraction service failed: {e}") from e


def _api_error_message(resp: httpx.Response) -> str:
    message = f"API error: {resp.status_code}"
    try:
        data = resp.json()
    except ValueError:
        return message
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str) and err["message"]:
            return err["message"]
    return message
