from __future__ import annotations

import asyncio
import base64
import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from pocket_budget.modules.ingestion.domain import CategoryRef, ImageItem, PreviewHandle
from pocket_budget.modules.ingestion.errors import (
    ApiError,
    ExtractionNotConfigured,
    ImageRejected,
    MalformedResponseError,
    NetworkError,
)
from pocket_budget.modules.ingestion.extraction import (
    ExtractionClient,
    coerce_amount,
    parse_extraction_response,
    resolve_category_id,
    strip_code_fence,
    validate_image,
)

TODAY = date(2026, 3, 5)
CATEGORIES = [
    CategoryRef(id="c-dining", name="Dining"),
    CategoryRef(id="c-transport", name="Transport"),
    CategoryRef(id="c-other", name="Other"),
]


def _gemini_body(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _image(**overrides) -> ImageItem:
    values = {
        "filename": "receipt.png",
        "content_type": "image/png",
        "body": b"\x89PNG fake",
        "preview": PreviewHandle(key="previews/s/receipt.png"),
    }
    values.update(overrides)
    return ImageItem(**values)


def _run_extract(handler, *, api_key: str = "test-key", image: ImageItem | None = None):
    async def _go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = ExtractionClient(
                api_key=api_key,
                model="gemini-2.5-flash",
                base_url="https://example.test/v1beta",
                http_client=http,
            )
            return await client.extract(image or _image(), CATEGORIES, TODAY, source_image_index=2)

    return asyncio.run(_go())


def test_validate_image_rejects_unsupported_format():
    check = validate_image(filename="scan.gif", content_type="image/gif", byte_size=100)
    assert not check.ok
    assert check.reason == "File scan.gif format not supported, skipped"


def test_validate_image_enforces_size_limit():
    too_big = validate_image(
        filename="big.png", content_type="image/png", byte_size=10 * 1024 * 1024 + 1
    )
    assert too_big.reason == "File big.png exceeds 10MB limit, skipped"
    empty = validate_image(filename="empty.png", content_type="image/png", byte_size=0)
    assert not empty.ok
    assert empty.reason == "File empty.png is empty, skipped"
    assert validate_image(
        filename="ok.heic", content_type="IMAGE/HEIC", byte_size=10 * 1024 * 1024
    ).ok


def test_strip_code_fence_handles_json_and_bare_fences():
    assert strip_code_fence('```json\n{"expenses": []}\n```') == '{"expenses": []}'
    assert strip_code_fence('```\n{"a": 1}```') == '{"a": 1}'
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


def test_parse_response_normalizes_each_item():
    payload = {
        "expenses": [
            {
                "date": "2026-03-04",
                "time": "12:30",
                "amount": "¥38.00",
                "category": "Dining",
                "description": "Lunch",
                "is_essential": True,
            },
            {"date": "yesterday", "time": "7pm", "amount": -12.5, "category": None},
        ]
    }
    items = parse_extraction_response(
        _gemini_body("```json\n" + json.dumps(payload) + "\n```"), today=TODAY
    )

    assert items[0] == {
        "date": date(2026, 3, 4),
        "time": "12:30",
        "amount": Decimal("38.00"),
        "category": "Dining",
        "description": "Lunch",
        "is_essential": True,
    }
    assert items[1] == {
        "date": TODAY,
        "time": None,
        "amount": Decimal("12.5"),
        "category": "Other",
        "description": "",
        "is_essential": False,
    }


def test_parse_response_drops_unreadable_amounts_but_keeps_siblings():
    payload = {
        "expenses": [
            {"amount": "abc", "description": "bad"},
            {"amount": None, "description": "missing"},
            {"amount": True, "description": "bool"},
            {"amount": "RMB 12.00", "description": "good"},
        ]
    }
    items = parse_extraction_response(_gemini_body(json.dumps(payload)), today=TODAY)
    assert [i["description"] for i in items] == ["good"]
    assert items[0]["amount"] == Decimal("12.00")


def test_parse_response_without_expenses_list_is_empty():
    assert parse_extraction_response(_gemini_body('{"note": "nothing"}'), today=TODAY) == []
    assert parse_extraction_response(_gemini_body('{"expenses": []}'), today=TODAY) == []


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ({}, "Empty response from API"),
        ({"candidates": []}, "No candidates in API response"),
        ({"candidates": [{"content": {"parts": []}}]}, "No content parts in API response"),
        ({"candidates": [{"content": {"parts": [{"inline_data": {}}]}}]}, "No text content"),
        (_gemini_body("[1, 2]"), "Invalid response structure"),
        (_gemini_body("sorry, I cannot read this"), "Failed to parse JSON response"),
    ],
)
def test_parse_response_rejects_malformed_bodies(body, message):
    with pytest.raises(MalformedResponseError) as exc:
        parse_extraction_response(body, today=TODAY)
    assert message in str(exc.value)


def test_coerce_amount_strips_noise_and_sign():
    assert coerce_amount("1,234.50") == Decimal("1234.50")
    assert coerce_amount("cny 8") == Decimal("8")
    assert coerce_amount("$-5") == Decimal("5")
    assert coerce_amount(45) == Decimal("45")
    assert coerce_amount("nan") is None
    assert coerce_amount("Infinity") is None
    assert coerce_amount(False) is None
    assert coerce_amount([1]) is None


def test_resolve_category_id_matching_order():
    assert resolve_category_id("dining", CATEGORIES) == "c-dining"
    assert resolve_category_id("Transportation", CATEGORIES) == "c-transport"
    assert resolve_category_id("Gadgets", CATEGORIES) == "c-other"
    assert resolve_category_id("", CATEGORIES) == "c-other"
    assert resolve_category_id("Gadgets", CATEGORIES[:2]) == "c-dining"
    assert resolve_category_id("Dining", []) is None


def test_extract_sends_inline_image_and_builds_candidates():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.url.params.get("key")
        seen["body"] = json.loads(request.content)
        expenses = {
            "expenses": [
                {
                    "date": "2026-03-05",
                    "time": "12:30",
                    "amount": 45,
                    "category": "Dining",
                    "description": "Noodles",
                    "is_essential": True,
                }
            ]
        }
        return httpx.Response(200, json=_gemini_body(json.dumps(expenses)))

    candidates = _run_extract(handler)

    assert seen["url"].startswith(
        "https://example.test/v1beta/models/gemini-2.5-flash:generateContent"
    )
    assert seen["key"] == "test-key"
    parts = seen["body"]["contents"][0]["parts"]
    assert "Today's date is: 2026-03-05" in parts[0]["text"]
    assert "Dining, Transport, Other" in parts[0]["text"]
    assert parts[1]["inline_data"] == {
        "mime_type": "image/png",
        "data": base64.b64encode(b"\x89PNG fake").decode("ascii"),
    }

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.amount == Decimal("45")
    assert candidate.category_id == "c-dining"
    assert candidate.source_image_index == 2
    assert candidate.selected is True
    assert candidate.is_duplicated is False
    assert candidate.id.startswith("expense_")


def test_extract_maps_transport_failure_to_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkError) as exc:
        _run_extract(handler)
    assert str(exc.value).startswith("Network error")


def test_extract_uses_api_error_message_when_present():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "Resource has been exhausted"}})

    with pytest.raises(ApiError) as exc:
        _run_extract(handler)
    assert str(exc.value) == "Resource has been exhausted"
    assert exc.value.status_code == 429


def test_extract_falls_back_to_status_code_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    with pytest.raises(ApiError) as exc:
        _run_extract(handler)
    assert str(exc.value) == "API error: 500"


def test_extract_rejects_non_json_success_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(MalformedResponseError):
        _run_extract(handler)


def test_extract_requires_api_key_and_valid_image():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_gemini_body('{"expenses": []}'))

    with pytest.raises(ExtractionNotConfigured):
        _run_extract(handler, api_key="")
    with pytest.raises(ImageRejected):
        _run_extract(handler, image=_image(filename="doc.pdf", content_type="application/pdf"))
    assert calls == []


def test_extract_maps_undecodable_body_to_malformed_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"Content-Encoding": "gzip"}, content=b"definitely not gzip"
        )

    with pytest.raises(MalformedResponseError):
        _run_extract(handler)


def test_extract_maps_other_request_errors_to_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.TooManyRedirects("Exceeded maximum allowed redirects.", request=request)

    with pytest.raises(NetworkError):
        _run_extract(handler)
