"""Tests for digest formatting, dispatch and email delivery."""

import json
from datetime import datetime

import httpx
import pytest

from pricewatch.detect.trends import ProductTrend, WindowTrend
from pricewatch.notify.digest import DigestDispatcher
from pricewatch.notify.email import ResendEmailClient
from pricewatch.notify.formatters import (
    DigestItem,
    format_datetime,
    format_price,
    format_trend,
    render_digest_html,
)
from pricewatch.worker.flows import ChildOutcome

GENERATED_AT = datetime(2026, 3, 2, 9, 0)


def _trend(product_id=1, url="https://shop.example.com/a", **kwargs) -> ProductTrend:
    defaults = dict(
        product_id=product_id,
        name=f"Product {product_id}",
        url=url,
        image_url=None,
        current_price=1999,
        currency="USD",
        previous_price=1799,
        vs_last_check=11.12,
        last_checked=datetime(2026, 3, 1, 9, 0),
        last_failed=None,
        windows={7: WindowTrend(days=7, record_count=3, average=1899, change_pct=5.27)},
    )
    defaults.update(kwargs)
    return ProductTrend(**defaults)


def test_format_price():
    assert format_price(123456, "USD") == "$1,234.56"
    assert format_price(150000, "JPY") == "¥1,500"
    assert format_price(999, "CHF") == "CHF 9.99"
    assert format_price(None, "USD") == "N/A"


def test_format_trend():
    assert format_trend(14.28) == "+14.3% ↑"
    assert format_trend(-3.04) == "-3.0% ↓"
    assert format_trend(0) == "0.0% →"
    assert format_trend(None) == "-"


def test_format_datetime():
    assert format_datetime(None) == "Never"
    assert format_datetime(GENERATED_AT) == "Mar 02, 2026 09:00 UTC"


def test_html_is_escaped():
    item = DigestItem(
        name="<script>alert(1)</script>",
        url="https://shop.example.com/a",
        image_url=None,
        current_price=None,
        currency=None,
        last_checked=None,
        last_failed=None,
        vs_last_check=None,
    )
    html = render_digest_html([item], GENERATED_AT)
    assert "<script>alert(1)</script>" not in html
    assert "N/A" in html


def test_failed_marker_from_stale_success():
    items = DigestDispatcher.build_items(
        [
            _trend(1, last_failed=datetime(2026, 3, 1, 10, 0)),
            _trend(2, url="https://shop.example.com/b", last_failed=datetime(2026, 2, 1)),
        ]
    )
    assert [item.failed for item in items] == [True, False]


def test_failed_marker_from_flow_outcome():
    outcomes = [
        ChildOutcome(job_id="3", url="https://shop.example.com/b", product_id=None,
                     success=False, status="failed", error="TIMEOUT: slow"),
    ]
    items = DigestDispatcher.build_items(
        [_trend(1), _trend(2, url="https://shop.example.com/b")], outcomes
    )
    assert [item.failed for item in items] == [False, True]
    assert items[1].error == "TIMEOUT: slow"
    assert items[0].vs_averages[7] == pytest.approx(5.27)
    assert items[0].vs_averages[30] is None


@pytest.mark.asyncio
async def test_dispatch_skips_empty_digest(fake_email):
    dispatcher = DigestDispatcher(email_client=fake_email, recipient="ops@example.com")
    assert await dispatcher.dispatch([], []) is False
    assert fake_email.sent == []


@pytest.mark.asyncio
async def test_dispatch_without_recipient(fake_email):
    dispatcher = DigestDispatcher(email_client=fake_email, recipient="")
    assert await dispatcher.dispatch([_trend()], []) is False
    assert fake_email.sent == []


@pytest.mark.asyncio
async def test_dispatch_reports_provider_rejection():
    class RejectingClient:
        async def send(self, **kwargs):
            return False

        async def close(self):
            pass

    dispatcher = DigestDispatcher(email_client=RejectingClient(), recipient="ops@example.com")
    assert await dispatcher.dispatch([_trend()], [], generated_at=GENERATED_AT) is False


@pytest.mark.asyncio
async def test_resend_client_posts_message():
    captured = {}

    def handler(request):
        captured["auth"] = request.headers["authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "msg_123"})

    client = ResendEmailClient(
        api_key="re_test",
        api_url="https://api.resend.test/emails",
        sender="Price Monitor <digest@example.com>",
        transport=httpx.MockTransport(handler),
    )
    sent = await client.send("ops@example.com", "Subject", "<p>hi</p>", "hi")
    await client.close()

    assert sent is True
    assert captured["auth"] == "Bearer re_test"
    assert captured["body"] == {
        "from": "Price Monitor <digest@example.com>",
        "to": ["ops@example.com"],
        "subject": "Subject",
        "html": "<p>hi</p>",
        "text": "hi",
    }


@pytest.mark.asyncio
async def test_resend_client_failure_returns_false():
    client = ResendEmailClient(
        api_key="re_test",
        transport=httpx.MockTransport(lambda request: httpx.Response(422, json={"message": "bad"})),
    )
    assert await client.send("ops@example.com", "Subject", "<p>hi</p>") is False
    await client.close()


@pytest.mark.asyncio
async def test_resend_client_without_api_key():
    assert await ResendEmailClient(api_key="").send("ops@example.com", "S", "<p></p>") is False
