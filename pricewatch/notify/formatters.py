"""Digest email formatting.

Provides:
- Price and trend formatting helpers
- HTML digest (Jinja2)
- Plain-text digest
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from jinja2 import Environment

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "RUB": "₽",
    "KRW": "₩",
    "THB": "฿",
    "AUD": "A$",
    "CAD": "CA$",
}

ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW"}

DIGEST_WINDOWS = (7, 30, 90, 180)

TREND_UP_COLOR = "#dc2626"  # Price increased
TREND_DOWN_COLOR = "#16a34a"  # Price decreased
TREND_FLAT_COLOR = "#666666"


@dataclass
class DigestItem:
    """One product row in the digest."""

    name: str
    url: str
    image_url: Optional[str]
    current_price: Optional[int]  # cents
    currency: Optional[str]
    last_checked: Optional[datetime]
    last_failed: Optional[datetime]
    vs_last_check: Optional[float]
    vs_averages: dict[int, Optional[float]] = field(default_factory=dict)
    failed: bool = False
    error: Optional[str] = None


def format_price(cents: Optional[int], currency: Optional[str]) -> str:
    """Format a price in cents, e.g. 123456 USD -> "$1,234.56". Missing values give "N/A"."""
    if cents is None or not currency:
        return "N/A"
    amount = cents / 100
    symbol = CURRENCY_SYMBOLS.get(currency)
    if currency in ZERO_DECIMAL_CURRENCIES:
        number = f"{amount:,.0f}"
    else:
        number = f"{amount:,.2f}"
    if symbol:
        return f"{symbol}{number}"
    return f"{currency} {number}"


def format_trend(percentage: Optional[float]) -> str:
    """Format a percentage change, e.g. 14.28 -> "+14.3% ↑"."""
    if percentage is None:
        return "-"
    if percentage > 0:
        return f"+{percentage:.1f}% ↑"
    if percentage < 0:
        return f"{percentage:.1f}% ↓"
    return "0.0% →"


def trend_color(percentage: Optional[float]) -> str:
    if percentage is None or percentage == 0:
        return TREND_FLAT_COLOR
    return TREND_UP_COLOR if percentage > 0 else TREND_DOWN_COLOR


def format_datetime(value: Optional[datetime]) -> str:
    if value is None:
        return "Never"
    return value.strftime("%b %d, %Y %H:%M UTC")


def digest_subject(generated_at: datetime, environment: str = "production") -> str:
    prefix = "[dev] " if environment == "development" else ""
    return f"{prefix}Price Monitor Report - {generated_at.strftime('%Y-%m-%d')}"


_env = Environment(autoescape=True, trim_blocks=True, lstrip_blocks=True)
_env.filters["price"] = lambda item: format_price(item.current_price, item.currency)
_env.filters["trend"] = format_trend
_env.filters["trend_color"] = trend_color
_env.filters["datetime"] = format_datetime

DIGEST_HTML_TEMPLATE = _env.from_string(
    """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Price Monitor Report</title></head>
<body style="background-color:#f6f9fc;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;">
<div style="background-color:#ffffff;margin:0 auto;padding:20px 0 48px;max-width:900px;">
  <div style="padding:20px 48px;border-bottom:1px solid #e6ebf1;">
    <h1 style="font-size:24px;color:#1a1a1a;margin:0;">Price Monitor Report</h1>
    <p style="font-size:14px;color:#666666;margin:8px 0 0 0;">Generated: {{ generated_at|datetime }}</p>
  </div>
  <div style="padding:24px 48px;">
    <table style="width:100%;border-collapse:collapse;">
      <thead>
        <tr style="background-color:#f8fafc;border-bottom:2px solid #e6ebf1;">
          <th align="left">Product</th>
          <th align="left">Price</th>
          <th align="left">Last Check</th>
          <th align="left">vs Last</th>
          {% for days in windows %}
          <th align="left">vs {{ days }}d</th>
          {% endfor %}
        </tr>
      </thead>
      <tbody>
      {% for item in items %}
        <tr>
          <td style="padding:16px 8px;border-bottom:1px solid #e6ebf1;">
            {% if item.image_url %}
            <img src="{{ item.image_url }}" alt="{{ item.name }}" width="48" height="48" style="object-fit:cover;border-radius:4px;">
            {% endif %}
            <a href="{{ item.url }}" style="color:#1a1a1a;text-decoration:none;font-weight:500;">{{ item.name }}</a>
            {% if item.failed %}
            <div style="margin-top:4px;">
              <span style="padding:2px 8px;background-color:#fef2f2;color:#dc2626;border-radius:4px;font-size:12px;">
                Failed{% if item.last_failed %} since {{ item.last_failed|datetime }}{% endif %}
              </span>
            </div>
            {% endif %}
          </td>
          <td style="padding:16px 8px;border-bottom:1px solid #e6ebf1;font-weight:600;">{{ item|price }}</td>
          <td style="padding:16px 8px;border-bottom:1px solid #e6ebf1;">{{ item.last_checked|datetime }}</td>
          <td style="padding:16px 8px;border-bottom:1px solid #e6ebf1;color:{{ item.vs_last_check|trend_color }};">{{ item.vs_last_check|trend }}</td>
          {% for days in windows %}
          {% set change = item.vs_averages.get(days) %}
          <td style="padding:16px 8px;border-bottom:1px solid #e6ebf1;color:{{ change|trend_color }};">{{ change|trend }}</td>
          {% endfor %}
        </tr>
      {% endfor %}
      </tbody>
    </table>
  </div>
  <div style="padding:24px 48px;border-top:1px solid #e6ebf1;">
    <p style="font-size:12px;color:#8898aa;margin:0;">
      {{ items|length }} products checked{% if failed_count %}, {{ failed_count }} failed{% endif %}.
    </p>
  </div>
</div>
</body>
</html>
"""
)


def render_digest_html(items: list[DigestItem], generated_at: datetime) -> str:
    """Render the HTML digest email body."""
    return DIGEST_HTML_TEMPLATE.render(
        items=items,
        generated_at=generated_at,
        windows=DIGEST_WINDOWS,
        failed_count=sum(1 for item in items if item.failed),
    )


def render_digest_text(items: list[DigestItem], generated_at: datetime) -> str:
    """Render the plain-text alternative of the digest."""
    lines = [
        "Price Monitor Report",
        f"Generated: {format_datetime(generated_at)}",
        "",
    ]
    for item in items:
        status = " [FAILED]" if item.failed else ""
        lines.append(f"{item.name}{status}")
        lines.append(f"  Price: {format_price(item.current_price, item.currency)}")
        lines.append(f"  Last check: {format_datetime(item.last_checked)}")
        trends = [f"vs last {format_trend(item.vs_last_check)}"]
        trends.extend(
            f"vs {days}d {format_trend(item.vs_averages.get(days))}" for days in DIGEST_WINDOWS
        )
        lines.append("  " + " | ".join(trends))
        lines.append(f"  {item.url}")
        lines.append("")
    return "\n".join(lines)
